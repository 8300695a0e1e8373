"""Register the Pesapal IPN URL and print the notification id."""

import argparse

from dotenv import load_dotenv

from app.config import settings


def parse_args():
    parser = argparse.ArgumentParser(description="Register a Pesapal IPN URL.")
    parser.add_argument(
        "--url",
        default=None,
        help="IPN URL (defaults to APP_URL + /api/v1/payments/pesapal/ipn)",
    )
    parser.add_argument("--method", choices=["GET", "POST"], default="GET")
    return parser.parse_args()


def main():
    load_dotenv()
    args = parse_args()
    from app.services import payment_gateways

    url = args.url or f"{settings.app_url.rstrip('/')}/api/v1/payments/pesapal/ipn"
    gateway = payment_gateways.get_gateway("pesapal")
    data = gateway.register_ipn(url, args.method)
    print(f"Registered {data.get('url', url)} ({data.get('ipn_notification_type_description', args.method)})")
    print(f"PESAPAL_IPN_ID={data['ipn_id']}")


if __name__ == "__main__":
    main()
