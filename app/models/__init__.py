from app.models.entitlements import (  # noqa: F401
    CreditEntryType,
    CreditTransaction,
    CreditWallet,
    OwnerType,
    PlanType,
    Subscription,
    SubscriptionStatus,
)
from app.models.payments import (  # noqa: F401
    FulfillmentStatus,
    PaymentProviderType,
    PendingPayment,
    PendingPaymentStatus,
)
