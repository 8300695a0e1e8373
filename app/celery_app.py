from celery import Celery

from app.config import settings


def get_celery_config() -> dict:
    return {
        "broker_url": settings.celery_broker_url,
        "result_backend": settings.celery_result_backend or settings.celery_broker_url,
        "task_serializer": "json",
        "result_serializer": "json",
        "accept_content": ["json"],
        "timezone": "UTC",
        "enable_utc": True,
    }


celery_app = Celery("rentconnect_payments")
celery_app.conf.update(get_celery_config())
celery_app.autodiscover_tasks(["app.tasks"])
