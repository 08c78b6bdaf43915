from celery import Celery

from voucher_ledger.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "voucher_ledger",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["voucher_ledger.audit.tasks"],
)
celery_app.conf.task_default_queue = "audit"
