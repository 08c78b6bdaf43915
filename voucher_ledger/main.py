from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from voucher_ledger import events
from voucher_ledger.api.errors import register_error_handlers
from voucher_ledger.api.routes import router as api_router
from voucher_ledger.audit.recorder import audit_recorder
from voucher_ledger.core.config import get_settings
from voucher_ledger.core.context import RequestContextMiddleware
from voucher_ledger.core.events import InternalEvent, event_bus
from voucher_ledger.logging import configure_logging
from voucher_ledger.middleware.correlation_id import CorrelationIdMiddleware
from voucher_ledger.middleware.rate_limit import MutationRateLimitMiddleware, TokenBucketLimiter
from voucher_ledger.middleware.request_logging import RequestLoggingMiddleware
from voucher_ledger.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("voucher_ledger.lifecycle")

_voucher_event_types = [
    events.VOUCHER_CREATED,
    events.VOUCHER_UPDATED,
    events.VOUCHER_POSTED,
    events.VOUCHER_VOIDED,
    events.VOUCHER_DUPLICATED,
    events.VOUCHER_DELETED,
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_voucher_event(event: InternalEvent) -> None:
    payload = event.payload.get("payload", {}) if isinstance(event.payload, dict) else {}
    logger.info(
        "voucher_event",
        extra={
            "event_name": event.name,
            "voucher_id": payload.get("voucher_id"),
            "doc_no": payload.get("doc_no"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("system.started", _on_system_started)
    for event_name in _voucher_event_types:
        event_bus.subscribe(event_name, _on_voucher_event)
    event_bus.publish("system.started", {"service": "voucher-ledger"})
    yield
    audit_recorder.shutdown()


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.state.rate_limiter = TokenBucketLimiter(ttl_seconds=settings.rate_limit_bucket_ttl_seconds)
app.add_middleware(MutationRateLimitMiddleware, limiter=app.state.rate_limiter)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
register_error_handlers(app)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("voucher-ledger", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
