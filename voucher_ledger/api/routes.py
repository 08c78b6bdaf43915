from fastapi import APIRouter, Depends, status
from fastapi.responses import Response

from voucher_ledger.audit.api import router as audit_router
from voucher_ledger.budget.api import router as budget_router
from voucher_ledger.core.auth import AuthUser, get_current_user
from voucher_ledger.core.config import get_settings
from voucher_ledger.errors import NotFoundError, PermissionDeniedError
from voucher_ledger.metrics import generate_metrics_payload, metrics_content_type
from voucher_ledger.periods.api import router as period_locks_router
from voucher_ledger.staging.api import router as staging_router
from voucher_ledger.vouchers.api import ledger_router, router as vouchers_router

router = APIRouter()
router.include_router(vouchers_router)
router.include_router(ledger_router)
router.include_router(period_locks_router)
router.include_router(audit_router)
router.include_router(budget_router)
router.include_router(staging_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str]]:
    return {
        "sub": user.sub,
        "roles": user.roles,
    }


@router.get("/metrics", tags=["system"], status_code=status.HTTP_200_OK)
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise NotFoundError("metrics endpoint")
    if "system.metrics.read" not in user.roles:
        raise PermissionDeniedError("Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
