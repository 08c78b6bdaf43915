from collections.abc import Callable

from fastapi import Depends

from voucher_ledger.core.auth import AuthUser, get_current_user
from voucher_ledger.errors import PermissionDeniedError


def require_permissions(*permissions: str) -> Callable[[AuthUser], AuthUser]:
    async def checker(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        missing_permissions = [permission for permission in permissions if permission not in user.roles]
        if missing_permissions:
            raise PermissionDeniedError(
                f"Missing permissions: {', '.join(missing_permissions)}",
                details={"missing": missing_permissions},
            )
        return user

    return checker
