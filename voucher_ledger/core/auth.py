from dataclasses import dataclass

from fastapi import Depends
from jose import JWTError, jwt
from starlette.requests import Request

from voucher_ledger.context import get_correlation_id
from voucher_ledger.core.config import get_settings
from voucher_ledger.core.context import Actor


@dataclass
class AuthUser:
    sub: str
    roles: list[str]


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub="anonymous", roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub="anonymous", roles=["guest"])

    subject = str(payload.get("sub", "anonymous"))
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
    return AuthUser(sub=subject, roles=[str(role) for role in roles])


def get_actor(request: Request, user: AuthUser = Depends(get_current_user)) -> Actor:
    context = getattr(request.state, "context", None)
    return Actor(
        user_id=user.sub,
        roles=list(user.roles),
        ip_address=getattr(context, "client_ip", None),
        user_agent=getattr(context, "user_agent", None) or request.headers.get("user-agent"),
        correlation_id=get_correlation_id() or getattr(context, "correlation_id", None),
    )
