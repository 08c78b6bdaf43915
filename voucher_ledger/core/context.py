from dataclasses import dataclass, field

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    user_id: str | None
    client_ip: str | None
    user_agent: str | None


@dataclass
class Actor:
    """Who is performing a ledger mutation, as recorded in audit entries."""

    user_id: str
    roles: list[str] = field(default_factory=list)
    ip_address: str | None = None
    user_agent: str | None = None
    correlation_id: str | None = None


SYSTEM_ACTOR = Actor(user_id="system")


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None)
        forwarded_for = request.headers.get("x-forwarded-for")
        client_ip = forwarded_for.split(",")[0].strip() if forwarded_for else None
        if client_ip is None and request.client is not None:
            client_ip = request.client.host
        request.state.context = RequestContext(
            request_id=correlation_id or "",
            correlation_id=correlation_id or "",
            user_id=None,
            client_ip=client_ip,
            user_agent=request.headers.get("user-agent"),
        )
        response = await call_next(request)
        response.headers["x-request-id"] = request.state.context.request_id
        return response
