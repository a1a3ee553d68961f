"""
auth/dependencies.py -- FastAPI Depends() helpers around the AuthenticationGate.

Two credential methods, checked in priority order by the gate:
  1. Authorization: Bearer <token> header -- access tokens from /auth/login.
  2. X-API-Key header -- CI/CD and scripts using long-lived API keys.

Both converge on an AuthenticationContext after successful verification.

try_get_context() is the soft variant (returns None on failure).
get_current_context() raises an HTTPException carrying the rejection.
require_permission(resource, action) builds a dependency that also checks RBAC.

Layer rule: auth/dependencies.py may import from fastapi (for
Depends/HTTPException/Request) because this module is part of the FastAPI
dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.errors import Rejection
from auth.gate import InboundRequest
from auth.models import AuthenticationContext


def rejection_to_http(rejection: Rejection) -> HTTPException:
    """Render a Rejection as an HTTPException with the structured error detail."""
    headers: dict[str, str] = {}
    if rejection.retry_after is not None:
        headers["Retry-After"] = str(rejection.retry_after)
    if rejection.status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"
    detail: dict = {"code": rejection.code, "message": rejection.message}
    if rejection.minutes_remaining is not None:
        detail["detail"] = f"minutes_remaining={rejection.minutes_remaining}"
    return HTTPException(status_code=rejection.status_code, detail=detail, headers=headers or None)


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _inbound(request: Request) -> InboundRequest:
    return InboundRequest(
        headers=dict(request.headers),
        source_ip=client_ip(request),
        path=request.url.path,
        method=request.method,
    )


def try_get_context(request: Request) -> AuthenticationContext | None:
    """Authenticate the request, returning None on any rejection. Never raises."""
    result = request.app.state.services.gate.authenticate(_inbound(request))
    return None if isinstance(result, Rejection) else result


def get_current_context(request: Request) -> AuthenticationContext:
    """Require authentication. Raises HTTP 401/403/423/429 per the rejection reason.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(ctx: AuthenticationContext = Depends(get_current_context)): ...
    """
    result = request.app.state.services.gate.authenticate(_inbound(request))
    if isinstance(result, Rejection):
        raise rejection_to_http(result)
    request.state.auth = result
    return result


def require_permission(resource: str, action: str) -> Callable[[Request], AuthenticationContext]:
    """Build a dependency that authenticates and then requires resource:action.

    Use as a FastAPI dependency:
        @router.get("/auth/audit")
        async def route(ctx = Depends(require_permission("audit", "read"))): ...
    """

    def dependency(request: Request) -> AuthenticationContext:
        context = get_current_context(request)
        denied = request.app.state.services.gate.require_permission(context, resource, action, client_ip(request))
        if denied is not None:
            raise rejection_to_http(denied)
        return context

    return dependency
