"""FastAPI dependencies shared by the identity routes."""

from __future__ import annotations

from typing import Callable

from fastapi import Depends, Header, Request

from .errors import AuthFailureError
from ..domain.account import Role
from ..domain.contracts import AuthFailure, ErrorKind, RequestContext
from ..domain.service import AuthenticatedAccount, AuthService


def get_service(request: Request) -> AuthService:
    """Resolve the `AuthService` stored on the FastAPI application state."""
    service: AuthService = request.app.state.auth_service
    return service


def client_ip(request: Request, trusted_hops: int) -> str:
    """Return the address of the first untrusted hop.

    With ``trusted_hops`` proxies in front of the service, the right-most
    ``trusted_hops`` addresses (the socket peer plus forwarded entries) are
    our own proxies; anything further left was written by the client.
    """
    peer = request.client.host if request.client else "unknown"
    if trusted_hops <= 0:
        return peer
    forwarded = request.headers.get("x-forwarded-for", "")
    chain = [entry.strip() for entry in forwarded.split(",") if entry.strip()] + [peer]
    return chain[max(0, len(chain) - 1 - trusted_hops)]


def request_context(request: Request) -> RequestContext:
    return RequestContext(
        client_ip=client_ip(request, get_service(request).settings.trusted_proxy_hops),
        user_agent=request.headers.get("user-agent", "unknown"),
    )


def bearer_token(authorization: str | None = Header(default=None)) -> str | None:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[len("Bearer "):].strip() or None


def current_account(
    token: str | None = Depends(bearer_token),
    service: AuthService = Depends(get_service),
) -> AuthenticatedAccount:
    """Authenticate the caller; active flags are re-checked on every request."""
    result = service.authenticate(token)
    if isinstance(result, AuthFailure):
        raise AuthFailureError(result)
    return result


def require_roles(*roles: Role) -> Callable[..., AuthenticatedAccount]:
    def dependency(principal: AuthenticatedAccount = Depends(current_account)) -> AuthenticatedAccount:
        if principal.account.role not in roles:
            raise AuthFailureError(
                AuthFailure(kind=ErrorKind.forbidden, message="Ingen tilgang - utilstrekkelige rettigheter")
            )
        return principal

    return dependency
