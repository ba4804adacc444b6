"""Mapping of identity failures onto HTTP responses."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..domain.contracts import AuthFailure, ErrorKind

logger = logging.getLogger(__name__)

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.missing_field: status.HTTP_400_BAD_REQUEST,
    ErrorKind.validation: status.HTTP_400_BAD_REQUEST,
    ErrorKind.invalid_credentials: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.unauthenticated: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.account_disabled: status.HTTP_403_FORBIDDEN,
    ErrorKind.tenant_disabled: status.HTTP_403_FORBIDDEN,
    ErrorKind.forbidden: status.HTTP_403_FORBIDDEN,
    ErrorKind.not_found: status.HTTP_404_NOT_FOUND,
    ErrorKind.tenant_not_found: status.HTTP_404_NOT_FOUND,
    ErrorKind.conflict: status.HTTP_409_CONFLICT,
    ErrorKind.rate_limited: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorKind.internal: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

GENERIC_ERROR = "Noe gikk galt. Prøv igjen senere."
OPERATION_ERRORS = {
    "/auth/login": "Innlogging feilet",
    "/auth/select-tenant": "Innlogging feilet",
    "/auth/register": "Registrering feilet",
    "/auth/me": "Kunne ikke hente brukerinformasjon",
    "/auth/change-password": "Kunne ikke endre passord",
    "/activity-logs": "Kunne ikke hente aktivitetslogg",
    "/password-reset/request": "Kunne ikke behandle forespørsel",
    "/password-reset/verify/": "Kunne ikke verifisere token",
    "/password-reset/reset": "Kunne ikke tilbakestille passord",
}


def _operation_error(path: str) -> str:
    for prefix, message in OPERATION_ERRORS.items():
        if path == prefix or (prefix.endswith("/") and path.startswith(prefix)):
            return message
    return GENERIC_ERROR


class AuthFailureError(Exception):
    """Carries an :class:`AuthFailure` out of a route or dependency."""

    def __init__(self, failure: AuthFailure) -> None:
        super().__init__(failure.message)
        self.failure = failure


def failure_response(failure: AuthFailure) -> JSONResponse:
    body: dict[str, Any] = {"success": False, "error": failure.message}
    headers: dict[str, str] = {}
    if failure.errors:
        body["errors"] = [{"field": e.field, "message": e.message} for e in failure.errors]
    if failure.retry_after is not None:
        body["retryAfter"] = failure.retry_after
        headers["Retry-After"] = str(failure.retry_after)
    if failure.kind is ErrorKind.unauthenticated:
        headers["WWW-Authenticate"] = "Bearer"
    return JSONResponse(status_code=STATUS_BY_KIND[failure.kind], content=body, headers=headers or None)


async def _handle_auth_failure(request: Request, exc: AuthFailureError) -> JSONResponse:
    return failure_response(exc.failure)


async def _handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(part) for part in err.get("loc", ())[1:]), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "error": "Ugyldig forespørsel", "errors": errors},
    )


async def _handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    # Log the route template; concrete paths can carry reset tokens.
    route_path = getattr(request.scope.get("route"), "path", request.url.path)
    logger.error("unhandled error on %s %s", request.method, route_path, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "error": _operation_error(request.url.path)},
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AuthFailureError, _handle_auth_failure)
    app.add_exception_handler(RequestValidationError, _handle_request_validation)
    app.add_exception_handler(Exception, _handle_unexpected)
