"""HTTP route definitions for the identity service."""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .dependencies import current_account, get_service, request_context, require_roles
from .errors import AuthFailureError
from ..domain.account import Account, Role, Tenant
from ..domain.contracts import (
    AuthFailure,
    ErrorKind,
    LoginInput,
    LoginSuccess,
    RegisterInput,
    RequestContext,
    TenantSelectionRequired,
)
from ..domain.service import AuthenticatedAccount, AuthService

logger = logging.getLogger(__name__)

router = APIRouter()


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UserProfile(CamelModel):
    """Serialised representation of an `Account` without its password hash."""

    id: str
    email: str
    first_name: str
    last_name: str
    username: str | None = None
    phone: str | None = None
    date_of_birth: date | None = None
    role: str
    tenant_id: str
    active: bool
    last_login_at: datetime | None = None
    created_at: datetime | None = None

    @classmethod
    def from_domain(cls, account: Account) -> "UserProfile":
        """Build a response model from the domain aggregate."""
        return cls(
            id=account.account_id,
            email=account.email,
            first_name=account.first_name,
            last_name=account.last_name,
            username=account.username,
            phone=account.phone,
            date_of_birth=account.date_of_birth,
            role=account.role.value,
            tenant_id=account.tenant_id,
            active=account.active,
            last_login_at=account.last_login_at,
            created_at=account.created_at,
        )


class AuthData(CamelModel):
    user: UserProfile
    token: str
    expires_in: int


class AuthResponse(CamelModel):
    """Envelope returned after a successful registration or login."""

    success: bool = True
    data: AuthData
    message: str


class TenantOption(CamelModel):
    id: str
    name: str
    subdomain: str

    @classmethod
    def from_domain(cls, tenant: Tenant) -> "TenantOption":
        return cls(id=tenant.tenant_id, name=tenant.name, subdomain=tenant.subdomain)


class TenantSelectionResponse(CamelModel):
    """Returned instead of a token when an identifier exists in several tenants."""

    success: bool = True
    requires_tenant_selection: bool = True
    tenants: list[TenantOption]
    identifier: str
    selection_token: str
    message: str


class ProfileResponse(CamelModel):
    success: bool = True
    data: UserProfile


class MessageResponse(CamelModel):
    success: bool = True
    message: str


class RegisterRequest(CamelModel):
    """Registration payload. Fields are optional here so that every problem is reported together."""

    email: str | None = None
    password: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    date_of_birth: str | None = None
    username: str | None = None
    tenant_id: str | None = None


class LoginRequest(CamelModel):
    password: str | None = None
    identifier: str | None = None
    email: str | None = None
    username: str | None = None
    tenant_id: str | None = None


class SelectTenantRequest(CamelModel):
    selection_token: str | None = None
    tenant_id: str | None = None


class ChangePasswordRequest(CamelModel):
    current_password: str | None = None
    new_password: str | None = None


class PasswordResetRequest(CamelModel):
    email: str | None = None
    tenant_id: str | None = None


class PasswordResetCompleteRequest(CamelModel):
    token: str | None = None
    new_password: str | None = None


class PasswordResetTokenInfo(CamelModel):
    email: str
    valid: bool = True


class PasswordResetVerifyResponse(CamelModel):
    success: bool = True
    data: PasswordResetTokenInfo


class RateLimitResetRequest(CamelModel):
    scope: Literal["login", "register", "password_reset"]
    client_ip: str


class AuditLogEntry(CamelModel):
    """Audit log response entry."""

    audit_id: int
    tenant_id: str
    account_id: str | None
    action: str
    ip_address: str | None
    user_agent: str | None
    metadata: dict[str, Any]
    created_at: datetime


class AuditLogResponse(CamelModel):
    """Envelope for paginated audit log data."""

    success: bool = True
    items: list[AuditLogEntry]
    next_cursor: str | None = None


def _auth_response(account: Account, token: str, expires_in: int, message: str) -> AuthResponse:
    return AuthResponse(
        data=AuthData(user=UserProfile.from_domain(account), token=token, expires_in=expires_in),
        message=message,
    )


def _login_response(result: LoginSuccess | TenantSelectionRequired | AuthFailure):
    if isinstance(result, AuthFailure):
        raise AuthFailureError(result)
    if isinstance(result, TenantSelectionRequired):
        return TenantSelectionResponse(
            tenants=[TenantOption.from_domain(tenant) for tenant in result.tenants],
            identifier=result.identifier,
            selection_token=result.selection_token,
            message="Velg hvilken organisasjon du vil logge inn i",
        )
    return _auth_response(result.account, result.token, result.expires_in, "Innlogging vellykket")


@router.post("/auth/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
def register(
    payload: RegisterRequest,
    context: RequestContext = Depends(request_context),
    service: AuthService = Depends(get_service),
) -> AuthResponse:
    """Register a customer account in a tenant and return it with a token."""
    result = service.register(
        RegisterInput(
            email=payload.email,
            password=payload.password,
            first_name=payload.first_name,
            last_name=payload.last_name,
            tenant_id=payload.tenant_id,
            phone=payload.phone,
            date_of_birth=payload.date_of_birth,
            username=payload.username,
        ),
        context,
    )
    if isinstance(result, AuthFailure):
        raise AuthFailureError(result)
    return _auth_response(result.account, result.token, result.expires_in, "Bruker opprettet vellykket")


@router.post("/auth/login", response_model=AuthResponse | TenantSelectionResponse)
def login(
    payload: LoginRequest,
    context: RequestContext = Depends(request_context),
    service: AuthService = Depends(get_service),
) -> AuthResponse | TenantSelectionResponse:
    """Log in by email or username, optionally scoped to a tenant."""
    result = service.login(
        LoginInput(
            password=payload.password,
            identifier=payload.identifier,
            email=payload.email,
            username=payload.username,
            tenant_id=payload.tenant_id,
        ),
        context,
    )
    return _login_response(result)


@router.post("/auth/select-tenant", response_model=AuthResponse)
def select_tenant(
    payload: SelectTenantRequest,
    context: RequestContext = Depends(request_context),
    service: AuthService = Depends(get_service),
) -> AuthResponse:
    """Finish a login that required tenant selection."""
    return _login_response(service.select_tenant(payload.selection_token, payload.tenant_id, context))


@router.get("/auth/me", response_model=ProfileResponse)
def me(principal: AuthenticatedAccount = Depends(current_account)) -> ProfileResponse:
    return ProfileResponse(data=UserProfile.from_domain(principal.account))


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    payload: ChangePasswordRequest,
    principal: AuthenticatedAccount = Depends(current_account),
    context: RequestContext = Depends(request_context),
    service: AuthService = Depends(get_service),
) -> MessageResponse:
    failure = service.change_password(principal, payload.current_password, payload.new_password, context)
    if failure is not None:
        raise AuthFailureError(failure)
    return MessageResponse(message="Passord endret vellykket")


@router.get("/activity-logs", response_model=AuditLogResponse)
def list_activity_logs(
    account_id: str | None = Query(default=None),
    action: str | None = Query(default=None),
    created_after: datetime | None = Query(default=None),
    created_before: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    cursor: str | None = Query(default=None),
    principal: AuthenticatedAccount = Depends(require_roles(Role.admin, Role.super_admin)),
    service: AuthService = Depends(get_service),
) -> AuditLogResponse:
    """Return paginated audit events for the caller's tenant with optional filtering."""
    try:
        records, next_cursor = service.list_audit_events(
            tenant_id=principal.account.tenant_id,
            account_id=account_id,
            action=action.upper() if action else None,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            cursor=cursor,
        )
    except ValueError as exc:
        raise AuthFailureError(AuthFailure(kind=ErrorKind.validation, message="Ugyldig cursor")) from exc

    items = [
        AuditLogEntry(
            audit_id=record.audit_id,
            tenant_id=record.tenant_id,
            account_id=record.account_id,
            action=record.action,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            metadata=record.metadata,
            created_at=record.created_at,
        )
        for record in records
    ]
    return AuditLogResponse(items=items, next_cursor=next_cursor)


@router.post("/admin/rate-limits/reset", response_model=MessageResponse)
def reset_rate_limit(
    payload: RateLimitResetRequest,
    principal: AuthenticatedAccount = Depends(require_roles(Role.super_admin)),
    service: AuthService = Depends(get_service),
) -> MessageResponse:
    service.reset_rate_limit(payload.scope, payload.client_ip)
    logger.info("account %s reset %s rate limit", principal.account.account_id, payload.scope)
    return MessageResponse(message="Rate limit nullstilt")


@router.post("/password-reset/request", response_model=MessageResponse)
def request_password_reset(
    payload: PasswordResetRequest,
    context: RequestContext = Depends(request_context),
    service: AuthService = Depends(get_service),
) -> MessageResponse:
    """Send a reset link if the address is registered; the answer is the same either way."""
    failure = service.request_password_reset(payload.email, payload.tenant_id, context)
    if failure is not None:
        raise AuthFailureError(failure)
    return MessageResponse(message="Hvis e-postadressen finnes i systemet, har vi sendt en tilbakestillingslenke.")


@router.get("/password-reset/verify/{token}", response_model=PasswordResetVerifyResponse)
def verify_password_reset(token: str, service: AuthService = Depends(get_service)) -> PasswordResetVerifyResponse:
    result = service.verify_password_reset(token)
    if isinstance(result, AuthFailure):
        raise AuthFailureError(result)
    return PasswordResetVerifyResponse(data=PasswordResetTokenInfo(email=result.email))


@router.post("/password-reset/reset", response_model=MessageResponse)
def reset_password(
    payload: PasswordResetCompleteRequest,
    context: RequestContext = Depends(request_context),
    service: AuthService = Depends(get_service),
) -> MessageResponse:
    failure = service.reset_password(payload.token, payload.new_password, context)
    if failure is not None:
        raise AuthFailureError(failure)
    return MessageResponse(message="Passord er tilbakestilt. Du kan nå logge inn med ditt nye passord.")
