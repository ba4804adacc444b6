"""Domain-level request contracts and tagged results shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Union

from .account import Account, Tenant


@dataclass(slots=True)
class RequestContext:
    """Caller metadata captured at the HTTP edge."""

    client_ip: str = "unknown"
    user_agent: str = "unknown"


@dataclass(slots=True)
class RegisterInput:
    """Raw registration fields as submitted by the client."""

    email: str | None
    password: str | None
    first_name: str | None
    last_name: str | None
    tenant_id: str | None
    phone: str | None = None
    date_of_birth: str | None = None
    username: str | None = None


@dataclass(slots=True)
class LoginInput:
    """Login credentials; ``identifier`` wins over ``email`` which wins over ``username``."""

    password: str | None
    identifier: str | None = None
    email: str | None = None
    username: str | None = None
    tenant_id: str | None = None

    @property
    def login_identifier(self) -> str | None:
        return self.identifier or self.email or self.username


@dataclass(slots=True)
class CreateAccountInput:
    """Validated inputs required to create an account within a tenant."""

    tenant_id: str
    email: str
    username: str
    password_hash: str
    first_name: str
    last_name: str
    phone: str | None = None
    date_of_birth: date | None = None


class ErrorKind(str, Enum):
    missing_field = "missing_field"
    validation = "validation"
    invalid_credentials = "invalid_credentials"
    unauthenticated = "unauthenticated"
    account_disabled = "account_disabled"
    tenant_disabled = "tenant_disabled"
    forbidden = "forbidden"
    not_found = "not_found"
    tenant_not_found = "tenant_not_found"
    conflict = "conflict"
    rate_limited = "rate_limited"
    internal = "internal"


@dataclass(slots=True)
class FieldError:
    field: str
    message: str


@dataclass(slots=True)
class AuthFailure:
    """Expected failure of an identity operation, mapped to HTTP by the API layer."""

    kind: ErrorKind
    message: str
    errors: list[FieldError] = field(default_factory=list)
    retry_after: int | None = None


@dataclass(slots=True)
class LoginSuccess:
    account: Account
    tenant: Tenant
    token: str
    expires_in: int


@dataclass(slots=True)
class TenantSelectionRequired:
    """Identifier matched several tenants and the password verified against the first."""

    identifier: str
    tenants: list[Tenant]
    selection_token: str


@dataclass(slots=True)
class RegistrationSuccess:
    account: Account
    token: str
    expires_in: int


LoginResult = Union[LoginSuccess, TenantSelectionRequired, AuthFailure]
RegistrationResult = Union[RegistrationSuccess, AuthFailure]
