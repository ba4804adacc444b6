from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum


class Role(str, Enum):
    customer = "CUSTOMER"
    trainer = "TRAINER"
    admin = "ADMIN"
    super_admin = "SUPER_ADMIN"


class AuditAction(str, Enum):
    register = "REGISTER"
    login = "LOGIN"
    transfer = "TRANSFER"
    password_change = "PASSWORD_CHANGE"
    password_reset = "PASSWORD_RESET"


@dataclass(slots=True)
class Tenant:
    """Isolation boundary that every account belongs to."""

    tenant_id: str
    name: str
    subdomain: str
    active: bool = True


@dataclass(slots=True)
class Account:
    """Aggregate root for one user's credentials and profile within a tenant."""

    account_id: str
    tenant_id: str
    email: str
    password_hash: str | None
    first_name: str
    last_name: str
    role: Role = Role.customer
    username: str | None = None
    phone: str | None = None
    date_of_birth: date | None = None
    active: bool = True
    last_login_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()
