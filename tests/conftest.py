from __future__ import annotations

import os

os.environ.setdefault("BCRYPT_ROUNDS", "4")

import uuid
from dataclasses import replace
from datetime import datetime, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from gym_identity.api.errors import install_error_handlers
from gym_identity.api.routes import router
from gym_identity.config import get_settings
from gym_identity.domain.account import Account, AuditAction, Role, Tenant
from gym_identity.domain.contracts import CreateAccountInput
from gym_identity.domain.service import AuthService
from gym_identity.repository import (
    AuditLogRecord,
    DuplicateEmailError,
    DuplicateTenantError,
    DuplicateUsernameError,
    PasswordResetRecord,
)
from gym_identity.security.passwords import hash_password
from gym_identity.security.rate_limiter import FixedWindowRateLimiter

PASSWORD = "Abcdef12"


class FakeRepository:
    """In-memory repository mimicking Postgres-backed behaviors."""

    def __init__(self) -> None:
        self.tenants: dict[str, Tenant] = {}
        self.accounts: dict[str, Account] = {}
        self.audit_log: list[AuditLogRecord] = []
        self._audit_seq = 0
        self._created_seq = 0
        self.password_resets: dict[str, PasswordResetRecord] = {}
        self._reset_seq = 0

    # helpers used by tests
    def add_tenant(self, tenant_id: str, *, name: str | None = None, active: bool = True) -> Tenant:
        tenant = Tenant(tenant_id=tenant_id, name=name or tenant_id.title(), subdomain=tenant_id, active=active)
        self.tenants[tenant_id] = tenant
        return tenant

    def add_account(
        self,
        tenant_id: str,
        email: str,
        *,
        password: str | None = PASSWORD,
        username: str | None = None,
        role: Role = Role.customer,
        active: bool = True,
    ) -> Account:
        account = Account(
            account_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            email=email,
            password_hash=hash_password(password, 4) if password else None,
            first_name="Test",
            last_name="User",
            role=role,
            username=username,
            active=active,
            created_at=self._next_created_at(),
        )
        self.accounts[account.account_id] = account
        return account

    def _next_created_at(self) -> datetime:
        self._created_seq += 1
        return datetime(2024, 1, 1, tzinfo=timezone.utc).replace(microsecond=self._created_seq)

    # repository protocol
    def get_tenant(self, tenant_ref: str) -> Tenant | None:
        if tenant_ref in self.tenants:
            return self.tenants[tenant_ref]
        for tenant in self.tenants.values():
            if tenant.subdomain == tenant_ref.lower():
                return tenant
        return None

    def create_tenant(self, tenant_id: str) -> Tenant:
        if tenant_id in self.tenants:
            return self.tenants[tenant_id]
        if any(tenant.subdomain == tenant_id.lower() for tenant in self.tenants.values()):
            raise DuplicateTenantError(tenant_id)
        tenant = Tenant(tenant_id=tenant_id, name=tenant_id, subdomain=tenant_id.lower())
        self.tenants[tenant_id] = tenant
        return tenant

    def find_account(self, tenant_id: str, field: str, value: str) -> Account | None:
        for account in self.accounts.values():
            stored = getattr(account, field)
            if account.tenant_id == tenant_id and stored and stored.lower() == value.lower():
                return account
        return None

    def find_accounts_by_identifier(self, field: str, value: str) -> list[tuple[Account, Tenant]]:
        matches = []
        for account in sorted(self.accounts.values(), key=lambda a: (a.created_at, a.account_id)):
            stored = getattr(account, field)
            tenant = self.tenants[account.tenant_id]
            if stored and stored.lower() == value.lower() and tenant.active:
                matches.append((account, tenant))
        return matches

    def get_account(self, account_id: str) -> tuple[Account, Tenant] | None:
        account = self.accounts.get(account_id)
        if account is None:
            return None
        return account, self.tenants[account.tenant_id]

    def username_exists(self, tenant_id: str, username: str) -> bool:
        return self.find_account(tenant_id, "username", username) is not None

    def create_account(self, payload: CreateAccountInput) -> Account:
        if self.find_account(payload.tenant_id, "email", payload.email):
            raise DuplicateEmailError(payload.email)
        if self.username_exists(payload.tenant_id, payload.username):
            raise DuplicateUsernameError(payload.username)
        account = Account(
            account_id=str(uuid.uuid4()),
            tenant_id=payload.tenant_id,
            email=payload.email,
            password_hash=payload.password_hash,
            first_name=payload.first_name,
            last_name=payload.last_name,
            username=payload.username,
            phone=payload.phone,
            date_of_birth=payload.date_of_birth,
            created_at=self._next_created_at(),
        )
        self.accounts[account.account_id] = account
        return account

    def update_last_login(self, account_id: str, at: datetime) -> None:
        self.accounts[account_id].last_login_at = at

    def update_password(self, account_id: str, password_hash: str) -> None:
        self.accounts[account_id].password_hash = password_hash

    def replace_password_reset(
        self, *, account_id: str, tenant_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        self.password_resets = {
            digest: record
            for digest, record in self.password_resets.items()
            if record.account_id != account_id or record.used_at is not None
        }
        self._reset_seq += 1
        self.password_resets[token_hash] = PasswordResetRecord(
            reset_id=self._reset_seq, account_id=account_id, tenant_id=tenant_id, expires_at=expires_at
        )

    def find_password_reset(self, token_hash: str) -> PasswordResetRecord | None:
        return self.password_resets.get(token_hash)

    def complete_password_reset(self, reset_id: int, account_id: str, password_hash: str) -> bool:
        for record in self.password_resets.values():
            if record.reset_id == reset_id and record.used_at is None:
                record.used_at = datetime.now(timezone.utc)
                self.accounts[account_id].password_hash = password_hash
                return True
        return False

    def write_audit_event(
        self,
        *,
        tenant_id: str,
        account_id: str | None,
        action: AuditAction,
        ip_address: str | None = None,
        user_agent: str | None = None,
        metadata: dict | None = None,
    ) -> None:
        self._audit_seq += 1
        self.audit_log.append(
            AuditLogRecord(
                audit_id=self._audit_seq,
                tenant_id=tenant_id,
                account_id=account_id,
                action=action.value,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata=metadata or {},
                created_at=datetime.now(timezone.utc),
            )
        )

    def list_audit_events(
        self,
        *,
        tenant_id: str,
        account_id: str | None = None,
        action: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: tuple[datetime, int] | None = None,
    ):
        results = [record for record in self.audit_log if record.tenant_id == tenant_id]
        if account_id:
            results = [record for record in results if record.account_id == account_id]
        if action:
            results = [record for record in results if record.action == action]
        if created_after:
            results = [record for record in results if record.created_at >= created_after]
        if created_before:
            results = [record for record in results if record.created_at <= created_before]
        results.sort(key=lambda r: (r.created_at, r.audit_id), reverse=True)
        if cursor:
            results = [record for record in results if (record.created_at, record.audit_id) < cursor]
        slice_ = results[:limit]
        next_cursor = None
        if len(results) > limit:
            last = slice_[-1]
            next_cursor = (last.created_at, last.audit_id)
        return slice_, next_cursor


class RecordingEmailService:
    """Captures outbound mail instead of talking to SMTP."""

    def __init__(self) -> None:
        self.welcome: list[str] = []
        self.password_resets: list[tuple[str, str, str]] = []

    def send_welcome_email(self, to_email: str, first_name: str) -> bool:
        self.welcome.append(to_email)
        return True

    def send_password_reset_email(self, to_email: str, first_name: str, reset_token: str, tenant_name: str) -> bool:
        self.password_resets.append((to_email, reset_token, tenant_name))
        return True


@pytest.fixture
def settings():
    return replace(get_settings(), bcrypt_rounds=4, environment="development", allow_tenant_autocreate=True)


@pytest.fixture
def repository() -> FakeRepository:
    repo = FakeRepository()
    repo.add_tenant("acme", name="Acme Gym")
    return repo


@pytest.fixture
def outbox() -> RecordingEmailService:
    return RecordingEmailService()


def build_service(
    repository,
    settings,
    *,
    login_attempts: int = 100,
    register_attempts: int = 100,
    email_service=None,
) -> AuthService:
    return AuthService(
        repository,
        login_limiter=FixedWindowRateLimiter(max_requests=login_attempts, window_seconds=60),
        register_limiter=FixedWindowRateLimiter(max_requests=register_attempts, window_seconds=60),
        email_service=email_service or RecordingEmailService(),
        settings=settings,
    )


def build_client(service: AuthService, **kwargs) -> TestClient:
    app = FastAPI()
    install_error_handlers(app)
    app.include_router(router)
    app.state.auth_service = service
    return TestClient(app, **kwargs)


@pytest.fixture
def service(repository, settings, outbox) -> AuthService:
    return build_service(repository, settings, email_service=outbox)


@pytest.fixture
def api_client(service):
    """Provide a FastAPI test client with isolated state."""
    with build_client(service) as client:
        yield client


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
