"""Identity service orchestrating credential checks, token issuance, and auditing."""

from __future__ import annotations

from base64 import urlsafe_b64decode, urlsafe_b64encode
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import json
import logging
import re
from typing import Any, Iterator, Optional, Tuple

import jwt

from .account import Account, AuditAction, Role, Tenant
from .contracts import (
    AuthFailure,
    CreateAccountInput,
    ErrorKind,
    FieldError,
    LoginInput,
    LoginResult,
    LoginSuccess,
    RegisterInput,
    RegistrationResult,
    RegistrationSuccess,
    RequestContext,
    TenantSelectionRequired,
)
from .usernames import base_username, username_candidates
from .validation import parse_date_of_birth, validate_password_strength, validate_registration
from ..config import Settings, get_settings
from ..metrics import LOGIN_ATTEMPTS, PASSWORD_RESETS, RATE_LIMITED, REGISTRATIONS
from ..notifications import EmailService
from ..repository import (
    AccountRepository,
    AuditLogRecord,
    DuplicateEmailError,
    DuplicateTenantError,
    DuplicateUsernameError,
    LookupField,
    PasswordResetRecord,
)
from ..security.passwords import (
    burn_verification,
    hash_password,
    hash_reset_token,
    new_reset_token,
    verify_password,
)
from ..security.rate_limiter import RateLimiter
from ..security.tokens import (
    TokenClaims,
    decode_access_token,
    decode_selection_token,
    issue_access_token,
    issue_selection_token,
)

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Ugyldig brukernavn/e-post eller passord"
INVALID_RESET_TOKEN = "Ugyldig eller utløpt token"


def login_rate_key(client_ip: str) -> str:
    return f"login:{client_ip}"


def register_rate_key(client_ip: str) -> str:
    return f"register:{client_ip}"


def password_reset_rate_key(client_ip: str) -> str:
    return f"password-reset:{client_ip}"


@dataclass(slots=True)
class AuthenticatedAccount:
    """Account behind a verified bearer token, re-checked against storage."""

    account: Account
    tenant: Tenant


class AuthService:
    """Login, registration and account workflows backed by Postgres storage."""

    def __init__(
        self,
        repository: AccountRepository,
        *,
        login_limiter: RateLimiter,
        register_limiter: RateLimiter,
        email_service: EmailService | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Store dependencies used to orchestrate persistence and token issuance."""
        self._repository = repository
        self._login_limiter = login_limiter
        self._register_limiter = register_limiter
        self._settings = settings or get_settings()
        self._email = email_service or EmailService(self._settings)

    @property
    def settings(self) -> Settings:
        return self._settings

    # -- login ---------------------------------------------------------------

    def login(self, payload: LoginInput, context: RequestContext | None = None) -> LoginResult:
        """Resolve an email or username to an account, possibly across tenants.

        With a tenant hint the lookup is scoped to that tenant. Without one,
        every active tenant is searched. When several tenants match, the
        password is checked against the first match only and the candidate
        tenants are disclosed only if it verifies.
        """
        context = context or RequestContext()
        decision = self._login_limiter.check(login_rate_key(context.client_ip))
        if not decision.allowed:
            RATE_LIMITED.labels(scope="login").inc()
            return self._login_failure(
                ErrorKind.rate_limited,
                "For mange innloggingsforsøk. Prøv igjen senere.",
                retry_after=decision.retry_after_seconds,
            )

        if not payload.password:
            return self._login_failure(ErrorKind.missing_field, "Passord er påkrevd")
        raw_identifier = payload.login_identifier
        if not raw_identifier or not raw_identifier.strip():
            return self._login_failure(ErrorKind.missing_field, "E-post eller brukernavn er påkrevd")

        identifier = raw_identifier.strip().lower()
        field: LookupField = "email" if "@" in identifier else "username"
        tenant_hint = (payload.tenant_id or "").strip()

        if tenant_hint:
            tenant = self._repository.get_tenant(tenant_hint)
            account = self._repository.find_account(tenant.tenant_id, field, identifier) if tenant else None
            if tenant is None or account is None:
                burn_verification(payload.password)
                return self._login_failure(ErrorKind.invalid_credentials, INVALID_CREDENTIALS)
            return self._verify_and_finish(account, tenant, payload.password, context, field, identifier)

        matches = self._repository.find_accounts_by_identifier(field, identifier)
        if not matches:
            burn_verification(payload.password)
            return self._login_failure(ErrorKind.invalid_credentials, INVALID_CREDENTIALS)
        if len(matches) == 1:
            account, tenant = matches[0]
            return self._verify_and_finish(account, tenant, payload.password, context, field, identifier)

        first_account, _ = matches[0]
        if not self._password_matches(first_account, payload.password):
            return self._login_failure(ErrorKind.invalid_credentials, INVALID_CREDENTIALS)

        tenants = [tenant for _, tenant in matches]
        LOGIN_ATTEMPTS.labels(outcome="tenant_selection").inc()
        logger.info("identifier matched %d tenants, awaiting tenant selection", len(tenants))
        return TenantSelectionRequired(
            identifier=identifier,
            tenants=tenants,
            selection_token=issue_selection_token(identifier, [t.tenant_id for t in tenants]),
        )

    def select_tenant(
        self,
        selection_token: str | None,
        tenant_id: str | None,
        context: RequestContext | None = None,
    ) -> LoginResult:
        """Complete an ambiguous login once the client has picked a tenant.

        The selection token proves the password was verified in the preceding
        login call and lists the tenants the caller may choose from.
        """
        context = context or RequestContext()
        decision = self._login_limiter.check(login_rate_key(context.client_ip))
        if not decision.allowed:
            RATE_LIMITED.labels(scope="login").inc()
            return self._login_failure(
                ErrorKind.rate_limited,
                "For mange innloggingsforsøk. Prøv igjen senere.",
                retry_after=decision.retry_after_seconds,
            )
        if not selection_token or not tenant_id:
            return self._login_failure(ErrorKind.missing_field, "Tenant og valgtoken er påkrevd")

        try:
            claims = decode_selection_token(selection_token)
        except jwt.PyJWTError:
            return self._login_failure(ErrorKind.invalid_credentials, INVALID_CREDENTIALS)

        tenant = self._repository.get_tenant(tenant_id)
        if tenant is None or tenant.tenant_id not in claims.tenant_ids:
            return self._login_failure(ErrorKind.invalid_credentials, INVALID_CREDENTIALS)

        field: LookupField = "email" if "@" in claims.identifier else "username"
        account = self._repository.find_account(tenant.tenant_id, field, claims.identifier)
        if account is None:
            return self._login_failure(ErrorKind.invalid_credentials, INVALID_CREDENTIALS)
        return self._finish_login(account, tenant, context, field, claims.identifier, selected=True)

    def _verify_and_finish(
        self,
        account: Account,
        tenant: Tenant,
        password: str,
        context: RequestContext,
        field: LookupField,
        identifier: str,
    ) -> LoginResult:
        if not self._password_matches(account, password):
            return self._login_failure(ErrorKind.invalid_credentials, INVALID_CREDENTIALS)
        return self._finish_login(account, tenant, context, field, identifier)

    def _finish_login(
        self,
        account: Account,
        tenant: Tenant,
        context: RequestContext,
        field: LookupField,
        identifier: str,
        *,
        selected: bool = False,
    ) -> LoginResult:
        if not account.active:
            return self._login_failure(ErrorKind.account_disabled, "Kontoen er deaktivert. Kontakt administrator.")
        if not tenant.active:
            return self._login_failure(ErrorKind.tenant_disabled, "Denne organisasjonen er deaktivert")

        now = datetime.now(timezone.utc)
        try:
            self._repository.update_last_login(account.account_id, now)
            account.last_login_at = now
        except Exception:
            logger.exception("failed to update last login for account %s", account.account_id)

        try:
            self._login_limiter.reset(login_rate_key(context.client_ip))
        except Exception:
            logger.exception("failed to reset login rate limit")

        token, expires_in = issue_access_token(self._claims_for(account))
        self._audit(
            account,
            AuditAction.login,
            context,
            {"loginMethod": field, "identifier": identifier, "tenantSelected": selected},
        )
        LOGIN_ATTEMPTS.labels(outcome="success").inc()
        return LoginSuccess(account=account, tenant=tenant, token=token, expires_in=expires_in)

    def _password_matches(self, account: Account, password: str) -> bool:
        if not account.password_hash:
            logger.critical(
                "account %s in tenant %s has no password hash", account.account_id, account.tenant_id
            )
            burn_verification(password)
            return False
        return verify_password(password, account.password_hash)

    @staticmethod
    def _login_failure(kind: ErrorKind, message: str, retry_after: int | None = None) -> AuthFailure:
        LOGIN_ATTEMPTS.labels(outcome=kind.value).inc()
        return AuthFailure(kind=kind, message=message, retry_after=retry_after)

    # -- registration --------------------------------------------------------

    def register(self, payload: RegisterInput, context: RequestContext | None = None) -> RegistrationResult:
        """Create a customer account inside the requested tenant and sign it in."""
        context = context or RequestContext()
        decision = self._register_limiter.check(register_rate_key(context.client_ip))
        if not decision.allowed:
            RATE_LIMITED.labels(scope="register").inc()
            return self._register_failure(
                ErrorKind.rate_limited,
                "For mange registreringsforsøk. Prøv igjen senere.",
                retry_after=decision.retry_after_seconds,
            )

        errors = validate_registration(payload)
        if errors:
            return self._register_failure(ErrorKind.validation, errors[0].message, errors=errors)

        tenant = self._resolve_registration_tenant(payload.tenant_id.strip())
        if isinstance(tenant, AuthFailure):
            REGISTRATIONS.labels(outcome=tenant.kind.value).inc()
            return tenant
        if not tenant.active:
            return self._register_failure(ErrorKind.tenant_disabled, "Tenant er deaktivert")

        email = payload.email.strip().lower()
        if self._repository.find_account(tenant.tenant_id, "email", email) is not None:
            return self._register_failure(ErrorKind.conflict, "Bruker med denne e-posten eksisterer allerede")

        requested_username = payload.username.strip().lower() if payload.username else None
        if requested_username and self._repository.username_exists(tenant.tenant_id, requested_username):
            return self._register_failure(ErrorKind.conflict, "Dette brukernavnet er allerede tatt")

        draft = CreateAccountInput(
            tenant_id=tenant.tenant_id,
            email=email,
            username="",
            password_hash=hash_password(payload.password, self._settings.bcrypt_rounds),
            first_name=payload.first_name.strip(),
            last_name=payload.last_name.strip(),
            phone=re.sub(r"\s", "", payload.phone) if payload.phone and payload.phone.strip() else None,
            date_of_birth=(
                parse_date_of_birth(payload.date_of_birth.strip())
                if payload.date_of_birth and payload.date_of_birth.strip()
                else None
            ),
        )
        account = self._insert_account(draft, requested_username)
        if isinstance(account, AuthFailure):
            REGISTRATIONS.labels(outcome=account.kind.value).inc()
            return account

        token, expires_in = issue_access_token(self._claims_for(account))

        try:
            self._email.send_welcome_email(account.email, account.first_name)
        except Exception:
            logger.exception("failed to send welcome email for account %s", account.account_id)

        self._audit(
            account,
            AuditAction.register,
            context,
            {"email": account.email, "username": account.username, "role": account.role.value},
        )
        REGISTRATIONS.labels(outcome="success").inc()
        logger.info("registered account %s in tenant %s", account.account_id, account.tenant_id)
        return RegistrationSuccess(account=account, token=token, expires_in=expires_in)

    def _resolve_registration_tenant(self, tenant_ref: str) -> Tenant | AuthFailure:
        tenant = self._repository.get_tenant(tenant_ref)
        if tenant is not None:
            return tenant
        if not self._settings.tenant_autocreate_enabled:
            return AuthFailure(kind=ErrorKind.tenant_not_found, message="Tenant ikke funnet")
        logger.warning("auto-creating tenant %s (%s environment)", tenant_ref, self._settings.environment)
        try:
            return self._repository.create_tenant(tenant_ref)
        except DuplicateTenantError:
            # Subdomain claimed by a concurrent autocreate.
            tenant = self._repository.get_tenant(tenant_ref)
            if tenant is not None:
                return tenant
            logger.warning("subdomain for tenant %s already belongs to another tenant", tenant_ref)
            return AuthFailure(kind=ErrorKind.conflict, message="En tenant med dette subdomenet finnes allerede")

    def _insert_account(self, draft: CreateAccountInput, requested_username: str | None) -> Account | AuthFailure:
        """Insert with the unique constraints as arbiter, advancing generated usernames on conflict."""
        if requested_username:
            candidates: Iterator[str] = iter([requested_username])
        else:
            base = base_username(draft.email, draft.first_name, draft.last_name)
            candidates = self._free_usernames(draft.tenant_id, base)

        for attempt, username in enumerate(candidates):
            if attempt >= self._settings.username_max_retries:
                break
            draft.username = username
            try:
                return self._repository.create_account(draft)
            except DuplicateEmailError:
                return AuthFailure(kind=ErrorKind.conflict, message="Bruker med denne e-posten eksisterer allerede")
            except DuplicateUsernameError:
                if requested_username:
                    return AuthFailure(kind=ErrorKind.conflict, message="Dette brukernavnet er allerede tatt")
                logger.info("username %s claimed concurrently in tenant %s, retrying", username, draft.tenant_id)

        logger.error("gave up generating a username in tenant %s", draft.tenant_id)
        return AuthFailure(kind=ErrorKind.internal, message="Registrering feilet")

    def _free_usernames(self, tenant_id: str, base: str) -> Iterator[str]:
        for candidate in username_candidates(base):
            if not self._repository.username_exists(tenant_id, candidate):
                yield candidate

    @staticmethod
    def _register_failure(
        kind: ErrorKind,
        message: str,
        *,
        errors: list[FieldError] | None = None,
        retry_after: int | None = None,
    ) -> AuthFailure:
        REGISTRATIONS.labels(outcome=kind.value).inc()
        return AuthFailure(kind=kind, message=message, errors=errors or [], retry_after=retry_after)

    # -- authenticated account -----------------------------------------------

    def authenticate(self, token: str | None) -> AuthenticatedAccount | AuthFailure:
        """Verify a bearer token and re-check the account and tenant it names."""
        if not token:
            return AuthFailure(kind=ErrorKind.unauthenticated, message="Ingen tilgangstoken")
        try:
            claims = decode_access_token(token)
        except jwt.PyJWTError:
            return AuthFailure(kind=ErrorKind.unauthenticated, message="Ugyldig eller utløpt token")

        found = self._repository.get_account(claims.account_id)
        if found is None:
            return AuthFailure(kind=ErrorKind.unauthenticated, message="Bruker ikke funnet")
        account, tenant = found
        if not account.active:
            return AuthFailure(kind=ErrorKind.account_disabled, message="Kontoen er deaktivert")
        if account.role is not Role.super_admin and not tenant.active:
            return AuthFailure(kind=ErrorKind.tenant_disabled, message="Organisasjonen er deaktivert")
        return AuthenticatedAccount(account=account, tenant=tenant)

    def change_password(
        self,
        principal: AuthenticatedAccount,
        current_password: str | None,
        new_password: str | None,
        context: RequestContext | None = None,
    ) -> AuthFailure | None:
        """Replace the caller's password; returns ``None`` on success."""
        if not current_password or not new_password:
            return AuthFailure(kind=ErrorKind.missing_field, message="Både nåværende og nytt passord er påkrevd")

        account = principal.account
        if not self._password_matches(account, current_password):
            return AuthFailure(kind=ErrorKind.invalid_credentials, message="Nåværende passord er feil")

        strength = validate_password_strength(new_password)
        if not strength.valid:
            message = strength.message or "Ugyldig passord"
            return AuthFailure(
                kind=ErrorKind.validation,
                message=message,
                errors=[FieldError("newPassword", message)],
            )

        new_hash = hash_password(new_password, self._settings.bcrypt_rounds)
        self._repository.update_password(account.account_id, new_hash)
        account.password_hash = new_hash
        self._audit(account, AuditAction.password_change, context or RequestContext(), {})
        return None

    # -- password reset ------------------------------------------------------

    def request_password_reset(
        self,
        email: str | None,
        tenant_id: str | None = None,
        context: RequestContext | None = None,
    ) -> AuthFailure | None:
        """Email a one-time reset link to every active account with this address.

        Returns ``None`` whether or not an account matched, so callers cannot
        tell which addresses are registered.
        """
        context = context or RequestContext()
        failure = self._check_reset_rate_limit(context)
        if failure is not None:
            return failure
        if not email or not email.strip():
            return AuthFailure(kind=ErrorKind.missing_field, message="E-postadresse er påkrevd")

        address = email.strip().lower()
        if tenant_id and tenant_id.strip():
            tenant = self._repository.get_tenant(tenant_id.strip())
            account = self._repository.find_account(tenant.tenant_id, "email", address) if tenant else None
            matches = [(account, tenant)] if account is not None and tenant is not None and tenant.active else []
        else:
            matches = self._repository.find_accounts_by_identifier("email", address)

        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self._settings.password_reset_ttl_seconds)
        sent = 0
        for account, tenant in matches:
            if not account.active:
                continue
            token, token_hash = new_reset_token()
            self._repository.replace_password_reset(
                account_id=account.account_id,
                tenant_id=account.tenant_id,
                token_hash=token_hash,
                expires_at=expires_at,
            )
            try:
                self._email.send_password_reset_email(account.email, account.first_name, token, tenant.name)
            except Exception:
                logger.exception("failed to send password reset email for account %s", account.account_id)
            sent += 1

        PASSWORD_RESETS.labels(stage="request", outcome="sent" if sent else "no_match").inc()
        logger.info("password reset requested, %d account(s) notified", sent)
        return None

    def verify_password_reset(self, token: str | None) -> Account | AuthFailure:
        """Return the account an unused, unexpired reset token belongs to."""
        if not token:
            return AuthFailure(kind=ErrorKind.missing_field, message="Token er påkrevd")
        found = self._resolve_reset_token(token)
        if isinstance(found, AuthFailure):
            PASSWORD_RESETS.labels(stage="verify", outcome=found.kind.value).inc()
            return found
        _, account = found
        return account

    def reset_password(
        self,
        token: str | None,
        new_password: str | None,
        context: RequestContext | None = None,
    ) -> AuthFailure | None:
        """Set a new password using a reset token. The token can be used once."""
        context = context or RequestContext()
        failure = self._check_reset_rate_limit(context)
        if failure is not None:
            return failure
        if not token or not new_password:
            return AuthFailure(kind=ErrorKind.missing_field, message="Token og nytt passord er påkrevd")

        strength = validate_password_strength(new_password)
        if not strength.valid:
            message = strength.message or "Ugyldig passord"
            return AuthFailure(kind=ErrorKind.validation, message=message, errors=[FieldError("newPassword", message)])

        found = self._resolve_reset_token(token)
        if isinstance(found, AuthFailure):
            PASSWORD_RESETS.labels(stage="reset", outcome=found.kind.value).inc()
            return found
        record, account = found

        new_hash = hash_password(new_password, self._settings.bcrypt_rounds)
        if not self._repository.complete_password_reset(record.reset_id, account.account_id, new_hash):
            PASSWORD_RESETS.labels(stage="reset", outcome="reused").inc()
            return AuthFailure(kind=ErrorKind.validation, message=INVALID_RESET_TOKEN)
        account.password_hash = new_hash
        self._audit(account, AuditAction.password_reset, context, {})
        PASSWORD_RESETS.labels(stage="reset", outcome="success").inc()
        return None

    def _resolve_reset_token(self, token: str) -> tuple[PasswordResetRecord, Account] | AuthFailure:
        record = self._repository.find_password_reset(hash_reset_token(token))
        if record is None or record.used_at is not None or record.expires_at <= datetime.now(timezone.utc):
            return AuthFailure(kind=ErrorKind.validation, message=INVALID_RESET_TOKEN)
        found = self._repository.get_account(record.account_id)
        if found is None:
            return AuthFailure(kind=ErrorKind.not_found, message="Bruker ikke funnet")
        account, _ = found
        if not account.active:
            return AuthFailure(kind=ErrorKind.account_disabled, message="Kontoen er deaktivert. Kontakt administrator.")
        return record, account

    def _check_reset_rate_limit(self, context: RequestContext) -> AuthFailure | None:
        decision = self._login_limiter.check(password_reset_rate_key(context.client_ip))
        if decision.allowed:
            return None
        RATE_LIMITED.labels(scope="password_reset").inc()
        return AuthFailure(
            kind=ErrorKind.rate_limited,
            message="For mange forsøk. Prøv igjen senere.",
            retry_after=decision.retry_after_seconds,
        )

    # -- rate limits & audit -------------------------------------------------

    def reset_rate_limit(self, scope: str, client_ip: str) -> None:
        """Administrative reset of a login, registration or password reset counter."""
        if scope == "login":
            self._login_limiter.reset(login_rate_key(client_ip))
        elif scope == "register":
            self._register_limiter.reset(register_rate_key(client_ip))
        elif scope == "password_reset":
            self._login_limiter.reset(password_reset_rate_key(client_ip))
        else:
            raise ValueError(f"unknown rate limit scope {scope!r}")
        logger.info("rate limit %s reset for %s", scope, client_ip)

    def _audit(
        self,
        account: Account,
        action: AuditAction,
        context: RequestContext,
        metadata: dict[str, Any],
    ) -> None:
        try:
            self._repository.write_audit_event(
                tenant_id=account.tenant_id,
                account_id=account.account_id,
                action=action,
                ip_address=context.client_ip,
                user_agent=context.user_agent,
                metadata=metadata,
            )
        except Exception:
            logger.exception("failed to write %s audit record for %s", action.value, account.account_id)

    def list_audit_events(
        self,
        *,
        tenant_id: str,
        account_id: str | None = None,
        action: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[AuditLogRecord], str | None]:
        """Return audit log records for the tenant with optional filters and cursor pagination."""
        decoded_cursor: Optional[Tuple[datetime, int]] = None
        if cursor:
            decoded_cursor = self._decode_cursor(cursor)
        records, next_cursor_tuple = self._repository.list_audit_events(
            tenant_id=tenant_id,
            account_id=account_id,
            action=action,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            cursor=decoded_cursor,
        )
        next_cursor = self._encode_cursor(next_cursor_tuple) if next_cursor_tuple else None
        return records, next_cursor

    @staticmethod
    def _claims_for(account: Account) -> TokenClaims:
        return TokenClaims(
            account_id=account.account_id,
            tenant_id=account.tenant_id,
            email=account.email,
            role=account.role.value,
        )

    def _encode_cursor(self, cursor: Tuple[datetime, int] | None) -> str | None:
        if cursor is None:
            return None
        created_at, audit_id = cursor
        payload = json.dumps({"created_at": created_at.isoformat(), "audit_id": audit_id})
        return urlsafe_b64encode(payload.encode("utf-8")).decode("utf-8")

    def _decode_cursor(self, cursor: str) -> Tuple[datetime, int]:
        try:
            data = json.loads(urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8"))
            created_at = datetime.fromisoformat(data["created_at"])
            audit_id = int(data["audit_id"])
            return created_at, audit_id
        except Exception as exc:
            raise ValueError("invalid cursor") from exc
