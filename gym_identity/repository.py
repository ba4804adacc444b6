"""Database repository for tenants, accounts and the activity audit log."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Literal, Optional, Tuple

from psycopg import errors as pg_errors
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .domain.account import Account, AuditAction, Role, Tenant
from .domain.contracts import CreateAccountInput

LookupField = Literal["email", "username"]

_ACCOUNT_COLUMNS = """
    a.account_id, a.tenant_id, a.email, a.password_hash, a.first_name, a.last_name,
    a.role, a.username, a.phone, a.date_of_birth, a.active, a.last_login_at, a.created_at
"""
_TENANT_COLUMNS = "t.tenant_id, t.name, t.subdomain, t.active"

EMAIL_CONSTRAINT = "accounts_tenant_email_key"
USERNAME_CONSTRAINT = "accounts_tenant_username_key"


class DuplicateEmailError(Exception):
    """Raised when (tenant, email) already exists."""


class DuplicateUsernameError(Exception):
    """Raised when (tenant, username) already exists."""


class DuplicateTenantError(Exception):
    """Raised when a new tenant's subdomain is already taken."""


@dataclass(slots=True)
class AuditLogRecord:
    """Row projection for items in activity_log."""

    audit_id: int
    tenant_id: str
    account_id: str | None
    action: str
    ip_address: str | None
    user_agent: str | None
    metadata: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class PasswordResetRecord:
    """Row projection for items in password_resets."""

    reset_id: int
    account_id: str
    tenant_id: str
    expires_at: datetime
    used_at: datetime | None = None


class AccountRepository:
    """Postgres-backed tenant and account persistence."""

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    def get_tenant(self, tenant_ref: str) -> Tenant | None:
        """Look a tenant up by id or subdomain."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    SELECT {_TENANT_COLUMNS}
                    FROM tenants t
                    WHERE t.tenant_id = %s OR t.subdomain = %s
                    ORDER BY (t.tenant_id = %s) DESC
                    LIMIT 1
                    """,
                    (tenant_ref, tenant_ref.lower(), tenant_ref),
                )
                row = cur.fetchone()
        return self._map_tenant(row) if row else None

    def create_tenant(self, tenant_id: str) -> Tenant:
        """Create an active tenant named after its id, reusing a concurrent insert.

        Raises :class:`DuplicateTenantError` when another tenant already owns
        the derived subdomain.
        """
        try:
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        """
                        INSERT INTO tenants (tenant_id, name, subdomain, email, active)
                        VALUES (%s, %s, %s, %s, TRUE)
                        ON CONFLICT (tenant_id) DO UPDATE SET tenant_id = EXCLUDED.tenant_id
                        RETURNING tenant_id, name, subdomain, active
                        """,
                        (tenant_id, tenant_id, tenant_id.lower(), f"admin@{tenant_id}.com"),
                    )
                    row = cur.fetchone()
                    conn.commit()
        except pg_errors.UniqueViolation as exc:
            raise DuplicateTenantError(tenant_id) from exc
        return self._map_tenant(row)

    def find_account(self, tenant_id: str, field: LookupField, value: str) -> Account | None:
        """Return the account matching ``field`` inside a single tenant."""
        column = self._lookup_column(field)
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute("SELECT set_config('app.tenant_id', %s, true)", (tenant_id,))
                cur.execute(
                    f"""
                    SELECT {_ACCOUNT_COLUMNS}
                    FROM accounts a
                    WHERE a.tenant_id = %s AND lower(a.{column}) = %s
                    LIMIT 1
                    """,
                    (tenant_id, value.lower()),
                )
                row = cur.fetchone()
        return self._map_account(row) if row else None

    def find_accounts_by_identifier(
        self, field: LookupField, value: str
    ) -> list[tuple[Account, Tenant]]:
        """Cross-tenant search used by the ambiguous-login path; inactive tenants are skipped."""
        column = self._lookup_column(field)
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    SELECT {_ACCOUNT_COLUMNS}, {_TENANT_COLUMNS}
                    FROM accounts a
                    JOIN tenants t ON t.tenant_id = a.tenant_id
                    WHERE lower(a.{column}) = %s AND t.active
                    ORDER BY a.created_at, a.account_id
                    """,
                    (value.lower(),),
                )
                rows = cur.fetchall()
        return [(self._map_account(row[:13]), self._map_tenant(row[13:])) for row in rows]

    def get_account(self, account_id: str) -> tuple[Account, Tenant] | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    SELECT {_ACCOUNT_COLUMNS}, {_TENANT_COLUMNS}
                    FROM accounts a
                    JOIN tenants t ON t.tenant_id = a.tenant_id
                    WHERE a.account_id = %s
                    """,
                    (account_id,),
                )
                row = cur.fetchone()
        if not row:
            return None
        return self._map_account(row[:13]), self._map_tenant(row[13:])

    def username_exists(self, tenant_id: str, username: str) -> bool:
        return self.find_account(tenant_id, "username", username) is not None

    def create_account(self, payload: CreateAccountInput) -> Account:
        """Insert a customer account.

        The (tenant, email) and (tenant, username) unique constraints are the
        source of truth; violations surface as :class:`DuplicateEmailError` or
        :class:`DuplicateUsernameError`.
        """
        account_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        try:
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute("SELECT set_config('app.tenant_id', %s, true)", (payload.tenant_id,))
                    cur.execute(
                        """
                        INSERT INTO accounts (
                            account_id, tenant_id, email, username, password_hash,
                            first_name, last_name, phone, date_of_birth, role, active, created_at
                        )
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, TRUE, %s)
                        """,
                        (
                            account_id,
                            payload.tenant_id,
                            payload.email,
                            payload.username,
                            payload.password_hash,
                            payload.first_name,
                            payload.last_name,
                            payload.phone,
                            payload.date_of_birth,
                            Role.customer.value,
                            now,
                        ),
                    )
                    conn.commit()
        except pg_errors.UniqueViolation as exc:
            constraint = exc.diag.constraint_name
            if constraint == USERNAME_CONSTRAINT:
                raise DuplicateUsernameError(payload.username) from exc
            if constraint == EMAIL_CONSTRAINT:
                raise DuplicateEmailError(payload.email) from exc
            raise

        return Account(
            account_id=account_id,
            tenant_id=payload.tenant_id,
            email=payload.email,
            password_hash=payload.password_hash,
            first_name=payload.first_name,
            last_name=payload.last_name,
            role=Role.customer,
            username=payload.username,
            phone=payload.phone,
            date_of_birth=payload.date_of_birth,
            active=True,
            created_at=now,
        )

    def update_last_login(self, account_id: str, at: datetime) -> None:
        self._execute("UPDATE accounts SET last_login_at = %s WHERE account_id = %s", (at, account_id))

    def update_password(self, account_id: str, password_hash: str) -> None:
        self._execute(
            "UPDATE accounts SET password_hash = %s, updated_at = NOW() WHERE account_id = %s",
            (password_hash, account_id),
        )

    def replace_password_reset(
        self, *, account_id: str, tenant_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        """Store a new reset token digest, discarding the account's unused ones."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM password_resets WHERE account_id = %s AND used_at IS NULL",
                    (account_id,),
                )
                cur.execute(
                    """
                    INSERT INTO password_resets (account_id, tenant_id, token_hash, expires_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (account_id, tenant_id, token_hash, expires_at),
                )
                conn.commit()

    def find_password_reset(self, token_hash: str) -> PasswordResetRecord | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT reset_id, account_id, tenant_id, expires_at, used_at
                    FROM password_resets
                    WHERE token_hash = %s
                    """,
                    (token_hash,),
                )
                row = cur.fetchone()
        if not row:
            return None
        return PasswordResetRecord(
            reset_id=row[0], account_id=row[1], tenant_id=row[2], expires_at=row[3], used_at=row[4]
        )

    def complete_password_reset(self, reset_id: int, account_id: str, password_hash: str) -> bool:
        """Consume the token and store the new hash atomically.

        Returns ``False`` when the token was already used.
        """
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE password_resets SET used_at = NOW()
                    WHERE reset_id = %s AND used_at IS NULL
                    """,
                    (reset_id,),
                )
                if cur.rowcount != 1:
                    conn.rollback()
                    return False
                cur.execute(
                    "UPDATE accounts SET password_hash = %s, updated_at = NOW() WHERE account_id = %s",
                    (password_hash, account_id),
                )
                conn.commit()
        return True

    def write_audit_event(
        self,
        *,
        tenant_id: str,
        account_id: str | None,
        action: AuditAction,
        ip_address: str | None = None,
        user_agent: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Append an activity record. Records are never updated or deleted here."""
        self._execute(
            """
            INSERT INTO activity_log (tenant_id, account_id, action, ip_address, user_agent, metadata)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (tenant_id, account_id, action.value, ip_address, user_agent, Json(metadata or {})),
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
        cursor: Tuple[datetime, int] | None = None,
    ) -> tuple[list[AuditLogRecord], Optional[Tuple[datetime, int]]]:
        """Return audit log entries scoped to a tenant with optional filters and cursor pagination."""
        limit = max(1, min(limit, 100))
        clauses = ["tenant_id = %s"]
        params: list[Any] = [tenant_id]

        if account_id:
            clauses.append("account_id = %s")
            params.append(account_id)
        if action:
            clauses.append("action = %s")
            params.append(action)
        if created_after:
            clauses.append("created_at >= %s")
            params.append(created_after)
        if created_before:
            clauses.append("created_at <= %s")
            params.append(created_before)
        if cursor:
            clauses.append("(created_at, audit_id) < (%s, %s)")
            params.extend(cursor)

        where_sql = " AND ".join(clauses)
        query = f"""
            SELECT audit_id, tenant_id, account_id, action, ip_address, user_agent, metadata, created_at
            FROM activity_log
            WHERE {where_sql}
            ORDER BY created_at DESC, audit_id DESC
            LIMIT %s
        """
        params.append(limit)

        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute("SELECT set_config('app.tenant_id', %s, true)", (tenant_id,))
                cur.execute(query, params)
                records = [
                    AuditLogRecord(
                        audit_id=row[0],
                        tenant_id=row[1],
                        account_id=row[2],
                        action=row[3],
                        ip_address=row[4],
                        user_agent=row[5],
                        metadata=row[6] or {},
                        created_at=row[7],
                    )
                    for row in cur.fetchall()
                ]

        next_cursor: Tuple[datetime, int] | None = None
        if len(records) == limit:
            last = records[-1]
            next_cursor = (last.created_at, last.audit_id)
        return records, next_cursor

    def _execute(self, sql: str, params: tuple) -> None:
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                conn.commit()

    @staticmethod
    def _lookup_column(field: LookupField) -> str:
        if field not in ("email", "username"):
            raise ValueError(f"unsupported lookup field {field!r}")
        return field

    @staticmethod
    def _map_tenant(row: tuple) -> Tenant:
        return Tenant(tenant_id=row[0], name=row[1], subdomain=row[2], active=row[3])

    @staticmethod
    def _map_account(row: tuple) -> Account:
        """Convert a raw database tuple into the domain ``Account`` dataclass."""
        born = row[9]
        return Account(
            account_id=row[0],
            tenant_id=row[1],
            email=row[2],
            password_hash=row[3],
            first_name=row[4],
            last_name=row[5],
            role=Role(row[6]),
            username=row[7],
            phone=row[8],
            date_of_birth=born if isinstance(born, date) else None,
            active=row[10],
            last_login_at=row[11],
            created_at=row[12],
        )
