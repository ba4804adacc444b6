"""Reusable field validators.

Each validator returns a :class:`ValidationResult` rather than raising, so the
registration flow can collect every problem in one pass and the same checks
can be reused by the password-change and admin paths.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime

from email_validator import EmailNotValidError, validate_email as _check_email

from .account import Role
from .contracts import FieldError, RegisterInput

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{3,20}$")
PHONE_PATTERN = re.compile(r"^(\+47)?[0-9]{8}$")
NAME_PATTERN = re.compile(r"^[^\W\d_]+(?:[ '\-.]{1,2}[^\W\d_]+)*\.?$")

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
# bcrypt only accepts 72 bytes of input.
PASSWORD_MAX_BYTES = 72
NAME_MAX_LENGTH = 50
MIN_AGE_YEARS = 13
MAX_AGE_YEARS = 120


@dataclass(slots=True, frozen=True)
class ValidationResult:
    valid: bool
    message: str | None = None


_OK = ValidationResult(True)


def _fail(message: str) -> ValidationResult:
    return ValidationResult(False, message)


def validate_email(email: str | None) -> ValidationResult:
    if not email or not email.strip():
        return _fail("E-post er påkrevd")
    try:
        _check_email(email.strip(), check_deliverability=False)
    except EmailNotValidError:
        return _fail("Ugyldig e-postadresse")
    return _OK


def validate_password_strength(password: str | None) -> ValidationResult:
    if not password:
        return _fail("Passord er påkrevd")
    if len(password) < PASSWORD_MIN_LENGTH:
        return _fail("Passordet må være minst 8 tegn langt")
    if len(password) > PASSWORD_MAX_LENGTH:
        return _fail("Passordet kan ikke være lengre enn 128 tegn")
    if len(password.encode("utf-8")) > PASSWORD_MAX_BYTES:
        return _fail("Passordet er for langt (maks 72 byte)")
    if not re.search(r"[A-Z]", password):
        return _fail("Passordet må inneholde minst én stor bokstav")
    if not re.search(r"[a-z]", password):
        return _fail("Passordet må inneholde minst én liten bokstav")
    if not re.search(r"[0-9]", password):
        return _fail("Passordet må inneholde minst ett tall")
    return _OK


def validate_username(username: str | None) -> ValidationResult:
    if not username or not username.strip():
        return _fail("Brukernavn er påkrevd")
    if not USERNAME_PATTERN.match(username.strip()):
        return _fail("Brukernavn må være 3-20 tegn og kan bare inneholde bokstaver, tall og understrek")
    return _OK


def validate_name(value: str | None, label: str) -> ValidationResult:
    if not value or not value.strip():
        return _fail(f"{label} er påkrevd")
    trimmed = value.strip()
    if len(trimmed) > NAME_MAX_LENGTH:
        return _fail(f"{label} kan ikke være lengre enn {NAME_MAX_LENGTH} tegn")
    if not NAME_PATTERN.match(trimmed):
        return _fail(f"{label} kan bare inneholde bokstaver, mellomrom og bindestrek")
    return _OK


def validate_phone(phone: str | None) -> ValidationResult:
    """Phone is optional; when present it must be a Norwegian number."""
    if not phone or not phone.strip():
        return _OK
    cleaned = re.sub(r"\s", "", phone)
    if not PHONE_PATTERN.match(cleaned):
        return _fail("Ugyldig telefonnummer. Bruk formatet: +47 12345678 eller 12345678")
    return _OK


def parse_date_of_birth(value: str) -> date:
    """Parse an ISO date or datetime string into a ``date``."""
    try:
        return date.fromisoformat(value)
    except ValueError:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date()


def _years_ago(today: date, years: int) -> date:
    try:
        return today.replace(year=today.year - years)
    except ValueError:
        # 29 February
        return today.replace(year=today.year - years, day=28)


def validate_date_of_birth(value: str | None, *, today: date | None = None) -> ValidationResult:
    if not value or not value.strip():
        return _OK
    try:
        born = parse_date_of_birth(value.strip())
    except ValueError:
        return _fail("Ugyldig fødselsdato format")
    today = today or date.today()
    if born < _years_ago(today, MAX_AGE_YEARS):
        return _fail("Ugyldig fødselsdato (for gammel)")
    if born > _years_ago(today, MIN_AGE_YEARS):
        return _fail("Bruker må være minst 13 år gammel")
    return _OK


def validate_role(role: str | None) -> ValidationResult:
    allowed = [member.value for member in Role]
    if not role:
        return _fail("Rolle er påkrevd")
    if role not in allowed:
        return _fail(f"Rollen må være en av følgende: {', '.join(allowed)}")
    return _OK


def validate_registration(payload: RegisterInput) -> list[FieldError]:
    """Run every registration check and return the failures in field order."""
    checks = [
        ("email", validate_email(payload.email)),
        ("password", validate_password_strength(payload.password)),
        ("firstName", validate_name(payload.first_name, "Fornavn")),
        ("lastName", validate_name(payload.last_name, "Etternavn")),
        ("phone", validate_phone(payload.phone)),
        ("dateOfBirth", validate_date_of_birth(payload.date_of_birth)),
    ]
    if payload.username:
        checks.append(("username", validate_username(payload.username)))
    if not payload.tenant_id or not payload.tenant_id.strip():
        checks.append(("tenantId", _fail("Tenant ID er påkrevd")))
    return [FieldError(field, result.message or "") for field, result in checks if not result.valid]
