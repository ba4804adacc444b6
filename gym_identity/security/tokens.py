"""Utilities for issuing and validating application JWTs."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

import jwt

from ..config import get_settings

ACCESS_TOKEN_TYPE = "access"
SELECTION_TOKEN_TYPE = "tenant_selection"
ALGORITHM = "HS256"


@dataclass(slots=True, frozen=True)
class TokenClaims:
    """The fixed claim set carried by an access token."""

    account_id: str
    tenant_id: str
    email: str
    role: str


@dataclass(slots=True, frozen=True)
class SelectionClaims:
    identifier: str
    tenant_ids: tuple[str, ...]


def _encode(payload: dict[str, Any], ttl_seconds: int) -> str:
    settings = get_settings()
    now = int(time.time())
    payload = {**payload, "iss": settings.jwt_issuer, "iat": now, "exp": now + ttl_seconds}
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGORITHM)


def _decode(token: str, expected_type: str) -> dict[str, Any]:
    settings = get_settings()
    payload = jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[ALGORITHM],
        issuer=settings.jwt_issuer,
        options={"require": ["exp", "iat", "iss"]},
    )
    if payload.get("typ") != expected_type:
        raise jwt.InvalidTokenError("unexpected token type")
    return payload


def issue_access_token(claims: TokenClaims) -> tuple[str, int]:
    """Create a signed JWT representing an authenticated account.

    Parameters
    ----------
    claims:
        Account identity to embed; the account id becomes the `sub` claim.

    Returns
    -------
    tuple[str, int]
        A tuple containing the encoded JWT string and its TTL (in seconds).
    """

    expires_in = get_settings().jwt_ttl_seconds
    token = _encode(
        {
            "typ": ACCESS_TOKEN_TYPE,
            "sub": claims.account_id,
            "tenant_id": claims.tenant_id,
            "email": claims.email,
            "role": claims.role,
        },
        expires_in,
    )
    return token, expires_in


def decode_access_token(token: str) -> TokenClaims:
    """Decode and verify an access token.

    Raises
    ------
    jwt.PyJWTError
        Propagated when the token is invalid, expired, of the wrong type, or signed by another issuer.
    """

    payload = _decode(token, ACCESS_TOKEN_TYPE)
    try:
        return TokenClaims(
            account_id=str(payload["sub"]),
            tenant_id=str(payload["tenant_id"]),
            email=str(payload["email"]),
            role=str(payload["role"]),
        )
    except KeyError as exc:
        raise jwt.InvalidTokenError(f"missing claim {exc}") from exc


def issue_selection_token(identifier: str, tenant_ids: list[str]) -> str:
    """Bind a password-verified identifier to the tenants it may choose between."""
    return _encode(
        {"typ": SELECTION_TOKEN_TYPE, "sub": identifier, "tenants": list(tenant_ids)},
        get_settings().selection_token_ttl_seconds,
    )


def decode_selection_token(token: str) -> SelectionClaims:
    payload = _decode(token, SELECTION_TOKEN_TYPE)
    tenants = payload.get("tenants")
    if not isinstance(tenants, list) or not payload.get("sub"):
        raise jwt.InvalidTokenError("malformed selection token")
    return SelectionClaims(identifier=str(payload["sub"]), tenant_ids=tuple(str(t) for t in tenants))
