"""Username derivation for accounts created without an explicit username."""

from __future__ import annotations

import re
from itertools import count
from typing import Iterator

_NON_ALNUM = re.compile(r"[^a-z0-9]")
MIN_BASE_LENGTH = 3
FALLBACK_BASE = "user"


def _clean(value: str) -> str:
    return _NON_ALNUM.sub("", value.lower())


def base_username(email: str, first_name: str = "", last_name: str = "") -> str:
    """Return the collision-free stem for a generated username.

    The email local-part is used when it yields at least three characters;
    shorter stems fall back to the account holder's name.
    """
    stem = _clean(email.split("@", 1)[0])
    if len(stem) >= MIN_BASE_LENGTH:
        return stem
    from_name = _clean(f"{first_name}{last_name}")
    return from_name or stem or FALLBACK_BASE


def username_candidates(base: str) -> Iterator[str]:
    """Yield ``base``, ``base1``, ``base2``, ... without end."""
    yield base
    for suffix in count(1):
        yield f"{base}{suffix}"
