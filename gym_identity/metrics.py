"""Prometheus counters for identity workflows."""

from __future__ import annotations

from prometheus_client import Counter

LOGIN_ATTEMPTS = Counter(
    "identity_login_attempts_total",
    "Login attempts grouped by outcome.",
    ["outcome"],
)
REGISTRATIONS = Counter(
    "identity_registrations_total",
    "Registration attempts grouped by outcome.",
    ["outcome"],
)
RATE_LIMITED = Counter(
    "identity_rate_limited_total",
    "Requests rejected by a rate limiter.",
    ["scope"],
)
PASSWORD_RESETS = Counter(
    "identity_password_resets_total",
    "Password reset steps grouped by stage and outcome.",
    ["stage", "outcome"],
)
