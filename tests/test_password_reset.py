from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

from conftest import PASSWORD, build_client, build_service
from gym_identity.security.passwords import hash_reset_token, verify_password

GENERIC_REQUEST_MESSAGE = "Hvis e-postadressen finnes i systemet, har vi sendt en tilbakestillingslenke."
NEW_PASSWORD = "Fresh-Start9"


def _request_reset(client, email: str, **extra):
    return client.post("/password-reset/request", json={"email": email, **extra})


def _reset(client, token: str, new_password: str = NEW_PASSWORD):
    return client.post("/password-reset/reset", json={"token": token, "newPassword": new_password})


def test_request_answers_the_same_for_unknown_addresses(api_client, repository, outbox):
    repository.add_account("acme", "member@example.com")

    known = _request_reset(api_client, "Member@Example.com")
    unknown = _request_reset(api_client, "ghost@example.com")

    assert known.status_code == unknown.status_code == 200
    assert known.json() == unknown.json() == {"success": True, "message": GENERIC_REQUEST_MESSAGE}
    assert [(email, tenant) for email, _, tenant in outbox.password_resets] == [("member@example.com", "Acme Gym")]


def test_request_requires_email(api_client):
    response = api_client.post("/password-reset/request", json={})

    assert response.status_code == 400
    assert response.json()["error"] == "E-postadresse er påkrevd"


def test_only_the_token_digest_is_stored(api_client, repository, outbox):
    repository.add_account("acme", "member@example.com")

    _request_reset(api_client, "member@example.com")

    (_, token, _), = outbox.password_resets
    assert list(repository.password_resets) == [hash_reset_token(token)]
    assert token not in repository.password_resets


def test_verify_reports_the_account_email(api_client, repository, outbox):
    repository.add_account("acme", "member@example.com")
    _request_reset(api_client, "member@example.com")
    (_, token, _), = outbox.password_resets

    valid = api_client.get(f"/password-reset/verify/{token}")
    bogus = api_client.get("/password-reset/verify/not-a-token")

    assert valid.status_code == 200
    assert valid.json() == {"success": True, "data": {"email": "member@example.com", "valid": True}}
    assert bogus.status_code == 400
    assert bogus.json() == {"success": False, "error": "Ugyldig eller utløpt token"}


def test_reset_changes_password_once(api_client, repository, outbox):
    repository.add_account("acme", "member@example.com")
    _request_reset(api_client, "member@example.com")
    (_, token, _), = outbox.password_resets

    first = _reset(api_client, token)
    second = _reset(api_client, token, "Another-Pass7")

    assert first.status_code == 200
    assert second.status_code == 400
    old = api_client.post("/auth/login", json={"identifier": "member@example.com", "password": PASSWORD})
    new = api_client.post("/auth/login", json={"identifier": "member@example.com", "password": NEW_PASSWORD})
    assert old.status_code == 401
    assert new.status_code == 200
    assert "PASSWORD_RESET" in [record.action for record in repository.audit_log]


def test_new_request_invalidates_previous_token(api_client, repository, outbox):
    repository.add_account("acme", "member@example.com")
    _request_reset(api_client, "member@example.com")
    _request_reset(api_client, "member@example.com")
    (_, stale, _), (_, fresh, _) = outbox.password_resets

    assert _reset(api_client, stale).status_code == 400
    assert _reset(api_client, fresh).status_code == 200


def test_expired_token_is_rejected(api_client, repository, outbox):
    repository.add_account("acme", "member@example.com")
    _request_reset(api_client, "member@example.com")
    (_, token, _), = outbox.password_resets
    record = repository.password_resets[hash_reset_token(token)]
    record.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)

    assert api_client.get(f"/password-reset/verify/{token}").status_code == 400
    assert _reset(api_client, token).status_code == 400


def test_reset_validates_new_password(api_client, repository, outbox):
    repository.add_account("acme", "member@example.com")
    _request_reset(api_client, "member@example.com")
    (_, token, _), = outbox.password_resets

    missing = api_client.post("/password-reset/reset", json={"token": token})
    weak = _reset(api_client, token, "weak")
    too_long = _reset(api_client, token, "Aa1" + "x" * 70)

    assert missing.status_code == 400
    assert weak.status_code == 400
    assert [error["field"] for error in weak.json()["errors"]] == ["newPassword"]
    assert too_long.status_code == 400
    assert _reset(api_client, token).status_code == 200


def test_shared_email_gets_one_link_per_tenant(api_client, repository, outbox):
    repository.add_tenant("north", name="North Gym")
    repository.add_tenant("closed", active=False)
    acme = repository.add_account("acme", "multi@example.com")
    north = repository.add_account("north", "multi@example.com")
    repository.add_account("closed", "multi@example.com")

    _request_reset(api_client, "multi@example.com")

    assert [tenant for _, _, tenant in outbox.password_resets] == ["Acme Gym", "North Gym"]
    _, north_token, _ = outbox.password_resets[1]
    assert _reset(api_client, north_token).status_code == 200
    assert verify_password(NEW_PASSWORD, repository.accounts[north.account_id].password_hash)
    assert verify_password(PASSWORD, repository.accounts[acme.account_id].password_hash)


def test_tenant_hint_limits_reset_to_one_account(api_client, repository, outbox):
    repository.add_tenant("north", name="North Gym")
    repository.add_account("acme", "multi@example.com")
    repository.add_account("north", "multi@example.com")

    _request_reset(api_client, "multi@example.com", tenantId="north")

    assert [tenant for _, _, tenant in outbox.password_resets] == ["North Gym"]


def test_disabled_account_gets_no_link(api_client, repository, outbox):
    repository.add_account("acme", "member@example.com", active=False)

    response = _request_reset(api_client, "member@example.com")

    assert response.status_code == 200
    assert outbox.password_resets == []


def test_reset_requests_are_rate_limited(repository, settings, outbox):
    service = build_service(repository, settings, login_attempts=2, email_service=outbox)

    with build_client(service) as client:
        codes = [_request_reset(client, "ghost@example.com").status_code for _ in range(3)]

    assert codes == [200, 200, 429]


def test_reset_link_uses_configured_lifetime(repository, settings, outbox):
    service = build_service(
        repository, replace(settings, password_reset_ttl_seconds=60), email_service=outbox
    )
    repository.add_account("acme", "member@example.com")

    with build_client(service) as client:
        _request_reset(client, "member@example.com")

    (record,) = repository.password_resets.values()
    remaining = record.expires_at - datetime.now(timezone.utc)
    assert timedelta(seconds=0) < remaining <= timedelta(seconds=60)
