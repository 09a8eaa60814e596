from pivotauth.logging import (
    _redact_pii,
    get_correlation_id,
    identifier_digest,
    set_correlation_id,
)


def test_credentials_are_redacted():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "login_failed",
            "password": "correct horse battery",
            "mfa_secret": "JBSWY3DPEHPK3PXP",
            "refresh_token": "abc",
            "identifier": "alice@example.com",
            "account_id": "acct-1",
        },
    )
    assert event["password"] == "co***ry"
    assert event["mfa_secret"] == "JB***XP"
    assert event["refresh_token"] == "***"
    assert event["identifier"] != "alice@example.com"
    assert event["account_id"] == "acct-1"
    assert event["event"] == "login_failed"


def test_digest_keys_pass_through():
    digest = identifier_digest("alice@example.com")
    event = _redact_pii(None, "info", {"event": "login_failed", "identifier_digest": digest})
    assert event["identifier_digest"] == digest


def test_identifier_digest_is_stable_and_case_blind():
    assert identifier_digest(" Alice@Example.com ") == identifier_digest("alice@example.com")
    assert len(identifier_digest("alice@example.com")) == 16
    assert identifier_digest("alice@example.com") != identifier_digest("bob@example.com")


def test_correlation_id_roundtrip():
    cid = set_correlation_id("req-123")
    assert cid == "req-123"
    assert get_correlation_id() == "req-123"
    assert set_correlation_id() != "req-123"
