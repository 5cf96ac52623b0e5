from latchkey.logging import _redact_pii, email_fingerprint


def test_redacts_credentials_but_keeps_digests_and_ids():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "token_issued",
            "token": "0123456789abcdef",
            "password": "Str0ng!Passw0rd",
            "email": "alice@example.com",
            "email_hash": "abcdef0123456789",
            "token_digest_prefix": "deadbeef",
            "account_id": "acc-123456",
        },
    )

    assert event["token"] == "01***ef"
    assert event["password"] == "St***rd"
    assert event["email"] == "al***om"
    assert event["email_hash"] == "abcdef0123456789"
    assert event["token_digest_prefix"] == "deadbeef"
    assert event["account_id"] == "acc-123456"


def test_email_fingerprint_is_case_insensitive():
    assert email_fingerprint(" Alice@Example.com") == email_fingerprint("alice@example.com")
    assert len(email_fingerprint("alice@example.com")) == 16
