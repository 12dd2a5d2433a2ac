from recipeshare.logging import _redact_pii, get_correlation_id, set_correlation_id


def test_otp_values_are_fully_redacted():
    event = _redact_pii(None, "info", {"event": "x", "demo_otp": "123456", "code": "654321"})

    assert event["demo_otp"] == "[redacted]"
    assert event["code"] == "[redacted]"


def test_secrets_are_partially_masked():
    event = _redact_pii(
        None,
        "info",
        {"event": "x", "password": "Password123!", "session_id": "abcdefghijkl"},
    )

    assert event["password"] == "Pa***3!"
    assert event["session_id"] == "ab***kl"


def test_emails_are_masked():
    event = _redact_pii(None, "info", {"event": "x", "email": "someone@example.com"})

    assert event["email"] == "so***@example.com"


def test_unrelated_fields_untouched():
    event = _redact_pii(None, "info", {"event": "login_failed", "reason": "bad_password"})

    assert event == {"event": "login_failed", "reason": "bad_password"}


def test_correlation_id_generated_when_missing():
    cid = set_correlation_id(None)

    assert cid
    assert get_correlation_id() == cid
    assert set_correlation_id("client-supplied") == "client-supplied"
