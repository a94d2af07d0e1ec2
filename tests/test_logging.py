from authkernel.logging import (
    REDACTED,
    _redact_credentials,
    correlation_id_var,
    mask_email,
    sanitize_error_message,
    set_correlation_id,
)


def _redact(**fields):
    return _redact_credentials(None, "info", {"event": "login_failed", **fields})


def test_credentials_are_replaced_outright():
    event = _redact(
        password="Str0ng!Passw0rd",
        refresh_token="eyJhbGciOiJIUzI1NiJ9.e30.sig",
        authorization="Bearer abc.def.ghi",
    )

    assert event["password"] == REDACTED
    assert event["refresh_token"] == REDACTED
    assert event["authorization"] == REDACTED
    assert event["event"] == "login_failed"


def test_emails_keep_their_domain():
    event = _redact(email="alice@example.com", to="bob@example.com")

    assert event["email"] == "al***@example.com"
    assert event["to"] == "bob@example.com"


def test_derived_fields_pass_through():
    event = _redact(email_hash="9f86d081884c7d65", token_type="refresh", user_id="u-1")

    assert event["email_hash"] == "9f86d081884c7d65"
    assert event["token_type"] == "refresh"
    assert event["user_id"] == "u-1"


def test_mask_email_without_at_sign():
    assert mask_email("not-an-address") == REDACTED


def test_set_correlation_id_generates_one():
    generated = set_correlation_id()

    assert len(generated) == 36
    assert set_correlation_id("trace-7") == "trace-7"
    correlation_id_var.set(None)


def test_sanitize_strips_hashes_and_jwts():
    message = sanitize_error_message(
        "stored $argon2id$v=19$m=1024,t=1,p=1$c2FsdA$aGFzaA for eyJhbGciOiJIUzI1NiJ9.e30.c2ln"
    )

    assert "$argon2id" not in message
    assert "eyJ" not in message


def test_sanitize_truncates_and_handles_empty():
    assert sanitize_error_message("") == "An error occurred"
    assert len(sanitize_error_message("x" * 800)) == 500
