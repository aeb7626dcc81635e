"""
Tests for the PII redaction pipeline.
"""

import pytest

from learnacademy.security.redaction import REDACTED, Redactor, redact_event_dict

pytestmark = pytest.mark.unit


@pytest.fixture
def redactor():
    return Redactor()


@pytest.mark.parametrize(
    "text,leaked",
    [
        ("contact jane.doe@example.com today", "jane.doe@example.com"),
        ("card 4111 1111 1111 1111 declined", "4111 1111 1111 1111"),
        ("ssn 123-45-6789 on file", "123-45-6789"),
        ("call 5551234567", "5551234567"),
        ("password=hunter2", "hunter2"),
        ("Authorization: Bearer abc.def.ghi", "abc.def.ghi"),
    ],
)
def test_redact_text(redactor, text, leaked):
    assert leaked not in redactor.redact_text(text)


def test_nested_values_and_sensitive_keys(redactor):
    value = {
        "user": {"email": "a@b.io", "api_key": "la_secret"},
        "notes": ["call 5551234567"],
    }

    redacted = redactor.redact(value)

    assert redacted["user"]["api_key"] == REDACTED
    assert redacted["user"]["email"] == "***@***.***"
    assert redacted["notes"] == ["call ***********"]
    assert value["user"]["api_key"] == "la_secret"


def test_structlog_processor_keeps_event_name():
    event_dict = {"event": "auth.denied", "token": "abc", "email": "x@y.com", "level": "info"}

    redacted = redact_event_dict(None, "info", event_dict)

    assert redacted["event"] == "auth.denied"
    assert redacted["token"] == REDACTED
    assert "x@y.com" not in redacted["email"]


@pytest.mark.parametrize(
    "key,sensitive",
    [
        ("password", True),
        ("api_key", True),
        ("apiKey", True),
        ("x-api-key", True),
        ("access_token", True),
        ("master_key", True),
        ("key_id", False),
        ("api_key_name", False),
        ("old_key_id", False),
        ("token_type", False),
        ("keyboard_layout", False),
    ],
)
def test_sensitive_key_matching(redactor, key, sensitive):
    assert redactor.is_sensitive_key(key) is sensitive


def test_key_rotation_log_fields_survive():
    event_dict = {"event": "encryption.key_rotated", "old_key_id": "confidential-aes-256-gcm-default-1"}

    redacted = redact_event_dict(None, "info", event_dict)

    assert redacted["old_key_id"] == "confidential-aes-256-gcm-default-1"
