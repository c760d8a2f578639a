from __future__ import annotations

from globalfam._redact import redact_for_log


def test_redact_for_log_redacts_sensitive_keys() -> None:
    payload = {
        "id": "u1",
        "displayName": "Ana",
        "email": "ana@example.invalid",
        "password": "pw",
        "nested": {"Token": "abc", "phoneNumber": "+100"},
    }

    redacted = redact_for_log(payload)
    assert redacted["id"] == "u1"
    assert redacted["displayName"] == "Ana"
    assert redacted["email"] == "<redacted>"
    assert redacted["password"] == "<redacted>"
    assert redacted["nested"]["Token"] == "<redacted>"
    assert redacted["nested"]["phoneNumber"] == "<redacted>"


def test_redact_for_log_truncates_long_strings() -> None:
    long_value = "x" * 600
    redacted = redact_for_log({"value": long_value}, max_string=10)
    assert redacted["value"].startswith("x" * 10)
    assert "<truncated>" in redacted["value"]


def test_redact_for_log_handles_sequences_and_bytes() -> None:
    redacted = redact_for_log({"friends": ["a", {"email": "x"}], "raw": b"1234"})
    assert redacted["friends"] == ["a", {"email": "<redacted>"}]
    assert redacted["raw"] == "<bytes:4b>"
