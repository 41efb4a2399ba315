from __future__ import annotations

from opsuite.services.audit import sanitize_metadata


def test_audit_redacts_tokens_and_secrets() -> None:
    # Redact token and secret fields in audit and notification metadata.
    payload = {
        "api_key": "key",
        "webhookToken": "tok",
        "nested": {"Authorization": "Bearer abc", "items": [{"password": "pw"}]},
        "safe": "value",
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["api_key"] == "[REDACTED]"
    assert sanitized["webhookToken"] == "[REDACTED]"
    assert sanitized["nested"]["Authorization"] == "[REDACTED]"
    assert sanitized["nested"]["items"][0]["password"] == "[REDACTED]"
    assert sanitized["safe"] == "value"
