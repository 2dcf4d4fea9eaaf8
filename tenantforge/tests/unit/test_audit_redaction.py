from __future__ import annotations

from tenantforge.services.audit import build_audit_entry, sanitize_metadata


def test_audit_redacts_tokens_and_secrets() -> None:
    payload = {
        "owner_password": "hunter2",
        "service_token": "tok",
        "nested": {"authorization": "Bearer abc", "items": [{"api_key": "k"}]},
        "slug": "golden-spoon",
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["owner_password"] == "[REDACTED]"
    assert sanitized["service_token"] == "[REDACTED]"
    assert sanitized["nested"]["authorization"] == "[REDACTED]"
    assert sanitized["nested"]["items"][0]["api_key"] == "[REDACTED]"
    assert sanitized["slug"] == "golden-spoon"


def test_build_audit_entry_snapshots_sanitized_payload() -> None:
    entry = build_audit_entry(
        request_id="req-1",
        stage="validating",
        status="success",
        payload={"configuration": {"webhook_secret": "s", "timezone": "UTC"}},
    )
    assert entry.payload_snapshot == {"configuration": {"webhook_secret": "[REDACTED]", "timezone": "UTC"}}
    assert entry.manual_cleanup_required is False
    assert entry.created_at is not None
