import json
import logging

from taskhub.infra.logging import (
    RedactingJsonFormatter,
    clear_log_context,
    redact_pii,
    update_log_context,
)


def _format(message: str, extra: dict | None = None) -> dict:
    record = logging.LogRecord("taskhub.test", logging.INFO, __file__, 1, message, (), None)
    if extra is not None:
        record.extra = extra
    return json.loads(RedactingJsonFormatter().format(record))


def test_redact_pii_masks_contact_details_and_tokens():
    text = (
        "call 416-555-0199 or mail casey@example.com at 123 Queen St "
        "with Bearer abc.def.ghi and ?token=secret"
    )

    redacted = redact_pii(text)

    assert "416-555-0199" not in redacted
    assert "casey@example.com" not in redacted
    assert "123 Queen St" not in redacted
    assert "abc.def.ghi" not in redacted
    assert "token=[REDACTED_TOKEN]" in redacted


def test_disclosure_payload_keys_never_reach_logs():
    payload = _format(
        "customer_details_released",
        {
            "quote_id": "q-1",
            "client_info": {"name": "Casey Client", "phone": "416-555-0199"},
            "latitude": 43.65,
        },
    )

    assert payload["message"] == "customer_details_released"
    assert payload["quote_id"] == "q-1"
    assert payload["client_info"] == "[REDACTED]"
    assert payload["latitude"] == "[REDACTED]"


def test_log_context_is_merged_and_cleared():
    update_log_context(request_id="req-1", user_id="user-1")
    try:
        payload = _format("job_complete")
        assert payload["request_id"] == "req-1"
        assert payload["user_id"] == "user-1"
    finally:
        clear_log_context()

    assert "request_id" not in _format("job_complete")
