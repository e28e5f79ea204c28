"""JSON log lines with contact details and credentials scrubbed out.

Job matching and the disclosure events move phone numbers, emails and street
addresses around; anything that ends up in a log record passes through
``redact_pii`` (free text) or the key-based masking in ``_scrub`` (structured
fields) first.
"""

import contextvars
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any

_STREET_SUFFIXES = (
    "Street|St|Avenue|Ave|Road|Rd|Boulevard|Blvd|Drive|Dr|Lane|Ln|Way|"
    "Court|Ct|Crescent|Cres|Trail|Trl|Place|Pl"
)

_TEXT_RULES: list[tuple[re.Pattern[str], Any]] = [
    (re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"), "[REDACTED_EMAIL]"),
    (re.compile(r"\b(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b"), "[REDACTED_PHONE]"),
    (
        re.compile(rf"\b\d{{1,6}}\s+[A-Za-z0-9.\-\s]+(?:{_STREET_SUFFIXES})\b", re.IGNORECASE),
        "[REDACTED_ADDRESS]",
    ),
    (
        re.compile(r"(?P<key>token|access_token|auth|signature|sig)=[^&\s]+", re.IGNORECASE),
        lambda match: f"{match.group('key')}=[REDACTED_TOKEN]",
    ),
    (re.compile(r"(?i)\bauthorization\s*[:=]\s*\S+"), "authorization=[REDACTED_TOKEN]"),
    (re.compile(r"(?i)bearer\s+[A-Za-z0-9._\-]+"), "Bearer [REDACTED_TOKEN]"),
]

# Keys that carry disclosure data or credentials; their values are dropped whole.
MASKED_KEYS = frozenset(
    {
        "phone",
        "email",
        "address",
        "location",
        "latitude",
        "longitude",
        "client_info",
        "customer",
        "authorization",
        "token",
        "access_token",
        "account_number",
        "external_account_ref",
        "signature",
        "sig",
    }
)

_request_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "taskhub_log_context", default={}
)
_STANDARD_RECORD_FIELDS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


def redact_pii(value: str) -> str:
    for pattern, replacement in _TEXT_RULES:
        value = pattern.sub(replacement, value)
    return value


def _scrub(value: Any, key: str | None = None) -> Any:
    if key is not None and key.lower() in MASKED_KEYS:
        return "[REDACTED]"
    if isinstance(value, str):
        return redact_pii(value)
    if isinstance(value, dict):
        return {k: _scrub(v, k) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_scrub(item) for item in value]
    return value


def update_log_context(**fields: Any) -> dict[str, Any]:
    """Attach fields to every log line emitted from the current request or job."""
    context = {**_request_context.get(), **{k: v for k, v in fields.items() if v is not None}}
    _request_context.set(context)
    return context


def clear_log_context() -> None:
    _request_context.set({})


class RedactingJsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_pii(record.getMessage()),
        }
        line.update(_scrub(_request_context.get()))
        line.update(_scrub(self._extra_fields(record)))
        if record.exc_info and record.exc_info[0] is not None:
            line["exc_type"] = record.exc_info[0].__name__
        return json.dumps(line, ensure_ascii=False, default=str)

    @staticmethod
    def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
        fields = {
            key: value
            for key, value in vars(record).items()
            if key not in _STANDARD_RECORD_FIELDS and not key.startswith("_")
        }
        nested = fields.pop("extra", None)
        if isinstance(nested, dict):
            fields.update(nested)
        return fields


def configure_logging(level: int | str = logging.INFO) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(RedactingJsonFormatter())
    logging.basicConfig(level=level, handlers=[handler], force=True)
