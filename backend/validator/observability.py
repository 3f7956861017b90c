from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
import json
import logging
import re
from typing import Any, Iterator, Mapping
from uuid import uuid4


_REQUEST_ID: ContextVar[str] = ContextVar("request_id", default="-")
_SESSION_ID: ContextVar[str] = ContextVar("session_id", default="-")
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
_HANDLER_MARKER = "_validator_handler"

REDACTED = "[REDACTED]"
MAX_LOGGED_STRING = 240

# Mapping keys whose values never reach the logs, compared after lowercasing and
# folding "-" to "_".
_SECRET_KEYS = frozenset(
    {
        "authorization",
        "cookie",
        "set_cookie",
        "key",
        "x_goog_api_key",
        "gemini_api_key",
        "aws_session_token",
        "email",
        "phone",
    }
)
_SECRET_KEY_PARTS = ("password", "secret", "token", "api_key", "apikey", "access_key", "private_key")

# Applied in order to free text. URL key params go first so the key itself is not
# also rewritten as a bare API key.
_TEXT_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)([?&]key=)[^&\s]+"), r"\1" + REDACTED),
    (re.compile(r"\bAIza[0-9A-Za-z\-_]{35}\b"), "[REDACTED_API_KEY]"),
    (re.compile(r"(?i)\bBearer\s+[A-Za-z0-9\-._~+/]+=*"), "Bearer " + REDACTED),
    (re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b"), "[REDACTED_AWS_ACCESS_KEY]"),
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[REDACTED_EMAIL]"),
    (re.compile(r"\b(?:\+?61[-.\s]?|0)[2-478](?:[-.\s]?\d){8}\b"), "[REDACTED_PHONE]"),
)


def normalize_request_id(candidate: str | None) -> str:
    """Accept a caller-supplied request id if it is short and header-safe, else mint one."""
    trimmed = (candidate or "").strip()
    return trimmed if _VALID_REQUEST_ID.fullmatch(trimmed) else str(uuid4())


def get_request_id() -> str:
    return _REQUEST_ID.get()


def get_session_id() -> str:
    return _SESSION_ID.get()


@contextmanager
def bind_request(request_id: str) -> Iterator[str]:
    token = _REQUEST_ID.set(request_id)
    try:
        yield request_id
    finally:
        _REQUEST_ID.reset(token)


@contextmanager
def bind_session(session_id: str) -> Iterator[None]:
    """Tag every log record emitted inside the block with ``session_id``.

    Worker threads do not inherit context variables from the submitting thread, so
    pipeline workers enter this block themselves.
    """
    token = _SESSION_ID.set(session_id)
    try:
        yield
    finally:
        _SESSION_ID.reset(token)


def is_secret_key(key: str) -> bool:
    folded = key.strip().lower().replace("-", "_")
    return folded in _SECRET_KEYS or any(part in folded for part in _SECRET_KEY_PARTS)


def redact_text(text: str, *, max_length: int = MAX_LOGGED_STRING) -> str:
    for pattern, replacement in _TEXT_RULES:
        text = pattern.sub(replacement, text)
    if len(text) > max_length:
        return f"{text[:max_length]}...[truncated]"
    return text


def sanitize_for_logging(value: Any, *, max_string_length: int = MAX_LOGGED_STRING) -> Any:
    """Return a copy of ``value`` that is safe to log.

    Mappings lose the values of secret-looking keys, strings are scrubbed of credentials and
    contact details, and raw bytes are replaced by their size.
    """
    if isinstance(value, str):
        return redact_text(value, max_length=max_string_length)
    if isinstance(value, bytes):
        return f"[{len(value)} bytes]"
    if isinstance(value, Mapping):
        return {
            str(key): REDACTED
            if is_secret_key(str(key))
            else sanitize_for_logging(item, max_string_length=max_string_length)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple, set)):
        return [sanitize_for_logging(item, max_string_length=max_string_length) for item in value]
    return value


class ContextFilter(logging.Filter):
    """Copies the bound request and session ids onto records that lack them."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = get_request_id()
        if not hasattr(record, "session_id"):
            record.session_id = get_session_id()
        return True


# Everything a bare LogRecord carries; anything else arrived through ``extra=``.
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", get_request_id()),
            "session_id": getattr(record, "session_id", get_session_id()),
        }
        extras = {key: value for key, value in record.__dict__.items() if key not in _RECORD_ATTRS}
        for key, value in extras.items():
            if key not in payload:
                payload[key] = REDACTED if is_secret_key(key) else sanitize_for_logging(value)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def configure_logging(level_name: str) -> None:
    """Install a single JSON handler on the root logger. Safe to call more than once."""
    level = logging.getLevelName(level_name.upper())
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)
    # httpx logs every request URL at INFO.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))

    if any(getattr(handler, _HANDLER_MARKER, False) for handler in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    handler.addFilter(ContextFilter())
    setattr(handler, _HANDLER_MARKER, True)
    root.addHandler(handler)
