from __future__ import annotations

import logging
import re
from typing import Any
from urllib.parse import urlsplit, urlunsplit

URL_TOKEN_RE = re.compile(r"https?://[^\s\"'<>]+", re.IGNORECASE)

# (pattern, replacement) pairs applied after URLs are reduced to their host
SECRET_MASKS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)([?&](?:api[-_]?key|key|token)=)([^&#\s]+)"), r"\1***"),
    (re.compile(r"(?i)((?:api|private)[-_]?key\s*[:=]\s*)([^\s,;\"'&]+)"), r"\1***"),
    (re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"), r"\1***"),
)

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
    "exception": logging.ERROR,
}


def _host_only(match: re.Match[str]) -> str:
    token = match.group(0)
    stripped = token.rstrip(".,);]}")
    trailing = token[len(stripped):]

    parsed = urlsplit(stripped)
    if not parsed.netloc:
        return token
    # RPC providers put the project key in the path
    return urlunsplit((parsed.scheme, parsed.netloc, "", "", "")) + trailing


def sanitize_text(value: str) -> str:
    masked = URL_TOKEN_RE.sub(_host_only, value)
    for pattern, replacement in SECRET_MASKS:
        masked = pattern.sub(replacement, masked)
    return masked


def sanitize_value(value: Any) -> Any:
    if isinstance(value, str):
        return sanitize_text(value)
    if isinstance(value, (bytes, bytearray)):
        return f"0x{bytes(value).hex()}"
    if isinstance(value, dict):
        return {key: sanitize_value(child) for key, child in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(sanitize_value(item) for item in value)
    return value


def log_event(
    logger: logging.Logger,
    *,
    level: str,
    event: str,
    message: str,
    **fields: Any,
) -> None:
    """Log ``message`` with ``event`` and ``fields`` attached as record extras.

    ``level="exception"`` logs at ERROR with the active traceback. Field names
    must not collide with ``logging.LogRecord`` attributes.
    """
    level_no = LEVELS.get(level, logging.INFO)
    if not logger.isEnabledFor(level_no):
        return

    extra = {key: sanitize_value(value) for key, value in fields.items()}
    extra["event"] = event
    logger.log(level_no, sanitize_text(message), extra=extra, exc_info=level == "exception")
