"""Structured one-line JSON log events."""

from __future__ import annotations

import json
import logging
import re

_REDACTED = "<redacted>"
_PROXY_CREDENTIALS_RE = re.compile(r"(?P<scheme>[a-z0-9+.-]+://)[^/@\s]+@", re.IGNORECASE)
_SENSITIVE_KEYS = {"cookiefile", "cookie_file", "cookies", "credential_payload", "http_headers"}


def redact_proxy(value):
    if not value:
        return value
    return _PROXY_CREDENTIALS_RE.sub(lambda m: f"{m.group('scheme')}{_REDACTED}@", str(value))


def redact_argv(argv):
    """Return argv with cookie paths and proxy credentials masked."""
    redacted = []
    skip_next = None
    for token in argv:
        if skip_next == "--cookies":
            redacted.append(_REDACTED)
            skip_next = None
            continue
        if skip_next == "--proxy":
            redacted.append(redact_proxy(token))
            skip_next = None
            continue
        if token in {"--cookies", "--proxy"}:
            skip_next = token
        redacted.append(str(token))
    return redacted


def _safe_fields(fields):
    safe = {}
    for key, value in fields.items():
        if key in _SENSITIVE_KEYS and value:
            safe[key] = _REDACTED
        elif key == "proxy":
            safe[key] = redact_proxy(value)
        else:
            safe[key] = value
    return safe


def log_event(level, message, **fields):
    payload = {"message": message, **_safe_fields(fields)}
    try:
        logging.log(level, json.dumps(payload, sort_keys=True, default=str))
    except Exception as exc:
        logging.log(level, f"log_event_serialization_failed: {exc} message={message}")
