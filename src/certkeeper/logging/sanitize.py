"""Sensitive data sanitization for log output.

Provides :func:`sanitize_for_logs` which redacts PEM bodies, wrapped
secret handles and secret-bearing keys (passwords, tokens, HMAC
secrets) from action configs and event payloads before they are
written to the log or the activity sink.
"""

from __future__ import annotations

import re
from typing import Any

REDACTED = "[REDACTED]"

_SECRET_KEY_RE = re.compile(
    r"(password|passwd|passphrase|secret|token|apikey|api_key|privatekey|private_key)",
    re.IGNORECASE,
)

# Regex matching the base64 body inside PEM blocks
_PEM_BODY_RE = re.compile(
    r"(-----BEGIN [A-Z0-9 ]+-----)"
    r"([\s\S]*?)"
    r"(-----END [A-Z0-9 ]+-----)",
)


def sanitize_pem(pem: str) -> str:
    """Replace the base64 body of PEM blocks with ``[REDACTED]``.

    Preserves BEGIN/END markers so the type of object is still visible.
    """

    def _redact(m) -> str:
        return f"{m.group(1)}\n{REDACTED}\n{m.group(3)}"

    return _PEM_BODY_RE.sub(_redact, pem)


def is_secret_key(key: str) -> bool:
    return bool(_SECRET_KEY_RE.search(key))


def sanitize_for_logs(data: Any) -> Any:
    """Recursively sanitize sensitive material in *data*.

    Handles dicts (secret-named keys are redacted), lists, and plain
    strings (PEM bodies).  Non-sensitive data passes through unchanged.
    """
    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if isinstance(key, str) and is_secret_key(key) and value not in (None, ""):
                result[key] = REDACTED
            else:
                result[key] = sanitize_for_logs(value)
        return result

    if isinstance(data, (list, tuple)):
        return type(data)(sanitize_for_logs(item) for item in data)

    if isinstance(data, str):
        if "-----BEGIN " in data:
            return sanitize_pem(data)
        return data

    return data
