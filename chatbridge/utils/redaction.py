"""Secret redaction for logs, persisted errors and upstream bodies.

Bridge payloads carry API keys, bot tokens and instance hashes; anything
from an upstream that is logged or echoed back to a client goes through
``redact_for_logging`` (structured), ``sanitize_error_message`` (text) or
``redact_body`` (either).
"""

import re
from typing import Any

# Case-insensitive substrings of dict keys. "hash" covers Evolution's
# per-instance token, "apikey" its header and body spelling.
_DEFAULT_SENSITIVE_PATTERNS = frozenset({
    "secret", "token", "authorization", "api_key", "apikey", "password",
    "credential", "hmac", "hash", "cipher",
})

# Redacted wholesale, whatever the value
_CONTAINER_KEYS = frozenset({"credentials", "headers"})

_REDACTED = "***REDACTED***"


def _is_sensitive_key(key: str, sensitive_patterns: frozenset[str]) -> bool:
    key_lower = key.lower()
    return any(pattern in key_lower for pattern in sensitive_patterns)


def _redact_value(value: Any, sensitive_patterns: frozenset[str]) -> Any:
    if isinstance(value, dict):
        return redact_for_logging(value, sensitive_patterns)
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, sensitive_patterns) for item in value]
    return value


def redact_for_logging(
    obj: dict,
    sensitive_patterns: frozenset[str] = _DEFAULT_SENSITIVE_PATTERNS,
) -> dict:
    """Redact sensitive values from a dict for safe logging/error responses.

    Args:
        obj: Dict to redact (not mutated; a copy is returned).
        sensitive_patterns: Substring patterns whose matching keys' values
            are replaced. Matching is case-insensitive.

    Returns:
        New dict with sensitive values replaced by '***REDACTED***'.
        Nested dicts and lists, at any depth, are walked.
    """
    result = {}
    for key, value in obj.items():
        key_str = str(key)
        if key_str.lower() in _CONTAINER_KEYS or _is_sensitive_key(key_str, sensitive_patterns):
            result[key] = _REDACTED
        else:
            result[key] = _redact_value(value, sensitive_patterns)
    return result


def redact_body(body: Any) -> Any:
    """Redact an arbitrary upstream response body (dict, list or text)."""
    if isinstance(body, dict):
        return redact_for_logging(body)
    if isinstance(body, list):
        return [redact_body(item) for item in body]
    if isinstance(body, str):
        return sanitize_error_message(body)
    return body


_SENSITIVE_KEYWORDS = (
    r"secret|token|password|api_key|apikey|api-key|"
    r"authorization|credential|hash"
)
_SENSITIVE_VALUE_PATTERNS = re.compile(
    r"(?i)"
    r"(?:"
    r"Authorization\s*:\s*Bearer\s+\S+"
    r"|"
    # "apikey": "..."
    r'"[\w-]*(?:' + _SENSITIVE_KEYWORDS + r')"\s*:\s*"[^"]*"'
    r"|"
    # api_access_token = "..."
    r"[\w-]*(?:" + _SENSITIVE_KEYWORDS + r")\s*[=:]\s*\"[^\"]*\""
    r"|"
    # ?apikey=... up to the next separator
    r"[\w-]*(?:" + _SENSITIVE_KEYWORDS + r")\s*[=:]\s*[^\s&,;]+"
    r"|"
    r"\bsk-[A-Za-z0-9_\-]{8,}"
    r")",
)

# Telegram bot tokens appear inside request URLs: /bot123456:AAH.../sendMessage
_BOT_TOKEN = re.compile(r"(?<!\d)\d{6,}:[A-Za-z0-9_-]{30,}")


def sanitize_error_message(msg: str | None, max_length: int = 2000) -> str | None:
    """Sanitize an error message for safe persistence or display.

    Redacts sensitive-looking key=value pairs, bare ``sk-`` keys and bot
    tokens, then truncates to max_length.
    """
    if msg is None:
        return None
    sanitized = _SENSITIVE_VALUE_PATTERNS.sub(_REDACTED, msg)
    sanitized = _BOT_TOKEN.sub(_REDACTED, sanitized)
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length - 3] + "..."
    return sanitized
