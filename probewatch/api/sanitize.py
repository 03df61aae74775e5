"""Output redaction — strips credentials and host paths from probe output.

Probe stdout/stderr and error messages are shown on a public dashboard, so
anything that looks like a key, token, secret or absolute user path is
replaced before it leaves the API.
"""

from __future__ import annotations

import re

# ── Redaction rules (order matters) ──────────────────────────────────────────

_SECRETS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"sk-[a-zA-Z0-9_-]{20,}"), "[API_KEY]"),
    (re.compile(r"pk-[a-zA-Z0-9_-]{20,}"), "[API_KEY]"),
    (re.compile(r"key-[a-zA-Z0-9_-]{20,}"), "[API_KEY]"),
    (re.compile(r"api[_-]?key[=:]\s*\S+", re.IGNORECASE), "api_key=[REDACTED]"),
    (re.compile(r"token[=:]\s*\S+", re.IGNORECASE), "token=[REDACTED]"),
    (re.compile(r"bearer\s+\S+", re.IGNORECASE), "Bearer [REDACTED]"),
    (re.compile(r"PASSWORD[=:]\S+", re.IGNORECASE), "PASSWORD=[REDACTED]"),
    (re.compile(r"SECRET[=:]\S+", re.IGNORECASE), "SECRET=[REDACTED]"),
    (re.compile(r"eyJ[a-zA-Z0-9_-]+\.[a-zA-Z0-9_-]+\.[a-zA-Z0-9_-]+"), "[JWT_TOKEN]"),
]

_PATHS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r'cd\s+"[^"]+"'), 'cd "[PATH]"'),
    (re.compile(r"cd\s+'[^']+'"), "cd '[PATH]'"),
    (re.compile(r"/home/\S*"), "[PATH]"),
    (re.compile(r"/Users/\S*"), "[PATH]"),
    (re.compile(r"/root/\S*"), "[PATH]"),
    (re.compile(r"/workspace/\S*"), "[PATH]"),
    (re.compile(r"/\.claude/\S*"), "[PATH]"),
    (re.compile(r"[A-Z]:\\\S*"), "[PATH]"),
]

_OS_ERRORS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\[Errno 2\][^\n]*"), "Resource not found"),
    (re.compile(r"\[Errno 13\][^\n]*"), "Permission denied"),
    (re.compile(r"\[Errno 110\][^\n]*"), "Connection timeout"),
    (re.compile(r"\[Errno 111\][^\n]*"), "Connection refused"),
]


def _apply(text: str, rules: list[tuple[re.Pattern[str], str]]) -> str:
    for pattern, replacement in rules:
        text = pattern.sub(replacement, text)
    return text


def sanitize_output(text: str | None) -> str | None:
    """Redact secrets and paths from probe stdout/stderr."""
    if not text:
        return text
    return _apply(_apply(text, _SECRETS), _PATHS)


def sanitize_error_message(error: BaseException | str | None) -> str:
    """Redact an error message and normalize common OS error wording."""
    message = str(error) if error else ""
    if not message:
        return "Unknown error"
    return _apply(_apply(_apply(message, _OS_ERRORS), _SECRETS), _PATHS)
