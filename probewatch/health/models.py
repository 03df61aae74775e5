"""Check result models and the closed status vocabulary.

Persisted shapes use camelCase keys (``responseTime``, ``checkedAt``) because
the status document and public snapshot are read by the dashboard as-is.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

MAX_RECENT_CHECKS = 90


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CheckStatus(str, Enum):
    OK = "ok"
    FAIL = "fail"
    ERROR = "error"
    TIMEOUT = "timeout"


# Summary-only value for services that were never checked; never stored.
UNKNOWN = "unknown"

_STATUS_FALLBACKS = {
    "degraded": CheckStatus.FAIL,
    "down": CheckStatus.FAIL,
    "unknown": CheckStatus.ERROR,
}


def coerce_status(value: Any) -> CheckStatus:
    """Map any input onto the closed status set.

    Known statuses pass through (case/whitespace-insensitive), ``degraded``
    and ``down`` become ``fail``, everything else becomes ``error``.
    """
    if isinstance(value, CheckStatus):
        return value
    if isinstance(value, str):
        key = value.strip().lower()
        try:
            return CheckStatus(key)
        except ValueError:
            return _STATUS_FALLBACKS.get(key, CheckStatus.ERROR)
    return CheckStatus.ERROR


@dataclass
class CheckResult:
    """Outcome of a single probe execution."""

    name: str
    status: CheckStatus
    response_time: float = 0
    stdout: str = ""
    stderr: str = ""
    answer: str | None = None
    message: str | None = None
    checked_at: str = ""
    expected_answer: Any = None

    def __post_init__(self) -> None:
        if not self.checked_at:
            self.checked_at = utc_now_iso()

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "responseTime": self.response_time,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "answer": self.answer,
            "message": self.message,
            "checkedAt": self.checked_at,
            "expectedAnswer": self.expected_answer,
        }


@dataclass
class RecentCheck:
    """Compact history record used for uptime."""

    timestamp: str
    status: CheckStatus
    response_time: float = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "status": self.status.value,
            "responseTime": self.response_time,
        }


@dataclass
class StatusEntry:
    """Per-service state: latest result plus bounded history."""

    status: str = UNKNOWN
    last_check: str | None = None
    last_result: CheckResult | None = None
    recent_checks: list[RecentCheck] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "lastCheck": self.last_check,
            "lastResult": self.last_result.to_dict() if self.last_result else None,
            "recentChecks": [c.to_dict() for c in self.recent_checks],
        }
