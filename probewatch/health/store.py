"""Status store — per-service check history persisted as one JSON document.

``data/status.json`` maps service id → StatusEntry and is rewritten
atomically on every recorded result. The store is reset on every process
start (history is "since last restart"); files left by older storage layouts
are deleted, not migrated.

All mutation goes through ``record_check_result`` under a per-store lock so
concurrent checks completing together cannot lose each other's update.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import math
import os
import tempfile
from collections.abc import Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, TypeVar

from .errors import PersistenceError, StoreNotInitializedError
from .models import (
    MAX_RECENT_CHECKS,
    UNKNOWN,
    CheckResult,
    CheckStatus,
    RecentCheck,
    StatusEntry,
    coerce_status,
    utc_now_iso,
)
from .registry import MonitorConfig, load_config_document

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).parent.parent.parent
DATA_DIR = ROOT_DIR / "data"
CONFIG_DIR = ROOT_DIR / "config"

STATUS_FILE = "status.json"
LEGACY_FILES = ("timeseries.json", "realtime.json", "hourly.json", "daily.json")

T = TypeVar("T")


class StatusStore:
    """Owns the status document; the only writer of service history."""

    def __init__(
        self,
        data_dir: Path | None = None,
        config_dir: Path | None = None,
        config_path: Path | None = None,
    ) -> None:
        self.data_dir = Path(data_dir or DATA_DIR).resolve()
        self.config_dir = Path(config_dir or CONFIG_DIR).resolve()
        self.status_path = self.data_dir / STATUS_FILE
        self.config_path = Path(config_path or self.config_dir / "services.json").resolve()
        self.legacy_paths = [self.data_dir / name for name in LEGACY_FILES]

        self._entries: dict[str, StatusEntry] = {}
        self._initialized = False
        self._lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._initialized

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Create directories, drop legacy files and reset history to empty."""
        async with self._lock:
            await self._io(self._reset_on_disk)
            self._entries = {}
            self._initialized = True

    def _reset_on_disk(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.config_dir.mkdir(parents=True, exist_ok=True)

        for legacy in self.legacy_paths:
            try:
                legacy.unlink()
                logger.info("Removed legacy file %s", legacy.name)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("Failed to remove legacy file %s: %s", legacy, e)

        try:
            self.status_path.unlink()
            logger.info("Reset %s on startup", self.status_path.name)
        except FileNotFoundError:
            logger.info("No %s to reset", self.status_path.name)
        except OSError as e:
            logger.warning("Failed to reset %s: %s", self.status_path, e)

    # ── Config ────────────────────────────────────────────────────────────

    async def load_config(self) -> MonitorConfig:
        """Service definitions; empty defaults when missing or malformed."""
        return await self._io(load_config_document, self.config_path)

    # ── Writes ────────────────────────────────────────────────────────────

    async def record_check_result(self, service_id: str, raw_result: Any) -> None:
        """Normalize a result, append it to the service history and persist.

        Raises ``PersistenceError`` if the document could not be written; the
        in-memory history is updated either way.
        """
        self._assert_initialized()
        if not service_id:
            return

        result = normalize_result(raw_result)
        async with self._lock:
            entry = self._entries.setdefault(service_id, StatusEntry())
            entry.recent_checks = sanitize_recent_checks([
                *entry.recent_checks,
                RecentCheck(result.checked_at, result.status, result.response_time),
            ])
            entry.status = result.status.value
            entry.last_check = result.checked_at
            entry.last_result = result
            await self._write_status_file()

    async def add_check(self, service_id: str, raw_result: Any) -> None:
        await self.record_check_result(service_id, raw_result)

    async def _write_status_file(self) -> None:
        document = {sid: entry.to_dict() for sid, entry in self._entries.items()}
        try:
            await self._io(atomic_write_json, self.status_path, document)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to write {self.status_path}: {e}") from e

    # ── Reads ─────────────────────────────────────────────────────────────

    async def get_all_services_summary(self) -> list[dict[str, Any]]:
        """Enabled services in config order, then orphaned history."""
        self._assert_initialized()
        config = await self.load_config()

        summaries: list[dict[str, Any]] = []
        seen: set[str] = set()

        for service in config.enabled_services:
            if service.id in seen:
                continue
            entry = self._entries.get(service.id)
            summaries.append(_summary(service.id, service.name, service.model, entry))
            seen.add(service.id)

        for service_id, entry in self._entries.items():
            if service_id not in seen:
                summaries.append(_summary(service_id, service_id, None, entry))

        return summaries

    async def get_service_detail(self, service_id: str) -> dict[str, Any] | None:
        self._assert_initialized()
        entry = self._entries.get(service_id) if service_id else None
        if entry is None or entry.last_result is None:
            return None
        return {
            "serviceId": service_id,
            "lastCheck": entry.last_check,
            "result": entry.last_result.to_dict(),
        }

    async def get_service_recent_checks(self, service_id: str) -> list[dict[str, Any]]:
        self._assert_initialized()
        entry = self._entries.get(service_id) if service_id else None
        if entry is None:
            return []
        return [c.to_dict() for c in entry.recent_checks]

    async def get_health_overview(self) -> dict[str, Any]:
        self._assert_initialized()
        return {
            "services": {
                sid: {"name": sid, "status": entry.status, "lastCheck": entry.last_check}
                for sid, entry in self._entries.items()
            },
            "generatedAt": utc_now_iso(),
        }

    async def refresh_from_disk(self) -> None:
        """Replace in-memory history with the upgraded on-disk document."""
        async with self._lock:
            data = await self._io(_read_json, self.status_path, {})
            self._entries = decode_document(data)

    # ── Helpers ───────────────────────────────────────────────────────────

    def _assert_initialized(self) -> None:
        if not self._initialized:
            raise StoreNotInitializedError("StatusStore has not been initialized")

    async def _io(self, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))


def _summary(
    service_id: str, name: str, model: str | None, entry: StatusEntry | None,
) -> dict[str, Any]:
    return {
        "id": service_id,
        "name": name or service_id,
        "model": model,
        "currentStatus": entry.status if entry else UNKNOWN,
        "lastCheck": entry.last_check if entry else None,
        "recentChecks": [c.to_dict() for c in entry.recent_checks] if entry else [],
    }


# ── Normalization ────────────────────────────────────────────────────────────


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string or datetime into an aware UTC datetime."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text[-1] in "zZ":
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def normalize_timestamp(value: Any) -> str:
    dt = parse_timestamp(value)
    return dt.isoformat() if dt else utc_now_iso()


def normalize_response_time(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if not math.isfinite(value):
        return 0
    return max(value, 0)


def normalize_result(raw: Any) -> CheckResult:
    """Coerce an arbitrary result payload into a well-formed CheckResult.

    Non-ok results never carry an answer.
    """
    if isinstance(raw, CheckResult):
        raw = raw.to_dict()
    data: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}

    status = coerce_status(data.get("status"))
    answer = _nullable_str(data.get("answer"))
    return CheckResult(
        name=_nullable_str(data.get("name")) or "Unknown Service",
        status=status,
        response_time=normalize_response_time(data.get("responseTime")),
        stdout=_safe_str(data.get("stdout")),
        stderr=_safe_str(data.get("stderr")),
        answer=answer if status == CheckStatus.OK else None,
        message=_nullable_str(data.get("message")),
        checked_at=normalize_timestamp(data.get("checkedAt")),
        expected_answer=data.get("expectedAnswer"),
    )


def sanitize_recent_checks(items: Any) -> list[RecentCheck]:
    """Well-formed, ascending, at most MAX_RECENT_CHECKS (newest kept)."""
    if not isinstance(items, (list, tuple)):
        return []

    keyed: list[tuple[datetime, RecentCheck]] = []
    for item in items:
        if isinstance(item, RecentCheck):
            item = item.to_dict()
        if not isinstance(item, Mapping) or not isinstance(item.get("timestamp"), str):
            continue
        ts = parse_timestamp(item["timestamp"])
        if ts is None:
            continue
        keyed.append((ts, RecentCheck(
            timestamp=ts.isoformat(),
            status=coerce_status(item.get("status")),
            response_time=normalize_response_time(item.get("responseTime")),
        )))

    keyed.sort(key=lambda pair: pair[0])  # stable
    return [check for _, check in keyed[-MAX_RECENT_CHECKS:]]


# ── Schema upgrade ───────────────────────────────────────────────────────────


def decode_document(data: Any) -> dict[str, StatusEntry]:
    if not isinstance(data, Mapping):
        return {}
    return {str(sid): decode_entry(raw) for sid, raw in data.items()}


def decode_entry(raw: Any) -> StatusEntry:
    """Decode one stored entry into the current shape.

    Current shape: ``status`` string + ``recentChecks`` list. Anything else
    is treated as the legacy shape (``lastStatus``, history derived from
    ``lastResult``). Never raises.
    """
    if not isinstance(raw, Mapping):
        raw = {}
    if isinstance(raw.get("status"), str) and isinstance(raw.get("recentChecks"), list):
        return _decode_current(raw)
    return _decode_legacy(raw)


def _decode_current(raw: Mapping[str, Any]) -> StatusEntry:
    last_result = _decode_last_result(raw)
    return StatusEntry(
        status=coerce_status(raw["status"]).value,
        last_check=_decode_last_check(raw, last_result),
        last_result=last_result,
        recent_checks=sanitize_recent_checks(raw["recentChecks"]),
    )


def _decode_legacy(raw: Mapping[str, Any]) -> StatusEntry:
    last_result = _decode_last_result(raw)

    status_source = raw.get("status")
    if status_source is None and last_result is not None:
        status_source = last_result.status
    if status_source is None:
        status_source = raw.get("lastStatus") if isinstance(raw.get("lastStatus"), str) else "error"

    recent = sanitize_recent_checks(raw.get("recentChecks"))
    if not recent and last_result is not None:
        recent = [RecentCheck(last_result.checked_at, last_result.status, last_result.response_time)]

    return StatusEntry(
        status=coerce_status(status_source).value,
        last_check=_decode_last_check(raw, last_result),
        last_result=last_result,
        recent_checks=recent,
    )


def _decode_last_result(raw: Mapping[str, Any]) -> CheckResult | None:
    value = raw.get("lastResult")
    return normalize_result(value) if isinstance(value, Mapping) else None


def _decode_last_check(raw: Mapping[str, Any], last_result: CheckResult | None) -> str | None:
    if isinstance(raw.get("lastCheck"), str):
        return raw["lastCheck"]
    return last_result.checked_at if last_result else None


# ── File helpers ─────────────────────────────────────────────────────────────


def _read_json(path: Path, fallback: Any) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return fallback
    except (OSError, ValueError) as e:
        logger.warning("Failed to read %s: %s", path, e)
        return fallback


def atomic_write_json(path: Path, payload: Any) -> None:
    """Write JSON via a temp file in the same directory + os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, ensure_ascii=False)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def _safe_str(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _nullable_str(value: Any) -> str | None:
    if value is None:
        return None
    text = value if isinstance(value, str) else str(value)
    return text or None
