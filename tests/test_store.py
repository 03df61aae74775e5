"""Tests for the status store: normalization, history, persistence, upgrade."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import make_result
from probewatch.health.errors import PersistenceError, StoreNotInitializedError
from probewatch.health.models import CheckResult, CheckStatus, coerce_status
from probewatch.health.store import (
    LEGACY_FILES,
    StatusStore,
    decode_document,
    decode_entry,
    normalize_response_time,
    normalize_result,
    parse_timestamp,
    sanitize_recent_checks,
)

BASE = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def ts(minutes: int) -> str:
    return (BASE + timedelta(minutes=minutes)).isoformat()


# ── Status coercion ──────────────────────────────────────────────────────────


class TestCoerceStatus:
    @pytest.mark.parametrize("value,expected", [
        ("ok", CheckStatus.OK),
        ("FAIL", CheckStatus.FAIL),
        (" timeout ", CheckStatus.TIMEOUT),
        ("degraded", CheckStatus.FAIL),
        ("down", CheckStatus.FAIL),
        ("unknown", CheckStatus.ERROR),
        ("weird", CheckStatus.ERROR),
        (None, CheckStatus.ERROR),
        (42, CheckStatus.ERROR),
        (CheckStatus.TIMEOUT, CheckStatus.TIMEOUT),
    ])
    def test_total(self, value, expected) -> None:
        assert coerce_status(value) == expected


# ── Normalization ────────────────────────────────────────────────────────────


class TestNormalizeResult:
    def test_defaults_for_garbage(self) -> None:
        result = normalize_result("not a result")
        assert result.name == "Unknown Service"
        assert result.status == CheckStatus.ERROR
        assert result.response_time == 0
        assert result.stdout == ""
        assert result.answer is None
        assert parse_timestamp(result.checked_at) is not None

    def test_answer_dropped_for_non_ok(self) -> None:
        result = normalize_result({"name": "a", "status": "down", "answer": "2"})
        assert result.status == CheckStatus.FAIL
        assert result.answer is None

    def test_answer_kept_for_ok(self) -> None:
        result = normalize_result({"name": "a", "status": "ok", "answer": "2"})
        assert result.answer == "2"

    def test_timestamp_normalized_to_utc(self) -> None:
        result = normalize_result({"status": "ok", "checkedAt": "2026-03-01T14:00:00+02:00"})
        assert result.checked_at == "2026-03-01T12:00:00+00:00"

    def test_zulu_timestamp(self) -> None:
        result = normalize_result({"status": "ok", "checkedAt": "2026-03-01T12:00:00Z"})
        assert result.checked_at == "2026-03-01T12:00:00+00:00"

    def test_accepts_check_result(self) -> None:
        original = make_result(CheckStatus.OK, checked_at=ts(0), answer="pong")
        result = normalize_result(original)
        assert result.answer == "pong"
        assert result.checked_at == ts(0)

    @pytest.mark.parametrize("value,expected", [
        (12.5, 12.5), (-3, 0), (True, 0), ("12", 0), (float("nan"), 0), (float("inf"), 0),
    ])
    def test_response_time(self, value, expected) -> None:
        assert normalize_response_time(value) == expected


class TestSanitizeRecentChecks:
    def test_skips_malformed_entries(self) -> None:
        items = [
            {"timestamp": ts(0), "status": "ok", "responseTime": 5},
            {"timestamp": "garbage", "status": "ok"},
            {"status": "ok"},
            "nope",
            {"timestamp": ts(1), "status": "degraded", "responseTime": -1},
        ]
        checks = sanitize_recent_checks(items)
        assert [c.status for c in checks] == [CheckStatus.OK, CheckStatus.FAIL]
        assert checks[1].response_time == 0

    def test_sorted_ascending(self) -> None:
        items = [{"timestamp": ts(m), "status": "ok"} for m in (5, 1, 3)]
        assert [c.timestamp for c in sanitize_recent_checks(items)] == [ts(1), ts(3), ts(5)]

    def test_non_list_input(self) -> None:
        assert sanitize_recent_checks(None) == []
        assert sanitize_recent_checks({"timestamp": ts(0)}) == []


# ── StatusStore ──────────────────────────────────────────────────────────────


class TestStoreLifecycle:
    def test_uninitialized_store_rejects_calls(self, store: StatusStore) -> None:
        with pytest.raises(StoreNotInitializedError):
            asyncio.run(store.record_check_result("a", make_result()))
        with pytest.raises(StoreNotInitializedError):
            asyncio.run(store.get_all_services_summary())

    def test_initialize_removes_legacy_and_status(self, store: StatusStore) -> None:
        store.data_dir.mkdir(parents=True)
        for name in LEGACY_FILES:
            (store.data_dir / name).write_text("{}")
        store.status_path.write_text('{"old": {"status": "ok", "recentChecks": []}}')

        asyncio.run(store.initialize())

        assert store.initialized
        assert not store.status_path.exists()
        assert not any((store.data_dir / name).exists() for name in LEGACY_FILES)

    def test_initialize_is_repeatable(self, store: StatusStore) -> None:
        async def body():
            await store.initialize()
            await store.record_check_result("a", make_result())
            await store.initialize()
            return await store.get_service_recent_checks("a")

        assert asyncio.run(body()) == []

    def test_initialize_creates_directories(self, tmp_path: Path) -> None:
        store = StatusStore(data_dir=tmp_path / "d", config_dir=tmp_path / "c")
        asyncio.run(store.initialize())
        assert (tmp_path / "d").is_dir()
        assert (tmp_path / "c").is_dir()


class TestRecordCheckResult:
    def test_persists_entry(self, store: StatusStore) -> None:
        async def body():
            await store.initialize()
            await store.record_check_result("a", make_result(checked_at=ts(0)))

        asyncio.run(body())
        doc = json.loads(store.status_path.read_text())
        entry = doc["a"]
        assert entry["status"] == "ok"
        assert entry["lastCheck"] == ts(0)
        assert entry["lastResult"]["answer"] == "ok"
        assert entry["recentChecks"] == [{"timestamp": ts(0), "status": "ok", "responseTime": 12}]

    def test_empty_id_is_noop(self, store: StatusStore) -> None:
        async def body():
            await store.initialize()
            await store.record_check_result("", make_result())
            return await store.get_all_services_summary()

        assert asyncio.run(body()) == []
        assert not store.status_path.exists()

    def test_history_capped_at_90_newest_kept(self, store: StatusStore) -> None:
        async def body():
            await store.initialize()
            for m in range(95):
                await store.record_check_result("a", make_result(checked_at=ts(m)))
            return await store.get_service_recent_checks("a")

        checks = asyncio.run(body())
        assert len(checks) == 90
        assert checks[0]["timestamp"] == ts(5)
        assert checks[-1]["timestamp"] == ts(94)

    def test_out_of_order_results_sorted(self, store: StatusStore) -> None:
        async def body():
            await store.initialize()
            await store.record_check_result("a", make_result(checked_at=ts(10)))
            await store.record_check_result("a", make_result(CheckStatus.FAIL, checked_at=ts(2)))
            return await store.get_service_recent_checks("a")

        checks = asyncio.run(body())
        assert [c["timestamp"] for c in checks] == [ts(2), ts(10)]

    def test_raw_dict_is_normalized(self, store: StatusStore) -> None:
        async def body():
            await store.initialize()
            await store.record_check_result("a", {"status": "degraded", "answer": "x", "responseTime": -4})
            return await store.get_service_detail("a")

        detail = asyncio.run(body())
        assert detail["result"]["status"] == "fail"
        assert detail["result"]["answer"] is None
        assert detail["result"]["responseTime"] == 0
        assert detail["result"]["name"] == "Unknown Service"

    def test_concurrent_records_are_all_kept(self, store: StatusStore) -> None:
        async def body():
            await store.initialize()
            await asyncio.gather(*(
                store.record_check_result(sid, make_result(checked_at=ts(m)))
                for m in range(5) for sid in ("a", "b")
            ))
            return (
                await store.get_service_recent_checks("a"),
                await store.get_service_recent_checks("b"),
            )

        a, b = asyncio.run(body())
        assert len(a) == 5
        assert len(b) == 5
        doc = json.loads(store.status_path.read_text())
        assert len(doc["a"]["recentChecks"]) == 5
        assert len(doc["b"]["recentChecks"]) == 5

    def test_write_failure_raises_persistence_error(self, store: StatusStore) -> None:
        async def body():
            await store.initialize()
            with patch("probewatch.health.store.atomic_write_json", side_effect=OSError("disk full")):
                with pytest.raises(PersistenceError):
                    await store.record_check_result("a", make_result())
            return await store.get_service_recent_checks("a")

        assert len(asyncio.run(body())) == 1

    def test_add_check_alias(self, store: StatusStore) -> None:
        async def body():
            await store.initialize()
            await store.add_check("a", make_result())
            return await store.get_service_recent_checks("a")

        assert len(asyncio.run(body())) == 1


class TestQueries:
    def test_summary_order_and_orphans(self, store: StatusStore, write_services) -> None:
        write_services(
            {"id": "b", "name": "Bee", "command": "echo", "enabled": True, "params": {"model": "m1"}},
            {"id": "a", "name": "Ay", "command": "echo", "enabled": True},
            {"id": "off", "name": "Off", "command": "echo", "enabled": False},
            {"id": "b", "name": "Dup", "command": "echo", "enabled": True},
        )

        async def body():
            await store.initialize()
            await store.record_check_result("a", make_result(CheckStatus.TIMEOUT, checked_at=ts(1)))
            await store.record_check_result("ghost", make_result(checked_at=ts(2)))
            return await store.get_all_services_summary()

        summaries = asyncio.run(body())
        assert [s["id"] for s in summaries] == ["b", "a", "ghost"]

        b, a, ghost = summaries
        assert b == {
            "id": "b", "name": "Bee", "model": "m1",
            "currentStatus": "unknown", "lastCheck": None, "recentChecks": [],
        }
        assert a["currentStatus"] == "timeout"
        assert a["lastCheck"] == ts(1)
        assert ghost["name"] == "ghost"
        assert ghost["model"] is None

    def test_summary_is_stable(self, store: StatusStore, write_services) -> None:
        write_services({"id": "a", "name": "A", "command": "echo", "enabled": True})

        async def body():
            await store.initialize()
            await store.record_check_result("a", make_result(checked_at=ts(0)))
            return await store.get_all_services_summary(), await store.get_all_services_summary()

        first, second = asyncio.run(body())
        assert first == second

    def test_missing_config_gives_orphans_only(self, store: StatusStore) -> None:
        async def body():
            await store.initialize()
            await store.record_check_result("x", make_result())
            return await store.get_all_services_summary()

        assert [s["id"] for s in asyncio.run(body())] == ["x"]

    def test_detail_absent(self, store: StatusStore) -> None:
        async def body():
            await store.initialize()
            return await store.get_service_detail("nope"), await store.get_service_recent_checks("nope")

        assert asyncio.run(body()) == (None, [])

    def test_health_overview(self, store: StatusStore) -> None:
        async def body():
            await store.initialize()
            await store.record_check_result("a", make_result(CheckStatus.ERROR, checked_at=ts(3)))
            return await store.get_health_overview()

        overview = asyncio.run(body())
        assert overview["services"] == {"a": {"name": "a", "status": "error", "lastCheck": ts(3)}}
        assert parse_timestamp(overview["generatedAt"]) is not None


# ── Schema upgrade / reload ──────────────────────────────────────────────────


class TestDecode:
    def test_reload_round_trip(self, store: StatusStore) -> None:
        async def body():
            await store.initialize()
            await store.record_check_result("a", make_result(checked_at=ts(0)))
            await store.record_check_result("a", make_result(CheckStatus.FAIL, checked_at=ts(1)))
            before = await store.get_service_detail("a"), await store.get_service_recent_checks("a")
            await store.refresh_from_disk()
            after = await store.get_service_detail("a"), await store.get_service_recent_checks("a")
            return before, after

        before, after = asyncio.run(body())
        assert before == after

    def test_legacy_entry_with_last_result(self) -> None:
        entry = decode_entry({
            "lastStatus": "down",
            "lastResult": {"name": "A", "status": "ok", "answer": "2", "checkedAt": ts(4), "responseTime": 9},
        })
        assert entry.status == "ok"
        assert entry.last_check == ts(4)
        assert len(entry.recent_checks) == 1
        assert entry.recent_checks[0].timestamp == ts(4)
        assert entry.recent_checks[0].response_time == 9

    def test_legacy_entry_status_only(self) -> None:
        entry = decode_entry({"lastStatus": "degraded"})
        assert entry.status == "fail"
        assert entry.recent_checks == []
        assert entry.last_result is None
        assert entry.last_check is None

    def test_legacy_entry_without_anything(self) -> None:
        assert decode_entry({}).status == "error"

    def test_current_entry_status_coerced(self) -> None:
        entry = decode_entry({"status": "down", "recentChecks": [{"timestamp": ts(0), "status": "bogus"}]})
        assert entry.status == "fail"
        assert entry.recent_checks[0].status == CheckStatus.ERROR

    def test_document_level_garbage(self) -> None:
        assert decode_document(["nope"]) == {}
        doc = decode_document({"a": "nope"})
        assert doc["a"].status == "error"

    def test_refresh_reads_under_lock(self, store: StatusStore) -> None:
        lock_held: list[bool] = []

        def fake_read(path, fallback):
            lock_held.append(store._lock.locked())
            return fallback

        async def body():
            await store.initialize()
            with patch("probewatch.health.store._read_json", side_effect=fake_read):
                await store.refresh_from_disk()

        asyncio.run(body())
        assert lock_held == [True]

    def test_record_during_refresh_is_kept(self, store: StatusStore) -> None:
        async def body():
            await store.initialize()
            await asyncio.gather(
                store.refresh_from_disk(),
                store.record_check_result("a", make_result(checked_at=ts(0))),
            )
            return await store.get_service_recent_checks("a")

        assert len(asyncio.run(body())) == 1

    def test_refresh_without_file_clears_entries(self, store: StatusStore) -> None:
        async def body():
            await store.initialize()
            await store.record_check_result("a", make_result())
            store.status_path.unlink()
            await store.refresh_from_disk()
            return await store.get_all_services_summary()

        assert asyncio.run(body()) == []


class TestCheckResultModel:
    def test_to_dict_uses_camel_case(self) -> None:
        d = CheckResult(name="a", status=CheckStatus.OK, response_time=3, checked_at=ts(0)).to_dict()
        assert set(d) == {
            "name", "status", "responseTime", "stdout", "stderr",
            "answer", "message", "checkedAt", "expectedAnswer",
        }
        assert d["status"] == "ok"
