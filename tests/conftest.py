"""Shared test fixtures."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

import pytest

from probewatch.health.models import CheckResult, CheckStatus
from probewatch.health.registry import ServiceDefinition, parse_service
from probewatch.health.store import StatusStore


def make_service(**overrides: Any) -> ServiceDefinition:
    """A ServiceDefinition built through the document parser."""
    raw = {"id": "svc", "name": "Service", "command": "echo ok", "enabled": True}
    raw.update(overrides)
    return parse_service(raw)


def make_result(
    status: CheckStatus = CheckStatus.OK, checked_at: str = "", **kwargs: Any,
) -> CheckResult:
    kwargs.setdefault("name", "Service")
    kwargs.setdefault("response_time", 12)
    if status == CheckStatus.OK:
        kwargs.setdefault("answer", "ok")
    return CheckResult(status=status, checked_at=checked_at, **kwargs)


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    path = tmp_path / "config"
    path.mkdir()
    return path


@pytest.fixture
def write_services(config_dir: Path) -> Callable[..., Path]:
    """Write a services.json with the given definitions."""

    def _write(*services: dict[str, Any], check_interval: int = 300) -> Path:
        path = config_dir / "services.json"
        path.write_text(json.dumps({"checkInterval": check_interval, "services": list(services)}))
        return path

    return _write


@pytest.fixture
def store(tmp_path: Path, config_dir: Path) -> StatusStore:
    return StatusStore(data_dir=tmp_path / "data", config_dir=config_dir)
