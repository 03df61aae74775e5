"""Service registry: loads the service-definition document into typed models.

The document is JSON (``config/services.json``) or YAML for ``.yaml``/``.yml``
files::

    {
      "checkInterval": 300,
      "services": [
        {"id": "calc", "name": "Calculator", "command": "expr {a} + {b}",
         "params": {"a": 1, "b": 1}, "expectedAnswer": "2",
         "timeout": 5000, "checkInterval": 5, "enabled": true}
      ]
    }

Patterns are written as ``{"regex": "^pong", "flags": "i"}``.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL = 300  # seconds, document-level default

Expected = Union[str, re.Pattern]

_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}


# ── Data models ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ServiceDefinition:
    """A monitored service and the probe that checks it."""

    id: str
    name: str
    command: str | list[str] = ""
    display_name: str = ""
    params: dict[str, Any] = field(default_factory=dict)
    cwd: str = ""
    timeout_ms: int | None = None
    expected_answer: Any = None  # raw definition, echoed into results
    expected: tuple[Expected, ...] = ()  # compiled candidates
    check_interval: int | None = None  # minutes
    enabled: bool = False
    type: str = "command"
    model: str | None = None


@dataclass
class MonitorConfig:
    """Parsed service-definition document."""

    services: list[ServiceDefinition] = field(default_factory=list)
    check_interval: int = DEFAULT_CHECK_INTERVAL

    @property
    def enabled_services(self) -> list[ServiceDefinition]:
        return [s for s in self.services if s.enabled]

    def get(self, service_id: str) -> ServiceDefinition | None:
        return next(
            (s for s in self.services if s.id == service_id or s.name == service_id),
            None,
        )


# ── Loading ──────────────────────────────────────────────────────────────────


def load_config_document(path: Path) -> MonitorConfig:
    """Read and parse the service-definition document. Never raises.

    Missing or malformed documents yield an empty config; individual bad
    definitions are skipped.
    """
    if not path.exists():
        return MonitorConfig()

    try:
        text = path.read_text(encoding="utf-8")
        if path.suffix.lower() in (".yaml", ".yml"):
            raw = yaml.safe_load(text)
        else:
            raw = json.loads(text)
    except Exception as e:
        logger.warning("Failed to read %s: %s", path, e)
        return MonitorConfig()

    if not isinstance(raw, dict):
        logger.warning("Ignoring %s: top level is not an object", path)
        return MonitorConfig()

    return parse_config(raw)


def parse_config(raw: dict[str, Any]) -> MonitorConfig:
    interval = raw.get("checkInterval", DEFAULT_CHECK_INTERVAL)
    if not _is_positive_number(interval):
        interval = DEFAULT_CHECK_INTERVAL

    services: list[ServiceDefinition] = []
    entries = raw.get("services")
    for entry in entries if isinstance(entries, list) else []:
        try:
            services.append(parse_service(entry))
        except ConfigError as e:
            logger.warning("Skipping service definition: %s", e)

    return MonitorConfig(services=services, check_interval=int(interval))


def parse_service(raw: Any) -> ServiceDefinition:
    """Build a ServiceDefinition from one document entry.

    Raises ``ConfigError`` when the entry has no identifier or an
    invalid expected-answer pattern.
    """
    if not isinstance(raw, dict):
        raise ConfigError(f"definition is not an object: {raw!r}")

    name = _str_or_empty(raw.get("name"))
    service_id = _str_or_empty(raw.get("id")) or name
    if not service_id:
        raise ConfigError("definition has neither 'id' nor 'name'")

    params = raw.get("params")
    params = dict(params) if isinstance(params, dict) else {}

    command = raw.get("command", "")
    if isinstance(command, list):
        command = [str(part) for part in command if part is not None and part != ""]
    elif not isinstance(command, str):
        command = ""

    expected_raw = _pick(raw, "expectedAnswer", "expected_answer")
    try:
        expected = parse_expected(expected_raw)
    except re.error as e:
        raise ConfigError(f"service '{service_id}' has an invalid pattern: {e}") from e

    timeout = raw.get("timeout")
    interval = _pick(raw, "checkInterval", "check_interval")
    model = params.get("model") or raw.get("model")

    return ServiceDefinition(
        id=service_id,
        name=name or service_id,
        command=command,
        display_name=_str_or_empty(_pick(raw, "displayName", "display_name")),
        params=params,
        cwd=_str_or_empty(raw.get("cwd")),
        timeout_ms=int(timeout) if _is_positive_number(timeout) else None,
        expected_answer=describe_expected(expected_raw),
        expected=expected,
        check_interval=int(interval) if _is_positive_number(interval) else None,
        enabled=raw.get("enabled") is True,
        type=_str_or_empty(raw.get("type")) or "command",
        model=str(model) if model else None,
    )


# ── Expected answers ─────────────────────────────────────────────────────────


def parse_expected(raw: Any) -> tuple[Expected, ...]:
    """Normalize an expected-answer definition into ordered match candidates."""
    if raw is None:
        return ()
    items = raw if isinstance(raw, (list, tuple)) else [raw]

    candidates: list[Expected] = []
    for item in items:
        if item is None or item == "" or item is False:
            continue
        if isinstance(item, re.Pattern):
            candidates.append(item)
        elif isinstance(item, dict):
            source = item.get("regex", item.get("pattern"))
            if not isinstance(source, str) or not source:
                continue
            flags = 0
            for ch in str(item.get("flags", "")):
                flags |= _REGEX_FLAGS.get(ch, 0)
            candidates.append(re.compile(source, flags))
        else:
            candidates.append(str(item))
    return tuple(candidates)


def describe_expected(raw: Any) -> Any:
    """JSON-safe echo of an expected-answer definition."""
    if isinstance(raw, re.Pattern):
        return {"regex": raw.pattern}
    if isinstance(raw, (list, tuple)):
        return [describe_expected(item) for item in raw]
    return raw


# ── Helpers ──────────────────────────────────────────────────────────────────


def _pick(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def _str_or_empty(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _is_positive_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and value == value  # NaN
        and value not in (float("inf"), float("-inf"))
        and value > 0
    )
