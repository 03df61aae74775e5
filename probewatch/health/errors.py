"""Error taxonomy for probe execution and status persistence.

Probe errors never leave the executor: they are raised internally and
converted into a classified CheckResult at its boundary.
"""

from __future__ import annotations


class MonitorError(Exception):
    """Base class for all probewatch errors."""


# ── Probe outcomes ───────────────────────────────────────────────────────────


class ProbeError(MonitorError):
    """A probe finished without a healthy answer."""

    status = "error"


class SpawnError(ProbeError):
    """The probe process could not be created."""


class ProbeRuntimeError(ProbeError):
    """Nonzero exit code or killed by a signal (not a timeout)."""


class ProbeTimeoutError(ProbeError):
    """Deadline exceeded; the process was terminated."""

    status = "timeout"


class NoMatchError(ProbeError):
    """Clean exit but no expected answer found in the output."""

    status = "fail"


# ── Config / storage ─────────────────────────────────────────────────────────


class ConfigError(MonitorError):
    """A service definition is unusable (e.g. no identifier)."""


class PersistenceError(MonitorError):
    """Reading or writing the status document failed."""


class StoreNotInitializedError(MonitorError, RuntimeError):
    """A store operation ran before initialize()."""
