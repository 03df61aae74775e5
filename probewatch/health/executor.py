"""Probe executor — runs one service probe and classifies the outcome.

A probe is a shell command. The executor resolves the command template,
spawns it under ``/bin/sh -c`` in its own process group, enforces the timeout
with SIGTERM then SIGKILL after a grace period, and extracts an answer from
stdout. ``ProbeExecutor.check`` never raises: every failure mode comes back as
a CheckResult with status ``fail``, ``error`` or ``timeout``.

Lifecycle of one check::

    Idle → Spawning → SpawnFailed
                    → Running → Exited
                              → TimedOut → GraceWait → ForceKilled
    (every path) → Finalized
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shlex
import signal
import sys
import time
from collections.abc import Sequence
from enum import Enum
from pathlib import Path

from .assistant import ProbeIntegration
from .errors import NoMatchError, ProbeError, ProbeRuntimeError, ProbeTimeoutError, SpawnError
from .models import CheckResult, CheckStatus, coerce_status
from .registry import Expected, ServiceDefinition, describe_expected, parse_expected

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30_000
KILL_GRACE_MS = 2_000
LOG_TRUNCATE_CHARS = 200

_IS_WINDOWS = sys.platform == "win32"

_PATH_PARAM = re.compile(r"home|cwd|dir|path|root", re.IGNORECASE)
_CD_PREFIX = re.compile(r'^cd\s+"([^"]+)"\s+&&\s+(.+)$', re.DOTALL)


# ── Command resolution ───────────────────────────────────────────────────────


def resolve_path(value: str, project_root: Path) -> str:
    """Absolute paths pass through; relative ones hang off the project root."""
    trimmed = value.strip()
    if not trimmed or os.path.isabs(trimmed):
        return trimmed
    return str(project_root / trimmed)


def interpolate_command(template: str, params: dict, project_root: Path) -> str:
    """Replace ``{key}`` placeholders with quoted, escaped parameter values.

    Path-like keys (home/cwd/dir/path/root) are resolved against the project
    root. Unknown placeholders are left intact.
    """
    result = template
    for key, value in params.items():
        if value is None:
            continue
        text = str(value).lower() if isinstance(value, bool) else str(value)
        if _PATH_PARAM.search(str(key)):
            text = resolve_path(text, project_root)
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        result = result.replace("{" + str(key) + "}", f'"{escaped}"')
    return result


def split_cd_prefix(command: str) -> tuple[str | None, str]:
    """``cd "<dir>" && <rest>`` → (dir, rest); anything else → (None, command)."""
    match = _CD_PREFIX.match(command)
    if not match:
        return None, command
    return match.group(1), match.group(2)


# ── Answer extraction ────────────────────────────────────────────────────────


def extract_answer(text: str | None, expected: Sequence[Expected] = ()) -> str | None:
    """Find the accepted answer in probe output, or None.

    Without expectations the first non-empty line is the answer. Otherwise
    candidates are tried in order; a literal matches an identical line or a
    whole word in the output, a pattern matches a line (the line is the
    answer) or the whole output (the match is the answer).
    """
    if not text:
        return None

    normalized = text.replace("\r\n", "\n")
    lines = [line.strip() for line in normalized.split("\n") if line.strip()]

    if not expected:
        return lines[0] if lines else None

    for candidate in expected:
        if isinstance(candidate, re.Pattern):
            for line in lines:
                if candidate.search(line):
                    return line
            match = candidate.search(normalized)
            if match:
                return match.group(0)
            continue

        literal = str(candidate).strip()
        if not literal:
            continue
        if literal in lines:
            return literal
        if re.search(rf"\b{re.escape(literal)}\b", normalized):
            return literal

    return None


def truncate_for_log(value: str | None, limit: int = LOG_TRUNCATE_CHARS) -> str:
    if not value:
        return ""
    text = value.strip()
    if len(text) <= limit:
        return text
    return f"{text[:limit]}... [truncated, length {len(text)} chars] ..."


# ── Per-check state machine ──────────────────────────────────────────────────


class ProbeState(str, Enum):
    IDLE = "idle"
    SPAWNING = "spawning"
    SPAWN_FAILED = "spawn-failed"
    RUNNING = "running"
    EXITED = "exited"
    TIMED_OUT = "timed-out"
    GRACE_WAIT = "grace-wait"
    FORCE_KILLED = "force-killed"
    FINALIZED = "finalized"


class _ProbeRun:
    """Mutable state of one in-flight check; finalizes exactly once."""

    def __init__(self, service: ServiceDefinition) -> None:
        self.name = service.name or service.id or "unknown"
        self.expected_answer = describe_expected(service.expected_answer)
        self.started = time.perf_counter()
        self.state = ProbeState.IDLE
        self.stdout = ""
        self.stderr = ""
        self.result: CheckResult | None = None

    def transition(self, state: ProbeState) -> None:
        logger.debug("Probe %s: %s → %s", self.name, self.state.value, state.value)
        self.state = state

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)

    def finalize(
        self, status: CheckStatus, answer: str | None = None, message: str | None = None,
    ) -> CheckResult:
        if self.result is not None:
            return self.result
        self.transition(ProbeState.FINALIZED)
        self.result = CheckResult(
            name=self.name,
            status=status,
            response_time=self.elapsed_ms(),
            stdout=self.stdout,
            stderr=self.stderr,
            answer=answer if status == CheckStatus.OK else None,
            message=message,
            expected_answer=self.expected_answer,
        )
        return self.result


# ── Executor ─────────────────────────────────────────────────────────────────


class ProbeExecutor:
    """Runs service probes as child processes."""

    def __init__(
        self,
        project_root: Path | None = None,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        kill_grace_ms: int = KILL_GRACE_MS,
        integrations: Sequence[ProbeIntegration] = (),
    ) -> None:
        self._project_root = project_root
        self.default_timeout_ms = default_timeout_ms
        self.kill_grace_ms = kill_grace_ms
        self.integrations = list(integrations)

    @property
    def project_root(self) -> Path:
        return self._project_root or Path.cwd()

    def resolve_command(self, service: ServiceDefinition) -> str:
        command = service.command
        if isinstance(command, (list, tuple)):
            command = shlex.join(str(part) for part in command if part not in (None, ""))
        command = (command or "").strip()
        if command and service.params:
            interpolated = interpolate_command(command, service.params, self.project_root)
            if interpolated != command:
                logger.info("Interpolated command: %s", interpolated)
            command = interpolated
        return command

    async def check(self, service: ServiceDefinition) -> CheckResult:
        """Run one probe to completion. Never raises."""
        run = _ProbeRun(service)
        logger.info("Starting check: %s", run.name)

        try:
            stdout = await self._execute(run, service)
            candidates = service.expected or parse_expected(service.expected_answer)
            answer = extract_answer(stdout, candidates)
            if answer is None:
                if candidates:
                    raise NoMatchError("Expected answer was not matched")
                raise NoMatchError("Probe produced no output")
            result = run.finalize(CheckStatus.OK, answer=answer)
        except ProbeError as e:
            result = run.finalize(coerce_status(e.status), message=str(e) or type(e).__name__)
        except Exception as e:
            logger.exception("Unexpected error while checking %s", run.name)
            result = run.finalize(CheckStatus.ERROR, message=f"{type(e).__name__}: {e}")

        logger.info(
            "Check %s completed: status=%s time=%sms answer=%r message=%r stdout=%r stderr=%r",
            run.name, result.status.value, result.response_time, result.answer,
            result.message, truncate_for_log(result.stdout), truncate_for_log(result.stderr),
        )
        return result

    # -- internals -------------------------------------------------------------

    async def _execute(self, run: _ProbeRun, service: ServiceDefinition) -> str:
        command = self.resolve_command(service)
        if not command:
            raise SpawnError("Command cannot be empty")
        logger.info("Executing command: %s", command)

        explicit_cwd = resolve_path(service.cwd, self.project_root) if service.cwd else None
        env = dict(os.environ)

        integration = next((i for i in self.integrations if i.matches(command)), None)
        if integration is not None:
            cd_path, _ = split_cd_prefix(command)
            project_path = explicit_cwd or cd_path
            if project_path:
                await self._prepare(integration, project_path)
            rewritten = integration.rewrite_command(command)
            if rewritten != command:
                logger.info("Rewrote command for %s: %s", run.name, rewritten)
            command = rewritten

        cd_path, actual = split_cd_prefix(command)
        workdir = explicit_cwd or cd_path or os.getcwd()
        if integration is not None:
            env.update(integration.environment(workdir))

        timeout_ms = service.timeout_ms if service.timeout_ms else self.default_timeout_ms
        return await self._spawn_and_wait(run, actual, workdir, env, timeout_ms)

    async def _prepare(self, integration: ProbeIntegration, project_path: str) -> None:
        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(None, integration.prepare, project_path)
        except Exception:
            logger.exception("Probe integration bootstrap failed for %s", project_path)

    async def _spawn_and_wait(
        self, run: _ProbeRun, command: str, workdir: str, env: dict[str, str], timeout_ms: int,
    ) -> str:
        run.transition(ProbeState.SPAWNING)
        argv = ["cmd.exe", "/c", command] if _IS_WINDOWS else ["/bin/sh", "-c", command]
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=workdir,
                env=env,
                start_new_session=not _IS_WINDOWS,
            )
        except (OSError, ValueError) as e:
            run.transition(ProbeState.SPAWN_FAILED)
            run.stderr = str(e)
            raise SpawnError(str(e) or type(e).__name__) from e

        run.transition(ProbeState.RUNNING)
        out_chunks: list[bytes] = []
        err_chunks: list[bytes] = []
        readers = [
            asyncio.ensure_future(_drain(proc.stdout, out_chunks)),
            asyncio.ensure_future(_drain(proc.stderr, err_chunks)),
        ]
        waiter = asyncio.ensure_future(proc.wait())
        timed_out = False

        try:
            done, _ = await asyncio.wait({waiter}, timeout=timeout_ms / 1000)
            if not done:
                timed_out = True
                run.transition(ProbeState.TIMED_OUT)
                _send_signal(proc, force=False)
                logger.warning("Process %s exceeded timeout; sent SIGTERM", run.name)

                run.transition(ProbeState.GRACE_WAIT)
                done, _ = await asyncio.wait({waiter}, timeout=self.kill_grace_ms / 1000)
                if not done:
                    run.transition(ProbeState.FORCE_KILLED)
                    _send_signal(proc, force=True)
                    logger.warning("Process %s ignored SIGTERM; sent SIGKILL", run.name)
                    await waiter
            else:
                run.transition(ProbeState.EXITED)

            _, pending = await asyncio.wait(readers, timeout=self.kill_grace_ms / 1000)
            for task in pending:
                task.cancel()
        finally:
            if not waiter.done():
                # Cancelled from outside; do not leave the group running.
                _send_signal(proc, force=True)
                waiter.cancel()

        stdout = _decode(out_chunks)
        run.stdout = stdout.strip()
        run.stderr = _decode(err_chunks).strip()

        if timed_out:
            raise ProbeTimeoutError(f"Execution timed out after {timeout_ms}ms")

        code = proc.returncode
        if code is not None and code < 0:
            raise ProbeRuntimeError(f"Process stopped by signal: {_signal_name(-code)}")
        if code != 0:
            raise ProbeRuntimeError(f"Exit code: {code}")
        return stdout


# ── Process helpers ──────────────────────────────────────────────────────────


async def _drain(stream: asyncio.StreamReader | None, chunks: list[bytes]) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            break
        chunks.append(chunk)


def _decode(chunks: list[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")


def _send_signal(proc: asyncio.subprocess.Process, force: bool) -> None:
    """Signal the probe's whole process group (SIGTERM, or SIGKILL if force)."""
    if proc.returncode is not None:
        return
    try:
        if _IS_WINDOWS:
            _signal_child(proc, force)
        else:
            os.killpg(proc.pid, signal.SIGKILL if force else signal.SIGTERM)
    except ProcessLookupError:
        pass
    except PermissionError:
        # Group already reaped and pid reused; fall back to the direct child.
        try:
            _signal_child(proc, force)
        except ProcessLookupError:
            pass


def _signal_child(proc: asyncio.subprocess.Process, force: bool) -> None:
    if force:
        proc.kill()
    else:
        proc.terminate()


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)
