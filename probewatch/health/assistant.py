"""Assistant CLI integration — session bootstrap for ``claude`` probes.

Probes that ask the assistant CLI a question need a local project session
to resume, otherwise every check starts a fresh conversation. Before such a
probe runs, the session directory for its project is created from a template
and ``--resume <SESSION_ID>`` is injected into the command.

This is the only vendor-specific code path; the executor reaches it through
the ``ProbeIntegration`` protocol and only for commands it ``matches()``.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import uuid
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

# Fixed for the life of the process; the session template is named after it.
SESSION_ID = str(uuid.uuid5(uuid.NAMESPACE_URL, "probewatch/assistant-session"))

_INVOCATION = re.compile(r"\bclaude\s+", re.IGNORECASE)


class ProbeIntegration(Protocol):
    """Capability hook for probes that target a special CLI."""

    def matches(self, command: str) -> bool: ...

    def prepare(self, project_path: str) -> None: ...

    def rewrite_command(self, command: str) -> str: ...

    def environment(self, workdir: str) -> dict[str, str]: ...


def normalize_project_name(dir_path: str) -> str:
    """``/srv/my_app`` → ``-srv-my-app`` (the CLI's project directory name)."""
    return re.sub(r"[/_:\\]", "-", dir_path.rstrip("/"))


def inject_resume(command: str, session_id: str = SESSION_ID) -> str:
    """Insert ``--resume <id>`` right after the CLI token unless present."""
    if "--resume" in command:
        return command
    match = _INVOCATION.search(command)
    if not match:
        return command
    pos = match.end()
    return f"{command[:pos]}--resume {session_id} {command[pos:]}"


class AssistantCLI:
    """Prepares session state and environment for assistant CLI probes."""

    def __init__(
        self,
        home: Path | None = None,
        template_dir: Path | None = None,
        session_id: str = SESSION_ID,
    ) -> None:
        self.home = home or Path.home() / ".claude"
        self.template_dir = template_dir or Path("template")
        self.session_id = session_id
        self._lock = threading.Lock()

    @property
    def template_file(self) -> Path:
        return self.template_dir / f"{self.session_id}.jsonl"

    def matches(self, command: str) -> bool:
        return bool(_INVOCATION.search(command))

    def rewrite_command(self, command: str) -> str:
        return inject_resume(command, self.session_id)

    def prepare(self, project_path: str) -> None:
        """Re-seed the project session from the template. Never raises.

        Runs before every check so each resume starts from the same session.
        """
        with self._lock:
            try:
                self._write_session(project_path)
            except Exception:
                logger.exception("Failed to prepare assistant session for %s", project_path)

    def environment(self, workdir: str) -> dict[str, str]:
        """``env`` block of ``<workdir>/.claude/settings.json``, if any."""
        settings_path = Path(workdir) / ".claude" / "settings.json"
        if not settings_path.is_file():
            return {}
        try:
            data = json.loads(settings_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.debug("Ignoring unreadable %s: %s", settings_path, e)
            return {}
        env = data.get("env") if isinstance(data, dict) else None
        if not isinstance(env, dict):
            return {}
        return {str(k): str(v) for k, v in env.items() if v is not None}

    def _write_session(self, project_path: str) -> None:
        target_dir = self.home / "projects" / normalize_project_name(project_path)
        target_dir.mkdir(parents=True, exist_ok=True)

        if not self.template_file.is_file():
            logger.warning("Session template not found: %s", self.template_file)
            return

        lines = []
        for line in self.template_file.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                obj = json.loads(line)
            except ValueError:
                lines.append(line)
                continue
            if isinstance(obj, dict) and obj.get("cwd"):
                obj["cwd"] = project_path
            lines.append(json.dumps(obj))

        target = target_dir / f"{self.session_id}.jsonl"
        target.write_text("\n".join(lines) + "\n", encoding="utf-8")
        logger.info("Assistant session written: %s (%d lines)", target, len(lines))
