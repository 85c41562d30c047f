"""Dev-server process management.

Spawns detached dev servers (each in its own session, so the whole process
group can be signalled), keeps their identity in a :class:`RunningServers`
map keyed by project path, and terminates them on request.

Every spawn also leaves a small record in ``<project>/.preview/server.json``
(pid, port, start time) and sends server output to
``<project>/.preview/server.log``.  The record is what lets a restarted
orchestrator adopt a server it launched in a previous lifetime; an adopted
handle has no process object and can only be force-killed by pid.
"""

from __future__ import annotations

import asyncio
import os
import signal
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, BinaryIO, Optional

from rich.markup import escape

from devpreview.utils import console, load_json, save_json

SERVER_STATE_DIR = ".preview"
SERVER_RECORD = "server.json"
SERVER_LOG = "server.log"


class SpawnError(Exception):
    """Raised when a dev server could not be launched."""

    def __init__(self, message: str, command: list[str] | None = None) -> None:
        self.command = command or []
        super().__init__(message)


class TerminationOutcome(str, Enum):
    """What :meth:`ProcessSupervisor.terminate` actually did."""

    TERMINATED = "terminated"
    KILLED = "killed"
    NOT_RUNNING = "not-running"
    FAILED = "failed"

    @property
    def issued(self) -> bool:
        """``True`` if a signal reached a live process."""
        return self in (TerminationOutcome.TERMINATED, TerminationOutcome.KILLED)


@dataclass
class RunningServerHandle:
    """Identity of one tracked dev server."""

    path: str
    pid: int
    port: int
    process: Optional[asyncio.subprocess.Process] = None
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    log_path: Optional[Path] = None

    @property
    def adopted(self) -> bool:
        return self.process is None

    def is_alive(self) -> bool:
        if self.process is not None:
            return self.process.returncode is None
        return pid_alive(self.pid)


def pid_alive(pid: int) -> bool:
    """Return ``True`` if a process with *pid* exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def state_dir(project_path: str | Path) -> Path:
    return Path(project_path) / SERVER_STATE_DIR


def record_path(project_path: str | Path) -> Path:
    return state_dir(project_path) / SERVER_RECORD


def log_path(project_path: str | Path) -> Path:
    return state_dir(project_path) / SERVER_LOG


def read_record(project_path: str | Path) -> Optional[dict[str, Any]]:
    """Return the server record of a project, or ``None`` if absent/corrupt."""
    try:
        data = load_json(record_path(project_path))
    except (OSError, ValueError):
        return None
    if not isinstance(data.get("pid"), int) or not isinstance(data.get("port"), int):
        return None
    return data


def remove_record(project_path: str | Path) -> None:
    try:
        record_path(project_path).unlink()
    except FileNotFoundError:
        pass


def _open_log(path: Path) -> BinaryIO:
    path.parent.mkdir(parents=True, exist_ok=True)
    return open(path, "ab")


# ---------------------------------------------------------------------------
# RunningServers
# ---------------------------------------------------------------------------


class RunningServers:
    """Map of project path -> :class:`RunningServerHandle`.

    Only ``insert``, ``remove``, ``get`` and ``snapshot`` touch the map.
    The orchestrator serialises mutations per path; ``snapshot`` returns an
    immutable copy so readers never observe a half-applied change.
    """

    def __init__(self) -> None:
        self._handles: dict[str, RunningServerHandle] = {}

    def insert(self, handle: RunningServerHandle) -> None:
        if handle.path in self._handles:
            raise ValueError(f"A server is already tracked for {handle.path}")
        self._handles[handle.path] = handle

    def remove(self, path: str) -> Optional[RunningServerHandle]:
        return self._handles.pop(path, None)

    def get(self, path: str) -> Optional[RunningServerHandle]:
        return self._handles.get(path)

    def snapshot(self) -> tuple[RunningServerHandle, ...]:
        return tuple(self._handles.values())

    def __contains__(self, path: object) -> bool:
        return path in self._handles

    def __len__(self) -> int:
        return len(self._handles)


# ---------------------------------------------------------------------------
# ProcessSupervisor
# ---------------------------------------------------------------------------


class ProcessSupervisor:
    """Launches, tracks and stops dev servers.

    Parameters
    ----------
    stop_timeout:
        Seconds to wait after SIGTERM before escalating to SIGKILL.
    """

    def __init__(
        self,
        servers: Optional[RunningServers] = None,
        *,
        stop_timeout: float = 5.0,
    ) -> None:
        self.servers = servers if servers is not None else RunningServers()
        self.stop_timeout = stop_timeout

    # -- Spawning ------------------------------------------------------------

    async def spawn(
        self,
        project_path: str,
        port: int,
        command: list[str],
        env: Optional[dict[str, str]] = None,
    ) -> RunningServerHandle:
        """Launch *command* in *project_path*, bound to *port*.

        ``{port}`` placeholders in *command* are replaced with the port; the
        port is also exported as ``PORT``.

        Raises:
            SpawnError: If the executable cannot be started or a live server
                is already tracked for the path.
        """
        existing = self.servers.get(project_path)
        if existing is not None and existing.is_alive():
            raise SpawnError(f"A dev server is already running for {project_path}")

        argv = [part.replace("{port}", str(port)) for part in command]
        if not argv:
            raise SpawnError("Empty dev-server command", argv)

        merged_env = {**os.environ, "PORT": str(port), "BROWSER": "none", **(env or {})}
        server_log = log_path(project_path)

        try:
            log_file = await asyncio.to_thread(_open_log, server_log)
            with log_file:
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    cwd=project_path,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=asyncio.subprocess.STDOUT,
                    env=merged_env,
                    start_new_session=True,
                )
        except OSError as exc:
            raise SpawnError(f"Failed to launch '{argv[0]}': {exc}", argv) from exc

        handle = RunningServerHandle(
            path=project_path,
            pid=process.pid,
            port=port,
            process=process,
            log_path=server_log,
        )
        if existing is not None:
            self.servers.remove(project_path)
        self.servers.insert(handle)

        try:
            await save_json(
                {"pid": handle.pid, "port": port, "started_at": handle.started_at, "command": argv},
                record_path(project_path),
            )
        except OSError as exc:
            console.print(f"[yellow]Could not write server record: {escape(str(exc))}[/yellow]")

        console.print(
            f"[dim]Spawned pid {handle.pid} on port {port} for {escape(project_path)}[/dim]"
        )
        return handle

    def adopt(self, project_path: str, pid: int, port: int) -> RunningServerHandle:
        """Track a server launched by an earlier orchestrator lifetime."""
        handle = RunningServerHandle(path=project_path, pid=pid, port=port, process=None)
        self.servers.insert(handle)
        return handle

    # -- Stopping ------------------------------------------------------------

    async def stop(self, project_path: str) -> Optional[TerminationOutcome]:
        """Stop and forget the server tracked for *project_path*.

        The handle is removed whatever the termination outcome.

        Returns:
            ``None`` if nothing was tracked for the path.
        """
        handle = self.servers.remove(project_path)
        if handle is None:
            return None

        try:
            outcome = await self.terminate(handle)
        except OSError as exc:
            console.print(
                f"[red]Failed to stop pid {handle.pid}: {escape(str(exc))}[/red]"
            )
            outcome = TerminationOutcome.FAILED

        try:
            await asyncio.to_thread(remove_record, project_path)
        except OSError:
            pass
        return outcome

    async def stop_all(self) -> dict[str, TerminationOutcome]:
        """Stop every tracked server."""
        outcomes: dict[str, TerminationOutcome] = {}
        for handle in self.servers.snapshot():
            outcome = await self.stop(handle.path)
            if outcome is not None:
                outcomes[handle.path] = outcome
        return outcomes

    async def terminate(
        self, handle: RunningServerHandle, graceful: bool = True
    ) -> TerminationOutcome:
        """Signal the process group behind *handle*.

        Graceful termination (SIGTERM, then SIGKILL after ``stop_timeout``)
        needs the process object; adopted handles are force-killed by pid.
        """
        if handle.process is not None and graceful:
            return await self._terminate_child(handle.process)
        return _kill_group(handle.pid)

    async def _terminate_child(self, process: asyncio.subprocess.Process) -> TerminationOutcome:
        if process.returncode is not None:
            # Leader is gone; take any stragglers in its group with it.
            _signal_group(process.pid, signal.SIGTERM)
            return TerminationOutcome.NOT_RUNNING

        if not _signal_group(process.pid, signal.SIGTERM):
            await process.wait()
            return TerminationOutcome.NOT_RUNNING

        try:
            await asyncio.wait_for(process.wait(), timeout=self.stop_timeout)
            return TerminationOutcome.TERMINATED
        except asyncio.TimeoutError:
            _signal_group(process.pid, signal.SIGKILL)
            await process.wait()
            return TerminationOutcome.KILLED


def _signal_group(pid: int, sig: int) -> bool:
    """Send *sig* to the process group led by *pid*; ``False`` if it is gone."""
    try:
        os.killpg(pid, sig)
    except ProcessLookupError:
        return False
    return True


def _kill_group(pid: int) -> TerminationOutcome:
    try:
        os.killpg(pid, signal.SIGKILL)
    except ProcessLookupError:
        return TerminationOutcome.NOT_RUNNING
    except PermissionError:
        return TerminationOutcome.FAILED
    return TerminationOutcome.KILLED
