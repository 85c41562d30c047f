"""Tests for dev-server process management (devpreview.supervisor).

Spawns real child processes built on the running interpreter.
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from pathlib import Path

import pytest

from devpreview.supervisor import (
    ProcessSupervisor,
    RunningServerHandle,
    RunningServers,
    SpawnError,
    TerminationOutcome,
    pid_alive,
    read_record,
    record_path,
)

SLEEPER_COMMAND = [sys.executable, "-c", "import time; time.sleep(60)", "{port}"]

# Ignores SIGTERM so only SIGKILL ends it.
STUBBORN_COMMAND = [
    sys.executable,
    "-c",
    "import signal, sys, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
    "print('ready', flush=True); time.sleep(60)",
]


@pytest.fixture
async def supervisor():
    sup = ProcessSupervisor(stop_timeout=1.0)
    yield sup
    await sup.stop_all()


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.05)


# ---------------------------------------------------------------------------
# RunningServers
# ---------------------------------------------------------------------------


class TestRunningServers:
    @pytest.mark.unit
    def test_insert_get_remove(self):
        servers = RunningServers()
        handle = RunningServerHandle(path="/p", pid=1, port=4321)
        servers.insert(handle)
        assert servers.get("/p") is handle
        assert "/p" in servers
        assert len(servers) == 1
        assert servers.remove("/p") is handle
        assert servers.remove("/p") is None
        assert servers.get("/p") is None

    @pytest.mark.unit
    def test_duplicate_insert_rejected(self):
        servers = RunningServers()
        servers.insert(RunningServerHandle(path="/p", pid=1, port=4321))
        with pytest.raises(ValueError):
            servers.insert(RunningServerHandle(path="/p", pid=2, port=4322))

    @pytest.mark.unit
    def test_snapshot_is_a_copy(self):
        servers = RunningServers()
        servers.insert(RunningServerHandle(path="/a", pid=1, port=4321))
        snapshot = servers.snapshot()
        servers.insert(RunningServerHandle(path="/b", pid=2, port=4322))
        assert isinstance(snapshot, tuple)
        assert [h.path for h in snapshot] == ["/a"]


class TestPidAlive:
    @pytest.mark.unit
    def test_own_pid(self):
        assert pid_alive(os.getpid()) is True

    @pytest.mark.unit
    def test_invalid_pid(self):
        assert pid_alive(0) is False
        assert pid_alive(-5) is False


# ---------------------------------------------------------------------------
# ProcessSupervisor
# ---------------------------------------------------------------------------


class TestSpawn:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_spawn_tracks_and_records(self, supervisor, tmp_path: Path):
        handle = await supervisor.spawn(str(tmp_path), 47000, SLEEPER_COMMAND)

        assert handle.is_alive()
        assert not handle.adopted
        assert supervisor.servers.get(str(tmp_path)) is handle
        record = read_record(tmp_path)
        assert record["pid"] == handle.pid
        assert record["port"] == 47000
        assert record["command"][-1] == "47000"
        assert handle.log_path == tmp_path / ".preview" / "server.log"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_port_exported_and_output_logged(self, supervisor, tmp_path: Path):
        command = [
            sys.executable,
            "-c",
            "import os, sys; print('port', os.environ['PORT'], sys.argv[1], flush=True)",
            "{port}",
        ]
        handle = await supervisor.spawn(str(tmp_path), 47001, command)
        await handle.process.wait()
        log = handle.log_path.read_text(encoding="utf-8")
        assert "port 47001 47001" in log

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_log_is_appended_across_spawns(self, supervisor, tmp_path: Path):
        project = tmp_path / "fresh"
        project.mkdir()
        command = [
            sys.executable, "-c", "import sys; print('run', sys.argv[1], flush=True)", "{port}"
        ]
        for port in (47006, 47007):
            handle = await supervisor.spawn(str(project), port, command)
            await handle.process.wait()
            await supervisor.stop(str(project))

        log = (project / ".preview" / "server.log").read_text(encoding="utf-8")
        assert log.splitlines() == ["run 47006", "run 47007"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_binary(self, supervisor, tmp_path: Path):
        with pytest.raises(SpawnError) as exc_info:
            await supervisor.spawn(str(tmp_path), 47002, ["devpreview-no-such-server"])
        assert exc_info.value.command == ["devpreview-no-such-server"]
        assert len(supervisor.servers) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refuses_second_live_server(self, supervisor, tmp_path: Path):
        await supervisor.spawn(str(tmp_path), 47003, SLEEPER_COMMAND)
        with pytest.raises(SpawnError):
            await supervisor.spawn(str(tmp_path), 47004, SLEEPER_COMMAND)
        assert len(supervisor.servers) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_command(self, supervisor, tmp_path: Path):
        with pytest.raises(SpawnError):
            await supervisor.spawn(str(tmp_path), 47005, [])


class TestStop:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_graceful_stop(self, supervisor, tmp_path: Path):
        handle = await supervisor.spawn(str(tmp_path), 47010, SLEEPER_COMMAND)
        outcome = await supervisor.stop(str(tmp_path))

        assert outcome == TerminationOutcome.TERMINATED
        assert outcome.issued
        assert not handle.is_alive()
        assert supervisor.servers.get(str(tmp_path)) is None
        assert not record_path(tmp_path).exists()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_escalates_to_sigkill(self, supervisor, tmp_path: Path):
        handle = await supervisor.spawn(str(tmp_path), 47011, STUBBORN_COMMAND)
        await _wait_for(lambda: "ready" in handle.log_path.read_text(encoding="utf-8"))
        outcome = await supervisor.stop(str(tmp_path))
        assert outcome == TerminationOutcome.KILLED
        assert handle.process.returncode == -signal.SIGKILL

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_already_exited(self, supervisor, tmp_path: Path):
        handle = await supervisor.spawn(str(tmp_path), 47012, [sys.executable, "-c", "pass"])
        await handle.process.wait()
        outcome = await supervisor.stop(str(tmp_path))
        assert outcome == TerminationOutcome.NOT_RUNNING
        assert not outcome.issued
        assert supervisor.servers.get(str(tmp_path)) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_path(self, supervisor):
        assert await supervisor.stop("/never/started") is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_adopted_handle_is_force_killed(self, tmp_path: Path):
        process = await asyncio.create_subprocess_exec(
            *[part.replace("{port}", "0") for part in SLEEPER_COMMAND],
            start_new_session=True,
        )
        try:
            sup = ProcessSupervisor()
            handle = sup.adopt(str(tmp_path), process.pid, 47013)
            assert handle.adopted
            assert handle.is_alive()
            outcome = await sup.stop(str(tmp_path))
            assert outcome == TerminationOutcome.KILLED
            assert await asyncio.wait_for(process.wait(), 5) == -signal.SIGKILL
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stop_all(self, supervisor, tmp_path: Path):
        for name, port in (("a", 47020), ("b", 47021)):
            (tmp_path / name).mkdir()
            await supervisor.spawn(str(tmp_path / name), port, SLEEPER_COMMAND)
        outcomes = await supervisor.stop_all()
        assert set(outcomes.values()) == {TerminationOutcome.TERMINATED}
        assert len(supervisor.servers) == 0


class TestRecords:
    @pytest.mark.unit
    def test_missing_record(self, tmp_path: Path):
        assert read_record(tmp_path) is None

    @pytest.mark.unit
    def test_corrupt_record(self, tmp_path: Path):
        record_path(tmp_path).parent.mkdir()
        record_path(tmp_path).write_text("{nope", encoding="utf-8")
        assert read_record(tmp_path) is None

    @pytest.mark.unit
    def test_record_missing_fields(self, tmp_path: Path):
        record_path(tmp_path).parent.mkdir()
        record_path(tmp_path).write_text('{"pid": "x"}', encoding="utf-8")
        assert read_record(tmp_path) is None
