"""Shared pytest fixtures for the devpreview test suite.

Provides reusable fixtures for:
- Temporary workspaces and configuration
- A template catalog and registries
- Stand-in dev-server commands built on the running interpreter
- A fully wired Orchestrator whose readiness probe can be scripted
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

import pytest

from devpreview.catalog import TemplateCatalog
from devpreview.config import Config, InstallConfig, InstallerSpec, PortConfig, ProbeConfig
from devpreview.models import Readiness
from devpreview.orchestrator import Orchestrator
from devpreview.projects import InMemoryProjectRegistry
from devpreview.supervisor import ProcessSupervisor


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

# Sleeps long enough to outlive any test, ignores its port argument.
SLEEPER_COMMAND = [sys.executable, "-c", "import sys, time; time.sleep(60)", "{port}"]

NOOP_INSTALLER = InstallerSpec(name="noop", command=[sys.executable, "-c", "pass"], timeout=10)


# ---------------------------------------------------------------------------
# Paths & configuration
# ---------------------------------------------------------------------------


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Temporary workspace root for generated projects."""
    root = tmp_path / "workspace"
    root.mkdir()
    return root.resolve()


@pytest.fixture
def config(tmp_path: Path, workspace: Path) -> Config:
    """Config pointed at temporary directories with fast probes."""
    return Config(
        workspace_root=workspace,
        data_dir=tmp_path / "data",
        dev_command=list(SLEEPER_COMMAND),
        ports=PortConfig(base=47100, max_attempts=50),
        probe=ProbeConfig(attempts=5, interval=0.05, request_timeout=0.5),
        install=InstallConfig(installers=[NOOP_INSTALLER]),
        stop_timeout=2.0,
    )


@pytest.fixture
def catalog() -> TemplateCatalog:
    return TemplateCatalog()


@pytest.fixture
def registry() -> InMemoryProjectRegistry:
    return InMemoryProjectRegistry()


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class ScriptedProbe:
    """Readiness probe stand-in that records calls and returns a fixed verdict.

    With ``verdict=None`` it reports ``spawn-failed`` once the process has
    exited and ``confirmed-ready`` otherwise.
    """

    def __init__(self, verdict: Readiness | None = None) -> None:
        self.verdict = verdict
        self.calls: list[dict[str, Any]] = []

    async def __call__(self, url: str, **kwargs: Any) -> Readiness:
        self.calls.append({"url": url, **kwargs})
        if self.verdict is not None:
            return self.verdict
        return Readiness.CONFIRMED if kwargs["is_alive"]() else Readiness.SPAWN_FAILED


@pytest.fixture
def scripted_probe() -> type[ScriptedProbe]:
    """Factory for probes with a fixed verdict."""
    return ScriptedProbe


@pytest.fixture
def probe() -> ScriptedProbe:
    return ScriptedProbe()


@pytest.fixture
async def orchestrator(config: Config, registry: InMemoryProjectRegistry, probe: ScriptedProbe):
    """Orchestrator wired to an in-memory registry and a scripted probe.

    Every dev server still running when the test ends is stopped.
    """
    orch = Orchestrator(
        config,
        registry=registry,
        supervisor=ProcessSupervisor(stop_timeout=config.stop_timeout),
        probe=probe,
    )
    yield orch
    await orch.supervisor.stop_all()
