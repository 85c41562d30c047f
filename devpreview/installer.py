"""Dependency installation with an ordered fallback chain.

Implements the bun -> npm chain used before a dev server is spawned:
1. Run the first installer strategy with its own wall-clock timeout
2. On failure (non-zero exit, timeout, missing binary) try the next one
3. If every strategy fails, raise :class:`DependencyInstallError`

Callers treat that error as non-fatal: the dev server is spawned anyway,
since some templates have nothing to install.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from rich.markup import escape

from devpreview.config import InstallerSpec
from devpreview.utils import console, format_duration, run_command


@dataclass
class InstallAttempt:
    """Record of a single installer run."""

    installer: str
    returncode: int
    duration_seconds: float
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0


class DependencyInstallError(Exception):
    """Raised when every installer strategy failed."""

    def __init__(self, project_path: str | Path, attempts: list[InstallAttempt]) -> None:
        self.project_path = str(project_path)
        self.attempts = attempts
        tried = ", ".join(f"{a.installer} (rc={a.returncode})" for a in attempts) or "none"
        super().__init__(f"Dependency installation failed in {project_path}; tried {tried}")


@dataclass
class InstallOutcome:
    """Result of :meth:`DependencyInstaller.install`."""

    installer: str | None
    attempts: list[InstallAttempt] = field(default_factory=list)
    skipped: bool = False


def manifest_declares_dependencies(project_path: str | Path) -> bool:
    """Return ``True`` if ``package.json`` lists any (dev) dependencies.

    A missing or unreadable manifest counts as "nothing to install".
    """
    manifest = Path(project_path) / "package.json"
    try:
        data = json.loads(manifest.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return False
    if not isinstance(data, dict):
        return False
    return bool(data.get("dependencies") or data.get("devDependencies"))


class DependencyInstaller:
    """Tries installer strategies in order until one succeeds."""

    def __init__(self, strategies: Iterable[InstallerSpec]) -> None:
        self.strategies = list(strategies)

    async def install(self, project_path: str | Path) -> InstallOutcome:
        """Install dependencies for the project at *project_path*.

        Returns:
            The successful outcome, or a skipped one when the manifest
            declares no dependencies.

        Raises:
            DependencyInstallError: If every strategy failed.
        """
        if not manifest_declares_dependencies(project_path):
            return InstallOutcome(installer=None, skipped=True)

        attempts: list[InstallAttempt] = []
        for spec in self.strategies:
            attempt = await self._run(spec, project_path)
            attempts.append(attempt)
            if attempt.success:
                console.print(
                    f"[dim]Installed dependencies with {spec.name} "
                    f"in {format_duration(attempt.duration_seconds)}[/dim]"
                )
                return InstallOutcome(installer=spec.name, attempts=attempts)
            console.print(
                f"[yellow]{spec.name} install failed (rc={attempt.returncode}): "
                f"{escape(attempt.stderr[:200])}[/yellow]"
            )

        raise DependencyInstallError(project_path, attempts)

    @staticmethod
    async def _run(spec: InstallerSpec, project_path: str | Path) -> InstallAttempt:
        start = time.monotonic()
        try:
            returncode, _stdout, stderr = await run_command(
                spec.command, cwd=project_path, timeout=spec.timeout
            )
        except OSError as exc:
            # Missing binary or unusable cwd.
            returncode, stderr = 127, str(exc)
        return InstallAttempt(
            installer=spec.name,
            returncode=returncode,
            duration_seconds=time.monotonic() - start,
            stderr=stderr,
        )
