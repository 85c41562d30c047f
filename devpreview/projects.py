"""Project registry.

The orchestrator talks to the registry only through the async
:class:`ProjectRegistry` contract.  Two implementations ship with the
package:

* :class:`InMemoryProjectRegistry` -- process-local, used by tests and
  embedding applications that persist projects elsewhere;
* :class:`JsonProjectRegistry` -- the same, mirrored to a JSON file after
  every mutation so records survive a restart.

One record exists per project path.  ``preview_url`` and ``port`` are only
meaningful while a project is ``serving`` and are cleared on every other
status.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import ValidationError
from rich.markup import escape

from devpreview.models import Project, ProjectDescriptor, ProjectStatus
from devpreview.utils import console, load_json, save_json


class ProjectExistsError(Exception):
    """Raised when a second record is registered for the same path."""

    def __init__(self, path: str, project_id: str) -> None:
        self.path = path
        self.project_id = project_id
        super().__init__(f"Project {project_id} is already registered for {path}")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class ProjectRegistry(ABC):
    """Async registry contract consumed by the orchestrator."""

    @abstractmethod
    async def register_project(self, descriptor: ProjectDescriptor) -> Project:
        """Create a record in ``creating`` status.

        Raises:
            ProjectExistsError: If *descriptor.path* is already registered.
        """

    @abstractmethod
    async def get_project(self, project_id: str) -> Optional[Project]:
        ...

    @abstractmethod
    async def get_project_by_path(self, path: str) -> Optional[Project]:
        ...

    @abstractmethod
    async def list_projects(
        self,
        session_id: Optional[str] = None,
        status: Optional[ProjectStatus] = None,
    ) -> list[Project]:
        ...

    @abstractmethod
    async def update_status(
        self,
        project_id: str,
        status: ProjectStatus,
        preview_url: Optional[str] = None,
        port: Optional[int] = None,
    ) -> bool:
        """Set *status*; returns ``False`` for an unknown id."""

    @abstractmethod
    async def link_to_session(self, project_id: str, session_id: str) -> bool:
        """Attach the project to *session_id*; returns ``False`` for an unknown id."""


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class InMemoryProjectRegistry(ProjectRegistry):
    """Dictionary-backed registry."""

    def __init__(self) -> None:
        self._projects: dict[str, Project] = {}
        self._lock = asyncio.Lock()

    async def register_project(self, descriptor: ProjectDescriptor) -> Project:
        async with self._lock:
            existing = self._find_by_path(descriptor.path)
            if existing is not None:
                raise ProjectExistsError(descriptor.path, existing.id)

            now = _now()
            project = Project(
                id=uuid.uuid4().hex,
                session_id=descriptor.session_id,
                name=descriptor.name,
                type=descriptor.type,
                status=ProjectStatus.CREATING,
                path=descriptor.path,
                metadata=dict(descriptor.metadata),
                created_at=now,
                updated_at=now,
            )
            self._projects[project.id] = project
            await self._persist()
            return project.model_copy(deep=True)

    async def get_project(self, project_id: str) -> Optional[Project]:
        project = self._projects.get(project_id)
        return project.model_copy(deep=True) if project else None

    async def get_project_by_path(self, path: str) -> Optional[Project]:
        project = self._find_by_path(path)
        return project.model_copy(deep=True) if project else None

    async def list_projects(
        self,
        session_id: Optional[str] = None,
        status: Optional[ProjectStatus] = None,
    ) -> list[Project]:
        projects = [
            p
            for p in self._projects.values()
            if (session_id is None or p.session_id == session_id)
            and (status is None or p.status == status)
        ]
        projects.sort(key=lambda p: p.created_at, reverse=True)
        return [p.model_copy(deep=True) for p in projects]

    async def update_status(
        self,
        project_id: str,
        status: ProjectStatus,
        preview_url: Optional[str] = None,
        port: Optional[int] = None,
    ) -> bool:
        async with self._lock:
            project = self._projects.get(project_id)
            if project is None:
                return False
            serving = status == ProjectStatus.SERVING
            self._projects[project_id] = project.model_copy(
                update={
                    "status": status,
                    "preview_url": preview_url if serving else None,
                    "port": port if serving else None,
                    "updated_at": _now(),
                }
            )
            await self._persist()
            return True

    async def link_to_session(self, project_id: str, session_id: str) -> bool:
        async with self._lock:
            project = self._projects.get(project_id)
            if project is None:
                return False
            self._projects[project_id] = project.model_copy(
                update={"session_id": session_id, "updated_at": _now()}
            )
            await self._persist()
            return True

    def _find_by_path(self, path: str) -> Optional[Project]:
        for project in self._projects.values():
            if project.path == path:
                return project
        return None

    async def _persist(self) -> None:
        """Hook called after every mutation, under the registry lock."""


# ---------------------------------------------------------------------------
# JSON-file implementation
# ---------------------------------------------------------------------------


class JsonProjectRegistry(InMemoryProjectRegistry):
    """Registry mirrored to a JSON file.

    The file holds ``{"projects": [...]}`` in wire (camelCase) form.  It is
    read once at construction; unreadable files or invalid entries are
    reported and skipped rather than aborting startup.
    """

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            data = load_json(self.path)
        except (OSError, json.JSONDecodeError) as exc:
            console.print(
                f"[yellow]Ignoring unreadable registry {escape(str(self.path))}: "
                f"{escape(str(exc))}[/yellow]"
            )
            return

        for raw in data.get("projects", []):
            try:
                project = Project.model_validate(raw)
            except ValidationError as exc:
                console.print(
                    f"[yellow]Skipping invalid registry entry: {escape(str(exc))}[/yellow]"
                )
                continue
            self._projects[project.id] = project

    async def _persist(self) -> None:
        await save_json(
            {"projects": [p.to_wire() for p in self._projects.values()]},
            self.path,
        )
