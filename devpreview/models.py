"""Pydantic v2 models shared by the orchestrator, the registry and the API.

Defines project records, registry descriptors and the request/result models
exchanged over the HTTP surface.  Wire models serialise with camelCase keys
(``projectPath``, ``previewUrl``) and ignore unknown fields on input.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class ProjectType(str, Enum):
    """Kind of project a record describes."""
    ASTRO = "astro"
    NEXT = "next"
    REACT = "react"
    BUILD = "build"
    CLONE = "clone"
    CUSTOM = "custom"


class ProjectStatus(str, Enum):
    """Lifecycle status of a project.

    ``creating -> building -> serving`` is the happy path.  ``ready`` marks a
    scaffolded project with no running server; ``error`` a failed attempt that
    stays inspectable and is not retried automatically.
    """
    CREATING = "creating"
    BUILDING = "building"
    SERVING = "serving"
    READY = "ready"
    ERROR = "error"


class Readiness(str, Enum):
    """Outcome of the readiness probe after a spawn."""
    CONFIRMED = "confirmed-ready"
    ASSUMED = "timed-out-assumed-ready"
    SPAWN_FAILED = "spawn-failed"


# ---------------------------------------------------------------------------
# Registry models
# ---------------------------------------------------------------------------

class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_wire(self) -> dict[str, Any]:
        """Dump with camelCase keys, dropping unset optionals."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ProjectDescriptor(BaseModel):
    """Everything needed to register a new project."""
    name: str
    type: ProjectType = ProjectType.CUSTOM
    path: str
    session_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Project(_WireModel):
    """A project record as stored by a :class:`~devpreview.projects.ProjectRegistry`."""
    id: str
    session_id: Optional[str] = None
    name: str
    type: ProjectType = ProjectType.CUSTOM
    status: ProjectStatus = ProjectStatus.CREATING
    path: str
    preview_url: Optional[str] = None
    port: Optional[int] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: str
    updated_at: str


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class StartRequest(_WireModel):
    """Body of ``POST /api/build/start``."""
    template_id: str = Field(..., min_length=1)
    project_name: str = Field(..., min_length=1)
    working_dir: Optional[str] = None
    session_id: Optional[str] = None


class StopRequest(_WireModel):
    """Body of ``POST /api/build/stop``."""
    project_path: str = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class StartResult(_WireModel):
    """Outcome of :meth:`Orchestrator.start`.

    ``status_code`` is the HTTP status the API should answer with; it is not
    part of the JSON body.
    """
    success: bool
    message: str
    project_id: Optional[str] = None
    project_path: Optional[str] = None
    port: Optional[int] = None
    pid: Optional[int] = None
    preview_url: Optional[str] = None
    readiness: Optional[Readiness] = None
    template: Optional[str] = None
    error: Optional[str] = None
    status_code: int = Field(default=200, exclude=True)


class StopResult(_WireModel):
    """Outcome of :meth:`Orchestrator.stop`."""
    success: bool
    message: str
    error: Optional[str] = None
    status_code: int = Field(default=200, exclude=True)


class RunningServerInfo(_WireModel):
    """One entry of ``GET /api/build/status``."""
    project_path: str
    port: int
    pid: int
    preview_url: str
