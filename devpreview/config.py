"""devpreview configuration.

Centralised, typed configuration for the preview orchestrator. All settings
use Pydantic v2 models so they can be validated at construction time and
serialised to/from JSON or environment variables without boiler-plate.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field


class PortConfig(BaseModel):
    """Scan range used when allocating dev-server ports.

    Allocation starts at ``base`` and probes at most ``max_attempts``
    consecutive ports. The default base matches the Astro dev server port.
    """

    base: int = Field(default=4321, ge=1024, le=65535)
    max_attempts: int = Field(default=100, ge=1, le=10000)
    host: str = Field(default="127.0.0.1", description="Interface used for bind probes")

    def scan_range(self) -> range:
        """Return the ports covered by the scan window."""
        return range(self.base, min(self.base + self.max_attempts, 65536))


class ProbeConfig(BaseModel):
    """Readiness probe timing."""

    attempts: int = Field(default=30, ge=1)
    interval: float = Field(default=1.0, gt=0, description="Seconds between probes")
    request_timeout: float = Field(default=2.0, gt=0, description="Per-request timeout in seconds")
    host: str = Field(default="localhost", description="Host the probe connects to")


class InstallerSpec(BaseModel):
    """One dependency-install strategy in the fallback chain."""

    name: str
    command: list[str]
    timeout: int = Field(default=120, ge=1, description="Hard wall-clock limit in seconds")


def _default_installers() -> list[InstallerSpec]:
    return [
        InstallerSpec(name="bun", command=["bun", "install"], timeout=60),
        InstallerSpec(name="npm", command=["npm", "install"], timeout=120),
    ]


class InstallConfig(BaseModel):
    """Ordered installer strategies tried before a dev server is spawned."""

    installers: list[InstallerSpec] = Field(default_factory=_default_installers)


class ServerConfig(BaseModel):
    """Where the HTTP API itself listens."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=3001, ge=1, le=65535)


class Config(BaseModel):
    """Global devpreview configuration.

    Holds every tuneable parameter and derived path used by the orchestrator.
    Instances are typically created once by the CLI entry point and then
    passed to :class:`~devpreview.orchestrator.Orchestrator` and the API.
    """

    workspace_root: Path = Field(
        default_factory=lambda: Path.home() / "Projects",
        description="Parent directory for projects when a request has no workingDir",
    )
    data_dir: Path = Field(default=Path("./.devpreview"))
    default_template: str = Field(default="landing-modern")
    dev_command: list[str] = Field(
        default_factory=lambda: ["bun", "run", "dev", "--port", "{port}"],
        description="Dev-server argv; '{port}' is replaced with the allocated port",
    )
    preview_host: str = Field(default="localhost", description="Host used in preview URLs")
    adopt_orphans: bool = Field(default=True)
    stop_on_shutdown: bool = Field(default=True)
    stop_timeout: float = Field(default=5.0, gt=0, description="Grace period before SIGKILL")
    ports: PortConfig = Field(default_factory=PortConfig)
    probe: ProbeConfig = Field(default_factory=ProbeConfig)
    install: InstallConfig = Field(default_factory=InstallConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    # ------------------------------------------------------------------
    # Derived paths (read-only properties)
    # ------------------------------------------------------------------

    @property
    def registry_path(self) -> Path:
        """Path to the JSON project registry."""
        return self.data_dir / "projects.json"

    def preview_url(self, port: int) -> str:
        """Return the browser-facing URL for a dev server on *port*."""
        return f"http://{self.preview_host}:{port}"

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def save(self, path: Path | None = None) -> Path:
        """Persist the configuration to a JSON file.

        Args:
            path: Destination file. Defaults to ``<data_dir>/config.json``.

        Returns:
            The path where the file was written.
        """
        target = path or (self.data_dir / "config.json")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        return target

    @classmethod
    def load(cls, path: Path) -> "Config":
        """Load a previously-saved configuration from JSON."""
        raw = Path(path).read_text(encoding="utf-8")
        return cls.model_validate_json(raw)

    @classmethod
    def from_env(cls) -> "Config":
        """Build a ``Config`` from environment variables.

        Recognised variables (all optional):
            DEVPREVIEW_WORKSPACE, DEVPREVIEW_DATA_DIR, DEVPREVIEW_DEFAULT_TEMPLATE,
            DEVPREVIEW_PREVIEW_HOST, DEVPREVIEW_BASE_PORT, DEVPREVIEW_PORT_ATTEMPTS,
            DEVPREVIEW_PROBE_ATTEMPTS, DEVPREVIEW_PROBE_INTERVAL,
            DEVPREVIEW_HOST, DEVPREVIEW_PORT.
        """
        kwargs: dict[str, Any] = {}
        if os.environ.get("DEVPREVIEW_WORKSPACE"):
            kwargs["workspace_root"] = Path(os.environ["DEVPREVIEW_WORKSPACE"])
        if os.environ.get("DEVPREVIEW_DATA_DIR"):
            kwargs["data_dir"] = Path(os.environ["DEVPREVIEW_DATA_DIR"])
        if os.environ.get("DEVPREVIEW_DEFAULT_TEMPLATE"):
            kwargs["default_template"] = os.environ["DEVPREVIEW_DEFAULT_TEMPLATE"]
        if os.environ.get("DEVPREVIEW_PREVIEW_HOST"):
            kwargs["preview_host"] = os.environ["DEVPREVIEW_PREVIEW_HOST"]

        port_kwargs: dict[str, Any] = {}
        if os.environ.get("DEVPREVIEW_BASE_PORT"):
            port_kwargs["base"] = int(os.environ["DEVPREVIEW_BASE_PORT"])
        if os.environ.get("DEVPREVIEW_PORT_ATTEMPTS"):
            port_kwargs["max_attempts"] = int(os.environ["DEVPREVIEW_PORT_ATTEMPTS"])

        probe_kwargs: dict[str, Any] = {}
        if os.environ.get("DEVPREVIEW_PROBE_ATTEMPTS"):
            probe_kwargs["attempts"] = int(os.environ["DEVPREVIEW_PROBE_ATTEMPTS"])
        if os.environ.get("DEVPREVIEW_PROBE_INTERVAL"):
            probe_kwargs["interval"] = float(os.environ["DEVPREVIEW_PROBE_INTERVAL"])

        server_kwargs: dict[str, Any] = {}
        if os.environ.get("DEVPREVIEW_HOST"):
            server_kwargs["host"] = os.environ["DEVPREVIEW_HOST"]
        if os.environ.get("DEVPREVIEW_PORT"):
            server_kwargs["port"] = int(os.environ["DEVPREVIEW_PORT"])

        return cls(
            ports=PortConfig(**port_kwargs),
            probe=ProbeConfig(**probe_kwargs),
            server=ServerConfig(**server_kwargs),
            **kwargs,
        )

    def ensure_directories(self) -> None:
        """Create the directories that must exist before the API starts."""
        for directory in (self.data_dir, self.workspace_root):
            directory.mkdir(parents=True, exist_ok=True)
