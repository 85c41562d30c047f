"""Preview orchestrator.

Drives a project through its lifecycle::

    creating -> building -> serving
                   |           |
                   v           v
                 error       ready   (stopped; restartable)

``start`` and ``stop`` run their check-then-act sequence under a per-path
lock, so concurrent requests for the same project path observe each other's
effects instead of racing: two simultaneous starts produce one registry
record, one scaffold and one dev server.  Requests for different paths run
fully interleaved.

Failures never escape ``start``/``stop``; they come back as a result with
``success=False`` and the HTTP status the API should answer with.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from rich.markup import escape

from devpreview.catalog import TemplateCatalog, TemplateDescriptor
from devpreview.config import Config
from devpreview.installer import DependencyInstallError, DependencyInstaller
from devpreview.locks import KeyedLock
from devpreview.models import (
    Project,
    ProjectDescriptor,
    ProjectStatus,
    Readiness,
    RunningServerInfo,
    StartRequest,
    StartResult,
    StopResult,
)
from devpreview.ports import PortAllocator, PortExhausted, port_in_use
from devpreview.probe import probe_readiness
from devpreview.projects import JsonProjectRegistry, ProjectRegistry
from devpreview.scaffolder import ScaffoldError, Scaffolder
from devpreview.supervisor import (
    ProcessSupervisor,
    RunningServerHandle,
    SpawnError,
    TerminationOutcome,
    pid_alive,
    read_record,
    remove_record,
)
from devpreview.utils import console, print_error, print_success, print_warning, slugify, tail_file

ProbeFn = Callable[..., Awaitable[Readiness]]


class InvalidRequest(Exception):
    """Raised for requests that cannot be mapped to a project path."""


class Orchestrator:
    """Start, stop and track preview dev servers.

    Every collaborator can be injected; omitted ones are built from
    *config*.

    Attributes:
        config: Global configuration.
        catalog: Template lookup.
        registry: Project records.
        scaffolder: Writes new project trees.
        installer: Dependency install fallback chain.
        ports: Port allocator.
        supervisor: Owner of the running-servers map.
    """

    def __init__(
        self,
        config: Config,
        *,
        catalog: Optional[TemplateCatalog] = None,
        registry: Optional[ProjectRegistry] = None,
        scaffolder: Optional[Scaffolder] = None,
        installer: Optional[DependencyInstaller] = None,
        ports: Optional[PortAllocator] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        probe: ProbeFn = probe_readiness,
    ) -> None:
        self.config = config
        self.catalog = catalog or TemplateCatalog(default_id=config.default_template)
        self.registry = registry or JsonProjectRegistry(config.registry_path)
        self.scaffolder = scaffolder or Scaffolder()
        self.installer = installer or DependencyInstaller(config.install.installers)
        self.ports = ports or PortAllocator(config.ports.host)
        self.supervisor = supervisor or ProcessSupervisor(stop_timeout=config.stop_timeout)
        self._probe = probe
        self._locks = KeyedLock()

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def project_path_for(self, project_name: str, working_dir: Optional[str] = None) -> str:
        """Return the absolute project path for *project_name*.

        Raises:
            InvalidRequest: If the name has no slug-able characters.
        """
        slug = slugify(project_name)
        if not slug:
            raise InvalidRequest(f"Project name {project_name!r} yields an empty directory name")
        base = Path(working_dir) if working_dir else self.config.workspace_root
        return _normalize(base / slug)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(self, request: StartRequest) -> StartResult:
        """Ensure a project exists on disk and is served by a dev server."""
        try:
            project_path = self.project_path_for(request.project_name, request.working_dir)
        except InvalidRequest as exc:
            return StartResult(
                success=False, message=str(exc), error="invalid_request", status_code=400
            )

        template = self.catalog.resolve(request.template_id)
        if template.id != request.template_id:
            print_warning(
                f"Unknown template '{request.template_id}', falling back to '{template.id}'"
            )

        async with self._locks.hold(project_path):
            try:
                return await self._start_locked(request, project_path, template)
            except Exception as exc:
                print_error(f"Unexpected failure starting {project_path}: {exc}")
                return StartResult(
                    success=False,
                    message=f"Failed to start project: {exc}",
                    error="internal_error",
                    project_path=project_path,
                    template=template.id,
                    status_code=500,
                )

    async def _start_locked(
        self, request: StartRequest, path: str, template: TemplateDescriptor
    ) -> StartResult:
        project = await self._ensure_project(request, path, template)

        handle = self.supervisor.servers.get(path)
        if handle is not None:
            if handle.is_alive():
                return self._already_running(project, handle, template)
            print_warning(f"Dev server pid {handle.pid} for {path} has exited; respawning")
            await self._discard(handle)

        def failure(message: str, error: str, status_code: int, **extra: Any) -> StartResult:
            return StartResult(
                success=False,
                message=message,
                error=error,
                project_id=project.id,
                project_path=path,
                template=template.id,
                status_code=status_code,
                **extra,
            )

        try:
            if not self.scaffolder.is_complete(path):
                await self.scaffolder.scaffold(template, path, request.project_name)
        except ScaffoldError as exc:
            print_error(str(exc))
            return failure(str(exc), "scaffold_failed", 500)

        await self.registry.update_status(project.id, ProjectStatus.BUILDING)

        try:
            await self.installer.install(path)
        except DependencyInstallError as exc:
            print_warning(f"{exc}; starting the dev server anyway")

        try:
            port = await self.ports.allocate(
                self.config.ports.base, self.config.ports.max_attempts
            )
        except PortExhausted as exc:
            print_error(str(exc))
            await self.registry.update_status(project.id, ProjectStatus.ERROR)
            return failure(str(exc), "port_exhausted", 503)

        try:
            handle = await self.supervisor.spawn(path, port, self.config.dev_command)
        except SpawnError as exc:
            print_error(str(exc))
            self.ports.release(port)
            await self.registry.update_status(project.id, ProjectStatus.ERROR)
            return failure(str(exc), "spawn_failed", 500)

        try:
            readiness = await self._probe(
                f"http://{self.config.probe.host}:{port}/",
                is_alive=handle.is_alive,
                attempts=self.config.probe.attempts,
                interval=self.config.probe.interval,
                request_timeout=self.config.probe.request_timeout,
            )
            if readiness == Readiness.SPAWN_FAILED:
                await self._discard(handle)
                await self.registry.update_status(project.id, ProjectStatus.ERROR)
                log_tail = tail_file(handle.log_path) if handle.log_path else ""
                print_error(f"Dev server for {path} exited during startup")
                message = "Dev server exited during startup"
                if log_tail:
                    message = f"{message}:\n{log_tail}"
                return failure(
                    message, "spawn_failed", 500, port=port, pid=handle.pid, readiness=readiness
                )

            preview_url = self.config.preview_url(port)
            await self.registry.update_status(
                project.id, ProjectStatus.SERVING, preview_url=preview_url, port=port
            )
        except BaseException:
            # Never leave a live process behind that nothing tracks.
            await self._discard(handle)
            raise

        if readiness == Readiness.ASSUMED:
            print_warning(f"{preview_url} did not answer in time; assuming it is ready")
        print_success(f"Serving {path} at {preview_url} (pid {handle.pid})")
        return StartResult(
            success=True,
            message=f"Dev server started on port {port}",
            project_id=project.id,
            project_path=path,
            port=port,
            pid=handle.pid,
            preview_url=preview_url,
            readiness=readiness,
            template=template.id,
        )

    async def _ensure_project(
        self, request: StartRequest, path: str, template: TemplateDescriptor
    ) -> Project:
        project = await self.registry.get_project_by_path(path)
        if project is None:
            return await self.registry.register_project(
                ProjectDescriptor(
                    name=request.project_name,
                    type=template.project_type,
                    path=path,
                    session_id=request.session_id,
                    metadata={
                        "template": template.id,
                        "requestedTemplate": request.template_id,
                        "features": list(template.features),
                    },
                )
            )
        if request.session_id and project.session_id != request.session_id:
            await self.registry.link_to_session(project.id, request.session_id)
        return project

    def _already_running(
        self, project: Project, handle: RunningServerHandle, template: TemplateDescriptor
    ) -> StartResult:
        console.print(f"[dim]Reusing dev server pid {handle.pid} for {escape(handle.path)}[/dim]")
        return StartResult(
            success=True,
            message=f"Dev server already running on port {handle.port}",
            project_id=project.id,
            project_path=handle.path,
            port=handle.port,
            pid=handle.pid,
            preview_url=self.config.preview_url(handle.port),
            template=project.metadata.get("template", template.id),
        )

    async def _discard(self, handle: RunningServerHandle) -> Optional[TerminationOutcome]:
        """Stop *handle* (if still tracked) and free its port."""
        outcome = await self.supervisor.stop(handle.path)
        self.ports.release(handle.port)
        return outcome

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def stop(self, project_path: str) -> StopResult:
        """Terminate the dev server tracked for *project_path*."""
        if not project_path or not project_path.strip():
            return StopResult(
                success=False,
                message="projectPath is required",
                error="invalid_request",
                status_code=400,
            )

        path = _normalize(Path(project_path))
        async with self._locks.hold(path):
            try:
                return await self._stop_locked(path)
            except Exception as exc:
                print_error(f"Unexpected failure stopping {path}: {exc}")
                return StopResult(
                    success=False,
                    message=f"Failed to stop dev server: {exc}",
                    error="internal_error",
                    status_code=500,
                )

    async def _stop_locked(self, path: str) -> StopResult:
        handle = self.supervisor.servers.get(path)
        if handle is None:
            return StopResult(
                success=False,
                message=f"No running server found for {path}",
                error="not_found",
                status_code=404,
            )

        outcome = await self._discard(handle)
        project = await self.registry.get_project_by_path(path)
        if project is not None:
            await self.registry.update_status(project.id, ProjectStatus.READY)

        if outcome is not None and outcome.issued:
            print_success(f"Stopped dev server pid {handle.pid} ({outcome.value})")
            return StopResult(success=True, message="Dev server stopped")
        if outcome == TerminationOutcome.NOT_RUNNING:
            return StopResult(
                success=False,
                message=f"Dev server pid {handle.pid} had already exited",
                error="not_running",
                status_code=409,
            )
        return StopResult(
            success=False,
            message=f"Could not signal dev server pid {handle.pid}",
            error="stop_failed",
            status_code=500,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def status(self) -> list[RunningServerInfo]:
        """Snapshot of every tracked dev server that is still alive."""
        await self.prune_dead()
        return [
            RunningServerInfo(
                project_path=handle.path,
                port=handle.port,
                pid=handle.pid,
                preview_url=self.config.preview_url(handle.port),
            )
            for handle in self.supervisor.servers.snapshot()
        ]

    async def prune_dead(self) -> list[str]:
        """Forget tracked servers whose process has exited.

        The handle is dropped, its port released, its server record removed
        and the project marked ``error``.  Paths with a start or stop in
        flight are left to that operation.
        """
        pruned: list[str] = []
        for handle in self.supervisor.servers.snapshot():
            if handle.is_alive() or self._locks.locked(handle.path):
                continue
            async with self._locks.hold(handle.path):
                if self.supervisor.servers.get(handle.path) is not handle or handle.is_alive():
                    continue
                await self._discard(handle)
                project = await self.registry.get_project_by_path(handle.path)
                if project is not None:
                    await self.registry.update_status(project.id, ProjectStatus.ERROR)
                print_warning(f"Dev server pid {handle.pid} for {handle.path} exited unexpectedly")
                pruned.append(handle.path)
        return pruned

    def list_templates(self) -> list[TemplateDescriptor]:
        return self.catalog.list_templates()

    def get_template(self, template_id: str) -> Optional[TemplateDescriptor]:
        return self.catalog.get(template_id)

    async def list_projects(
        self,
        session_id: Optional[str] = None,
        status: Optional[ProjectStatus] = None,
    ) -> list[Project]:
        return await self.registry.list_projects(session_id=session_id, status=status)

    async def get_project(self, project_id: str) -> Optional[Project]:
        return await self.registry.get_project(project_id)

    # ------------------------------------------------------------------
    # Startup / shutdown
    # ------------------------------------------------------------------

    async def reconcile(self) -> dict[str, Any]:
        """Bring registry and process state back in line after a restart.

        Projects recorded as ``serving`` are adopted when their server
        record names a live pid whose port still has a listener; all others
        are demoted to ``ready``.  Listeners in the port range that nothing
        tracks are reported but left alone.
        """
        adopted: list[str] = []
        demoted: list[str] = []

        for project in await self.registry.list_projects(status=ProjectStatus.SERVING):
            async with self._locks.hold(project.path):
                if project.path in self.supervisor.servers:
                    continue

                record = read_record(project.path) if self.config.adopt_orphans else None
                if record is not None and await self._record_is_live(record):
                    port = record["port"]
                    self.supervisor.adopt(project.path, record["pid"], port)
                    self.ports.claim(port)
                    await self.registry.update_status(
                        project.id,
                        ProjectStatus.SERVING,
                        preview_url=self.config.preview_url(port),
                        port=port,
                    )
                    adopted.append(project.path)
                    continue

                try:
                    await asyncio.to_thread(remove_record, project.path)
                except OSError as exc:
                    print_warning(f"Could not remove server record in {project.path}: {exc}")
                await self.registry.update_status(project.id, ProjectStatus.READY)
                demoted.append(project.path)

        tracked = {handle.port for handle in self.supervisor.servers.snapshot()}
        untracked = await self.ports.find_listeners(
            port for port in self.config.ports.scan_range() if port not in tracked
        )

        for path in adopted:
            console.print(f"[dim]Adopted running dev server for {escape(path)}[/dim]")
        for path in demoted:
            console.print(f"[yellow]No live dev server for {escape(path)}; marked ready[/yellow]")
        for port in untracked:
            print_warning(f"Port {port} has a listener that is not tracked (possible orphan)")

        return {"adopted": adopted, "demoted": demoted, "untracked_ports": untracked}

    async def _record_is_live(self, record: dict[str, Any]) -> bool:
        if not pid_alive(record["pid"]):
            return False
        return await asyncio.to_thread(port_in_use, record["port"], self.ports.host)

    async def shutdown(self) -> None:
        """Stop every tracked dev server when ``stop_on_shutdown`` is set."""
        if not self.config.stop_on_shutdown:
            return
        for handle in self.supervisor.servers.snapshot():
            await self.stop(handle.path)


def _normalize(path: Path) -> str:
    return str(path.expanduser().resolve())
