"""HTTP API for the preview orchestrator.

Routes::

    POST /api/build/start            start (or reuse) a project's dev server
    POST /api/build/stop             stop a project's dev server
    GET  /api/build/status           running dev servers
    GET  /api/build/templates        template summaries
    GET  /api/build/templates/{id}   one template in full
    GET  /api/projects               registry listing (sessionId, status filters)
    GET  /api/projects/{id}          one registry record
    GET  /health                     liveness

Bodies are JSON with camelCase keys; unknown keys are ignored.  Failures
answer ``{"success": false, "error": ..., "message": ...}``.

Usage::

    devpreview --port 3001 --workspace ~/Projects
    python -m devpreview --base-port 5000
"""

from __future__ import annotations

import argparse
import json
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from devpreview.config import Config
from devpreview.models import ProjectStatus, StartRequest, StopRequest
from devpreview.orchestrator import Orchestrator
from devpreview.utils import print_error, print_summary_table


def _error(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(
        {"success": False, "error": error, "message": message},
        status_code=status_code,
    )


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        field = ".".join(str(loc) for loc in err.get("loc", ()))
        parts.append(f"{field}: {err.get('msg', 'invalid')}" if field else err.get("msg", "invalid"))
    return "; ".join(parts) or "Invalid request body"


async def _read_body(request: Request) -> dict[str, Any]:
    """Return the JSON object body of *request*.

    Raises:
        ValueError: If the body is not a JSON object.
    """
    raw = await request.body()
    try:
        payload = json.loads(raw or b"{}")
    except ValueError as exc:
        raise ValueError(f"Malformed JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError("Request body must be a JSON object")
    return payload


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(
    config: Optional[Config] = None,
    orchestrator: Optional[Orchestrator] = None,
) -> FastAPI:
    """Build the FastAPI application.

    The lifespan reconciles registry and process state on startup and stops
    tracked dev servers on shutdown.
    """
    config = config or (orchestrator.config if orchestrator else Config.from_env())
    orchestrator = orchestrator or Orchestrator(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await orchestrator.reconcile()
        try:
            yield
        finally:
            await orchestrator.shutdown()

    app = FastAPI(title="devpreview", lifespan=lifespan)
    app.state.orchestrator = orchestrator

    # -- Build ----------------------------------------------------------------

    @app.post("/api/build/start")
    async def api_build_start(request: Request) -> JSONResponse:
        try:
            payload = await _read_body(request)
        except ValueError as exc:
            return _error(400, "invalid_request", str(exc))
        try:
            start_request = StartRequest.model_validate(payload)
        except ValidationError as exc:
            return _error(400, "invalid_request", _validation_message(exc))

        result = await orchestrator.start(start_request)
        return JSONResponse(result.to_wire(), status_code=result.status_code)

    @app.post("/api/build/stop")
    async def api_build_stop(request: Request) -> JSONResponse:
        try:
            payload = await _read_body(request)
        except ValueError as exc:
            return _error(400, "invalid_request", str(exc))
        try:
            stop_request = StopRequest.model_validate(payload)
        except ValidationError as exc:
            return _error(400, "invalid_request", _validation_message(exc))

        result = await orchestrator.stop(stop_request.project_path)
        return JSONResponse(result.to_wire(), status_code=result.status_code)

    @app.get("/api/build/status")
    async def api_build_status() -> dict[str, Any]:
        running = [info.to_wire() for info in await orchestrator.status()]
        return {"runningProjects": running, "count": len(running)}

    @app.get("/api/build/templates")
    async def api_build_templates() -> dict[str, Any]:
        return {"templates": [t.summary() for t in orchestrator.list_templates()]}

    @app.get("/api/build/templates/{template_id}")
    async def api_build_template(template_id: str) -> JSONResponse:
        template = orchestrator.get_template(template_id)
        if template is None:
            return _error(404, "not_found", f"Unknown template '{template_id}'")
        return JSONResponse(template.detail())

    # -- Projects -------------------------------------------------------------

    @app.get("/api/projects")
    async def api_projects(
        session_id: Optional[str] = Query(default=None, alias="sessionId"),
        status: Optional[str] = None,
    ) -> JSONResponse:
        status_filter: Optional[ProjectStatus] = None
        if status:
            try:
                status_filter = ProjectStatus(status)
            except ValueError:
                return _error(400, "invalid_request", f"Unknown status '{status}'")
        projects = await orchestrator.list_projects(session_id=session_id, status=status_filter)
        return JSONResponse(
            {"projects": [p.to_wire() for p in projects], "count": len(projects)}
        )

    @app.get("/api/projects/{project_id}")
    async def api_project(project_id: str) -> JSONResponse:
        project = await orchestrator.get_project(project_id)
        if project is None:
            return _error(404, "not_found", f"Unknown project '{project_id}'")
        return JSONResponse({"project": project.to_wire()})

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """Parse command-line arguments and serve the API with uvicorn."""
    parser = argparse.ArgumentParser(
        prog="devpreview",
        description="Scaffold projects on demand and serve them with live dev servers",
    )
    parser.add_argument("--host", default=None, help="Interface the API listens on")
    parser.add_argument("--port", type=int, default=None, help="Port the API listens on")
    parser.add_argument(
        "--workspace",
        default=None,
        help="Parent directory for projects when a request has no workingDir",
    )
    parser.add_argument(
        "--base-port", type=int, default=None, help="First port tried for dev servers"
    )
    parser.add_argument(
        "--config", default=None, help="Path to a JSON config file (overrides environment)"
    )

    args = parser.parse_args()

    try:
        config = Config.load(Path(args.config)) if args.config else Config.from_env()
    except (OSError, ValidationError) as exc:
        print_error(f"Could not load configuration: {exc}")
        sys.exit(2)

    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port
    if args.workspace:
        config.workspace_root = Path(args.workspace).expanduser()
    if args.base_port:
        config.ports.base = args.base_port

    config.ensure_directories()

    print_summary_table(
        {
            "API": f"http://{config.server.host}:{config.server.port}",
            "Workspace": str(config.workspace_root),
            "Dev-server ports": f"{config.ports.base}-{config.ports.base + config.ports.max_attempts - 1}",
            "Registry": str(config.registry_path),
        },
        title="devpreview",
    )

    app = create_app(config)
    uvicorn.run(app, host=config.server.host, port=config.server.port)


if __name__ == "__main__":
    main()
