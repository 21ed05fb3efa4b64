"""FastAPI app wiring for the board orchestrator runtime."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional, cast

from fastapi import FastAPI, Query, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..runtime.api import create_router
from ..runtime.events import hub
from ..runtime.project import ProjectRuntime, create_project_runtime

logger = logging.getLogger(__name__)


def create_app(
    project_dir: Optional[Path] = None,
    enable_cors: bool = True,
    start_dispatcher: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        project_dir (Optional[Path]): Default project directory used when request-level
            ``project_dir`` query parameters are not provided.
        enable_cors (bool): Whether to install permissive CORS middleware for browser
            clients.
        start_dispatcher (bool): Start each project's dispatch loops when its
            runtime is first resolved.

    Returns:
        FastAPI: Configured application with the runtime router, websocket bridge,
        and a per-project runtime cache stored on ``app.state``.
    """
    @asynccontextmanager
    async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
        hub.attach_loop(asyncio.get_running_loop())
        try:
            yield
        finally:
            runtimes = list(getattr(app.state, "runtimes", {}).values())
            for runtime in runtimes:
                try:
                    runtime.shutdown(timeout=5.0)
                except Exception:
                    logger.exception("Failed to stop runtime for %s", runtime.container.project_dir)
            app.state.runtimes = {}
            hub.detach_loop()

    app = FastAPI(
        title="Board Orchestrator",
        description="Agent process manager and autonomous orchestration loop for project boards",
        version=__version__,
        lifespan=_lifespan,
    )

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.default_project_dir = project_dir
    app.state.runtimes = {}

    def _resolve_project_dir(project_dir_param: Optional[str] = None) -> Path:
        if project_dir_param:
            return Path(project_dir_param).expanduser().resolve()
        if app.state.default_project_dir:
            return Path(app.state.default_project_dir).resolve()
        return Path.cwd().resolve()

    def _resolve_runtime(project_dir_param: Optional[str] = None) -> ProjectRuntime:
        resolved = _resolve_project_dir(project_dir_param)
        key = str(resolved)
        cache = cast(dict[str, ProjectRuntime], app.state.runtimes)
        if key not in cache:
            runtime = create_project_runtime(resolved)
            if start_dispatcher:
                runtime.start()
            cache[key] = runtime
        return cache[key]

    app.include_router(create_router(_resolve_runtime))

    @app.get("/")
    async def root(project_dir: Optional[str] = Query(None)) -> dict[str, object]:
        """Return basic service metadata for the selected project context."""
        runtime = _resolve_runtime(project_dir)
        return {
            "name": "Board Orchestrator",
            "version": __version__,
            "project": str(runtime.container.project_dir),
            "project_id": runtime.container.project_id,
        }

    @app.get("/healthz")
    async def healthz() -> dict[str, object]:
        return {"status": "ok", "version": __version__}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        """Bridge websocket clients to the shared event hub handler."""
        await hub.handle_connection(websocket)

    return app
