"""Runtime HTTP API."""

from __future__ import annotations

from collections.abc import Callable
from typing import Optional

from fastapi import APIRouter

from ..project import ProjectRuntime
from .deps import RouteDeps
from .routes_agents import register_agent_routes
from .routes_orchestration import register_orchestration_routes
from .routes_questions import register_question_routes


def create_router(resolve_runtime: Callable[[Optional[str]], ProjectRuntime]) -> APIRouter:
    """Create the runtime API router.

    Args:
        resolve_runtime (Callable[[Optional[str]], ProjectRuntime]): Resolves the
            project-scoped runtime for an optional ``project_dir`` value.

    Returns:
        APIRouter: Router exposing agent slot, orchestration and question endpoints.
    """
    router = APIRouter(prefix="/api", tags=["api"])
    deps = RouteDeps(resolve_runtime=resolve_runtime)
    register_agent_routes(router, deps)
    register_orchestration_routes(router, deps)
    register_question_routes(router, deps)
    return router


__all__ = ["RouteDeps", "create_router"]
