"""Orchestration route registration for the runtime API."""

from __future__ import annotations

from dataclasses import asdict
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query

from ..domain.models import Epic, OrchestrationEvent, Story
from ..orchestration import parse_orchestrator_response
from .deps import RouteDeps
from .schemas import (
    BoardUpdateRequest,
    EnqueueEventRequest,
    OrchestrationControlRequest,
    OrchestrationSettingsRequest,
    ParseResponseRequest,
)


def register_orchestration_routes(router: APIRouter, deps: RouteDeps) -> None:
    """Register dispatcher control, event intake and settings routes."""
    @router.get("/orchestration/status")
    async def get_orchestration_status(project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        runtime = deps.resolve_runtime(project_dir)
        return runtime.dispatcher.status()

    @router.post("/orchestration/control")
    async def control_orchestration(
        body: OrchestrationControlRequest,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        """Apply a dispatcher control action.

        Args:
            body: Control payload with one of ``enable``, ``disable``,
                ``reset_chain`` or ``clear_queue``.
            project_dir: Optional project directory used to resolve runtime state.

        Returns:
            The dispatcher status after the action.

        Raises:
            HTTPException: If the action is unsupported.
        """
        runtime = deps.resolve_runtime(project_dir)
        try:
            return runtime.dispatcher.control(body.action)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))

    @router.post("/orchestration/events")
    async def enqueue_event(body: EnqueueEventRequest, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        """Queue an event produced outside the runtime, such as a board move.

        Raises:
            HTTPException: If the event type is unknown.
        """
        runtime = deps.resolve_runtime(project_dir)
        try:
            event = OrchestrationEvent.from_dict({"type": body.type, "payload": body.payload})
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        accepted = runtime.dispatcher.enqueue(event)
        return {"event": event.to_dict(), "dropped_oldest": not accepted}

    @router.post("/orchestration/trigger")
    async def trigger_orchestration(project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        runtime = deps.resolve_runtime(project_dir)
        return {"event": runtime.dispatcher.trigger_manual().to_dict()}

    @router.put("/orchestration/board")
    async def update_board(body: BoardUpdateRequest, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        """Replace the board snapshot.

        Args:
            body: Stories, optional epics and the active epic filter.
            project_dir: Optional project directory used to resolve runtime state.

        Returns:
            A payload listing the ``status_change`` events that were queued.
        """
        runtime = deps.resolve_runtime(project_dir)
        stories = [Story.from_dict(item.model_dump()) for item in body.stories]
        epics = [Epic(id=item.id, name=item.name) for item in body.epics] if body.epics is not None else None
        events = runtime.dispatcher.update_board(stories, epics, selected_epic_id=body.selected_epic_id)
        return {"queued": [event.to_dict() for event in events]}

    @router.post("/orchestration/parse")
    async def parse_response(body: ParseResponseRequest, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        runtime = deps.resolve_runtime(project_dir)
        settings = runtime.dispatcher.settings
        story_context = None
        if body.story_id or body.story_title:
            story_context = {"story_id": body.story_id, "story_title": body.story_title}
        parsed = parse_orchestrator_response(
            body.text,
            body.valid_agent_ids if body.valid_agent_ids is not None else settings.agent_ids,
            story_context,
            max_delegations=settings.max_delegations_per_response,
            self_ids=settings.self_ids,
        )
        return parsed.to_dict()

    @router.get("/orchestration/settings")
    async def get_orchestration_settings(project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        runtime = deps.resolve_runtime(project_dir)
        return {"settings": asdict(runtime.dispatcher.settings)}

    @router.patch("/orchestration/settings")
    async def patch_orchestration_settings(
        body: OrchestrationSettingsRequest,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        """Merge the given fields into the ``orchestration`` config section and reload.

        Args:
            body: Fields to change; omitted fields keep their stored values.
            project_dir: Optional project directory used to resolve runtime state.

        Returns:
            The normalized settings now in effect.
        """
        runtime = deps.resolve_runtime(project_dir)
        cfg = runtime.container.config.load()
        orchestration_cfg = dict(cfg.get("orchestration") or {})
        changes = body.model_dump(exclude_none=True)
        timer_changes = changes.pop("timer", None)
        orchestration_cfg.update(changes)
        if timer_changes:
            timer_cfg = dict(orchestration_cfg.get("timer") or {})
            timer_cfg.update(timer_changes)
            orchestration_cfg["timer"] = timer_cfg
        cfg["orchestration"] = orchestration_cfg
        runtime.container.config.save(cfg)
        settings = runtime.dispatcher.reload_settings()
        runtime.bus.emit(
            channel="system",
            event_type="settings.updated",
            entity_id=runtime.container.project_id,
            payload={"orchestration": orchestration_cfg},
        )
        return {"settings": asdict(settings)}

    @router.get("/events")
    async def list_events(
        limit: int = Query(100, ge=1, le=2000),
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        runtime = deps.resolve_runtime(project_dir)
        return {"events": runtime.container.events.list_recent(limit)}
