"""Agent slot route registration for the runtime API."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query

from .deps import RouteDeps
from .schemas import AgentInputRequest, LoadAgentRequest, SendMessageRequest


def _raise_on_failure(result: dict[str, Any]) -> dict[str, Any]:
    if not result.get("success"):
        raise HTTPException(status_code=502, detail=result.get("error") or "Agent process failed to start")
    return result


def register_agent_routes(router: APIRouter, deps: RouteDeps) -> None:
    """Register agent process lifecycle routes."""
    @router.get("/agents")
    async def list_agents(project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        """List slots that are running or hold a continuity id.

        Args:
            project_dir: Optional project directory used to resolve runtime state.

        Returns:
            A payload containing one entry per known agent slot.
        """
        runtime = deps.resolve_runtime(project_dir)
        return {"agents": [slot.to_dict() for slot in runtime.agents.list_slots()]}

    @router.post("/agents/{agent_id}/load")
    async def load_agent(
        agent_id: str,
        body: LoadAgentRequest,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        """Start a persona-load turn for ``agent_id``.

        Raises:
            HTTPException: If the agent process could not be spawned.
        """
        runtime = deps.resolve_runtime(project_dir)
        result = runtime.agents.load_agent(
            agent_id,
            runtime.container.project_dir,
            body.prompt,
            body.continuity_id,
        )
        return _raise_on_failure(result)

    @router.post("/agents/{agent_id}/message")
    async def send_message(
        agent_id: str,
        body: SendMessageRequest,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        """Send one message turn to ``agent_id``.

        Args:
            agent_id: Slot receiving the message.
            body: Message text and continuity options.
            project_dir: Optional project directory used to resolve runtime state.

        Returns:
            A payload with ``success`` and the continuity id the turn resumes.

        Raises:
            HTTPException: If the agent process could not be spawned.
        """
        runtime = deps.resolve_runtime(project_dir)
        continuity_id = body.continuity_id
        if continuity_id is None and body.resume:
            continuity_id = runtime.agents.continuity_id(agent_id)
        result = runtime.agents.send_message(agent_id, runtime.container.project_dir, body.message, continuity_id)
        return {**_raise_on_failure(result), "continuity_id": continuity_id}

    @router.post("/agents/{agent_id}/cancel")
    async def cancel_agent(agent_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        runtime = deps.resolve_runtime(project_dir)
        if not runtime.agents.cancel_message(agent_id):
            raise HTTPException(status_code=404, detail=f"No running process for agent {agent_id}")
        return {"cancelled": True}

    @router.post("/agents/{agent_id}/input")
    async def write_agent_input(
        agent_id: str,
        body: AgentInputRequest,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        """Write text to the agent's stdin when the runtime keeps stdin open."""
        runtime = deps.resolve_runtime(project_dir)
        return {"written": runtime.agents.send_input(agent_id, body.text)}

    @router.delete("/agents/{agent_id}/continuity")
    async def clear_agent_continuity(agent_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        runtime = deps.resolve_runtime(project_dir)
        runtime.agents.clear_continuity(agent_id)
        return {"agent_id": agent_id, "continuity_id": None}
