"""Pydantic request schemas for runtime API routes."""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class LoadAgentRequest(BaseModel):
    """Payload for starting a persona-load turn."""

    prompt: str = ""
    continuity_id: Optional[str] = None


class SendMessageRequest(BaseModel):
    """Payload for sending one message turn to an agent slot.

    When ``continuity_id`` is omitted and ``resume`` is set, the slot's tracked
    continuity id is used.
    """

    message: str = Field(min_length=1)
    continuity_id: Optional[str] = None
    resume: bool = True


class AgentInputRequest(BaseModel):
    text: str


class EnqueueEventRequest(BaseModel):
    """Payload for pushing an orchestration event from the board UI."""

    type: Literal["status_change", "agent_completion", "manual_trigger", "timer_tick", "human_response"]
    payload: dict[str, Any] = Field(default_factory=dict)


class OrchestrationControlRequest(BaseModel):
    action: Literal["enable", "disable", "reset_chain", "clear_queue"]


class StoryPayload(BaseModel):
    id: str
    epic_id: int = 0
    title: str = ""
    status: str = "backlog"


class EpicPayload(BaseModel):
    id: int
    name: str = ""


class BoardUpdateRequest(BaseModel):
    """Full board snapshot; status moves against the previous snapshot become events."""

    stories: list[StoryPayload] = Field(default_factory=list)
    epics: Optional[list[EpicPayload]] = None
    selected_epic_id: Optional[int] = None


class ParseResponseRequest(BaseModel):
    text: str
    valid_agent_ids: Optional[list[str]] = None
    story_id: Optional[str] = None
    story_title: Optional[str] = None


class TimerSettingsRequest(BaseModel):
    enabled: Optional[bool] = None
    interval_ms: Optional[int] = Field(default=None, ge=1)
    check_ms: Optional[int] = Field(default=None, ge=1)


class OrchestrationSettingsRequest(BaseModel):
    """Partial update of the ``orchestration`` config section."""

    orchestrator_agent_id: Optional[str] = None
    agent_ids: Optional[list[str]] = None
    automation_enabled: Optional[bool] = None
    auto_trigger_on_status_change: Optional[bool] = None
    auto_trigger_on_agent_complete: Optional[bool] = None
    debounce_ms: Optional[int] = Field(default=None, ge=0)
    max_chain_depth: Optional[int] = Field(default=None, ge=1)
    max_delegations_per_response: Optional[int] = Field(default=None, ge=1)
    idle_reset_ms: Optional[int] = Field(default=None, ge=0)
    max_queue_size: Optional[int] = Field(default=None, ge=1)
    timer: Optional[TimerSettingsRequest] = None


class AnswerQuestionRequest(BaseModel):
    answer: str = Field(min_length=1)
