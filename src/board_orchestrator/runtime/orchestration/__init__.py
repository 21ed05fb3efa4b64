"""Event-driven orchestration: dispatcher, reply parser, context builder and question queue."""

from .board import BoardState, StatusMove
from .context import (
    BranchState,
    ContextLimits,
    ProjectContext,
    build_project_context,
    read_branch_state,
    render_event_message,
    summarize_event,
)
from .dispatcher import OrchestrationDispatcher, create_dispatcher
from .parser import ExtractedQuestion, ParsedResponse, parse_orchestrator_response
from .questions import QuestionQueue
from .settings import OrchestrationSettings, TimerSettings, get_orchestration_settings

__all__ = [
    "BoardState",
    "BranchState",
    "ContextLimits",
    "ExtractedQuestion",
    "OrchestrationDispatcher",
    "OrchestrationSettings",
    "ParsedResponse",
    "ProjectContext",
    "QuestionQueue",
    "StatusMove",
    "TimerSettings",
    "build_project_context",
    "create_dispatcher",
    "get_orchestration_settings",
    "parse_orchestrator_response",
    "read_branch_state",
    "render_event_message",
    "summarize_event",
]
