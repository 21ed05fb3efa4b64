"""Domain models for orchestration runtime state."""

from .models import (
    AgentSlot,
    DelegationCommand,
    Epic,
    HumanQuestion,
    OrchestrationEvent,
    StatusAction,
    Story,
)

__all__ = [
    "AgentSlot",
    "DelegationCommand",
    "Epic",
    "HumanQuestion",
    "OrchestrationEvent",
    "StatusAction",
    "Story",
]
