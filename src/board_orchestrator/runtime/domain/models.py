"""Domain model dataclasses and normalization helpers."""

from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional, cast


OrchestrationEventType = Literal[
    "status_change",
    "agent_completion",
    "manual_trigger",
    "timer_tick",
    "human_response",
]
QuestionStatus = Literal["pending", "answered", "dismissed"]
StoryStatus = Literal["backlog", "ready-for-dev", "in-progress", "review", "human-review", "done", "optional"]

_VALID_EVENT_TYPES = {"status_change", "agent_completion", "manual_trigger", "timer_tick", "human_response"}
_VALID_QUESTION_STATUSES = {"pending", "answered", "dismissed"}
_STATUS_ALIASES = {"ready-for-review": "review", "complete": "done"}

_PAYLOAD_KEYS = (
    "story_id",
    "story_title",
    "old_status",
    "new_status",
    "agent_id",
    "agent_name",
    "exit_code",
    "agent_last_message",
    "question_id",
    "question",
    "answer",
)


def now_iso() -> str:
    """Get the current UTC timestamp formatted as ISO-8601 text."""
    return datetime.now(timezone.utc).isoformat()


def now_ms() -> int:
    """Get the current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def _id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


def normalize_status(status: str) -> str:
    """Map legacy status spellings onto the canonical board columns."""
    value = str(status or "").strip().lower()
    return _STATUS_ALIASES.get(value, value)


@dataclass
class OrchestrationEvent:
    """A project event waiting to be turned into an orchestrator directive."""
    type: OrchestrationEventType
    payload: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: _id("evt"))
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the event to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrchestrationEvent":
        """Deserialize an event, dropping unknown payload keys.

        Raises:
            ValueError: If ``type`` is not a known event type.
        """
        event_type = str(data.get("type") or "").strip()
        if event_type not in _VALID_EVENT_TYPES:
            raise ValueError(f"Unknown orchestration event type: {event_type!r}")
        raw_payload = data.get("payload") if isinstance(data.get("payload"), dict) else {}
        payload = {key: raw_payload[key] for key in _PAYLOAD_KEYS if raw_payload.get(key) is not None}
        return cls(
            type=cast(OrchestrationEventType, event_type),
            payload=payload,
            id=str(data.get("id") or _id("evt")),
            timestamp=int(data.get("timestamp") or now_ms()),
        )

    @classmethod
    def status_change(cls, *, story_id: str, story_title: str, old_status: str, new_status: str) -> "OrchestrationEvent":
        return cls(
            type="status_change",
            payload={
                "story_id": story_id,
                "story_title": story_title,
                "old_status": old_status,
                "new_status": new_status,
            },
        )

    @classmethod
    def agent_completion(
        cls,
        *,
        agent_id: str,
        exit_code: Optional[int],
        agent_name: Optional[str] = None,
        agent_last_message: Optional[str] = None,
        story_id: Optional[str] = None,
        story_title: Optional[str] = None,
    ) -> "OrchestrationEvent":
        payload: dict[str, Any] = {"agent_id": agent_id, "exit_code": exit_code}
        optional = {
            "agent_name": agent_name,
            "agent_last_message": agent_last_message,
            "story_id": story_id,
            "story_title": story_title,
        }
        payload.update({key: value for key, value in optional.items() if value})
        return cls(type="agent_completion", payload=payload)

    @classmethod
    def human_response(cls, question: "HumanQuestion", answer: str) -> "OrchestrationEvent":
        payload: dict[str, Any] = {
            "question_id": question.id,
            "question": question.question,
            "answer": answer,
        }
        if question.story_id:
            payload["story_id"] = question.story_id
        if question.story_title:
            payload["story_title"] = question.story_title
        return cls(type="human_response", payload=payload)


@dataclass
class DelegationCommand:
    """Instruction extracted from an orchestrator reply for another agent slot."""
    target_agent_id: str
    message: str
    story_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class HumanQuestion:
    """Clarification request raised by the orchestrator for a human to answer."""
    question: str
    id: str = field(default_factory=lambda: _id("q"))
    timestamp: int = field(default_factory=now_ms)
    context: dict[str, Optional[str]] = field(default_factory=dict)
    status: QuestionStatus = "pending"
    answer: Optional[str] = None
    resolved_at: Optional[int] = None

    @property
    def story_id(self) -> Optional[str]:
        return self.context.get("story_id")

    @property
    def story_title(self) -> Optional[str]:
        return self.context.get("story_title")

    def to_dict(self) -> dict[str, Any]:
        """Serialize the question to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HumanQuestion":
        """Deserialize a persisted question, normalizing status and context."""
        status = str(data.get("status") or "pending")
        if status not in _VALID_QUESTION_STATUSES:
            status = "pending"
        raw_context = data.get("context") if isinstance(data.get("context"), dict) else {}
        context = {
            "story_id": (str(raw_context["story_id"]) if raw_context.get("story_id") else None),
            "story_title": (str(raw_context["story_title"]) if raw_context.get("story_title") else None),
        }
        resolved_at = data.get("resolved_at")
        return cls(
            id=str(data.get("id") or _id("q")),
            timestamp=int(data.get("timestamp") or now_ms()),
            question=str(data.get("question") or ""),
            context=context,
            status=cast(QuestionStatus, status),
            answer=(str(data.get("answer")) if data.get("answer") is not None else None),
            resolved_at=(int(resolved_at) if isinstance(resolved_at, (int, float)) else None),
        )

    @classmethod
    def create(cls, question: str, story_id: Optional[str] = None, story_title: Optional[str] = None) -> "HumanQuestion":
        return cls(question=question, context={"story_id": story_id, "story_title": story_title})


@dataclass
class Story:
    """Board story as reported by the external board collaborator."""
    id: str
    epic_id: int
    title: str = ""
    status: str = "backlog"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Story":
        try:
            epic_id = int(data.get("epic_id") or 0)
        except (TypeError, ValueError):
            epic_id = 0
        return cls(
            id=str(data.get("id") or ""),
            epic_id=epic_id,
            title=str(data.get("title") or ""),
            status=normalize_status(str(data.get("status") or "backlog")),
        )


@dataclass
class Epic:
    """Board epic grouping a set of stories."""
    id: int
    name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class StatusAction:
    """A next step the orchestrator may take for stories in one status."""
    label: str
    agent_id: str
    description: str = ""
    command: str = ""
    agent_name: Optional[str] = None
    primary: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StatusAction":
        return cls(
            label=str(data.get("label") or ""),
            agent_id=str(data.get("agent_id") or ""),
            description=str(data.get("description") or ""),
            command=str(data.get("command") or ""),
            agent_name=(str(data.get("agent_name")) if data.get("agent_name") else None),
            primary=bool(data.get("primary", False)),
        )


@dataclass
class AgentSlot:
    """Public view of one named agent slot tracked by the process manager."""
    agent_id: str
    running: bool = False
    pid: Optional[int] = None
    started_at: Optional[str] = None
    continuity_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
