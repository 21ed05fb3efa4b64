"""Repository interfaces for runtime persistence abstractions."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, List, Optional

from ..domain.models import HumanQuestion


class QuestionRepository(ABC):
    """Persistence contract for human clarification questions."""
    @abstractmethod
    def list(self) -> List[HumanQuestion]:
        """List every persisted question.

        Returns:
            List[HumanQuestion]: All question records in insertion order.
        """
        raise NotImplementedError

    @abstractmethod
    def get(self, question_id: str) -> Optional[HumanQuestion]:
        """Fetch a question by id, or ``None`` when no record exists.

        Args:
            question_id (str): Identifier for the target question.

        Returns:
            Optional[HumanQuestion]: Requested value when available; otherwise `None`.
        """
        raise NotImplementedError

    @abstractmethod
    def upsert(self, question: HumanQuestion) -> HumanQuestion:
        """Create or update a question record.

        Args:
            question (HumanQuestion): Question model to persist.

        Returns:
            HumanQuestion: Persisted question after the write operation.
        """
        raise NotImplementedError

    @abstractmethod
    def replace_all(self, questions: List[HumanQuestion]) -> None:
        """Overwrite the stored collection with ``questions``.

        Args:
            questions (List[HumanQuestion]): Complete collection to persist.
        """
        raise NotImplementedError


class EventRepository(ABC):
    """Persistence contract for runtime event streams."""
    @abstractmethod
    def append(self, *, channel: str, event_type: str, entity_id: str, payload: dict[str, Any], project_id: str) -> dict[str, Any]:
        """Append an event envelope and return the persisted record.

        Args:
            channel (str): Event channel name (for example ``agents`` or ``orchestration``).
            event_type (str): Event type label within the channel namespace.
            entity_id (str): Identifier for the related entity.
            payload (dict[str, Any]): JSON-serializable event payload.
            project_id (str): Identifier for the related project.

        Returns:
            dict[str, Any]: Persisted event envelope including id and timestamp metadata.
        """
        raise NotImplementedError

    @abstractmethod
    def list_recent(self, limit: int = 100) -> List[dict[str, Any]]:
        """List the most recent events, capped at ``limit`` records.

        Args:
            limit (int): Maximum number of newest event records to return.

        Returns:
            List[dict[str, Any]]: Most recent event envelopes, newest-last by storage order.
        """
        raise NotImplementedError
