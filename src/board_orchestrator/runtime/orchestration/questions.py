"""Non-blocking queue of questions the orchestrator raised for a human."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from ..domain.models import HumanQuestion, now_ms
from ..events.bus import EventBus
from ..storage.interfaces import QuestionRepository

logger = logging.getLogger(__name__)

_CHANNEL = "questions"


class QuestionQueue:
    """Persisted human questions with a pending cap and age-based cleanup.

    Answering or dismissing never blocks the dispatcher; the caller decides
    what to do with an answer (normally enqueue a ``human_response`` event).
    """

    def __init__(
        self,
        repo: QuestionRepository,
        bus: EventBus,
        *,
        max_pending: int = 20,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._repo = repo
        self._bus = bus
        self._max_pending = max_pending
        self._clock = clock
        self._lock = threading.RLock()

    def list(self) -> list[HumanQuestion]:
        return self._repo.list()

    def pending(self) -> list[HumanQuestion]:
        return [q for q in self._repo.list() if q.status == "pending"]

    def get(self, question_id: str) -> Optional[HumanQuestion]:
        return self._repo.get(question_id)

    def add(self, question: HumanQuestion) -> HumanQuestion:
        """Persist ``question``; the oldest pending ones are dismissed past the cap."""
        evicted: list[HumanQuestion] = []
        with self._lock:
            questions = self._repo.list()
            questions.append(question)
            pending = sorted((q for q in questions if q.status == "pending"), key=lambda q: q.timestamp)
            overflow = len(pending) - self._max_pending
            for old in pending[: max(overflow, 0)]:
                old.status = "dismissed"
                old.resolved_at = self._clock()
                evicted.append(old)
            self._repo.replace_all(questions)
        for old in evicted:
            logger.warning("Pending question limit reached, dismissed %s", old.id)
            self._emit("question.dismissed", old)
        logger.info("Orchestrator asked question %s", question.id)
        self._emit("question.added", question)
        return question

    def answer(self, question_id: str, answer: str) -> HumanQuestion:
        """Record ``answer`` for a pending question.

        Raises:
            KeyError: If the question does not exist.
            ValueError: If the question was already resolved or ``answer`` is blank.
        """
        text = answer.strip()
        if not text:
            raise ValueError("answer must not be empty")
        with self._lock:
            question = self._require_pending(question_id)
            question.status = "answered"
            question.answer = text
            question.resolved_at = self._clock()
            self._repo.upsert(question)
        self._emit("question.answered", question)
        return question

    def dismiss(self, question_id: str) -> HumanQuestion:
        with self._lock:
            question = self._require_pending(question_id)
            question.status = "dismissed"
            question.resolved_at = self._clock()
            self._repo.upsert(question)
        self._emit("question.dismissed", question)
        return question

    def cleanup(self, max_age_ms: int) -> int:
        """Drop resolved questions older than ``max_age_ms``; returns how many were removed."""
        cutoff = self._clock() - max_age_ms
        with self._lock:
            questions = self._repo.list()
            kept = [q for q in questions if q.status == "pending" or (q.resolved_at or q.timestamp) >= cutoff]
            removed = len(questions) - len(kept)
            if removed:
                self._repo.replace_all(kept)
        if removed:
            logger.info("Removed %s resolved questions", removed)
        return removed

    def _require_pending(self, question_id: str) -> HumanQuestion:
        question = self._repo.get(question_id)
        if question is None:
            raise KeyError(question_id)
        if question.status != "pending":
            raise ValueError(f"Question {question_id} is already {question.status}")
        return question

    def _emit(self, event_type: str, question: HumanQuestion) -> None:
        self._bus.emit(channel=_CHANNEL, event_type=event_type, entity_id=question.id, payload=question.to_dict())
