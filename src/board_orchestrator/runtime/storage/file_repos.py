"""File-backed repository implementations for runtime state."""

from __future__ import annotations

import json
import os
import threading
import uuid
from collections import deque
from pathlib import Path
from typing import Any, Callable, Generic, List, Optional, TypeVar

import yaml

from ...io_utils import FileLock
from ..domain.models import HumanQuestion, now_iso
from .interfaces import EventRepository, QuestionRepository

T = TypeVar("T")


def _make_envelope(*, channel: str, event_type: str, entity_id: str, payload: dict[str, Any], project_id: str) -> dict[str, Any]:
    return {
        "id": f"evt-{uuid.uuid4().hex[:10]}",
        "ts": now_iso(),
        "channel": channel,
        "type": event_type,
        "entity_id": entity_id,
        "payload": payload,
        "project_id": project_id,
    }


class _YamlCollectionRepo(Generic[T]):
    def __init__(
        self,
        path: Path,
        lock_path: Path,
        key: str,
        loader: Callable[[dict[str, Any]], T],
        dumper: Callable[[T], dict[str, Any]],
    ) -> None:
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()
        self._key = key
        self._loader = loader
        self._dumper = dumper

    def _load(self) -> list[T]:
        if not self._path.exists():
            return []
        raw = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            return []
        items = raw.get(self._key, [])
        if not isinstance(items, list):
            return []
        return [self._loader(item) for item in items if isinstance(item, dict)]

    def _save(self, items: list[T]) -> None:
        payload = {"version": 1, self._key: [self._dumper(item) for item in items]}
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(f"{self._path.suffix}.tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(payload, handle, sort_keys=False)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, self._path)


class FileQuestionRepository(QuestionRepository):
    """YAML-backed store for orchestrator questions awaiting a human."""
    def __init__(self, path: Path, lock_path: Path) -> None:
        """Initialize the FileQuestionRepository.

        Args:
            path (Path): YAML file path for question records.
            lock_path (Path): Lock file path used while mutating question data.
        """
        self._repo = _YamlCollectionRepo[HumanQuestion](
            path,
            lock_path,
            "questions",
            loader=HumanQuestion.from_dict,
            dumper=lambda q: q.to_dict(),
        )

    def list(self) -> list[HumanQuestion]:
        with self._repo._thread_lock:
            with self._repo._lock:
                return self._repo._load()

    def get(self, question_id: str) -> Optional[HumanQuestion]:
        for question in self.list():
            if question.id == question_id:
                return question
        return None

    def upsert(self, question: HumanQuestion) -> HumanQuestion:
        with self._repo._thread_lock:
            with self._repo._lock:
                questions = self._repo._load()
                for idx, existing in enumerate(questions):
                    if existing.id == question.id:
                        questions[idx] = question
                        break
                else:
                    questions.append(question)
                self._repo._save(questions)
        return question

    def replace_all(self, questions: List[HumanQuestion]) -> None:
        with self._repo._thread_lock:
            with self._repo._lock:
                self._repo._save(list(questions))


class FileEventRepository(EventRepository):
    """JSONL-backed event stream repository."""
    def __init__(self, path: Path, lock_path: Path) -> None:
        """Initialize the FileEventRepository.

        Args:
            path (Path): JSONL file path where event envelopes are appended.
            lock_path (Path): Lock file path used while writing or reading events.
        """
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()

    def append(self, *, channel: str, event_type: str, entity_id: str, payload: dict[str, Any], project_id: str) -> dict[str, Any]:
        """Append one event envelope to the JSONL stream.

        Returns:
            dict[str, Any]: Persisted event envelope including generated id and timestamp.
        """
        event = _make_envelope(
            channel=channel,
            event_type=event_type,
            entity_id=entity_id,
            payload=payload,
            project_id=project_id,
        )
        with self._thread_lock:
            with self._lock:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(event, default=str) + "\n")
                    handle.flush()
        return event

    def list_recent(self, limit: int = 100) -> list[dict[str, Any]]:
        """Read the newest events up to ``limit``."""
        if limit <= 0 or not self._path.exists():
            return []
        with self._thread_lock:
            with self._lock:
                with self._path.open("r", encoding="utf-8") as handle:
                    selected = list(deque(handle, maxlen=limit))
        events: list[dict[str, Any]] = []
        for line in selected:
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                events.append(parsed)
        return events


class FileConfigRepository:
    """YAML-backed repository for runtime configuration."""
    def __init__(self, path: Path, lock_path: Path) -> None:
        """Initialize the FileConfigRepository.

        Args:
            path (Path): YAML file path for runtime configuration.
            lock_path (Path): Lock file path used while reading or writing config.
        """
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()

    def load(self) -> dict[str, Any]:
        """Load configuration from disk.

        Returns:
            dict[str, Any]: Configuration mapping from disk, or an empty mapping.
        """
        with self._thread_lock:
            with self._lock:
                if not self._path.exists():
                    return {}
                raw = yaml.safe_load(self._path.read_text(encoding="utf-8"))
                return raw if isinstance(raw, dict) else {}

    def save(self, config: dict[str, Any]) -> dict[str, Any]:
        """Persist configuration to disk atomically.

        Args:
            config (dict[str, Any]): Configuration mapping to persist.

        Returns:
            dict[str, Any]: Saved configuration mapping.
        """
        with self._thread_lock:
            with self._lock:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path = self._path.with_suffix(f"{self._path.suffix}.tmp")
                with tmp_path.open("w", encoding="utf-8") as handle:
                    yaml.safe_dump(config, handle, sort_keys=False)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_path, self._path)
        return config
