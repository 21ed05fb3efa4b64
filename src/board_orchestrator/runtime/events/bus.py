"""Event bus that persists runtime events and fans them out to subscribers."""

from __future__ import annotations

import logging
import threading
import uuid
from typing import Any, Callable, Optional

from ..domain.models import now_iso
from ..storage.interfaces import EventRepository
from .ws import hub

logger = logging.getLogger(__name__)

EventListener = Callable[[dict[str, Any]], None]


class EventBus:
    """Persist runtime events, notify in-process listeners and publish to websocket clients."""
    def __init__(self, repo: Optional[EventRepository], project_id: str) -> None:
        """Initialize the EventBus.

        Args:
            repo (Optional[EventRepository]): Event log; ``None`` disables persistence.
            project_id (str): Identifier for the related project.
        """
        self._repo = repo
        self._project_id = project_id
        self._listeners: list[EventListener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register ``listener`` for every emitted event and return an unsubscribe callable."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def emit(
        self,
        *,
        channel: str,
        event_type: str,
        entity_id: str,
        payload: dict[str, Any],
        persist: bool = True,
    ) -> dict[str, Any]:
        """Record an event and deliver it to listeners and connected clients.

        Listeners run synchronously on the emitting thread. A listener that raises
        is logged and skipped so the emitter (often a process reader thread) keeps
        running.

        Args:
            channel (str): Channel for this call.
            event_type (str): Event type for this call.
            entity_id (str): Identifier for the related entity.
            payload (dict[str, Any]): Serialized payload consumed by this operation.
            persist (bool): Append to the event log when a repository is configured.

        Returns:
            dict[str, Any]: The event envelope that was delivered.
        """
        if persist and self._repo is not None:
            event = self._repo.append(
                channel=channel,
                event_type=event_type,
                entity_id=entity_id,
                payload=payload,
                project_id=self._project_id,
            )
        else:
            event = {
                "id": f"evt-{uuid.uuid4().hex[:10]}",
                "ts": now_iso(),
                "channel": channel,
                "type": event_type,
                "entity_id": entity_id,
                "payload": payload,
                "project_id": self._project_id,
            }
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed for %s/%s", channel, event_type)
        hub.publish_sync(event)
        return event
