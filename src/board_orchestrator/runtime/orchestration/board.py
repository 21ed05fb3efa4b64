"""Latest board snapshot supplied by the board collaborator."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Iterable, Optional

from ..domain.models import Epic, OrchestrationEvent, Story


@dataclass(frozen=True)
class StatusMove:
    story: Story
    old_status: str

    def to_event(self) -> OrchestrationEvent:
        return OrchestrationEvent.status_change(
            story_id=self.story.id,
            story_title=self.story.title,
            old_status=self.old_status,
            new_status=self.story.status,
        )


class BoardState:
    """Hold stories, epics and the epic filter; report status moves between updates.

    The first snapshot only seeds the baseline. Stories that appear later are
    not reported as moves, and stories that vanish are forgotten.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stories: list[Story] = []
        self._epics: list[Epic] = []
        self._selected_epic_id: Optional[int] = None
        self._seeded = False

    def update(self, stories: Iterable[Story], epics: Optional[Iterable[Epic]] = None) -> list[StatusMove]:
        new_stories = list(stories)
        with self._lock:
            previous = {s.id: s.status for s in self._stories}
            seeded = self._seeded
            self._stories = new_stories
            if epics is not None:
                self._epics = list(epics)
            self._seeded = True
        if not seeded:
            return []
        return [
            StatusMove(story=story, old_status=previous[story.id])
            for story in new_stories
            if story.id in previous and previous[story.id] != story.status
        ]

    def select_epic(self, epic_id: Optional[int]) -> None:
        with self._lock:
            self._selected_epic_id = epic_id

    @property
    def stories(self) -> list[Story]:
        with self._lock:
            return list(self._stories)

    @property
    def epics(self) -> list[Epic]:
        with self._lock:
            return list(self._epics)

    @property
    def selected_epic_id(self) -> Optional[int]:
        with self._lock:
            return self._selected_epic_id

    def find_story(self, story_id: str) -> Optional[Story]:
        with self._lock:
            for story in self._stories:
                if story.id == story_id:
                    return story
        return None
