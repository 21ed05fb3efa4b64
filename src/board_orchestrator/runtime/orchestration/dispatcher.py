"""Autonomous dispatch loop that turns project events into orchestrator directives."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Protocol

from ..domain.models import DelegationCommand, Epic, HumanQuestion, OrchestrationEvent, Story, now_ms
from ..events.bus import EventBus
from ..storage.container import Container
from ..storage.file_repos import FileConfigRepository
from .board import BoardState
from .context import BranchState, build_project_context, read_branch_state, render_event_message
from .parser import ParsedResponse, parse_orchestrator_response
from .questions import QuestionQueue
from .settings import OrchestrationSettings, get_orchestration_settings

logger = logging.getLogger(__name__)

_CHANNEL = "orchestration"


class AgentRunner(Protocol):
    """Subset of the process manager the dispatcher drives."""

    def load_agent(
        self, agent_id: str, work_dir: Path | str, prompt: str = "", continuity_id: Optional[str] = None
    ) -> dict[str, Any]: ...

    def send_message(
        self, agent_id: str, work_dir: Path | str, message: str, continuity_id: Optional[str] = None
    ) -> dict[str, Any]: ...

    def continuity_id(self, agent_id: str) -> Optional[str]: ...

    def clear_continuity(self, agent_id: str) -> None: ...

    def any_running(self) -> bool: ...


@dataclass
class _TurnReply:
    """Reply text of one agent turn, assembled from stream records."""
    parts: list[str] = field(default_factory=list)
    result: Optional[str] = None

    def feed(self, record: Any) -> None:
        if not isinstance(record, dict):
            return
        if record.get("type") == "result":
            if isinstance(record.get("result"), str):
                self.result = record["result"]
            return
        if record.get("type") != "assistant":
            return
        message = record.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            return
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str):
                self.parts.append(block["text"])

    @property
    def text(self) -> str:
        if self.result is not None:
            return self.result
        return "\n".join(self.parts)


@dataclass
class _Delegation:
    story_id: Optional[str] = None
    story_title: Optional[str] = None


@dataclass
class _Turn:
    """Work the dispatcher started on one agent slot.

    A persona load and the message sent after it share one ``_Turn``; it is
    re-keyed by the manager's ``turn_id`` each time a process starts for it.
    """
    agent_id: str
    directive: bool = False
    delegation: Optional[_Delegation] = None
    followup: Optional[str] = None
    reply: Optional[_TurnReply] = None


class OrchestrationDispatcher:
    """Feed queued events to the orchestrator agent under safety governors.

    One event is dispatched per poll tick, subject to the automation switch, a
    debounce window and a chain-depth limit that only resets after the system
    has been idle for ``idle_reset_ms``. Replies are parsed when the
    orchestrator's turn exits: delegations are delivered to their agents and
    questions land in the human question queue. Completed delegated turns feed
    back into the queue as ``agent_completion`` events.

    Agent events are matched to the dispatcher's own turns by ``turn_id``. A
    turn started on a slot by anyone else supersedes whatever the dispatcher
    had running there, and that work is dropped.

    All mutable state is guarded by one re-entrant lock; calls into the process
    manager are made after the lock is released.
    """

    def __init__(
        self,
        manager: AgentRunner,
        bus: EventBus,
        questions: QuestionQueue,
        *,
        work_dir: Path | str,
        settings: Optional[OrchestrationSettings] = None,
        board: Optional[BoardState] = None,
        branch_state_provider: Optional[Callable[[], BranchState]] = None,
        config_repo: Optional[FileConfigRepository] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        """Initialize the OrchestrationDispatcher.

        Args:
            manager (AgentRunner): Process manager that runs agent turns.
            bus (EventBus): Bus that carries agent events in and orchestration events out.
            questions (QuestionQueue): Destination for extracted human questions.
            work_dir (Path | str): Working directory for every agent turn.
            settings (Optional[OrchestrationSettings]): Initial governors.
            board (Optional[BoardState]): Board snapshot holder.
            branch_state_provider (Optional[Callable[[], BranchState]]): Current
                branch lookup; defaults to reading ``git`` in ``work_dir``.
            config_repo (Optional[FileConfigRepository]): Where automation
                toggles are persisted and settings are reloaded from.
            clock (Callable[[], int]): Epoch-millisecond clock.
        """
        self._manager = manager
        self._bus = bus
        self._questions = questions
        self._work_dir = Path(work_dir)
        self._settings = settings or OrchestrationSettings()
        self._board = board or BoardState()
        self._branch_state_provider = branch_state_provider or self._read_branch_state
        self._config_repo = config_repo
        self._clock = clock

        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._timer_thread: Optional[threading.Thread] = None

        self._automation_enabled = self._settings.automation_enabled
        self._queue: deque[OrchestrationEvent] = deque()
        self._history: deque[OrchestrationEvent] = deque(maxlen=self._settings.event_history_size)
        self._current_event: Optional[OrchestrationEvent] = None
        self._orchestrator_busy = False
        self._last_dispatch = 0
        self._chain_depth = 0
        self._chain_limit_logged = False
        self._idle_since: Optional[int] = None
        self._last_timer_tick = 0

        self._turns: dict[str, _Turn] = {}
        # Turns being started, keyed by (agent id, starting thread).
        self._starting: dict[tuple[str, int], _Turn] = {}

        self._unsubscribe = bus.subscribe(self._on_bus_event)

    # ------------------------------------------------------------------
    # Producers

    def enqueue(self, event: OrchestrationEvent) -> bool:
        """Append ``event`` to the queue, dropping the oldest event when full.

        Returns:
            bool: ``False`` when an older event had to be dropped.
        """
        dropped: Optional[OrchestrationEvent] = None
        with self._lock:
            if len(self._queue) >= self._settings.max_queue_size:
                dropped = self._queue.popleft()
            self._queue.append(event)
            self._idle_since = None
        logger.info("Queued %s event %s", event.type, event.id)
        self._emit("orchestration.event_queued", event.id, event.to_dict())
        if dropped is not None:
            logger.warning("Orchestration queue full, dropped %s event %s", dropped.type, dropped.id)
            self._emit("orchestration.event_dropped", dropped.id, dropped.to_dict())
            return False
        return True

    def trigger_manual(self) -> OrchestrationEvent:
        event = OrchestrationEvent(type="manual_trigger")
        self.enqueue(event)
        return event

    def update_board(
        self,
        stories: Iterable[Story],
        epics: Optional[Iterable[Epic]] = None,
        *,
        selected_epic_id: Optional[int] = None,
    ) -> list[OrchestrationEvent]:
        """Replace the board snapshot and enqueue one ``status_change`` per moved story."""
        moves = self._board.update(stories, epics)
        self._board.select_epic(selected_epic_id)
        if not self._settings.auto_trigger_on_status_change:
            return []
        events = [move.to_event() for move in moves]
        for event in events:
            self.enqueue(event)
        return events

    def answer_question(self, question_id: str, answer: str) -> OrchestrationEvent:
        """Resolve a pending question and enqueue the answer for the orchestrator."""
        question = self._questions.answer(question_id, answer)
        event = OrchestrationEvent.human_response(question, question.answer or answer)
        self.enqueue(event)
        return event

    # ------------------------------------------------------------------
    # Loop iterations

    def tick_once(self) -> bool:
        """Dispatch at most one queued event.

        Returns:
            bool: ``True`` when an event was handed to the orchestrator.
        """
        settings = self._settings
        with self._lock:
            if not self._automation_enabled or self._orchestrator_busy:
                return False
            now = self._clock()
            if now - self._last_dispatch < settings.debounce_ms:
                return False
            if self._chain_depth >= settings.max_chain_depth:
                if not self._chain_limit_logged:
                    logger.warning(
                        "Chain depth limit (%s) reached, pausing automation until idle",
                        settings.max_chain_depth,
                    )
                    self._chain_limit_logged = True
                return False
            orchestrator_id = settings.orchestrator_agent_id
            if not self._queue or not orchestrator_id:
                return False

            event = self._queue.popleft()
            self._history.append(event)
            history = list(self._history)
            self._current_event = event
            self._last_dispatch = now
            self._chain_depth += 1
            self._orchestrator_busy = True
            self._idle_since = None
            chain_depth = self._chain_depth

        message = self._compose(event, history)
        self._manager.clear_continuity(orchestrator_id)
        logger.info("Dispatching %s event %s to %s (chain depth %s)", event.type, event.id, orchestrator_id, chain_depth)
        self._emit(
            "orchestration.dispatched",
            event.id,
            {"event": event.to_dict(), "agent_id": orchestrator_id, "chain_depth": chain_depth},
        )
        result = self._deliver(_Turn(orchestrator_id, directive=True), message)
        if not result.get("success"):
            self._release_directive()
            logger.warning("Failed to deliver directive to %s: %s", orchestrator_id, result.get("error"))
        return True

    def idle_check_once(self) -> bool:
        """Reset the chain depth once the system has been quiet long enough.

        Returns:
            bool: ``True`` when the chain depth was reset.
        """
        with self._lock:
            idle = not self._queue and not self._orchestrator_busy and not self._delegated_agents()
            if self._chain_depth == 0 or not idle:
                self._idle_since = None
                return False
            now = self._clock()
            if self._idle_since is None:
                self._idle_since = now
                return False
            if now - self._idle_since < self._settings.idle_reset_ms:
                return False
            self._reset_chain()
        logger.info("Orchestration idle, chain depth reset")
        return True

    def timer_check_once(self) -> Optional[OrchestrationEvent]:
        """Enqueue a ``timer_tick`` when the configured interval has elapsed."""
        settings = self._settings
        with self._lock:
            if not self._automation_enabled or not settings.timer.enabled:
                return None
            if self._orchestrator_busy or self._chain_depth >= settings.max_chain_depth:
                return None
            now = self._clock()
            if now - self._last_timer_tick < settings.timer.interval_ms:
                return None
        if self._manager.any_running():
            logger.debug("Timer tick skipped, an agent is mid-turn")
            return None
        with self._lock:
            self._last_timer_tick = now
        self._questions.cleanup(settings.question_max_age_ms)
        event = OrchestrationEvent(type="timer_tick", timestamp=now)
        self.enqueue(event)
        return event

    # ------------------------------------------------------------------
    # Control and status

    def control(self, action: str) -> dict[str, Any]:
        """Apply a control action and return the updated status.

        Raises:
            ValueError: If ``action`` is not supported.
        """
        if action == "enable":
            self._set_automation(True)
        elif action == "disable":
            self._set_automation(False)
        elif action == "reset_chain":
            with self._lock:
                self._reset_chain()
        elif action == "clear_queue":
            with self._lock:
                self._queue.clear()
        else:
            raise ValueError(f"Unsupported control action: {action}")
        self._emit("orchestration.control", action, {"action": action})
        return self.status()

    def status(self) -> dict[str, Any]:
        """Build a snapshot of the governors, queue and in-flight turns."""
        settings = self._settings
        with self._lock:
            return {
                "automation_enabled": self._automation_enabled,
                "orchestrator_agent_id": settings.orchestrator_agent_id,
                "processing": self._orchestrator_busy,
                "current_event": self._current_event.to_dict() if self._current_event else None,
                "queue_length": len(self._queue),
                "queue": [event.to_dict() for event in self._queue],
                "chain_depth": self._chain_depth,
                "max_chain_depth": settings.max_chain_depth,
                "last_dispatch": self._last_dispatch,
                "last_timer_tick": self._last_timer_tick,
                "timer_enabled": settings.timer.enabled,
                "timer_interval_ms": settings.timer.interval_ms,
                "delegations_in_flight": self._delegated_agents(),
                "history": [event.to_dict() for event in self._history],
            }

    @property
    def settings(self) -> OrchestrationSettings:
        return self._settings

    @property
    def board(self) -> BoardState:
        return self._board

    @property
    def questions(self) -> QuestionQueue:
        return self._questions

    def apply_settings(self, settings: OrchestrationSettings) -> None:
        with self._lock:
            self._settings = settings
            self._automation_enabled = settings.automation_enabled
            self._history = deque(self._history, maxlen=settings.event_history_size)

    def reload_settings(self) -> OrchestrationSettings:
        """Re-read governors from the config repository, if one is attached."""
        if self._config_repo is not None:
            self.apply_settings(get_orchestration_settings(config=self._config_repo.load()))
        return self._settings

    def ensure_worker(self) -> None:
        """Start the poll and timer loops when not already running."""
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._loop, daemon=True, name="orchestration")
            self._timer_thread = threading.Thread(target=self._timer_loop, daemon=True, name="orchestration-timer")
            self._thread.start()
            self._timer_thread.start()

    def shutdown(self, *, timeout: float = 5.0) -> None:
        with self._lock:
            self._stop.set()
            threads = [self._thread, self._timer_thread]
        for thread in threads:
            if thread and thread.is_alive():
                thread.join(timeout=max(timeout, 0.0))
        self._thread = None
        self._timer_thread = None

    def close(self) -> None:
        self.shutdown()
        self._unsubscribe()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick_once()
                self.idle_check_once()
            except Exception:
                logger.exception("Orchestration tick failed")
            self._stop.wait(self._settings.queue_poll_ms / 1000.0)

    def _timer_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.timer_check_once()
            except Exception:
                logger.exception("Orchestration timer check failed")
            self._stop.wait(self._settings.timer.check_ms / 1000.0)

    # ------------------------------------------------------------------
    # Delivery

    def _deliver(self, turn: _Turn, message: str) -> dict[str, Any]:
        agent_id = turn.agent_id
        continuity = self._manager.continuity_id(agent_id)
        if continuity:
            return self._start_turn(
                turn, lambda: self._manager.send_message(agent_id, self._work_dir, message, continuity)
            )
        turn.followup = message
        return self._start_turn(turn, lambda: self._manager.load_agent(agent_id, self._work_dir))

    def _start_turn(self, turn: _Turn, start: Callable[[], dict[str, Any]]) -> dict[str, Any]:
        """Run ``start`` so the ``agent.started`` it emits is bound to ``turn``."""
        key = (turn.agent_id, threading.get_ident())
        with self._lock:
            self._starting[key] = turn
        try:
            return start()
        finally:
            with self._lock:
                self._starting.pop(key, None)

    def _deliver_delegations(self, parsed: ParsedResponse, event: Optional[OrchestrationEvent]) -> None:
        payload = event.payload if event else {}
        # A slot runs one turn at a time, so messages for the same agent are merged.
        merged: dict[str, DelegationCommand] = {}
        for delegation in parsed.delegations:
            existing = merged.get(delegation.target_agent_id)
            if existing is None:
                merged[delegation.target_agent_id] = DelegationCommand(
                    target_agent_id=delegation.target_agent_id,
                    message=delegation.message,
                    story_id=delegation.story_id or payload.get("story_id"),
                )
            else:
                existing.message = f"{existing.message}\n\n{delegation.message}"
        for delegation in merged.values():
            turn = _Turn(
                delegation.target_agent_id,
                delegation=_Delegation(story_id=delegation.story_id, story_title=payload.get("story_title")),
            )
            result = self._deliver(turn, delegation.message)
            logger.info(
                "Delegated to %s (success=%s): %s",
                delegation.target_agent_id,
                bool(result.get("success")),
                delegation.message,
            )
            self._emit(
                "orchestration.delegation",
                delegation.target_agent_id,
                {**delegation.to_dict(), "success": bool(result.get("success")), "error": result.get("error")},
            )

    # ------------------------------------------------------------------
    # Agent events

    def _on_bus_event(self, envelope: dict[str, Any]) -> None:
        if envelope.get("channel") != "agents":
            return
        payload = envelope.get("payload") or {}
        agent_id = payload.get("agent_id")
        turn_id = payload.get("turn_id")
        if not agent_id or not turn_id:
            return
        event_type = envelope.get("type")
        if event_type == "agent.started":
            self._on_agent_started(agent_id, turn_id, payload.get("kind"))
        elif event_type == "agent.output":
            if payload.get("channel") == "stdout":
                with self._lock:
                    turn = self._turns.get(turn_id)
                    if turn is not None and turn.reply is not None:
                        turn.reply.feed(payload.get("record"))
        elif event_type == "agent.exit":
            self._on_agent_exit(turn_id, payload)
        elif event_type == "agent.error":
            with self._lock:
                turn = self._turns.pop(turn_id, None)
            if turn is not None:
                self._drop(turn)

    def _on_agent_started(self, agent_id: str, turn_id: str, kind: Optional[str]) -> None:
        with self._lock:
            turn = self._starting.pop((agent_id, threading.get_ident()), None)
            superseded = [t for t in self._turns.values() if t.agent_id == agent_id and t is not turn]
            self._turns = {tid: t for tid, t in self._turns.items() if t.agent_id != agent_id}
            if turn is not None:
                turn.reply = _TurnReply() if kind == "message" else None
                self._turns[turn_id] = turn
        for old in superseded:
            logger.info("Turn on %s was replaced by another turn, dropping dispatcher work", agent_id)
            self._drop(old)

    def _on_agent_exit(self, turn_id: str, payload: dict[str, Any]) -> None:
        cancelled = bool(payload.get("cancelled"))
        with self._lock:
            turn = self._turns.get(turn_id)
            if turn is None:
                return
            followup = turn.followup if payload.get("kind") == "load" else None
            turn.followup = None
            if followup is None or cancelled:
                del self._turns[turn_id]

        if followup is not None:
            if cancelled:
                self._drop(turn)
                return
            agent_id = turn.agent_id
            continuity = payload.get("continuity_id") or self._manager.continuity_id(agent_id)
            result = self._start_turn(
                turn, lambda: self._manager.send_message(agent_id, self._work_dir, followup, continuity)
            )
            if not result.get("success"):
                with self._lock:
                    self._turns.pop(turn_id, None)
                self._drop(turn)
            return

        event = self._release_directive() if turn.directive else None
        if cancelled:
            logger.info("Turn for %s was cancelled, reply ignored", turn.agent_id)
            return
        if turn.directive:
            self._handle_reply(turn.agent_id, turn.reply.text if turn.reply else "", event)
        elif turn.delegation is not None:
            self._handle_completion(turn.agent_id, payload, turn.reply, turn.delegation)

    def _handle_reply(self, agent_id: str, text: str, event: Optional[OrchestrationEvent]) -> None:
        settings = self._settings
        story_context = None
        if event is not None and event.payload.get("story_id"):
            story_context = {
                "story_id": event.payload.get("story_id"),
                "story_title": event.payload.get("story_title"),
            }
        parsed = parse_orchestrator_response(
            text,
            settings.agent_ids,
            story_context,
            max_delegations=settings.max_delegations_per_response,
            self_ids=settings.self_ids,
        )
        if parsed.warnings:
            for warning in parsed.warnings:
                logger.warning("Orchestrator reply: %s", warning)
            self._emit("orchestration.warnings", agent_id, {"agent_id": agent_id, "warnings": parsed.warnings})
        for extracted in parsed.questions:
            self._questions.add(
                HumanQuestion.create(extracted.question, extracted.story_id, extracted.story_title)
            )
        self._deliver_delegations(parsed, event)
        self._emit(
            "orchestration.reply",
            agent_id,
            {
                "agent_id": agent_id,
                "event_id": event.id if event else None,
                **parsed.to_dict(),
            },
        )

    def _handle_completion(
        self,
        agent_id: str,
        payload: dict[str, Any],
        reply: Optional[_TurnReply],
        delegation: _Delegation,
    ) -> None:
        settings = self._settings
        if not settings.auto_trigger_on_agent_complete or not self._automation_enabled:
            return
        last_message = reply.text.strip() if reply else ""
        self.enqueue(
            OrchestrationEvent.agent_completion(
                agent_id=agent_id,
                exit_code=payload.get("exit_code"),
                agent_name=settings.agent_names.get(agent_id),
                agent_last_message=last_message or None,
                story_id=delegation.story_id,
                story_title=delegation.story_title,
            )
        )

    # ------------------------------------------------------------------
    # Helpers

    def _compose(self, event: OrchestrationEvent, history: list[OrchestrationEvent]) -> str:
        settings = self._settings
        if event.type == "human_response":
            return render_event_message(event)
        context = build_project_context(
            self._board.stories,
            self._board.epics,
            self._questions.pending(),
            self._board.selected_epic_id,
            settings.status_actions,
            history,
            self._branch_state_provider(),
        )
        return render_event_message(event, context)

    def _read_branch_state(self) -> BranchState:
        return read_branch_state(
            self._work_dir,
            base_branch=self._settings.base_branch,
            enable_epic_branches=self._settings.enable_epic_branches,
        )

    def _release_directive(self) -> Optional[OrchestrationEvent]:
        """Mark the orchestrator free and return the event it was handling."""
        with self._lock:
            event = self._current_event
            self._orchestrator_busy = False
            self._current_event = None
        return event

    def _drop(self, turn: _Turn) -> None:
        if turn.directive:
            self._release_directive()

    def _delegated_agents(self) -> list[str]:
        with self._lock:
            return sorted({turn.agent_id for turn in self._turns.values() if turn.delegation is not None})

    def _reset_chain(self) -> None:
        self._chain_depth = 0
        self._chain_limit_logged = False
        self._idle_since = None

    def _set_automation(self, enabled: bool) -> None:
        with self._lock:
            self._automation_enabled = enabled
            self._settings = self._settings.with_overrides(automation_enabled=enabled)
        if self._config_repo is None:
            return
        cfg = self._config_repo.load()
        orchestration_cfg = dict(cfg.get("orchestration") or {})
        orchestration_cfg["automation_enabled"] = enabled
        cfg["orchestration"] = orchestration_cfg
        self._config_repo.save(cfg)

    def _emit(self, event_type: str, entity_id: str, payload: dict[str, Any]) -> None:
        self._bus.emit(channel=_CHANNEL, event_type=event_type, entity_id=entity_id, payload=payload)


def create_dispatcher(container: Container, manager: AgentRunner, bus: EventBus) -> OrchestrationDispatcher:
    """Wire a dispatcher to the project's config, question store and working tree."""
    settings = get_orchestration_settings(config=container.config.load())
    questions = QuestionQueue(container.questions, bus, max_pending=settings.max_pending_questions)
    return OrchestrationDispatcher(
        manager,
        bus,
        questions,
        work_dir=container.project_dir,
        settings=settings,
        config_repo=container.config,
    )
