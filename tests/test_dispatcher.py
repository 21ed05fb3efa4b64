from __future__ import annotations

from pathlib import Path
from typing import Any, Iterator, Optional

import pytest

from board_orchestrator.runtime.domain.models import Epic, HumanQuestion, OrchestrationEvent, Story
from board_orchestrator.runtime.events import EventBus
from board_orchestrator.runtime.orchestration import (
    BranchState,
    OrchestrationDispatcher,
    OrchestrationSettings,
    QuestionQueue,
    TimerSettings,
)
from board_orchestrator.runtime.storage import FileConfigRepository, FileQuestionRepository


class Clock:
    def __init__(self, now: int = 1_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


class FakeAgents:
    """Records manager calls and emits ``agent.started`` on the calling thread.

    ``finish`` plays back the output and exit of the slot's latest turn.
    """

    def __init__(self, bus: EventBus) -> None:
        self.bus = bus
        self.calls: list[tuple[Any, ...]] = []
        self.continuity: dict[str, str] = {}
        self.turns: dict[str, str] = {}
        self.started = 0
        self.running = False
        self.failing: set[str] = set()

    def begin(self, agent_id: str, kind: str) -> dict[str, Any]:
        self.started += 1
        turn_id = f"turn-{self.started}"
        self.turns[agent_id] = turn_id
        self.bus.emit(
            channel="agents",
            event_type="agent.started",
            entity_id=agent_id,
            payload={"agent_id": agent_id, "turn_id": turn_id, "kind": kind},
        )
        return {"success": True, "turn_id": turn_id}

    def load_agent(self, agent_id: str, work_dir: Any, prompt: str = "", continuity_id: Optional[str] = None) -> dict[str, Any]:
        self.calls.append(("load", agent_id))
        if agent_id in self.failing:
            return {"success": False, "error": "spawn failed"}
        return self.begin(agent_id, "load")

    def send_message(self, agent_id: str, work_dir: Any, message: str, continuity_id: Optional[str] = None) -> dict[str, Any]:
        self.calls.append(("message", agent_id, message, continuity_id))
        return self.begin(agent_id, "message")

    def continuity_id(self, agent_id: str) -> Optional[str]:
        return self.continuity.get(agent_id)

    def clear_continuity(self, agent_id: str) -> None:
        self.calls.append(("clear", agent_id))
        self.continuity.pop(agent_id, None)

    def any_running(self) -> bool:
        return self.running

    def finish(
        self,
        agent_id: str,
        kind: str,
        *,
        continuity_id: Optional[str] = None,
        text: Optional[str] = None,
        exit_code: Optional[int] = 0,
        cancelled: bool = False,
    ) -> None:
        turn_id = self.turns[agent_id]

        def emit(event_type: str, payload: dict[str, Any]) -> None:
            self.bus.emit(
                channel="agents",
                event_type=event_type,
                entity_id=agent_id,
                payload={"agent_id": agent_id, "turn_id": turn_id, **payload},
            )

        if text is not None:
            record = {"type": "result", "result": text, "session_id": continuity_id}
            emit("agent.output", {"channel": "stdout", "text": "", "record": record})
        if continuity_id:
            self.continuity[agent_id] = continuity_id
        emit(
            "agent.exit",
            {
                "exit_code": None if cancelled else exit_code,
                "signal": "SIGTERM" if cancelled else None,
                "continuity_id": continuity_id,
                "cancelled": cancelled,
                "kind": kind,
            },
        )

    def messages_to(self, agent_id: str) -> list[str]:
        return [call[2] for call in self.calls if call[0] == "message" and call[1] == agent_id]


class Env:
    def __init__(self, tmp_path: Path, **overrides: Any) -> None:
        self.bus = EventBus(None, "test")
        self.agents = FakeAgents(self.bus)
        self.clock = Clock()
        self.config = FileConfigRepository(tmp_path / "config.yaml", tmp_path / "config.lock")
        repo = FileQuestionRepository(tmp_path / "questions.yaml", tmp_path / "questions.lock")
        self.questions = QuestionQueue(repo, self.bus, clock=self.clock)
        self.published: list[dict[str, Any]] = []
        self.bus.subscribe(self.published.append)
        settings = OrchestrationSettings(agent_ids=("dev", "sm"), automation_enabled=True, debounce_ms=0)
        self.dispatcher = OrchestrationDispatcher(
            self.agents,
            self.bus,
            self.questions,
            work_dir=tmp_path,
            settings=settings.with_overrides(**overrides),
            branch_state_provider=lambda: BranchState("main"),
            config_repo=self.config,
            clock=self.clock,
        )

    def reply(self, text: str, continuity_id: str = "s-orch") -> None:
        """Complete the orchestrator's load and message turns with ``text`` as the reply."""
        self.agents.finish("oracle", "load", continuity_id=continuity_id)
        self.agents.finish("oracle", "message", continuity_id=continuity_id, text=text)

    def of(self, event_type: str) -> list[dict[str, Any]]:
        return [e["payload"] for e in self.published if e["type"] == event_type]


@pytest.fixture
def env(tmp_path: Path) -> Iterator[Env]:
    environment = Env(tmp_path)
    yield environment
    environment.dispatcher.close()


def test_nothing_dispatched_while_automation_disabled(tmp_path: Path) -> None:
    env = Env(tmp_path, automation_enabled=False)

    env.dispatcher.trigger_manual()

    assert env.dispatcher.tick_once() is False
    assert env.agents.calls == []
    assert env.dispatcher.status()["queue_length"] == 1


def test_directive_is_sent_after_the_persona_load(env: Env) -> None:
    env.dispatcher.trigger_manual()

    assert env.dispatcher.tick_once() is True
    assert env.agents.calls == [("clear", "oracle"), ("load", "oracle")]
    assert env.dispatcher.status()["processing"] is True

    env.agents.finish("oracle", "load", continuity_id="s1")

    kind, agent_id, message, continuity = env.agents.calls[-1]
    assert (kind, agent_id, continuity) == ("message", "oracle", "s1")
    assert message.startswith("[EVENT: Manual Trigger]\nUser requested workflow automation.")
    assert "INSTRUCTIONS:" in message


def test_every_dispatch_starts_a_fresh_orchestrator_session(env: Env) -> None:
    env.agents.continuity["oracle"] = "stale"
    env.dispatcher.trigger_manual()

    env.dispatcher.tick_once()

    assert ("load", "oracle") in env.agents.calls
    assert env.agents.messages_to("oracle") == []


def test_only_one_directive_in_flight(env: Env) -> None:
    env.dispatcher.trigger_manual()
    env.dispatcher.trigger_manual()

    assert env.dispatcher.tick_once() is True
    assert env.dispatcher.tick_once() is False

    env.reply("Nothing to do.")

    assert env.dispatcher.status()["processing"] is False
    assert env.dispatcher.tick_once() is True


def test_debounce_spaces_dispatches(tmp_path: Path) -> None:
    env = Env(tmp_path, debounce_ms=2000)
    env.dispatcher.trigger_manual()
    env.dispatcher.trigger_manual()
    env.dispatcher.tick_once()
    env.reply("ok")

    env.clock.now += 1999
    assert env.dispatcher.tick_once() is False
    env.clock.now += 1
    assert env.dispatcher.tick_once() is True


def test_chain_depth_pauses_until_idle_reset(tmp_path: Path) -> None:
    env = Env(tmp_path, max_chain_depth=2, idle_reset_ms=5000)
    for _ in range(3):
        env.dispatcher.trigger_manual()
    for _ in range(2):
        assert env.dispatcher.tick_once() is True
        env.reply("ok")

    assert env.dispatcher.tick_once() is False
    assert env.dispatcher.status()["chain_depth"] == 2

    # Queued work means the chain is not idle.
    assert env.dispatcher.idle_check_once() is False
    env.dispatcher.control("clear_queue")
    assert env.dispatcher.idle_check_once() is False
    env.clock.now += 4999
    assert env.dispatcher.idle_check_once() is False
    env.clock.now += 1
    assert env.dispatcher.idle_check_once() is True
    assert env.dispatcher.status()["chain_depth"] == 0


def test_reset_chain_control_resumes_dispatch(tmp_path: Path) -> None:
    env = Env(tmp_path, max_chain_depth=1)
    env.dispatcher.trigger_manual()
    env.dispatcher.trigger_manual()
    env.dispatcher.tick_once()
    env.reply("ok")
    assert env.dispatcher.tick_once() is False

    env.dispatcher.control("reset_chain")

    assert env.dispatcher.tick_once() is True


def test_reply_delegates_and_raises_questions(tmp_path: Path) -> None:
    env = Env(tmp_path, agent_names={"dev": "Amelia"})
    env.dispatcher.enqueue(
        OrchestrationEvent.status_change(
            story_id="1-2-login", story_title="Login", old_status="backlog", new_status="ready-for-dev"
        )
    )
    env.dispatcher.tick_once()

    env.reply("@dev Implement story 1-2-login\n[QUESTION]: Which auth provider?")

    assert env.agents.calls[-1] == ("load", "dev")
    assert env.dispatcher.status()["delegations_in_flight"] == ["dev"]
    [question] = env.questions.pending()
    assert question.question == "Which auth provider?"
    assert question.story_id == "1-2-login"
    [delegation] = env.of("orchestration.delegation")
    assert delegation["story_id"] == "1-2-login"
    assert delegation["success"] is True

    env.agents.finish("dev", "load", continuity_id="d1")
    assert env.agents.calls[-1] == ("message", "dev", "Implement story 1-2-login", "d1")

    env.agents.finish("dev", "message", continuity_id="d1", text="Implemented and tested.\n")

    queue = env.dispatcher.status()["queue"]
    assert [e["type"] for e in queue] == ["agent_completion"]
    assert queue[0]["payload"] == {
        "agent_id": "dev",
        "exit_code": 0,
        "agent_name": "Amelia",
        "agent_last_message": "Implemented and tested.",
        "story_id": "1-2-login",
        "story_title": "Login",
    }
    assert env.dispatcher.status()["delegations_in_flight"] == []


def test_messages_for_the_same_agent_are_merged(env: Env) -> None:
    env.dispatcher.trigger_manual()
    env.dispatcher.tick_once()

    env.reply("@dev first task\nDelegate to sm: draft 1-3\nDelegate to DEV: second task")
    env.agents.finish("dev", "load", continuity_id="d1")
    env.agents.finish("sm", "load", continuity_id="m1")

    assert env.agents.messages_to("dev") == ["first task\n\nsecond task"]
    assert env.agents.messages_to("sm") == ["draft 1-3"]


def test_completion_not_queued_when_disabled_in_settings(tmp_path: Path) -> None:
    env = Env(tmp_path, auto_trigger_on_agent_complete=False)
    env.dispatcher.trigger_manual()
    env.dispatcher.tick_once()
    env.reply("@dev go")

    env.agents.finish("dev", "load", continuity_id="d1")
    env.agents.finish("dev", "message", continuity_id="d1", text="done")

    assert env.dispatcher.status()["queue_length"] == 0


def test_undelegated_agent_turns_do_not_queue_completions(env: Env) -> None:
    env.agents.begin("dev", "message")
    env.agents.finish("dev", "message", continuity_id="d1", text="manual chat")

    assert env.dispatcher.status()["queue_length"] == 0


def test_manual_turn_replacing_a_delegation_drops_it(env: Env) -> None:
    env.dispatcher.trigger_manual()
    env.dispatcher.tick_once()
    env.reply("@dev implement story 1-2")
    assert env.dispatcher.status()["delegations_in_flight"] == ["dev"]

    # The user chats with dev while the delegation's persona load is running.
    env.agents.begin("dev", "message")
    env.agents.finish("dev", "message", continuity_id="d1", text="manual chat answer")
    assert env.dispatcher.status()["delegations_in_flight"] == []
    assert env.dispatcher.status()["queue_length"] == 0

    env.agents.begin("dev", "load")
    env.agents.finish("dev", "load", continuity_id="d2")
    assert env.agents.messages_to("dev") == []


def test_stale_exit_of_a_replaced_load_is_ignored(env: Env) -> None:
    env.dispatcher.trigger_manual()
    env.dispatcher.tick_once()
    replaced = env.agents.turns["oracle"]
    env.agents.begin("oracle", "message")

    env.bus.emit(
        channel="agents",
        event_type="agent.exit",
        entity_id="oracle",
        payload={"agent_id": "oracle", "turn_id": replaced, "kind": "load", "cancelled": False},
    )

    assert env.agents.messages_to("oracle") == []
    assert env.dispatcher.status()["processing"] is False


def test_redelegation_to_a_busy_agent_supersedes_the_first(env: Env) -> None:
    for _ in range(2):
        env.dispatcher.trigger_manual()
    env.dispatcher.tick_once()
    env.reply("@dev first task")
    env.dispatcher.tick_once()
    env.reply("@dev second task", continuity_id="s-orch-2")

    env.agents.finish("dev", "load", continuity_id="d1")
    env.agents.finish("dev", "message", continuity_id="d1", text="done")

    assert env.agents.messages_to("dev") == ["second task"]
    completions = [e for e in env.dispatcher.status()["queue"] if e["type"] == "agent_completion"]
    assert len(completions) == 1


def test_cancelled_directive_reply_is_ignored(env: Env) -> None:
    env.dispatcher.trigger_manual()
    env.dispatcher.tick_once()
    env.agents.finish("oracle", "load", continuity_id="s1")

    env.agents.finish("oracle", "message", text="@dev go", cancelled=True)

    assert ("load", "dev") not in env.agents.calls
    assert env.dispatcher.status()["processing"] is False
    assert env.of("orchestration.reply") == []


def test_reply_warnings_are_published(env: Env) -> None:
    env.dispatcher.trigger_manual()
    env.dispatcher.tick_once()

    env.reply("@ghost haunt the repo")

    [published] = env.of("orchestration.warnings")
    assert published["warnings"] == ['Unknown agent "ghost" in: @ghost haunt the repo']
    [reply] = env.of("orchestration.reply")
    assert reply["has_delegation"] is False


def test_orchestrator_error_releases_the_dispatcher(env: Env) -> None:
    env.dispatcher.trigger_manual()
    env.dispatcher.tick_once()

    env.bus.emit(
        channel="agents",
        event_type="agent.error",
        entity_id="oracle",
        payload={"agent_id": "oracle", "turn_id": env.agents.turns["oracle"], "message": "reader failed"},
    )

    assert env.dispatcher.status()["processing"] is False


def test_failed_load_releases_the_dispatcher(env: Env) -> None:
    env.agents.failing.add("oracle")
    env.dispatcher.trigger_manual()

    assert env.dispatcher.tick_once() is True
    assert env.dispatcher.status()["processing"] is False


def test_full_queue_drops_the_oldest_event(tmp_path: Path) -> None:
    env = Env(tmp_path, max_queue_size=2)
    first, second, third = (OrchestrationEvent(type="manual_trigger") for _ in range(3))

    assert env.dispatcher.enqueue(first) is True
    assert env.dispatcher.enqueue(second) is True
    assert env.dispatcher.enqueue(third) is False

    assert [e["id"] for e in env.dispatcher.status()["queue"]] == [second.id, third.id]
    assert [e["id"] for e in env.of("orchestration.event_dropped")] == [first.id]


def test_timer_ticks_respect_interval_and_running_agents(tmp_path: Path) -> None:
    env = Env(tmp_path, timer=TimerSettings(enabled=True, interval_ms=60_000))

    assert env.dispatcher.timer_check_once() is not None
    assert env.dispatcher.timer_check_once() is None

    env.clock.now += 60_000
    env.agents.running = True
    assert env.dispatcher.timer_check_once() is None

    env.agents.running = False
    event = env.dispatcher.timer_check_once()
    assert event is not None and event.type == "timer_tick"
    assert env.dispatcher.status()["queue_length"] == 2


def test_timer_disabled_produces_nothing(env: Env) -> None:
    assert env.dispatcher.timer_check_once() is None


def test_board_moves_become_status_change_events(env: Env) -> None:
    stories = [Story(id="1-1-a", epic_id=1, title="A", status="backlog")]
    assert env.dispatcher.update_board(stories, [Epic(id=1, name="Core")]) == []

    moved = [Story(id="1-1-a", epic_id=1, title="A", status="ready-for-dev")]
    [event] = env.dispatcher.update_board(moved)

    assert event.payload == {
        "story_id": "1-1-a",
        "story_title": "A",
        "old_status": "backlog",
        "new_status": "ready-for-dev",
    }
    assert env.dispatcher.status()["queue_length"] == 1
    assert env.dispatcher.board.epics == [Epic(id=1, name="Core")]


def test_board_moves_ignored_when_status_trigger_off(tmp_path: Path) -> None:
    env = Env(tmp_path, auto_trigger_on_status_change=False)
    env.dispatcher.update_board([Story(id="1-1-a", epic_id=1, status="backlog")])

    assert env.dispatcher.update_board([Story(id="1-1-a", epic_id=1, status="done")]) == []
    assert env.dispatcher.board.stories[0].status == "done"


def test_directive_includes_board_and_git_context(env: Env) -> None:
    env.dispatcher.update_board([Story(id="1-1-a", epic_id=1, title="A", status="backlog")], [Epic(id=1)])
    env.dispatcher.trigger_manual()
    env.dispatcher.tick_once()

    env.agents.finish("oracle", "load", continuity_id="s1")

    [message] = env.agents.messages_to("oracle")
    assert '    - 1-1-a (branch: 1-1-a): "A"' in message
    assert "  Current branch: main" in message


def test_answer_is_queued_as_human_response_without_context(env: Env) -> None:
    question = env.questions.add(HumanQuestion.create("Which DB?", story_id="1-1-a"))
    env.dispatcher.update_board([Story(id="1-1-a", epic_id=1, title="A")])

    event = env.dispatcher.answer_question(question.id, "  Postgres ")

    assert event.type == "human_response"
    assert event.payload["answer"] == "Postgres"
    assert env.questions.get(question.id).status == "answered"

    env.dispatcher.tick_once()
    env.agents.finish("oracle", "load", continuity_id="s1")
    [message] = env.agents.messages_to("oracle")
    assert message.startswith('[EVENT: Human Response]\nQuestion: "Which DB?"\nAnswer: "Postgres"')
    assert "[Project State" not in message


def test_enable_and_disable_are_persisted(env: Env) -> None:
    status = env.dispatcher.control("disable")

    assert status["automation_enabled"] is False
    assert env.config.load()["orchestration"]["automation_enabled"] is False

    env.dispatcher.control("enable")
    assert env.config.load()["orchestration"]["automation_enabled"] is True
    assert env.of("orchestration.control") == [{"action": "disable"}, {"action": "enable"}]


def test_unknown_control_action_is_rejected(env: Env) -> None:
    with pytest.raises(ValueError, match="Unsupported control action"):
        env.dispatcher.control("explode")


def test_reload_settings_reads_config(env: Env) -> None:
    env.config.save({"orchestration": {"max_chain_depth": 4, "agent_ids": ["qa"], "automation_enabled": False}})

    settings = env.dispatcher.reload_settings()

    assert settings.max_chain_depth == 4
    assert settings.agent_ids == ("qa",)
    assert env.dispatcher.status()["automation_enabled"] is False


def test_worker_threads_start_and_stop(env: Env) -> None:
    env.dispatcher.ensure_worker()
    env.dispatcher.ensure_worker()

    env.dispatcher.shutdown(timeout=2.0)

    assert env.dispatcher._thread is None
