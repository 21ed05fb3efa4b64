"""Typed orchestration governors resolved from runtime config."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from ..domain.models import StatusAction, normalize_status

MIN_TIMER_INTERVAL_MS = 60_000
MAX_TIMER_INTERVAL_MS = 1_800_000
DEFAULT_SELF_IDS = frozenset({"orchestrator", "oracle"})


@dataclass(frozen=True)
class TimerSettings:
    """Periodic ``timer_tick`` production.

    Attributes:
        enabled: Whether the timer loop may enqueue events.
        interval_ms: Minimum spacing between two ticks, clamped to 1-30 minutes.
        check_ms: How often the timer loop wakes up to evaluate ``interval_ms``.
    """
    enabled: bool = False
    interval_ms: int = 300_000
    check_ms: int = 30_000


@dataclass(frozen=True)
class OrchestrationSettings:
    """Every tunable that bounds the autonomous dispatch loop.

    Attributes:
        orchestrator_agent_id: Slot that receives directives; empty disables dispatch.
        agent_ids: Slots the orchestrator may delegate to.
        automation_enabled: Master switch for the poll loop.
        auto_trigger_on_status_change: Enqueue ``status_change`` on board moves.
        auto_trigger_on_agent_complete: Enqueue ``agent_completion`` after delegated turns.
        debounce_ms: Minimum time between two dispatches.
        max_chain_depth: Consecutive dispatches allowed without an idle period.
        max_delegations_per_response: Cap applied by the response parser.
        queue_poll_ms: Poll loop period.
        idle_reset_ms: Quiet period after which chain depth resets to zero.
        max_queue_size: Event queue bound; the oldest event is dropped on overflow.
        event_history_size: Processed events kept for context.
        max_pending_questions: Pending human questions kept before the oldest is dismissed.
        question_max_age_ms: Age after which resolved questions are purged.
        status_actions: Next steps offered per story status.
        agent_names: Display names per agent id.
        base_branch: Branch stories are cut from when epic branches are off.
        enable_epic_branches: Whether stories branch from an epic branch.
        timer: Periodic trigger settings.
    """
    orchestrator_agent_id: str = "oracle"
    agent_ids: tuple[str, ...] = ()
    automation_enabled: bool = False
    auto_trigger_on_status_change: bool = True
    auto_trigger_on_agent_complete: bool = True
    debounce_ms: int = 2_000
    max_chain_depth: int = 10
    max_delegations_per_response: int = 3
    queue_poll_ms: int = 500
    idle_reset_ms: int = 5_000
    max_queue_size: int = 50
    event_history_size: int = 10
    max_pending_questions: int = 20
    question_max_age_ms: int = 86_400_000
    status_actions: dict[str, tuple[StatusAction, ...]] = field(default_factory=dict)
    agent_names: dict[str, str] = field(default_factory=dict)
    base_branch: str = "main"
    enable_epic_branches: bool = False
    timer: TimerSettings = field(default_factory=TimerSettings)

    @property
    def self_ids(self) -> frozenset[str]:
        """Ids the orchestrator must never delegate to."""
        ids = set(DEFAULT_SELF_IDS)
        if self.orchestrator_agent_id:
            ids.add(self.orchestrator_agent_id.lower())
        return frozenset(ids)

    def with_overrides(self, **changes: Any) -> "OrchestrationSettings":
        return replace(self, **changes)


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_int(value: Any, default: int, *, minimum: int = 0) -> int:
    if isinstance(value, bool):
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed >= minimum else default


def _as_bool(value: Any, default: bool) -> bool:
    return value if isinstance(value, bool) else default


def clamp_timer_interval(value: int) -> int:
    return max(MIN_TIMER_INTERVAL_MS, min(MAX_TIMER_INTERVAL_MS, value))


def _parse_status_actions(raw: Any) -> dict[str, tuple[StatusAction, ...]]:
    out: dict[str, tuple[StatusAction, ...]] = {}
    for status, items in _as_dict(raw).items():
        if not isinstance(items, list):
            continue
        actions = tuple(
            StatusAction.from_dict(item)
            for item in items
            if isinstance(item, dict) and item.get("agent_id") and item.get("label")
        )
        if actions:
            out[normalize_status(str(status))] = actions
    return out


def get_orchestration_settings(*, config: dict[str, Any]) -> OrchestrationSettings:
    """Resolve orchestration settings from the ``orchestration`` and ``git`` sections.

    Invalid values fall back to defaults rather than raising.

    Args:
        config (dict[str, Any]): Parsed runtime configuration dictionary.

    Returns:
        OrchestrationSettings: Normalized governors and board hints.
    """
    defaults = OrchestrationSettings()
    cfg = _as_dict(config.get("orchestration"))
    git_cfg = _as_dict(config.get("git"))
    timer_cfg = _as_dict(cfg.get("timer"))

    raw_ids = cfg.get("agent_ids")
    agent_ids = tuple(str(a).strip() for a in raw_ids if str(a).strip()) if isinstance(raw_ids, list) else ()
    agent_names = {str(k): str(v) for k, v in _as_dict(cfg.get("agent_names")).items() if v}

    timer = TimerSettings(
        enabled=_as_bool(timer_cfg.get("enabled"), False),
        interval_ms=clamp_timer_interval(_as_int(timer_cfg.get("interval_ms"), TimerSettings.interval_ms)),
        check_ms=_as_int(timer_cfg.get("check_ms"), TimerSettings.check_ms, minimum=1),
    )

    orchestrator_id = cfg.get("orchestrator_agent_id", defaults.orchestrator_agent_id)
    return OrchestrationSettings(
        orchestrator_agent_id=str(orchestrator_id or "").strip(),
        agent_ids=agent_ids,
        automation_enabled=_as_bool(cfg.get("automation_enabled"), defaults.automation_enabled),
        auto_trigger_on_status_change=_as_bool(
            cfg.get("auto_trigger_on_status_change"), defaults.auto_trigger_on_status_change
        ),
        auto_trigger_on_agent_complete=_as_bool(
            cfg.get("auto_trigger_on_agent_complete"), defaults.auto_trigger_on_agent_complete
        ),
        debounce_ms=_as_int(cfg.get("debounce_ms"), defaults.debounce_ms),
        max_chain_depth=_as_int(cfg.get("max_chain_depth"), defaults.max_chain_depth, minimum=1),
        max_delegations_per_response=_as_int(
            cfg.get("max_delegations_per_response"), defaults.max_delegations_per_response, minimum=1
        ),
        queue_poll_ms=_as_int(cfg.get("queue_poll_ms"), defaults.queue_poll_ms, minimum=1),
        idle_reset_ms=_as_int(cfg.get("idle_reset_ms"), defaults.idle_reset_ms),
        max_queue_size=_as_int(cfg.get("max_queue_size"), defaults.max_queue_size, minimum=1),
        event_history_size=_as_int(cfg.get("event_history_size"), defaults.event_history_size, minimum=1),
        max_pending_questions=_as_int(cfg.get("max_pending_questions"), defaults.max_pending_questions, minimum=1),
        question_max_age_ms=_as_int(cfg.get("question_max_age_ms"), defaults.question_max_age_ms),
        status_actions=_parse_status_actions(cfg.get("status_actions")),
        agent_names=agent_names,
        base_branch=str(git_cfg.get("base_branch") or defaults.base_branch).strip() or defaults.base_branch,
        enable_epic_branches=_as_bool(git_cfg.get("enable_epic_branches"), defaults.enable_epic_branches),
        timer=timer,
    )
