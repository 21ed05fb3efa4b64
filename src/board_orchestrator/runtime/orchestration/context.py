"""Project-context snapshot and directive composition for the orchestrator."""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

from ... import prompts
from ..domain.models import Epic, HumanQuestion, OrchestrationEvent, StatusAction, Story

logger = logging.getLogger(__name__)

_STORY_BRANCH = re.compile(r"^(\d+)-(\d+)-")
_EPIC_BRANCH_PREFIX = "epic-"
_ACTIVE_STATUSES = {"in-progress", "ready-for-dev"}
_FINISHED_STATUSES = {"done", "optional"}


@dataclass(frozen=True)
class BranchState:
    """Current VCS branch plus the branching policy, classified by name only."""
    current_branch: str
    base_branch: str = "main"
    enable_epic_branches: bool = False

    @property
    def is_on_base_branch(self) -> bool:
        return self.current_branch == self.base_branch

    @property
    def is_on_epic_branch(self) -> bool:
        return self.current_branch.startswith(_EPIC_BRANCH_PREFIX)

    @property
    def is_on_story_branch(self) -> bool:
        return bool(_STORY_BRANCH.match(self.current_branch)) and not self.is_on_epic_branch

    @property
    def current_epic_id(self) -> Optional[int]:
        if self.is_on_epic_branch:
            head = self.current_branch[len(_EPIC_BRANCH_PREFIX):].split("-")[0]
            return int(head) if head.isdigit() else None
        match = _STORY_BRANCH.match(self.current_branch)
        if match and self.is_on_story_branch:
            return int(match.group(1))
        return None

    @property
    def current_story_id(self) -> Optional[str]:
        return self.current_branch if self.is_on_story_branch else None


def read_branch_state(
    work_dir: Path | str,
    *,
    base_branch: str = "main",
    enable_epic_branches: bool = False,
) -> BranchState:
    """Read the checked-out branch of ``work_dir``; any failure reports the base branch."""
    current = ""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--abbrev-ref", "HEAD"],
            cwd=str(work_dir),
            capture_output=True,
            text=True,
        )
        if result.returncode == 0:
            current = result.stdout.strip()
    except OSError:
        logger.debug("Could not read current branch in %s", work_dir, exc_info=True)
    return BranchState(
        current_branch=current or base_branch,
        base_branch=base_branch,
        enable_epic_branches=enable_epic_branches,
    )


@dataclass(frozen=True)
class ContextLimits:
    max_stories_per_status: int = 5
    max_questions: int = 5
    max_events: int = 10


@dataclass(frozen=True)
class EventSummary:
    type: str
    timestamp: int
    summary: str


@dataclass(frozen=True)
class EpicCounts:
    total: int = 0
    in_progress: int = 0
    done: int = 0


@dataclass
class ProjectContext:
    """Everything the orchestrator is told about the board for one dispatch."""
    stories_by_status: dict[str, list[Story]] = field(default_factory=dict)
    epic_counts: EpicCounts = field(default_factory=EpicCounts)
    pending_questions: list[HumanQuestion] = field(default_factory=list)
    status_actions: dict[str, tuple[StatusAction, ...]] = field(default_factory=dict)
    recent_events: list[EventSummary] = field(default_factory=list)
    branch_state: Optional[BranchState] = None
    limits: ContextLimits = field(default_factory=ContextLimits)


def _truncate(text: str, limit: int) -> str:
    return f"{text[:limit]}..." if len(text) > limit else text


def summarize_event(event: OrchestrationEvent) -> str:
    """One-line human readable description of a processed event."""
    p = event.payload
    story = p.get("story_title") or p.get("story_id")
    if event.type == "status_change":
        return f'Story "{story}" moved from {p.get("old_status")} to {p.get("new_status")}'
    if event.type == "agent_completion":
        agent = p.get("agent_name") or p.get("agent_id") or "Unknown agent"
        story_info = f" ({story})" if p.get("story_id") else ""
        last = p.get("agent_last_message")
        preview = f': "{_truncate(str(last), 100)}"' if last else ""
        return f"{agent} completed{story_info}{preview}"
    if event.type == "manual_trigger":
        return "User requested workflow automation"
    if event.type == "timer_tick":
        return "Periodic autonomous check"
    if event.type == "human_response":
        answer = _truncate(str(p.get("answer") or ""), 50)
        return f'Human answered: "{answer}" for question about {story or "project"}'
    return f"Event: {event.type}"


def build_project_context(
    stories: Sequence[Story],
    epics: Sequence[Epic],
    pending_questions: Iterable[HumanQuestion] = (),
    selected_epic_id: Optional[int] = None,
    status_actions: Optional[Mapping[str, tuple[StatusAction, ...]]] = None,
    event_history: Sequence[OrchestrationEvent] = (),
    branch_state: Optional[BranchState] = None,
    limits: Optional[ContextLimits] = None,
) -> ProjectContext:
    """Build the snapshot fed to the orchestrator.

    The last entry of ``event_history`` is the event being dispatched and is
    left out of the recent-event summaries. Epic counts always consider every
    story, while the per-status listing honours ``selected_epic_id``.
    """
    limits = limits or ContextLimits()
    visible = [s for s in stories if selected_epic_id is None or s.epic_id == selected_epic_id]

    by_status: dict[str, list[Story]] = {}
    for story in visible:
        by_status.setdefault(story.status, []).append(story)

    in_progress = 0
    done = 0
    for epic in epics:
        epic_stories = [s for s in stories if s.epic_id == epic.id]
        if any(s.status in _ACTIVE_STATUSES for s in epic_stories):
            in_progress += 1
        if epic_stories and all(s.status in _FINISHED_STATUSES for s in epic_stories):
            done += 1

    previous = list(event_history)[:-1]
    previous = previous[-limits.max_events:] if limits.max_events > 0 else []
    recent = [
        EventSummary(type=event.type, timestamp=event.timestamp, summary=summarize_event(event))
        for event in previous
    ]

    return ProjectContext(
        stories_by_status=by_status,
        epic_counts=EpicCounts(total=len(epics), in_progress=in_progress, done=done),
        pending_questions=[q for q in pending_questions if q.status == "pending"],
        status_actions=dict(status_actions or {}),
        recent_events=recent,
        branch_state=branch_state,
        limits=limits,
    )


def _render_stories(context: ProjectContext) -> Optional[str]:
    cap = context.limits.max_stories_per_status
    sections = []
    for status, stories in context.stories_by_status.items():
        if not stories:
            continue
        lines = [f'    - {s.id} (branch: {s.id}): "{s.title}"' for s in stories[:cap]]
        if len(stories) > cap:
            lines.append(f"    ... and {len(stories) - cap} more")
        sections.append(f"  {status} ({len(stories)}):\n" + "\n".join(lines))
    if not sections:
        return None
    return "[Project State - Story ID = Branch Name]\n" + "\n".join(sections)


def _render_actions(context: ProjectContext) -> Optional[str]:
    sections = []
    for status, stories in context.stories_by_status.items():
        actions = context.status_actions.get(status)
        if not stories or not actions:
            continue
        lines = [
            f"    - {a.label}: @{a.agent_id} ({a.description}){' [PRIMARY]' if a.primary else ''}"
            for a in actions
        ]
        sections.append(f"  {status}:\n" + "\n".join(lines))
    if not sections:
        return None
    return "[Available Actions by Status]\n" + "\n".join(sections)


def _render_epics(context: ProjectContext) -> Optional[str]:
    counts = context.epic_counts
    if not counts.total:
        return None
    return f"[Epics]\n  Total: {counts.total}, in progress: {counts.in_progress}, done: {counts.done}"


def _render_questions(context: ProjectContext) -> Optional[str]:
    questions = context.pending_questions
    if not questions:
        return None
    lines = [
        f"  {idx}. {q.question}{f' ({q.story_id})' if q.story_id else ''}"
        for idx, q in enumerate(questions[: context.limits.max_questions], start=1)
    ]
    return f"[Pending Human Questions - {len(questions)} total]\n" + "\n".join(lines)


def _render_events(context: ProjectContext) -> Optional[str]:
    if not context.recent_events:
        return None
    lines = [f"  {idx}. [{e.type}] {e.summary}" for idx, e in enumerate(context.recent_events, start=1)]
    return "[Recent Events - for context]\n" + "\n".join(lines)


def _render_git(context: ProjectContext) -> Optional[str]:
    git = context.branch_state
    if git is None:
        return None
    info = [
        f"  Current branch: {git.current_branch}",
        f"  Base branch: {git.base_branch}",
        f"  Epic branches: {'ENABLED' if git.enable_epic_branches else 'DISABLED'}",
    ]
    if git.is_on_base_branch:
        info.append("  Status: On base branch")
    elif git.is_on_epic_branch and git.current_epic_id:
        info.append(f"  Status: On epic branch (Epic {git.current_epic_id})")
    elif git.is_on_story_branch and git.current_story_id:
        info.append(f"  Status: On story branch ({git.current_story_id})")

    if git.enable_epic_branches:
        workflow = [
            "  BRANCH WORKFLOW (Epic branches enabled):",
            "  1. Before starting story work: checkout/create story branch FROM the epic branch",
            "  2. Story branch format: {epicId}-{storyNum}-{slug} (e.g., 1-2-user-login)",
            "  3. Epic branch format: epic-{epicId}-{slug} (e.g., epic-1-authentication)",
            "  4. When delegating implementation: tell the agent to run git checkout -b {storyId} {epicBranch}",
        ]
    else:
        workflow = [
            "  BRANCH WORKFLOW (Epic branches disabled):",
            f"  1. Before starting story work: checkout/create story branch FROM {git.base_branch}",
            "  2. Story branch format: {epicId}-{storyNum}-{slug} (e.g., 1-2-user-login)",
            f"  3. When delegating implementation: tell the agent to run git checkout -b {{storyId}} {git.base_branch}",
        ]
    return "[Git State]\n" + "\n".join(info) + "\n\n" + "\n".join(workflow)


def render_context(context: ProjectContext) -> str:
    """Render the context sections, separated by blank lines."""
    parts = [
        _render_stories(context),
        _render_actions(context),
        _render_epics(context),
        _render_questions(context),
        _render_events(context),
        _render_git(context),
    ]
    return "\n\n".join(part for part in parts if part)


def _event_header(event: OrchestrationEvent) -> str:
    p: dict[str, Any] = event.payload
    story = p.get("story_title") or p.get("story_id")
    if event.type == "status_change":
        return (
            "[EVENT: Status Changed]\n"
            f'Story "{story}" moved from {p.get("old_status")} to {p.get("new_status")}.\n\n'
            "Take the appropriate next action based on the new status. "
            "Use the [Available Actions by Status] section to determine what to delegate."
        )
    if event.type == "agent_completion":
        agent = p.get("agent_name") or p.get("agent_id")
        exit_code = p.get("exit_code")
        outcome = "successfully" if exit_code == 0 else f"with exit code {exit_code}"
        story_ref = f" (Story: {story})" if p.get("story_id") else ""
        last = p.get("agent_last_message")
        last_block = f"\n\n[Agent's Last Message]\n{last}" if last else ""
        return (
            "[EVENT: Agent Completed]\n"
            f"{agent} finished {outcome}{story_ref}.{last_block}\n\n"
            "Take the next action based on the agent's output above:\n"
            "- If work completed successfully: move story to next status or delegate next task\n"
            "- If agent requested changes/fixes: delegate back to appropriate agent\n"
            "- If agent reported issues: address them by delegating to the right agent"
        )
    if event.type == "manual_trigger":
        return "[EVENT: Manual Trigger]\nUser requested workflow automation.\n\nWhat should happen?"
    if event.type == "timer_tick":
        return (
            "[EVENT: Periodic Check]\n"
            "This is a scheduled autonomous check. Review the project state and take action.\n\n"
            "Goals:\n"
            "- Move stories through the workflow autonomously\n"
            "- Delegate implementation tasks to appropriate agents\n"
            "- Perform quality gates (code review, testing) when stories are ready\n"
            "- Create/switch branches as needed for story work\n"
            "- Act decisively - do not wait for confirmation on routine workflow tasks"
        )
    if event.type == "human_response":
        related = f"\n(Related to: {story})" if p.get("story_id") else ""
        return (
            "[EVENT: Human Response]\n"
            f'Question: "{p.get("question")}"\n'
            f'Answer: "{p.get("answer")}"{related}\n\n'
            "The human has answered your question. Use this information to proceed with the workflow."
        )
    return "[EVENT: Unknown]\nAn event occurred."


def render_event_message(event: OrchestrationEvent, context: Optional[ProjectContext] = None) -> str:
    """Compose the directive sent to the orchestrator for ``event``.

    ``human_response`` directives carry the answer only, never the board context.
    """
    sections = [_event_header(event)]
    if context is not None and event.type != "human_response":
        rendered = render_context(context)
        if rendered:
            sections.append(rendered)
    sections.append(prompts.load("orchestrator/instructions.md"))
    return "\n\n".join(sections)
