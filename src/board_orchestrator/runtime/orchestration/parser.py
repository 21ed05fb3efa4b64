"""Extract delegations and human questions from an orchestrator reply."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Iterable, Optional

from ..domain.models import DelegationCommand
from .settings import DEFAULT_SELF_IDS

_AT_PATTERN = re.compile(r"^@(\w+)\s+(.+)$", re.MULTILINE)
_DELEGATE_PATTERN = re.compile(r"delegate\s+to\s+(\w+):\s*(.+)", re.IGNORECASE)
_QUESTION_PATTERN = re.compile(r"\[QUESTION(?:\s+for\s+([^\]]+))?\]:\s*(.+)", re.IGNORECASE)
_BLANK_RUN = re.compile(r"\n{3,}")


@dataclass(frozen=True)
class ExtractedQuestion:
    question: str
    story_id: Optional[str] = None
    story_title: Optional[str] = None


@dataclass
class ParsedResponse:
    """Structured view of one orchestrator reply.

    ``clean_content`` is the reply with accepted delegations and every question
    removed; rejected directives stay in place so the human still sees them.
    """
    delegations: list[DelegationCommand] = field(default_factory=list)
    questions: list[ExtractedQuestion] = field(default_factory=list)
    clean_content: str = ""
    warnings: list[str] = field(default_factory=list)

    @property
    def has_delegation(self) -> bool:
        return bool(self.delegations)

    @property
    def has_questions(self) -> bool:
        return bool(self.questions)

    def to_dict(self) -> dict[str, object]:
        return {
            "has_delegation": self.has_delegation,
            "delegations": [d.to_dict() for d in self.delegations],
            "has_questions": self.has_questions,
            "questions": [asdict(q) for q in self.questions],
            "clean_content": self.clean_content,
            "warnings": list(self.warnings),
        }


def parse_orchestrator_response(
    response: str,
    valid_agent_ids: Iterable[str],
    story_context: Optional[dict[str, Optional[str]]] = None,
    *,
    max_delegations: int = 3,
    self_ids: Iterable[str] = DEFAULT_SELF_IDS,
) -> ParsedResponse:
    """Parse an orchestrator reply.

    Two delegation syntaxes are recognized: a line starting with
    ``@agent message`` and ``delegate to agent: message`` anywhere in the text.
    Agent ids match case-insensitively and are reported in their canonical
    casing from ``valid_agent_ids``. ``[QUESTION]: text`` and
    ``[QUESTION for ref]: text`` become human questions; an explicit ``ref``
    overrides the ambient story id.

    Args:
        response (str): Full reply text.
        valid_agent_ids (Iterable[str]): Agents that may receive delegations.
        story_context (Optional[dict[str, Optional[str]]]): ``story_id`` and
            ``story_title`` attached to questions without an explicit reference.
        max_delegations (int): Delegations kept; the excess is dropped with a warning.
        self_ids (Iterable[str]): Ids that refer to the orchestrator itself.

    Returns:
        ParsedResponse: Delegations, questions, cleaned text and warnings.
    """
    canonical = {}
    for agent_id in valid_agent_ids:
        canonical.setdefault(agent_id.lower(), agent_id)
    own_ids = {value.lower() for value in self_ids}
    context = story_context or {}

    delegations: list[DelegationCommand] = []
    questions: list[ExtractedQuestion] = []
    warnings: list[str] = []
    clean = response

    for pattern, dedupe in ((_AT_PATTERN, False), (_DELEGATE_PATTERN, True)):
        for match in pattern.finditer(response):
            full, raw_id, raw_message = match.group(0), match.group(1), match.group(2)
            key = raw_id.lower()
            if key in own_ids:
                warnings.append(f"Ignored self-reference: {full}")
                continue
            target = canonical.get(key)
            if target is None:
                warnings.append(f'Unknown agent "{raw_id}" in: {full}')
                continue
            message = raw_message.strip()
            if dedupe and any(
                d.target_agent_id.lower() == key and d.message.lower() == message.lower() for d in delegations
            ):
                continue
            delegations.append(DelegationCommand(target_agent_id=target, message=message))
            clean = clean.replace(full, "", 1).strip()

    if len(delegations) > max_delegations:
        warnings.append(f"Too many delegations ({len(delegations)}), limited to {max_delegations}")
        del delegations[max_delegations:]

    for match in _QUESTION_PATTERN.finditer(response):
        full, ref, text = match.group(0), match.group(1), match.group(2)
        questions.append(
            ExtractedQuestion(
                question=text.strip(),
                story_id=(ref.strip() if ref and ref.strip() else None) or context.get("story_id"),
                story_title=context.get("story_title"),
            )
        )
        clean = clean.replace(full, "", 1).strip()

    return ParsedResponse(
        delegations=delegations,
        questions=questions,
        clean_content=_BLANK_RUN.sub("\n\n", clean).strip(),
        warnings=warnings,
    )
