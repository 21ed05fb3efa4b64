from __future__ import annotations

from board_orchestrator.runtime.orchestration.parser import parse_orchestrator_response

AGENTS = ["dev", "sm", "tea"]


def test_parses_both_syntaxes_and_reports_rejected_targets() -> None:
    response = (
        "Plan:\n"
        "@dev Implement story 1-2-login\n"
        "@ghost do something\n"
        "@oracle loop\n"
        "Delegate to SM: create story 1-3\n"
        "\n\n\n"
        "Done."
    )

    parsed = parse_orchestrator_response(response, AGENTS)

    assert [(d.target_agent_id, d.message) for d in parsed.delegations] == [
        ("dev", "Implement story 1-2-login"),
        ("sm", "create story 1-3"),
    ]
    assert parsed.warnings == [
        'Unknown agent "ghost" in: @ghost do something',
        "Ignored self-reference: @oracle loop",
    ]
    assert parsed.clean_content == "Plan:\n\n@ghost do something\n@oracle loop\n\nDone."
    assert parsed.has_delegation
    assert not parsed.has_questions


def test_agent_ids_match_case_insensitively_with_canonical_casing() -> None:
    parsed = parse_orchestrator_response("@DEV go now", ["Dev"])

    assert parsed.delegations[0].target_agent_id == "Dev"
    assert parsed.delegations[0].message == "go now"
    assert parsed.clean_content == ""


def test_at_syntax_is_line_anchored() -> None:
    parsed = parse_orchestrator_response("ask @dev to look at it", AGENTS)

    assert parsed.delegations == []
    assert parsed.warnings == []


def test_duplicate_from_second_syntax_is_dropped_silently() -> None:
    response = "@dev fix it\nplease delegate to DEV: Fix It"

    parsed = parse_orchestrator_response(response, AGENTS)

    assert len(parsed.delegations) == 1
    assert parsed.warnings == []
    assert parsed.clean_content == "please delegate to DEV: Fix It"


def test_unknown_target_in_delegate_syntax_warns() -> None:
    parsed = parse_orchestrator_response("delegate to qa: run the suite", AGENTS)

    assert parsed.delegations == []
    assert parsed.warnings == ['Unknown agent "qa" in: delegate to qa: run the suite']
    assert parsed.clean_content == "delegate to qa: run the suite"


def test_delegations_are_capped_with_warning() -> None:
    response = "@dev one\n@sm two\n@tea three\n@dev four"

    parsed = parse_orchestrator_response(response, AGENTS)

    assert [d.message for d in parsed.delegations] == ["one", "two", "three"]
    assert parsed.warnings == ["Too many delegations (4), limited to 3"]


def test_delegation_cap_is_configurable() -> None:
    response = "\n".join(f"@dev task {n}" for n in range(6))

    parsed = parse_orchestrator_response(response, AGENTS, max_delegations=5)

    assert len(parsed.delegations) == 5
    assert parsed.warnings == ["Too many delegations (6), limited to 5"]


def test_configured_orchestrator_id_counts_as_self_reference() -> None:
    parsed = parse_orchestrator_response(
        "@boss handle it",
        AGENTS + ["boss"],
        self_ids={"orchestrator", "oracle", "boss"},
    )

    assert parsed.delegations == []
    assert parsed.warnings == ["Ignored self-reference: @boss handle it"]


def test_questions_use_explicit_reference_over_story_context() -> None:
    response = "[QUESTION]: Which database?\n[question for 2-1-api]: Which auth provider?"

    parsed = parse_orchestrator_response(
        response,
        AGENTS,
        {"story_id": "1-1-login", "story_title": "Login"},
    )

    assert [(q.question, q.story_id, q.story_title) for q in parsed.questions] == [
        ("Which database?", "1-1-login", "Login"),
        ("Which auth provider?", "2-1-api", "Login"),
    ]
    assert parsed.has_questions
    assert parsed.clean_content == ""


def test_questions_without_context_have_no_story() -> None:
    parsed = parse_orchestrator_response("Status ok.\n[QUESTION]: Ship it?", AGENTS)

    assert parsed.questions[0].story_id is None
    assert parsed.clean_content == "Status ok."


def test_empty_reply() -> None:
    parsed = parse_orchestrator_response("", AGENTS)

    assert parsed.to_dict() == {
        "has_delegation": False,
        "delegations": [],
        "has_questions": False,
        "questions": [],
        "clean_content": "",
        "warnings": [],
    }
