from __future__ import annotations

import json
from pathlib import Path

import pytest

from board_orchestrator.cli import main, parse_args
from board_orchestrator.runtime.storage import Container


def test_parse_prints_delegations_as_json(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    reply = tmp_path / "reply.txt"
    reply.write_text("@dev Implement 1-2-login\n@oracle loop\n[QUESTION]: Which DB?\n", encoding="utf-8")

    code = main(
        [
            "--project-dir",
            str(tmp_path),
            "parse",
            str(reply),
            "--agents",
            "dev, sm",
            "--story-id",
            "1-2-login",
        ]
    )

    assert code == 0
    out = json.loads(capsys.readouterr().out)
    assert out["delegations"] == [{"target_agent_id": "dev", "message": "Implement 1-2-login", "story_id": None}]
    assert out["warnings"] == ["Ignored self-reference: @oracle loop"]
    assert out["questions"][0]["story_id"] == "1-2-login"


def test_parse_uses_configured_agents(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    reply = tmp_path / "reply.txt"
    reply.write_text("Delegate to architect: sketch the API", encoding="utf-8")

    main(["--project-dir", str(tmp_path), "parse", str(reply)])

    out = json.loads(capsys.readouterr().out)
    assert out["delegations"][0]["target_agent_id"] == "architect"


def test_serve_defaults() -> None:
    args = parse_args(["serve"])

    assert args.host == "127.0.0.1"
    assert args.port == 8765
    assert args.project_dir == Path(".")


def test_subcommand_is_required() -> None:
    with pytest.raises(SystemExit):
        parse_args([])


def test_parse_caps_delegations_from_config(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    Container(tmp_path).config.save({"orchestration": {"max_delegations_per_response": 1}})
    reply = tmp_path / "reply.txt"
    reply.write_text("@dev first\n@sm second\n", encoding="utf-8")

    main(["--project-dir", str(tmp_path), "parse", str(reply), "--agents", "dev,sm"])
    capped = json.loads(capsys.readouterr().out)
    main(["--project-dir", str(tmp_path), "parse", str(reply), "--agents", "dev,sm", "--max-delegations", "2"])
    explicit = json.loads(capsys.readouterr().out)

    assert [d["target_agent_id"] for d in capped["delegations"]] == ["dev"]
    assert capped["warnings"] == ["Too many delegations (2), limited to 1"]
    assert len(explicit["delegations"]) == 2
