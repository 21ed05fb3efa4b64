from __future__ import annotations

from pathlib import Path

from .file_repos import FileConfigRepository

STATE_DIR_NAME = ".board_orchestrator"

STATE_FILES = {
    "questions": "questions.yaml",
    "events": "events.jsonl",
    "config": "config.yaml",
}

DEFAULT_AGENTS_CONFIG = {
    "command": "claude",
    "extra_flags": ["--dangerously-skip-permissions"],
    "project_type": "bmm",
}

DEFAULT_ORCHESTRATION_CONFIG = {
    "orchestrator_agent_id": "oracle",
    "agent_ids": ["analyst", "pm", "architect", "sm", "dev", "tea", "ux-designer"],
    "automation_enabled": False,
    "timer": {"enabled": False, "interval_ms": 300000},
}


def _ensure_gitignored(project_dir: Path) -> None:
    """Add the runtime state directory to the project's .gitignore if not already present."""
    gitignore = project_dir / ".gitignore"
    entry = f"{STATE_DIR_NAME}/"
    if gitignore.exists():
        content = gitignore.read_text(encoding="utf-8")
        existing = {line.strip() for line in content.splitlines()}
        if entry in existing or STATE_DIR_NAME in existing:
            return
        if content and not content.endswith("\n"):
            content += "\n"
        content += f"\n# Board orchestrator runtime data\n{entry}\n"
        gitignore.write_text(content, encoding="utf-8")
    else:
        gitignore.write_text(f"# Board orchestrator runtime data\n{entry}\n", encoding="utf-8")


def ensure_state_root(project_dir: Path) -> Path:
    state_root = project_dir / STATE_DIR_NAME
    state_root.mkdir(parents=True, exist_ok=True)
    _ensure_gitignored(project_dir)

    for file_name in STATE_FILES.values():
        target = state_root / file_name
        if file_name.endswith(".yaml") and not target.exists():
            target.write_text("version: 1\n", encoding="utf-8")
        if file_name.endswith(".jsonl") and not target.exists():
            target.touch()

    config_repo = FileConfigRepository(state_root / "config.yaml", state_root / "config.lock")
    config = config_repo.load()
    config.pop("version", None)
    config["schema_version"] = 1
    config.setdefault("agents", dict(DEFAULT_AGENTS_CONFIG))
    config.setdefault("orchestration", dict(DEFAULT_ORCHESTRATION_CONFIG))
    config.setdefault("git", {"base_branch": "main", "enable_epic_branches": False})
    config_repo.save(config)

    return state_root
