"""Dependency container for runtime repositories."""

from __future__ import annotations

from pathlib import Path

from .bootstrap import ensure_state_root
from .file_repos import FileConfigRepository, FileEventRepository, FileQuestionRepository


class Container:
    """Wire file-backed repositories and project-scoped runtime settings."""
    def __init__(self, project_dir: Path) -> None:
        """Initialize the Container.

        Args:
            project_dir (Path): Project dir for this call.
        """
        self.project_dir = project_dir.resolve()
        self.state_root = ensure_state_root(self.project_dir)

        self.questions = FileQuestionRepository(self.state_root / "questions.yaml", self.state_root / "questions.lock")
        self.events = FileEventRepository(self.state_root / "events.jsonl", self.state_root / "events.lock")
        self.config = FileConfigRepository(self.state_root / "config.yaml", self.state_root / "config.lock")

    @property
    def project_id(self) -> str:
        """Expose the stable project identifier derived from directory name."""
        return self.project_dir.name
