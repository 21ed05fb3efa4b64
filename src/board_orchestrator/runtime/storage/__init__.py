"""Persistence layer for orchestration runtime state."""

from .container import Container
from .file_repos import FileConfigRepository, FileEventRepository, FileQuestionRepository

__all__ = [
    "Container",
    "FileConfigRepository",
    "FileEventRepository",
    "FileQuestionRepository",
]
