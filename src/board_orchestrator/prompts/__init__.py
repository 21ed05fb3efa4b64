"""Operating-instruction templates bundled with the package."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

PROMPTS_DIR = Path(__file__).parent


@lru_cache(maxsize=None)
def load(name: str) -> str:
    """Return the stripped text of the template at ``name``, read once per process.

    Raises:
        FileNotFoundError: If no template exists at ``name``.
    """
    path = PROMPTS_DIR / name
    if not path.is_file():
        raise FileNotFoundError(f"Unknown prompt template: {name}")
    return path.read_text(encoding="utf-8").strip()
