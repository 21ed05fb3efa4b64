"""Shared dependency context for runtime API route registration."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional

from ..project import ProjectRuntime


@dataclass(frozen=True)
class RouteDeps:
    """Route registration dependency bundle."""

    resolve_runtime: Callable[[Optional[str]], ProjectRuntime]
