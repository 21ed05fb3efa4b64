"""Per-project runtime wiring shared by the HTTP server and the CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .agents import AgentProcessManager, create_agent_manager
from .events import EventBus
from .orchestration import OrchestrationDispatcher, create_dispatcher
from .storage import Container

logger = logging.getLogger(__name__)


@dataclass
class ProjectRuntime:
    """Everything bound to one project directory.

    The manager and the dispatcher share a single bus so agent events reach
    the dispatcher's reply and completion handling.
    """
    container: Container
    bus: EventBus
    agents: AgentProcessManager
    dispatcher: OrchestrationDispatcher

    def start(self) -> None:
        self.dispatcher.ensure_worker()

    def shutdown(self, *, timeout: float = 5.0) -> None:
        """Stop the dispatch loops and terminate every agent process."""
        self.dispatcher.shutdown(timeout=timeout)
        self.agents.kill_all()
        logger.info("Runtime for %s stopped", self.container.project_dir)


def create_project_runtime(project_dir: Path, *, interactive: bool = False) -> ProjectRuntime:
    container = Container(project_dir)
    bus = EventBus(container.events, container.project_id)
    agents = create_agent_manager(container, bus, interactive=interactive)
    dispatcher = create_dispatcher(container, agents, bus)
    return ProjectRuntime(container=container, bus=bus, agents=agents, dispatcher=dispatcher)
