"""Command line entry point: serve the API, run the dispatcher headless, or parse a reply."""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Optional, Sequence

from .runtime.orchestration import get_orchestration_settings, parse_orchestrator_response
from .runtime.project import create_project_runtime
from .runtime.storage import Container

logger = logging.getLogger(__name__)


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    from .server.api import create_app

    app = create_app(project_dir=args.project_dir.resolve())
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


def _run(args: argparse.Namespace) -> int:
    runtime = create_project_runtime(args.project_dir.resolve())
    stop = threading.Event()

    def _handle_signal(signum: int, _frame: object) -> None:
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    if args.enable:
        runtime.dispatcher.control("enable")
    if args.trigger:
        runtime.dispatcher.trigger_manual()
    runtime.start()
    logger.info("Dispatcher running for %s", runtime.container.project_dir)
    try:
        stop.wait()
    finally:
        runtime.shutdown()
    return 0


def _parse(args: argparse.Namespace) -> int:
    text = sys.stdin.read() if str(args.file) == "-" else args.file.read_text(encoding="utf-8")
    settings = get_orchestration_settings(config=Container(args.project_dir.resolve()).config.load())
    agent_ids: Sequence[str] = settings.agent_ids
    if args.agents:
        agent_ids = [a.strip() for a in args.agents.split(",") if a.strip()]
    story_context = {"story_id": args.story_id, "story_title": args.story_title} if args.story_id else None
    max_delegations = args.max_delegations
    if max_delegations is None:
        max_delegations = settings.max_delegations_per_response
    parsed = parse_orchestrator_response(
        text,
        agent_ids,
        story_context,
        max_delegations=max_delegations,
        self_ids=settings.self_ids,
    )
    print(json.dumps(parsed.to_dict(), indent=2))
    return 0


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="board-orchestrator",
        description="Board Orchestrator - agent process manager and autonomous orchestration loop",
    )
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory (default: current directory)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Serve the HTTP and websocket API")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8765, help="Port (default: 8765)")
    serve.set_defaults(handler=_serve)

    run = sub.add_parser("run", help="Run the orchestration dispatcher without the HTTP server")
    run.add_argument("--enable", action="store_true", help="Turn automation on before starting")
    run.add_argument("--trigger", action="store_true", help="Queue a manual trigger on start")
    run.set_defaults(handler=_run)

    parse = sub.add_parser("parse", help="Parse an orchestrator reply and print delegations as JSON")
    parse.add_argument("file", type=Path, help="Reply text file, or - for stdin")
    parse.add_argument("--agents", default=None, help="Comma separated agent ids (default: from project config)")
    parse.add_argument("--story-id", default=None, help="Story id attached to questions")
    parse.add_argument("--story-title", default=None, help="Story title attached to questions")
    parse.add_argument(
        "--max-delegations",
        type=int,
        default=None,
        help="Delegation cap (default: orchestration.max_delegations_per_response)",
    )
    parse.set_defaults(handler=_parse)

    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return int(args.handler(args))


if __name__ == "__main__":
    sys.exit(main())
