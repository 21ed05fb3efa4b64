"""Per-slot agent process lifecycle: spawn, replace, cancel and stream decoding."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Literal, Optional

from ...agents.config import AgentToolSpec, build_args, build_env, get_agent_tool_config, render_load_prompt
from ..domain.models import AgentSlot, now_iso, now_ms
from ..events.bus import EventBus
from ..storage.container import Container
from .protocol import StreamDecoder, StreamRecord

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 8192
_CHANNEL = "agents"

TurnKind = Literal["load", "message"]


@dataclass
class _LiveAgent:
    agent_id: str
    proc: subprocess.Popen[bytes]
    kind: TurnKind
    started_at: str
    turn_id: str = field(default_factory=lambda: f"turn-{uuid.uuid4().hex[:10]}")
    decoder: StreamDecoder = field(default_factory=StreamDecoder)
    continuity_id: Optional[str] = None
    superseded: bool = False
    cancelled: bool = False


class AgentProcessManager:
    """Own at most one live CLI process per named agent slot.

    Every turn is a fresh process; conversational continuity is carried only by
    the ``--resume`` session id captured from the previous turn's ``result``
    record. Starting a turn for a slot terminates and deregisters the slot's
    previous process under the manager lock before the new one is registered,
    and terminal handlers re-check the registration so a late exit from a
    replaced process never touches the new one.

    Events are emitted on the ``agents`` channel and never while the manager
    lock is held. Each turn gets a ``turn_id`` that every event of the turn
    carries; ``agent.started`` is emitted on the caller's thread before the
    start call returns.
    """

    def __init__(
        self,
        bus: EventBus,
        *,
        tool: Optional[AgentToolSpec] = None,
        tool_loader: Optional[Callable[[], AgentToolSpec]] = None,
        interactive: bool = False,
        popen: Callable[..., subprocess.Popen[bytes]] = subprocess.Popen,
    ) -> None:
        """Initialize the AgentProcessManager.

        Args:
            bus (EventBus): Bus receiving output/exit/error events.
            tool (Optional[AgentToolSpec]): Fixed tool settings.
            tool_loader (Optional[Callable[[], AgentToolSpec]]): Resolves tool
                settings per turn so config edits apply without a restart.
            interactive (bool): Keep a stdin pipe open for ``send_input``.
            popen: Process factory.
        """
        self._bus = bus
        self._tool_loader = tool_loader or (lambda: tool or AgentToolSpec())
        self._interactive = interactive
        self._popen = popen
        self._lock = threading.RLock()
        self._live: dict[str, _LiveAgent] = {}
        self._continuity: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Public operations

    def load_agent(
        self,
        agent_id: str,
        work_dir: Path | str,
        prompt: str = "",
        continuity_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """Start a turn that loads ``agent_id``'s persona.

        An empty ``prompt`` renders the configured agent-load command.
        """
        tool = self._tool_loader()
        text = prompt or render_load_prompt(tool, agent_id)
        return self._start(agent_id, work_dir, text, continuity_id, kind="load", tool=tool)

    def send_message(
        self,
        agent_id: str,
        work_dir: Path | str,
        message: str,
        continuity_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """Start a turn delivering ``message``, resuming ``continuity_id`` when given."""
        return self._start(agent_id, work_dir, message, continuity_id, kind="message", tool=self._tool_loader())

    def cancel_message(self, agent_id: str) -> bool:
        """Signal the slot's process to terminate and deregister it.

        The exit is reported later by the reader thread with ``cancelled=True``.

        Returns:
            bool: ``False`` when no process is tracked for ``agent_id``.
        """
        with self._lock:
            live = self._live.pop(agent_id, None)
            if live is None:
                logger.info("No running process to cancel for agent %s", agent_id)
                return False
            live.cancelled = True
            self._terminate(live)
        logger.info("Cancelled process for agent %s (pid %s)", agent_id, live.proc.pid)
        return True

    def is_running(self, agent_id: str) -> bool:
        with self._lock:
            return agent_id in self._live

    def any_running(self) -> bool:
        with self._lock:
            return bool(self._live)

    def send_input(self, agent_id: str, text: str) -> bool:
        """Best-effort write to the slot's stdin; failures return ``False``."""
        with self._lock:
            live = self._live.get(agent_id)
        if live is None or live.proc.stdin is None:
            return False
        try:
            live.proc.stdin.write(text.encode("utf-8"))
            live.proc.stdin.flush()
        except (OSError, ValueError):
            logger.debug("Failed to write input for agent %s", agent_id, exc_info=True)
            return False
        return True

    def continuity_id(self, agent_id: str) -> Optional[str]:
        with self._lock:
            return self._continuity.get(agent_id)

    def set_continuity(self, agent_id: str, continuity_id: Optional[str]) -> None:
        with self._lock:
            if continuity_id:
                self._continuity[agent_id] = continuity_id
            else:
                self._continuity.pop(agent_id, None)

    def clear_continuity(self, agent_id: str) -> None:
        self.set_continuity(agent_id, None)

    def list_slots(self) -> list[AgentSlot]:
        """Snapshot every slot that is running or has a continuity id."""
        with self._lock:
            ids = sorted(set(self._live) | set(self._continuity))
            slots = []
            for agent_id in ids:
                live = self._live.get(agent_id)
                slots.append(
                    AgentSlot(
                        agent_id=agent_id,
                        running=live is not None,
                        pid=live.proc.pid if live else None,
                        started_at=live.started_at if live else None,
                        continuity_id=self._continuity.get(agent_id),
                    )
                )
            return slots

    def kill_all(self) -> None:
        """Terminate every tracked process; their exits report ``cancelled=True``."""
        with self._lock:
            live_agents = list(self._live.values())
            self._live.clear()
            for live in live_agents:
                live.cancelled = True
                self._terminate(live)

    # ------------------------------------------------------------------
    # Spawning

    def _start(
        self,
        agent_id: str,
        work_dir: Path | str,
        prompt: str,
        continuity_id: Optional[str],
        *,
        kind: TurnKind,
        tool: AgentToolSpec,
    ) -> dict[str, Any]:
        argv = build_args(tool, prompt, continuity_id)
        env = build_env(tool)
        error: Optional[str] = None
        with self._lock:
            previous = self._live.pop(agent_id, None)
            if previous is not None:
                previous.superseded = True
                self._terminate(previous)
                logger.info("Replaced running process for agent %s (pid %s)", agent_id, previous.proc.pid)
            try:
                proc = self._popen(
                    argv,
                    cwd=str(work_dir),
                    stdin=subprocess.PIPE if self._interactive else subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    env=env,
                    start_new_session=True,
                )
            except (OSError, ValueError) as exc:
                error = f"Failed to start {argv[0]}: {exc}"
            else:
                live = _LiveAgent(agent_id=agent_id, proc=proc, kind=kind, started_at=now_iso())
                self._live[agent_id] = live

        if error is not None:
            logger.warning("Agent %s spawn failed: %s", agent_id, error)
            self._emit("agent.error", agent_id, {"agent_id": agent_id, "message": error, "timestamp": now_ms()})
            return {"success": False, "error": error}

        logger.info(
            "Started %s turn for agent %s (pid %s, resume=%s) in %s",
            kind,
            agent_id,
            live.proc.pid,
            continuity_id or "none",
            work_dir,
        )
        self._emit(
            "agent.started",
            agent_id,
            {
                "agent_id": agent_id,
                "turn_id": live.turn_id,
                "pid": live.proc.pid,
                "kind": kind,
                "resumed": bool(continuity_id),
            },
        )
        thread = threading.Thread(
            target=self._watch,
            args=(live,),
            daemon=True,
            name=f"agent-{agent_id}",
        )
        thread.start()
        return {"success": True, "turn_id": live.turn_id}

    def _terminate(self, live: _LiveAgent) -> None:
        try:
            os.killpg(live.proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        except OSError:
            try:
                live.proc.terminate()
            except OSError:
                logger.debug("Failed to terminate agent %s", live.agent_id, exc_info=True)

    # ------------------------------------------------------------------
    # Stream handling (reader threads)

    def _watch(self, live: _LiveAgent) -> None:
        stderr_thread = threading.Thread(
            target=self._pump_stderr,
            args=(live,),
            daemon=True,
            name=f"agent-{live.agent_id}-stderr",
        )
        stderr_thread.start()
        try:
            self._pump_stdout(live)
            stderr_thread.join()
            returncode = live.proc.wait()
        except Exception as exc:
            logger.debug("Reader for agent %s failed", live.agent_id, exc_info=True)
            self._on_error(live, str(exc) or exc.__class__.__name__)
            return
        self._on_close(live, returncode)

    def _pump_stdout(self, live: _LiveAgent) -> None:
        stream = live.proc.stdout
        if stream is None:
            return
        while True:
            chunk = stream.read1(_READ_CHUNK_BYTES)
            if not chunk:
                break
            for record in live.decoder.feed(chunk):
                self._handle_record(live, record)

    def _pump_stderr(self, live: _LiveAgent) -> None:
        stream = live.proc.stderr
        if stream is None:
            return
        try:
            while True:
                chunk = stream.read1(_READ_CHUNK_BYTES)
                if not chunk:
                    break
                if live.superseded or live.cancelled:
                    continue
                self._emit_output(live, "stderr", chunk.decode("utf-8", errors="replace"), None)
        except (OSError, ValueError):
            logger.debug("stderr reader for agent %s stopped", live.agent_id, exc_info=True)

    def _handle_record(self, live: _LiveAgent, record: StreamRecord) -> None:
        if record.continuity_id:
            live.continuity_id = record.continuity_id
            logger.debug("Agent %s reported session %s", live.agent_id, record.continuity_id)
        if live.superseded or live.cancelled:
            return
        data = record.data if isinstance(record.data, dict) else None
        self._emit_output(live, "stdout", record.text, data)

    def _emit_output(self, live: _LiveAgent, channel: str, text: str, record: Optional[dict[str, Any]]) -> None:
        self._emit(
            "agent.output",
            live.agent_id,
            {
                "agent_id": live.agent_id,
                "turn_id": live.turn_id,
                "channel": channel,
                "text": text,
                "record": record,
                "timestamp": now_ms(),
            },
            persist=False,
        )

    # ------------------------------------------------------------------
    # Terminal events

    def _claim_terminal(self, live: _LiveAgent) -> bool:
        """Deregister ``live`` if it is still the slot's handle.

        Returns ``False`` when a different process now owns the slot; the caller
        must then leave all state untouched.
        """
        with self._lock:
            current = self._live.get(live.agent_id)
            if current is live:
                del self._live[live.agent_id]
                if live.continuity_id:
                    self._continuity[live.agent_id] = live.continuity_id
                return True
            if current is None and live.cancelled and not live.superseded:
                return True
            return False

    def _on_close(self, live: _LiveAgent, returncode: int) -> None:
        tail = live.decoder.flush()
        if tail is not None:
            self._handle_record(live, tail)
        if not self._claim_terminal(live):
            logger.debug("Ignoring exit of superseded process for agent %s (pid %s)", live.agent_id, live.proc.pid)
            return
        exit_code = returncode if returncode >= 0 else None
        signal_name: Optional[str] = None
        if returncode < 0:
            try:
                signal_name = signal.Signals(-returncode).name
            except ValueError:
                signal_name = str(-returncode)
        logger.info(
            "Agent %s exited (code=%s, signal=%s, session=%s, cancelled=%s)",
            live.agent_id,
            exit_code,
            signal_name,
            live.continuity_id,
            live.cancelled,
        )
        self._emit(
            "agent.exit",
            live.agent_id,
            {
                "agent_id": live.agent_id,
                "turn_id": live.turn_id,
                "exit_code": exit_code,
                "signal": signal_name,
                "continuity_id": live.continuity_id,
                "cancelled": live.cancelled,
                "kind": live.kind,
                "timestamp": now_ms(),
            },
        )

    def _on_error(self, live: _LiveAgent, message: str) -> None:
        if not self._claim_terminal(live):
            logger.debug("Ignoring error from superseded process for agent %s", live.agent_id)
            return
        self._emit(
            "agent.error",
            live.agent_id,
            {"agent_id": live.agent_id, "turn_id": live.turn_id, "message": message, "timestamp": now_ms()},
        )

    def _emit(self, event_type: str, agent_id: str, payload: dict[str, Any], *, persist: bool = True) -> None:
        self._bus.emit(channel=_CHANNEL, event_type=event_type, entity_id=agent_id, payload=payload, persist=persist)


def create_agent_manager(container: Container, bus: EventBus, *, interactive: bool = False) -> AgentProcessManager:
    """Build a manager whose tool settings are re-read from project config every turn."""
    return AgentProcessManager(
        bus,
        tool_loader=lambda: get_agent_tool_config(config=container.config.load()),
        interactive=interactive,
    )
