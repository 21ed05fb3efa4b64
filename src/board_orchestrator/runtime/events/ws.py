"""Websocket pub/sub hub for streaming runtime events to board clients."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


CHANNELS = {
    "agents",
    "orchestration",
    "questions",
    "board",
    "system",
}


@dataclass
class _WsClient:
    ws: WebSocket
    channels: set[str] = field(default_factory=set)
    # Empty means every agent slot.
    agent_ids: set[str] = field(default_factory=set)

    def wants(self, event: dict[str, Any]) -> bool:
        channel = event.get("channel")
        if channel == "system":
            return True
        if channel not in self.channels:
            return False
        if channel == "agents" and self.agent_ids:
            return str(event.get("entity_id") or "") in self.agent_ids
        return True


class WebSocketHub:
    """Track websocket subscribers and route channel-scoped runtime events."""
    def __init__(self) -> None:
        self._clients: dict[int, _WsClient] = {}
        self._counter = 0
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lock = threading.Lock()

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Register the event loop used for cross-thread publish scheduling."""
        with self._lock:
            self._loop = loop

    def detach_loop(self) -> None:
        with self._lock:
            self._loop = None

    async def _reply(self, websocket: WebSocket, event_type: str, payload: dict[str, Any]) -> None:
        await websocket.send_text(json.dumps({"channel": "system", "type": event_type, "payload": payload}))

    async def handle_connection(self, websocket: WebSocket) -> None:
        """Serve one client connection and process subscribe/unsubscribe traffic."""
        self.attach_loop(asyncio.get_running_loop())
        await websocket.accept()
        client = _WsClient(ws=websocket)
        cid = id(websocket)
        self._clients[cid] = client
        try:
            await self._reply(websocket, "connected", {"channels": sorted(CHANNELS)})
            while True:
                message = json.loads(await websocket.receive_text())
                action = message.get("action")
                channels = set(message.get("channels", []))
                agent_ids = {str(a).strip() for a in message.get("agent_ids", []) if str(a).strip()}
                if action == "subscribe":
                    client.channels |= channels & CHANNELS
                    client.agent_ids |= agent_ids
                elif action == "unsubscribe":
                    client.channels -= channels
                    client.agent_ids -= agent_ids
                elif action == "ping":
                    await self._reply(websocket, "pong", {})
                    continue
                else:
                    continue
                await self._reply(
                    websocket,
                    f"{action}d",
                    {"channels": sorted(client.channels), "agent_ids": sorted(client.agent_ids)},
                )
        except Exception:
            logger.debug("WebSocket client loop terminated with exception", exc_info=True)
        finally:
            self._clients.pop(cid, None)

    async def publish(self, event: dict[str, Any]) -> None:
        """Send one event to every subscriber whose filters match."""
        self._counter += 1
        payload = json.dumps({**event, "seq": self._counter}, default=str)
        stale: list[int] = []
        for cid, client in list(self._clients.items()):
            if not client.wants(event):
                continue
            try:
                await client.ws.send_text(payload)
            except Exception:
                stale.append(cid)
        for cid in stale:
            self._clients.pop(cid, None)

    def publish_sync(self, event: dict[str, Any]) -> None:
        """Schedule async publish from sync code paths without blocking callers."""
        if not self._clients:
            return
        with self._lock:
            loop = self._loop
        if loop and loop.is_running():
            asyncio.run_coroutine_threadsafe(self.publish(event), loop)
            return
        try:
            loop = asyncio.get_running_loop()
            self.attach_loop(loop)
            loop.create_task(self.publish(event))
        except RuntimeError:
            logger.debug("No running event loop available for publish_sync", exc_info=True)


hub = WebSocketHub()
