"""Registry of live WebSocket connections per group and event fan-out."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Iterable

from fastapi import WebSocket, WebSocketDisconnect

from .events import dump_event
from .schemas import WireModel

logger = logging.getLogger(__name__)

SEND_TIMEOUT_SECONDS = 5.0


class BroadcastHub:
    """Derived, ephemeral index of who is connected; never authoritative for membership."""

    def __init__(self, send_timeout: float = SEND_TIMEOUT_SECONDS) -> None:
        self._connections: dict[str, dict[WebSocket, str]] = defaultdict(dict)
        self._group_by_socket: dict[WebSocket, str] = {}
        self._send_timeout = send_timeout

    async def register(self, websocket: WebSocket, group_id: str, member_id: str) -> None:
        await websocket.accept()
        self._connections[group_id][websocket] = member_id
        self._group_by_socket[websocket] = group_id
        logger.debug("Member %s connected to group %s", member_id, group_id)

    def unregister(self, websocket: WebSocket) -> None:
        group_id = self._group_by_socket.pop(websocket, None)
        if group_id is None:
            return
        connections = self._connections.get(group_id)
        if connections is None:
            return
        connections.pop(websocket, None)
        if not connections:
            self._connections.pop(group_id, None)

    def connected_member_ids(self, group_id: str) -> set[str]:
        return set(self._connections.get(group_id, {}).values())

    def connection_count(self, group_id: str) -> int:
        return len(self._connections.get(group_id, {}))

    async def send(self, websocket: WebSocket, event: WireModel) -> bool:
        try:
            await asyncio.wait_for(websocket.send_json(dump_event(event)), timeout=self._send_timeout)
        except (RuntimeError, WebSocketDisconnect, OSError, asyncio.TimeoutError):
            logger.debug("Dropping unwritable connection", exc_info=True)
            self.unregister(websocket)
            return False
        return True

    async def broadcast(self, group_id: str, event: WireModel, exclude_member_id: str | None = None) -> int:
        targets = [
            websocket
            for websocket, member_id in list(self._connections.get(group_id, {}).items())
            if exclude_member_id is None or member_id != exclude_member_id
        ]
        return await self._send_all(targets, event)

    async def send_to_members(self, group_id: str, member_ids: Iterable[str], event: WireModel) -> int:
        wanted = set(member_ids)
        targets = [
            websocket
            for websocket, member_id in list(self._connections.get(group_id, {}).items())
            if member_id in wanted
        ]
        return await self._send_all(targets, event)

    async def disconnect_member(self, group_id: str, member_id: str, code: int = 4001) -> None:
        targets = [
            websocket for websocket, connected in list(self._connections.get(group_id, {}).items()) if connected == member_id
        ]
        for websocket in targets:
            self.unregister(websocket)
            try:
                await websocket.close(code=code)
            except (RuntimeError, OSError):
                logger.debug("Connection for member %s already closed", member_id)

    async def _send_all(self, targets: list[WebSocket], event: WireModel) -> int:
        if not targets:
            return 0
        results = await asyncio.gather(*(self.send(websocket, event) for websocket in targets))
        return sum(1 for delivered in results if delivered)
