from __future__ import annotations

import asyncio
import logging

from fastapi import WebSocket

from .metrics import WS_CONNECTIONS

logger = logging.getLogger("quizroom.ws")


class ConnectionManager:
    """Open session sockets grouped by PIN, then by player."""

    def __init__(self) -> None:
        self._rooms: dict[str, dict[str, set[WebSocket]]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, pin: str, player_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            room = self._rooms.setdefault(pin, {})
            room.setdefault(player_id, set()).add(websocket)
            WS_CONNECTIONS.inc()

    async def disconnect(self, pin: str, player_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            room = self._rooms.get(pin)
            if not room:
                return

            sockets = room.get(player_id)
            if sockets and websocket in sockets:
                sockets.remove(websocket)
                WS_CONNECTIONS.dec()
            if not sockets:
                room.pop(player_id, None)
            if not room:
                self._rooms.pop(pin, None)

    async def kick(self, pin: str, player_id: str) -> None:
        """Tell every socket of ``player_id`` it was removed, then close them."""
        sockets = list(self._rooms.get(pin, {}).get(player_id, set()))
        for ws in sockets:
            try:
                await ws.send_json({"type": "kicked"})
                await ws.close(code=4403)
            except Exception:
                logger.exception(
                    "WebSocket kick failure",
                    extra={"event": "ws_kick_failed", "pin": pin, "player_id": player_id},
                )

    def room_connection_count(self, pin: str) -> int:
        room = self._rooms.get(pin, {})
        return sum(len(sockets) for sockets in room.values())
