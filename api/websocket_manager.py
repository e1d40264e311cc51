"""
Dashboard WebSocket fan-out.

Every committed store change is relayed to connected dashboards. A
dashboard may narrow what it receives by sending a watch message with
the tables it cares about; notices always go to everyone.
"""

import asyncio
import json
import logging
from typing import Dict, Iterable, Optional, Sequence, Set

from fastapi import WebSocket

from models.events import ChangeEvent, ConnectionEvent, Notice, WebSocketEvent

logger = logging.getLogger(__name__)


class WebSocketManager:
    """Tracks dashboard connections and the tables each one watches."""

    def __init__(self, tables: Sequence[str] = ()):
        self.tables = tuple(tables)
        # websocket -> watched tables (empty set = everything)
        self._watching: Dict[WebSocket, Set[str]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._watching[websocket] = set()
        logger.info(f"Dashboard connected ({self.connection_count} open)")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._watching.pop(websocket, None)
        logger.info(f"Dashboard disconnected ({self.connection_count} open)")

    def watch(self, websocket: WebSocket, tables: Iterable[str]) -> Set[str]:
        """
        Restrict a connection to the given tables. Unknown names are
        dropped; an empty selection means every table.

        Returns:
            The tables now watched
        """
        selected = {t for t in tables if not self.tables or t in self.tables}
        if websocket in self._watching:
            self._watching[websocket] = selected
        return selected

    def handle_message(self, websocket: WebSocket, text: str) -> dict:
        """
        Interpret one client message and return the reply.
        Anything that is not a watch request is treated as a keepalive.
        """
        try:
            message = json.loads(text)
        except ValueError:
            message = None
        if isinstance(message, dict) and message.get("type") == "watch":
            watched = self.watch(websocket, message.get("tables") or [])
            return {"event_type": "watching", "tables": sorted(watched)}
        return {"event_type": "pong"}

    async def _send(self, websocket: WebSocket, message: str) -> bool:
        try:
            await websocket.send_text(message)
            return True
        except Exception as e:
            logger.debug(f"Dashboard send failed: {e}")
            return False

    async def _fan_out(self, message: str, table: Optional[str] = None) -> int:
        targets = [
            ws for ws, watched in list(self._watching.items())
            if table is None or not watched or table in watched
        ]
        results = [await self._send(ws, message) for ws in targets]

        dead = [ws for ws, ok in zip(targets, results) if not ok]
        if dead:
            async with self._lock:
                for ws in dead:
                    self._watching.pop(ws, None)
            logger.info(f"Dropped {len(dead)} unreachable dashboards")
        return sum(results)

    async def broadcast(self, event: WebSocketEvent) -> int:
        """Send to every dashboard. Returns how many received it."""
        if not self._watching:
            return 0
        return await self._fan_out(event.to_json())

    async def broadcast_change(self, event: ChangeEvent) -> int:
        """Relay one store change to the dashboards watching its table."""
        if not self._watching:
            return 0
        return await self._fan_out(event.to_json(), event.table)

    async def broadcast_notice(self, level: str, message: str, code: str = "", entity_id: str = None) -> int:
        return await self.broadcast(Notice(level=level, message=message, code=code, entity_id=entity_id))

    async def send_welcome(self, websocket: WebSocket, queue_length: int = 0) -> bool:
        """Greet a new dashboard with the relayed tables and pending count."""
        event = ConnectionEvent(tables=list(self.tables), queue_length=queue_length)
        return await self._send(websocket, event.to_json())

    @property
    def connection_count(self) -> int:
        return len(self._watching)
