"""WebSocket connection manager for live audit progress."""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import UTC, datetime
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class WebSocketManager:
    """Fans progress events out to the websockets watching an audit."""

    _instance: WebSocketManager | None = None
    _lock = threading.Lock()

    def __init__(self) -> None:
        self.connections: dict[str, list[WebSocket]] = {}
        self.loop: asyncio.AbstractEventLoop | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @classmethod
    def get_instance(cls) -> WebSocketManager:
        """Get singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        with cls._lock:
            cls._instance = None

    async def connect(self, audit_id: str, websocket: WebSocket) -> None:
        """Register a websocket for an audit."""
        with self._lock:
            self.connections.setdefault(audit_id, []).append(websocket)
            self.loop = asyncio.get_running_loop()

    def disconnect(self, audit_id: str, websocket: WebSocket) -> None:
        """Remove a websocket for an audit."""
        with self._lock:
            sockets = self.connections.get(audit_id)
            if sockets is None:
                return
            if websocket in sockets:
                sockets.remove(websocket)
            if not sockets:
                del self.connections[audit_id]

    def has_listeners(self, audit_id: str) -> bool:
        with self._lock:
            return bool(self.connections.get(audit_id))

    def enqueue_broadcast(self, audit_id: str, event: dict[str, Any]) -> None:
        """Schedule a broadcast without waiting for it; safe from any thread."""
        if not self.has_listeners(audit_id):
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if self.loop is not None and self.loop.is_running() and self.loop is not running:
            asyncio.run_coroutine_threadsafe(self.broadcast(audit_id, event), self.loop)
        elif running is not None:
            task = running.create_task(self.broadcast(audit_id, event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        else:
            logger.debug(f"No event loop for progress broadcast of audit {audit_id}")

    async def broadcast(self, audit_id: str, event: dict[str, Any]) -> None:
        """Send an event to every websocket watching the audit."""
        message = {**event, "timestamp": datetime.now(UTC).isoformat()}
        with self._lock:
            sockets = list(self.connections.get(audit_id, []))

        disconnected: list[WebSocket] = []
        for websocket in sockets:
            try:
                await websocket.send_json(message)
            except Exception:
                disconnected.append(websocket)

        for websocket in disconnected:
            self.disconnect(audit_id, websocket)


websocket_manager = WebSocketManager.get_instance()
