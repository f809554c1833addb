import asyncio
import logging
from typing import Dict, List, Optional
from fastapi import WebSocket

logger = logging.getLogger(__name__)

class ConnectionManager:
    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info("Event subscriber connected. Total connections: %d", len(self.active_connections))

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
            logger.info("Event subscriber disconnected. Total connections: %d", len(self.active_connections))

    async def broadcast(self, message: dict):
        """Broadcast message to all connected WebSocket clients."""
        if not self.active_connections:
            logger.debug("No subscribers for %s event", message.get("type"))
            return

        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.warning("WebSocket broadcast error: %s", e)
                # Remove bad connection
                self.disconnect(connection)


class BroadcastEventPublisher:
    """Pushes engine events to WebSocket subscribers from worker threads.

    Messages are scheduled on the server's event loop and never awaited, so a
    slow subscriber cannot hold up a computation. Until ``attach`` is called
    (the app's startup hook), events are only logged.
    """

    def __init__(self, manager: ConnectionManager, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.manager = manager
        self.loop = loop

    def attach(self, loop: asyncio.AbstractEventLoop):
        self.loop = loop

    def publish(self, message: Dict) -> None:
        if self.loop is None or self.loop.is_closed():
            logger.info("Event %s (no event loop attached): %s", message.get("type"), message.get("payload"))
            return
        asyncio.run_coroutine_threadsafe(self.manager.broadcast(message), self.loop)
