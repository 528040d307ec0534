# ws_manager.py
import asyncio
import logging
from typing import Dict, Iterable

from fastapi import WebSocket

from fulfillment_service.events import EventBroadcaster, Subscription

logger = logging.getLogger("fulfillment-service.ws")
logger.setLevel(logging.INFO)


class ConnectionManager:
    def __init__(self, broadcaster: EventBroadcaster):
        self.broadcaster = broadcaster
        self.active_connections: Dict[WebSocket, Subscription] = {}

    async def connect(self, websocket: WebSocket, scopes: Iterable[str]):
        await websocket.accept()
        self.active_connections[websocket] = self.broadcaster.subscribe(scopes)
        logger.info(f"[WS] Client connected ({len(self.active_connections)} active)")

    def disconnect(self, websocket: WebSocket):
        subscription = self.active_connections.pop(websocket, None)
        if subscription is not None:
            self.broadcaster.unsubscribe(subscription)
        logger.info(f"[WS] Client disconnected ({len(self.active_connections)} active)")

    async def _send_events(self, websocket: WebSocket, subscription: Subscription):
        while True:
            envelope = await subscription.queue.get()
            if envelope is None:
                # closed by the broadcaster after the client fell behind
                logger.warning(f"[WS] Subscriber {subscription.id} too slow, closing")
                await websocket.close(code=1013)
                return
            await websocket.send_json(envelope)

    async def _heartbeat(self, websocket: WebSocket):
        while True:
            await websocket.receive_text()
            await websocket.send_json({"type": "pong"})

    async def serve(self, websocket: WebSocket):
        """Pump events to the socket until either side stops."""
        subscription = self.active_connections[websocket]
        tasks = [
            asyncio.create_task(self._send_events(websocket, subscription)),
            asyncio.create_task(self._heartbeat(websocket)),
        ]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task.exception() is not None:
                    logger.info(f"[WS] Connection closed: {task.exception()!r}")
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self.disconnect(websocket)
