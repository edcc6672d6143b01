import asyncio
import json
import logging
import websockets
from typing import Dict, Optional

from copybot.services.notifier import NotificationHub

logger = logging.getLogger(__name__)


class NotificationServer:
    """
    Websocket transport for the notification hub.

    Clients send `{"action": "subscribe:user", "user_id": "..."}` and then
    receive `{"event": "trade:detected" | "trade:executed" |
    "trade:execution-failed", "data": {...}}` frames for that user.
    """

    def __init__(self, hub: NotificationHub, host: str = "0.0.0.0", port: int = 8765):
        self.hub = hub
        self.host = host
        self.port = port
        self._server = None

    async def start(self):
        self._server = await websockets.serve(self._handler, self.host, self.port)
        logger.info(f"🔌 Notification server listening on ws://{self.host}:{self.port}")

    async def stop(self):
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def _handler(self, ws):
        subscriptions: Dict[str, asyncio.Queue] = {}
        forwarders: Dict[str, asyncio.Task] = {}
        try:
            async for raw in ws:
                user_id = self._parse_subscription(raw)
                if user_id is None:
                    await ws.send(json.dumps({"event": "error", "data": {"message": "expected subscribe:user with user_id"}}))
                    continue
                if user_id in subscriptions:
                    continue

                queue = self.hub.subscribe(user_id)
                subscriptions[user_id] = queue
                forwarders[user_id] = asyncio.create_task(self._forward(ws, queue))
                logger.info(f"👤 Client subscribed to user {user_id}")
                await ws.send(json.dumps({"event": "subscribed", "data": {"user_id": user_id}}))
        except websockets.ConnectionClosed:
            pass
        finally:
            for task in forwarders.values():
                task.cancel()
            for user_id, queue in subscriptions.items():
                self.hub.unsubscribe(user_id, queue)

    @staticmethod
    def _parse_subscription(raw) -> Optional[str]:
        try:
            msg = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None
        if not isinstance(msg, dict) or msg.get("action") != "subscribe:user":
            return None
        user_id = msg.get("user_id")
        return str(user_id) if user_id not in (None, "") else None

    async def _forward(self, ws, queue: asyncio.Queue):
        try:
            while True:
                notification = await queue.get()
                await ws.send(json.dumps(notification.to_wire(), default=str))
        except websockets.ConnectionClosed:
            pass
