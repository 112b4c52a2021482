import asyncio
import json
from datetime import datetime, timezone
from typing import Any

from fastapi import WebSocket


class RealtimeHub:
    """Fan-out of broadcast events to monitor screens over websockets.

    A client may watch a single channel; events without a channel id (config
    changes) go to everyone.
    """

    def __init__(self) -> None:
        self._clients: dict[WebSocket, str | None] = {}
        self._lock = asyncio.Lock()
        self._revision = 0

    async def connect(self, websocket: WebSocket, channel_id: str | None = None) -> None:
        await websocket.accept()
        async with self._lock:
            self._clients[websocket] = channel_id
        await websocket.send_text(
            json.dumps(
                {
                    "type": "hello",
                    "revision": self._revision,
                    "channel_id": channel_id,
                    "ts": datetime.now(timezone.utc).isoformat(),
                }
            )
        )

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._clients.pop(websocket, None)

    async def publish(self, event_type: str, payload: dict[str, Any] | None = None) -> int:
        self._revision += 1
        payload = payload or {}
        target_channel = payload.get("channel_id")
        message = json.dumps(
            {
                "type": event_type,
                "revision": self._revision,
                "payload": payload,
                "ts": datetime.now(timezone.utc).isoformat(),
            }
        )
        async with self._lock:
            clients = [
                client
                for client, watched in self._clients.items()
                if watched is None or target_channel is None or watched == target_channel
            ]

        stale: list[WebSocket] = []
        for client in clients:
            try:
                await client.send_text(message)
            except Exception:
                stale.append(client)

        if stale:
            async with self._lock:
                for client in stale:
                    self._clients.pop(client, None)
        return self._revision

    @property
    def revision(self) -> int:
        return self._revision

    @property
    def client_count(self) -> int:
        return len(self._clients)


hub = RealtimeHub()
