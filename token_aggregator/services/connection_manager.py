"""
WebSocket connection registry.
Tracks open connections, their topic subscriptions and their registered filters.
"""

import json
import uuid
from typing import Any, Dict, List, Optional, Set

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from ..api.schemas import QueryOptions
from ..core.logging_config import create_logger

logger = create_logger(__name__)


class ConnectionManager:
    """
    Registry of realtime connections.

    Every entry belonging to a connection is removed on disconnect, so the
    registries never outlive the connections they describe.
    """

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.topics: Dict[str, Set[str]] = {}
        self.client_filters: Dict[str, QueryOptions] = {}

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        self.active_connections[connection_id] = websocket
        logger.info("Client connected", extra={
            "connection_id": connection_id,
            "connections": len(self.active_connections)
        })
        return connection_id

    def disconnect(self, connection_id: str) -> None:
        if self.active_connections.pop(connection_id, None) is None:
            return
        self.client_filters.pop(connection_id, None)
        for topic in list(self.topics):
            members = self.topics[topic]
            members.discard(connection_id)
            if not members:
                del self.topics[topic]
        logger.info("Client disconnected", extra={
            "connection_id": connection_id,
            "connections": len(self.active_connections)
        })

    # Subscriptions and filters

    def subscribe(self, connection_id: str, topic: str) -> None:
        if connection_id not in self.active_connections:
            return
        self.topics.setdefault(topic, set()).add(connection_id)
        logger.debug("Client subscribed", extra={"connection_id": connection_id, "topic": topic})

    def unsubscribe(self, connection_id: str, topic: str) -> None:
        members = self.topics.get(topic)
        if not members:
            return
        members.discard(connection_id)
        if not members:
            del self.topics[topic]
        logger.debug("Client unsubscribed", extra={"connection_id": connection_id, "topic": topic})

    def get_subscribers(self, topic: str) -> List[str]:
        return list(self.topics.get(topic, ()))

    def set_filters(self, connection_id: str, options: QueryOptions) -> None:
        if connection_id in self.active_connections:
            self.client_filters[connection_id] = options

    def get_filters(self, connection_id: str) -> Optional[QueryOptions]:
        return self.client_filters.get(connection_id)

    def connection_count(self) -> int:
        return len(self.active_connections)

    # Sending

    async def send_personal(self, connection_id: str, event: str, data: Any) -> bool:
        """Send one event to one connection. A failed send drops the connection."""
        websocket = self.active_connections.get(connection_id)
        if websocket is None:
            return False
        try:
            await websocket.send_text(self._encode(event, data))
            return True
        except Exception as e:
            logger.error("Error sending message to client", extra={
                "connection_id": connection_id,
                "event": event,
                "error": str(e)
            })
            self.disconnect(connection_id)
            return False

    async def broadcast(self, event: str, data: Any) -> int:
        """Send an event to every connection. Returns the number of successful sends."""
        return await self._send_many(list(self.active_connections), event, data)

    async def broadcast_to_topic(self, topic: str, event: str, data: Any) -> int:
        """Send an event to the connections subscribed to ``topic``."""
        return await self._send_many(self.get_subscribers(topic), event, data)

    async def _send_many(self, connection_ids: List[str], event: str, data: Any) -> int:
        if not connection_ids:
            return 0
        message = self._encode(event, data)
        delivered = 0
        for connection_id in connection_ids:
            websocket = self.active_connections.get(connection_id)
            if websocket is None:
                continue
            try:
                await websocket.send_text(message)
                delivered += 1
            except Exception as e:
                logger.error("Error broadcasting to client", extra={
                    "connection_id": connection_id,
                    "event": event,
                    "error": str(e)
                })
                self.disconnect(connection_id)
        return delivered

    @staticmethod
    def _encode(event: str, data: Any) -> str:
        return json.dumps({"event": event, "data": jsonable_encoder(data)})
