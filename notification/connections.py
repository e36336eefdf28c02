"""
Connection registries for the socket channel.

The socket provider never reaches for a process-wide socket server; it is
handed a registry that answers two questions: is this user connected, and
push this event to them.

Usage:
    registry = InMemoryConnectionRegistry()
    registry.register(user_id, websocket_send)

    # Worker processes outside the socket server relay through Redis
    registry = RedisConnectionRegistry.from_url('redis://localhost:6379/0')
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Callable, Dict, List

from redis import Redis

logger = logging.getLogger(__name__)

Connection = Callable[[str, Dict[str, Any]], None]


class ConnectionRegistry(ABC):

    @abstractmethod
    def emit_to_user(self, user_id: str, event: str, payload: Dict[str, Any]) -> None:
        """Push an event to every live connection of the user. No-op if none."""
        pass

    @abstractmethod
    def is_user_online(self, user_id: str) -> bool:
        pass


class InMemoryConnectionRegistry(ConnectionRegistry):
    """Registry for workers embedded in the socket server process."""

    def __init__(self):
        self._connections: Dict[str, List[Connection]] = defaultdict(list)
        self._lock = threading.Lock()

    def register(self, user_id: str, connection: Connection) -> None:
        with self._lock:
            self._connections[str(user_id)].append(connection)

    def unregister(self, user_id: str, connection: Connection) -> None:
        with self._lock:
            connections = self._connections.get(str(user_id), [])
            if connection in connections:
                connections.remove(connection)
            if not connections:
                self._connections.pop(str(user_id), None)

    def is_user_online(self, user_id: str) -> bool:
        with self._lock:
            return bool(self._connections.get(str(user_id)))

    def emit_to_user(self, user_id: str, event: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            connections = list(self._connections.get(str(user_id), []))
        for connection in connections:
            connection(event, payload)


class RedisConnectionRegistry(ConnectionRegistry):
    """
    Registry backed by Redis, for workers running apart from the socket server.

    The socket server keeps `<prefix>:online:<user_id>` set (with a TTL)
    while the user has a live connection, and subscribes to
    `<prefix>:user:<user_id>` to relay published events.
    """

    def __init__(self, redis: Redis, key_prefix: str = 'sockets'):
        self.redis = redis
        self.key_prefix = key_prefix

    @classmethod
    def from_url(cls, redis_url: str, key_prefix: str = 'sockets') -> 'RedisConnectionRegistry':
        return cls(Redis.from_url(redis_url), key_prefix=key_prefix)

    def _presence_key(self, user_id: str) -> str:
        return f"{self.key_prefix}:online:{user_id}"

    def _channel(self, user_id: str) -> str:
        return f"{self.key_prefix}:user:{user_id}"

    def is_user_online(self, user_id: str) -> bool:
        return bool(self.redis.exists(self._presence_key(user_id)))

    def emit_to_user(self, user_id: str, event: str, payload: Dict[str, Any]) -> None:
        message = json.dumps({'event': event, 'payload': payload}, default=str)
        receivers = self.redis.publish(self._channel(user_id), message)
        logger.debug(f"Published {event} for user {user_id} to {receivers} subscriber(s)")
