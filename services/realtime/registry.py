"""
services/realtime/registry.py
Process-wide registry of open WebSocket channels keyed by user id.

Owned by the transport layer (one instance on app.state) and handed to the
lifecycle core, which only ever sees register/deregister/send_if_open/
broadcast_to_admins.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from fastapi.requests import HTTPConnection
from starlette.websockets import WebSocketState

logger = logging.getLogger(__name__)


class Channel(Protocol):
    client_state: WebSocketState

    async def send_text(self, data: str) -> None: ...


@dataclass
class _Entry:
    channel: Channel
    is_admin: bool


class ConnectionRegistry:
    """Lock-protected user → channel map. Sends run outside the lock."""

    def __init__(self):
        self._entries: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    async def register(self, user_key, channel: Channel, is_admin: bool = False) -> None:
        """A second connection for the same user replaces the first."""
        async with self._lock:
            self._entries[str(user_key)] = _Entry(channel=channel, is_admin=is_admin)
        logger.info(f"Channel registered for user {user_key} (admin={is_admin})")

    async def deregister(self, user_key, channel: Optional[Channel] = None) -> None:
        """
        Remove the user's channel. When `channel` is given, only remove it if it
        is still the registered one, so a late close of a replaced socket does
        not evict the newer connection.
        """
        async with self._lock:
            entry = self._entries.get(str(user_key))
            if entry is None:
                return
            if channel is not None and entry.channel is not channel:
                return
            del self._entries[str(user_key)]
        logger.info(f"Channel deregistered for user {user_key}")

    async def connection_count(self) -> int:
        async with self._lock:
            channels = [entry.channel for entry in self._entries.values()]
        return sum(1 for channel in channels if _is_open(channel))

    async def send_if_open(self, user_key, payload: dict[str, Any]) -> bool:
        """Returns True if the payload was written to an open channel."""
        async with self._lock:
            entry = self._entries.get(str(user_key))
        if entry is None or not _is_open(entry.channel):
            return False
        return await self._send(str(user_key), entry.channel, payload)

    async def broadcast_to_admins(self, payload: dict[str, Any]) -> int:
        """Send to every connected admin. Returns the number of successful sends."""
        async with self._lock:
            admins = [
                (key, entry.channel)
                for key, entry in self._entries.items()
                if entry.is_admin
            ]
        sent = 0
        for key, channel in admins:
            if _is_open(channel) and await self._send(key, channel, payload):
                sent += 1
        return sent

    async def _send(self, user_key: str, channel: Channel, payload: dict[str, Any]) -> bool:
        try:
            await channel.send_text(json.dumps(payload, default=str))
            return True
        except Exception as e:
            logger.warning(f"Push to user {user_key} failed, dropping channel: {e}")
            await self.deregister(user_key, channel)
            return False


def _is_open(channel: Channel) -> bool:
    return channel.client_state == WebSocketState.CONNECTED


def get_registry(connection: HTTPConnection) -> ConnectionRegistry:
    """FastAPI dependency (HTTP and WebSocket): the app-wide registry."""
    return connection.app.state.registry
