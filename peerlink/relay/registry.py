from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

from loguru import logger

from peerlink.relay.auth import Identity


class Channel(Protocol):
    async def send(self, message: str) -> None: ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Connection:
    user_id: str
    display_name: str
    channel: Channel  # websockets ServerConnection in production
    connected_at: datetime = field(default_factory=_utc_now)

    @property
    def identity(self) -> Identity:
        return Identity(self.user_id, self.display_name)


class ConnectionRegistry:
    """Who is reachable right now, and through which channel.

    One entry per user id; a newer registration replaces the older one. All
    mutation happens on the event loop, so there is no lock.
    """

    def __init__(self) -> None:
        self._conns: dict[str, Connection] = {}

    def register(self, identity: Identity, channel: Channel) -> tuple[Connection, Connection | None]:
        """Insert or replace; returns the new connection and the superseded one, if any."""
        previous = self._conns.get(identity.user_id)
        conn = Connection(
            user_id=identity.user_id,
            display_name=identity.display_name,
            channel=channel,
        )
        self._conns[identity.user_id] = conn
        return conn, previous

    def unregister(self, user_id: str, channel: Channel | None = None) -> Connection | None:
        conn = self._conns.get(user_id)
        if conn is None:
            return None
        # A late disconnect from a superseded channel must not evict its replacement.
        if channel is not None and conn.channel is not channel:
            return None
        return self._conns.pop(user_id)

    def resolve(self, user_id: str) -> Connection | None:
        return self._conns.get(user_id)

    def list_online(self, exclude: str | None = None) -> list[Identity]:
        return [c.identity for uid, c in self._conns.items() if uid != exclude]

    def connections(self, exclude: str | None = None) -> list[Connection]:
        return [c for uid, c in self._conns.items() if uid != exclude]

    def __len__(self) -> int:
        return len(self._conns)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._conns


async def safe_send(channel: Channel, payload: str, user_id: str = "?") -> bool:
    """Send one frame; a failing channel is logged and reported, never raised."""
    try:
        await channel.send(payload)
        return True
    except Exception as e:
        logger.warning(f"channel fault sending to {user_id}: {e!r}")
        return False
