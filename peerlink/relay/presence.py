"""Online/offline announcements driven by registry membership."""

from __future__ import annotations

import asyncio
from enum import Enum

from loguru import logger

from peerlink.relay.auth import Identity
from peerlink.relay.protocol import make_envelope, utc_now_iso
from peerlink.relay.registry import Channel, Connection, ConnectionRegistry, safe_send


class PresenceKind(str, Enum):
    ONLINE = "user_online"
    OFFLINE = "user_offline"


class PresenceBroadcaster:
    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry

    async def join(self, identity: Identity, channel: Channel) -> Connection:
        """Register a verified channel, hand it the roster, and tell everyone else."""
        conn, previous = self.registry.register(identity, channel)
        if previous is not None:
            logger.info(f"{identity.user_id} reconnected; superseding previous channel")
        await self.send_roster(conn)
        await self.announce(PresenceKind.ONLINE, identity)
        return conn

    async def leave(self, user_id: str, channel: Channel | None = None) -> Connection | None:
        removed = self.registry.unregister(user_id, channel)
        if removed is None:
            return None
        await self.announce(PresenceKind.OFFLINE, removed.identity)
        return removed

    async def send_roster(self, conn: Connection) -> bool:
        users = [i.to_dict() for i in self.registry.list_online(exclude=conn.user_id)]
        env = make_envelope("online_users", payload={"users": users})
        return await safe_send(conn.channel, env.to_json(), conn.user_id)

    async def announce(self, kind: PresenceKind, identity: Identity) -> int:
        """Fan a presence event out to every other channel; returns successful sends."""
        targets = self.registry.connections(exclude=identity.user_id)
        if not targets:
            return 0
        env = make_envelope(
            kind.value,
            payload={**identity.to_dict(), "timestamp": utc_now_iso()},
        )
        payload = env.to_json()
        results = await asyncio.gather(
            *[safe_send(c.channel, payload, c.user_id) for c in targets],
            return_exceptions=True,
        )
        delivered = sum(1 for r in results if r is True)
        logger.debug(f"{kind.value} for {identity.user_id} sent to {delivered}/{len(targets)}")
        return delivered
