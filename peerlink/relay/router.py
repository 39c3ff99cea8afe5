"""Point-to-point routing between two connected users.

The router never stores anything: a target that is not registered right now is
simply not delivered to. Whether the sender hears about that depends on the
event kind (see protocol.DELIVERY_SENSITIVE).
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from loguru import logger

from peerlink.relay.auth import Identity
from peerlink.relay.protocol import ChatMessage, EventKind, FriendRequestSent, Typing, make_envelope, utc_now_iso
from peerlink.relay.registry import Channel, ConnectionRegistry, safe_send

NOT_ONLINE_REASON = "User not online"

# Sender fields a client may try to set itself; the relay always overwrites them.
SENDER_FIELDS = ("fromUserId", "fromUsername", "senderId", "senderUsername")


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    NOT_DELIVERED = "not_delivered"


def attribute(sender: Identity, payload: dict[str, Any]) -> dict[str, Any]:
    body = dict(payload)
    body["fromUserId"] = sender.user_id
    body["fromUsername"] = sender.display_name
    body["senderId"] = sender.user_id
    body["senderUsername"] = sender.display_name
    body["timestamp"] = utc_now_iso()
    return body


class MessageRouter:
    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry

    async def route(
        self,
        sender: Identity,
        target_user_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> DeliveryStatus:
        conn = self.registry.resolve(target_user_id)
        if conn is None:
            logger.debug(f"{event_type} from {sender.user_id}: {target_user_id} not online")
            return DeliveryStatus.NOT_DELIVERED
        env = make_envelope(event_type, payload=attribute(sender, payload))
        if not await safe_send(conn.channel, env.to_json(), target_user_id):
            return DeliveryStatus.NOT_DELIVERED
        logger.debug(f"{event_type} {sender.user_id} -> {target_user_id}")
        return DeliveryStatus.DELIVERED

    async def notify(self, channel: Channel, event_type: str, payload: dict[str, Any], user_id: str = "?") -> bool:
        """Server-originated event back to a single channel (receipts, rejections)."""
        env = make_envelope(event_type, payload={**payload, "timestamp": utc_now_iso()})
        return await safe_send(channel, env.to_json(), user_id)


class ChatRelay:
    """Chat messages, typing indicators and friend-request pings."""

    def __init__(self, router: MessageRouter) -> None:
        self.router = router

    async def chat_message(self, sender: Identity, channel: Channel, event: ChatMessage) -> DeliveryStatus:
        status = await self.router.route(
            sender, event.recipient_id, EventKind.CHAT_MESSAGE.value, event.passthrough()
        )
        receipt = {"messageId": event.message_id, "recipientId": event.recipient_id}
        if status is DeliveryStatus.DELIVERED:
            await self.router.notify(channel, "message_delivered", receipt, sender.user_id)
        else:
            logger.info(f"chat message {event.message_id} to {event.recipient_id} not delivered")
            await self.router.notify(
                channel, "message_not_delivered", {**receipt, "reason": NOT_ONLINE_REASON}, sender.user_id
            )
        return status

    async def typing(self, sender: Identity, kind: EventKind, event: Typing) -> DeliveryStatus:
        return await self.router.route(sender, event.recipient_id, kind.value, {"recipientId": event.recipient_id})

    async def friend_request(self, sender: Identity, event: FriendRequestSent) -> DeliveryStatus:
        return await self.router.route(
            sender,
            event.to_user_id,
            "new_friend_request",
            {"requestId": event.request_id, "fromUser": event.from_user},
        )
