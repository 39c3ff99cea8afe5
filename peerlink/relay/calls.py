"""Call invitation handshake and WebRTC signaling relay.

initiate_call -> incoming_call -> accept_call | reject_call -> webrtc_* -> webrtc_end_call

Nothing here tracks call state. Peers correlate by callId; the relay forwards
whatever they send, including an accept for a call it never saw initiated.
"""

from __future__ import annotations

from loguru import logger

from peerlink.relay.auth import Identity
from peerlink.relay.protocol import AcceptCall, EventKind, InitiateCall, RejectCall, SendCaption, WebRTCSignal
from peerlink.relay.registry import Channel, ConnectionRegistry
from peerlink.relay.router import NOT_ONLINE_REASON, DeliveryStatus, MessageRouter

REJECTED_BY_USER_REASON = "Call rejected by user"


class CallSignalingRelay:
    def __init__(self, router: MessageRouter, registry: ConnectionRegistry) -> None:
        self.router = router
        self.registry = registry

    async def initiate_call(self, sender: Identity, channel: Channel, event: InitiateCall) -> DeliveryStatus:
        if self.registry.resolve(event.target_user_id) is None:
            logger.info(f"call {event.call_id}: {event.target_user_id} not online")
            await self.router.notify(
                channel,
                "call_rejected",
                {
                    "callId": event.call_id,
                    "targetUsername": event.target_username,
                    "reason": NOT_ONLINE_REASON,
                },
                sender.user_id,
            )
            return DeliveryStatus.NOT_DELIVERED

        status = await self.router.route(
            sender,
            event.target_user_id,
            "incoming_call",
            {
                "callId": event.call_id,
                "roomId": event.room_id,
                "callerId": sender.user_id,
                "callerName": sender.display_name,
                "callerUsername": sender.display_name,
            },
        )
        if status is DeliveryStatus.NOT_DELIVERED:
            # Target vanished or its channel failed between resolve and send.
            await self.router.notify(
                channel,
                "call_rejected",
                {"callId": event.call_id, "targetUsername": event.target_username, "reason": NOT_ONLINE_REASON},
                sender.user_id,
            )
        return status

    async def accept_call(self, sender: Identity, event: AcceptCall) -> DeliveryStatus:
        # Routed to the caller named in the payload, not to any target field.
        status = await self.router.route(
            sender,
            event.caller_id,
            "call_accepted",
            {
                "callId": event.call_id,
                "roomId": event.room_id,
                "targetUserId": sender.user_id,
                "targetUsername": sender.display_name,
            },
        )
        if status is DeliveryStatus.NOT_DELIVERED:
            logger.info(f"call {event.call_id}: caller {event.caller_id} gone before accept; dropped")
        return status

    async def reject_call(self, sender: Identity, event: RejectCall) -> DeliveryStatus:
        status = await self.router.route(
            sender,
            event.caller_id,
            "call_rejected",
            {
                "callId": event.call_id,
                "targetUsername": sender.display_name,
                "reason": REJECTED_BY_USER_REASON,
            },
        )
        if status is DeliveryStatus.NOT_DELIVERED:
            logger.info(f"call {event.call_id}: caller {event.caller_id} gone before reject; dropped")
        return status

    async def signal(self, sender: Identity, kind: EventKind, event: WebRTCSignal) -> DeliveryStatus:
        """SDP offer/answer, ICE candidates and hang-up; payload is passed through as-is."""
        return await self.router.route(sender, event.to_user_id, kind.value, event.passthrough())

    async def send_caption(self, sender: Identity, event: SendCaption) -> DeliveryStatus:
        return await self.router.route(
            sender,
            event.to_user_id,
            "receive_caption",
            {"caption": event.caption, "callId": event.call_id},
        )
