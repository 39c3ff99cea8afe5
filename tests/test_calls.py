from __future__ import annotations

import pytest

from peerlink.relay.protocol import AcceptCall, EventKind, InitiateCall, RejectCall, SendCaption, WebRTCSignal
from peerlink.relay.router import DeliveryStatus


@pytest.fixture
def wired(registry, alice, bob, make_channel):
    a, b = make_channel(), make_channel()
    registry.register(alice, a)
    registry.register(bob, b)
    return a, b


def _initiate(target="u-bob"):
    return InitiateCall.model_validate(
        {"callId": "c1", "roomId": "room-1", "targetUserId": target, "targetUsername": "bob"}
    )


@pytest.mark.asyncio
async def test_initiate_call_forwards_incoming_call(calls, wired, alice):
    a, b = wired
    status = await calls.initiate_call(alice, a, _initiate())

    assert status is DeliveryStatus.DELIVERED
    [frame] = b.of_type("incoming_call")
    p = frame["payload"]
    assert p["callId"] == "c1"
    assert p["roomId"] == "room-1"
    assert p["callerId"] == "u-alice"
    assert p["callerName"] == "alice"
    assert a.sent == []


@pytest.mark.asyncio
async def test_initiate_call_to_offline_rejects_to_sender(calls, registry, alice, make_channel):
    a = make_channel()
    registry.register(alice, a)

    status = await calls.initiate_call(alice, a, _initiate("u-ghost"))

    assert status is DeliveryStatus.NOT_DELIVERED
    [frame] = a.sent
    assert frame["type"] == "call_rejected"
    assert frame["payload"]["callId"] == "c1"
    assert frame["payload"]["reason"] == "User not online"


@pytest.mark.asyncio
async def test_accept_call_goes_to_caller_not_target(calls, wired, bob):
    a, b = wired
    event = AcceptCall.model_validate(
        # targetUserId is deliberately misleading; routing must follow callerId.
        {"callId": "c1", "roomId": "room-1", "callerId": "u-alice", "targetUserId": "u-bob"}
    )

    status = await calls.accept_call(bob, event)

    assert status is DeliveryStatus.DELIVERED
    [frame] = a.of_type("call_accepted")
    assert frame["payload"]["callId"] == "c1"
    assert frame["payload"]["roomId"] == "room-1"
    assert frame["payload"]["targetUserId"] == "u-bob"
    assert frame["payload"]["targetUsername"] == "bob"
    assert b.sent == []


@pytest.mark.asyncio
async def test_accept_call_for_vanished_caller_is_dropped_silently(calls, registry, bob, make_channel):
    b = make_channel()
    registry.register(bob, b)

    status = await calls.accept_call(bob, AcceptCall.model_validate({"callId": "c1", "callerId": "u-alice"}))

    assert status is DeliveryStatus.NOT_DELIVERED
    assert b.sent == []


@pytest.mark.asyncio
async def test_double_accept_is_relayed_twice(calls, wired, bob):
    a, _ = wired
    event = AcceptCall.model_validate({"callId": "c1", "callerId": "u-alice"})
    await calls.accept_call(bob, event)
    await calls.accept_call(bob, event)

    assert len(a.of_type("call_accepted")) == 2


@pytest.mark.asyncio
async def test_reject_call_goes_to_caller(calls, wired, bob):
    a, b = wired
    status = await calls.reject_call(bob, RejectCall.model_validate({"callId": "c1", "callerId": "u-alice"}))

    assert status is DeliveryStatus.DELIVERED
    [frame] = a.of_type("call_rejected")
    assert frame["payload"]["targetUsername"] == "bob"
    assert frame["payload"]["reason"] == "Call rejected by user"
    assert b.sent == []


@pytest.mark.asyncio
async def test_reject_call_for_vanished_caller_is_silent(calls, registry, bob, make_channel):
    b = make_channel()
    registry.register(bob, b)

    status = await calls.reject_call(bob, RejectCall.model_validate({"callId": "c1", "callerId": "u-alice"}))

    assert status is DeliveryStatus.NOT_DELIVERED
    assert b.sent == []


@pytest.mark.asyncio
async def test_webrtc_offer_passes_sdp_through(calls, wired, alice):
    _, b = wired
    offer = {"type": "offer", "sdp": "v=0\r\no=- 46117317 2 IN IP4 127.0.0.1\r\n"}
    event = WebRTCSignal.model_validate({"toUserId": "u-bob", "callId": "c1", "offer": offer})

    await calls.signal(alice, EventKind.WEBRTC_OFFER, event)

    [frame] = b.of_type("webrtc_offer")
    assert frame["payload"]["offer"] == offer
    assert frame["payload"]["callId"] == "c1"
    assert frame["payload"]["fromUserId"] == "u-alice"


@pytest.mark.asyncio
async def test_webrtc_accepts_legacy_target_field(calls, wired, alice):
    _, b = wired
    event = WebRTCSignal.model_validate({"targetUserId": "u-bob", "callId": "c1", "candidate": {"candidate": "x"}})

    assert await calls.signal(alice, EventKind.WEBRTC_ICE_CANDIDATE, event) is DeliveryStatus.DELIVERED
    assert b.of_type("webrtc_ice_candidate")[0]["payload"]["candidate"] == {"candidate": "x"}


@pytest.mark.asyncio
async def test_webrtc_to_offline_is_silent(calls, registry, alice, make_channel):
    a = make_channel()
    registry.register(alice, a)
    event = WebRTCSignal.model_validate({"toUserId": "u-ghost", "callId": "c1"})

    assert await calls.signal(alice, EventKind.WEBRTC_END_CALL, event) is DeliveryStatus.NOT_DELIVERED
    assert a.sent == []


@pytest.mark.asyncio
async def test_send_caption_becomes_receive_caption(calls, wired, alice):
    _, b = wired
    caption = {"type": "transcript", "text": "hello there"}
    event = SendCaption.model_validate({"toUserId": "u-bob", "callId": "c1", "caption": caption})

    await calls.send_caption(alice, event)

    [frame] = b.of_type("receive_caption")
    assert frame["payload"]["caption"] == caption
    assert frame["payload"]["callId"] == "c1"
    assert frame["payload"]["fromUserId"] == "u-alice"
    assert frame["payload"]["fromUsername"] == "alice"
