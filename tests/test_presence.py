from __future__ import annotations

import pytest

from peerlink.relay.auth import Identity
from peerlink.relay.presence import PresenceKind


@pytest.mark.asyncio
async def test_first_join_gets_empty_roster(presence, alice, make_channel):
    ch = make_channel()
    await presence.join(alice, ch)

    assert ch.types == ["online_users"]
    assert ch.sent[0]["payload"]["users"] == []


@pytest.mark.asyncio
async def test_join_broadcasts_online_to_others_not_self(presence, alice, bob, make_channel):
    a, b = make_channel(), make_channel()
    await presence.join(alice, a)
    await presence.join(bob, b)

    # Bob's roster has Alice but not himself.
    roster = b.of_type("online_users")[0]["payload"]["users"]
    assert roster == [{"userId": "u-alice", "username": "alice"}]
    assert b.of_type("user_online") == []

    online = a.of_type("user_online")
    assert len(online) == 1
    assert online[0]["payload"]["userId"] == "u-bob"
    assert online[0]["payload"]["username"] == "bob"
    assert "timestamp" in online[0]["payload"]


@pytest.mark.asyncio
async def test_reconnect_does_not_announce_to_itself(presence, registry, alice, bob, make_channel):
    a, b1, b2 = make_channel(), make_channel(), make_channel()
    await presence.join(alice, a)
    await presence.join(bob, b1)
    await presence.join(bob, b2)

    assert len(registry) == 2
    assert registry.resolve("u-bob").channel is b2
    assert b1.of_type("user_online") == []
    assert b2.of_type("user_online") == []
    assert b2.of_type("online_users")[0]["payload"]["users"] == [{"userId": "u-alice", "username": "alice"}]


@pytest.mark.asyncio
async def test_leave_broadcasts_offline_to_remaining(presence, alice, bob, make_channel):
    a, b = make_channel(), make_channel()
    await presence.join(alice, a)
    await presence.join(bob, b)

    removed = await presence.leave("u-alice", a)
    assert removed is not None

    offline = b.of_type("user_offline")
    assert len(offline) == 1
    assert offline[0]["payload"]["userId"] == "u-alice"
    assert a.of_type("user_offline") == []


@pytest.mark.asyncio
async def test_leave_unknown_produces_no_broadcast(presence, alice, make_channel):
    a = make_channel()
    await presence.join(alice, a)
    before = list(a.sent)

    assert await presence.leave("ghost") is None
    assert a.sent == before


@pytest.mark.asyncio
async def test_leave_of_superseded_channel_is_silent(presence, alice, bob, make_channel):
    a, b_old, b_new = make_channel(), make_channel(), make_channel()
    await presence.join(alice, a)
    await presence.join(bob, b_old)
    await presence.join(bob, b_new)

    assert await presence.leave("u-bob", b_old) is None
    assert a.of_type("user_offline") == []


@pytest.mark.asyncio
async def test_announce_isolates_failing_recipient(presence, registry, make_channel):
    good1, bad, good2 = make_channel(), make_channel(fail=True), make_channel()
    registry.register(Identity("u1", "one"), good1)
    registry.register(Identity("u2", "two"), bad)
    registry.register(Identity("u3", "three"), good2)

    delivered = await presence.announce(PresenceKind.OFFLINE, Identity("u4", "four"))

    assert delivered == 2
    assert len(good1.of_type("user_offline")) == 1
    assert len(good2.of_type("user_offline")) == 1
