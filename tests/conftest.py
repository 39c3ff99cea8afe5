from __future__ import annotations

import json

import pytest

from peerlink.relay.auth import Identity, IdentityVerifier
from peerlink.relay.calls import CallSignalingRelay
from peerlink.relay.presence import PresenceBroadcaster
from peerlink.relay.registry import ConnectionRegistry
from peerlink.relay.router import ChatRelay, MessageRouter

SECRET = "peerlink-test-secret-0123456789abcdef"


class FakeChannel:
    """Records every frame the relay sends to it."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[dict] = []
        self.fail = fail

    async def send(self, message: str) -> None:
        if self.fail:
            raise ConnectionError("channel closed")
        self.sent.append(json.loads(message))

    def of_type(self, msg_type: str) -> list[dict]:
        return [f for f in self.sent if f["type"] == msg_type]

    @property
    def types(self) -> list[str]:
        return [f["type"] for f in self.sent]


@pytest.fixture
def verifier():
    return IdentityVerifier(SECRET)


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def presence(registry):
    return PresenceBroadcaster(registry)


@pytest.fixture
def router(registry):
    return MessageRouter(registry)


@pytest.fixture
def chat(router):
    return ChatRelay(router)


@pytest.fixture
def calls(router, registry):
    return CallSignalingRelay(router, registry)


@pytest.fixture
def alice():
    return Identity("u-alice", "alice")


@pytest.fixture
def bob():
    return Identity("u-bob", "bob")


@pytest.fixture
def make_channel():
    return FakeChannel
