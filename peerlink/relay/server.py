"""Relay server (presence + chat + call signaling over WebSocket).

A channel must authenticate before anything else happens on it: the token is
taken from the `token` query parameter, an `Authorization: Bearer` header, or a
first `auth` frame. After that, every frame is one event handled to completion
before the next is read, so events from one sender keep their order.

Security note: payloads are relayed in clear; there is no end-to-end encryption.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qs, urlsplit

from loguru import logger

import websockets
from websockets.asyncio.server import Server, ServerConnection, serve

from peerlink.relay.auth import AuthError, AuthFailure, Identity, IdentityVerifier
from peerlink.relay.calls import CallSignalingRelay
from peerlink.relay.presence import PresenceBroadcaster
from peerlink.relay.protocol import EventKind, MalformedEnvelope, WEBRTC_KINDS, make_envelope, parse_event, parse_frame
from peerlink.relay.ratelimit import RateLimiter
from peerlink.relay.registry import ConnectionRegistry
from peerlink.relay.router import ChatRelay, MessageRouter

Handler = Callable[[Identity, ServerConnection, EventKind, Any], Awaitable[Any]]


@dataclass
class RelayServerConfig:
    host: str = "0.0.0.0"
    port: int = 18900
    path: str = "/ws"
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    hello_timeout_s: float = 10.0
    ping_interval_s: float = 20
    ping_timeout_s: float = 20
    max_message_bytes: int = 1 << 20
    rate_limit_per_min: int = 0  # 0 disables per-sender limiting
    rate_limit_burst: int = 0


class RelayServer:
    def __init__(
        self,
        cfg: RelayServerConfig | None = None,
        verifier: IdentityVerifier | None = None,
        registry: ConnectionRegistry | None = None,
    ) -> None:
        self.cfg = cfg or RelayServerConfig()
        self.verifier = verifier or IdentityVerifier(self.cfg.jwt_secret, (self.cfg.jwt_algorithm,))
        self.registry = registry or ConnectionRegistry()
        self.presence = PresenceBroadcaster(self.registry)
        self.router = MessageRouter(self.registry)
        self.chat = ChatRelay(self.router)
        self.calls = CallSignalingRelay(self.router, self.registry)
        self.bound_port: int = self.cfg.port
        self._server: Server | None = None
        self._limiter = RateLimiter(self.cfg.rate_limit_per_min, self.cfg.rate_limit_burst or None)
        self._handlers = self._build_handlers()

    def _build_handlers(self) -> dict[EventKind, Handler]:
        handlers: dict[EventKind, Handler] = {
            EventKind.CHAT_MESSAGE: lambda who, ws, kind, ev: self.chat.chat_message(who, ws, ev),
            EventKind.TYPING_START: lambda who, ws, kind, ev: self.chat.typing(who, kind, ev),
            EventKind.TYPING_END: lambda who, ws, kind, ev: self.chat.typing(who, kind, ev),
            EventKind.FRIEND_REQUEST_SENT: lambda who, ws, kind, ev: self.chat.friend_request(who, ev),
            EventKind.INITIATE_CALL: lambda who, ws, kind, ev: self.calls.initiate_call(who, ws, ev),
            EventKind.ACCEPT_CALL: lambda who, ws, kind, ev: self.calls.accept_call(who, ev),
            EventKind.REJECT_CALL: lambda who, ws, kind, ev: self.calls.reject_call(who, ev),
            EventKind.SEND_CAPTION: lambda who, ws, kind, ev: self.calls.send_caption(who, ev),
        }
        for kind in WEBRTC_KINDS:
            handlers[kind] = lambda who, ws, kind, ev: self.calls.signal(who, kind, ev)
        missing = set(EventKind) - set(handlers)
        if missing:
            raise RuntimeError(f"no handler for: {sorted(k.value for k in missing)}")
        return handlers

    async def start(self) -> None:
        self._server = await serve(
            self._handler,
            self.cfg.host,
            self.cfg.port,
            ping_interval=self.cfg.ping_interval_s,
            ping_timeout=self.cfg.ping_timeout_s,
            max_size=self.cfg.max_message_bytes,
        )
        # If port=0 was used, capture the actual bound port for tests/clients.
        try:
            if self._server.sockets:
                self.bound_port = int(list(self._server.sockets)[0].getsockname()[1])
        except Exception:
            self.bound_port = self.cfg.port
        logger.info(f"Relay listening on ws://{self.cfg.host}:{self.bound_port}{self.cfg.path}")

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None

    async def serve_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Future()
        finally:
            await self.stop()

    async def _handler(self, ws: ServerConnection) -> None:
        if self.cfg.path and urlsplit(ws.request.path).path != self.cfg.path:
            await ws.close(code=1008, reason="unknown path")
            return

        try:
            identity = await self._authenticate(ws)
        except AuthError as e:
            logger.warning(f"rejected connection from {ws.remote_address}: {e.message}")
            with contextlib.suppress(Exception):
                await ws.send(make_envelope("auth_error", payload={"code": e.failure.value, "message": e.message}).to_json())
                await ws.close(code=1008, reason=e.failure.value)
            return
        except websockets.ConnectionClosed:
            return

        try:
            await ws.send(make_envelope("auth_ok", payload=identity.to_dict()).to_json())
            await self.presence.join(identity, ws)
            logger.info(f"{identity.display_name} ({identity.user_id}) connected; {len(self.registry)} online")

            async for raw in ws:
                await self._handle_frame(identity, ws, raw)
        except websockets.ConnectionClosed:
            pass
        except Exception as e:
            logger.exception(f"relay handler error for {identity.user_id}: {e}")
        finally:
            removed = await self.presence.leave(identity.user_id, ws)
            if removed is not None:
                logger.info(f"{identity.display_name} ({identity.user_id}) disconnected; {len(self.registry)} online")

    async def _authenticate(self, ws: ServerConnection) -> Identity:
        token = self._token_from_request(ws)
        if token is None:
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=self.cfg.hello_timeout_s)
            except asyncio.TimeoutError:
                raise AuthError(AuthFailure.MISSING, "Authentication error: No token provided") from None
            try:
                env = parse_frame(raw)
            except MalformedEnvelope as e:
                raise AuthError(AuthFailure.MISSING, f"Authentication error: expected auth ({e})") from e
            if env.type != "auth":
                raise AuthError(AuthFailure.MISSING, "Authentication error: expected auth")
            token = (env.payload or {}).get("token")
        return self.verifier.verify(token)

    @staticmethod
    def _token_from_request(ws: ServerConnection) -> str | None:
        query = parse_qs(urlsplit(ws.request.path).query)
        if query.get("token"):
            return query["token"][0]
        auth = ws.request.headers.get("Authorization", "")
        if auth.lower().startswith("bearer "):
            return auth.split(" ", 1)[1].strip() or None
        return None

    async def _handle_frame(self, identity: Identity, ws: ServerConnection, raw: str | bytes) -> None:
        # Parse before the limiter so error replies can echo the request id.
        try:
            env = parse_frame(raw)
        except MalformedEnvelope as e:
            if await self._allow(identity, ws, None):
                await self._reject_malformed(identity, ws, e, None)
            return

        if not await self._allow(identity, ws, env.id):
            return

        if env.type == "ping":
            await ws.send(make_envelope("pong", id=env.id).to_json())
            return
        if env.type == "list_online":
            users = [i.to_dict() for i in self.registry.list_online(exclude=identity.user_id)]
            await ws.send(make_envelope("online_users", id=env.id, payload={"users": users}).to_json())
            return
        if env.type == "auth":
            await self._send_error(ws, "already authenticated", env.id)
            return

        try:
            kind, event = parse_event(env)
        except MalformedEnvelope as e:
            await self._reject_malformed(identity, ws, e, env.id)
            return

        try:
            await self._handlers[kind](identity, ws, kind, event)
        except websockets.ConnectionClosed:
            raise
        except Exception as e:
            logger.exception(f"{kind.value} from {identity.user_id} failed: {e}")

    async def _allow(self, identity: Identity, ws: ServerConnection, env_id: str | None) -> bool:
        if self._limiter.allow(identity.user_id):
            return True
        logger.debug(f"rate limited {identity.user_id}")
        await self._send_error(ws, "rate limited", env_id)
        return False

    async def _reject_malformed(
        self, identity: Identity, ws: ServerConnection, error: MalformedEnvelope, env_id: str | None
    ) -> None:
        logger.warning(f"dropped frame from {identity.user_id}: {error}")
        await self._send_error(ws, str(error), env_id, error.msg_type)

    async def _send_error(self, ws: ServerConnection, message: str, env_id: str | None = None, msg_type: str | None = None) -> None:
        payload: dict[str, Any] = {"message": message}
        if msg_type:
            payload["type"] = msg_type
        kwargs = {"id": env_id} if env_id else {}
        await ws.send(make_envelope("error", payload=payload, **kwargs).to_json())
