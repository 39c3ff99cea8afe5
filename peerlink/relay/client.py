from __future__ import annotations

import asyncio
import contextlib
from typing import Any
from urllib.parse import urlencode

from loguru import logger

import websockets
from websockets.asyncio.client import ClientConnection, connect

from peerlink.relay.protocol import Envelope, make_envelope


class RelayAuthError(RuntimeError):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class RelayClient:
    """Thin async client for the relay.

    Frames pushed by the relay (presence, relayed events, receipts) land in
    `inbox`; replies to `request()` are matched by envelope id.
    """

    def __init__(self, *, url: str, token: str, request_timeout_s: float = 10.0) -> None:
        self.url = url.rstrip("/")
        self.token = token
        self.request_timeout_s = request_timeout_s
        self.identity: dict[str, Any] = {}

        self._ws: ClientConnection | None = None
        self._recv_task: asyncio.Task[None] | None = None
        self._pending: dict[str, asyncio.Future[Envelope]] = {}
        self.inbox: asyncio.Queue[Envelope] = asyncio.Queue()

    async def connect(self) -> None:
        if self._ws is not None:
            return
        sep = "&" if "?" in self.url else "?"
        self._ws = await connect(f"{self.url}{sep}{urlencode({'token': self.token})}")
        env = Envelope.from_json(await self._ws.recv())
        if env.type == "auth_error":
            await self._ws.close()
            self._ws = None
            raise RelayAuthError(env.payload.get("code", ""), env.payload.get("message", "auth failed"))
        if env.type != "auth_ok":
            await self._ws.close()
            self._ws = None
            raise RuntimeError(f"relay rejected connection: {env.type}")
        self.identity = dict(env.payload)
        self._recv_task = asyncio.create_task(self._recv_loop(self._ws))

    async def close(self) -> None:
        if self._recv_task:
            self._recv_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await self._recv_task
            self._recv_task = None
        if self._ws:
            await self._ws.close()
            self._ws = None

    async def __aenter__(self) -> "RelayClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def send(self, msg_type: str, **payload: Any) -> Envelope:
        if not self._ws:
            raise RuntimeError("not connected")
        env = make_envelope(msg_type, payload=payload)
        await self._ws.send(env.to_json())
        return env

    async def request(self, msg_type: str, payload: dict[str, Any] | None = None) -> Envelope:
        if not self._ws or (self._recv_task is not None and self._recv_task.done()):
            raise RuntimeError("not connected")
        env = make_envelope(msg_type, payload=payload or {})
        fut: asyncio.Future[Envelope] = asyncio.get_running_loop().create_future()
        self._pending[env.id] = fut
        await self._ws.send(env.to_json())
        try:
            return await asyncio.wait_for(fut, timeout=self.request_timeout_s)
        finally:
            self._pending.pop(env.id, None)

    async def list_online(self) -> list[dict[str, Any]]:
        resp = await self.request("list_online")
        return (resp.payload or {}).get("users", [])

    async def ping(self) -> None:
        await self.request("ping")

    async def next_event(self, *types: str, timeout: float = 5.0) -> Envelope:
        """Next pushed frame, skipping anything whose type is not in `types`."""
        async def _next() -> Envelope:
            while True:
                env = await self.inbox.get()
                if not types or env.type in types:
                    return env

        return await asyncio.wait_for(_next(), timeout=timeout)

    async def _recv_loop(self, ws: ClientConnection) -> None:
        error: Exception = ConnectionError("relay connection closed")
        try:
            async for raw in ws:
                try:
                    env = Envelope.from_json(raw)
                except Exception as e:
                    logger.warning(f"relay client: dropped unparseable frame ({e})")
                    continue
                fut = self._pending.pop(env.id, None)
                if fut is not None and not fut.done():
                    fut.set_result(env)
                    continue
                await self.inbox.put(env)
        except websockets.ConnectionClosed as e:
            logger.warning(f"relay client: connection closed ({e})")
            error = e
        finally:
            self._fail_pending(error)

    def _fail_pending(self, error: Exception) -> None:
        pending, self._pending = self._pending, {}
        for fut in pending.values():
            if not fut.done():
                fut.set_exception(error)
