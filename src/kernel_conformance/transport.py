from __future__ import annotations

import asyncio
import base64
import itertools
import json
import logging
from typing import Any

import aiohttp

from .client import CancelHandle, KernelClient, ResponseStream, UpdateCallback
from .errors import KernelError, ModuleError, ProtocolViolation, TransportUnavailable
from .models import Payload, RPCRequest, RPCResponse

log = logging.getLogger(__name__)


def encode_bytes(payload: bytes) -> str:
    return base64.b64encode(payload).decode("ascii")


def decode_bytes(text: Any) -> bytes:
    if not isinstance(text, str):
        raise ProtocolViolation(f"expected base64 text, got {type(text).__name__}")
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except ValueError as exc:
        raise ProtocolViolation(f"payload is not valid base64: {exc}") from exc


class WebSocketKernelClient(KernelClient):
    """
    Kernel client speaking the JSON bridge protocol over a websocket.

    Requests carry a nonce; ``responseUpdate`` and ``response`` frames are
    routed back to the pending stream with the same nonce. Losing the socket
    fails every pending request with ``TransportUnavailable``.
    """

    def __init__(
        self,
        *,
        url: str,
        headers: dict[str, str] | None = None,
        origin: str | None = None,
        connect_timeout_s: float = 10.0,
    ) -> None:
        super().__init__()
        self._url = url
        self._headers = dict(headers or {})
        self._origin = origin
        self._connect_timeout_s = connect_timeout_s
        self._session: aiohttp.ClientSession | None = None
        self._ws: Any = None
        self._reader: asyncio.Task[None] | None = None
        self._pending: dict[str, ResponseStream] = {}
        self._nonces = itertools.count()
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def init(self) -> None:
        if self._ws is None:
            await self._open_socket()
        _, stream = self._request("init", {})
        await stream.result()
        self._initialized = True
        log.info("kernel session established over %s", self._url)

    async def _open_socket(self) -> None:
        self._session = aiohttp.ClientSession(headers=self._headers)
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(self._url, origin=self._origin),
                timeout=self._connect_timeout_s,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            await self._session.close()
            self._session = None
            raise TransportUnavailable(f"could not reach kernel bridge at {self._url}: {exc}") from exc
        self._reader = asyncio.ensure_future(self._read_loop())

    async def _read_loop(self) -> None:
        reason = "bridge connection closed"
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = json.loads(msg.data)
                    except json.JSONDecodeError as exc:
                        log.warning("dropping undecodable frame: %s", exc)
                        continue
                    self.dispatch(frame)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    reason = f"bridge connection error: {self._ws.exception()}"
                    break
        finally:
            self._fail_pending(TransportUnavailable(reason))

    def dispatch(self, frame: Any) -> None:
        if not isinstance(frame, dict):
            log.warning("dropping non-object frame: %r", frame)
            return
        nonce = frame.get("nonce")
        stream = self._pending.get(nonce) if isinstance(nonce, str) else None
        if stream is None:
            log.warning("dropping frame for unknown nonce %r", nonce)
            return
        kind = frame.get("method")
        if kind == "responseUpdate":
            try:
                stream.push_update(frame.get("data"))
            except Exception as exc:
                log.exception("update callback for nonce %s failed", nonce)
                del self._pending[nonce]
                stream.fail(ModuleError(f"update callback failed: {exc.__class__.__name__}: {exc}"))
        elif kind == "response":
            del self._pending[nonce]
            stream.finish(RPCResponse.from_dict(frame))
        else:
            del self._pending[nonce]
            stream.fail(ProtocolViolation(f"unexpected frame method {kind!r}"))

    def _fail_pending(self, error: KernelError) -> None:
        pending, self._pending = self._pending, {}
        for stream in pending.values():
            stream.fail(error)
        self._initialized = False

    def _request(
        self,
        method: str,
        data: Payload,
        *,
        on_update: UpdateCallback | None = None,
        keep_updates: bool = False,
    ) -> tuple[str, ResponseStream]:
        if self._ws is None:
            raise TransportUnavailable("bridge socket is not open")
        nonce = str(next(self._nonces))
        stream = ResponseStream(
            on_update=on_update,
            keep_updates=keep_updates,
            on_abandon=lambda: self._pending.pop(nonce, None),
        )
        self._pending[nonce] = stream
        self._spawn(self._send({"nonce": nonce, "method": method, "data": data}, nonce=nonce))
        return nonce, stream

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, frame: dict[str, Any], *, nonce: str | None = None) -> None:
        try:
            await self._ws.send_json(frame)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
            log.warning("failed to send %s frame: %s", frame.get("method"), exc)
            stream = self._pending.pop(nonce, None) if nonce is not None else None
            if stream is not None:
                stream.fail(TransportUnavailable(f"could not send request: {exc}"))

    async def test_message(self) -> Payload:
        self._require_session()
        _, stream = self._request("testMessage", {})
        return await stream.result()

    def _open(
        self,
        module: str,
        method: str | None,
        data: Payload | None,
        *,
        on_update: UpdateCallback | None,
        keep_updates: bool,
    ) -> tuple[CancelHandle, ResponseStream]:
        request = RPCRequest(target=module, method=method, data=data or {})
        nonce, stream = self._request(
            "moduleCall", request.to_dict(), on_update=on_update, keep_updates=keep_updates
        )
        cancel_frame = {"nonce": nonce, "method": "cancel", "data": {"nonce": nonce}}
        return CancelHandle(lambda: self._spawn(self._send(cancel_frame))), stream

    async def upload(self, name: str, payload: bytes) -> str:
        self._require_session()
        _, stream = self._request("upload", {"name": name, "payload": encode_bytes(payload)})
        response = await stream.result()
        locator = response.get("locator")
        if not isinstance(locator, str):
            raise ProtocolViolation("upload response is missing a locator")
        return locator

    async def download(self, locator: str) -> bytes:
        self._require_session()
        _, stream = self._request("download", {"locator": locator})
        response = await stream.result()
        if "payload" not in response:
            raise ProtocolViolation("download response is missing a payload")
        return decode_bytes(response["payload"])

    async def close(self) -> None:
        await super().close()
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._reader is not None:
            await asyncio.gather(self._reader, return_exceptions=True)
            self._reader = None
        if self._session is not None:
            await self._session.close()
            self._session = None
        self._fail_pending(TransportUnavailable("client closed"))
