from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable
from urllib.parse import urlsplit

from fastapi import APIRouter, Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.security.api_key import APIKeyHeader

from . import __version__
from .errors import KernelError, ProtocolViolation
from .loopback.kernel import PAGE_CALLER, LoopbackKernel
from .models import Payload, RPCRequest
from .transport import decode_bytes, encode_bytes

log = logging.getLogger(__name__)

POLICY_VIOLATION = 1008


def api_key_dependency(api_key: str, *, header_name: str = "X-API-Key") -> Callable[..., Any]:
    header = APIKeyHeader(name=header_name, auto_error=False)

    async def _require_key(key: str | None = Depends(header)) -> None:
        if key != api_key:
            raise HTTPException(status_code=401, detail="Invalid API key")

    return _require_key


def attributed_domain(origin_header: str | None, default: str) -> str:
    if not origin_header:
        return default
    host = urlsplit(origin_header).hostname
    return host or default


class BridgeSession:
    """One websocket page session multiplexing nonce-tagged queries onto a kernel."""

    def __init__(self, kernel: LoopbackKernel, websocket: WebSocket, *, domain: str) -> None:
        self._kernel = kernel
        self._ws = websocket
        self.domain = domain
        self._outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._cancels: dict[str, asyncio.Event] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    async def serve(self) -> None:
        writer = asyncio.ensure_future(self._write_loop())
        try:
            while True:
                try:
                    frame = await self._ws.receive_json()
                except WebSocketDisconnect:
                    break
                except ValueError as exc:
                    log.warning("dropping undecodable frame: %s", exc)
                    continue
                self._accept(frame)
        finally:
            for task in list(self._tasks):
                task.cancel()
            writer.cancel()
            await asyncio.gather(writer, *self._tasks, return_exceptions=True)
            log.info("bridge session for %s closed", self.domain)

    async def _write_loop(self) -> None:
        while True:
            frame = await self._outbox.get()
            await self._ws.send_json(frame)

    def _accept(self, frame: Any) -> None:
        if not isinstance(frame, dict) or not isinstance(frame.get("nonce"), str):
            log.warning("dropping frame without a nonce: %r", frame)
            return
        nonce = frame["nonce"]
        method = frame.get("method")
        data = frame.get("data") if isinstance(frame.get("data"), dict) else {}
        if method == "cancel":
            event = self._cancels.get(data.get("nonce", nonce))
            if event is not None:
                event.set()
            return
        task = asyncio.ensure_future(self._handle(nonce, method, data))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _respond(self, nonce: str, body: dict[str, Any]) -> None:
        self._outbox.put_nowait({"nonce": nonce, "method": "response", **body})

    async def _handle(self, nonce: str, method: Any, data: Payload) -> None:
        try:
            result = await self._dispatch(nonce, method, data)
        except KernelError as exc:
            self._respond(nonce, {"err": exc.to_wire()})
            return
        self._respond(nonce, {"data": result})

    async def _dispatch(self, nonce: str, method: Any, data: Payload) -> Payload:
        if method == "init":
            await self._kernel.init()
            return {}
        if method == "testMessage":
            return await self._kernel.test_message()
        if method == "moduleCall":
            return await self._module_call(nonce, RPCRequest.from_dict(data))
        if method == "upload":
            locator = await self._kernel.upload(str(data.get("name", "")), decode_bytes(data.get("payload")))
            return {"locator": locator}
        if method == "download":
            payload = await self._kernel.download(data.get("locator"))  # type: ignore[arg-type]
            return {"payload": encode_bytes(payload)}
        raise ProtocolViolation(f"unknown bridge method {method!r}")

    async def _module_call(self, nonce: str, request: RPCRequest) -> Payload:
        def on_update(update: Any) -> None:
            self._outbox.put_nowait({"nonce": nonce, "method": "responseUpdate", "data": update})

        cancelled = self._cancels[nonce] = asyncio.Event()
        try:
            response = await self._kernel.call_module(
                caller=PAGE_CALLER,
                domain=self.domain,
                module=request.target,
                method=request.method,
                data=request.data,
                on_update=on_update,
                cancelled=cancelled,
            )
        finally:
            self._cancels.pop(nonce, None)
        return response.unwrap()


def build_app(
    *,
    kernel: LoopbackKernel,
    title: str = "kernel-bridge",
    api_key: str | None = None,
    api_key_header: str = "X-API-Key",
) -> FastAPI:
    app = FastAPI(title=title, version=__version__)
    router = APIRouter()

    @router.get("/v1/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "kernel_version": kernel.version}

    if api_key:
        dependency = api_key_dependency(api_key, header_name=api_key_header)
        app.include_router(router, dependencies=[Depends(dependency)])
    else:
        app.include_router(router)

    @app.websocket("/bridge")
    async def bridge(websocket: WebSocket) -> None:
        if api_key and websocket.headers.get(api_key_header) != api_key:
            await websocket.close(code=POLICY_VIOLATION)
            return
        await websocket.accept()
        domain = attributed_domain(websocket.headers.get("origin"), kernel.origin)
        await BridgeSession(kernel, websocket, domain=domain).serve()

    return app
