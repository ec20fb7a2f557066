from __future__ import annotations

import asyncio
import logging

from ..client import CancelHandle, KernelClient, ResponseStream, UpdateCallback
from ..errors import KernelError
from ..models import Payload
from .kernel import PAGE_CALLER, LoopbackKernel

log = logging.getLogger(__name__)


class LoopbackKernelClient(KernelClient):
    """Talks to a :class:`LoopbackKernel` in the same event loop, as a page would."""

    def __init__(self, kernel: LoopbackKernel, *, origin: str | None = None) -> None:
        super().__init__()
        self._kernel = kernel
        self._origin = origin or kernel.origin
        self._tasks: set[asyncio.Task[None]] = set()

    async def init(self) -> None:
        await self._kernel.init()
        self._initialized = True

    async def test_message(self) -> Payload:
        self._require_session()
        return await self._kernel.test_message()

    def _open(
        self,
        module: str,
        method: str | None,
        data: Payload | None,
        *,
        on_update: UpdateCallback | None,
        keep_updates: bool,
    ) -> tuple[CancelHandle, ResponseStream]:
        stream = ResponseStream(on_update=on_update, keep_updates=keep_updates)
        cancelled = asyncio.Event()
        task = asyncio.ensure_future(self._query(stream, module, method, data, cancelled))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return CancelHandle(cancelled.set), stream

    async def _query(
        self,
        stream: ResponseStream,
        module: str,
        method: str | None,
        data: Payload | None,
        cancelled: asyncio.Event,
    ) -> None:
        try:
            response = await self._kernel.call_module(
                caller=PAGE_CALLER,
                domain=self._origin,
                module=module,
                method=method,
                data=data,
                on_update=stream.push_update,
                cancelled=cancelled,
            )
        except KernelError as exc:
            stream.fail(exc)
            return
        stream.finish(response)

    async def upload(self, name: str, payload: bytes) -> str:
        self._require_session()
        return await self._kernel.upload(name, payload)

    async def download(self, locator: str) -> bytes:
        self._require_session()
        return await self._kernel.download(locator)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        await super().close()
