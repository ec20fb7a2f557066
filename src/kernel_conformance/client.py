from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Awaitable, Callable, Generator, TypeVar

from .errors import KernelError, ProtocolViolation, TransportUnavailable
from .models import Err, Ok, Payload, RPCResponse, Settled, StreamingUpdate

log = logging.getLogger(__name__)

T = TypeVar("T")

UpdateCallback = Callable[[Any], None]

_FINAL = object()


class ResponseStream:
    """
    Ordered ``responseUpdate`` frames of one query, followed by its terminal response.

    Frames are handed to ``on_update`` synchronously as they arrive, so every
    update is delivered before the terminal response can be observed. Iterating
    the stream yields the same frames and stops at the terminal marker.
    """

    def __init__(
        self,
        *,
        on_update: UpdateCallback | None = None,
        keep_updates: bool = True,
        on_abandon: Callable[[], Any] | None = None,
    ) -> None:
        loop = asyncio.get_running_loop()
        self._final: asyncio.Future[RPCResponse] = loop.create_future()
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._on_update = on_update
        self._on_abandon = on_abandon
        self._keep_updates = keep_updates
        self._sequence = 0
        self._closed = False

    @property
    def done(self) -> bool:
        return self._closed

    @property
    def updates_received(self) -> int:
        return self._sequence

    def push_update(self, data: Any) -> None:
        if self._closed:
            raise ProtocolViolation("responseUpdate received after the terminal response")
        update = StreamingUpdate(sequence=self._sequence, data=data)
        self._sequence += 1
        if self._on_update is not None:
            self._on_update(data)
        if self._keep_updates:
            self._queue.put_nowait(update)

    def finish(self, response: RPCResponse) -> None:
        if self._closed:
            raise ProtocolViolation("duplicate terminal response")
        self._closed = True
        self._queue.put_nowait(_FINAL)
        self._final.set_result(response)

    def fail(self, error: KernelError) -> None:
        self.finish(RPCResponse.failure(error))

    async def response(self) -> RPCResponse:
        try:
            return await asyncio.shield(self._final)
        except asyncio.CancelledError:
            # the awaiting check was cancelled, e.g. by the stall watchdog
            if not self._closed and self._on_abandon is not None:
                self._on_abandon()
            raise

    async def result(self) -> Payload:
        response = await self.response()
        return response.unwrap()

    def __await__(self) -> Generator[Any, None, Payload]:
        return self.result().__await__()

    def __aiter__(self) -> AsyncIterator[StreamingUpdate]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamingUpdate]:
        while True:
            item = await self._queue.get()
            if item is _FINAL:
                return
            yield item


class CancelHandle:
    """Advisory cancellation: tells the transport, never settles the stream."""

    def __init__(self, callback: Callable[[], None] | None = None) -> None:
        self._callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self._callback is not None:
            self._callback()

    def __call__(self) -> None:
        self.cancel()


class KernelClient(ABC):
    """Client side of the kernel RPC contract."""

    def __init__(self) -> None:
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def _require_session(self) -> None:
        if not self._initialized:
            raise TransportUnavailable("session not established; init() must succeed first")

    @abstractmethod
    async def init(self) -> None:
        ...

    @abstractmethod
    async def test_message(self) -> Payload:
        ...

    def connect(
        self,
        module: str,
        method: str | None,
        data: Payload | None = None,
        on_update: UpdateCallback | None = None,
    ) -> tuple[CancelHandle, ResponseStream]:
        self._require_session()
        return self._open(module, method, data, on_update=on_update, keep_updates=True)

    async def call(self, module: str, method: str | None, data: Payload | None = None) -> Payload:
        self._require_session()
        # streaming frames are dropped; only the terminal response is collected
        _, stream = self._open(module, method, data, on_update=None, keep_updates=False)
        return await stream.result()

    @abstractmethod
    def _open(
        self,
        module: str,
        method: str | None,
        data: Payload | None,
        *,
        on_update: UpdateCallback | None,
        keep_updates: bool,
    ) -> tuple[CancelHandle, ResponseStream]:
        ...

    @abstractmethod
    async def upload(self, name: str, payload: bytes) -> str:
        ...

    @abstractmethod
    async def download(self, locator: str) -> bytes:
        ...

    async def close(self) -> None:
        self._initialized = False

    async def __aenter__(self) -> "KernelClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()


async def settle(awaitable: Awaitable[T]) -> Settled[T]:
    """Turn a contract call into ``Ok(value)`` or ``Err(error)``."""

    try:
        value = await awaitable
    except KernelError as exc:
        return Err(exc)
    return Ok(value)
