from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import aiohttp

from ..errors import (
    ForbiddenMethod,
    KernelError,
    MethodRequired,
    ModuleError,
    ModuleNotFound,
)
from ..identifiers import ModuleIdentifier
from ..models import Payload, RPCResponse

if TYPE_CHECKING:
    from .modules import KernelModule

log = logging.getLogger(__name__)

KERNEL_VERSION = "v0.3.0-loopback"
KERNEL_CALLER = "kernel"
PAGE_CALLER = "page"
PRIVILEGED_METHODS = frozenset({"presentSeed"})
SEED_SIZE = 16

Fetcher = Callable[[str], Awaitable[int]]
UpdateSink = Callable[[Any], None]


async def aiohttp_fetch(url: str) -> int:
    async with aiohttp.ClientSession() as session:
        async with session.get(url) as response:
            return response.status


class QueryContext:
    """What a module sees while it handles one call."""

    def __init__(
        self,
        *,
        kernel: "LoopbackKernel",
        module_id: str,
        caller: str,
        domain: str,
        on_update: UpdateSink | None = None,
        cancelled: asyncio.Event | None = None,
    ) -> None:
        self.kernel = kernel
        self.module_id = module_id
        self.caller = caller
        self.domain = domain
        self._on_update = on_update
        self.cancelled = cancelled or asyncio.Event()

    def update(self, data: Any) -> None:
        if self._on_update is not None:
            self._on_update(data)

    async def call(self, module: str, method: str, data: Payload | None = None) -> Payload:
        response = await self.kernel.call_module(
            caller=self.module_id,
            domain=self.domain,
            module=module,
            method=method,
            data=data,
        )
        return response.unwrap()

    async def connect(
        self,
        module: str,
        method: str,
        data: Payload | None = None,
        *,
        on_update: UpdateSink,
    ) -> Payload:
        response = await self.kernel.call_module(
            caller=self.module_id,
            domain=self.domain,
            module=module,
            method=method,
            data=data,
            on_update=on_update,
        )
        return response.unwrap()

    async def test_message(self) -> Payload:
        return await self.kernel.test_message()

    async def fetch(self, url: str) -> int:
        return await self.kernel.fetch(url)


class LoopbackKernel:
    """
    In-process kernel honouring the client-facing RPC contract.

    Calls are validated in a fixed order before dispatch: missing method,
    malformed target, unknown target, then privileged methods. Domain
    attribution of the root caller is carried unchanged through module hops.
    """

    def __init__(
        self,
        *,
        origin: str = "localhost",
        user_seed: bytes | None = None,
        fetcher: Fetcher | None = None,
        version: str = KERNEL_VERSION,
    ) -> None:
        self.origin = origin
        self.version = version
        self._user_seed = user_seed if user_seed is not None else os.urandom(SEED_SIZE)
        self._fetcher = fetcher or aiohttp_fetch
        self._modules: dict[str, "KernelModule"] = {}
        self._loaded: set[str] = set()
        self._storage: dict[str, bytes] = {}

    def register(self, module_id: str, module: "KernelModule") -> None:
        ModuleIdentifier.parse(module_id)
        if module_id in self._modules:
            raise ValueError(f"Module already registered: {module_id}")
        self._modules[module_id] = module

    def seed_for(self, module_id: str) -> bytes:
        return hashlib.blake2b(module_id.encode("ascii"), key=self._user_seed, digest_size=SEED_SIZE).digest()

    async def init(self) -> None:
        log.info("loopback kernel %s ready for origin %s", self.version, self.origin)

    async def test_message(self) -> Payload:
        return {"version": self.version}

    async def fetch(self, url: str) -> int:
        return await self._fetcher(url)

    async def call_module(
        self,
        *,
        caller: str,
        domain: str,
        module: Any,
        method: Any,
        data: Payload | None = None,
        on_update: UpdateSink | None = None,
        cancelled: asyncio.Event | None = None,
    ) -> RPCResponse:
        try:
            target = self._resolve(caller=caller, module=module, method=method)
        except KernelError as exc:
            log.debug("rejected %s.%s from %s: %s", module, method, caller, exc)
            return RPCResponse.failure(exc)

        ctx = QueryContext(
            kernel=self,
            module_id=target,
            caller=caller,
            domain=domain,
            on_update=on_update,
            cancelled=cancelled,
        )
        try:
            instance = await self._load(target)
            result = await instance.handle(ctx, method, data or {})
        except KernelError as exc:
            return RPCResponse.failure(exc)
        except Exception as exc:
            log.exception("module %s failed while handling %s", target, method)
            return RPCResponse.failure(ModuleError(f"{exc.__class__.__name__}: {exc}"))
        return RPCResponse(data=result or {})

    def _resolve(self, *, caller: str, module: Any, method: Any) -> str:
        if method is None:
            raise MethodRequired("moduleCall requires a method field")
        if not isinstance(method, str) or not method:
            raise MethodRequired(f"method must be a non-empty string, got {method!r}")
        target = ModuleIdentifier.parse(module).text
        if target not in self._modules:
            raise ModuleNotFound(f"no module resolves for {target}")
        if method in PRIVILEGED_METHODS and caller != KERNEL_CALLER:
            raise ForbiddenMethod(f"{method} may only be called by the kernel")
        return target

    async def _load(self, module_id: str) -> "KernelModule":
        instance = self._modules[module_id]
        if module_id not in self._loaded:
            self._loaded.add(module_id)
            ctx = QueryContext(kernel=self, module_id=module_id, caller=KERNEL_CALLER, domain=self.origin)
            await instance.handle(ctx, "presentSeed", {"seed": list(self.seed_for(module_id))})
        return instance

    async def upload(self, name: str, payload: bytes) -> str:
        locator = ModuleIdentifier.from_content(payload).text
        self._storage[locator] = bytes(payload)
        log.debug("stored %s (%d bytes) as %s", name, len(payload), locator)
        return locator

    async def download(self, locator: str) -> bytes:
        key = ModuleIdentifier.parse(locator).text
        if key not in self._storage:
            raise ModuleNotFound(f"no content stored under {key}")
        return self._storage[key]
