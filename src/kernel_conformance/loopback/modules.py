from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from ..errors import ForbiddenMethod, ModuleError
from ..models import Payload
from .kernel import KERNEL_CALLER, SEED_SIZE, QueryContext

Handler = Callable[[QueryContext, Payload], Awaitable[Payload]]


def _as_seed(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, list) and all(isinstance(b, int) and 0 <= b < 256 for b in value):
        return bytes(value)
    raise ModuleError(f"seed has unexpected shape: {type(value).__name__}")


def _iterations(data: Payload) -> int:
    value = data.get("iterations", 0)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ModuleError(f"iterations must be a non-negative integer, got {value!r}")
    return value


class KernelModule:
    name = "module"

    def __init__(self) -> None:
        self.seed: bytes | None = None
        self.errors: list[str] = []
        self.log = logging.getLogger(f"{__name__}.{self.name}")
        self._methods: dict[str, Handler] = {
            "viewSeed": self.view_seed,
            "viewErrors": self.view_errors,
            "mirrorDomain": self.mirror_domain,
        }

    def _error(self, message: str) -> None:
        self.log.error(message)
        self.errors.append(message)

    async def handle(self, ctx: QueryContext, method: str, data: Payload) -> Payload:
        if method == "presentSeed":
            return self.present_seed(ctx, data)
        handler = self._methods.get(method)
        if handler is None:
            raise ModuleError(f"unrecognized method {method!r}")
        return await handler(ctx, data)

    def present_seed(self, ctx: QueryContext, data: Payload) -> Payload:
        if ctx.caller != KERNEL_CALLER:
            self._error(f"presentSeed received from {ctx.caller}")
            raise ForbiddenMethod("presentSeed may only be called by the kernel")
        if self.seed is not None:
            self._error("presentSeed received more than once")
            raise ModuleError("seed was already presented")
        seed = _as_seed(data.get("seed"))
        if len(seed) != SEED_SIZE:
            self._error(f"presented seed has length {len(seed)}")
            raise ModuleError("presented seed has a non-standard length")
        self.seed = seed
        return {}

    def _own_seed(self) -> bytes:
        if self.seed is None:
            raise ModuleError("seed has not been presented")
        return self.seed

    async def view_seed(self, ctx: QueryContext, data: Payload) -> Payload:
        return {"seed": list(self._own_seed())}

    async def view_errors(self, ctx: QueryContext, data: Payload) -> Payload:
        return {"errors": list(self.errors)}

    async def mirror_domain(self, ctx: QueryContext, data: Payload) -> Payload:
        return {"domain": ctx.domain}


class TestModule(KernelModule):
    name = "test_module"
    __test__ = False

    def __init__(self, *, helper_module: str, cors_urls: list[str] | None = None) -> None:
        super().__init__()
        self.helper_module = helper_module
        self.cors_urls = list(cors_urls or [])
        self._methods.update(
            {
                "testLogging": self.test_logging,
                "sendTestToKernel": self.send_test_to_kernel,
                "viewHelperSeed": self.view_helper_seed,
                "viewOwnSeedThroughHelper": self.view_own_seed_through_helper,
                "testerMirrorDomain": self.tester_mirror_domain,
                "testResponseUpdate": self.test_response_update,
                "updateTest": self.update_test,
                "testCORS": self.test_cors,
                "callModulePerformanceSequential": self.perf_sequential,
                "callModulePerformanceParallel": self.perf_parallel,
            }
        )

    async def test_logging(self, ctx: QueryContext, data: Payload) -> Payload:
        self.log.info("test module logging check (domain=%s)", ctx.domain)
        return {}

    async def send_test_to_kernel(self, ctx: QueryContext, data: Payload) -> Payload:
        response = await ctx.test_message()
        return {"kernelVersion": response.get("version")}

    async def view_helper_seed(self, ctx: QueryContext, data: Payload) -> Payload:
        response = await ctx.call(self.helper_module, "viewSeed")
        helper_seed = _as_seed(response.get("seed"))
        if len(helper_seed) != SEED_SIZE:
            self._error(f"helper seed has length {len(helper_seed)}")
            raise ModuleError("helper module returned a seed with a non-standard length")
        if helper_seed == self._own_seed():
            self._error("helper module shares the tester seed")
            raise ModuleError("helper module seed is not unique")
        return {"message": "helper module has a unique seed of the standard length"}

    async def view_own_seed_through_helper(self, ctx: QueryContext, data: Payload) -> Payload:
        response = await ctx.call(self.helper_module, "viewTesterSeed")
        relayed = _as_seed(response.get("seed"))
        if relayed != self._own_seed():
            self._error("seed relayed by helper does not match tester seed")
            raise ModuleError("seed relayed by helper does not match")
        return {"message": "tester seed relayed through helper matches"}

    async def tester_mirror_domain(self, ctx: QueryContext, data: Payload) -> Payload:
        response = await ctx.call(self.helper_module, "mirrorDomain")
        return {"domain": response.get("domain")}

    async def test_response_update(self, ctx: QueryContext, data: Payload) -> Payload:
        progress = 0
        for step in (25, 50, 75):
            if ctx.cancelled.is_set():
                return {"eventProgress": progress, "cancelled": True}
            ctx.update({"eventProgress": step})
            progress = step
            await asyncio.sleep(0)
        return {"eventProgress": 100}

    async def update_test(self, ctx: QueryContext, data: Payload) -> Payload:
        received: list[Any] = []
        final = await ctx.connect(self.helper_module, "updateTest", {}, on_update=received.append)
        expected = [{"progress": i} for i in range(1, len(received) + 1)]
        if received != expected:
            self._error(f"helper updates arrived out of order: {received}")
            raise ModuleError("helper updates arrived out of order")
        if final.get("progress") != len(received):
            self._error("helper response arrived before its updates completed")
            raise ModuleError("helper response preceded its updates")
        return {"updatesReceived": len(received), "progress": final.get("progress")}

    async def test_cors(self, ctx: QueryContext, data: Payload) -> Payload:
        if not self.cors_urls:
            raise ModuleError("no CORS probe urls configured")
        last = None
        for url in self.cors_urls:
            status = await ctx.fetch(url)
            if status >= 400:
                raise ModuleError(f"fetch of {url} returned HTTP {status}")
            last = url
        return {"url": last}

    async def perf_sequential(self, ctx: QueryContext, data: Payload) -> Payload:
        iterations = _iterations(data)
        for _ in range(iterations):
            await ctx.call(self.helper_module, "ping")
        return {"iterations": iterations}

    async def perf_parallel(self, ctx: QueryContext, data: Payload) -> Payload:
        iterations = _iterations(data)
        await asyncio.gather(*(ctx.call(self.helper_module, "ping") for _ in range(iterations)))
        return {"iterations": iterations}


class HelperModule(KernelModule):
    name = "helper_module"
    update_steps = 3

    def __init__(self, *, test_module: str) -> None:
        super().__init__()
        self.test_module = test_module
        self._methods.update(
            {
                "viewTesterSeed": self.view_tester_seed,
                "ping": self.ping,
                "updateTest": self.update_test,
            }
        )

    async def view_tester_seed(self, ctx: QueryContext, data: Payload) -> Payload:
        response = await ctx.call(self.test_module, "viewSeed")
        return {"seed": response.get("seed")}

    async def ping(self, ctx: QueryContext, data: Payload) -> Payload:
        return {}

    async def update_test(self, ctx: QueryContext, data: Payload) -> Payload:
        for step in range(1, self.update_steps + 1):
            ctx.update({"progress": step})
            await asyncio.sleep(0)
        return {"progress": self.update_steps}
