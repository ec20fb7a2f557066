from __future__ import annotations

import asyncio
import unittest

from kernel_conformance.config import SuiteSettings
from kernel_conformance.errors import (
    ForbiddenMethod,
    MalformedTarget,
    MethodRequired,
    ModuleError,
    ModuleNotFound,
)
from kernel_conformance.loopback import HelperModule, LoopbackKernel, LoopbackKernelClient, QueryContext, build_kernel
from kernel_conformance.models import Payload

USER_SEED = bytes(range(16))


class _Fetcher:
    def __init__(self, status: int = 200) -> None:
        self.status = status
        self.urls: list[str] = []

    async def __call__(self, url: str) -> int:
        self.urls.append(url)
        return self.status


class LoopbackTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.settings = SuiteSettings(origin="harness.test", message_iterations=3, module_iterations=10)
        self.fetcher = _Fetcher()
        self.kernel = build_kernel(self.settings, user_seed=USER_SEED, fetcher=self.fetcher)
        self.client = LoopbackKernelClient(self.kernel)
        await self.client.init()
        self.test_module = self.settings.test_module
        self.helper_module = self.settings.helper_module

    async def asyncTearDown(self) -> None:
        await self.client.close()


class TestValidation(LoopbackTestCase):
    async def test_missing_module(self) -> None:
        with self.assertRaises(ModuleNotFound):
            await self.client.call(self.settings.missing_module, "viewSeed")

    async def test_malformed_module(self) -> None:
        with self.assertRaises(MalformedTarget):
            await self.client.call(self.settings.malformed_module, "viewSeed")

    async def test_method_is_checked_before_the_target(self) -> None:
        for target in (self.test_module, self.settings.malformed_module, self.settings.missing_module):
            with self.subTest(target=target):
                with self.assertRaises(MethodRequired):
                    await self.client.call(target, None)

    async def test_empty_method_is_rejected(self) -> None:
        with self.assertRaises(MethodRequired):
            await self.client.call(self.test_module, "")

    async def test_present_seed_from_a_page_is_forbidden(self) -> None:
        with self.assertRaises(ForbiddenMethod):
            await self.client.call(self.test_module, "presentSeed", {"seed": [0] * 16})
        errors = await self.client.call(self.test_module, "viewErrors")
        self.assertEqual(errors, {"errors": []})

    async def test_unknown_method_is_a_module_error(self) -> None:
        with self.assertRaises(ModuleError):
            await self.client.call(self.test_module, "doesNotExist")


class TestSeeds(LoopbackTestCase):
    async def test_seed_is_stable_and_sixteen_bytes(self) -> None:
        first = await self.client.call(self.test_module, "viewSeed")
        second = await self.client.call(self.test_module, "viewSeed")
        self.assertEqual(len(first["seed"]), 16)
        self.assertEqual(first, second)
        self.assertEqual(bytes(first["seed"]), self.kernel.seed_for(self.test_module))

    async def test_seeds_differ_per_module_and_per_user(self) -> None:
        tester = self.kernel.seed_for(self.test_module)
        self.assertNotEqual(tester, self.kernel.seed_for(self.helper_module))
        other_user = build_kernel(self.settings, user_seed=bytes(16), fetcher=self.fetcher)
        self.assertNotEqual(tester, other_user.seed_for(self.test_module))

    async def test_helper_seed_is_unique(self) -> None:
        response = await self.client.call(self.test_module, "viewHelperSeed")
        self.assertIn("unique", response["message"])

    async def test_tester_seed_relayed_through_helper(self) -> None:
        response = await self.client.call(self.test_module, "viewOwnSeedThroughHelper")
        self.assertIn("matches", response["message"])

    async def test_module_rejects_a_second_seed(self) -> None:
        await self.client.call(self.test_module, "viewSeed")
        module = self.kernel._modules[self.test_module]
        await self.kernel._load(self.test_module)
        self.assertEqual(module.errors, [])
        self.kernel._loaded.discard(self.test_module)
        with self.assertLogs("kernel_conformance.loopback.modules", level="ERROR"):
            with self.assertRaises(ModuleError):
                await self.kernel._load(self.test_module)
        self.assertEqual(module.errors, ["presentSeed received more than once"])


class TestDomainsAndMessages(LoopbackTestCase):
    async def test_kernel_message(self) -> None:
        self.assertEqual(await self.client.test_message(), {"version": self.kernel.version})
        response = await self.client.call(self.test_module, "sendTestToKernel")
        self.assertEqual(response, {"kernelVersion": self.kernel.version})

    async def test_domain_is_the_page_origin(self) -> None:
        self.assertEqual(await self.client.call(self.test_module, "mirrorDomain"), {"domain": "harness.test"})

    async def test_domain_survives_a_module_hop(self) -> None:
        self.assertEqual(
            await self.client.call(self.test_module, "testerMirrorDomain"),
            {"domain": "harness.test"},
        )

    async def test_client_origin_overrides_kernel_origin(self) -> None:
        client = LoopbackKernelClient(self.kernel, origin="other.test")
        await client.init()
        try:
            self.assertEqual(await client.call(self.test_module, "testerMirrorDomain"), {"domain": "other.test"})
        finally:
            await client.close()

    async def test_logging(self) -> None:
        with self.assertLogs("kernel_conformance.loopback.modules.test_module", level="INFO"):
            await self.client.call(self.test_module, "testLogging")


class TestStreaming(LoopbackTestCase):
    async def test_updates_then_response(self) -> None:
        received: list[object] = []
        _, stream = self.client.connect(self.test_module, "testResponseUpdate", {}, received.append)
        final = await stream.result()
        self.assertEqual(received, [{"eventProgress": 25}, {"eventProgress": 50}, {"eventProgress": 75}])
        self.assertEqual(final, {"eventProgress": 100})
        self.assertEqual([update.data["eventProgress"] async for update in stream], [25, 50, 75])

    async def test_call_ignores_updates(self) -> None:
        self.assertEqual(await self.client.call(self.test_module, "testResponseUpdate"), {"eventProgress": 100})

    async def test_cancel_is_advisory(self) -> None:
        handle, stream = self.client.connect(self.test_module, "testResponseUpdate")
        handle.cancel()
        final = await stream.result()
        self.assertEqual(final, {"eventProgress": 0, "cancelled": True})
        self.assertEqual(stream.updates_received, 0)

    async def test_module_to_module_updates(self) -> None:
        response = await self.client.call(self.test_module, "updateTest")
        self.assertEqual(response, {"updatesReceived": HelperModule.update_steps, "progress": HelperModule.update_steps})


class TestWorkloads(LoopbackTestCase):
    async def test_performance_methods(self) -> None:
        for method in ("callModulePerformanceSequential", "callModulePerformanceParallel"):
            with self.subTest(method=method):
                response = await self.client.call(self.test_module, method, {"iterations": 10})
                self.assertEqual(response, {"iterations": 10})

    async def test_bad_iterations(self) -> None:
        with self.assertRaises(ModuleError):
            await self.client.call(self.test_module, "callModulePerformanceSequential", {"iterations": -1})

    async def test_cors_fetches_every_url(self) -> None:
        response = await self.client.call(self.test_module, "testCORS")
        self.assertEqual(self.fetcher.urls, list(self.settings.cors_urls))
        self.assertEqual(response, {"url": self.settings.cors_urls[-1]})

    async def test_cors_failure(self) -> None:
        self.fetcher.status = 503
        with self.assertRaises(ModuleError):
            await self.client.call(self.test_module, "testCORS")


class TestStorage(LoopbackTestCase):
    async def test_upload_and_download(self) -> None:
        for payload in (b"test data", b"", b"\x00"):
            with self.subTest(payload=payload):
                locator = await self.client.upload("upload.bin", payload)
                self.assertEqual(await self.client.download(locator), payload)

    async def test_download_of_unknown_content(self) -> None:
        with self.assertRaises(ModuleNotFound):
            await self.client.download(self.settings.missing_module)

    async def test_download_of_malformed_locator(self) -> None:
        with self.assertRaises(MalformedTarget):
            await self.client.download("not-a-locator")


class _SeedlessModule(HelperModule):
    def present_seed(self, ctx: QueryContext, data: Payload) -> Payload:
        raise RuntimeError("seed store unavailable")


class TestModuleLoadFailure(unittest.IsolatedAsyncioTestCase):
    async def test_crash_while_presenting_the_seed_settles_the_call(self) -> None:
        settings = SuiteSettings()
        kernel = LoopbackKernel(user_seed=USER_SEED)
        kernel.register(settings.helper_module, _SeedlessModule(test_module=settings.test_module))
        client = LoopbackKernelClient(kernel)
        await client.init()
        try:
            with self.assertLogs("kernel_conformance.loopback.kernel", level="ERROR"):
                with self.assertRaises(ModuleError) as ctx:
                    await asyncio.wait_for(client.call(settings.helper_module, "ping"), timeout=1)
        finally:
            await client.close()
        self.assertIn("RuntimeError", ctx.exception.message)


class TestRegistration(unittest.TestCase):
    def test_duplicate_registration(self) -> None:
        settings = SuiteSettings()
        kernel = LoopbackKernel(user_seed=USER_SEED)
        kernel.register(settings.helper_module, HelperModule(test_module=settings.test_module))
        with self.assertRaises(ValueError):
            kernel.register(settings.helper_module, HelperModule(test_module=settings.test_module))

    def test_malformed_registration(self) -> None:
        kernel = LoopbackKernel(user_seed=USER_SEED)
        with self.assertRaises(MalformedTarget):
            kernel.register("short", HelperModule(test_module=SuiteSettings().test_module))


if __name__ == "__main__":
    unittest.main()
