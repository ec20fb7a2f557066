from __future__ import annotations

from typing import Any

from .client import KernelClient, settle
from .config import SuiteSettings
from .errors import (
    DataIntegrityMismatch,
    ForbiddenMethod,
    KernelError,
    MalformedTarget,
    MethodRequired,
    ModuleError,
    ModuleNotFound,
    ProtocolViolation,
    UnexpectedSuccess,
)
from .models import Err
from .scheduler import TestCase
from .schemas import SchemaRegistry, registry as default_registry

SEED_LENGTH = 16
UPLOAD_PAYLOADS: tuple[bytes, ...] = (b"test data", b"", b"\x00")


def _expect_rejection(settled: Any, expected: type[KernelError], *, what: str) -> str:
    if not isinstance(settled, Err):
        raise UnexpectedSuccess(f"{what} was expected to fail with {expected.code}, got {settled.value!r}")
    if not isinstance(settled.error, expected):
        raise ProtocolViolation(
            f"{what} was expected to fail with {expected.code}, got {settled.code}: {settled.error.message}"
        )
    return f"received expected error: {settled.error}"


class KernelSuite:
    """
    The ordered kernel contract checks.

    Every check is a coroutine returning a short success message; contract
    violations are raised as :class:`KernelError` subclasses so the case
    boundary can turn them into a Failure.
    """

    def __init__(
        self,
        client: KernelClient,
        settings: SuiteSettings,
        *,
        schemas: SchemaRegistry | None = None,
    ) -> None:
        self._client = client
        self._settings = settings
        self._schemas = schemas or default_registry

    def cases(self) -> list[TestCase]:
        return [
            TestCase("TestLibkernelInit", self._check_init),
            TestCase("TestSendTestMessage", self._check_test_message),
            TestCase("TestModuleHasSeed", self._check_module_has_seed),
            TestCase("TestModuleLogging", self._check_module_logging),
            TestCase("TestModuleMissingModule", self._check_missing_module),
            TestCase("TestModuleMalformedModule", self._check_malformed_module),
            TestCase("TestModulePresentSeed", self._check_present_seed),
            TestCase("TestModuleQueryKernel", self._check_query_kernel),
            TestCase("TestModuleCheckHelperSeed", self._check_helper_seed),
            TestCase("TestViewTesterSeedByHelper", self._check_tester_seed_by_helper),
            TestCase("TestMirrorDomain", self._check_mirror_domain),
            TestCase("TestTesterMirrorDomain", self._check_tester_mirror_domain),
            TestCase("TestMethodFieldRequired", self._check_method_required),
            TestCase("TestResponseUpdates", self._check_response_updates),
            TestCase("TestModuleUpdateQuery", self._check_update_query),
            TestCase("TestIgnoreResponseUpdates", self._check_ignore_response_updates),
            TestCase("TestBasicCORS", self._check_basic_cors),
            TestCase("TestSecureUploadAndDownload", self._check_upload_download),
            TestCase("TestMsgSpeedSequential5k", self._check_sequential_messages),
            TestCase("TestModuleSpeedSeq20k", self._check_module_speed_sequential),
            TestCase("TestModuleSpeedParallel20k", self._check_module_speed_parallel),
            TestCase("TestModuleHasErrors", self._check_test_module_errors),
            TestCase("TestHelperModuleHasErrors", self._check_helper_module_errors),
        ]

    async def _call(self, module: str, method: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
        response = await self._client.call(module, method, data or {})
        return self._schemas.expect(response, schema=method)

    async def _check_init(self) -> str:
        await self._client.init()
        return "kernel session established"

    async def _check_test_message(self) -> Any:
        return await self._client.test_message()

    async def _check_module_has_seed(self) -> str:
        first = await self._call(self._settings.test_module, "viewSeed")
        seed = bytes(first["seed"])
        if len(seed) != SEED_LENGTH:
            raise ProtocolViolation(f"viewSeed returned a seed of {len(seed)} bytes, expected {SEED_LENGTH}")
        second = await self._call(self._settings.test_module, "viewSeed")
        if bytes(second["seed"]) != seed:
            raise DataIntegrityMismatch("viewSeed returned a different seed on the second query")
        return "viewSeed returned a stable seed of the standard length"

    async def _check_module_logging(self) -> str:
        await self._client.call(self._settings.test_module, "testLogging", {})
        return "test module has produced logs"

    async def _check_missing_module(self) -> str:
        settled = await settle(self._client.call(self._settings.missing_module, "viewSeed", {}))
        return _expect_rejection(settled, ModuleNotFound, what="call to a non-existent module")

    async def _check_malformed_module(self) -> str:
        settled = await settle(self._client.call(self._settings.malformed_module, "viewSeed", {}))
        return _expect_rejection(settled, MalformedTarget, what="call to a malformed module identifier")

    async def _check_present_seed(self) -> str:
        fake_seed = [0] * SEED_LENGTH
        settled = await settle(self._client.call(self._settings.test_module, "presentSeed", {"seed": fake_seed}))
        return _expect_rejection(settled, ForbiddenMethod, what="presentSeed from a page")

    async def _check_query_kernel(self) -> str:
        response = await self._call(self._settings.test_module, "sendTestToKernel")
        return response["kernelVersion"]

    async def _check_helper_seed(self) -> str:
        response = await self._call(self._settings.test_module, "viewHelperSeed")
        return response["message"]

    async def _check_tester_seed_by_helper(self) -> str:
        response = await self._call(self._settings.test_module, "viewOwnSeedThroughHelper")
        return response["message"]

    def _expect_origin(self, domain: str) -> str:
        if domain != self._settings.origin:
            raise DataIntegrityMismatch(f"wrong domain; expected: {self._settings.origin} got: {domain}")
        return f"got expected domain: {domain}"

    async def _check_mirror_domain(self) -> str:
        response = await self._call(self._settings.test_module, "mirrorDomain")
        return self._expect_origin(response["domain"])

    async def _check_tester_mirror_domain(self) -> str:
        response = await self._call(self._settings.test_module, "testerMirrorDomain")
        return self._expect_origin(response["domain"])

    async def _check_method_required(self) -> str:
        for target in (self._settings.test_module, self._settings.malformed_module):
            settled = await settle(self._client.call(target, None, {}))
            _expect_rejection(settled, MethodRequired, what=f"call to {target} without a method")
        return "kernel rejected calls without a method for valid and malformed targets"

    async def _check_response_updates(self) -> str:
        progress = 0
        violations: list[str] = []

        def receive_update(data: Any) -> None:
            nonlocal progress
            errors = self._schemas.validate(data, schema="testResponseUpdate.update")
            if errors:
                violations.append("update did not match schema: " + "; ".join(errors))
                return
            if data["eventProgress"] != progress + 25:
                violations.append(
                    f"progress messages arrived out of order: {data['eventProgress']} after {progress}"
                )
                return
            progress += 25

        _, stream = self._client.connect(self._settings.test_module, "testResponseUpdate", {}, receive_update)
        response = self._schemas.expect(await stream.result(), schema="testResponseUpdate")
        if violations:
            raise ProtocolViolation("; ".join(violations))
        if progress != 75:
            raise ProtocolViolation(f"response was received before updates completed (progress={progress})")
        if response["eventProgress"] != 100:
            raise ProtocolViolation(f"expected final eventProgress 100, got {response['eventProgress']}")
        return "received all updates in order and the final message was a response"

    async def _check_update_query(self) -> Any:
        return await self._client.call(self._settings.test_module, "updateTest", {})

    async def _check_ignore_response_updates(self) -> str:
        response = await self._call(self._settings.test_module, "testResponseUpdate")
        if response["eventProgress"] != 100:
            raise ProtocolViolation(f"expected final eventProgress 100, got {response['eventProgress']}")
        return "received the final response of a streaming method through call"

    async def _check_basic_cors(self) -> str:
        response = await self._call(self._settings.test_module, "testCORS")
        return f"CORS test passed for url: {response['url']}"

    async def _check_upload_download(self) -> list[str]:
        locators: list[str] = []
        for index, payload in enumerate(UPLOAD_PAYLOADS):
            locator = await self._client.upload(f"testUpload{index}.txt", payload)
            downloaded = await self._client.download(locator)
            if len(downloaded) != len(payload) or downloaded != payload:
                raise DataIntegrityMismatch(
                    f"uploaded and downloaded data differ: uploaded={payload!r} downloaded={downloaded!r}"
                )
            locators.append(locator)
        return locators

    async def _check_sequential_messages(self) -> str:
        settled = 0
        for _ in range(self._settings.message_iterations):
            await self._client.test_message()
            settled += 1
        return f"all {settled} messages resolved"

    async def _check_module_speed_sequential(self) -> str:
        await self._client.call(
            self._settings.test_module,
            "callModulePerformanceSequential",
            {"iterations": self._settings.module_iterations},
        )
        return "sequential messages succeeded"

    async def _check_module_speed_parallel(self) -> str:
        await self._client.call(
            self._settings.test_module,
            "callModulePerformanceParallel",
            {"iterations": self._settings.module_iterations},
        )
        return "parallel messages succeeded"

    async def _module_errors(self, module: str, label: str) -> str:
        response = await self._call(module, "viewErrors")
        if response["errors"]:
            raise ModuleError(f"{label} has accumulated errors: {response['errors']}")
        return f"{label} did not accumulate any errors"

    async def _check_test_module_errors(self) -> str:
        return await self._module_errors(self._settings.test_module, "test module")

    async def _check_helper_module_errors(self) -> str:
        return await self._module_errors(self._settings.helper_module, "helper module")
