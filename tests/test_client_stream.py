from __future__ import annotations

import asyncio
import unittest

from kernel_conformance.client import CancelHandle, ResponseStream, settle
from kernel_conformance.config import SuiteSettings
from kernel_conformance.errors import ModuleNotFound, ProtocolViolation, TransportUnavailable
from kernel_conformance.loopback import LoopbackKernelClient, build_kernel
from kernel_conformance.models import Err, Ok, RPCResponse


class TestResponseStream(unittest.IsolatedAsyncioTestCase):
    async def test_updates_reach_callback_before_the_response(self) -> None:
        events: list[object] = []
        stream = ResponseStream(on_update=events.append)
        for step in (25, 50, 75):
            stream.push_update({"eventProgress": step})
        stream.finish(RPCResponse(data={"eventProgress": 100}))

        result = await stream.result()
        events.append(result)

        self.assertEqual(
            events,
            [{"eventProgress": 25}, {"eventProgress": 50}, {"eventProgress": 75}, {"eventProgress": 100}],
        )
        self.assertEqual(stream.updates_received, 3)
        self.assertTrue(stream.done)

    async def test_iteration_yields_updates_in_order_then_stops(self) -> None:
        stream = ResponseStream()
        stream.push_update("a")
        stream.push_update("b")
        stream.finish(RPCResponse(data={}))

        seen = [(update.sequence, update.data) async for update in stream]
        self.assertEqual(seen, [(0, "a"), (1, "b")])

    async def test_dropped_updates_are_not_queued(self) -> None:
        received: list[object] = []
        stream = ResponseStream(on_update=received.append, keep_updates=False)
        stream.push_update(1)
        stream.finish(RPCResponse(data={}))

        self.assertEqual([update async for update in stream], [])
        self.assertEqual(received, [1])

    async def test_update_after_terminal_response_is_a_protocol_violation(self) -> None:
        stream = ResponseStream()
        stream.finish(RPCResponse(data={}))
        with self.assertRaises(ProtocolViolation):
            stream.push_update({"late": True})
        with self.assertRaises(ProtocolViolation):
            stream.finish(RPCResponse(data={}))

    async def test_failed_stream_raises_on_result(self) -> None:
        stream = ResponseStream()
        stream.fail(ModuleNotFound("gone"))
        with self.assertRaises(ModuleNotFound):
            await stream

    async def test_cancelled_waiter_abandons_an_open_stream(self) -> None:
        abandoned: list[int] = []
        stream = ResponseStream(on_abandon=lambda: abandoned.append(1))
        with self.assertRaises(asyncio.TimeoutError):
            await asyncio.wait_for(stream.result(), timeout=0.01)
        self.assertEqual(abandoned, [1])

        stream.finish(RPCResponse(data={}))
        self.assertEqual(await stream.result(), {})
        self.assertEqual(abandoned, [1])

    async def test_settle(self) -> None:
        ok_stream = ResponseStream()
        ok_stream.finish(RPCResponse(data={"x": 1}))
        err_stream = ResponseStream()
        err_stream.fail(ModuleNotFound("gone"))

        self.assertEqual(await settle(ok_stream.result()), Ok({"x": 1}))
        settled = await settle(err_stream.result())
        self.assertIsInstance(settled, Err)
        self.assertEqual(settled.code, "module_not_found")


class TestCancelHandle(unittest.TestCase):
    def test_cancel_is_idempotent(self) -> None:
        calls: list[int] = []
        handle = CancelHandle(lambda: calls.append(1))
        handle.cancel()
        handle()
        self.assertTrue(handle.cancelled)
        self.assertEqual(calls, [1])


class TestSessionRequired(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.settings = SuiteSettings(message_iterations=1, module_iterations=1)
        self.client = LoopbackKernelClient(build_kernel(self.settings, user_seed=bytes(16)))

    async def asyncTearDown(self) -> None:
        await self.client.close()

    async def test_calls_before_init_fail_with_transport_unavailable(self) -> None:
        with self.assertRaises(TransportUnavailable):
            await self.client.test_message()
        with self.assertRaises(TransportUnavailable):
            await self.client.call(self.settings.test_module, "viewSeed")
        with self.assertRaises(TransportUnavailable):
            self.client.connect(self.settings.test_module, "testResponseUpdate")
        with self.assertRaises(TransportUnavailable):
            await self.client.upload("a.txt", b"a")

    async def test_close_ends_the_session(self) -> None:
        async with self.client as client:
            await client.init()
            self.assertTrue(client.initialized)
        self.assertFalse(self.client.initialized)


if __name__ == "__main__":
    unittest.main()
