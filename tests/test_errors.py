from __future__ import annotations

import unittest

from kernel_conformance import errors
from kernel_conformance.models import RPCResponse


class TestKernelErrors(unittest.TestCase):
    def test_str_includes_code(self) -> None:
        error = errors.ModuleNotFound("no module resolves")
        self.assertEqual(str(error), "module_not_found: no module resolves")

    def test_to_wire_round_trips_the_subclass(self) -> None:
        for cls in (
            errors.TransportUnavailable,
            errors.MalformedTarget,
            errors.ModuleNotFound,
            errors.MethodRequired,
            errors.ForbiddenMethod,
            errors.ProtocolViolation,
            errors.DataIntegrityMismatch,
            errors.Stall,
        ):
            with self.subTest(cls=cls.__name__):
                restored = errors.error_from_wire(cls("boom").to_wire())
                self.assertIsInstance(restored, cls)
                self.assertEqual(restored.message, "boom")

    def test_unknown_code_becomes_module_error(self) -> None:
        restored = errors.error_from_wire({"code": "quota_exceeded", "message": "slow down"})
        self.assertIsInstance(restored, errors.ModuleError)
        self.assertEqual(restored.code, "quota_exceeded")
        self.assertEqual(str(restored), "quota_exceeded: slow down")

    def test_bare_string_becomes_module_error(self) -> None:
        restored = errors.error_from_wire("module crashed")
        self.assertIsInstance(restored, errors.ModuleError)
        self.assertEqual(restored.message, "module crashed")

    def test_non_object_error_is_a_protocol_violation(self) -> None:
        self.assertIsInstance(errors.error_from_wire(17), errors.ProtocolViolation)

    def test_details_survive_the_wire(self) -> None:
        error = errors.ForbiddenMethod("nope", details={"method": "presentSeed"})
        restored = errors.error_from_wire(error.to_wire())
        self.assertEqual(restored.details, {"method": "presentSeed"})


class TestResponseFrames(unittest.TestCase):
    def test_data_frame(self) -> None:
        response = RPCResponse.from_dict({"data": {"seed": [1, 2]}})
        self.assertTrue(response.ok)
        self.assertEqual(response.unwrap(), {"seed": [1, 2]})

    def test_error_frame_raises_on_unwrap(self) -> None:
        response = RPCResponse.from_dict({"err": {"code": "method_required", "message": "missing"}})
        self.assertFalse(response.ok)
        with self.assertRaises(errors.MethodRequired):
            response.unwrap()

    def test_frame_without_data_or_err_is_a_protocol_violation(self) -> None:
        response = RPCResponse.from_dict({"nonce": "1", "method": "response"})
        with self.assertRaises(errors.ProtocolViolation):
            response.unwrap()

    def test_non_object_data_is_a_protocol_violation(self) -> None:
        with self.assertRaises(errors.ProtocolViolation):
            RPCResponse.from_dict({"data": [1, 2, 3]}).unwrap()

    def test_to_dict(self) -> None:
        self.assertEqual(RPCResponse(data={"a": 1}).to_dict(), {"data": {"a": 1}})
        self.assertEqual(
            RPCResponse.failure(errors.ModuleNotFound("gone")).to_dict(),
            {"err": {"code": "module_not_found", "message": "gone"}},
        )


if __name__ == "__main__":
    unittest.main()
