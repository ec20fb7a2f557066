from __future__ import annotations

from typing import Any


class KernelError(Exception):
    code = "kernel_error"

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        self.message = message
        if code is not None:
            self.code = code
        self.details = details

        super().__init__(str(self))

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_wire(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class TransportUnavailable(KernelError):
    code = "transport_unavailable"


class MalformedTarget(KernelError):
    code = "malformed_target"


class ModuleNotFound(KernelError):
    code = "module_not_found"


class MethodRequired(KernelError):
    code = "method_required"


class ForbiddenMethod(KernelError):
    code = "forbidden_method"


class ProtocolViolation(KernelError):
    code = "protocol_violation"


class DataIntegrityMismatch(KernelError):
    code = "data_integrity_mismatch"


class ModuleError(KernelError):
    code = "module_error"


class UnexpectedSuccess(KernelError):
    code = "unexpected_success"


class Stall(KernelError):
    code = "stall"


_BY_CODE: dict[str, type[KernelError]] = {
    cls.code: cls
    for cls in (
        TransportUnavailable,
        MalformedTarget,
        ModuleNotFound,
        MethodRequired,
        ForbiddenMethod,
        ProtocolViolation,
        DataIntegrityMismatch,
        ModuleError,
        UnexpectedSuccess,
        Stall,
    )
}


def error_from_wire(err: Any) -> KernelError:
    """Map a wire error (``{"code", "message"}`` or a bare string) onto the taxonomy."""

    if isinstance(err, str):
        return ModuleError(err)
    if not isinstance(err, dict):
        return ProtocolViolation(f"error field has unexpected type {type(err).__name__}")
    code = err.get("code")
    message = str(err.get("message") or code or "unspecified error")
    details = err.get("details") if isinstance(err.get("details"), dict) else None
    cls = _BY_CODE.get(code) if isinstance(code, str) else None
    if cls is None:
        return ModuleError(message, code=code if isinstance(code, str) else None, details=details)
    return cls(message, details=details)
