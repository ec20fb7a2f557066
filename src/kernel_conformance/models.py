from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

from .errors import KernelError, ProtocolViolation, error_from_wire

Payload = dict[str, Any]

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RPCRequest:
    target: str
    method: str | None
    data: Payload

    def to_dict(self) -> dict[str, Any]:
        return {"module": self.target, "method": self.method, "data": self.data}

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "RPCRequest":
        payload = data.get("data")
        return RPCRequest(
            target=data.get("module"),  # type: ignore[arg-type]
            method=data.get("method"),
            data=payload if isinstance(payload, dict) else {},
        )


@dataclass(frozen=True, slots=True)
class RPCResponse:
    data: Payload | None = None
    error: KernelError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Payload:
        if self.error is not None:
            raise self.error
        return self.data if self.data is not None else {}

    def to_dict(self) -> dict[str, Any]:
        if self.error is not None:
            return {"err": self.error.to_wire()}
        return {"data": self.data if self.data is not None else {}}

    @staticmethod
    def from_dict(frame: dict[str, Any]) -> "RPCResponse":
        if "err" in frame and frame["err"] is not None:
            return RPCResponse(error=error_from_wire(frame["err"]))
        if "data" not in frame:
            return RPCResponse(error=ProtocolViolation("response frame carries neither data nor err"))
        data = frame["data"]
        if data is None:
            data = {}
        if not isinstance(data, dict):
            return RPCResponse(error=ProtocolViolation(f"response data must be an object, got {type(data).__name__}"))
        return RPCResponse(data=data)

    @staticmethod
    def failure(error: KernelError) -> "RPCResponse":
        return RPCResponse(error=error)


@dataclass(frozen=True, slots=True)
class StreamingUpdate:
    sequence: int
    data: Any


@dataclass(frozen=True, slots=True)
class Success:
    value: Any
    elapsed_ms: float

    ok = True


@dataclass(frozen=True, slots=True)
class Failure:
    reason: str
    elapsed_ms: float
    code: str | None = None

    ok = False


Outcome = Union[Success, Failure]


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T

    ok = True


@dataclass(frozen=True, slots=True)
class Err:
    error: KernelError

    ok = False

    @property
    def code(self) -> str:
        return self.error.code


Settled = Union[Ok[T], Err]
