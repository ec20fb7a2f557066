from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from jsonschema import Draft202012Validator

from .errors import ProtocolViolation

_SEED = {"type": "array", "items": {"type": "integer", "minimum": 0, "maximum": 255}}


def _object(**properties: Any) -> dict[str, Any]:
    return {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "type": "object",
        "required": sorted(properties),
        "properties": properties,
    }


RESPONSE_SCHEMAS: dict[str, dict[str, Any]] = {
    "viewSeed": _object(seed=_SEED),
    "sendTestToKernel": _object(kernelVersion={"type": "string"}),
    "viewHelperSeed": _object(message={"type": "string"}),
    "viewOwnSeedThroughHelper": _object(message={"type": "string"}),
    "mirrorDomain": _object(domain={"type": "string"}),
    "testerMirrorDomain": _object(domain={"type": "string"}),
    "testResponseUpdate": _object(eventProgress={"type": "integer"}),
    "testResponseUpdate.update": _object(eventProgress={"type": "integer"}),
    "testCORS": _object(url={"type": "string"}),
    "viewErrors": _object(errors={"type": "array"}),
}


def _json_path(err: object) -> str:
    path = getattr(err, "absolute_path", None)
    if not path:
        return "$"
    out = "$"
    for part in path:
        if isinstance(part, int):
            out += f"[{part}]"
        else:
            out += f".{part}"
    return out


@dataclass(frozen=True)
class SchemaRegistry:
    store: dict[str, dict[str, Any]] = field(default_factory=lambda: dict(RESPONSE_SCHEMAS))

    def load_schema(self, name: str) -> dict[str, Any]:
        schema = self.store.get(name)
        if schema is None:
            raise KeyError(f"Schema not found: {name}")
        return schema

    def validate(self, instance: Any, *, schema: str) -> list[str]:
        validator = Draft202012Validator(self.load_schema(schema))
        errors = sorted(validator.iter_errors(instance), key=lambda e: list(getattr(e, "absolute_path", [])))
        return [f"{_json_path(e)}: {e.message}" for e in errors]

    def expect(self, instance: Any, *, schema: str) -> dict[str, Any]:
        """Return ``instance`` unchanged, or raise ProtocolViolation listing every mismatch."""

        errors = self.validate(instance, schema=schema)
        if errors:
            raise ProtocolViolation(f"{schema} response did not match schema: " + "; ".join(errors))
        return instance


registry = SchemaRegistry()
