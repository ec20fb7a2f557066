from __future__ import annotations

import os
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from ruamel.yaml import YAML

from .identifiers import is_well_formed

ENV_PREFIX = "KERNEL_CONFORMANCE_"

DEFAULT_TEST_MODULE = "AQCPJ9WRzMpKQHIsPo8no3XJpUydcDCjw7VJy8lG1MCZ3g"
DEFAULT_HELPER_MODULE = "AQCoaLP6JexdZshDDZRQaIwN3B7DqFjlY7byMikR7u1IEA"
# test module with one character changed, so the digest resolves to nothing
DEFAULT_MISSING_MODULE = "AQCPJ9WRzMpKQHIsPo9no3XJpUydcDCjw7VJy8lG1MCZ3g"
# test module with the final character dropped
DEFAULT_MALFORMED_MODULE = "AQCPJ9WRzMpKQHIsPo8no3XJpUydcDCjw7VJy8lG1MCZ3"
DEFAULT_CORS_URLS = ("https://example.com/", "https://www.iana.org/")


class SuiteSettings(BaseModel):
    """Module identifiers and workload sizes injected into the conformance suite."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    test_module: str = DEFAULT_TEST_MODULE
    helper_module: str = DEFAULT_HELPER_MODULE
    missing_module: str = DEFAULT_MISSING_MODULE
    malformed_module: str = DEFAULT_MALFORMED_MODULE
    origin: str = "localhost"
    message_iterations: int = Field(default=5000, ge=0)
    module_iterations: int = Field(default=20000, ge=0)
    cors_urls: tuple[str, ...] = DEFAULT_CORS_URLS

    @field_validator("test_module", "helper_module", "missing_module")
    @classmethod
    def _must_be_well_formed(cls, value: str) -> str:
        if not is_well_formed(value):
            raise ValueError(f"not a well-formed module identifier: {value!r}")
        return value

    @field_validator("malformed_module")
    @classmethod
    def _must_be_malformed(cls, value: str) -> str:
        if is_well_formed(value):
            raise ValueError(f"malformed_module must not be a well-formed identifier: {value!r}")
        return value

    @field_validator("origin")
    @classmethod
    def _origin_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("origin must not be empty")
        return value

    @model_validator(mode="after")
    def _distinct_modules(self) -> "SuiteSettings":
        if self.test_module == self.helper_module:
            raise ValueError("test_module and helper_module must differ")
        if self.missing_module in {self.test_module, self.helper_module}:
            raise ValueError("missing_module must not name a configured module")
        return self

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, *, base: Mapping[str, Any] | None = None) -> "SuiteSettings":
        env = os.environ if environ is None else environ
        values: dict[str, Any] = dict(base or {})
        for name in cls.model_fields:
            raw = env.get(ENV_PREFIX + name.upper())
            if raw is None:
                continue
            if name == "cors_urls":
                values[name] = tuple(part.strip() for part in raw.split(",") if part.strip())
            else:
                values[name] = raw
        return cls.model_validate(values)


def _to_builtin(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _to_builtin(v) for k, v in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_to_builtin(v) for v in value]
    return value


def _load_yaml(path: Path) -> dict[str, Any]:
    yaml = YAML(typ="safe")
    with path.open("r", encoding="utf-8") as file:
        data = yaml.load(file)
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError(f"Config file must contain a mapping: {path}")
    return _to_builtin(data)


def load_settings(
    path: str | Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> SuiteSettings:
    """Config file first, then ``KERNEL_CONFORMANCE_*`` variables, then explicit overrides."""

    values: dict[str, Any] = {}
    if path is not None:
        values.update(_load_yaml(Path(path)))
    settings = SuiteSettings.from_env(environ, base=values)
    extra = {key: value for key, value in (overrides or {}).items() if value is not None}
    if not extra:
        return settings
    return SuiteSettings.model_validate({**settings.model_dump(), **extra})
