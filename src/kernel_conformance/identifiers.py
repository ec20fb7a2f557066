from __future__ import annotations

import base64
import hashlib
import re
from dataclasses import dataclass

from .errors import MalformedTarget

IDENTIFIER_LENGTH = 46
DIGEST_SIZE = 34
CONTENT_PREFIX = b"\x01\x00"

_ALPHABET = re.compile(r"^[A-Za-z0-9_-]+$")


def _b64url_decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


@dataclass(frozen=True, slots=True)
class ModuleIdentifier:
    """Content-derived module name: 46 base64url characters over a 34-byte digest."""

    text: str
    digest: bytes

    def __str__(self) -> str:
        return self.text

    @classmethod
    def parse(cls, text: object) -> "ModuleIdentifier":
        if not isinstance(text, str):
            raise MalformedTarget(f"module identifier must be a string, got {type(text).__name__}")
        if len(text) != IDENTIFIER_LENGTH:
            raise MalformedTarget(
                f"module identifier must be {IDENTIFIER_LENGTH} characters, got {len(text)}"
            )
        if not _ALPHABET.match(text):
            raise MalformedTarget("module identifier contains characters outside base64url")
        try:
            digest = _b64url_decode(text)
        except ValueError as exc:
            raise MalformedTarget(f"module identifier is not decodable: {exc}") from exc
        if len(digest) != DIGEST_SIZE:
            raise MalformedTarget(f"module identifier decodes to {len(digest)} bytes, expected {DIGEST_SIZE}")
        # the final character carries 4 padding bits, which must be zero
        if _b64url_encode(digest) != text:
            raise MalformedTarget("module identifier is not canonically encoded")
        return cls(text=text, digest=digest)

    @classmethod
    def from_content(cls, payload: bytes) -> "ModuleIdentifier":
        digest = CONTENT_PREFIX + hashlib.blake2b(payload, digest_size=32).digest()
        return cls(text=_b64url_encode(digest), digest=digest)


def is_well_formed(text: object) -> bool:
    try:
        ModuleIdentifier.parse(text)
    except MalformedTarget:
        return False
    return True
