"""Binary value helpers shared by the ceremony routes and storage."""
from __future__ import annotations

import base64
from enum import Enum
from typing import Any, Iterable, Mapping

from fido2.utils import websafe_decode, websafe_encode

__all__ = [
    "decode_binary_value",
    "encode_base64url",
    "make_json_safe",
]


def _add_base64_padding(value: str) -> str:
    return value + "=" * (-len(value) % 4)


def encode_base64url(data: bytes) -> str:
    return websafe_encode(bytes(data))


def decode_binary_value(value: Any) -> bytes:
    """Decode a base64url, base64 or hex string (or raw bytes) into bytes."""
    if value is None:
        raise ValueError("missing binary value")

    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)

    if isinstance(value, str):
        candidate = value.strip()
        if not candidate:
            raise ValueError("empty string")

        try:
            return websafe_decode(candidate)
        except (ValueError, TypeError):
            pass

        try:
            return base64.b64decode(_add_base64_padding(candidate), validate=True)
        except (ValueError, TypeError):
            pass

        try:
            return bytes.fromhex(candidate)
        except ValueError as exc:
            raise ValueError("invalid binary value") from exc

    if isinstance(value, Iterable):
        try:
            return bytes(value)
        except (TypeError, ValueError) as exc:
            raise ValueError("invalid iterable value") from exc

    raise ValueError("unsupported binary value type")


def make_json_safe(value: Any) -> Any:
    """Recursively convert bytes-like WebAuthn option values into JSON-friendly data."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return encode_base64url(bytes(value))
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {key: make_json_safe(val) for key, val in value.items() if val is not None}
    if isinstance(value, (list, tuple, set)):
        return [make_json_safe(item) for item in value]
    return value
