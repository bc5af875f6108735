"""Route blueprints for the passkey service and helpers they share."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from flask import request

from ..errors import AuthenticationError, ValidationError

__all__ = [
    "bearer_token",
    "first_value",
    "isoformat_timestamp",
    "json_body",
    "optional_bearer_token",
]


def json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("INVALID_REQUEST", "The request body must be a JSON object.")
    return payload


def first_value(payload: Dict[str, Any], *keys: str) -> Any:
    """Return the first present key; clients send both snake_case and camelCase."""
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return None


def bearer_token() -> str:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("INVALID_TOKEN", "A bearer token is required.")
    return token.strip()


def optional_bearer_token() -> Optional[str]:
    """Like ``bearer_token`` but returns None when no Authorization header was sent."""
    if "Authorization" not in request.headers:
        return None
    return bearer_token()


def isoformat_timestamp(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace("+00:00", "Z")
