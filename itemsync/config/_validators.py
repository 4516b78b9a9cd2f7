from __future__ import annotations

import json
from typing import Any


def _parse_int_in_range(value: Any, *, default: int, low: int, high: int, name: str) -> int:
    try:
        parsed = int(str(value if value not in (None, "") else default))
    except ValueError as exc:
        msg = f"{name} must be a valid integer"
        raise ValueError(msg) from exc
    if parsed < low or parsed > high:
        msg = f"{name} must be between {low} and {high}"
        raise ValueError(msg)
    return parsed


def _parse_positive_float(value: Any, *, default: float, name: str) -> float:
    try:
        parsed = float(str(value if value not in (None, "") else default))
    except ValueError as exc:
        msg = f"{name} must be a number"
        raise ValueError(msg) from exc
    if parsed <= 0:
        msg = f"{name} must be positive"
        raise ValueError(msg)
    return parsed


def _parse_json_object(value: Any, *, name: str) -> dict[str, Any]:
    if value in (None, ""):
        return {}
    if isinstance(value, dict):
        return value
    try:
        parsed = json.loads(str(value))
    except json.JSONDecodeError as exc:
        msg = f"{name} must be a JSON object"
        raise ValueError(msg) from exc
    if not isinstance(parsed, dict):
        msg = f"{name} must be a JSON object"
        raise ValueError(msg)
    return parsed


def _validate_provider_id(provider_id: str) -> str:
    provider_id = provider_id.strip()
    if not provider_id:
        msg = "Provider id cannot be empty"
        raise ValueError(msg)
    if len(provider_id) > 64:
        msg = f"Provider id too long: {provider_id[:20]}..."
        raise ValueError(msg)
    allowed = set("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-_.")
    if any(ch not in allowed for ch in provider_id):
        msg = f"Provider id contains invalid characters: {provider_id}"
        raise ValueError(msg)
    return provider_id
