"""Utility functions for repository operations."""

import json
from typing import Any, Optional, Union


def ensure_json(value: Optional[Union[str, dict, list]]) -> Optional[Union[dict, list]]:
    """
    Normalize JSONB values from database to Python dict/list.

    asyncpg returns JSONB as str unless a codec is configured; this helper
    accepts both.

    Raises:
        TypeError: If value is an unexpected type
        json.JSONDecodeError: If string is not valid JSON
    """
    if value is None:
        return None

    if isinstance(value, (dict, list)):
        return value

    if isinstance(value, str):
        return json.loads(value)

    raise TypeError(
        f"Expected str, dict, list, or None for JSONB value, got {type(value).__name__}"
    )


def json_dict(value: Optional[Union[str, dict, list]]) -> dict[str, Any]:
    """JSONB column expected to hold an object; anything else reads as {}."""
    parsed = ensure_json(value)
    return parsed if isinstance(parsed, dict) else {}


def json_list(value: Optional[Union[str, dict, list]]) -> list[Any]:
    """JSONB column expected to hold an array; anything else reads as []."""
    parsed = ensure_json(value)
    return parsed if isinstance(parsed, list) else []


def to_jsonb(value: Any) -> Optional[str]:
    """Serialize a value for a `$n::jsonb` parameter."""
    if value is None:
        return None
    return json.dumps(value, default=str)
