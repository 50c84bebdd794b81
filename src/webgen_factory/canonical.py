from __future__ import annotations

import hashlib
from datetime import date, datetime
from enum import Enum
from typing import Any, Mapping

import rfc8785
from pydantic import BaseModel

_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _normalize_for_jcs(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively convert Python/Pydantic values into JSON primitives accepted by rfc8785.

    Raises:
        TypeError: If value contains a type that has no JSON representation.
    """
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value
    if isinstance(value, BaseModel):
        return _normalize_for_jcs(value.model_dump(mode="json"))
    if isinstance(value, Mapping):
        return {str(k): _normalize_for_jcs(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_for_jcs(item) for item in value]
    if isinstance(value, Enum):
        return _normalize_for_jcs(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        f"Convert to a JSON-compatible type first."
    )


def to_canonical_json(value: Any) -> str:
    """Serialize a value to byte-for-byte reproducible JSON per RFC 8785."""
    return rfc8785.dumps(_normalize_for_jcs(value)).decode("utf-8")


def content_digest(value: Any) -> str:
    """Return the sha256 hex digest of the canonical JSON form of ``value``.

    Used as the build hash of a promoted file map and as the identity of a
    proposed file action when filtering duplicates.
    """
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()
