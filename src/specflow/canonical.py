from __future__ import annotations

import hashlib
from collections.abc import Mapping
from datetime import date, datetime
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

_JSON_SCALARS = (bool, int, float, str, type(None))


def _to_jcs_value(value: Any) -> Any:
    """Convert pydantic models, enums and datetimes into JSON primitives for rfc8785."""
    if isinstance(value, _JSON_SCALARS):
        return value
    if isinstance(value, BaseModel):
        return _to_jcs_value(value.model_dump(mode="json"))
    if isinstance(value, Enum):
        return _to_jcs_value(value.value)
    if isinstance(value, Mapping):
        return {str(key): _to_jcs_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_jcs_value(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Cannot serialize type {type(value).__name__} to canonical JSON")


def to_canonical_json(value: Any) -> str:
    """Serialize a value to RFC 8785 canonical JSON.

    Args:
        value: JSON-compatible value, pydantic model, enum or datetime.

    Returns:
        The canonical JSON text; equal inputs always yield identical bytes.

    Raises:
        TypeError: If value contains an unsupported type.
    """
    return rfc8785.dumps(_to_jcs_value(value)).decode("utf-8")


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def artifact_set_hash(contents: Mapping[str, str]) -> str:
    """Hash a filename -> content mapping independent of insertion order."""
    digests = {filename: content_hash(text) for filename, text in contents.items()}
    return hashlib.sha256(to_canonical_json(digests).encode("utf-8")).hexdigest()
