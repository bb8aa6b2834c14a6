from __future__ import annotations

import hashlib
from datetime import date, datetime, time
from enum import Enum
from pathlib import PurePath
from typing import Any

import rfc8785
from pydantic import BaseModel

# JSON-primitive types that rfc8785 can serialize directly.
_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _normalize_for_jcs(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively convert manifest and runtime values into JSON-primitive types.

    Static context is free-form manifest data, and run metadata carries step ids
    and sandbox paths, so this accepts pydantic models, enums, paths, dates and
    any object whose ``__str__`` is its identity (``StepId``).

    Raises:
        TypeError: If value contains bytes or an unsupported container.
    """
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value

    if isinstance(value, BaseModel):
        return _normalize_for_jcs(value.model_dump(mode="json"))

    if isinstance(value, dict):
        return {str(k): _normalize_for_jcs(v) for k, v in value.items()}

    if isinstance(value, (list, tuple)):
        return [_normalize_for_jcs(item) for item in value]

    if isinstance(value, Enum):
        return _normalize_for_jcs(value.value)

    if isinstance(value, (datetime, date, time)):
        return value.isoformat()

    if isinstance(value, PurePath):
        return str(value)

    if isinstance(value, bytes):
        raise TypeError(f"Cannot serialize bytes to canonical JSON: {value!r:.64}")

    if type(value).__str__ is not object.__str__:
        return str(value)

    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        f"Convert to a JSON-compatible type first."
    )


def to_canonical_json(value: Any) -> str:
    """Serialize a value to byte-for-byte reproducible JSON per RFC 8785."""
    return rfc8785.dumps(_normalize_for_jcs(value)).decode("utf-8")


def content_digest(*parts: Any, length: int = 16) -> str:
    """Return a short, stable hex digest of the canonical form of ``parts``.

    Used to derive deterministic context entry ids so that assembling the same
    inputs twice yields identical entries.
    """
    if length <= 0:
        raise ValueError("length must be positive")
    canonical = to_canonical_json(list(parts))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:length]
