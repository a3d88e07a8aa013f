from __future__ import annotations

import hashlib
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

from .models import LifecycleSnapshot

_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))

# Bookkeeping that does not describe the state of the goals themselves.
_FINGERPRINT_EXCLUDE = {"processed_event_ids"}


def _normalize_for_jcs(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value
    if isinstance(value, BaseModel):
        return _normalize_for_jcs(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(key): _normalize_for_jcs(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_for_jcs(item) for item in value]
    if isinstance(value, Enum):
        return _normalize_for_jcs(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    raise TypeError(f"Cannot serialize type {type(value).__name__} to canonical JSON")


def to_canonical_json(value: Any) -> str:
    """RFC 8785 JSON for models, enums, datetimes and durations; other types raise ``TypeError``."""
    return rfc8785.dumps(_normalize_for_jcs(value)).decode("utf-8")


def snapshot_fingerprint(snapshot: LifecycleSnapshot) -> str:
    """SHA-256 of the canonical lifecycle state, ignoring which events were applied.

    Two snapshots with the same fingerprint show the same goals, states,
    descriptions and attempt records.
    """
    payload = snapshot.model_dump(mode="json", exclude=_FINGERPRINT_EXCLUDE)
    return hashlib.sha256(to_canonical_json(payload).encode("utf-8")).hexdigest()
