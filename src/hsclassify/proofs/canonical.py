"""Canonical JSON serialization and hashing utilities."""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from hashlib import sha256
from typing import Any


def canonical_json(obj: Any) -> str:
    """Serialize *obj* to canonical JSON suitable for hashing."""

    def _default(value: Any):
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, Enum):
            return value.value
        raise TypeError(f"Object of type {type(value)} is not JSON serializable")

    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=_default)


def digest(data: str) -> str:
    """SHA-256 hex digest of a string."""

    return sha256(data.encode("utf-8")).hexdigest()


def payload_digest(payload: Any) -> str:
    """Return a SHA-256 hex digest of the canonical form of *payload*."""

    return digest(canonical_json(payload))
