"""General utility helpers shared across modules."""

from __future__ import annotations

import json
import time
from hashlib import sha256
from typing import Any, Iterable


def _normalise_value(value: Any) -> Any:
    """Convert objects to JSON-friendly representations."""

    if isinstance(value, (list, tuple)):
        return [_normalise_value(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _normalise_value(val) for key, val in value.items()}
    return value


def json_dumps_sorted(value: Any) -> str:
    """Return canonical JSON for hashing / comparisons."""

    normalised = _normalise_value(value)
    return json.dumps(normalised, sort_keys=True, separators=(",", ":"))


def content_digest(items: Iterable[Any]) -> str:
    """Return a stable sha256 digest over JSON-serialisable items."""

    hasher = sha256()
    for item in items:
        hasher.update(json_dumps_sorted(item).encode("utf-8"))
        hasher.update(b"\n")
    return hasher.hexdigest()


def elapsed_ms(start: float) -> float:
    """Milliseconds since ``start`` (a ``time.perf_counter`` reading), never zero."""

    return max(0.001, (time.perf_counter() - start) * 1000.0)
