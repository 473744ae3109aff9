"""Content-hash signatures over coarsened alert fields."""

from __future__ import annotations

import hashlib
import json
import math
from typing import Any


def stable_json(payload: Any) -> str:
    """Canonical JSON: sorted keys and compact separators at every depth."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def make_signature(payload: Any) -> str:
    """SHA-256 hex digest of the canonical JSON of ``payload``."""
    return hashlib.sha256(stable_json(payload).encode("utf-8")).hexdigest()


def frac_bucket(value: float | None, step: float = 0.01) -> int | None:
    """Coarsen a fraction into an integer bucket so small moves keep the signature."""
    if value is None or not math.isfinite(value):
        return None
    if step <= 0:
        raise ValueError("step must be > 0")
    return round(value / step)
