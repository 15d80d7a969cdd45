"""Configuration digests recorded in plan metadata."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from typing import Any


def canonical_json(obj: Any) -> str:
    """Serialise *obj* deterministically.

    Keys are sorted, separators are compact and output is ASCII, so equal
    values always produce equal text. Values JSON cannot represent are
    rendered with ``str``.
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def compute_config_digest(document: Mapping[str, Any], variables: Mapping[str, Any]) -> str:
    """SHA-256 over a dumped document and its resolved variables.

    Two plans share a digest exactly when they were computed from the same
    blocks and the same variable values, whichever files those came from.
    """
    payload = canonical_json({"document": dict(document), "variables": dict(variables)})
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
