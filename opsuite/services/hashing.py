from __future__ import annotations

import hashlib
import json
from typing import Any


def canonicalize(payload: Any) -> str:
    # Serialize with sorted keys at every depth so key order never changes the digest.
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def compute_payload_hash(payload: Any, capability: str | None = None) -> str:
    # Bind the digest to the capability so one payload run by two capabilities stays distinct.
    material = canonicalize(payload)
    if capability:
        material += capability
    return hashlib.sha256(material.encode("utf-8")).hexdigest()
