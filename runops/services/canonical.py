from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from typing import Any


def canonicalize(value: Any) -> str:
    """Deterministic JSON text: mapping keys sorted, sequences kept in order."""
    if isinstance(value, Mapping):
        body = ",".join(
            f"{_encode_scalar(str(key))}:{canonicalize(value[key])}" for key in sorted(value, key=str)
        )
        return f"{{{body}}}"
    if isinstance(value, (list, tuple)):
        return f"[{','.join(canonicalize(item) for item in value)}]"
    return _encode_scalar(value)


def payload_hash(value: Any) -> str:
    return hashlib.sha256(canonicalize(value).encode("utf-8")).hexdigest()


def _encode_scalar(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)
