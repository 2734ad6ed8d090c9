"""Content hashing used for step keys and entity ids."""

import hashlib
import json
from typing import Any


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def stable_json(data: Any) -> str:
    """Canonical JSON text: sorted keys, no insignificant whitespace."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def content_hash(data: Any) -> str:
    """Hash of a JSON-compatible value, independent of key order."""
    return sha256_hex(stable_json(data))


def short_hash(seed: str, length: int = 8) -> str:
    return sha256_hex(seed)[:length]
