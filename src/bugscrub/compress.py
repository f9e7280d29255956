"""gzip helpers for report bodies and attachments."""

from __future__ import annotations

import gzip
import json
from typing import Any

GZIP_LEVEL = 6   # balanced speed/size


def compress_data(data: Any, level: int = GZIP_LEVEL) -> bytes:
    """gzip bytes, a string, or anything JSON-serializable."""
    if isinstance(data, bytes):
        raw = data
    elif isinstance(data, str):
        raw = data.encode("utf-8")
    else:
        raw = json.dumps(data, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    return gzip.compress(raw, compresslevel=level)


def decompress_data(data: bytes) -> Any:
    """Inverse of compress_data; returns parsed JSON when possible, else text."""
    text = gzip.decompress(data).decode("utf-8")
    try:
        return json.loads(text)
    except ValueError:
        return text
