from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from sitecheck.schemas.check import StreamEvent

NDJSON_MEDIA_TYPE = "application/x-ndjson"


def encode_event(event: StreamEvent) -> str:
    """Serialize a stream event as a single newline-terminated JSON line."""
    return json.dumps(event.to_wire(), separators=(",", ":")) + "\n"


class NDJSONDecoder:
    """Incrementally decode newline-delimited JSON from arbitrary byte chunks.

    Reads rarely align with line boundaries, so partial lines are buffered
    until their terminating newline arrives.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._encoding = encoding
        self._buffer = b""

    @property
    def pending(self) -> bool:
        return bool(self._buffer.strip())

    def feed(self, chunk: bytes | str) -> List[Dict[str, Any]]:
        if isinstance(chunk, str):
            chunk = chunk.encode(self._encoding)
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split(b"\n")
        return [obj for obj in (self._decode_line(line) for line in lines) if obj is not None]

    def flush(self) -> List[Dict[str, Any]]:
        """Decode whatever is left once the stream has ended."""
        remainder, self._buffer = self._buffer, b""
        obj = self._decode_line(remainder)
        return [obj] if obj is not None else []

    def _decode_line(self, line: bytes) -> Optional[Dict[str, Any]]:
        text = line.decode(self._encoding).strip()
        if not text:
            return None
        try:
            obj = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Malformed NDJSON line: {text[:80]}") from exc
        if not isinstance(obj, dict):
            raise ValueError("NDJSON line is not a JSON object")
        return obj


__all__ = ["NDJSON_MEDIA_TYPE", "NDJSONDecoder", "encode_event"]
