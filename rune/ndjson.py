"""
Incremental decoder for newline-delimited JSON streams.
"""

import json
from typing import Any, Dict, List
from .logging import get_logger


class NDJSONDecoder:
    """Turn arbitrary byte chunks into complete JSON objects.

    Bytes are buffered until a newline arrives, so objects split across chunks
    (or multi-byte characters split across chunks) decode correctly. Each line
    is parsed on its own; blank lines and lines that are not JSON objects are
    skipped.
    """

    def __init__(self):
        self.logger = get_logger("ndjson")
        self._buffer = b""

    def feed(self, chunk: bytes) -> List[Dict[str, Any]]:
        """Add a chunk and return the objects completed by it."""
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split(b"\n")
        return self._decode_lines(lines)

    def close(self) -> List[Dict[str, Any]]:
        """Flush a trailing line that was not newline-terminated."""
        remainder, self._buffer = self._buffer, b""
        return self._decode_lines([remainder])

    def _decode_lines(self, lines: List[bytes]) -> List[Dict[str, Any]]:
        objects = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line.decode("utf-8"))
            except (UnicodeDecodeError, ValueError):
                self.logger.debug(f"Skipping invalid NDJSON line: {line[:120]!r}")
                continue
            if isinstance(obj, dict):
                objects.append(obj)
        return objects
