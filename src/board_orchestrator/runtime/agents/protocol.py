"""Decoder for the agent CLI's newline-delimited JSON output stream."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional

RESULT_RECORD_TYPE = "result"


@dataclass(frozen=True)
class StreamRecord:
    """One complete output line.

    ``data`` holds the parsed JSON value, or ``None`` when the line was plain
    text (the CLI interleaves human-readable logging with structured records).
    """
    text: str
    data: Any = None

    @property
    def is_json(self) -> bool:
        return self.data is not None

    @property
    def record_type(self) -> Optional[str]:
        if isinstance(self.data, dict):
            value = self.data.get("type")
            return value if isinstance(value, str) else None
        return None

    @property
    def continuity_id(self) -> Optional[str]:
        """Session id carried by a terminal ``result`` record, if any."""
        if self.record_type != RESULT_RECORD_TYPE:
            return None
        value = self.data.get("session_id")
        return value if isinstance(value, str) and value else None


def decode_line(raw: bytes) -> Optional[StreamRecord]:
    """Decode one newline-stripped line; blank lines yield ``None``."""
    text = raw.decode("utf-8", errors="replace").rstrip("\r")
    if not text.strip():
        return None
    try:
        data = json.loads(text)
    except ValueError:
        return StreamRecord(text=text)
    return StreamRecord(text=text, data=data)


class StreamDecoder:
    """Frame records out of a byte stream that may split a line across chunks.

    One decoder is bound to exactly one process stream. ``feed`` surfaces only
    newline-terminated lines; the trailing fragment stays pending until more
    bytes arrive or ``flush`` is called when the stream closes.
    """

    def __init__(self) -> None:
        self._pending = b""
        self._flushed = False

    @property
    def pending(self) -> bytes:
        return self._pending

    def feed(self, data: bytes) -> list[StreamRecord]:
        if not data:
            return []
        buffer = self._pending + data
        *complete, self._pending = buffer.split(b"\n")
        records: list[StreamRecord] = []
        for raw in complete:
            record = decode_line(raw)
            if record is not None:
                records.append(record)
        return records

    def flush(self) -> Optional[StreamRecord]:
        """Emit whatever is left in the buffer once; later calls return ``None``."""
        if self._flushed:
            return None
        self._flushed = True
        raw, self._pending = self._pending, b""
        return decode_line(raw) if raw else None
