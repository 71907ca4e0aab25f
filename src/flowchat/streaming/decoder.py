"""Incremental decoder for line-oriented streamed responses.

Handles both server-sent events (``data: <payload>`` lines) and line-delimited
JSON (one payload per line). Network reads can end anywhere, including in the
middle of a line or between ``\\r`` and ``\\n``; the unfinished tail is kept in
the buffer and completed by the next ``feed``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

DONE_SENTINEL = "[DONE]"
DATA_PREFIX = "data:"

_IGNORED_SSE_FIELDS = ("event:", "id:", "retry:")


class StreamFormat(StrEnum):
    SSE = "sse"
    NDJSON = "ndjson"


class FrameKind(StrEnum):
    DATA = "data"
    DONE = "done"


@dataclass(frozen=True, slots=True)
class Frame:
    kind: FrameKind
    payload: str = ""


NDJSON_CONTENT_TYPES = ("application/x-ndjson", "application/ndjson", "application/jsonl", "application/json-seq")


def stream_format_for(content_type: str) -> StreamFormat | None:
    """Which decoder a response needs, or None when it is a single document."""
    content_type = content_type.lower()
    if "text/event-stream" in content_type:
        return StreamFormat.SSE
    if any(t in content_type for t in NDJSON_CONTENT_TYPES):
        return StreamFormat.NDJSON
    return None


class FrameDecoder:
    """buffer -> split on newline -> keep remainder -> emit frames.

    After the sentinel frame the decoder is ``done`` and ignores further input.
    """

    def __init__(self, fmt: StreamFormat = StreamFormat.SSE):
        self.format = fmt
        self._buffer = ""
        self.done = False

    def feed(self, chunk: str) -> list[Frame]:
        if self.done or not chunk:
            return []
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return self._decode_lines(lines)

    def flush(self) -> list[Frame]:
        """End of body: decode whatever is left as a final line."""
        if self.done:
            return []
        tail, self._buffer = self._buffer, ""
        return self._decode_lines([tail]) if tail else []

    @property
    def pending(self) -> str:
        return self._buffer

    def _decode_lines(self, lines: list[str]) -> list[Frame]:
        frames: list[Frame] = []
        for raw in lines:
            if self.done:
                break
            frame = self._decode_line(raw.rstrip("\r"))
            if frame is None:
                continue
            if frame.kind is FrameKind.DONE:
                self.done = True
            frames.append(frame)
        return frames

    def _decode_line(self, line: str) -> Frame | None:
        if not line.strip():
            return None

        if self.format is StreamFormat.SSE:
            if line.startswith(":") or line.startswith(_IGNORED_SSE_FIELDS):
                return None
            if not line.startswith(DATA_PREFIX):
                return None
            payload = line[len(DATA_PREFIX):]
            # SSE allows one optional space after the colon
            if payload.startswith(" "):
                payload = payload[1:]
        else:
            payload = line

        if payload.strip() == DONE_SENTINEL:
            return Frame(FrameKind.DONE)
        return Frame(FrameKind.DATA, payload)
