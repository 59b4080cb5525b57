"""Frame decoders for provider byte streams.

Network reads split frames at arbitrary byte offsets. Decoders buffer raw
bytes, decode UTF-8 incrementally (a multi-byte character cut in half waits
for its tail) and only hand out frames once their delimiter has arrived.
"""

import codecs
from dataclasses import dataclass


@dataclass
class SSEEvent:
    event: str | None
    data: str


class _BufferedDecoder:
    delimiter = "\n"

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def _feed_text(self, data: bytes, final: bool = False) -> list[str]:
        self._buffer += self._decoder.decode(data, final=final)
        # Normalise CRLF only once the pair is complete; a trailing lone "\r"
        # may still be followed by "\n" in the next read.
        if self._buffer.endswith("\r") and not final:
            head, tail = self._buffer[:-1], "\r"
        else:
            head, tail = self._buffer, ""
        head = head.replace("\r\n", "\n")
        frames = head.split(self.delimiter)
        self._buffer = frames.pop() + tail
        return frames

    @property
    def pending(self) -> str:
        return self._buffer


class NDJSONDecoder(_BufferedDecoder):
    """Newline-delimited JSON: one frame per non-blank line."""

    delimiter = "\n"

    def feed(self, data: bytes) -> list[str]:
        return [line.strip() for line in self._feed_text(data) if line.strip()]

    def flush(self) -> list[str]:
        lines = self._feed_text(b"", final=True)
        rest, self._buffer = self._buffer, ""
        lines.append(rest)
        return [line.strip() for line in lines if line.strip()]


class SSEDecoder(_BufferedDecoder):
    """Server-Sent Events: frames separated by a blank line."""

    delimiter = "\n\n"

    def feed(self, data: bytes) -> list[SSEEvent]:
        return [e for e in (parse_sse_frame(f) for f in self._feed_text(data)) if e is not None]

    def flush(self) -> list[SSEEvent]:
        frames = self._feed_text(b"", final=True)
        rest, self._buffer = self._buffer, ""
        frames.append(rest)
        return [e for e in (parse_sse_frame(f) for f in frames) if e is not None]


def parse_sse_frame(frame: str) -> SSEEvent | None:
    """Parse one SSE frame. Comment-only and data-less frames return None."""
    event: str | None = None
    data_lines: list[str] = []
    for line in frame.split("\n"):
        if not line or line.startswith(":"):
            continue
        key, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if key == "data":
            data_lines.append(value)
        elif key == "event":
            event = value
    if not data_lines:
        return None
    return SSEEvent(event=event, data="\n".join(data_lines))
