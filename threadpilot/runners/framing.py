"""Newline framing for a byte stream that may arrive in arbitrary chunks."""

from __future__ import annotations


class LineFramer:
    """Split a chunked byte stream into complete lines.

    The trailing partial line is held back until its newline arrives, so a
    short read never produces a truncated event. Decoding happens per complete
    line, which keeps multi-byte UTF-8 sequences split across chunks intact.
    """

    def __init__(self, max_buffer: int = 64 * 1024 * 1024):
        self._buf = bytearray()
        self._max_buffer = max_buffer

    def feed(self, chunk: bytes) -> list[str]:
        if not chunk:
            return []
        self._buf.extend(chunk)
        if b"\n" not in chunk:
            if len(self._buf) > self._max_buffer:
                raise ValueError(
                    f"Line exceeds {self._max_buffer} bytes without a newline"
                )
            return []

        *complete, rest = bytes(self._buf).split(b"\n")
        self._buf = bytearray(rest)
        return [raw.decode("utf-8", errors="replace") for raw in complete]

    def flush(self) -> str | None:
        """Return the buffered partial line (at EOF), if any."""
        if not self._buf:
            return None
        raw = bytes(self._buf)
        self._buf.clear()
        return raw.decode("utf-8", errors="replace")

    @property
    def pending(self) -> int:
        return len(self._buf)
