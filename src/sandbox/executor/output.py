from __future__ import annotations

import contextlib
import threading
from typing import IO, Optional


class BoundedBuffer:
    """Keeps the first ``limit`` bytes of a stream and counts the rest."""

    def __init__(self, limit: int):
        self.limit = limit
        self._buf = bytearray()
        self.total = 0
        self.truncated = False

    def feed(self, data: bytes) -> None:
        self.total += len(data)
        room = self.limit - len(self._buf)
        if room > 0:
            self._buf += data[:room]
        if len(data) > room:
            self.truncated = True

    def getvalue(self) -> bytes:
        return bytes(self._buf)

    def text(self) -> str:
        return self._buf.decode("utf-8", errors="replace")


def _drain(stream: IO[bytes], buffer: BoundedBuffer, chunk: int) -> None:
    try:
        # keep reading past the limit so the child never blocks on a full pipe
        for data in iter(lambda: stream.read1(chunk), b""):
            buffer.feed(data)
    finally:
        stream.close()


def start_pump(stream: IO[bytes], buffer: BoundedBuffer, name: str, chunk: int = 64 * 1024) -> threading.Thread:
    t = threading.Thread(target=_drain, args=(stream, buffer, chunk), name=name, daemon=True)
    t.start()
    return t


def _feed(stream: IO[bytes], payload: bytes) -> None:
    # the child may exit or close stdin before reading everything
    with contextlib.suppress(BrokenPipeError, OSError):
        try:
            stream.write(payload)
        finally:
            stream.close()


def start_feeder(stream: Optional[IO[bytes]], payload: Optional[bytes], name: str) -> Optional[threading.Thread]:
    if stream is None:
        return None
    t = threading.Thread(target=_feed, args=(stream, payload or b""), name=name, daemon=True)
    t.start()
    return t
