"""Bounded capture of child-process output streams."""

from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Final

_READ_CHUNK: Final[int] = 64 * 1024


@dataclass(slots=True)
class OutputCapture:
    """Keeps at most ``limit`` bytes; anything beyond marks the capture truncated."""

    limit: int
    chunks: list[bytes] = field(default_factory=list)
    size: int = 0
    truncated: bool = False

    def feed(self, chunk: bytes) -> bool:
        """Store ``chunk`` up to the limit. Returns ``True`` once the limit is crossed."""

        room = self.limit - self.size
        if room > 0:
            kept = chunk[:room]
            self.chunks.append(kept)
            self.size += len(kept)
        if len(chunk) > max(room, 0):
            self.truncated = True
        return self.truncated

    def text(self) -> str:
        return b"".join(self.chunks).decode("utf-8", errors="replace")


async def pump(
    stream: asyncio.StreamReader, capture: OutputCapture, overflow: asyncio.Event
) -> None:
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            return
        if capture.feed(chunk):
            overflow.set()


async def feed_stdin(stream: asyncio.StreamWriter, text: str) -> None:
    with suppress(BrokenPipeError, ConnectionResetError):
        stream.write(text.encode("utf-8"))
        await stream.drain()
    stream.close()


async def drain(tasks: list[asyncio.Task[None]], timeout_s: float) -> None:
    """Wait for reader tasks, cancelling any still blocked after ``timeout_s``."""

    if not tasks:
        return
    _, pending = await asyncio.wait(tasks, timeout=timeout_s)
    for task in pending:
        task.cancel()
    for task in tasks:
        with suppress(asyncio.CancelledError):
            await task


__all__ = ["OutputCapture", "drain", "feed_stdin", "pump"]
