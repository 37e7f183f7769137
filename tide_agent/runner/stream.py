"""Incremental UTF-8 line splitting for subprocess pipes."""

from __future__ import annotations

import asyncio
import codecs
from collections.abc import Callable

READ_CHUNK_BYTES = 64 * 1024


class LineDecoder:
    """Turns arbitrary byte chunks into complete text lines.

    Multi-byte code points split across chunks are held back by the
    incremental decoder until their remaining bytes arrive.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += self._decoder.decode(chunk)
        if "\n" not in self._buffer:
            return []
        *lines, self._buffer = self._buffer.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        """Return whatever remains once the stream has ended."""
        self._buffer += self._decoder.decode(b"", final=True)
        rest, self._buffer = self._buffer, ""
        return [rest.rstrip("\r")] if rest else []


async def pump_lines(reader: asyncio.StreamReader, on_line: Callable[[str], None]) -> None:
    """Call ``on_line`` for every line until EOF, including an unterminated last line.

    Returns only after the final line has been handled, so callers can await
    this before reporting the process exit.
    """
    decoder = LineDecoder()
    while True:
        chunk = await reader.read(READ_CHUNK_BYTES)
        if not chunk:
            break
        for line in decoder.feed(chunk):
            on_line(line)
    for line in decoder.flush():
        on_line(line)


async def pump_text(reader: asyncio.StreamReader, on_text: Callable[[str], None]) -> None:
    """Call ``on_text`` with each decoded chunk until EOF."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await reader.read(READ_CHUNK_BYTES)
        if not chunk:
            break
        text = decoder.decode(chunk)
        if text:
            on_text(text)
    text = decoder.decode(b"", final=True)
    if text:
        on_text(text)
