"""Raw terminal keyboard input and incremental screen rendering."""
from __future__ import annotations

import asyncio
import codecs
import logging
import os
import sys
import termios
import tty
from typing import IO, Sequence

__all__ = ["ANSI_ERASE_TO_EOL", "TerminalInput", "TerminalRenderer", "render_rows"]

LOGGER = logging.getLogger(__name__)

ANSI_ERASE_TO_EOL = "\x1b[K"

# Index of ``oflag`` in the list returned by ``termios.tcgetattr``.
_OFLAG = 1


class TerminalInput:
    """Read keystrokes from a terminal file descriptor in raw mode.

    Raw mode disables echo, line buffering and signal generation so Ctrl+C
    arrives as a byte. Output post-processing stays on, so ``\\n`` written by
    the renderer still returns the carriage.
    """

    def __init__(
        self,
        stream: IO[str] | None = None,
        *,
        encoding: str = "utf-8",
        chunk_size: int = 1024,
    ) -> None:
        self.stream = stream if stream is not None else sys.stdin
        self.encoding = encoding
        self.chunk_size = chunk_size
        self._fd: int | None = None
        self._saved_attrs: list | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._readable = asyncio.Event()
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._eof = False

    def open(self) -> None:
        """Switch the terminal to raw mode and watch it for input."""

        if self._fd is not None:
            return
        fd = self.stream.fileno()
        self._saved_attrs = termios.tcgetattr(fd)
        tty.setraw(fd, termios.TCSANOW)
        attrs = termios.tcgetattr(fd)
        attrs[_OFLAG] |= termios.OPOST | termios.ONLCR
        termios.tcsetattr(fd, termios.TCSANOW, attrs)
        self._fd = fd
        self._eof = False
        self._loop = asyncio.get_running_loop()
        self._loop.add_reader(fd, self._readable.set)
        LOGGER.debug("terminal fd %d switched to raw mode", fd)

    def close(self) -> None:
        """Stop watching the terminal and restore its saved attributes."""

        fd = self._fd
        if fd is None:
            return
        if self._loop is not None:
            self._loop.remove_reader(fd)
            self._loop = None
        if self._saved_attrs is not None:
            termios.tcsetattr(fd, termios.TCSADRAIN, self._saved_attrs)
            self._saved_attrs = None
        self._fd = None
        LOGGER.debug("terminal fd %d restored", fd)

    async def read(self) -> str:
        """Return the next decoded chunk, or ``""`` once input has ended."""

        while not self._eof and self._fd is not None:
            await self._readable.wait()
            self._readable.clear()
            if self._fd is None:
                break
            try:
                data = os.read(self._fd, self.chunk_size)
            except BlockingIOError:
                continue
            if not data:
                self._eof = True
                return self._decoder.decode(b"", final=True)
            text = self._decoder.decode(data)
            if text:
                return text
        return ""


def render_rows(rows: Sequence[str], top: int, bottom: int, full_repaint: bool) -> str:
    """Return the terminal text that draws ``rows[top:bottom]``.

    A full repaint starts on a fresh line; otherwise the carriage returns
    to overwrite the current (boundary) line. The last row is right-trimmed
    and followed by an erase-to-end-of-line so stale text is removed.
    """

    if bottom <= top:
        return ""
    lines = list(rows[top:bottom])
    lines[-1] = lines[-1].rstrip() + ANSI_ERASE_TO_EOL
    return ("\n" if full_repaint else "\r") + "\n".join(lines)


class TerminalRenderer:
    """Rows handler writing observer updates to a text stream."""

    def __init__(self, stream: IO[str] | None = None) -> None:
        self.stream = stream if stream is not None else sys.stdout

    def write(self, text: str) -> None:
        self.stream.write(text)
        self.stream.flush()

    def __call__(
        self, rows: Sequence[str], top: int, bottom: int, full_repaint: bool
    ) -> None:
        text = render_rows(rows, top, bottom, full_repaint)
        if text:
            self.write(text)
