"""In-memory 80x25 text console and a loopback machine built on top of it."""
from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from .machine import RowWriteListener
from .scancodes import (
    ALT,
    CTRL,
    CTRL_KEY_SCANCODES,
    LEFT_SHIFT,
    MOD_ALTGR,
    MOD_SHIFT,
    RIGHT_SHIFT,
    KeyboardLayout,
    get_layout,
    iter_key_transitions,
)

__all__ = ["LoopbackMachine", "TextConsole"]

LOGGER = logging.getLogger(__name__)

_ALTGR_NUMBER = 0x80 | ALT
_TAB_WIDTH = 8

# Control character produced by each key when Ctrl is held.
_CTRL_CHARS: dict[int, str] = {}
for _char, _scancode in CTRL_KEY_SCANCODES.items():
    _CTRL_CHARS.setdefault(_scancode, _char)


class TextConsole:
    """Character cells of a VGA-style text screen with a cursor.

    Every character stored through :meth:`put_char` notifies the row
    listeners with the row index, the way an emulator reports writes to its
    text plane.
    """

    def __init__(self, rows: int = 25, columns: int = 80) -> None:
        if rows <= 0 or columns <= 0:
            raise ValueError("console dimensions must be positive")
        self.height = int(rows)
        self.width = int(columns)
        self._cells: list[list[str]] = [[" "] * self.width for _ in range(self.height)]
        self._listeners: list[RowWriteListener] = []
        self.cursor_x = 0
        self.cursor_y = 0

    # Listener API --------------------------------------------------------

    def add_row_listener(self, listener: RowWriteListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_row_listener(self, listener: RowWriteListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # Screen access -------------------------------------------------------

    def get_row(self, index: int) -> str:
        return "".join(self._cells[index])

    def get_full_screen(self) -> list[str]:
        return ["".join(row) for row in self._cells]

    def put_char(self, row: int, column: int, char: str) -> None:
        """Store ``char`` at ``(row, column)`` and notify listeners."""

        self._cells[row][column] = char
        for listener in list(self._listeners):
            listener(row)

    def clear(self) -> None:
        """Blank every cell and home the cursor."""

        for row in range(self.height):
            for column in range(self.width):
                self.put_char(row, column, " ")
        self.cursor_x = 0
        self.cursor_y = 0

    # Teletype output -----------------------------------------------------

    def write(self, text: str) -> None:
        """Print ``text`` at the cursor, scrolling at the bottom edge."""

        for char in text:
            if char == "\r":
                self.cursor_x = 0
            elif char == "\n":
                self._line_feed()
            elif char == "\b":
                if self.cursor_x > 0:
                    self.cursor_x -= 1
            elif char == "\t":
                target = min(self.width, (self.cursor_x // _TAB_WIDTH + 1) * _TAB_WIDTH)
                while self.cursor_x < target:
                    self._emit(" ")
            elif char.isprintable():
                self._emit(char)

    def erase_left(self) -> bool:
        """Move left one cell and blank it; ``False`` at the left margin."""

        if self.cursor_x == 0:
            return False
        self.cursor_x -= 1
        self.put_char(self.cursor_y, self.cursor_x, " ")
        return True

    def _emit(self, char: str) -> None:
        self.put_char(self.cursor_y, self.cursor_x, char)
        self.cursor_x += 1
        if self.cursor_x >= self.width:
            self.cursor_x = 0
            self._line_feed()

    def _line_feed(self) -> None:
        if self.cursor_y + 1 < self.height:
            self.cursor_y += 1
            return
        self._scroll()

    def _scroll(self) -> None:
        rows = self._cells[1:] + [[" "] * self.width]
        for row_index, row in enumerate(rows):
            for column, char in enumerate(row):
                self.put_char(row_index, column, char)


class LoopbackMachine:
    """Monitored machine whose guest is a tiny echoing line editor.

    The keyboard controller decodes scan codes with Shift, AltGr and Ctrl
    state through ``layout`` and feeds the characters to the line editor,
    which echoes them on a :class:`TextConsole`. Useful without an emulator
    and as a test double.
    """

    def __init__(
        self,
        *,
        rows: int = 25,
        columns: int = 80,
        layout: KeyboardLayout | str = "us",
        prompt: str = "> ",
        banner: str = "vga2tty loopback console\n",
    ) -> None:
        self.console = TextConsole(rows, columns)
        self.layout = get_layout(layout) if isinstance(layout, str) else layout
        self.prompt = prompt
        self.banner = banner
        self.line: list[str] = []
        self.lines: list[str] = []
        self.received_scancodes: list[int] = []
        self._pressed: set[int] = set()
        self._started = asyncio.Event()
        self._stopped = asyncio.Event()

    # Screen --------------------------------------------------------------

    def get_full_screen(self) -> list[str]:
        return self.console.get_full_screen()

    def get_row(self, index: int) -> str:
        return self.console.get_row(index)

    def add_row_listener(self, listener: RowWriteListener) -> None:
        self.console.add_row_listener(listener)

    def remove_row_listener(self, listener: RowWriteListener) -> None:
        self.console.remove_row_listener(listener)

    # Keyboard ------------------------------------------------------------

    async def send_scancodes(self, codes: Sequence[int]) -> None:
        self.received_scancodes.extend(codes)
        for number, down in iter_key_transitions(codes):
            if not down:
                self._pressed.discard(number)
                continue
            if number in (CTRL, LEFT_SHIFT, RIGHT_SHIFT, _ALTGR_NUMBER):
                self._pressed.add(number)
                continue
            char = self._decode(number)
            if char is None:
                LOGGER.debug("loopback keyboard ignored key 0x%02x", number)
                continue
            self.feed(char)
        await asyncio.sleep(0)

    async def send_text(self, text: str) -> None:
        for char in text:
            self.feed(char)
        await asyncio.sleep(0)

    def _decode(self, number: int) -> str | None:
        if CTRL in self._pressed:
            return _CTRL_CHARS.get(number)
        modifiers = 0
        if LEFT_SHIFT in self._pressed or RIGHT_SHIFT in self._pressed:
            modifiers |= MOD_SHIFT
        if _ALTGR_NUMBER in self._pressed:
            modifiers |= MOD_ALTGR
        return self.layout.decode(number, modifiers)

    # Line editor ---------------------------------------------------------

    def feed(self, char: str) -> None:
        """Apply one decoded character to the echoing line editor."""

        if char in ("\r", "\n"):
            self.lines.append("".join(self.line))
            self.line.clear()
            self.console.write("\r\n" + self.prompt)
        elif char in ("\b", "\x7f"):
            if self.line and self.console.erase_left():
                self.line.pop()
        elif char == "\x03":
            self.line.clear()
            self.console.write("^C\r\n" + self.prompt)
        elif char == "\x0c":
            self.console.clear()
            self.console.write(self.prompt + "".join(self.line))
        elif char.isprintable():
            self.line.append(char)
            self.console.write(char)

    # Lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        if self._started.is_set():
            return
        self.console.write(self.banner.replace("\n", "\r\n") + self.prompt)
        self._started.set()

    def stop(self) -> None:
        self._stopped.set()

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def close(self) -> None:
        self._stopped.set()
