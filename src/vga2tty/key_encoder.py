"""Translate raw terminal input into keyboard scan code sequences."""
from __future__ import annotations

import asyncio
import enum
import logging
from typing import Callable, Protocol

from .machine import MonitoredMachine
from .scancodes import (
    BACKSPACE,
    CTRL,
    CTRL_KEY_SCANCODES,
    KEY_C,
    SPECIAL_KEY_SCANCODES,
    encode_keypress,
)

__all__ = [
    "INTERRUPT",
    "InputSource",
    "InterruptHandler",
    "InterruptState",
    "KeyEncoder",
    "encode_sequence",
    "is_incomplete_escape",
    "split_key_sequences",
]

LOGGER = logging.getLogger(__name__)

INTERRUPT = "\x03"
ESCAPE = "\x1b"
DELETE = "\x7f"
# Seconds an unfinished escape sequence waits for the rest of its bytes.
ESCAPE_TIMEOUT = 0.5

InterruptHandler = Callable[[int], None]


class InputSource(Protocol):
    """Raw keyboard input consumed by :class:`KeyEncoder`."""

    def open(self) -> None:
        """Switch the source into raw (unbuffered, unechoed) mode."""

    def close(self) -> None:
        """Restore the mode the source had before :meth:`open`."""

    async def read(self) -> str:
        """Return the next chunk of input, or ``""`` at end of input."""


class InterruptState(enum.Enum):
    """Ctrl+C disambiguation state."""

    IDLE = "idle"
    ARMED = "armed"


def split_key_sequences(text: str) -> list[str]:
    """Split a raw input chunk into keystrokes and escape sequences.

    ``ESC [`` sequences run to their final byte (``@`` through ``~``), the
    Linux console form ``ESC [ [ X`` included. ``ESC O`` and ``ESC`` followed
    by any other character take one more character. A lone ``ESC`` (end of
    chunk or followed by another ``ESC``) is a keystroke of its own.
    """

    units: list[str] = []
    index = 0
    length = len(text)
    while index < length:
        char = text[index]
        if char != ESCAPE or index + 1 >= length or text[index + 1] == ESCAPE:
            units.append(char)
            index += 1
            continue
        follower = text[index + 1]
        if follower == "[":
            end = index + 2
            if end < length and text[end] == "[":
                end += 1
                if end < length:
                    end += 1
            else:
                while end < length and not "@" <= text[end] <= "~":
                    end += 1
                if end < length:
                    end += 1
            units.append(text[index:end])
            index = end
            continue
        if follower == "O" and index + 2 < length:
            units.append(text[index : index + 3])
            index += 3
            continue
        units.append(text[index : index + 2])
        index += 2
    return units


def is_incomplete_escape(unit: str) -> bool:
    """Return ``True`` when ``unit`` may be the start of a longer sequence."""

    if not unit.startswith(ESCAPE):
        return False
    if len(unit) == 1:
        return True
    if unit[1] == "O":
        return len(unit) < 3
    if unit[1] != "[":
        return False
    if len(unit) == 2:
        return True
    if unit[2] == "[":
        return len(unit) < 4
    return not "@" <= unit[-1] <= "~"


class KeyEncoder:
    """Forward terminal keystrokes to a machine's keyboard controller.

    Ctrl+C is never forwarded directly. The first press arms the encoder and
    reports escalation ``0`` to ``interrupt_handler``; pressing it again
    reports ``1`` (and so on) so the caller can stop the machine. Any other
    key while armed is swallowed and replaced by a chorded Ctrl+C sent to
    the machine.
    """

    def __init__(
        self,
        interrupt_handler: InterruptHandler,
        *,
        input_source: InputSource | None = None,
        escape_timeout: float = ESCAPE_TIMEOUT,
    ) -> None:
        self.interrupt_handler = interrupt_handler
        self._input_source = input_source
        self.escape_timeout = escape_timeout
        self._pending_escape = ""
        self._machine: MonitoredMachine | None = None
        self._task: asyncio.Task[None] | None = None
        self.state = InterruptState.IDLE
        self.interrupt_count = 0

    # Lifecycle -----------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._machine is not None

    @property
    def input_source(self) -> InputSource:
        if self._input_source is None:
            from .runtime.terminal import TerminalInput

            self._input_source = TerminalInput()
        return self._input_source

    def start(self, machine: MonitoredMachine) -> None:
        """Put the input source into raw mode and start forwarding keys."""

        if self._machine is not None:
            return
        loop = asyncio.get_running_loop()
        self._machine = machine
        self.state = InterruptState.IDLE
        self.interrupt_count = 0
        self._pending_escape = ""
        self.input_source.open()
        self._task = loop.create_task(self._pump_input())
        LOGGER.debug("key encoder started")

    def stop(self) -> None:
        """Stop forwarding keys and restore the input mode; idempotent."""

        if self._machine is None:
            return
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self.input_source.close()
        self._pending_escape = ""
        self._machine = None
        LOGGER.debug("key encoder stopped")

    async def wait_closed(self) -> None:
        """Wait for the input pump to finish and re-raise delivery errors."""

        task = self._task
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
        finally:
            if task.done():
                self._task = None

    async def _pump_input(self) -> None:
        source = self.input_source
        while self._machine is not None:
            if self._pending_escape:
                try:
                    chunk = await asyncio.wait_for(source.read(), self.escape_timeout)
                except asyncio.TimeoutError:
                    await self.flush_pending()
                    continue
            else:
                chunk = await source.read()
            if not chunk:
                LOGGER.info("keyboard input closed")
                await self.flush_pending()
                return
            await self.handle_input(chunk)

    # Encoding ------------------------------------------------------------

    async def handle_input(self, text: str) -> None:
        """Process every keystroke contained in ``text`` in arrival order.

        A trailing escape sequence that may still be incomplete is held back
        and completed by the next chunk, or sent as is by :meth:`flush_pending`.
        """

        units = split_key_sequences(self._pending_escape + text)
        self._pending_escape = ""
        if units and is_incomplete_escape(units[-1]):
            self._pending_escape = units.pop()
        for sequence in units:
            await self.handle_key(sequence)

    async def flush_pending(self) -> None:
        """Encode a held-back escape sequence without waiting for more input."""

        sequence = self._pending_escape
        self._pending_escape = ""
        if sequence:
            await self.handle_key(sequence)

    async def handle_key(self, sequence: str) -> None:
        """Encode a single keystroke or escape sequence."""

        machine = self._machine
        if machine is None:
            raise RuntimeError("key encoder not started")

        if sequence == INTERRUPT:
            self.state = InterruptState.ARMED
            count = self.interrupt_count
            self.interrupt_count += 1
            self.interrupt_handler(count)
            return

        if self.state is InterruptState.ARMED:
            # The interrupt was meant for the guest; the pending key is dropped.
            self.state = InterruptState.IDLE
            self.interrupt_count = 0
            await machine.send_scancodes(encode_keypress(CTRL, encode_keypress(KEY_C)))
            return

        scancodes = encode_sequence(sequence)
        if scancodes is not None:
            await machine.send_scancodes(scancodes)
        elif sequence.startswith(ESCAPE):
            LOGGER.warning("unhandled keyboard input: %r", sequence)
        else:
            await machine.send_text(sequence)


def encode_sequence(sequence: str) -> list[int] | None:
    """Return scan codes for a special key, control byte or DEL.

    Returns ``None`` for printable text and unrecognised escape sequences.
    """

    scancode = SPECIAL_KEY_SCANCODES.get(sequence)
    if scancode is not None:
        return encode_keypress(scancode)
    scancode = CTRL_KEY_SCANCODES.get(sequence)
    if scancode is not None:
        return encode_keypress(CTRL, encode_keypress(scancode))
    if sequence == DELETE:
        # terminals send DEL for the Backspace key
        return encode_keypress(BACKSPACE)
    return None
