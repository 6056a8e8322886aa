"""Interface of the monitored machine consumed by the observer and encoder."""
from __future__ import annotations

from typing import Callable, Protocol, Sequence

__all__ = ["MonitoredMachine", "RowWriteListener"]


RowWriteListener = Callable[[int], None]


class MonitoredMachine(Protocol):
    """Text screen, write notifications and keyboard of a running machine.

    ``get_full_screen``/``get_row`` and the row listeners are synchronous and
    run on the event loop thread. Keyboard delivery may suspend. ``start``,
    ``wait_stopped`` and ``close`` belong to the driving program and are
    never called by :class:`~vga2tty.screen_observer.ScreenObserver` or
    :class:`~vga2tty.key_encoder.KeyEncoder`.
    """

    def get_full_screen(self) -> Sequence[str]:
        """Return every row of the visible text screen, top to bottom."""

    def get_row(self, index: int) -> str:
        """Return the current text of row ``index``."""

    def add_row_listener(self, listener: RowWriteListener) -> None:
        """Call ``listener(row)`` for every character written to ``row``."""

    def remove_row_listener(self, listener: RowWriteListener) -> None:
        """Stop delivering write notifications to ``listener``."""

    async def send_scancodes(self, codes: Sequence[int]) -> None:
        """Deliver ``codes`` to the emulated keyboard controller in order."""

    async def send_text(self, text: str) -> None:
        """Type printable ``text`` using the machine's own key translation."""

    def stop(self) -> None:
        """Request machine shutdown."""

    async def start(self) -> None:
        """Return once the machine is running and its screen is readable."""

    async def wait_stopped(self) -> None:
        """Return once the machine has stopped."""

    async def close(self) -> None:
        """Release connections held by the adapter."""
