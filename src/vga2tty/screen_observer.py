"""Detect settled text screen updates and report the rows that changed."""
from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import IO, Callable, Iterable, Sequence

from .machine import MonitoredMachine

__all__ = [
    "CAPTURE_INTERVAL",
    "EMPTY_ROW",
    "ChangedRegion",
    "RowsHandler",
    "ScreenObserver",
    "capture_changed_rows",
    "find_bottom_row",
    "find_intersect_end",
    "format_screenshot",
]

LOGGER = logging.getLogger(__name__)

SCREEN_COLUMNS = 80
EMPTY_ROW = " " * SCREEN_COLUMNS
CAPTURE_INTERVAL = 0.001

RowsHandler = Callable[[Sequence[str], int, int, bool], None]


@dataclass(frozen=True)
class ChangedRegion:
    """Half-open row range ``[top, bottom)`` of a settled screen update.

    With ``full_repaint`` unset the first row of the range is the old bottom
    row, which may have been modified in place, and the remaining rows were
    appended below it. With ``full_repaint`` set every row is new output.
    """

    top: int
    bottom: int
    full_repaint: bool

    def __bool__(self) -> bool:
        return self.bottom > self.top


def find_bottom_row(rows: Sequence[str], empty_row: str = EMPTY_ROW) -> int | None:
    """Return the index of the last non-blank row or ``None`` for a blank screen."""

    for index in range(len(rows) - 1, -1, -1):
        if rows[index] != empty_row:
            return index
    return None


def _find_reverse(text: str, rows: Sequence[str], offset: int) -> int:
    for index in range(offset, -1, -1):
        if rows[index] == text:
            return index
    return -1


def _rows_above_match(
    old_rows: Sequence[str], old_anchor: int, new_rows: Sequence[str], new_anchor: int
) -> bool:
    # Rows above the anchor in ``new_rows`` must all still exist above it in ``old_rows``.
    offset = old_anchor - new_anchor
    if offset < 0:
        return False
    return all(new_rows[index] == old_rows[offset + index] for index in range(new_anchor))


def find_intersect_end(
    old_rows: Sequence[str],
    old_bottom: int,
    new_rows: Sequence[str],
    new_bottom: int,
) -> int | None:
    """Return the first row of ``new_rows`` past the overlap with ``old_rows``.

    The row above the old bottom row is searched in ``new_rows`` from
    ``new_bottom - 1`` upwards. The closest candidate whose preceding rows
    equal the old rows preceding the anchor fixes the scroll offset.
    """

    anchor = old_rows[old_bottom - 1]
    old_anchor = old_bottom - 1
    candidate = new_bottom - 1
    while candidate >= 0:
        candidate = _find_reverse(anchor, new_rows, candidate)
        if candidate < 0:
            break
        if _rows_above_match(old_rows, old_anchor, new_rows, candidate):
            return candidate + 1
        candidate -= 1
    return None


def capture_changed_rows(
    old_rows: Sequence[str],
    new_rows: Sequence[str],
    *,
    empty_row: str = EMPTY_ROW,
) -> ChangedRegion | None:
    """Compare two snapshots of a scrolling screen and return what changed.

    Returns ``None`` when the new screen is blank or the computed range is
    empty.
    """

    new_bottom = find_bottom_row(new_rows, empty_row)
    if new_bottom is None:
        return None

    new_top: int | None = None
    old_bottom = find_bottom_row(old_rows, empty_row)
    if old_bottom is not None:
        if old_bottom == 0:
            # A single old line (fresh screen): it now sits above the new bottom row.
            new_top = max(0, new_bottom - 1)
        else:
            new_top = find_intersect_end(old_rows, old_bottom, new_rows, new_bottom)

    if new_top is None:
        region = ChangedRegion(0, new_bottom + 1, True)
    else:
        region = ChangedRegion(new_top, new_bottom + 1, False)
    return region if region else None


def format_screenshot(rows: Iterable[str], number: int) -> list[str]:
    """Return the labelled debug dump of ``rows`` for snapshot ``number``."""

    lines = [
        "--- Snapshot "
        + _zeropad(number)
        + " -----------------------------------------------------------------------"
    ]
    lines.extend(f"{_zeropad(index)} | {row} |" for index, row in enumerate(rows))
    return lines


def _zeropad(value: int, width: int = 2) -> str:
    return str(value).rjust(width, "0")


class ScreenObserver:
    """Mirror a machine's text screen and report settled changes.

    Row write notifications only mark rows dirty. A poll timer re-evaluates
    the screen every ``poll_interval`` seconds: a tick that saw writes keeps
    the screen busy, the next quiet tick refreshes the dirty rows and hands
    the changed region to ``rows_handler``. In debug mode every settle dumps
    the full screen to ``screenshot_stream`` instead. A tick that raises is
    logged and re-raised from :meth:`wait_closed`; polling carries on.
    """

    def __init__(
        self,
        rows_handler: RowsHandler,
        *,
        debug_screenshots: bool = False,
        screenshot_stream: IO[str] | None = None,
        poll_interval: float = CAPTURE_INTERVAL,
        empty_row: str = EMPTY_ROW,
    ) -> None:
        self.rows_handler = rows_handler
        self.debug_screenshots = bool(debug_screenshots)
        self._screenshot_stream = screenshot_stream
        interval = float(poll_interval)
        if interval <= 0.0:
            interval = CAPTURE_INTERVAL
        self.poll_interval = interval
        self.empty_row = empty_row

        self._machine: MonitoredMachine | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._rows: list[str] = []
        self._busy = False
        self._dirty_rows: set[int] = set()
        self._closed: asyncio.Future[None] | None = None
        self.snapshot_count = 1

    # Lifecycle -----------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._machine is not None

    @property
    def rows(self) -> tuple[str, ...]:
        """Return a copy of the current snapshot."""

        return tuple(self._rows)

    def start(self, machine: MonitoredMachine) -> None:
        """Capture the initial screen of ``machine`` and start polling."""

        if self._machine is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._machine = machine
        self._rows = list(machine.get_full_screen())
        self._busy = False
        self._dirty_rows.clear()
        self._closed = self._loop.create_future()
        machine.add_row_listener(self.on_row_write)
        self._schedule()
        LOGGER.debug("screen observer started with %d rows", len(self._rows))

    def stop(self) -> None:
        """Detach from the machine; safe to call when not started."""

        machine = self._machine
        if machine is None:
            return
        machine.remove_row_listener(self.on_row_write)
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._closed is not None and not self._closed.done():
            self._closed.set_result(None)
        self._machine = None
        self._loop = None
        LOGGER.debug("screen observer stopped")

    async def wait_closed(self) -> None:
        """Wait until :meth:`stop` and re-raise the first failed poll tick."""

        closed = self._closed
        if closed is None:
            return
        await asyncio.shield(closed)

    # Notifications -------------------------------------------------------

    def on_row_write(self, row: int) -> None:
        """Mark ``row`` dirty; called once per character the guest writes."""

        if isinstance(row, int) and 0 <= row < len(self._rows):
            self._dirty_rows.add(row)
            self._busy = True

    # Poll loop -----------------------------------------------------------

    def check_screen(self) -> None:
        """Run one poll tick and re-arm the timer."""

        machine = self._machine
        if machine is None:
            return
        try:
            if self._busy:
                # still being written: wait for a quiet tick
                self._busy = False
            elif self._dirty_rows:
                old_rows = list(self._rows)
                dirty_rows = sorted(self._dirty_rows)
                self._dirty_rows.clear()
                for row in dirty_rows:
                    self._rows[row] = machine.get_row(row)
                if self.debug_screenshots:
                    self._write_screenshot()
                else:
                    self._emit_changed_rows(old_rows)
        except Exception as exc:
            LOGGER.error("screen update failed: %s", exc)
            if self._closed is not None and not self._closed.done():
                self._closed.set_exception(exc)
        finally:
            self._schedule()

    def _emit_changed_rows(self, old_rows: Sequence[str]) -> None:
        new_rows = tuple(self._rows)
        region = capture_changed_rows(old_rows, new_rows, empty_row=self.empty_row)
        if region is None:
            return
        self.rows_handler(new_rows, region.top, region.bottom, region.full_repaint)

    def _write_screenshot(self) -> None:
        stream = self._screenshot_stream or sys.stdout
        lines = format_screenshot(self._rows, self.snapshot_count)
        self.snapshot_count += 1
        stream.write("\n".join(lines) + "\n")
        stream.flush()

    def _schedule(self) -> None:
        loop = self._loop
        if loop is None:
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self.poll_interval, self.check_screen)
