"""QEMU Machine Protocol client and the QEMU monitored machine adapter."""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
import re
from typing import Any, Callable, Mapping, Sequence

from ..machine import RowWriteListener
from ..scancodes import KeyboardLayout, get_layout, iter_key_transitions

__all__ = [
    "QemuMachine",
    "QmpClient",
    "QmpError",
    "VGA_TEXT_BASE",
    "decode_text_rows",
    "parse_hmp_bytes",
    "scancodes_to_input_events",
]

LOGGER = logging.getLogger(__name__)

VGA_TEXT_BASE = 0xB8000

_HMP_BYTE = re.compile(r"0x([0-9a-fA-F]{2})\b")

EventHandler = Callable[[Mapping[str, Any]], None]


class QmpError(RuntimeError):
    """Raised when QEMU answers a command with an ``error`` object."""

    def __init__(self, command: str, error: Mapping[str, Any]) -> None:
        self.command = command
        self.error_class = str(error.get("class", "GenericError"))
        self.description = str(error.get("desc", ""))
        super().__init__(f"{command}: {self.error_class}: {self.description}")


class QmpClient:
    """Minimal asyncio QMP client speaking JSON lines over a stream."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.greeting: Mapping[str, Any] | None = None
        self._ids = itertools.count(1)
        self._pending: dict[str, asyncio.Future[Any]] = {}
        self._event_handlers: list[EventHandler] = []
        self._reader_task: asyncio.Task[None] | None = None
        self._closed = asyncio.Event()

    @classmethod
    async def connect_tcp(cls, host: str, port: int) -> "QmpClient":
        reader, writer = await asyncio.open_connection(host, port)
        return cls(reader, writer)

    @classmethod
    async def connect_unix(cls, path: str) -> "QmpClient":
        reader, writer = await asyncio.open_unix_connection(path)
        return cls(reader, writer)

    # Session -------------------------------------------------------------

    async def negotiate(self) -> None:
        """Consume the greeting, enter command mode and start dispatching."""

        greeting = await self._read_message()
        if greeting is None or "QMP" not in greeting:
            raise ConnectionError("QMP greeting not received")
        self.greeting = greeting
        self._reader_task = asyncio.get_running_loop().create_task(self._pump_messages())
        await self.execute("qmp_capabilities")

    def add_event_handler(self, handler: EventHandler) -> None:
        self._event_handlers.append(handler)

    async def execute(self, command: str, arguments: Mapping[str, Any] | None = None) -> Any:
        """Send ``command`` and return the ``return`` member of the reply."""

        if self._closed.is_set():
            raise ConnectionError("QMP connection closed")
        request_id = f"vga2tty-{next(self._ids)}"
        message: dict[str, Any] = {"execute": command, "id": request_id}
        if arguments:
            message["arguments"] = dict(arguments)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            self.writer.write((json.dumps(message) + "\r\n").encode("utf-8"))
            await self.writer.drain()
            reply = await future
        finally:
            self._pending.pop(request_id, None)
        if "error" in reply:
            raise QmpError(command, reply["error"])
        return reply.get("return")

    async def hmp(self, command_line: str) -> str:
        """Run a human monitor command and return its text output."""

        result = await self.execute(
            "human-monitor-command", {"command-line": command_line}
        )
        return str(result or "")

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def close(self) -> None:
        if self._reader_task is not None:
            self._reader_task.cancel()
        self._mark_closed()
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except ConnectionError:
            pass

    # Internal helpers ----------------------------------------------------

    async def _read_message(self) -> dict[str, Any] | None:
        while True:
            line = await self.reader.readline()
            if not line:
                return None
            text = line.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            return json.loads(text)

    async def _pump_messages(self) -> None:
        try:
            while True:
                message = await self._read_message()
                if message is None:
                    break
                if "event" in message:
                    for handler in list(self._event_handlers):
                        handler(message)
                    continue
                future = self._pending.get(str(message.get("id")))
                if future is not None and not future.done():
                    future.set_result(message)
                else:
                    LOGGER.debug("unmatched QMP reply: %r", message)
        except (ConnectionError, json.JSONDecodeError) as exc:
            LOGGER.info("QMP stream failed: %s", exc)
        finally:
            self._mark_closed()

    def _mark_closed(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        for future in self._pending.values():
            if not future.done():
                future.set_exception(ConnectionError("QMP connection closed"))


def parse_hmp_bytes(text: str, limit: int) -> bytes:
    """Return up to ``limit`` byte values from ``xp /Nbx`` monitor output."""

    values = bytearray()
    for match in _HMP_BYTE.finditer(text):
        values.append(int(match.group(1), 16))
        if len(values) >= limit:
            break
    return bytes(values)


def decode_text_rows(
    memory: bytes, *, rows: int, columns: int, encoding: str = "cp437"
) -> list[str]:
    """Decode interleaved character/attribute text memory into rows."""

    cells = rows * columns
    characters = bytes(memory[0 : cells * 2 : 2]).ljust(cells, b"\x00")
    text = characters.replace(b"\x00", b" ").decode(encoding, errors="replace")
    return [text[row * columns : (row + 1) * columns] for row in range(rows)]


def scancodes_to_input_events(codes: Sequence[int]) -> list[dict[str, Any]]:
    """Translate a scan code stream into ``input-send-event`` key events."""

    return [
        {
            "type": "key",
            "data": {"down": down, "key": {"type": "number", "data": number}},
        }
        for number, down in iter_key_transitions(codes)
    ]


class QemuMachine:
    """Monitored machine backed by a running QEMU instance over QMP.

    The VGA text plane is polled with ``xp`` every ``poll_interval`` seconds;
    rows that differ from the previous poll are reported to the row
    listeners. Keys are injected with ``input-send-event``.
    """

    def __init__(
        self,
        *,
        host: str = "localhost",
        port: int = 4444,
        socket_path: str | None = None,
        rows: int = 25,
        columns: int = 80,
        encoding: str = "cp437",
        layout: KeyboardLayout | str = "us",
        poll_interval: float = 0.02,
        key_delay: float = 0.0,
        client_factory: Callable[[], Any] | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.socket_path = socket_path
        self.rows = int(rows)
        self.columns = int(columns)
        self.encoding = encoding
        self.layout = get_layout(layout) if isinstance(layout, str) else layout
        self.poll_interval = max(0.001, float(poll_interval))
        self.key_delay = max(0.0, float(key_delay))
        self._client_factory = client_factory
        self.client: QmpClient | None = None
        self._screen: list[str] = [" " * self.columns] * self.rows
        self._listeners: list[RowWriteListener] = []
        self._poll_task: asyncio.Task[None] | None = None
        self._stop_tasks: set[asyncio.Task[Any]] = set()
        self._stopped = asyncio.Event()
        self.poll_error: QmpError | None = None

    # Lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Connect to QMP, read the initial screen and start polling."""

        if self.client is not None:
            return
        client = await self._connect()
        self.client = client
        await client.negotiate()
        client.add_event_handler(self._on_event)
        self._screen = await self._read_screen()
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_screen())
        LOGGER.info("connected to QEMU %s", self._describe_target())

    async def _connect(self) -> QmpClient:
        if self._client_factory is not None:
            return await self._client_factory()
        if self.socket_path:
            return await QmpClient.connect_unix(self.socket_path)
        return await QmpClient.connect_tcp(self.host, self.port)

    def _describe_target(self) -> str:
        if self.socket_path:
            return self.socket_path
        return f"{self.host}:{self.port}"

    def stop(self) -> None:
        """Ask QEMU to quit; the machine counts as stopped once it has."""

        client = self.client
        if client is None or client.closed:
            self._stopped.set()
            return
        task = asyncio.get_running_loop().create_task(self._quit(client))
        self._stop_tasks.add(task)
        task.add_done_callback(self._stop_tasks.discard)

    async def _quit(self, client: QmpClient) -> None:
        try:
            await client.execute("quit")
        except ConnectionError:
            pass
        except QmpError as exc:
            LOGGER.warning("QEMU refused to quit: %s", exc)

    async def wait_stopped(self) -> None:
        """Return once QEMU has stopped; re-raise a failed screen poll."""

        client = self.client
        if client is None:
            await self._stopped.wait()
        else:
            stopped = asyncio.ensure_future(self._stopped.wait())
            closed = asyncio.ensure_future(client.wait_closed())
            try:
                await asyncio.wait(
                    {stopped, closed}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                stopped.cancel()
                closed.cancel()
            self._stopped.set()
        if self.poll_error is not None:
            raise self.poll_error

    async def close(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        if self.client is not None:
            await self.client.close()
        self._stopped.set()

    def _on_event(self, message: Mapping[str, Any]) -> None:
        event = message.get("event")
        LOGGER.debug("QMP event %s", event)
        if event == "SHUTDOWN":
            self._stopped.set()

    # Screen --------------------------------------------------------------

    def get_full_screen(self) -> list[str]:
        return list(self._screen)

    def get_row(self, index: int) -> str:
        return self._screen[index]

    def add_row_listener(self, listener: RowWriteListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_row_listener(self, listener: RowWriteListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _read_screen(self) -> list[str]:
        assert self.client is not None
        size = self.rows * self.columns * 2
        output = await self.client.hmp(f"xp /{size}bx 0x{VGA_TEXT_BASE:x}")
        memory = parse_hmp_bytes(output, size)
        return decode_text_rows(
            memory, rows=self.rows, columns=self.columns, encoding=self.encoding
        )

    def apply_screen(self, rows: Sequence[str]) -> list[int]:
        """Store a freshly read screen and notify listeners of changed rows."""

        changed = [
            index
            for index, (old, new) in enumerate(zip(self._screen, rows))
            if old != new
        ]
        self._screen = list(rows)
        for index in changed:
            for listener in list(self._listeners):
                listener(index)
        return changed

    async def _poll_screen(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                rows = await self._read_screen()
            except ConnectionError:
                LOGGER.info("QMP connection closed while polling the screen")
                self._stopped.set()
                return
            except QmpError as exc:
                LOGGER.error("reading the VGA text screen failed: %s", exc)
                self.poll_error = exc
                self._stopped.set()
                return
            self.apply_screen(rows)

    # Keyboard ------------------------------------------------------------

    async def send_scancodes(self, codes: Sequence[int]) -> None:
        client = self.client
        if client is None:
            raise RuntimeError("QEMU machine not started")
        events = scancodes_to_input_events(codes)
        if not self.key_delay:
            await client.execute("input-send-event", {"events": events})
            return
        for event in events:
            await client.execute("input-send-event", {"events": [event]})
            await asyncio.sleep(self.key_delay)

    async def send_text(self, text: str) -> None:
        for char in text:
            codes = self.layout.encode_char(char)
            if codes is None:
                LOGGER.warning(
                    "no %s keyboard mapping for %r", self.layout.name, char
                )
                continue
            await self.send_scancodes(codes)
