"""Tests for the QMP client and the QEMU machine adapter."""

from __future__ import annotations

import asyncio
import json

import pytest

from vga2tty.runtime.qmp import (
    QemuMachine,
    QmpClient,
    QmpError,
    decode_text_rows,
    parse_hmp_bytes,
    scancodes_to_input_events,
)

GREETING = {"QMP": {"version": {"qemu": {"major": 8, "minor": 2, "micro": 0}}, "capabilities": []}}


def _text_memory(rows: list[str]) -> bytearray:
    memory = bytearray()
    for char in "".join(rows):
        memory.extend((char.encode("cp437")[0], 0x07))
    return memory


class FakeQmpServer:
    """Scripted QMP monitor serving VGA text memory over TCP."""

    def __init__(self, rows: list[str]) -> None:
        self.memory = _text_memory(rows)
        self.requests: list[dict] = []
        self.fail_hmp = False
        self.server: asyncio.base_events.Server | None = None

    async def __aenter__(self) -> "FakeQmpServer":
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        return self

    async def __aexit__(self, *exc_info) -> None:
        assert self.server is not None
        self.server.close()
        await self.server.wait_closed()

    @property
    def port(self) -> int:
        assert self.server is not None
        return self.server.sockets[0].getsockname()[1]

    def set_rows(self, rows: list[str]) -> None:
        self.memory = _text_memory(rows)

    def commands(self, name: str) -> list[dict]:
        return [request for request in self.requests if request["execute"] == name]

    def _dump(self) -> str:
        lines = []
        for offset in range(0, len(self.memory), 16):
            chunk = self.memory[offset : offset + 16]
            values = " ".join(f"0x{value:02x}" for value in chunk)
            lines.append(f"{0xB8000 + offset:016x}: {values}")
        return "\r\n".join(lines) + "\r\n"

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        def _send(message: dict) -> None:
            writer.write((json.dumps(message) + "\r\n").encode("utf-8"))

        _send(GREETING)
        while True:
            line = await reader.readline()
            if not line:
                break
            request = json.loads(line)
            self.requests.append(request)
            command = request["execute"]
            if command == "human-monitor-command" and self.fail_hmp:
                _send(
                    {
                        "error": {"class": "GenericError", "desc": "cannot access memory"},
                        "id": request["id"],
                    }
                )
            elif command == "human-monitor-command":
                _send({"return": self._dump(), "id": request["id"]})
            elif command == "bogus":
                _send(
                    {
                        "error": {"class": "CommandNotFound", "desc": "no bogus"},
                        "id": request["id"],
                    }
                )
            elif command == "quit":
                _send({"return": {}, "id": request["id"]})
                _send({"event": "SHUTDOWN", "data": {"guest": False}})
                await writer.drain()
                break
            else:
                _send({"return": {}, "id": request["id"]})
            await writer.drain()
        writer.close()


def test_parse_hmp_bytes_reads_hex_values() -> None:
    output = "00000000000b8000: 0x41 0x07 0x42 0x1f\r\n00000000000b8004: 0x00 0x07\r\n"

    assert parse_hmp_bytes(output, 6) == bytes([0x41, 0x07, 0x42, 0x1F, 0x00, 0x07])
    assert parse_hmp_bytes(output, 2) == bytes([0x41, 0x07])


def test_decode_text_rows_skips_attributes_and_blanks_nul() -> None:
    memory = bytes([0x41, 0x07, 0x00, 0x07, 0xDB, 0x07, 0x42, 0x07])

    assert decode_text_rows(memory, rows=2, columns=2) == ["A ", "█B"]
    assert decode_text_rows(memory[:2], rows=1, columns=3) == ["A  "]


def test_scancodes_to_input_events_uses_number_keys() -> None:
    events = scancodes_to_input_events([0xE0, 0x48, 0xE0, 0xC8])

    assert events == [
        {"type": "key", "data": {"down": True, "key": {"type": "number", "data": 0xC8}}},
        {"type": "key", "data": {"down": False, "key": {"type": "number", "data": 0xC8}}},
    ]


def test_apply_screen_reports_changed_rows() -> None:
    async def _exercise() -> list[int]:
        machine = QemuMachine(rows=3, columns=2)
        touched: list[int] = []
        machine.add_row_listener(touched.append)
        assert machine.apply_screen(["ab", "  ", "cd"]) == [0, 2]
        machine.remove_row_listener(touched.append)
        machine.apply_screen(["xx", "  ", "cd"])
        return touched

    assert asyncio.run(_exercise()) == [0, 2]


def test_client_negotiates_and_raises_error_replies() -> None:
    async def _exercise() -> None:
        async with FakeQmpServer(["  "]) as server:
            client = await QmpClient.connect_tcp("127.0.0.1", server.port)
            await client.negotiate()
            assert client.greeting == GREETING
            assert server.requests[0]["execute"] == "qmp_capabilities"

            with pytest.raises(QmpError) as excinfo:
                await client.execute("bogus")
            assert excinfo.value.error_class == "CommandNotFound"

            assert await client.execute("query-status") == {}
            await client.close()
            assert client.closed

    asyncio.run(asyncio.wait_for(_exercise(), timeout=10))


def test_qemu_machine_mirrors_screen_and_sends_keys() -> None:
    async def _exercise() -> None:
        async with FakeQmpServer(["boot", "    "]) as server:
            machine = QemuMachine(
                host="127.0.0.1",
                port=server.port,
                rows=2,
                columns=4,
                poll_interval=0.01,
            )
            await machine.start()
            assert machine.get_full_screen() == ["boot", "    "]
            xp = server.commands("human-monitor-command")[0]
            assert xp["arguments"]["command-line"] == "xp /16bx 0xb8000"

            touched: list[int] = []
            machine.add_row_listener(touched.append)
            server.set_rows(["boot", "ok  "])
            for _ in range(200):
                if touched:
                    break
                await asyncio.sleep(0.01)
            assert touched == [1]
            assert machine.get_row(1) == "ok  "

            await machine.send_scancodes([0x1E, 0x9E])
            await machine.send_text("A")
            sent = server.commands("input-send-event")
            assert sent[0]["arguments"]["events"] == scancodes_to_input_events([0x1E, 0x9E])
            assert [event["data"]["key"]["data"] for event in sent[1]["arguments"]["events"]] == [
                0x2A,
                0x1E,
                0x1E,
                0x2A,
            ]

            machine.stop()
            await asyncio.wait_for(machine.wait_stopped(), timeout=5)
            assert server.commands("quit")
            await machine.close()

    asyncio.run(asyncio.wait_for(_exercise(), timeout=20))


def test_qemu_machine_stops_when_screen_poll_fails() -> None:
    async def _exercise() -> None:
        async with FakeQmpServer(["boot"]) as server:
            machine = QemuMachine(
                host="127.0.0.1", port=server.port, rows=1, columns=4, poll_interval=0.01
            )
            await machine.start()
            server.fail_hmp = True
            with pytest.raises(QmpError) as excinfo:
                await asyncio.wait_for(machine.wait_stopped(), timeout=5)
            assert excinfo.value.error_class == "GenericError"
            assert machine.poll_error is excinfo.value
            await machine.close()

    asyncio.run(asyncio.wait_for(_exercise(), timeout=20))


def test_qemu_machine_paces_keys_with_delay() -> None:
    async def _exercise() -> None:
        async with FakeQmpServer(["    "]) as server:
            machine = QemuMachine(
                host="127.0.0.1",
                port=server.port,
                rows=1,
                columns=4,
                poll_interval=60,
                key_delay=0.001,
            )
            await machine.start()
            await machine.send_scancodes([0x1D, 0x2E, 0xAE, 0x9D])
            sent = server.commands("input-send-event")
            assert len(sent) == 4
            assert all(len(request["arguments"]["events"]) == 1 for request in sent)
            await machine.close()

    asyncio.run(asyncio.wait_for(_exercise(), timeout=10))


def test_send_scancodes_requires_started_machine() -> None:
    machine = QemuMachine()

    with pytest.raises(RuntimeError):
        asyncio.run(machine.send_scancodes([0x1E, 0x9E]))
