"""Tests for keystroke classification and the Ctrl+C protocol."""

from __future__ import annotations

import asyncio
import logging
from collections import deque

import pytest

from vga2tty.key_encoder import (
    InterruptState,
    KeyEncoder,
    encode_sequence,
    is_incomplete_escape,
    split_key_sequences,
)

CTRL_C_CHORD = [0x1D, 0x2E, 0xAE, 0x9D]


class FakeMachine:
    def __init__(self) -> None:
        self.scancodes: list[list[int]] = []
        self.texts: list[str] = []

    async def send_scancodes(self, codes) -> None:
        await asyncio.sleep(0)
        self.scancodes.append(list(codes))

    async def send_text(self, text: str) -> None:
        await asyncio.sleep(0)
        self.texts.append(text)


class ScriptedInput:
    """Input source returning queued chunks, then end of input."""

    def __init__(self, chunks=()) -> None:
        self.chunks = deque(chunks)
        self.opened = False
        self.closed = False

    def open(self) -> None:
        self.opened = True

    def close(self) -> None:
        self.closed = True

    async def read(self) -> str:
        await asyncio.sleep(0)
        if self.chunks:
            return self.chunks.popleft()
        return ""


class IdleInput(ScriptedInput):
    """Input source that never produces data."""

    async def read(self) -> str:
        await asyncio.Event().wait()
        return ""


class HoldingInput(ScriptedInput):
    """Input source that blocks once its queued chunks are used up."""

    async def read(self) -> str:
        if self.chunks:
            await asyncio.sleep(0)
            return self.chunks.popleft()
        await asyncio.Event().wait()
        return ""


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("ab", ["a", "b"]),
        ("x\x1b[Ay", ["x", "\x1b[A", "y"]),
        ("\x1b[15~!", ["\x1b[15~", "!"]),
        ("\x1b[[A", ["\x1b[[A"]),
        ("\x1bOPq", ["\x1bOP", "q"]),
        ("\x1b", ["\x1b"]),
        ("\x1b\x1b[B", ["\x1b", "\x1b[B"]),
        ("\x1bx", ["\x1bx"]),
        ("\x03\x03", ["\x03", "\x03"]),
    ],
)
def test_split_key_sequences(text: str, expected: list[str]) -> None:
    assert split_key_sequences(text) == expected


@pytest.mark.parametrize(
    ("sequence", "expected"),
    [
        ("\x1b[11~", [0x3B, 0xBB]),
        ("\x1bOP", [0x3B, 0xBB]),
        ("\x1b[24~", [0x58, 0xD8]),
        ("\x1b[A", [0xE0, 0x48, 0xE0, 0xC8]),
        ("\x1b[3~", [0xE0, 0x53, 0xE0, 0xD3]),
        ("\x01", [0x1D, 0x1E, 0x9E, 0x9D]),
        ("\r", [0x1D, 0x32, 0xB2, 0x9D]),
        ("\x1b", [0x1D, 0x1A, 0x9A, 0x9D]),
        ("\x7f", [0x0E, 0x8E]),
    ],
)
def test_encode_sequence(sequence: str, expected: list[int]) -> None:
    assert encode_sequence(sequence) == expected


def test_encode_sequence_leaves_text_and_unknown_escapes() -> None:
    assert encode_sequence("a") is None
    assert encode_sequence("\x1b[99~") is None


def test_interrupt_escalates_without_sending_keys() -> None:
    async def _exercise() -> None:
        machine = FakeMachine()
        counts: list[int] = []
        encoder = KeyEncoder(counts.append, input_source=IdleInput())
        encoder.start(machine)

        await encoder.handle_key("\x03")
        assert counts == [0]
        assert encoder.state is InterruptState.ARMED

        await encoder.handle_key("\x03")
        await encoder.handle_key("\x03")
        assert counts == [0, 1, 2]
        assert machine.scancodes == []
        assert machine.texts == []
        encoder.stop()

    asyncio.run(_exercise())


def test_key_after_interrupt_forwards_ctrl_c_and_drops_key() -> None:
    async def _exercise() -> None:
        machine = FakeMachine()
        counts: list[int] = []
        encoder = KeyEncoder(counts.append, input_source=IdleInput())
        encoder.start(machine)

        await encoder.handle_key("\x03")
        await encoder.handle_key("a")
        assert machine.scancodes == [CTRL_C_CHORD]
        assert machine.texts == []
        assert encoder.state is InterruptState.IDLE

        await encoder.handle_key("a")
        assert machine.texts == ["a"]

        await encoder.handle_key("\x03")
        assert counts == [0, 0]
        encoder.stop()

    asyncio.run(_exercise())


def test_keys_are_classified() -> None:
    async def _exercise() -> None:
        machine = FakeMachine()
        encoder = KeyEncoder(lambda count: None, input_source=IdleInput())
        encoder.start(machine)

        await encoder.handle_input("é\x1b[B\x04\x7f")
        assert machine.texts == ["é"]
        assert machine.scancodes == [
            [0xE0, 0x50, 0xE0, 0xD0],
            [0x1D, 0x20, 0xA0, 0x9D],
            [0x0E, 0x8E],
        ]
        encoder.stop()

    asyncio.run(_exercise())


def test_unknown_escape_sequence_is_logged_and_dropped(caplog) -> None:
    async def _exercise() -> None:
        machine = FakeMachine()
        encoder = KeyEncoder(lambda count: None, input_source=IdleInput())
        encoder.start(machine)
        await encoder.handle_key("\x1b[99~")
        encoder.stop()
        assert machine.scancodes == []
        assert machine.texts == []

    with caplog.at_level(logging.WARNING, logger="vga2tty.key_encoder"):
        asyncio.run(_exercise())

    assert "unhandled keyboard input" in caplog.text


def test_handle_key_requires_started_encoder() -> None:
    encoder = KeyEncoder(lambda count: None, input_source=IdleInput())

    with pytest.raises(RuntimeError):
        asyncio.run(encoder.handle_key("a"))


def test_input_pump_forwards_chunks_in_order() -> None:
    async def _exercise() -> tuple[FakeMachine, ScriptedInput]:
        machine = FakeMachine()
        source = ScriptedInput(["ab", "\x1b[C", "c"])
        encoder = KeyEncoder(lambda count: None, input_source=source)
        encoder.start(machine)
        await asyncio.wait_for(encoder.wait_closed(), timeout=5)
        encoder.stop()
        return machine, source

    machine, source = asyncio.run(_exercise())

    assert machine.texts == ["a", "b", "c"]
    assert machine.scancodes == [[0xE0, 0x4D, 0xE0, 0xCD]]
    assert source.opened and source.closed


def test_start_resets_interrupt_state_and_stop_is_idempotent() -> None:
    async def _exercise() -> None:
        machine = FakeMachine()
        counts: list[int] = []
        source = IdleInput()
        encoder = KeyEncoder(counts.append, input_source=source)

        encoder.stop()
        encoder.start(machine)
        await encoder.handle_key("\x03")
        encoder.stop()
        encoder.stop()
        assert source.closed
        assert not encoder.running

        encoder.start(machine)
        assert encoder.state is InterruptState.IDLE
        await encoder.handle_key("\x03")
        assert counts == [0, 0]
        encoder.stop()
        await encoder.wait_closed()

    asyncio.run(_exercise())


def test_delivery_failure_surfaces_from_wait_closed() -> None:
    class BrokenMachine(FakeMachine):
        async def send_text(self, text: str) -> None:
            raise ValueError("keyboard controller unavailable")

    async def _exercise() -> None:
        encoder = KeyEncoder(lambda count: None, input_source=ScriptedInput(["x"]))
        encoder.start(BrokenMachine())
        with pytest.raises(ValueError):
            await asyncio.wait_for(encoder.wait_closed(), timeout=5)
        encoder.stop()

    asyncio.run(_exercise())


@pytest.mark.parametrize(
    ("unit", "incomplete"),
    [
        ("\x1b", True),
        ("\x1b[", True),
        ("\x1b[1", True),
        ("\x1b[[", True),
        ("\x1bO", True),
        ("\x1b[A", False),
        ("\x1b[15~", False),
        ("\x1b[[A", False),
        ("\x1bOP", False),
        ("\x1bx", False),
        ("a", False),
    ],
)
def test_is_incomplete_escape(unit: str, incomplete: bool) -> None:
    assert is_incomplete_escape(unit) is incomplete


def test_escape_sequence_split_across_reads_is_reassembled() -> None:
    async def _exercise() -> FakeMachine:
        machine = FakeMachine()
        encoder = KeyEncoder(lambda count: None, input_source=IdleInput())
        encoder.start(machine)
        await encoder.handle_input("\x1b")
        assert machine.scancodes == []
        await encoder.handle_input("[A")
        await encoder.handle_input("x\x1b[1")
        await encoder.handle_input("1~")
        encoder.stop()
        return machine

    machine = asyncio.run(_exercise())

    assert machine.scancodes == [[0xE0, 0x48, 0xE0, 0xC8], [0x3B, 0xBB]]
    assert machine.texts == ["x"]


def test_lone_escape_is_sent_after_timeout() -> None:
    async def _exercise() -> FakeMachine:
        machine = FakeMachine()
        encoder = KeyEncoder(
            lambda count: None,
            input_source=HoldingInput(["\x1b"]),
            escape_timeout=0.01,
        )
        encoder.start(machine)
        for _ in range(200):
            if machine.scancodes:
                break
            await asyncio.sleep(0.01)
        encoder.stop()
        return machine

    machine = asyncio.run(_exercise())

    assert machine.scancodes == [[0x1D, 0x1A, 0x9A, 0x9D]]


def test_split_sequence_through_input_pump() -> None:
    async def _exercise() -> FakeMachine:
        machine = FakeMachine()
        encoder = KeyEncoder(
            lambda count: None, input_source=ScriptedInput(["\x1b", "[B", "a\x1b"])
        )
        encoder.start(machine)
        await asyncio.wait_for(encoder.wait_closed(), timeout=5)
        encoder.stop()
        return machine

    machine = asyncio.run(_exercise())

    assert machine.scancodes == [[0xE0, 0x50, 0xE0, 0xD0], [0x1D, 0x1A, 0x9A, 0x9D]]
    assert machine.texts == ["a"]
