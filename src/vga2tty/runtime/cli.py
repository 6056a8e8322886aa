"""Mirror a virtual machine's text console on this terminal."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import sys
from pathlib import Path
from typing import IO, Sequence, Tuple

from .. import __version__
from ..config import ConfigError, Settings, language_settings, load_config
from ..key_encoder import InputSource, KeyEncoder
from ..machine import MonitoredMachine
from ..screen_observer import ScreenObserver
from ..text_console import LoopbackMachine
from .qmp import QemuMachine, QmpError
from .terminal import TerminalRenderer

LOGGER = logging.getLogger(__name__)

INTERRUPT_PROMPT = "\nPress CTRL+C again to exit\n"
TERMINATED_MESSAGE = "Terminated by user\n"


def _parse_host_port(value: str) -> Tuple[str, int]:
    try:
        host, port_text = value.rsplit(":", 1)
        port = int(port_text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("expected HOST:PORT") from exc
    return host or "localhost", port


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Return parsed arguments for the vga2tty CLI."""

    parser = argparse.ArgumentParser(prog="vga2tty", description=__doc__)
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to a TOML file with [screen], [keyboard] and [qemu] tables",
    )
    target = parser.add_mutually_exclusive_group()
    target.add_argument(
        "--qmp",
        type=_parse_host_port,
        default=None,
        metavar="HOST:PORT",
        help="Connect to a QEMU QMP monitor listening on HOST:PORT",
    )
    target.add_argument(
        "--qmp-socket",
        type=Path,
        default=None,
        metavar="PATH",
        help="Connect to a QEMU QMP monitor on a UNIX socket",
    )
    target.add_argument(
        "--loopback",
        action="store_true",
        help="Run against the built-in echoing console instead of QEMU",
    )
    parser.add_argument(
        "--lang",
        choices=("us", "uk", "de"),
        default=None,
        help="Screen code page and keyboard layout of the guest",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between screen change checks",
    )
    parser.add_argument(
        "--key-delay",
        type=float,
        default=None,
        help="Seconds to wait between key events sent to QEMU",
    )
    parser.add_argument(
        "--debug-screenshots",
        action="store_true",
        default=None,
        help="Dump the whole screen on every change instead of mirroring it",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Print the resolved settings and log at INFO level",
    )
    parser.add_argument(
        "--log-level",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        default=None,
        help="Logging threshold for diagnostics written to stderr",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> Settings:
    """Load the configuration file and apply command-line overrides."""

    settings = load_config(args.config) if args.config is not None else Settings()
    screen, keyboard, qemu = settings.screen, settings.keyboard, settings.qemu

    if args.lang is not None:
        encoding, layout = language_settings(args.lang)
        keyboard = dataclasses.replace(keyboard, layout=layout)
        qemu = dataclasses.replace(qemu, encoding=encoding)
    if args.qmp is not None:
        host, port = args.qmp
        qemu = dataclasses.replace(qemu, host=host, port=port, socket=None)
    if args.qmp_socket is not None:
        qemu = dataclasses.replace(qemu, socket=args.qmp_socket)
    if args.poll_interval is not None:
        if args.poll_interval <= 0:
            raise ConfigError("--poll-interval must be positive")
        screen = dataclasses.replace(screen, poll_interval=args.poll_interval)
    if args.key_delay is not None:
        if args.key_delay < 0:
            raise ConfigError("--key-delay must not be negative")
        qemu = dataclasses.replace(qemu, key_delay=args.key_delay)
    if args.debug_screenshots:
        screen = dataclasses.replace(screen, debug_screenshots=True)

    return Settings(screen=screen, keyboard=keyboard, qemu=qemu)


def create_machine(settings: Settings, args: argparse.Namespace) -> MonitoredMachine:
    """Return the machine adapter selected on the command line."""

    screen = settings.screen
    if args.loopback:
        return LoopbackMachine(
            rows=screen.rows, columns=screen.columns, layout=settings.keyboard.layout
        )
    qemu = settings.qemu
    return QemuMachine(
        host=qemu.host,
        port=qemu.port,
        socket_path=str(qemu.socket) if qemu.socket is not None else None,
        rows=screen.rows,
        columns=screen.columns,
        encoding=qemu.encoding,
        layout=settings.keyboard.layout,
        poll_interval=qemu.poll_interval,
        key_delay=qemu.key_delay,
    )


def describe_settings(settings: Settings) -> str:
    screen, keyboard, qemu = settings.screen, settings.keyboard, settings.qemu
    target = str(qemu.socket) if qemu.socket is not None else f"{qemu.host}:{qemu.port}"
    return "\n".join(
        [
            f"screen: {screen.columns}x{screen.rows}, poll every {screen.poll_interval}s"
            + (", debug screenshots" if screen.debug_screenshots else ""),
            f"keyboard: {keyboard.layout}",
            f"qemu: {target}, code page {qemu.encoding}, key delay {qemu.key_delay}s",
        ]
    )


async def run_session(
    machine: MonitoredMachine,
    settings: Settings,
    *,
    input_source: InputSource | None = None,
    output: IO[str] | None = None,
) -> None:
    """Mirror ``machine`` until it stops, forwarding keyboard input to it.

    Keyboard delivery, screen rendering and machine failures end the
    session and are re-raised once the observer and encoder have been
    stopped and the machine closed.
    """

    renderer = TerminalRenderer(output)

    def _on_interrupt(count: int) -> None:
        if count == 0:
            renderer.write(INTERRUPT_PROMPT)
        else:
            renderer.write(TERMINATED_MESSAGE)
            machine.stop()

    observer = ScreenObserver(
        renderer,
        debug_screenshots=settings.screen.debug_screenshots,
        screenshot_stream=renderer.stream,
        poll_interval=settings.screen.poll_interval,
        empty_row=" " * settings.screen.columns,
    )
    encoder = KeyEncoder(_on_interrupt, input_source=input_source)

    await machine.start()
    observer.start(machine)
    encoder.start(machine)
    stopped = asyncio.ensure_future(machine.wait_stopped())
    keyboard = asyncio.ensure_future(encoder.wait_closed())
    screen = asyncio.ensure_future(observer.wait_closed())
    try:
        done, _ = await asyncio.wait(
            {stopped, keyboard, screen}, return_when=asyncio.FIRST_COMPLETED
        )
        if screen in done:
            screen.result()
        if keyboard in done:
            keyboard.result()
        if stopped in done:
            stopped.result()
        else:
            # input ended without an error: shut the machine down
            LOGGER.info("keyboard input ended, stopping machine")
            machine.stop()
            await stopped
    finally:
        stopped.cancel()
        keyboard.cancel()
        screen.cancel()
        encoder.stop()
        observer.stop()
        await machine.close()


def _configure_logging(args: argparse.Namespace) -> None:
    level_name = args.log_level or ("INFO" if args.verbose else "WARNING")
    logging.basicConfig(
        level=getattr(logging, level_name),
        stream=sys.stderr,
        format="%(levelname)s %(name)s: %(message)s",
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the vga2tty CLI."""

    args = parse_args(argv)
    _configure_logging(args)

    try:
        settings = build_settings(args)
    except (ConfigError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    if args.verbose:
        print(describe_settings(settings), file=sys.stderr)

    if not sys.stdin.isatty():
        print("error: stdin is not a TTY, aborting", file=sys.stderr)
        return 1

    machine = create_machine(settings, args)
    try:
        asyncio.run(run_session(machine, settings))
    except (ConnectionError, QmpError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via python -m
    raise SystemExit(main())


__all__ = [
    "INTERRUPT_PROMPT",
    "TERMINATED_MESSAGE",
    "build_settings",
    "create_machine",
    "describe_settings",
    "main",
    "parse_args",
    "run_session",
]
