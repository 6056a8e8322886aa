"""Settings for the screen observer, keyboard and QEMU connection."""

from __future__ import annotations

import codecs
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import tomllib

from .scancodes import LAYOUTS

__all__ = [
    "ConfigError",
    "KeyboardSettings",
    "LANGUAGES",
    "QemuSettings",
    "ScreenSettings",
    "Settings",
    "language_settings",
    "load_config",
]


# Screen code page and keyboard layout selected together by ``--lang``.
LANGUAGES: Mapping[str, tuple[str, str]] = {
    "us": ("cp437", "us"),
    "uk": ("cp858", "uk"),
    "de": ("cp858", "de"),
}


class ConfigError(ValueError):
    """Raised when a configuration file fails validation."""


@dataclass(frozen=True)
class ScreenSettings:
    rows: int = 25
    columns: int = 80
    poll_interval: float = 0.001
    debug_screenshots: bool = False


@dataclass(frozen=True)
class KeyboardSettings:
    layout: str = "us"


@dataclass(frozen=True)
class QemuSettings:
    """Where to reach the QMP monitor and how to talk to the guest."""

    host: str = "localhost"
    port: int = 4444
    socket: Path | None = None
    poll_interval: float = 0.02
    key_delay: float = 0.0
    encoding: str = "cp437"


@dataclass(frozen=True)
class Settings:
    screen: ScreenSettings = field(default_factory=ScreenSettings)
    keyboard: KeyboardSettings = field(default_factory=KeyboardSettings)
    qemu: QemuSettings = field(default_factory=QemuSettings)


def language_settings(lang: str) -> tuple[str, str]:
    """Return ``(encoding, layout)`` for the ``--lang`` value ``lang``."""

    try:
        return LANGUAGES[lang]
    except KeyError:
        raise ConfigError(f"unsupported language {lang!r}") from None


def load_config(config_path: Path) -> Settings:
    """Parse and validate the TOML settings file at ``config_path``."""

    try:
        with config_path.open("rb") as stream:
            data = tomllib.load(stream)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{config_path}: {exc}") from exc

    screen = _parse_screen(_section(data, "screen"))
    keyboard = _parse_keyboard(_section(data, "keyboard"))
    qemu = _parse_qemu(_section(data, "qemu"), base=config_path.parent)
    return Settings(screen=screen, keyboard=keyboard, qemu=qemu)


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, Mapping):
        raise ConfigError(f"[{name}] section must be a table")
    unknown = sorted(set(section) - _KNOWN_KEYS[name])
    if unknown:
        raise ConfigError(f"[{name}] has unknown keys: {', '.join(unknown)}")
    return section


def _parse_screen(section: Mapping[str, Any]) -> ScreenSettings:
    defaults = ScreenSettings()
    return ScreenSettings(
        rows=_positive_int(section, "screen.rows", "rows", defaults.rows),
        columns=_positive_int(section, "screen.columns", "columns", defaults.columns),
        poll_interval=_positive_float(
            section, "screen.poll_interval", "poll_interval", defaults.poll_interval
        ),
        debug_screenshots=_boolean(
            section, "screen.debug_screenshots", "debug_screenshots",
            defaults.debug_screenshots,
        ),
    )


def _parse_keyboard(section: Mapping[str, Any]) -> KeyboardSettings:
    layout = section.get("layout", KeyboardSettings().layout)
    if layout not in LAYOUTS:
        choices = ", ".join(sorted(LAYOUTS))
        raise ConfigError(f"keyboard.layout must be one of {choices}, got {layout!r}")
    return KeyboardSettings(layout=layout)


def _parse_qemu(section: Mapping[str, Any], *, base: Path) -> QemuSettings:
    defaults = QemuSettings()
    host = section.get("host", defaults.host)
    if not isinstance(host, str) or not host:
        raise ConfigError("qemu.host must be a non-empty string")

    port = section.get("port", defaults.port)
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise ConfigError(f"qemu.port must be between 1 and 65535, got {port!r}")

    socket: Path | None = None
    raw_socket = section.get("socket")
    if raw_socket is not None:
        if not isinstance(raw_socket, str) or not raw_socket:
            raise ConfigError("qemu.socket must be a path string")
        socket = Path(raw_socket).expanduser()
        if not socket.is_absolute():
            socket = base / socket

    key_delay = section.get("key_delay", defaults.key_delay)
    if isinstance(key_delay, bool) or not isinstance(key_delay, (int, float)) or key_delay < 0:
        raise ConfigError(f"qemu.key_delay must be a non-negative number, got {key_delay!r}")

    encoding = section.get("encoding", defaults.encoding)
    if not isinstance(encoding, str):
        raise ConfigError("qemu.encoding must be a string")
    try:
        codecs.lookup(encoding)
    except LookupError:
        raise ConfigError(f"unknown qemu.encoding {encoding!r}") from None

    return QemuSettings(
        host=host,
        port=port,
        socket=socket,
        poll_interval=_positive_float(
            section, "qemu.poll_interval", "poll_interval", defaults.poll_interval
        ),
        key_delay=float(key_delay),
        encoding=encoding,
    )


def _positive_int(section: Mapping[str, Any], label: str, key: str, default: int) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"{label} must be a positive integer, got {value!r}")
    return value


def _positive_float(
    section: Mapping[str, Any], label: str, key: str, default: float
) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{label} must be a positive number, got {value!r}")
    return float(value)


def _boolean(section: Mapping[str, Any], label: str, key: str, default: bool) -> bool:
    value = section.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{label} must be true or false, got {value!r}")
    return value


_KNOWN_KEYS: Mapping[str, frozenset[str]] = {
    "screen": frozenset({"rows", "columns", "poll_interval", "debug_screenshots"}),
    "keyboard": frozenset({"layout"}),
    "qemu": frozenset(
        {"host", "port", "socket", "poll_interval", "key_delay", "encoding"}
    ),
}
