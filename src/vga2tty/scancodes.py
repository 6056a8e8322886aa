"""Scan code set 1 tables shared by the key encoder and machine adapters."""
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Final, Iterable, Iterator, Mapping, Sequence

__all__ = [
    "ALTGR",
    "BACKSPACE",
    "CTRL",
    "CTRL_KEY_SCANCODES",
    "ENTER",
    "KEY_C",
    "KeyboardLayout",
    "LAYOUTS",
    "LEFT_SHIFT",
    "MOD_ALTGR",
    "MOD_SHIFT",
    "RIGHT_SHIFT",
    "SPECIAL_KEY_SCANCODES",
    "encode_keypress",
    "get_layout",
    "iter_key_transitions",
]

EXTENDED_PREFIX: Final = 0xE0
RELEASE_BIT: Final = 0x80

CTRL: Final = 0x1D
LEFT_SHIFT: Final = 0x2A
RIGHT_SHIFT: Final = 0x36
ALT: Final = 0x38
ALTGR: Final = 0xE038
BACKSPACE: Final = 0x0E
TAB: Final = 0x0F
ENTER: Final = 0x1C
SPACE: Final = 0x39
KEY_C: Final = 0x2E

MOD_SHIFT: Final = 0x01
MOD_ALTGR: Final = 0x02


SPECIAL_KEY_SCANCODES: Final[Mapping[str, int]] = MappingProxyType(
    {
        "\x1b[11~": 0x3B,  # F1
        "\x1b[12~": 0x3C,  # F2
        "\x1b[13~": 0x3D,  # F3
        "\x1b[14~": 0x3E,  # F4
        "\x1b[15~": 0x3F,  # F5
        "\x1b[17~": 0x40,  # F6
        "\x1b[18~": 0x41,  # F7
        "\x1b[19~": 0x42,  # F8
        "\x1b[20~": 0x43,  # F9
        "\x1b[21~": 0x44,  # F10
        "\x1b[23~": 0x57,  # F11
        "\x1b[24~": 0x58,  # F12
        "\x1bOP": 0x3B,  # F1 (xterm)
        "\x1bOQ": 0x3C,  # F2 (xterm)
        "\x1bOR": 0x3D,  # F3 (xterm)
        "\x1bOS": 0x3E,  # F4 (xterm)
        "\x1b[[A": 0x3B,  # F1 (linux console)
        "\x1b[[B": 0x3C,  # F2 (linux console)
        "\x1b[[C": 0x3D,  # F3 (linux console)
        "\x1b[[D": 0x3E,  # F4 (linux console)
        "\x1b[[E": 0x3F,  # F5 (linux console)
        "\x1b[A": 0xE048,  # ArrowUp
        "\x1b[B": 0xE050,  # ArrowDown
        "\x1b[C": 0xE04D,  # ArrowRight
        "\x1b[D": 0xE04B,  # ArrowLeft
        "\x1bOA": 0xE048,  # ArrowUp (application cursor mode)
        "\x1bOB": 0xE050,  # ArrowDown (application cursor mode)
        "\x1bOC": 0xE04D,  # ArrowRight (application cursor mode)
        "\x1bOD": 0xE04B,  # ArrowLeft (application cursor mode)
        "\x1b[1~": 0xE047,  # Home
        "\x1b[2~": 0xE052,  # Insert
        "\x1b[3~": 0xE053,  # Delete
        "\x1b[4~": 0xE04F,  # End
        "\x1b[5~": 0xE049,  # PageUp
        "\x1b[6~": 0xE051,  # PageDown
        "\x1b[H": 0xE047,  # Home (xterm)
        "\x1b[F": 0xE04F,  # End (xterm)
    }
)

# Control characters below 0x20 mapped to the letter key pressed together with Ctrl.
CTRL_KEY_SCANCODES: Final[Mapping[str, int]] = MappingProxyType(
    {
        "\x00": 0x03,  # Ctrl+@
        "\x01": 0x1E,  # Ctrl+A
        "\x02": 0x30,  # Ctrl+B
        "\x03": 0x2E,  # Ctrl+C
        "\x04": 0x20,  # Ctrl+D
        "\x05": 0x12,  # Ctrl+E
        "\x06": 0x21,  # Ctrl+F
        "\x07": 0x22,  # Ctrl+G
        "\x08": 0x23,  # Ctrl+H (Backspace)
        "\x09": 0x17,  # Ctrl+I (Tab)
        "\x0a": 0x24,  # Ctrl+J (Enter)
        "\x0b": 0x25,  # Ctrl+K
        "\x0c": 0x26,  # Ctrl+L (Formfeed)
        "\x0d": 0x32,  # Ctrl+M (Return)
        "\x0e": 0x31,  # Ctrl+N
        "\x0f": 0x18,  # Ctrl+O
        "\x10": 0x19,  # Ctrl+P
        "\x11": 0x10,  # Ctrl+Q
        "\x12": 0x13,  # Ctrl+R
        "\x13": 0x1F,  # Ctrl+S
        "\x14": 0x14,  # Ctrl+T
        "\x15": 0x16,  # Ctrl+U
        "\x16": 0x2F,  # Ctrl+V
        "\x17": 0x11,  # Ctrl+W
        "\x18": 0x2D,  # Ctrl+X
        "\x19": 0x15,  # Ctrl+Y
        "\x1a": 0x2C,  # Ctrl+Z
        "\x1b": 0x1A,  # Ctrl+[
        "\x1c": 0x56,  # Ctrl+Backslash
        "\x1d": 0x1B,  # Ctrl+]
        "\x1e": 0x07,  # Ctrl+^
        "\x1f": 0x0C,  # Ctrl+_
    }
)


def encode_keypress(scancode: int, wrap: Sequence[int] = ()) -> list[int]:
    """Return press, ``wrap`` and release codes for an 8- or 16-bit ``scancode``.

    Codes below ``0x100`` press as ``[c]`` and release as ``[c | 0x80]``.
    Extended codes carry their ``0xE0`` prefix in the high byte and release by
    setting bit 7 of the low byte. ``wrap`` is emitted while the key is held
    so chords such as Ctrl+C nest the inner key inside the modifier.
    """

    if scancode < 0x100:
        return [scancode, *wrap, scancode | RELEASE_BIT]
    prefix = scancode >> 8
    code = scancode & 0xFF
    return [prefix, code, *wrap, prefix, code | RELEASE_BIT]


def iter_key_transitions(codes: Iterable[int]) -> Iterator[tuple[int, bool]]:
    """Yield ``(number, down)`` pairs decoded from a scan code stream.

    Extended keys are numbered ``0x80 | code`` which matches the ``number``
    key encoding QEMU accepts in ``input-send-event``.
    """

    extended = False
    for raw in codes:
        value = int(raw) & 0xFF
        if value == EXTENDED_PREFIX:
            extended = True
            continue
        number = value & ~RELEASE_BIT
        if extended:
            number |= RELEASE_BIT
            extended = False
        yield number, not value & RELEASE_BIT


@dataclass(frozen=True)
class KeyboardLayout:
    """Character to scan code mapping for one national keyboard layout."""

    name: str
    keys: Mapping[str, tuple[int, int]]
    _reverse: Mapping[tuple[int, int], str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        reverse: dict[tuple[int, int], str] = {}
        for char, entry in self.keys.items():
            reverse.setdefault(entry, char)
        object.__setattr__(self, "keys", MappingProxyType(dict(self.keys)))
        object.__setattr__(self, "_reverse", MappingProxyType(reverse))

    def lookup(self, char: str) -> tuple[int, int] | None:
        """Return ``(scancode, modifiers)`` for ``char`` or ``None``."""

        return self.keys.get(char)

    def encode_char(self, char: str) -> list[int] | None:
        """Return the scan codes that type ``char`` or ``None`` when unmapped."""

        entry = self.lookup(char)
        if entry is None:
            return None
        scancode, modifiers = entry
        codes = encode_keypress(scancode)
        if modifiers & MOD_SHIFT:
            codes = encode_keypress(LEFT_SHIFT, codes)
        if modifiers & MOD_ALTGR:
            codes = encode_keypress(ALTGR, codes)
        return codes

    def decode(self, number: int, modifiers: int = 0) -> str | None:
        """Return the character produced by key ``number`` with ``modifiers``."""

        return self._reverse.get((number, modifiers))


def _build_keys(
    rows: Iterable[tuple[int, str, str]],
    *,
    altgr: Iterable[tuple[int, str]] = (),
) -> dict[str, tuple[int, int]]:
    keys: dict[str, tuple[int, int]] = {
        "\r": (ENTER, 0),
        "\n": (ENTER, 0),
        "\t": (TAB, 0),
        "\b": (BACKSPACE, 0),
        " ": (SPACE, 0),
    }
    for scancode, plain, shifted in rows:
        if plain:
            keys.setdefault(plain, (scancode, 0))
        if shifted:
            keys.setdefault(shifted, (scancode, MOD_SHIFT))
    for scancode, char in altgr:
        keys.setdefault(char, (scancode, MOD_ALTGR))
    return keys


def _letters(scancode: int, letters: str) -> list[tuple[int, str, str]]:
    return [(scancode + index, char, char.upper()) for index, char in enumerate(letters)]


_US_ROWS: list[tuple[int, str, str]] = [
    (0x29, "`", "~"),
    (0x02, "1", "!"),
    (0x03, "2", "@"),
    (0x04, "3", "#"),
    (0x05, "4", "$"),
    (0x06, "5", "%"),
    (0x07, "6", "^"),
    (0x08, "7", "&"),
    (0x09, "8", "*"),
    (0x0A, "9", "("),
    (0x0B, "0", ")"),
    (0x0C, "-", "_"),
    (0x0D, "=", "+"),
    *_letters(0x10, "qwertyuiop"),
    (0x1A, "[", "{"),
    (0x1B, "]", "}"),
    *_letters(0x1E, "asdfghjkl"),
    (0x27, ";", ":"),
    (0x28, "'", '"'),
    (0x2B, "\\", "|"),
    *_letters(0x2C, "zxcvbnm"),
    (0x33, ",", "<"),
    (0x34, ".", ">"),
    (0x35, "/", "?"),
]

_UK_OVERRIDES: dict[int, tuple[str, str]] = {
    0x29: ("`", "¬"),
    0x03: ("2", '"'),
    0x04: ("3", "£"),
    0x28: ("'", "@"),
    0x2B: ("#", "~"),
}

_UK_ROWS: list[tuple[int, str, str]] = [
    (scancode, *_UK_OVERRIDES.get(scancode, (plain, shifted)))
    for scancode, plain, shifted in _US_ROWS
] + [(0x56, "\\", "|")]

_DE_ROWS: list[tuple[int, str, str]] = [
    (0x29, "^", "°"),
    (0x02, "1", "!"),
    (0x03, "2", '"'),
    (0x04, "3", "§"),
    (0x05, "4", "$"),
    (0x06, "5", "%"),
    (0x07, "6", "&"),
    (0x08, "7", "/"),
    (0x09, "8", "("),
    (0x0A, "9", ")"),
    (0x0B, "0", "="),
    (0x0C, "ß", "?"),
    *_letters(0x10, "qwertzuiop"),
    (0x1A, "ü", "Ü"),
    (0x1B, "+", "*"),
    *_letters(0x1E, "asdfghjkl"),
    (0x27, "ö", "Ö"),
    (0x28, "ä", "Ä"),
    (0x2B, "#", "'"),
    *_letters(0x2C, "yxcvbnm"),
    (0x33, ",", ";"),
    (0x34, ".", ":"),
    (0x35, "-", "_"),
    (0x56, "<", ">"),
]

_DE_ALTGR: list[tuple[int, str]] = [
    (0x10, "@"),
    (0x12, "€"),
    (0x08, "{"),
    (0x09, "["),
    (0x0A, "]"),
    (0x0B, "}"),
    (0x0C, "\\"),
    (0x1B, "~"),
    (0x56, "|"),
]


LAYOUTS: Final[Mapping[str, KeyboardLayout]] = MappingProxyType(
    {
        "us": KeyboardLayout("us", _build_keys(_US_ROWS)),
        "uk": KeyboardLayout("uk", _build_keys(_UK_ROWS)),
        "de": KeyboardLayout("de", _build_keys(_DE_ROWS, altgr=_DE_ALTGR)),
    }
)


def get_layout(name: str) -> KeyboardLayout:
    """Return the keyboard layout registered under ``name``."""

    try:
        return LAYOUTS[name]
    except KeyError as exc:
        raise KeyError(f"unknown keyboard layout {name!r}") from exc
