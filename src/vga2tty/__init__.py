"""Mirror a virtual machine's VGA text screen and keyboard on a terminal."""
from __future__ import annotations

from typing import Any

__version__ = "0.1.0"

from . import config as _config
from . import key_encoder as _key_encoder
from . import machine as _machine
from . import scancodes as _scancodes
from . import screen_observer as _screen_observer
from . import text_console as _text_console

_modules = [
    _config,
    _key_encoder,
    _machine,
    _scancodes,
    _screen_observer,
    _text_console,
]

__all__: list[str] = ["__version__"]
_seen: set[str] = set(__all__)
for _module in _modules:
    for _name in _module.__all__:
        if _name not in _seen:
            _seen.add(_name)
            __all__.append(_name)
        globals()[_name] = getattr(_module, _name)


def __getattr__(name: str) -> Any:
    for _module in _modules:
        if hasattr(_module, name):
            return getattr(_module, name)
    raise AttributeError(name)


def __dir__() -> list[str]:
    return sorted(__all__)
