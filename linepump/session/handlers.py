from __future__ import annotations

from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING, Optional, Union

from ..protocol.events import Event

if TYPE_CHECKING:
    from .dispatcher import Dispatcher


class HandlerKey(str, Enum):
    """Symbolic handler keys."""

    DEFAULT = "default"


DEFAULT = HandlerKey.DEFAULT

Handler = Callable[["Dispatcher"], None]
Code = Union[int, HandlerKey]


def normalize_code(code: object) -> Code:
    """Map a registration key to an event code or ``DEFAULT``.

    The plain string ``"default"`` is accepted for ``DEFAULT``.
    """
    if isinstance(code, HandlerKey):
        return code
    if isinstance(code, str):
        if code == DEFAULT.value:
            return DEFAULT
        raise TypeError(f"Unknown handler key: {code!r}")
    if isinstance(code, bool) or not isinstance(code, int):
        raise TypeError(f"Handler key must be an int or DEFAULT, got {type(code).__name__}")
    return int(code)


class HandlerTable:
    """Event code to callback mapping with one optional default callback."""

    def __init__(self) -> None:
        self._handlers: dict[Code, Handler] = {}

    def register(self, code: Code | str, handler: Handler) -> None:
        """Set the handler for ``code``, replacing any previous one."""
        if not callable(handler):
            raise TypeError("handler must be callable")
        self._handlers[normalize_code(code)] = handler

    def unregister(self, code: Code | str) -> bool:
        """Remove a handler. Returns False if none was registered."""
        return self._handlers.pop(normalize_code(code), None) is not None

    def resolve(self, event: Event) -> Optional[Handler]:
        """Return the handler for the event's code, else the default, else None."""
        handler = self._handlers.get(event.code)
        if handler is None:
            handler = self._handlers.get(DEFAULT)
        return handler

    def __contains__(self, code: object) -> bool:
        try:
            return normalize_code(code) in self._handlers
        except TypeError:
            return False

    def __len__(self) -> int:
        return len(self._handlers)
