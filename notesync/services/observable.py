"""Minimal observable value for status indicators."""

from typing import Callable, Generic, TypeVar

from notesync.logging import get_logger

logger = get_logger("services.observable")
_T = TypeVar("_T")


class Observable(Generic[_T]):
    """Holds a value and calls subscribers whenever it changes."""

    def __init__(self, value: _T):
        self._value = value
        self._subscribers: list[Callable[[_T], None]] = []

    @property
    def value(self) -> _T:
        return self._value

    def set(self, value: _T) -> None:
        if value == self._value:
            return
        self._value = value
        for callback in list(self._subscribers):
            try:
                callback(value)
            except Exception:
                logger.exception("Observable subscriber failed")

    def subscribe(self, callback: Callable[[_T], None], *, emit_current: bool = False) -> Callable[[], None]:
        self._subscribers.append(callback)
        if emit_current:
            callback(self._value)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe
