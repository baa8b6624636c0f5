from __future__ import annotations

from collections.abc import Callable

from loguru import logger

StatusListener = Callable[[str], None]


class StatusSlot:
    """Latest human-readable pipeline status, observable by a UI shell.

    Purely advisory: listeners cannot influence the pipeline, and a failing
    listener is logged and skipped.
    """

    def __init__(self) -> None:
        self._value: str | None = None
        self._history: list[str] = []
        self._listeners: list[StatusListener] = []

    @property
    def value(self) -> str | None:
        return self._value

    @property
    def history(self) -> list[str]:
        return list(self._history)

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register ``listener``; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, message: str) -> None:
        self._value = message
        self._history.append(message)
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception:
                logger.exception("Status listener failed for {!r}", message)
