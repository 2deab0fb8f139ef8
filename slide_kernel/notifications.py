"""
User-facing notifications and change signals.

The editor host shows information/error pop-ups; headless callers (tests, the
CLI) get them through the log instead. Signal is a tiny synchronous event
emitter used for kernel-changed, busy-state and content-changed events.
"""

from typing import Any, Callable, List

import structlog

logger = structlog.get_logger(__name__)


class Notifier:
    """Surface messages to the user. The default implementation logs them."""

    def info(self, message: str) -> None:
        logger.info(message, channel="user")

    def warning(self, message: str) -> None:
        logger.warning(message, channel="user")

    def error(self, message: str) -> None:
        logger.error(message, channel="user")


class RecordingNotifier(Notifier):
    """Keeps every message; used by the CLI summary and in tests."""

    def __init__(self):
        self.messages: List[tuple] = []

    def info(self, message: str) -> None:
        self.messages.append(("info", message))
        super().info(message)

    def warning(self, message: str) -> None:
        self.messages.append(("warning", message))
        super().warning(message)

    def error(self, message: str) -> None:
        self.messages.append(("error", message))
        super().error(message)

    def of_level(self, level: str) -> List[str]:
        return [m for lvl, m in self.messages if lvl == level]


class Signal:
    """Synchronous event emitter. subscribe() returns an unsubscribe callable."""

    def __init__(self, name: str = ""):
        self.name = name
        self._listeners: List[Callable[..., Any]] = []

    def subscribe(self, callback: Callable[..., Any]) -> Callable[[], None]:
        self._listeners.append(callback)

        def _unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe

    def fire(self, *args: Any) -> None:
        for callback in list(self._listeners):
            try:
                callback(*args)
            except Exception as e:
                logger.warning(f"Listener for '{self.name}' failed: {e}")

    def clear(self) -> None:
        self._listeners.clear()
