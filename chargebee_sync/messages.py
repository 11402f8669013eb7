"""Leveled operator messages emitted during a sync run."""

import logging
from dataclasses import dataclass, field
from typing import Callable, Protocol

logger = logging.getLogger("chargebee_sync.messages")


class MessageLevel:
    STATUS = "status"
    WARNING = "warning"
    ERROR = "error"


_LOG_LEVELS = {
    MessageLevel.STATUS: logging.INFO,
    MessageLevel.WARNING: logging.WARNING,
    MessageLevel.ERROR: logging.ERROR,
}


class MessageSink(Protocol):
    def status(self, text: str) -> None: ...

    def warning(self, text: str) -> None: ...

    def error(self, text: str) -> None: ...


@dataclass
class Message:
    level: str
    text: str


@dataclass
class MessageLog:
    """Collects messages in order and mirrors them to the log.

    ``listener`` is called with every message after it is recorded; the CLI
    uses it to echo messages to the console.
    """

    messages: list[Message] = field(default_factory=list)
    listener: Callable[[Message], None] | None = None

    def _add(self, level: str, text: str) -> None:
        message = Message(level, text)
        self.messages.append(message)
        logger.log(_LOG_LEVELS[level], "%s", text)
        if self.listener:
            self.listener(message)

    def status(self, text: str) -> None:
        self._add(MessageLevel.STATUS, text)

    def warning(self, text: str) -> None:
        self._add(MessageLevel.WARNING, text)

    def error(self, text: str) -> None:
        self._add(MessageLevel.ERROR, text)

    def of_level(self, level: str) -> list[str]:
        return [m.text for m in self.messages if m.level == level]

    @property
    def warnings(self) -> list[str]:
        return self.of_level(MessageLevel.WARNING)

    @property
    def errors(self) -> list[str]:
        return self.of_level(MessageLevel.ERROR)
