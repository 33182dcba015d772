"""
Notification sinks for user-facing one-line notices.

The Reconciler never reaches for a global toast function: the application
constructs a Notifier, opens it alongside the rest of the UI, and injects it.

Invariants:
    - A closed NoticeBoard drops notices instead of raising
    - Notices are visible for display_seconds, then expire
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class NoticeLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Notice:
    """A single user-facing message.

    Attributes:
        message: One-line text
        level: Severity
        created_at: Clock reading when the notice was posted
    """

    message: str
    level: NoticeLevel = NoticeLevel.INFO
    created_at: float = 0.0


@runtime_checkable
class Notifier(Protocol):
    """Anything that can show a one-line notice to the user."""

    def notify(self, message: str, level: NoticeLevel = NoticeLevel.INFO) -> None: ...


class NoticeBoard:
    """In-process notifier holding the currently visible notices.

    Example:
        >>> board = NoticeBoard()
        >>> board.open()
        >>> board.notify("Assignment changed elsewhere", NoticeLevel.WARNING)
        >>> [n.message for n in board.visible()]
        ['Assignment changed elsewhere']
    """

    def __init__(
        self,
        display_seconds: float = 3.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.display_seconds = display_seconds
        self._clock = clock
        self._notices: list[Notice] = []
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> None:
        self._open = True

    def close(self) -> None:
        self._open = False
        self._notices.clear()

    def notify(self, message: str, level: NoticeLevel = NoticeLevel.INFO) -> None:
        if not self._open:
            logger.debug("Notice dropped, board closed", extra={"notice": message})
            return
        self._notices.append(Notice(message, level, self._clock()))

    def visible(self) -> list[Notice]:
        """Notices still within their display window, oldest first."""
        cutoff = self._clock() - self.display_seconds
        self._notices = [n for n in self._notices if n.created_at > cutoff]
        return list(self._notices)


class LoggingNotifier:
    """Notifier for headless clients: notices go to the log."""

    _LEVELS = {
        NoticeLevel.INFO: logging.INFO,
        NoticeLevel.WARNING: logging.WARNING,
        NoticeLevel.ERROR: logging.ERROR,
    }

    def __init__(self, name: str = "crewsync.notices") -> None:
        self._logger = logging.getLogger(name)

    def notify(self, message: str, level: NoticeLevel = NoticeLevel.INFO) -> None:
        self._logger.log(self._LEVELS[level], message)
