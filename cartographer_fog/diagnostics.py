"""Session-scoped diagnostics that keep repeated failures from spamming logs."""

from __future__ import annotations

import logging
from threading import RLock
from typing import Any, Hashable

__all__ = ["SessionNotices"]


class SessionNotices:
    """Emit each keyed log message at most once until :meth:`reset`.

    Failure paths that can fire on every frame (open circuits, persistently
    malformed stored areas) report through here so a session produces one
    entry per failure class.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._log = logger or logging.getLogger(__name__)
        self._seen: set[Hashable] = set()
        self._suppressed: dict[Hashable, int] = {}
        self._lock = RLock()

    def notice(self, key: Hashable, level: int, msg: str, *args: Any) -> bool:
        """Log ``msg`` if ``key`` has not been seen; return True when emitted."""

        with self._lock:
            if key in self._seen:
                self._suppressed[key] = self._suppressed.get(key, 0) + 1
                return False
            self._seen.add(key)
        self._log.log(level, msg, *args)
        return True

    def seen(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._seen

    def suppressed_count(self, key: Hashable) -> int:
        """Number of repeats swallowed for ``key`` since the last reset."""

        with self._lock:
            return self._suppressed.get(key, 0)

    def forget(self, key: Hashable) -> None:
        """Allow ``key`` to be logged again (e.g. after a recovery)."""

        with self._lock:
            self._seen.discard(key)
            self._suppressed.pop(key, None)

    def reset(self) -> None:
        with self._lock:
            self._seen.clear()
            self._suppressed.clear()
