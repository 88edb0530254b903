"""Per-document session tracking.

One session per open document, created lazily. Sessions expire after a
period of inactivity and the least recently active one is evicted when
the manager is full.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

# Forward typing shorter than this reuses the previous context.
SMALL_EDIT_CHARS = 50


@dataclass
class DocumentSession:
    file_path: str
    created_at: float
    last_activity: float
    completion_count: int = 0
    last_prefix: str | None = None
    last_suffix: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SessionStats:
    active_count: int
    total_completions: int
    oldest_session_age: float


class SessionManager:
    """Tracks completion context per document."""

    def __init__(
        self,
        session_ttl_seconds: float = 300.0,
        max_sessions: int = 10,
        prune_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._sessions: dict[str, DocumentSession] = {}
        self._ttl = session_ttl_seconds
        self._max_sessions = max(1, max_sessions)
        self._prune_interval = prune_interval_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._prune_task: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._sessions)

    def get_or_create(self, file_path: str) -> DocumentSession:
        with self._lock:
            now = self._clock()
            session = self._sessions.get(file_path)
            if session is not None:
                session.last_activity = now
                return session

            if len(self._sessions) >= self._max_sessions:
                self._evict_oldest()
            session = DocumentSession(
                file_path=file_path, created_at=now, last_activity=now,
            )
            self._sessions[file_path] = session
        logger.debug("Created session for %s", file_path)
        return session

    def get(self, file_path: str) -> DocumentSession | None:
        """Return the live session, dropping it if it has expired."""
        with self._lock:
            session = self._sessions.get(file_path)
            if session is None:
                return None
            now = self._clock()
            if now - session.last_activity > self._ttl:
                del self._sessions[file_path]
                logger.debug("Session expired for %s", file_path)
                return None
            session.last_activity = now
            return session

    def update_context(self, file_path: str, prefix: str, suffix: str) -> None:
        session = self.get_or_create(file_path)
        with self._lock:
            session.last_prefix = prefix
            session.last_suffix = suffix
            session.completion_count += 1

    def has_context_changed(self, file_path: str, prefix: str, suffix: str) -> bool:
        """Whether the cursor context differs enough to warrant new inference.

        Only small forward typing counts as unchanged; deletions and
        everything else count as changed.
        """
        session = self._sessions.get(file_path)
        if session is None or not session.last_prefix:
            return True

        last_prefix = session.last_prefix
        if prefix.startswith(last_prefix) and (
            len(prefix) - len(last_prefix) < SMALL_EDIT_CHARS
        ):
            return False
        # Deletions, large insertions, navigation and suffix edits all land here.
        return True

    def set_data(self, file_path: str, key: str, value: Any) -> None:
        session = self.get_or_create(file_path)
        with self._lock:
            session.data[key] = value

    def get_data(self, file_path: str, key: str, default: Any = None) -> Any:
        session = self._sessions.get(file_path)
        if session is None:
            return default
        return session.data.get(key, default)

    def end_session(self, file_path: str) -> bool:
        with self._lock:
            removed = self._sessions.pop(file_path, None) is not None
        if removed:
            logger.debug("Ended session for %s", file_path)
        return removed

    def active_sessions(self) -> list[DocumentSession]:
        now = self._clock()
        with self._lock:
            return [
                s for s in self._sessions.values()
                if now - s.last_activity <= self._ttl
            ]

    def stats(self) -> SessionStats:
        now = self._clock()
        with self._lock:
            sessions = list(self._sessions.values())
        return SessionStats(
            active_count=len(sessions),
            total_completions=sum(s.completion_count for s in sessions),
            oldest_session_age=max((now - s.created_at for s in sessions), default=0.0),
        )

    def prune(self) -> int:
        """Drop expired sessions; returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [
                path for path, s in self._sessions.items()
                if now - s.last_activity > self._ttl
            ]
            for path in expired:
                del self._sessions[path]
        if expired:
            logger.debug("Pruned %d expired sessions", len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()

    def start_pruning(self) -> None:
        """Start the periodic prune task on the running loop (idempotent)."""
        if self._prune_interval <= 0:
            return
        if self._prune_task is not None and not self._prune_task.done():
            return
        self._prune_task = asyncio.get_running_loop().create_task(self._prune_loop())

    async def close(self) -> None:
        """Stop periodic pruning and drop every session."""
        task, self._prune_task = self._prune_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.clear()

    async def _prune_loop(self) -> None:
        while True:
            await asyncio.sleep(self._prune_interval)
            self.prune()

    def _evict_oldest(self) -> None:
        oldest = min(
            self._sessions.values(), key=lambda s: s.last_activity, default=None,
        )
        if oldest is not None:
            del self._sessions[oldest.file_path]
            logger.debug("Evicted oldest session: %s", oldest.file_path)
