"""Per-session critical sections for counting transitions.

Count intake, phase completion, finalize, cancel, third-count triggers
and manual overrides of one session are serialized through an in-process
lock keyed by session id, plus a row lock on the session
(``SELECT ... FOR UPDATE``, a no-op on SQLite).
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator

from sqlalchemy.orm import Session, selectinload

from app.models.counting import CountableItem, CountingSession
from app.services.counting_errors import SessionNotFoundError

logger = logging.getLogger(__name__)


class SessionLockRegistry:
    """Singleton registry handing out one lock per counting session."""

    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._locks = {}
        return cls._instance

    def get(self, session_id: int) -> threading.Lock:
        locks: Dict[int, threading.Lock] = self._locks
        with self._lock:
            lock = locks.get(session_id)
            if lock is None:
                lock = threading.Lock()
                locks[session_id] = lock
            return lock

    def discard(self, session_id: int) -> None:
        with self._lock:
            self._locks.pop(session_id, None)


session_locks = SessionLockRegistry()


@contextmanager
def session_critical_section(db: Session, session_id: int) -> Iterator[CountingSession]:
    """Hold the session's lock and yield its row locked for update.

    Everything in the identity map is expired once the lock is held, so
    items, entries and assignments written by other requests are re-read.
    """
    lock = session_locks.get(session_id)
    with lock:
        db.flush()
        db.expire_all()
        session = (
            db.query(CountingSession)
            .filter(CountingSession.id == session_id)
            .options(
                selectinload(CountingSession.items).selectinload(CountableItem.entries),
                selectinload(CountingSession.assignments),
            )
            .with_for_update(of=CountingSession)
            .populate_existing()
            .first()
        )
        if session is None:
            raise SessionNotFoundError(session_id)
        yield session
