"""
Session storage consumed by CSRF protection.

Features:
- Opaque SHA-256 session IDs
- Idle timeout (default 30 minutes), refreshed on every lookup
- Expired sessions are dropped on lookup and by a periodic cleanup
- Thread-safe key/value data per session
"""

import hashlib
import logging
import threading
import time
import uuid
from typing import Callable, Dict, Optional, Protocol

from gatekeeper.workers import PeriodicWorker

logger = logging.getLogger("gatekeeper.sessions")

DEFAULT_TIMEOUT_MINUTES = 30
CLEANUP_INTERVAL_SECONDS = 5 * 60


class SessionData(Protocol):
    """What the CSRF guard needs from a session record."""

    id: str

    def get_value(self, key: str, default: str = "") -> str: ...

    def set_value(self, key: str, value: str) -> None: ...


class SessionStore(Protocol):
    """Lookup interface for session records."""

    def get_session_by_id(self, session_id: str) -> Optional[SessionData]: ...


class Session:
    """A session record holding string key/value data."""

    def __init__(self, session_id: str, now: float):
        self.id = session_id
        self.created_at = now
        self.last_access = now
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get_value(self, key: str, default: str = "") -> str:
        with self._lock:
            return self._data.get(key, default)

    def set_value(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def touch(self, now: float) -> None:
        with self._lock:
            self.last_access = now

    def is_expired(self, timeout_minutes: int, now: float) -> bool:
        with self._lock:
            return now - self.last_access > timeout_minutes * 60


# ============================================================================
# Session Storage (In-Memory)
# ============================================================================


class InMemorySessionStore:
    """
    In-memory session storage.

    Production Note: Replace with Redis or database-backed storage for
    multi-server deployments.
    """

    def __init__(
        self,
        timeout_minutes: int = DEFAULT_TIMEOUT_MINUTES,
        clock: Callable[[], float] = time.time
    ):
        self.clock = clock
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()
        self.timeout_minutes = timeout_minutes
        self._cleanup = PeriodicWorker(
            CLEANUP_INTERVAL_SECONDS,
            self.cleanup_expired,
            name="session-cleanup",
        )

    @property
    def timeout_minutes(self) -> int:
        return self._timeout_minutes

    @timeout_minutes.setter
    def timeout_minutes(self, value: int) -> None:
        self._timeout_minutes = value if value > 0 else DEFAULT_TIMEOUT_MINUTES
        logger.info(f"Session timeout set to {self._timeout_minutes} minutes")

    def create_session(self) -> Session:
        """Create a new session with an opaque ID."""
        session_id = hashlib.sha256(str(uuid.uuid4()).encode("utf-8")).hexdigest()
        session = Session(session_id, self.clock())

        with self._lock:
            self._sessions[session_id] = session
            total = len(self._sessions)

        logger.info(
            "Session created",
            extra={'extra_fields': {'session_id': session_id, 'total_sessions': total}}
        )
        return session

    def get_session_by_id(self, session_id: str) -> Optional[Session]:
        """
        Look up a live session and refresh its last access time.

        Returns:
            The session, or None if it does not exist or has expired
        """
        if not session_id:
            return None

        now = self.clock()
        expired = False

        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None and session.is_expired(self._timeout_minutes, now):
                del self._sessions[session_id]
                session = None
                expired = True
            elif session is not None:
                session.touch(now)

        if expired:
            logger.info(f"Session {session_id} found but expired. Removed.")
        elif session is None:
            logger.debug(f"Session {session_id} not found")
        return session

    def invalidate_session(self, session_id: str) -> None:
        """Delete a session (logout)."""
        with self._lock:
            removed = self._sessions.pop(session_id, None) is not None
        if removed:
            logger.info(f"Session {session_id} invalidated")

    def cleanup_expired(self) -> int:
        """
        Remove every expired session.

        Returns:
            Number of sessions removed
        """
        now = self.clock()
        with self._lock:
            expired = [
                session_id
                for session_id, session in self._sessions.items()
                if session.is_expired(self._timeout_minutes, now)
            ]
            for session_id in expired:
                del self._sessions[session_id]
            remaining = len(self._sessions)

        if expired:
            logger.info(
                f"Removed {len(expired)} expired sessions",
                extra={'extra_fields': {'removed': len(expired), 'remaining': remaining}}
            )
        return len(expired)

    def session_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def start(self) -> None:
        self._cleanup.start()

    def stop(self, timeout: float = 5.0) -> bool:
        return self._cleanup.stop(timeout)
