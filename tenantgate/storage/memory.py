from __future__ import annotations

import secrets
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from tenantgate.logging import get_logger
from tenantgate.storage.models import PendingAuthorization, Session, utcnow


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


class MemoryStore:
    """In-process storage for canonical sessions, PKCE states and lockout counters.

    oauth and mock sessions live here keyed by the opaque id carried in the
    session cookie. Legacy sessions are never stored; the legacy identity
    server owns them.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.sessions: Dict[str, Session] = {}
        self.pending: Dict[str, PendingAuthorization] = {}
        self.lockouts: Dict[str, Tuple[int, Optional[datetime]]] = {}
        self._data_lock = threading.RLock()

    # sessions
    def save_session(self, session: Session) -> Session:
        """Store ``session``, assigning a fresh id when it has none."""
        with self._data_lock:
            if not session.session_id:
                session = replace(session, session_id=new_session_id())
            self.sessions[session.session_id] = session
            return session

    def get_session(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        with self._data_lock:
            return self.sessions.get(session_id)

    def update_session(self, session: Session) -> Optional[Session]:
        """Overwrite a stored session; returns None when it was revoked meanwhile."""
        with self._data_lock:
            if session.session_id not in self.sessions:
                return None
            self.sessions[session.session_id] = session
            return session

    def rotate_session(self, old_session_id: str, session: Session) -> Session:
        """Store ``session`` under a new id and revoke ``old_session_id`` atomically."""
        with self._data_lock:
            rotated = replace(session, session_id=new_session_id())
            self.sessions.pop(old_session_id, None)
            self.sessions[rotated.session_id] = rotated
        self.logger.info("session_rotated", user_id=session.user_id)
        return rotated

    def revoke_session(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        with self._data_lock:
            return self.sessions.pop(session_id, None)

    def list_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return [s for s in self.sessions.values() if s.user_id == user_id]

    # pending authorizations
    def put_pending(self, pending: PendingAuthorization) -> None:
        with self._data_lock:
            self.pending[pending.state] = pending

    def pop_pending(self, state: str) -> Optional[PendingAuthorization]:
        """Single use: a state is removed as soon as it is read."""
        with self._data_lock:
            return self.pending.pop(state, None)

    def cleanup_expired(self, *, state_ttl_seconds: int, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        cleaned = 0
        with self._data_lock:
            stale_sessions = [sid for sid, s in self.sessions.items() if s.is_expired(now)]
            for sid in stale_sessions:
                self.sessions.pop(sid, None)
                cleaned += 1
            stale_states = [
                state
                for state, pending in self.pending.items()
                if pending.is_expired(state_ttl_seconds, now)
            ]
            for state in stale_states:
                self.pending.pop(state, None)
                cleaned += 1
        if cleaned:
            self.logger.debug(
                "memory_store_cleanup",
                sessions=len(stale_sessions),
                pending=len(stale_states),
            )
        return cleaned

    # lockout counters; async to share the interface of RedisCache
    async def load_lockout(self, key: str) -> Optional[Tuple[int, Optional[datetime]]]:
        with self._data_lock:
            return self.lockouts.get(key)

    async def save_lockout(
        self,
        key: str,
        attempt_count: int,
        locked_until: Optional[datetime],
        ttl_seconds: int,
    ) -> None:
        with self._data_lock:
            self.lockouts[key] = (attempt_count, locked_until)

    async def clear_lockout(self, key: str) -> None:
        with self._data_lock:
            self.lockouts.pop(key, None)
