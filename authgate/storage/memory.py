from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from authgate.logging import get_logger
from authgate.storage.errors import ConstraintViolation
from authgate.storage.models import Session, User, utcnow


class MemoryStore:
    """In-process user directory and session store.

    Used by tests and single-process development. Every public method holds
    ``_data_lock`` for its whole body, so each call is atomic with respect to
    concurrent callers. Records are copied on the way in and out; callers
    never hold a reference to stored state.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        # refresh digest -> session id, for both current and previous digests
        self._by_token: Dict[str, str] = {}
        self._by_previous_token: Dict[str, str] = {}
        self._data_lock = threading.RLock()

    # -- users -----------------------------------------------------------

    def create_user(self, user: User) -> User:
        with self._data_lock:
            for existing in self.users.values():
                if existing.username == user.username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
                if existing.email == user.email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            if user.id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            self.users[user.id] = replace(user)
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_login(self, identifier: str) -> Optional[User]:
        needle = identifier.strip().lower()
        with self._data_lock:
            for user in self.users.values():
                if user.username == needle or user.email == needle:
                    return replace(user)
            return None

    def set_user_blocked(self, user_id: str, blocked: bool) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.is_blocked = blocked
            return True

    def is_user_active(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            return bool(user) and not user.is_blocked

    # -- sessions --------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": session.user_id}
                )
            if session.id in self.sessions:
                raise ConstraintViolation("session id already exists", {"field": "id"})
            if session.refresh_token_hash in self._by_token:
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "refresh_token_hash"}
                )
            stored = replace(session)
            self.sessions[stored.id] = stored
            self._by_token[stored.refresh_token_hash] = stored.id
            return replace(stored)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def get_session_by_refresh_token(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            session_id = self._by_token.get(token_hash)
            if session_id is None:
                return None
            return replace(self.sessions[session_id])

    def get_session_by_previous_token(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            session_id = self._by_previous_token.get(token_hash)
            sess = self.sessions.get(session_id) if session_id else None
            return replace(sess) if sess else None

    def rotate_session(
        self,
        session_id: str,
        user_id: str,
        expected_token_hash: str,
        new_token_hash: str,
        created_at: datetime,
        expires_at: datetime,
    ) -> bool:
        """Swap the refresh digest if it still equals ``expected_token_hash``."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if (
                sess is None
                or sess.user_id != user_id
                or sess.refresh_token_hash != expected_token_hash
            ):
                return False
            if new_token_hash in self._by_token:
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "refresh_token_hash"}
                )
            self._by_token.pop(expected_token_hash, None)
            if sess.previous_token_hash:
                self._by_previous_token.pop(sess.previous_token_hash, None)
            sess.previous_token_hash = expected_token_hash
            sess.refresh_token_hash = new_token_hash
            sess.created_at = created_at
            sess.expires_at = expires_at
            self._by_token[new_token_hash] = session_id
            self._by_previous_token[expected_token_hash] = session_id
            return True

    def delete_session(self, user_id: str, session_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None or sess.user_id != user_id:
                return False
            self._drop(sess)
            return True

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sess for sess in self.sessions.values() if sess.user_id == user_id]
            for sess in stale:
                self._drop(sess)
            return len(stale)

    def delete_expired_sessions(self, now: datetime | None = None) -> int:
        cutoff = now or utcnow()
        with self._data_lock:
            stale = [sess for sess in self.sessions.values() if sess.expires_at < cutoff]
            for sess in stale:
                self._drop(sess)
            return len(stale)

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return [
                replace(sess) for sess in self.sessions.values() if sess.user_id == user_id
            ]

    def _drop(self, sess: Session) -> None:
        self.sessions.pop(sess.id, None)
        self._by_token.pop(sess.refresh_token_hash, None)
        if sess.previous_token_hash:
            self._by_previous_token.pop(sess.previous_token_hash, None)

    def close(self) -> None:
        return None
