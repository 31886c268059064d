from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Protocol, TypeVar

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.metrics import metrics
from authgate.service.errors import (
    AuthenticationError,
    ConflictError,
    RateLimitedError,
    ServiceTimeoutError,
    UnavailableError,
    ValidationError,
)
from authgate.service.passwords import PasswordVerifier
from authgate.service.rate_guard import Admission, RateGuard
from authgate.service.tokens import TokenCodec, digest_refresh_token, new_refresh_token
from authgate.storage.errors import ConstraintViolation, StorageUnavailable
from authgate.storage.models import Session, User, utcnow

logger = get_logger(__name__)

T = TypeVar("T")

_INVALID_CREDENTIALS = "invalid credentials"
_INVALID_REFRESH = "invalid refresh token"
_MAX_FIELD_LENGTH = 254
_MAX_PASSWORD_LENGTH = 1024


class AuthStore(Protocol):
    def create_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_login(self, identifier: str) -> Optional[User]: ...

    def set_user_blocked(self, user_id: str, blocked: bool) -> bool: ...

    def is_user_active(self, user_id: str) -> bool: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session_by_refresh_token(self, token_hash: str) -> Optional[Session]: ...

    def get_session_by_previous_token(self, token_hash: str) -> Optional[Session]: ...

    def rotate_session(
        self,
        session_id: str,
        user_id: str,
        expected_token_hash: str,
        new_token_hash: str,
        created_at: datetime,
        expires_at: datetime,
    ) -> bool: ...

    def delete_session(self, user_id: str, session_id: str) -> bool: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def delete_expired_sessions(self, now: datetime | None = None) -> int: ...

    def list_user_sessions(self, user_id: str) -> List[Session]: ...

    def close(self) -> None: ...


@dataclass
class LoginResult:
    user_id: str
    session_id: str
    access_token: str
    access_expires_at: int
    refresh_token: str
    refresh_expires_at: datetime
    rate_limit: Optional[Admission] = None


class AuthService:
    """Login, refresh rotation and logout over a pluggable store.

    Store calls are blocking, so each one runs in a worker thread under the
    remaining share of the caller's deadline. An elapsed deadline surfaces as
    ``ServiceTimeoutError`` and an unreachable store as ``UnavailableError``.

    A timeout stops the wait, not the worker thread. A write that is already
    running (``create_session`` or ``rotate_session``) can still commit after
    the caller has been answered with a timeout, in which case a rotated
    refresh token is gone and the client has to log in again. The store's own
    statement timeout is what bounds that window for Postgres.

    Every credential or session failure surfaces as the same
    ``AuthenticationError`` so callers cannot tell which check failed.
    """

    def __init__(
        self,
        store: AuthStore,
        codec: TokenCodec,
        rate_guard: RateGuard,
        settings: Settings,
        *,
        passwords: Optional[PasswordVerifier] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.rate_guard = rate_guard
        self.settings = settings
        self.passwords = passwords or PasswordVerifier()
        self._now = now or utcnow
        self.logger = logger

    # -- deadline plumbing ---------------------------------------------------

    def _deadline(self, timeout: Optional[float]) -> float:
        budget = timeout if timeout is not None else self.settings.storage_timeout_seconds
        return asyncio.get_running_loop().time() + budget

    @staticmethod
    def _remaining(deadline: float, operation: str) -> float:
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            logger.warning("auth_deadline_exceeded", operation=operation)
            raise ServiceTimeoutError("operation timed out")
        return remaining

    async def _store_call(
        self, operation: str, deadline: float, func: Callable[..., T], *args: Any
    ) -> T:
        remaining = self._remaining(deadline, operation)
        started = time.perf_counter()
        status = "ok"
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), remaining)
        except asyncio.TimeoutError:
            status = "timeout"
            logger.warning("storage_call_timeout", operation=operation, budget=remaining)
            raise ServiceTimeoutError("operation timed out")
        except StorageUnavailable as exc:
            status = "unavailable"
            logger.error("storage_call_unavailable", operation=operation, error=str(exc))
            raise UnavailableError("storage unavailable") from exc
        finally:
            metrics.observe(
                "storage_duration_seconds",
                time.perf_counter() - started,
                {"operation": operation, "status": status},
            )

    # -- operations ------------------------------------------------------------

    async def register(
        self,
        username: str,
        email: str,
        password: str,
        *,
        timeout: Optional[float] = None,
    ) -> str:
        deadline = self._deadline(timeout)
        for field_name, value in (("username", username), ("email", email)):
            if not value or not value.strip():
                raise ValidationError(f"{field_name} is required", detail={"field": field_name})
            if len(value) > _MAX_FIELD_LENGTH:
                raise ValidationError(f"{field_name} is too long", detail={"field": field_name})
        if not password:
            raise ValidationError("password is required", detail={"field": "password"})
        if len(password) > _MAX_PASSWORD_LENGTH:
            raise ValidationError("password is too long", detail={"field": "password"})

        password_hash = await asyncio.to_thread(self.passwords.hash, password)
        user = User.new(username, email, password_hash)
        try:
            await self._store_call("create_user", deadline, self.store.create_user, user)
        except ConstraintViolation as exc:
            logger.info("register_conflict", field=exc.detail.get("field"))
            raise ConflictError(
                "username or email already registered", detail=exc.detail
            ) from exc
        logger.info("user_registered", user_id=user.id)
        return user.id

    async def login(
        self,
        identifier: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        client_addr: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> LoginResult:
        deadline = self._deadline(timeout)
        rate_key = client_addr or "unknown"
        try:
            admission = await asyncio.wait_for(
                self.rate_guard.admit(
                    rate_key,
                    self.settings.login_rate_window_seconds,
                    self.settings.login_rate_limit,
                ),
                self._remaining(deadline, "rate_guard"),
            )
        except asyncio.TimeoutError:
            logger.warning("rate_guard_timeout", client_addr=rate_key)
            raise ServiceTimeoutError("operation timed out")
        if not admission.allowed:
            metrics.inc("login_attempts_total", {"status": "rate_limited"})
            raise RateLimitedError(
                "too many login attempts",
                retry_after=admission.reset_seconds,
                detail={
                    "limit": admission.limit,
                    "remaining": admission.remaining,
                    "reset_seconds": admission.reset_seconds,
                },
            )

        if not identifier or not password:
            metrics.inc("login_attempts_total", {"status": "failure"})
            raise AuthenticationError(_INVALID_CREDENTIALS)

        user = await self._store_call(
            "get_user_by_login", deadline, self.store.get_user_by_login, identifier
        )
        if user is None:
            await asyncio.to_thread(self.passwords.verify_dummy, password)
            metrics.inc("login_attempts_total", {"status": "failure"})
            logger.info("login_failed", reason="unknown_user", client_addr=rate_key)
            raise AuthenticationError(_INVALID_CREDENTIALS)
        verified = await asyncio.to_thread(self.passwords.verify, user.password_hash, password)
        if not verified or user.is_blocked:
            metrics.inc("login_attempts_total", {"status": "failure"})
            logger.info(
                "login_failed",
                reason="blocked" if verified else "bad_password",
                user_id=user.id,
                client_addr=rate_key,
            )
            raise AuthenticationError(_INVALID_CREDENTIALS)

        refresh_token = new_refresh_token()
        session = Session.new(
            user.id,
            digest_refresh_token(refresh_token),
            ttl_days=self.settings.refresh_token_ttl_days,
            user_agent=user_agent,
            client_ip=client_addr,
            now=self._now(),
        )
        try:
            await self._store_call("create_session", deadline, self.store.create_session, session)
        except ConstraintViolation as exc:
            logger.error("session_create_conflict", user_id=user.id, detail=exc.detail)
            raise ConflictError("session could not be created") from exc

        metrics.inc("login_attempts_total", {"status": "success"})
        logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        result = self._result(user.id, session, refresh_token)
        result.rate_limit = admission
        return result

    async def refresh(
        self,
        refresh_token: str,
        user_id: str,
        *,
        timeout: Optional[float] = None,
    ) -> LoginResult:
        deadline = self._deadline(timeout)
        if not refresh_token or not user_id:
            metrics.inc("refresh_attempts_total", {"status": "failure"})
            raise AuthenticationError(_INVALID_REFRESH)

        presented = digest_refresh_token(refresh_token)
        session = await self._store_call(
            "get_session_by_refresh_token",
            deadline,
            self.store.get_session_by_refresh_token,
            presented,
        )
        if session is None:
            await self._handle_possible_replay(presented, deadline)
            metrics.inc("refresh_attempts_total", {"status": "failure"})
            raise AuthenticationError(_INVALID_REFRESH)

        now = self._now()
        reason = None
        if session.user_id != user_id:
            reason = "user_mismatch"
        elif session.is_blocked:
            reason = "session_blocked"
        elif session.is_expired(now):
            reason = "session_expired"
        elif not await self._store_call(
            "is_user_active", deadline, self.store.is_user_active, session.user_id
        ):
            reason = "user_blocked"
        if reason:
            metrics.inc("refresh_attempts_total", {"status": "failure"})
            logger.info("refresh_rejected", reason=reason, session_id=session.id)
            raise AuthenticationError(_INVALID_REFRESH)

        new_token = new_refresh_token()
        expires_at = now + timedelta(days=self.settings.refresh_token_ttl_days)
        try:
            rotated = await self._store_call(
                "rotate_session",
                deadline,
                self.store.rotate_session,
                session.id,
                session.user_id,
                presented,
                digest_refresh_token(new_token),
                now,
                expires_at,
            )
        except ConstraintViolation as exc:
            logger.error("session_rotate_conflict", session_id=session.id, detail=exc.detail)
            raise ConflictError("session could not be rotated") from exc
        if not rotated:
            # another request rotated or deleted the session after our read
            metrics.inc("refresh_attempts_total", {"status": "conflict"})
            logger.warning("refresh_rotation_lost", session_id=session.id, user_id=user_id)
            raise AuthenticationError(_INVALID_REFRESH)

        session.created_at = now
        session.expires_at = expires_at
        metrics.inc("refresh_attempts_total", {"status": "success"})
        logger.info("session_refreshed", user_id=user_id, session_id=session.id)
        return self._result(session.user_id, session, new_token)

    async def _handle_possible_replay(self, presented: str, deadline: float) -> None:
        replayed = await self._store_call(
            "get_session_by_previous_token",
            deadline,
            self.store.get_session_by_previous_token,
            presented,
        )
        if replayed is None:
            return
        metrics.inc("refresh_replay_total")
        revoke = self.settings.revoke_session_on_replay
        logger.warning(
            "refresh_token_replay",
            session_id=replayed.id,
            user_id=replayed.user_id,
            revoked=revoke,
        )
        if revoke:
            await self._store_call(
                "delete_session",
                deadline,
                self.store.delete_session,
                replayed.user_id,
                replayed.id,
            )

    async def logout(
        self, user_id: str, session_id: str, *, timeout: Optional[float] = None
    ) -> None:
        deadline = self._deadline(timeout)
        if not session_id:
            raise ValidationError("session_id is required", detail={"field": "session_id"})
        removed = await self._store_call(
            "delete_session", deadline, self.store.delete_session, user_id, session_id
        )
        if removed:
            logger.info("session_revoked", user_id=user_id, session_id=session_id)
        else:
            logger.info("logout_no_session", user_id=user_id, session_id=session_id)

    async def logout_all(self, user_id: str, *, timeout: Optional[float] = None) -> int:
        deadline = self._deadline(timeout)
        revoked = await self._store_call(
            "delete_user_sessions", deadline, self.store.delete_user_sessions, user_id
        )
        logger.info("user_sessions_revoked", user_id=user_id, count=revoked)
        return revoked

    async def get_profile(self, user_id: str, *, timeout: Optional[float] = None) -> User:
        deadline = self._deadline(timeout)
        user = await self._store_call("get_user", deadline, self.store.get_user, user_id)
        if user is None or user.is_blocked:
            raise AuthenticationError("invalid token")
        return user

    def _result(self, user_id: str, session: Session, refresh_token: str) -> LoginResult:
        return LoginResult(
            user_id=user_id,
            session_id=session.id,
            access_token=self.codec.issue(user_id),
            access_expires_at=self.codec.expires_at(),
            refresh_token=refresh_token,
            refresh_expires_at=session.expires_at,
        )
