from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: str
    created_at: datetime = field(default_factory=utcnow)
    is_blocked: bool = False

    @classmethod
    def new(cls, username: str, email: str, password_hash: str) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            username=username.strip().lower(),
            email=email.strip().lower(),
            password_hash=password_hash,
        )


@dataclass
class Session:
    """A server-side refresh session.

    Only the SHA-256 digest of the refresh token is held. Rotation replaces
    ``refresh_token_hash`` in place and remembers the value it replaced in
    ``previous_token_hash`` so a replayed token can be recognised.
    """

    id: str
    user_id: str
    refresh_token_hash: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    client_ip: Optional[str] = None
    is_blocked: bool = False
    previous_token_hash: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token_hash: str,
        ttl_days: int = 15,
        user_agent: str | None = None,
        client_ip: str | None = None,
        *,
        now: datetime | None = None,
    ) -> "Session":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token_hash=refresh_token_hash,
            created_at=created,
            expires_at=created + timedelta(days=ttl_days),
            user_agent=user_agent,
            client_ip=client_ip,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) > self.expires_at
