from __future__ import annotations

from contextvars import ContextVar
from dataclasses import dataclass
from typing import Optional

from authgate.logging import get_logger
from authgate.service.errors import AuthenticationError
from authgate.service.tokens import InvalidToken, TokenCodec

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthContext:
    user_id: str


current_identity: ContextVar[Optional[AuthContext]] = ContextVar(
    "current_identity", default=None
)


def get_current_identity() -> AuthContext:
    """Identity bound by the gate for the current request.

    Raises ``AuthenticationError`` when called outside an authenticated call.
    """
    ctx = current_identity.get()
    if ctx is None:
        raise AuthenticationError("invalid token")
    return ctx


class AuthGate:
    """Single authorization check shared by the HTTP and RPC transports."""

    def __init__(self, codec: TokenCodec) -> None:
        self.codec = codec

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        parts = header.strip().split(" ")
        if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
            return None
        return parts[1]

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self.extract_bearer(authorization)
        if token is None:
            logger.debug("auth_header_rejected", present=bool(authorization))
            raise AuthenticationError("invalid token")
        try:
            user_id = self.codec.verify(token)
        except InvalidToken:
            raise AuthenticationError("invalid token")
        ctx = AuthContext(user_id=user_id)
        current_identity.set(ctx)
        return ctx
