from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import math
import secrets
import time
from typing import Any, Callable, Optional

from authgate.logging import get_logger
from authgate.service.errors import AuthenticationError

logger = get_logger(__name__)

_ALGORITHM = "HS256"
_TOKEN_TYPE = "access"
_REFRESH_TOKEN_BYTES = 32


class InvalidToken(AuthenticationError):
    """Raised for every access-token verification failure, whatever the cause."""

    def __init__(self) -> None:
        super().__init__("invalid token")


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def new_refresh_token() -> str:
    """Opaque, URL-safe refresh token with 256 bits of entropy."""
    return secrets.token_urlsafe(_REFRESH_TOKEN_BYTES)


def digest_refresh_token(token: str) -> str:
    """Digest stored in place of the raw refresh token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenCodec:
    """Issues and verifies HS256 access tokens.

    The codec is pure: its output depends only on the secret, the inputs and
    the injected clock.
    """

    def __init__(
        self,
        secret: str,
        ttl_seconds: int,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if not secret:
            raise ValueError("token secret must be non-empty")
        if ttl_seconds <= 0:
            raise ValueError("token ttl must be positive")
        self._key = secret.encode("utf-8")
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.time

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, user_id: str) -> str:
        if not user_id:
            raise ValueError("user_id must be non-empty")
        now = int(self._clock())
        payload = {
            "sub": user_id,
            "user_id": user_id,
            "iat": now,
            "exp": now + self.ttl_seconds,
            "typ": _TOKEN_TYPE,
            "jti": secrets.token_urlsafe(16),
        }
        header_enc = _encode_segment(
            json.dumps({"alg": _ALGORITHM, "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def expires_at(self, issued_at: Optional[float] = None) -> int:
        issued = int(issued_at if issued_at is not None else self._clock())
        return issued + self.ttl_seconds

    def verify(self, token: str) -> str:
        """Return the subject of a valid token or raise ``InvalidToken``."""
        payload = self._decode(token)
        if payload is None:
            raise InvalidToken()
        return payload["sub"]

    def _decode(self, token: str) -> Optional[dict[str, Any]]:
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            logger.debug("jwt_malformed")
            return None

        # only HS256 is ever accepted; "none" and asymmetric algs are refused
        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, ValueError):
            logger.debug("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            logger.debug(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            logger.debug("jwt_bad_signature")
            return None

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, ValueError):
            logger.debug("jwt_payload_decode_failed")
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("typ") != _TOKEN_TYPE:
            logger.debug("jwt_wrong_type", typ=payload.get("typ"))
            return None
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            logger.debug("jwt_missing_exp")
            return None
        exp_ts = float(exp)
        if not math.isfinite(exp_ts):
            logger.debug("jwt_missing_exp")
            return None
        if exp_ts <= self._clock():
            logger.debug("jwt_expired", exp=exp_ts)
            return None
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            logger.debug("jwt_missing_subject")
            return None
        return payload
