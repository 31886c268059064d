from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Request, Response

from authgate.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutAllResponse,
    LogoutRequest,
    RegisterRequest,
    RegisterResponse,
    TokenRefreshRequest,
    UserResponse,
)
from authgate.logging import get_logger
from authgate.service.auth import LoginResult
from authgate.service.gate import AuthContext
from authgate.service.rate_guard import Admission
from authgate.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

REFRESH_COOKIE = "refresh_token"
USER_COOKIE = "session_user"
COOKIE_PATH = "/v1/auth"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def require_identity(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Route-level adapter over the shared auth gate."""
    runtime = get_runtime()
    return runtime.gate.authenticate(authorization)


def _client_addr(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _apply_session_cookies(response: Response, result: LoginResult) -> None:
    settings = get_runtime().settings
    max_age = settings.refresh_token_ttl_days * 24 * 60 * 60
    for name, value in ((REFRESH_COOKIE, result.refresh_token), (USER_COOKIE, result.user_id)):
        response.set_cookie(
            name,
            value,
            httponly=True,
            secure=settings.cookie_secure,
            samesite="lax",
            max_age=max_age,
            path=COOKIE_PATH,
        )


def _clear_session_cookies(response: Response) -> None:
    secure = get_runtime().settings.cookie_secure
    for name in (REFRESH_COOKIE, USER_COOKIE):
        response.delete_cookie(
            name, path=COOKIE_PATH, secure=secure, httponly=True, samesite="lax"
        )


def _apply_rate_limit_headers(response: Response, admission: Optional[Admission]) -> None:
    if admission is None:
        return
    response.headers["X-RateLimit-Limit"] = str(admission.limit)
    response.headers["X-RateLimit-Remaining"] = str(admission.remaining)
    response.headers["X-RateLimit-Reset"] = str(admission.reset_seconds)


def _auth_response(result: LoginResult) -> AuthResponse:
    return AuthResponse(
        user_id=result.user_id,
        session_id=result.session_id,
        access_token=result.access_token,
        expires_at=result.access_expires_at,
        refresh_token=result.refresh_token,
        session_expires_at=result.refresh_expires_at,
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a user account.

    Raises:
        400: If a field is missing or malformed
        409: If the username or email is already registered
    """
    runtime = get_runtime()
    user_id = await runtime.auth.register(body.username, body.email, body.password)
    return Envelope(status="ok", data=RegisterResponse(user_id=user_id))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with username or email and open a refresh session.

    Returns an access token and sets the refresh cookie pair. Rate limited
    per client address.

    Raises:
        401: If credentials are invalid or the account is blocked
        429: If the client exceeded the login rate limit
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.login,
        body.password,
        user_agent=request.headers.get("user-agent"),
        client_addr=_client_addr(request),
    )
    _apply_session_cookies(response, result)
    _apply_rate_limit_headers(response, result.rate_limit)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
    user_cookie: Optional[str] = Cookie(None, alias=USER_COOKIE),
):
    """Rotate the refresh token and issue a new access token.

    The refresh token and user id come from the JSON body when present,
    otherwise from the cookie pair set at login.
    """
    runtime = get_runtime()
    refresh_token = (body.refresh_token if body else None) or refresh_cookie
    user_id = (body.user_id if body else None) or user_cookie
    if not refresh_token or not user_id:
        raise _http_error("unauthorized", "invalid refresh token", status_code=401)
    result = await runtime.auth.refresh(refresh_token, user_id)
    _apply_session_cookies(response, result)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: LogoutRequest,
    response: Response,
    principal: AuthContext = Depends(require_identity),
):
    runtime = get_runtime()
    await runtime.auth.logout(principal.user_id, body.session_id)
    _clear_session_cookies(response)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.post("/auth/logout_all", response_model=Envelope, tags=["auth"])
async def logout_all(
    response: Response,
    principal: AuthContext = Depends(require_identity),
):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(principal.user_id)
    _clear_session_cookies(response)
    return Envelope(status="ok", data=LogoutAllResponse(revoked=revoked))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(require_identity)):
    runtime = get_runtime()
    user = await runtime.auth.get_profile(principal.user_id)
    return Envelope(
        status="ok",
        data=UserResponse(
            user_id=user.id,
            username=user.username,
            email=user.email,
            created_at=user.created_at,
        ),
    )
