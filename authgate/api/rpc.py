from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError

from authgate.api.error_handling import describe_error
from authgate.api.schemas import (
    AuthResponse,
    LoginRequest,
    LogoutAllResponse,
    LogoutRequest,
    RegisterRequest,
    RegisterResponse,
    TokenRefreshRequest,
    UserResponse,
)
from authgate.logging import get_logger, set_correlation_id
from authgate.service.auth import LoginResult
from authgate.service.errors import AuthenticationError, ServiceError
from authgate.service.gate import AuthContext, current_identity
from authgate.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
APPLICATION_ERROR = -32000


@dataclass
class CallContext:
    runtime: Runtime
    client_addr: Optional[str]
    user_agent: Optional[str]
    identity: Optional[AuthContext] = None


Handler = Callable[[CallContext, Dict[str, Any]], Awaitable[Any]]


def _login_result(result: LoginResult) -> dict:
    return AuthResponse(
        user_id=result.user_id,
        session_id=result.session_id,
        access_token=result.access_token,
        expires_at=result.access_expires_at,
        refresh_token=result.refresh_token,
        session_expires_at=result.refresh_expires_at,
    ).model_dump(mode="json")


async def _register(ctx: CallContext, params: Dict[str, Any]) -> dict:
    body = RegisterRequest(**params)
    user_id = await ctx.runtime.auth.register(body.username, body.email, body.password)
    return RegisterResponse(user_id=user_id).model_dump(mode="json")


async def _login(ctx: CallContext, params: Dict[str, Any]) -> dict:
    body = LoginRequest(**params)
    result = await ctx.runtime.auth.login(
        body.login,
        body.password,
        user_agent=ctx.user_agent,
        client_addr=ctx.client_addr,
    )
    return _login_result(result)


async def _refresh(ctx: CallContext, params: Dict[str, Any]) -> dict:
    body = TokenRefreshRequest(**params)
    if not body.refresh_token or not body.user_id:
        raise AuthenticationError("invalid refresh token")
    result = await ctx.runtime.auth.refresh(body.refresh_token, body.user_id)
    return _login_result(result)


async def _logout(ctx: CallContext, params: Dict[str, Any]) -> dict:
    body = LogoutRequest(**params)
    await ctx.runtime.auth.logout(ctx.identity.user_id, body.session_id)
    return {"message": "session revoked"}


async def _logout_all(ctx: CallContext, params: Dict[str, Any]) -> dict:
    revoked = await ctx.runtime.auth.logout_all(ctx.identity.user_id)
    return LogoutAllResponse(revoked=revoked).model_dump(mode="json")


async def _whoami(ctx: CallContext, params: Dict[str, Any]) -> dict:
    user = await ctx.runtime.auth.get_profile(ctx.identity.user_id)
    return UserResponse(
        user_id=user.id,
        username=user.username,
        email=user.email,
        created_at=user.created_at,
    ).model_dump(mode="json")


# method -> (handler, requires authorization metadata)
METHODS: Dict[str, tuple[Handler, bool]] = {
    "auth.register": (_register, False),
    "auth.login": (_login, False),
    "auth.refresh": (_refresh, False),
    "auth.logout": (_logout, True),
    "auth.logout_all": (_logout_all, True),
    "auth.whoami": (_whoami, True),
}


def _error(call_id: Any, code: int, message: str, data: Optional[dict] = None) -> dict:
    error: Dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": call_id, "error": error}


def _service_error(call_id: Any, exc: Exception) -> dict:
    status, body = describe_error(exc)
    if body.code == "validation_error":
        rpc_code = INVALID_PARAMS
    elif body.code == "server_error":
        rpc_code = INTERNAL_ERROR
    else:
        rpc_code = APPLICATION_ERROR
    data: Dict[str, Any] = {"code": body.code, "status": status}
    if body.details:
        data["details"] = body.details
    return _error(call_id, rpc_code, body.message, data)


async def dispatch(message: Any, ctx: CallContext) -> dict:
    """Run one JSON-RPC call and return its response object."""
    if not isinstance(message, dict):
        return _error(None, INVALID_REQUEST, "request must be an object")
    call_id = message.get("id")
    method = message.get("method")
    params = message.get("params") or {}
    metadata = message.get("metadata") or {}
    if message.get("jsonrpc") != "2.0" or not isinstance(method, str):
        return _error(call_id, INVALID_REQUEST, "invalid request")
    if not isinstance(params, dict) or not isinstance(metadata, dict):
        return _error(call_id, INVALID_PARAMS, "params and metadata must be objects")
    entry = METHODS.get(method)
    if entry is None:
        return _error(call_id, METHOD_NOT_FOUND, f"unknown method {method}")
    handler, protected = entry

    token = current_identity.set(None)
    try:
        ctx.identity = None
        if protected:
            ctx.identity = ctx.runtime.gate.authenticate(metadata.get("authorization"))
        result = await handler(ctx, params)
    except PydanticValidationError as exc:
        logger.warning("rpc_invalid_params", method=method, error_count=exc.error_count())
        details = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        return _error(
            call_id,
            INVALID_PARAMS,
            "invalid params",
            {"code": "validation_error", "status": 400, "details": details},
        )
    except ServiceError as exc:
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn("rpc_service_error", method=method, error_code=exc.error_code, message=exc.message)
        return _service_error(call_id, exc)
    except Exception as exc:
        logger.error(
            "rpc_unhandled_error",
            method=method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _service_error(call_id, exc)
    finally:
        current_identity.reset(token)
    return {"jsonrpc": "2.0", "id": call_id, "result": result}


@router.websocket("/rpc")
async def rpc_socket(ws: WebSocket):
    """JSON-RPC 2.0 over a WebSocket; one response frame per request frame."""
    await ws.accept()
    ctx = CallContext(
        runtime=get_runtime(),
        client_addr=ws.client.host if ws.client else None,
        user_agent=ws.headers.get("user-agent"),
    )
    try:
        while True:
            frame = await ws.receive()
            if frame["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(frame.get("code", 1000))
            text = frame.get("text")
            if text is None:
                logger.warning("rpc_binary_frame")
                await ws.send_json(_error(None, INVALID_REQUEST, "frames must be JSON text"))
                continue
            try:
                message = json.loads(text)
            except json.JSONDecodeError:
                logger.warning("rpc_invalid_json")
                await ws.send_json(_error(None, PARSE_ERROR, "invalid JSON"))
                continue
            set_correlation_id(None)
            await ws.send_json(await dispatch(message, ctx))
    except WebSocketDisconnect:
        logger.debug("rpc_client_disconnected")
