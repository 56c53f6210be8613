from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Optional, TypeVar

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from chatgate.api.schemas import (
    ChatMetadata,
    ChatRequest,
    ChatResponse,
    ChatUsage,
    GuestCreateRequest,
    GuestUpdateRequest,
    GuestVerifyRequest,
)
from chatgate.config import ALLOWED_ATTACHMENT_MIME_TYPES, MAX_ATTACHMENT_BYTES, MAX_MESSAGE_CHARS
from chatgate.logging import get_logger
from chatgate.service.errors import AuthenticationError, ValidationError
from chatgate.service.guest import GUEST_COOKIE_NAME, GuestOutcome
from chatgate.service.identity import Authenticated
from chatgate.service.orchestrator import Credentials
from chatgate.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

T = TypeVar("T")

# Status for requests abandoned by the client before a response was written
CLIENT_CLOSED_REQUEST = 499
_DISCONNECT_POLL_SECONDS = 0.25


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()
    return request.client.host if request.client else "unknown"


async def _run_until_disconnect(request: Request, work: Awaitable[T]) -> Optional[T]:
    """Run ``work`` and cancel it if the client goes away; ``None`` on disconnect."""

    task = asyncio.ensure_future(work)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=_DISCONNECT_POLL_SECONDS)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.info("chat_client_disconnected", path=request.url.path)
                task.cancel()
                await asyncio.wait({task})
                return None
    finally:
        if not task.done():
            task.cancel()


def _credentials(request: Request) -> Credentials:
    return Credentials(
        authorization=request.headers.get("authorization"),
        session_cookie=request.cookies.get("session_id") or request.headers.get("session_id"),
        guest_token=request.cookies.get(GUEST_COOKIE_NAME) or request.headers.get("x-guest-token"),
        client_ip=get_client_ip(request),
    )


async def require_user(request: Request) -> Authenticated:
    credentials = _credentials(request)
    identity = await get_runtime().identity.resolve(
        credentials.authorization, session_cookie=credentials.session_cookie
    )
    if not isinstance(identity, Authenticated):
        raise AuthenticationError("authentication required")
    return identity


def _set_guest_cookie(response: Response, token: str) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        GUEST_COOKIE_NAME,
        token,
        httponly=True,
        secure=settings.cookie_secure and not settings.test_mode,
        samesite="strict",
        max_age=settings.guest_session_ttl_hours * 60 * 60,
        path="/",
    )


def _guest_body(outcome: GuestOutcome, **extra) -> dict:
    body = {"success": True, "session": outcome.session_dict(), **extra}
    if outcome.fallback:
        body["fallback"] = True
    return body


@router.post("/chat", tags=["chat"])
async def chat(request: Request, body: ChatRequest):
    """Answer one chat message.

    Authenticated callers use a bearer token or the ``session_id`` cookie;
    guests present the ``guest-token`` cookie. Errors share the response shape
    with ``success: false`` and a stable ``errorType``.
    """
    runtime = get_runtime()
    result = await _run_until_disconnect(
        request, runtime.orchestrator.handle(body, _credentials(request))
    )
    if result is None:
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    payload = ChatResponse(
        success=True,
        response=result.response,
        session_id=result.session_id,
        message_id=result.message_id,
        is_incomplete=result.is_incomplete,
        usage=ChatUsage(**result.usage),
        metadata=ChatMetadata(**result.metadata),
    )
    return JSONResponse(payload.model_dump(by_alias=True, exclude_none=True))


@router.get("/chat", tags=["chat"])
async def chat_status():
    settings = get_runtime().settings
    return {
        "success": True,
        "status": "ok",
        "features": [
            "guest_sessions",
            "attachments",
            "remote_attachments",
            "conversation_history",
            "continuation",
            "usage_tracking",
        ],
        "models": sorted({settings.model_path, *settings.allowed_models}),
        "limits": {
            "maxMessageLength": MAX_MESSAGE_CHARS,
            "maxAttachmentBytes": MAX_ATTACHMENT_BYTES,
            "guestMessages": settings.quota_guest_messages,
            "userDailyMessages": settings.quota_user_daily_messages,
            "allowedAttachmentTypes": sorted(ALLOWED_ATTACHMENT_MIME_TYPES),
        },
    }


@router.get("/usage", tags=["chat"])
async def usage(identity: Authenticated = Depends(require_user)):
    runtime = get_runtime()
    counters = await runtime.quota.usage_for(identity)
    record = runtime.store.get_usage(identity.user_id, datetime.now(timezone.utc).date())
    return {
        "success": True,
        "usage": {
            **counters,
            "day": record.day.isoformat(),
            "messagesRecorded": record.messages_count,
            "filesUploaded": record.files_uploaded,
            "tokensUsed": record.tokens_used,
        },
    }


@router.post("/auth/guest", tags=["guest"])
async def create_guest_session(
    request: Request, body: Optional[GuestCreateRequest] = None
):
    runtime = get_runtime()
    outcome = runtime.guests.create(
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent")
        or (body.user_agent if body else None)
        or "Unknown",
    )
    message = (
        "Guest session created (fallback mode)"
        if outcome.fallback
        else "Guest session created successfully"
    )
    response = JSONResponse(_guest_body(outcome, message=message))
    _set_guest_cookie(response, outcome.session.session_token)
    return response


@router.post("/auth/guest/verify", tags=["guest"])
async def verify_guest_session(
    request: Request, body: Optional[GuestVerifyRequest] = None
):
    runtime = get_runtime()
    token = (body.token if body else None) or request.cookies.get(GUEST_COOKIE_NAME)
    if not token:
        raise ValidationError(
            "token is required",
            detail=[{"field": "token", "message": "token is required", "code": "missing"}],
        )
    outcome = runtime.guests.verify(token)
    return _guest_body(
        outcome,
        isValid=outcome.is_valid,
        remainingMessages=outcome.remaining_messages if outcome.is_valid else 0,
    )


@router.post("/auth/guest/update", tags=["guest"])
async def update_guest_session(request: Request, body: GuestUpdateRequest):
    runtime = get_runtime()
    token = body.token or request.cookies.get(GUEST_COOKIE_NAME)
    if not token:
        raise ValidationError(
            "token is required",
            detail=[{"field": "token", "message": "token is required", "code": "missing"}],
        )
    outcome = runtime.guests.update(token, body.message_count)
    result = _guest_body(outcome, remainingMessages=outcome.remaining_messages)
    result["session"]["remainingMessages"] = outcome.remaining_messages
    return result
