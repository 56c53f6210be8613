from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from chatgate.config import Settings
from chatgate.logging import get_logger
from chatgate.service.attachments import AttachmentProcessor, ProcessedAttachment
from chatgate.service.completion import Completion, CompletionInvoker, CompletionParams
from chatgate.service.context import ContextAssembler
from chatgate.service.errors import (
    AuthenticationError,
    QuotaExceededError,
    RateLimitedError,
    ServerError,
    ServiceError,
    ValidationError,
)
from chatgate.service.identity import Authenticated, Guest, IdentityResolver
from chatgate.service.persistence import PersistenceTracker
from chatgate.service.quota import Denied, QuotaLedger, Reservation
from chatgate.storage.errors import StoreUnavailable

logger = get_logger(__name__)

RateLimiter = Callable[[str], Awaitable[bool]]


class ChatState(str, Enum):
    VALIDATING = "validating"
    RESOLVING_IDENTITY = "resolving_identity"
    CHECKING_QUOTA = "checking_quota"
    PROCESSING_ATTACHMENTS = "processing_attachments"
    ASSEMBLING_CONTEXT = "assembling_context"
    INVOKING = "invoking"
    PERSISTING = "persisting"
    RESPONDING = "responding"
    FAILED = "failed"


@dataclass
class ChatResult:
    response: str
    session_id: Optional[str]
    message_id: Optional[str]
    is_incomplete: bool
    usage: dict
    metadata: dict
    states: List[ChatState] = field(default_factory=list)


@dataclass(frozen=True)
class Credentials:
    authorization: Optional[str] = None
    session_cookie: Optional[str] = None
    guest_token: Optional[str] = None
    client_ip: Optional[str] = None


def _problem(field_name: str, message: str, code: str) -> list:
    return [{"field": field_name, "message": message, "code": code}]


class ChatOrchestrator:
    """Runs one chat request through the pipeline stages in order.

    Every stage either advances the state or fails the request; nothing is
    retried. A quota reservation taken in ``CHECKING_QUOTA`` is committed only
    after the turn is persisted and released on any failure or cancellation.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store,
        resolver: IdentityResolver,
        ledger: QuotaLedger,
        attachments: AttachmentProcessor,
        assembler: ContextAssembler,
        invoker: CompletionInvoker,
        tracker: PersistenceTracker,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.resolver = resolver
        self.ledger = ledger
        self.attachments = attachments
        self.assembler = assembler
        self.invoker = invoker
        self.tracker = tracker
        self.rate_limiter = rate_limiter

    def resolve_params(self, request) -> CompletionParams:
        options = request.settings
        model = self.settings.model_path
        requested = options.model if options else None
        if requested:
            if requested in self.settings.allowed_models or requested == self.settings.model_path:
                model = requested
            else:
                logger.info("chat_model_not_allowed", requested=requested, fallback=model)
        temperature = (
            options.temperature
            if options and options.temperature is not None
            else self.settings.default_temperature
        )
        max_tokens = (
            options.max_tokens
            if options and options.max_tokens is not None
            else self.settings.default_max_tokens
        )
        return CompletionParams(model=model, temperature=temperature, max_tokens=max_tokens)

    async def handle(self, request, credentials: Credentials) -> ChatResult:
        started = time.monotonic()
        states: List[ChatState] = []
        reservation: Optional[Reservation] = None

        def advance(state: ChatState) -> None:
            states.append(state)
            logger.debug("chat_state", state=state.value)

        try:
            advance(ChatState.VALIDATING)
            params = self.resolve_params(request)
            message = request.message.strip()
            if not message:
                raise ValidationError(
                    "message must not be blank",
                    detail=_problem("message", "message must not be blank", "blank"),
                )
            # A continuation extends stored text; new files have nowhere to go
            if request.continue_from and request.attachments:
                raise ValidationError(
                    "attachments cannot be sent with continueFrom",
                    detail=_problem(
                        "attachments", "attachments cannot be sent with continueFrom", "conflict"
                    ),
                )

            advance(ChatState.RESOLVING_IDENTITY)
            identity = await self.resolver.resolve(
                credentials.authorization,
                session_cookie=credentials.session_cookie,
                guest_token=credentials.guest_token,
            )
            if identity is None:
                raise AuthenticationError("authentication required")
            await self._check_rate_limit(credentials.client_ip)

            owner_id = identity.user_id if isinstance(identity, Authenticated) else None
            # Guests have no persisted sessions to address
            session_id = request.session_id if owner_id else None
            if session_id and not self.store.get_chat_session(session_id, owner_id=owner_id):
                raise ValidationError(
                    "unknown session", detail=_problem("sessionId", "unknown session", "not_found")
                )
            if request.continue_from and isinstance(identity, Guest):
                raise ValidationError(
                    "message is not awaiting continuation",
                    detail=_problem(
                        "continueFrom", "continuation requires a signed-in user", "forbidden"
                    ),
                )

            advance(ChatState.CHECKING_QUOTA)
            raw_attachments = [item.to_raw() for item in request.attachments or []]
            decision = await self.ledger.check_and_reserve(
                identity, attachment_count=len(raw_attachments)
            )
            if isinstance(decision, Denied):
                raise QuotaExceededError(
                    "file upload limit reached"
                    if decision.counter != "message"
                    else "message limit reached",
                    detail={
                        "current": decision.current,
                        "limit": decision.limit,
                        "resetTime": decision.reset_time.isoformat(),
                        "counter": decision.counter,
                    },
                )
            reservation = decision.reservation

            advance(ChatState.PROCESSING_ATTACHMENTS)
            processed = await self.attachments.process(raw_attachments)

            if request.continue_from:
                advance(ChatState.INVOKING)
                continuation = await self.invoker.continue_message(
                    request.continue_from,
                    owner_id=owner_id,
                    params=params,
                    system_prompt=request.settings.system_prompt if request.settings else None,
                )
                completion = continuation.completion
                advance(ChatState.PERSISTING)
                session_id = continuation.message.session_id
                message_id = continuation.message.id
                history_length = 0
            else:
                advance(ChatState.ASSEMBLING_CONTEXT)
                parts = self.assembler.assemble(
                    session_id,
                    message,
                    processed,
                    owner_id=owner_id,
                    system_prompt=request.settings.system_prompt if request.settings else None,
                    client_history=request.conversation_context if not session_id else None,
                )
                history_length = sum(1 for part in parts if getattr(part, "kind", "") == "history")

                advance(ChatState.INVOKING)
                completion = await self.invoker.invoke(parts, params)

                advance(ChatState.PERSISTING)
                message_id = None
                if owner_id:
                    turn = self.tracker.persist_turn(
                        session_id,
                        owner_id,
                        message,
                        completion.text,
                        processed,
                        metadata=self._message_meta(
                            params, started, processed, history_length, completion
                        ),
                    )
                    session_id = turn.session_id
                    message_id = turn.assistant_message_id

            usage = await self.ledger.commit(reservation)
            reservation = None
            if owner_id:
                self._record_usage(owner_id, processed, completion)

            advance(ChatState.RESPONDING)
            elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.info(
                "chat_completed",
                tier=identity.tier,
                session_id=session_id,
                attachments=len(processed),
                incomplete=completion.incomplete,
                processing_time_ms=elapsed_ms,
            )
            return ChatResult(
                response=completion.text,
                session_id=session_id,
                message_id=message_id,
                is_incomplete=completion.incomplete,
                usage={
                    "messageCount": usage.message_count,
                    "remainingQuota": usage.remaining,
                    "tokensUsed": completion.tokens_used,
                },
                metadata={
                    "model": params.model,
                    "temperature": params.temperature,
                    "processingTimeMs": elapsed_ms,
                    "attachmentCount": len(processed),
                    "degraded": decision.degraded or usage.degraded,
                    "continueFrom": request.continue_from,
                },
                states=states,
            )
        except ServiceError as exc:
            states.append(ChatState.FAILED)
            logger.info(
                "chat_failed",
                state=states[-2].value if len(states) > 1 else ChatState.VALIDATING.value,
                error_type=exc.error_code,
                error=exc.message,
            )
            raise
        except asyncio.CancelledError:
            logger.info("chat_cancelled", state=states[-1].value if states else None)
            raise
        except Exception as exc:
            states.append(ChatState.FAILED)
            logger.error(
                "chat_unexpected_error",
                state=states[-2].value if len(states) > 1 else None,
                error=str(exc),
                exc_info=True,
            )
            raise ServerError("an unexpected error occurred") from exc
        finally:
            if reservation is not None:
                await self.ledger.release(reservation)

    async def _check_rate_limit(self, client_ip: Optional[str]) -> None:
        if not self.rate_limiter or not client_ip:
            return
        if not await self.rate_limiter(f"chat:{client_ip}"):
            raise RateLimitedError(
                "too many requests, slow down",
                detail={"retryAfter": self.settings.chat_rate_limit_window_seconds},
            )

    def _message_meta(
        self,
        params: CompletionParams,
        started: float,
        processed: List[ProcessedAttachment],
        history_length: int,
        completion: Completion,
    ) -> dict:
        return {
            "model": params.model,
            "temperature": params.temperature,
            "processingTime": int((time.monotonic() - started) * 1000),
            "attachmentCount": len(processed),
            "conversationLength": history_length,
            "continueFrom": None,
            "incomplete": completion.incomplete,
        }

    def _record_usage(
        self, owner_id: str, processed: List[ProcessedAttachment], completion: Completion
    ) -> None:
        try:
            self.tracker.record_usage(
                owner_id, attachment_count=len(processed), tokens_used=completion.tokens_used
            )
        except StoreUnavailable as exc:
            # The quota ledger already holds the authoritative count
            logger.warning("usage_record_failed", user_id=owner_id, error=str(exc))
