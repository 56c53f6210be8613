from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Protocol, Sequence, Tuple

from openai import AsyncOpenAI

from chatgate.config import DEFAULT_SYSTEM_PROMPT, Settings
from chatgate.logging import get_logger
from chatgate.service.context import ContentPart, TextPart
from chatgate.service.errors import AiError, ServerError, ValidationError
from chatgate.service.tokenizer_utils import estimate_prompt_tokens, estimate_token_count
from chatgate.storage.models import Message

logger = get_logger(__name__)

CONTINUE_INSTRUCTION = "Continue the following response naturally and seamlessly"
_AUDIO_FORMATS = {"audio/wav": "wav", "audio/mpeg": "mp3"}
# Media the chat completions API accepts as file input
_FILE_MIME_TYPES = frozenset({"application/pdf"})


@dataclass(frozen=True)
class CompletionParams:
    model: str
    temperature: float
    max_tokens: int


@dataclass(frozen=True)
class Completion:
    text: str
    finish_reason: str
    tokens_used: int

    @property
    def incomplete(self) -> bool:
        return self.finish_reason == "length"


@dataclass(frozen=True)
class Continuation:
    completion: Completion
    message: Message


class CompletionBackend(Protocol):
    async def complete(
        self, messages: List[dict], params: CompletionParams
    ) -> Tuple[str, str]: ...


class ContinuationStore(Protocol):
    def claim_continuation(self, message_id: str, *, owner_id: str) -> Optional[Message]: ...

    def restore_continuation(self, message_id: str) -> None: ...

    def extend_message(
        self, message_id: str, extra: str, *, meta: Optional[dict] = None
    ) -> Optional[Message]: ...


def _data_url(mime_type: str, data: bytes) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def to_chat_messages(parts: Sequence[ContentPart]) -> List[dict]:
    """Map content parts onto OpenAI chat messages.

    Instruction parts become the system message; everything else is packed in
    order into a single multi-part user message.
    """

    system_lines: List[str] = []
    content: List[dict] = []
    for part in parts:
        if isinstance(part, TextPart):
            if part.kind == "instruction":
                system_lines.append(part.text)
            else:
                content.append({"type": "text", "text": part.text})
            continue
        if part.mime_type.startswith("image/"):
            content.append(
                {"type": "image_url", "image_url": {"url": _data_url(part.mime_type, part.data)}}
            )
        elif part.mime_type in _AUDIO_FORMATS:
            content.append(
                {
                    "type": "input_audio",
                    "input_audio": {
                        "data": base64.b64encode(part.data).decode("ascii"),
                        "format": _AUDIO_FORMATS[part.mime_type],
                    },
                }
            )
        elif part.mime_type in _FILE_MIME_TYPES:
            content.append(
                {
                    "type": "file",
                    "file": {
                        "filename": part.name,
                        "file_data": _data_url(part.mime_type, part.data),
                    },
                }
            )
        else:
            content.append(
                {
                    "type": "text",
                    "text": f"[Attached {part.name} ({part.mime_type}) cannot be passed "
                    "to the model directly.]",
                }
            )
    messages: List[dict] = []
    if system_lines:
        messages.append({"role": "system", "content": "\n\n".join(system_lines)})
    messages.append({"role": "user", "content": content})
    return messages


class OpenAICompletionBackend:
    """Chat completions against an OpenAI-compatible endpoint."""

    def __init__(self, api_key: str, *, base_url: Optional[str] = None) -> None:
        # Retries belong to the caller
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)

    async def complete(self, messages: List[dict], params: CompletionParams) -> Tuple[str, str]:
        completion = await self.client.chat.completions.create(
            model=params.model,
            messages=messages,
            temperature=params.temperature,
            max_tokens=params.max_tokens,
        )
        choices = getattr(completion, "choices", None) or []
        first_choice = next(iter(choices), None)
        if not first_choice:
            logger.warning("completion_no_choices", model=params.model)
            return "", "stop"
        return first_choice.message.content or "", first_choice.finish_reason or "stop"


class StubCompletionBackend:
    """Deterministic offline backend used when no API key is configured."""

    async def complete(self, messages: List[dict], params: CompletionParams) -> Tuple[str, str]:
        prompt = ""
        if messages:
            content = messages[-1].get("content") or []
            texts = [item["text"] for item in content if item.get("type") == "text"]
            prompt = texts[-1] if texts else ""
        words = f"[stub model={params.model}] {prompt}".split()
        if len(words) > params.max_tokens:
            return " ".join(words[: params.max_tokens]), "length"
        return " ".join(words), "stop"


class CompletionInvoker:
    """Single-shot completion calls with a timeout and message continuation."""

    def __init__(
        self,
        settings: Settings,
        store: ContinuationStore,
        backend: Optional[CompletionBackend] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.backend = backend or self._build_backend(settings)

    @staticmethod
    def _build_backend(settings: Settings) -> CompletionBackend:
        if settings.completion_api_key and not settings.test_mode:
            return OpenAICompletionBackend(
                settings.completion_api_key, base_url=settings.completion_base_url
            )
        logger.info("completion_stub_backend_enabled")
        return StubCompletionBackend()

    async def invoke(self, parts: Sequence[ContentPart], params: CompletionParams) -> Completion:
        messages = to_chat_messages(parts)
        timeout = self.settings.completion_timeout_seconds
        try:
            text, finish_reason = await asyncio.wait_for(
                self.backend.complete(messages, params), timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.warning("completion_timeout", model=params.model, timeout_seconds=timeout)
            raise AiError("the AI service did not respond in time", detail={"timeout": timeout})
        except AiError:
            raise
        except Exception as exc:
            logger.error("completion_failed", model=params.model, error=str(exc))
            raise AiError("the AI service failed to produce a response") from exc
        if not text.strip() and finish_reason != "length":
            logger.warning("completion_empty", model=params.model, finish_reason=finish_reason)
            raise AiError("the AI service returned an empty response")
        tokens_used = estimate_prompt_tokens(parts) + estimate_token_count(text)
        if finish_reason == "length":
            logger.info("completion_length_limited", model=params.model)
        return Completion(text=text, finish_reason=finish_reason, tokens_used=tokens_used)

    async def continue_message(
        self,
        message_id: str,
        *,
        owner_id: str,
        params: CompletionParams,
        system_prompt: Optional[str] = None,
    ) -> Continuation:
        """Extend an incomplete assistant message in place.

        The incomplete flag is claimed atomically before invoking, so only one
        continuation runs per flag. The claim is restored if the call fails.
        """

        claimed = self.store.claim_continuation(message_id, owner_id=owner_id)
        if claimed is None:
            raise ValidationError(
                "message is not awaiting continuation",
                detail=[
                    {
                        "field": "continueFrom",
                        "message": "message is not awaiting continuation",
                        "code": "invalid_state",
                    }
                ],
            )
        parts: List[ContentPart] = [
            TextPart(
                system_prompt or self.settings.system_prompt or DEFAULT_SYSTEM_PROMPT,
                kind="instruction",
            ),
            TextPart(f'{CONTINUE_INSTRUCTION}: "{claimed.content}"', kind="message"),
        ]
        try:
            completion = await self.invoke(parts, params)
        except (Exception, asyncio.CancelledError):
            self.store.restore_continuation(message_id)
            raise
        extra = completion.text
        if claimed.content and extra and not (
            claimed.content[-1].isspace() or extra[0].isspace()
        ):
            extra = f" {extra}"
        updated = self.store.extend_message(
            message_id,
            extra,
            meta={
                "incomplete": completion.incomplete,
                "continuedAt": datetime.now(timezone.utc).isoformat(),
            },
        )
        if updated is None:
            raise ServerError("continued message disappeared before it could be extended")
        logger.info(
            "completion_continued",
            message_id=message_id,
            incomplete=completion.incomplete,
        )
        return Continuation(completion=completion, message=updated)
