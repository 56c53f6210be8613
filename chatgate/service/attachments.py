from __future__ import annotations

import base64
import binascii
import uuid
from dataclasses import dataclass
from typing import Iterable, List, Optional
from urllib.parse import urlparse

import httpx

from chatgate.config import ALLOWED_ATTACHMENT_MIME_TYPES, MAX_ATTACHMENT_BYTES, Settings
from chatgate.logging import get_logger
from chatgate.service.errors import AttachmentError

logger = get_logger(__name__)


@dataclass(frozen=True)
class RawAttachment:
    name: str
    mime_type: str
    size: int
    id: Optional[str] = None
    base64: Optional[str] = None
    url: Optional[str] = None


@dataclass(frozen=True)
class ProcessedAttachment:
    id: str
    name: str
    mime_type: str
    size_bytes: int
    inline_data: bytes

    def summary(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.mime_type,
            "size": self.size_bytes,
        }


def _strip_data_url(payload: str) -> str:
    if payload.startswith("data:") and "," in payload:
        return payload.split(",", 1)[1]
    return payload


class AttachmentProcessor:
    """Validates uploads and normalizes every payload into inline bytes.

    A batch is accepted whole or not at all: the first bad file raises
    ``AttachmentError`` naming it and nothing from the batch is returned.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        max_bytes: int = MAX_ATTACHMENT_BYTES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.max_bytes = max_bytes
        self._transport = transport

    async def process(self, raw_attachments: Iterable[RawAttachment]) -> List[ProcessedAttachment]:
        processed: List[ProcessedAttachment] = []
        for raw in raw_attachments:
            processed.append(await self._process_one(raw))
        if processed:
            logger.info(
                "attachments_processed",
                count=len(processed),
                total_bytes=sum(item.size_bytes for item in processed),
            )
        return processed

    async def _process_one(self, raw: RawAttachment) -> ProcessedAttachment:
        mime_type = (raw.mime_type or "").lower().split(";", 1)[0].strip()
        if raw.size > self.max_bytes:
            raise AttachmentError(
                f"file exceeds maximum size of {self.max_bytes} bytes",
                file_name=raw.name,
                detail={"size": raw.size, "maxSize": self.max_bytes},
            )
        if mime_type not in ALLOWED_ATTACHMENT_MIME_TYPES:
            raise AttachmentError(
                f"file type {mime_type or 'unknown'} is not supported",
                file_name=raw.name,
                detail={"type": mime_type},
            )
        if bool(raw.base64) == bool(raw.url):
            raise AttachmentError(
                "attachment must carry exactly one of base64 or url", file_name=raw.name
            )
        if raw.base64:
            data = self._decode_inline(raw)
        else:
            data = await self._fetch_remote(raw)
        return ProcessedAttachment(
            id=raw.id or str(uuid.uuid4()),
            name=raw.name,
            mime_type=mime_type,
            size_bytes=len(data),
            inline_data=data,
        )

    def _decode_inline(self, raw: RawAttachment) -> bytes:
        payload = _strip_data_url(raw.base64 or "").strip()
        # Reject before decoding when the encoded form alone is too large
        if len(payload) * 3 // 4 > self.max_bytes + 2:
            raise AttachmentError(
                f"file exceeds maximum size of {self.max_bytes} bytes", file_name=raw.name
            )
        try:
            data = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError):
            raise AttachmentError("attachment is not valid base64", file_name=raw.name)
        if len(data) > self.max_bytes:
            raise AttachmentError(
                f"file exceeds maximum size of {self.max_bytes} bytes", file_name=raw.name
            )
        return data

    async def _fetch_remote(self, raw: RawAttachment) -> bytes:
        url = raw.url or ""
        parsed = urlparse(url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise AttachmentError("attachment url must be http or https", file_name=raw.name)
        timeout = self.settings.attachment_fetch_timeout_seconds
        try:
            async with httpx.AsyncClient(
                timeout=timeout, follow_redirects=False, transport=self._transport
            ) as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    declared = response.headers.get("content-length")
                    if declared and declared.isdigit() and int(declared) > self.max_bytes:
                        raise AttachmentError(
                            f"file exceeds maximum size of {self.max_bytes} bytes",
                            file_name=raw.name,
                        )
                    chunks = bytearray()
                    async for chunk in response.aiter_bytes():
                        chunks.extend(chunk)
                        if len(chunks) > self.max_bytes:
                            raise AttachmentError(
                                f"file exceeds maximum size of {self.max_bytes} bytes",
                                file_name=raw.name,
                            )
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "attachment_fetch_http_error",
                file_name=raw.name,
                status_code=exc.response.status_code,
            )
            raise AttachmentError("attachment url could not be fetched", file_name=raw.name)
        except httpx.HTTPError as exc:
            logger.warning("attachment_fetch_failed", file_name=raw.name, error=str(exc))
            raise AttachmentError("attachment url could not be fetched", file_name=raw.name)
        return bytes(chunks)
