from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Sequence

from chatgate.logging import get_logger
from chatgate.service.attachments import ProcessedAttachment
from chatgate.service.errors import ValidationError
from chatgate.storage.models import UsageRecord

logger = get_logger(__name__)

TITLE_LENGTH = 50


@dataclass(frozen=True)
class TurnRecord:
    session_id: str
    user_message_id: str
    assistant_message_id: str


def session_title(message: str) -> str:
    title = message[:TITLE_LENGTH]
    return f"{title}..." if len(message) > TITLE_LENGTH else title


class PersistenceTracker:
    """Writes authenticated turns to the chat store and tallies daily usage."""

    def __init__(self, store) -> None:
        self.store = store

    def persist_turn(
        self,
        session_id: Optional[str],
        owner_id: str,
        user_message: str,
        assistant_message: str,
        attachments: Sequence[ProcessedAttachment] = (),
        metadata: Optional[dict] = None,
    ) -> TurnRecord:
        metadata = metadata or {}
        if session_id:
            chat = self.store.get_chat_session(session_id, owner_id=owner_id)
            if not chat:
                raise ValidationError(
                    "unknown session",
                    detail=[{"field": "sessionId", "message": "unknown session", "code": "not_found"}],
                )
        else:
            chat = self.store.create_chat_session(owner_id, title=session_title(user_message))
            logger.info("chat_session_created", session_id=chat.id, owner_id=owner_id)

        user_msg = self.store.append_message(
            chat.id,
            "user",
            user_message,
            attachments=[item.summary() for item in attachments],
        )
        assistant_msg = self.store.append_message(
            chat.id, "assistant", assistant_message, meta=metadata
        )
        self.store.touch_chat_session(
            chat.id,
            added_messages=2,
            meta={
                "last_model": metadata.get("model"),
                "has_attachments": bool(attachments),
                "last_activity": datetime.now(timezone.utc).isoformat(),
            },
        )
        return TurnRecord(
            session_id=chat.id,
            user_message_id=user_msg.id,
            assistant_message_id=assistant_msg.id,
        )

    def record_usage(
        self, user_id: str, *, attachment_count: int = 0, tokens_used: int = 0
    ) -> UsageRecord:
        """Add one message, the upload and the token estimate to today's record."""

        day = datetime.now(timezone.utc).date()
        record = self.store.record_usage(
            user_id,
            day,
            messages=1,
            files=1 if attachment_count else 0,
            tokens=tokens_used,
        )
        logger.info(
            "usage_recorded",
            user_id=user_id,
            day=day.isoformat(),
            messages=record.messages_count,
            tokens=record.tokens_used,
        )
        return record
