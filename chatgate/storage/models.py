from __future__ import annotations

import secrets
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    handle: Optional[str] = None
    role: str = "user"
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True
    meta: Dict | None = None


@dataclass
class Session:
    """Authenticated login session referenced by access tokens and cookies."""

    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Dict | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_addr=ip_addr,
            meta=meta,
        )


@dataclass
class ChatSession:
    id: str
    owner_id: str
    created_at: datetime
    last_message_at: datetime
    title: Optional[str] = None
    message_count: int = 0
    meta: Dict | None = None


@dataclass
class Message:
    id: str
    session_id: str
    role: str
    content: str
    seq: int
    created_at: datetime
    attachments: List[dict] = field(default_factory=list)
    meta: Dict | None = None

    @property
    def incomplete(self) -> bool:
        return bool((self.meta or {}).get("incomplete"))


@dataclass
class GuestSession:
    """Ephemeral unauthenticated session carrying the guest message counter."""

    id: str
    session_token: str
    created_at: datetime
    expires_at: datetime
    message_count: int = 0
    max_messages: int = 5
    reserved_count: int = 0
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @staticmethod
    def generate_token() -> str:
        return f"guest_{int(time.time() * 1000)}_{secrets.token_urlsafe(12)}"

    @classmethod
    def new(
        cls,
        *,
        max_messages: int = 5,
        ttl_hours: int = 24,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "GuestSession":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            session_token=cls.generate_token(),
            created_at=now,
            expires_at=now + timedelta(hours=ttl_hours),
            max_messages=max_messages,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    @property
    def remaining_messages(self) -> int:
        return max(0, self.max_messages - self.message_count)


@dataclass
class UsageRecord:
    user_id: str
    day: date
    messages_count: int = 0
    files_uploaded: int = 0
    tokens_used: int = 0
