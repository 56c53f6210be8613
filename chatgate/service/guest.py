from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from chatgate.config import Settings
from chatgate.logging import get_logger
from chatgate.service.errors import NotFoundError, QuotaExceededError
from chatgate.storage.errors import StoreUnavailable
from chatgate.storage.models import GuestSession, utcnow

logger = get_logger(__name__)

GUEST_COOKIE_NAME = "guest-token"


def build_fallback_guest_session(
    settings: Settings,
    *,
    session_token: Optional[str] = None,
    message_count: int = 0,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> GuestSession:
    """The only constructor for sessions handed out while the store is unavailable."""

    now = utcnow()
    return GuestSession(
        id=f"fallback-{int(time.time() * 1000)}",
        session_token=session_token or GuestSession.generate_token(),
        created_at=now,
        expires_at=now + timedelta(hours=settings.guest_session_ttl_hours),
        message_count=message_count,
        max_messages=settings.quota_guest_messages,
        ip_address=ip_address,
        user_agent=user_agent,
    )


@dataclass(frozen=True)
class GuestOutcome:
    session: GuestSession
    fallback: bool = False
    is_valid: bool = True

    @property
    def remaining_messages(self) -> int:
        return max(0, self.session.max_messages - self.session.message_count)

    def session_dict(self) -> dict:
        guest = self.session
        payload = {
            "id": guest.id,
            "sessionToken": guest.session_token,
            "messageCount": guest.message_count,
            "maxMessages": guest.max_messages,
            "expiresAt": guest.expires_at.isoformat(),
        }
        if guest.ip_address:
            payload["ipAddress"] = guest.ip_address
        if guest.user_agent:
            payload["userAgent"] = guest.user_agent
        return payload


class GuestSessionService:
    """Create, verify and update guest sessions.

    Infrastructure failures never reach the caller: every operation degrades to
    a fallback session instead.
    """

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def create(
        self, *, ip_address: Optional[str] = None, user_agent: Optional[str] = None
    ) -> GuestOutcome:
        guest = GuestSession.new(
            max_messages=self.settings.quota_guest_messages,
            ttl_hours=self.settings.guest_session_ttl_hours,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            created = self.store.create_guest_session(guest)
        except StoreUnavailable as exc:
            logger.warning("guest_create_degraded", error=str(exc))
            return self._fallback(guest.session_token, ip_address=ip_address, user_agent=user_agent)
        except Exception as exc:
            logger.error("guest_create_failed", error=str(exc), exc_info=True)
            return self._fallback(guest.session_token, ip_address=ip_address, user_agent=user_agent)
        logger.info("guest_session_created", guest_id=created.id)
        return GuestOutcome(session=created)

    def verify(self, token: str) -> GuestOutcome:
        try:
            guest = self.store.get_guest_session(token)
        except StoreUnavailable as exc:
            logger.warning("guest_verify_degraded", error=str(exc))
            return self._fallback(token)
        except Exception as exc:
            logger.error("guest_verify_failed", error=str(exc), exc_info=True)
            return self._fallback(token)
        if not guest:
            raise NotFoundError("invalid or expired guest session")
        return GuestOutcome(session=guest, is_valid=not guest.is_expired(utcnow()))

    def update(self, token: str, message_count: Optional[int] = None) -> GuestOutcome:
        """Add ``message_count`` messages to the stored counter; ``None`` reads it back."""

        try:
            current = self.store.get_guest_session(token)
            if not current or current.is_expired(utcnow()):
                raise NotFoundError("invalid or expired guest session")
            if message_count is None:
                return GuestOutcome(session=current)
            if current.message_count + message_count > current.max_messages:
                raise self._limit_exceeded(current)
            updated = self.store.add_guest_messages(token, message_count)
            if not updated:
                # Lost a race with a concurrent reservation or the expiry clock
                latest = self.store.get_guest_session(token)
                if latest and not latest.is_expired(utcnow()):
                    raise self._limit_exceeded(latest)
                raise NotFoundError("invalid or expired guest session")
        except StoreUnavailable as exc:
            logger.warning("guest_update_degraded", error=str(exc))
            return self._fallback(token, message_count=message_count or 1)
        return GuestOutcome(session=updated)

    @staticmethod
    def _limit_exceeded(guest: GuestSession) -> QuotaExceededError:
        return QuotaExceededError(
            "guest message limit exceeded",
            detail={
                "current": guest.message_count,
                "limit": guest.max_messages,
                "resetTime": guest.expires_at.isoformat(),
            },
        )

    def purge_expired(self) -> int:
        removed = self.store.purge_expired_guest_sessions(utcnow())
        if removed:
            logger.info("guest_sessions_purged", count=removed)
        return removed

    def _fallback(self, token: Optional[str], **kwargs) -> GuestOutcome:
        return GuestOutcome(
            session=build_fallback_guest_session(self.settings, session_token=token, **kwargs),
            fallback=True,
        )
