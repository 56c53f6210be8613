from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Protocol, Tuple, Union

from redis.exceptions import RedisError

from chatgate.config import Settings
from chatgate.logging import get_logger
from chatgate.service.errors import AuthenticationError
from chatgate.service.identity import Authenticated, Guest, Identity
from chatgate.storage.errors import StoreUnavailable

logger = get_logger(__name__)

MESSAGE_COUNTER = "message"
FILE_COUNTER = "file_upload"
# Daily keys outlive their period so late commits still land on the right day
COUNTER_TTL_SECONDS = 2 * 24 * 3600

_BACKEND_ERRORS = (RedisError, StoreUnavailable, ConnectionError, OSError)


class GuestCounterStore(Protocol):
    def reserve_guest_message(self, session_token: str) -> Optional[Tuple[bool, int, int]]: ...

    def commit_guest_message(self, session_token: str) -> Optional[int]: ...

    def release_guest_message(self, session_token: str) -> None: ...


@dataclass(frozen=True)
class Reservation:
    subject: str
    tier: str
    period: str
    limit: Optional[int]
    file_slot: bool = False
    degraded: bool = False

    @property
    def is_guest(self) -> bool:
        return self.tier == "guest"


@dataclass(frozen=True)
class Allowed:
    remaining: Optional[int]
    limit: Optional[int]
    reservation: Reservation
    degraded: bool = False


@dataclass(frozen=True)
class Denied:
    current: int
    limit: int
    reset_time: datetime
    counter: str = MESSAGE_COUNTER


QuotaDecision = Union[Allowed, Denied]


@dataclass(frozen=True)
class QuotaUsage:
    message_count: int
    remaining: Optional[int]
    limit: Optional[int]
    degraded: bool = False


class QuotaLedger:
    """Per-identity message and upload counters enforced against tier limits.

    Authenticated users count against daily Redis hashes (``used`` and
    ``reserved`` fields) updated by Lua scripts; without Redis an in-process
    counter guarded by an asyncio lock stands in. Guests count against their
    guest session row. Reservations hold a slot until ``commit`` turns it into
    usage or ``release`` returns it.
    """

    def __init__(self, settings: Settings, store: GuestCounterStore, cache=None) -> None:
        self.settings = settings
        self.store = store
        self.cache = cache
        self._local_counters: Dict[str, List[int]] = {}
        self._local_lock = asyncio.Lock()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _period(self) -> str:
        return self._now().strftime("%Y%m%d")

    def _next_rollover(self) -> datetime:
        now = self._now()
        return (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)

    def _key(self, counter: str, subject: str, period: str) -> str:
        return f"quota:{counter}:{subject}:{period}"

    async def check_and_reserve(
        self, identity: Identity, *, attachment_count: int = 0
    ) -> QuotaDecision:
        if isinstance(identity, Guest):
            decision = await self._reserve_guest(identity)
        else:
            decision = await self._reserve_authenticated(identity)
        if isinstance(decision, Denied) or attachment_count <= 0:
            return decision
        return await self._reserve_file_slot(identity, decision)

    async def _reserve_authenticated(self, identity: Authenticated) -> QuotaDecision:
        tier = identity.tier
        limit = self.settings.message_limit_for(tier)
        period = self._period()
        reservation = Reservation(
            subject=identity.user_id, tier=tier, period=period, limit=limit
        )
        key = self._key(MESSAGE_COUNTER, identity.user_id, period)
        try:
            allowed, used, reserved = await self._reserve_counter(key, limit)
        except _BACKEND_ERRORS as exc:
            logger.warning(
                "quota_reserve_degraded", user_id=identity.user_id, error=str(exc)
            )
            degraded = Reservation(
                subject=identity.user_id, tier=tier, period=period, limit=limit, degraded=True
            )
            return Allowed(remaining=limit, limit=limit, reservation=degraded, degraded=True)
        if not allowed:
            logger.info(
                "quota_denied", user_id=identity.user_id, tier=tier, used=used, limit=limit
            )
            return Denied(
                current=used + reserved, limit=limit or 0, reset_time=self._next_rollover()
            )
        remaining = None if limit is None else max(0, limit - used - reserved)
        return Allowed(remaining=remaining, limit=limit, reservation=reservation)

    async def _reserve_guest(self, identity: Guest) -> QuotaDecision:
        limit = self.settings.message_limit_for("guest")
        if identity.fallback:
            reservation = Reservation(
                subject=identity.session_token,
                tier="guest",
                period="session",
                limit=limit,
                degraded=True,
            )
            return Allowed(remaining=limit, limit=limit, reservation=reservation, degraded=True)
        try:
            result = self.store.reserve_guest_message(identity.session_token)
        except _BACKEND_ERRORS as exc:
            logger.warning("quota_guest_reserve_degraded", error=str(exc))
            reservation = Reservation(
                subject=identity.session_token,
                tier="guest",
                period="session",
                limit=limit,
                degraded=True,
            )
            return Allowed(remaining=limit, limit=limit, reservation=reservation, degraded=True)
        if result is None:
            # Session vanished or expired between resolution and reservation
            raise AuthenticationError("guest session expired")
        allowed, current, guest_limit = result
        if not allowed:
            logger.info("quota_denied", tier="guest", used=current, limit=guest_limit)
            return Denied(current=current, limit=guest_limit, reset_time=identity.expires_at)
        reservation = Reservation(
            subject=identity.session_token,
            tier="guest",
            period="session",
            limit=guest_limit,
        )
        return Allowed(
            remaining=max(0, guest_limit - current), limit=guest_limit, reservation=reservation
        )

    async def _reserve_file_slot(self, identity: Identity, decision: Allowed) -> QuotaDecision:
        reservation = decision.reservation
        file_limit = self.settings.file_limit_for(reservation.tier)
        key = self._key(FILE_COUNTER, reservation.subject, reservation.period)
        if reservation.degraded:
            return decision
        try:
            allowed, used, reserved = await self._reserve_counter(key, file_limit)
        except _BACKEND_ERRORS as exc:
            logger.warning("quota_file_reserve_degraded", error=str(exc))
            return decision
        if not allowed:
            await self.release(reservation)
            reset_time = (
                identity.expires_at if isinstance(identity, Guest) else self._next_rollover()
            )
            return Denied(
                current=used + reserved,
                limit=file_limit or 0,
                reset_time=reset_time,
                counter=FILE_COUNTER,
            )
        with_files = Reservation(
            subject=reservation.subject,
            tier=reservation.tier,
            period=reservation.period,
            limit=reservation.limit,
            file_slot=True,
        )
        return Allowed(
            remaining=decision.remaining,
            limit=decision.limit,
            reservation=with_files,
            degraded=decision.degraded,
        )

    async def commit(self, reservation: Reservation) -> QuotaUsage:
        """Turn a reservation into one used message (and one upload if held)."""

        if reservation.degraded:
            return QuotaUsage(
                message_count=0,
                remaining=reservation.limit,
                limit=reservation.limit,
                degraded=True,
            )
        try:
            if reservation.is_guest:
                used = self.store.commit_guest_message(reservation.subject)
                used = used if used is not None else 0
            else:
                used = await self._commit_counter(
                    self._key(MESSAGE_COUNTER, reservation.subject, reservation.period)
                )
            if reservation.file_slot:
                await self._commit_counter(
                    self._key(FILE_COUNTER, reservation.subject, reservation.period)
                )
        except _BACKEND_ERRORS as exc:
            logger.warning("quota_commit_degraded", tier=reservation.tier, error=str(exc))
            return QuotaUsage(
                message_count=0,
                remaining=reservation.limit,
                limit=reservation.limit,
                degraded=True,
            )
        remaining = None if reservation.limit is None else max(0, reservation.limit - used)
        return QuotaUsage(message_count=used, remaining=remaining, limit=reservation.limit)

    async def release(self, reservation: Reservation) -> None:
        if reservation.degraded:
            return
        try:
            if reservation.is_guest:
                self.store.release_guest_message(reservation.subject)
            else:
                await self._release_counter(
                    self._key(MESSAGE_COUNTER, reservation.subject, reservation.period)
                )
            if reservation.file_slot:
                await self._release_counter(
                    self._key(FILE_COUNTER, reservation.subject, reservation.period)
                )
        except _BACKEND_ERRORS as exc:
            logger.warning("quota_release_failed", tier=reservation.tier, error=str(exc))

    async def usage_for(self, identity: Authenticated) -> dict:
        """Today's counters for an authenticated identity."""

        period = self._period()
        tier = identity.tier
        messages, _ = await self._read_counter(
            self._key(MESSAGE_COUNTER, identity.user_id, period)
        )
        files, _ = await self._read_counter(
            self._key(FILE_COUNTER, identity.user_id, period)
        )
        message_limit = self.settings.message_limit_for(tier)
        file_limit = self.settings.file_limit_for(tier)
        return {
            "tier": tier,
            "messageCount": messages,
            "messageLimit": message_limit,
            "remainingQuota": None if message_limit is None else max(0, message_limit - messages),
            "fileUploads": files,
            "fileUploadLimit": file_limit,
            "resetTime": self._next_rollover().isoformat(),
        }

    def _prune_local_counters(self) -> None:
        """Drop in-process daily counters older than yesterday; caller holds the lock."""

        now = self._now()
        # Yesterday stays so a reservation made before midnight can still settle
        live = {now.strftime("%Y%m%d"), (now - timedelta(days=1)).strftime("%Y%m%d")}
        for key in list(self._local_counters):
            day = key.rsplit(":", 1)[-1]
            if day.isdigit() and day not in live:
                del self._local_counters[key]

    async def _reserve_counter(self, key: str, limit: Optional[int]) -> Tuple[bool, int, int]:
        if self.cache:
            return await self.cache.reserve_quota(key, limit, COUNTER_TTL_SECONDS)
        async with self._local_lock:
            self._prune_local_counters()
            counter = self._local_counters.setdefault(key, [0, 0])
            used, reserved = counter
            if limit is not None and used + reserved >= limit:
                return (False, used, reserved)
            counter[1] += 1
            return (True, used, counter[1])

    async def _commit_counter(self, key: str) -> int:
        if self.cache:
            return await self.cache.commit_quota(key, COUNTER_TTL_SECONDS)
        async with self._local_lock:
            counter = self._local_counters.setdefault(key, [0, 0])
            counter[1] = max(0, counter[1] - 1)
            counter[0] += 1
            return counter[0]

    async def _release_counter(self, key: str) -> None:
        if self.cache:
            await self.cache.release_quota(key)
            return
        async with self._local_lock:
            counter = self._local_counters.get(key)
            if counter:
                counter[1] = max(0, counter[1] - 1)

    async def _read_counter(self, key: str) -> Tuple[int, int]:
        if self.cache:
            return await self.cache.get_quota_usage(key)
        async with self._local_lock:
            used, reserved = self._local_counters.get(key, [0, 0])
            return (used, reserved)
