from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol, Union

from chatgate.config import Settings
from chatgate.logging import get_logger
from chatgate.service.guest import build_fallback_guest_session
from chatgate.storage.errors import StoreUnavailable
from chatgate.storage.models import GuestSession, Session, User

logger = get_logger(__name__)


class IdentityStore(Protocol):
    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_guest_session(self, session_token: str) -> Optional[GuestSession]: ...


@dataclass(frozen=True)
class Authenticated:
    user_id: str
    role: str
    is_active: bool = True
    session_id: Optional[str] = None

    @property
    def tier(self) -> str:
        return "admin" if self.role == "admin" else "user"


@dataclass(frozen=True)
class Guest:
    session_token: str
    expires_at: datetime
    fallback: bool = False

    tier = "guest"


Identity = Union[Authenticated, Guest]


class IdentityResolver:
    """Turns request credentials into an authenticated user, a guest, or ``None``.

    Verification failures never raise: a bad token only removes privileges.
    """

    def __init__(self, store: IdentityStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def resolve(
        self,
        authorization: Optional[str],
        session_cookie: Optional[str] = None,
        guest_token: Optional[str] = None,
    ) -> Optional[Identity]:
        token = self._extract_bearer(authorization)
        if token:
            identity = self._authenticate_access_token(token)
            if identity:
                return identity
        if session_cookie:
            identity = self._authenticate_session(session_cookie)
            if identity:
                return identity
        if guest_token:
            return self._resolve_guest(guest_token)
        return None

    def _authenticate_access_token(self, token: str) -> Optional[Authenticated]:
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            return None
        session_id = payload.get("sid")
        if not session_id:
            return None
        identity = self._authenticate_session(session_id)
        if not identity or identity.user_id != payload.get("sub"):
            return None
        if payload.get("role") != identity.role:
            return None
        return identity

    def _authenticate_session(self, session_id: str) -> Optional[Authenticated]:
        try:
            sess = self.store.get_session(session_id)
            if not sess:
                return None
            if sess.expires_at <= self._now() - self._clock_skew_leeway:
                return None
            user = self.store.get_user(sess.user_id)
        except StoreUnavailable as exc:
            logger.warning("identity_session_lookup_failed", error=str(exc))
            return None
        if not user:
            return None
        if not user.is_active:
            logger.info("identity_inactive_user", user_id=user.id)
            return None
        return Authenticated(
            user_id=user.id,
            role=user.role if user.role in {"user", "admin"} else "user",
            is_active=user.is_active,
            session_id=sess.id,
        )

    def _resolve_guest(self, guest_token: str) -> Optional[Guest]:
        try:
            guest = self.store.get_guest_session(guest_token)
        except StoreUnavailable as exc:
            # Guest infrastructure failures degrade to a fallback session
            logger.warning("identity_guest_lookup_degraded", error=str(exc))
            fallback = build_fallback_guest_session(self.settings, session_token=guest_token)
            return Guest(
                session_token=fallback.session_token,
                expires_at=fallback.expires_at,
                fallback=True,
            )
        if not guest or guest.is_expired(self._now()):
            return None
        return Guest(session_token=guest.session_token, expires_at=guest.expires_at)

    def issue_access_token(self, user: User, session: Session) -> str:
        """Mint an access token bound to ``session`` for operator tooling."""

        exp = int(
            (self._now() + timedelta(minutes=self.settings.access_token_ttl_minutes)).timestamp()
        )
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "sid": session.id,
            "role": user.role,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "exp": exp,
        }
        return self._encode_jwt(payload)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Only HS256 is accepted to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except (ValueError, TypeError, AttributeError):
            logger.warning("jwt_header_decode_failed")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            return None
        exp = payload.get("exp")
        if not exp:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
