from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from chatgate.logging import get_logger
from chatgate.storage.errors import ConstraintViolation
from chatgate.storage.models import (
    ChatSession,
    GuestSession,
    Message,
    Session,
    UsageRecord,
    User,
    utcnow,
)


class MemoryStore:
    """In-memory backing store persisted as a JSON snapshot under ``fs_root``."""

    def __init__(self, fs_root: str = "/tmp/chatgate") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.chat_sessions: Dict[str, ChatSession] = {}
        self.messages: Dict[str, List[Message]] = {}
        self.guest_sessions: Dict[str, GuestSession] = {}
        self.usage: Dict[Tuple[str, str], UsageRecord] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    # users
    def create_user(
        self,
        email: str,
        handle: Optional[str] = None,
        *,
        role: str = "user",
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                handle=handle,
                role=role,
                is_active=is_active,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            self._persist_state()
            return user

    # auth sessions
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Optional[Dict] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id=user_id,
                ttl_minutes=ttl_minutes,
                user_agent=user_agent,
                ip_addr=ip_addr,
                meta=meta,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def revoke_session(self, session_id: str) -> None:
        with self._data_lock:
            self.sessions.pop(session_id, None)
            self._persist_state()

    # chat sessions
    def create_chat_session(
        self, owner_id: str, title: Optional[str] = None, meta: Optional[Dict] = None
    ) -> ChatSession:
        with self._data_lock:
            if owner_id not in self.users:
                raise ConstraintViolation(
                    "chat session owner missing", {"user_id": owner_id}
                )
            now = utcnow()
            chat = ChatSession(
                id=str(uuid.uuid4()),
                owner_id=owner_id,
                created_at=now,
                last_message_at=now,
                title=title,
                meta=meta or {},
            )
            self.chat_sessions[chat.id] = chat
            self.messages[chat.id] = []
            self._persist_state()
            return chat

    def get_chat_session(
        self, session_id: str, *, owner_id: Optional[str] = None
    ) -> Optional[ChatSession]:
        with self._data_lock:
            chat = self.chat_sessions.get(session_id)
            if not chat:
                return None
            if owner_id and chat.owner_id != owner_id:
                return None
            return chat

    def touch_chat_session(
        self, session_id: str, *, added_messages: int, meta: Optional[Dict] = None
    ) -> Optional[ChatSession]:
        with self._data_lock:
            chat = self.chat_sessions.get(session_id)
            if not chat:
                return None
            chat.message_count += added_messages
            chat.last_message_at = utcnow()
            if meta:
                chat.meta = {**(chat.meta or {}), **meta}
            self._persist_state()
            return chat

    # messages
    def append_message(
        self,
        session_id: str,
        role: str,
        content: str,
        *,
        attachments: Optional[List[dict]] = None,
        meta: Optional[Dict] = None,
    ) -> Message:
        with self._data_lock:
            if session_id not in self.chat_sessions:
                raise ConstraintViolation(
                    "chat session not found", {"session_id": session_id}
                )
            seq = len(self.messages.get(session_id, []))
            msg = Message(
                id=str(uuid.uuid4()),
                session_id=session_id,
                role=role,
                content=content,
                seq=seq,
                created_at=utcnow(),
                attachments=list(attachments or []),
                meta=meta,
            )
            self.messages.setdefault(session_id, []).append(msg)
            self._persist_state()
            return msg

    def list_messages(
        self,
        session_id: str,
        limit: Optional[int] = None,
        *,
        owner_id: Optional[str] = None,
    ) -> List[Message]:
        with self._data_lock:
            chat = self.get_chat_session(session_id, owner_id=owner_id)
            if not chat:
                return []
            msgs = self.messages.get(session_id, [])
            if limit is None:
                return list(msgs)
            return list(msgs[-limit:]) if limit > 0 else []

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._data_lock:
            return self._find_message(message_id)

    def _find_message(self, message_id: str) -> Optional[Message]:
        for msgs in self.messages.values():
            for msg in msgs:
                if msg.id == message_id:
                    return msg
        return None

    def claim_continuation(
        self, message_id: str, *, owner_id: str
    ) -> Optional[Message]:
        """Clear the incomplete flag if set; return the message when claimed."""

        with self._data_lock:
            msg = self._find_message(message_id)
            if not msg or msg.role != "assistant" or not msg.incomplete:
                return None
            chat = self.chat_sessions.get(msg.session_id)
            if not chat or chat.owner_id != owner_id:
                return None
            msg.meta = {**(msg.meta or {}), "incomplete": False}
            self._persist_state()
            return replace(msg)

    def restore_continuation(self, message_id: str) -> None:
        with self._data_lock:
            msg = self._find_message(message_id)
            if not msg:
                return
            msg.meta = {**(msg.meta or {}), "incomplete": True}
            self._persist_state()

    def extend_message(
        self, message_id: str, extra: str, *, meta: Optional[Dict] = None
    ) -> Optional[Message]:
        with self._data_lock:
            msg = self._find_message(message_id)
            if not msg:
                return None
            msg.content = msg.content + extra
            if meta:
                msg.meta = {**(msg.meta or {}), **meta}
            self._persist_state()
            return replace(msg)

    # guest sessions
    def create_guest_session(self, guest: GuestSession) -> GuestSession:
        with self._data_lock:
            if guest.session_token in self.guest_sessions:
                raise ConstraintViolation(
                    "guest token already exists", {"field": "session_token"}
                )
            self.guest_sessions[guest.session_token] = guest
            self._persist_state()
            return replace(guest)

    def get_guest_session(self, session_token: str) -> Optional[GuestSession]:
        with self._data_lock:
            guest = self.guest_sessions.get(session_token)
            return replace(guest) if guest else None

    def reserve_guest_message(self, session_token: str) -> Optional[Tuple[bool, int, int]]:
        """Reserve one message slot; returns ``(allowed, current, limit)``."""

        with self._data_lock:
            guest = self.guest_sessions.get(session_token)
            if not guest or guest.is_expired():
                return None
            current = guest.message_count + guest.reserved_count
            if current >= guest.max_messages:
                return (False, guest.message_count, guest.max_messages)
            guest.reserved_count += 1
            return (True, current + 1, guest.max_messages)

    def commit_guest_message(self, session_token: str) -> Optional[int]:
        with self._data_lock:
            guest = self.guest_sessions.get(session_token)
            if not guest:
                return None
            guest.reserved_count = max(0, guest.reserved_count - 1)
            guest.message_count += 1
            self._persist_state()
            return guest.message_count

    def release_guest_message(self, session_token: str) -> None:
        with self._data_lock:
            guest = self.guest_sessions.get(session_token)
            if guest:
                guest.reserved_count = max(0, guest.reserved_count - 1)

    def add_guest_messages(self, session_token: str, count: int) -> Optional[GuestSession]:
        """Raise the counter by ``count``; ``None`` if missing, expired or over the cap."""

        with self._data_lock:
            guest = self.guest_sessions.get(session_token)
            if not guest or guest.is_expired():
                return None
            if guest.message_count + guest.reserved_count + count > guest.max_messages:
                return None
            guest.message_count += count
            self._persist_state()
            return replace(guest)

    def purge_expired_guest_sessions(self, now: Optional[datetime] = None) -> int:
        with self._data_lock:
            cutoff = now or utcnow()
            stale = [
                token
                for token, guest in self.guest_sessions.items()
                if guest.expires_at <= cutoff
            ]
            for token in stale:
                self.guest_sessions.pop(token, None)
            if stale:
                self._persist_state()
            return len(stale)

    # usage
    def record_usage(
        self,
        user_id: str,
        day: date,
        *,
        messages: int = 0,
        files: int = 0,
        tokens: int = 0,
    ) -> UsageRecord:
        with self._data_lock:
            key = (user_id, day.isoformat())
            record = self.usage.get(key) or UsageRecord(user_id=user_id, day=day)
            record.messages_count += messages
            record.files_uploaded += files
            record.tokens_used += tokens
            self.usage[key] = record
            self._persist_state()
            return replace(record)

    def get_usage(self, user_id: str, day: date) -> UsageRecord:
        with self._data_lock:
            record = self.usage.get((user_id, day.isoformat()))
            return replace(record) if record else UsageRecord(user_id=user_id, day=day)

    # persistence
    def _persist_state(self) -> None:
        with self._data_lock:
            state = {
                "users": [self._serialize_user(u) for u in self.users.values()],
                "sessions": [
                    self._serialize_session(s) for s in self.sessions.values()
                ],
                "chat_sessions": [
                    self._serialize_chat_session(c) for c in self.chat_sessions.values()
                ],
                "messages": [
                    self._serialize_message(m)
                    for msgs in self.messages.values()
                    for m in msgs
                ],
                "guest_sessions": [
                    self._serialize_guest(g) for g in self.guest_sessions.values()
                ],
                "usage": [self._serialize_usage(u) for u in self.usage.values()],
            }
            path = self._state_path()
            try:
                path.write_text(json.dumps(state, indent=2))
            except OSError as exc:
                raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.chat_sessions = {
            c["id"]: self._deserialize_chat_session(c)
            for c in data.get("chat_sessions", [])
        }
        self.messages = {chat_id: [] for chat_id in self.chat_sessions}
        for msg_data in data.get("messages", []):
            msg = self._deserialize_message(msg_data)
            self.messages.setdefault(msg.session_id, []).append(msg)
        for session_messages in self.messages.values():
            session_messages.sort(key=lambda m: m.seq)
        self.guest_sessions = {
            g["session_token"]: self._deserialize_guest(g)
            for g in data.get("guest_sessions", [])
        }
        self.usage = {}
        for usage_data in data.get("usage", []):
            record = self._deserialize_usage(usage_data)
            self.usage[(record.user_id, record.day.isoformat())] = record
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "handle": user.handle,
            "role": user.role,
            "created_at": self._serialize_datetime(user.created_at),
            "is_active": user.is_active,
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            handle=data.get("handle"),
            role=data.get("role", "user"),
            created_at=self._deserialize_datetime(data["created_at"]),
            is_active=data.get("is_active", True),
            meta=data.get("meta"),
        )

    def _serialize_session(self, sess: Session) -> dict:
        return {
            "id": sess.id,
            "user_id": sess.user_id,
            "created_at": self._serialize_datetime(sess.created_at),
            "expires_at": self._serialize_datetime(sess.expires_at),
            "user_agent": sess.user_agent,
            "ip_addr": sess.ip_addr,
            "meta": sess.meta,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
            meta=data.get("meta"),
        )

    def _serialize_chat_session(self, chat: ChatSession) -> dict:
        return {
            "id": chat.id,
            "owner_id": chat.owner_id,
            "created_at": self._serialize_datetime(chat.created_at),
            "last_message_at": self._serialize_datetime(chat.last_message_at),
            "title": chat.title,
            "message_count": chat.message_count,
            "meta": chat.meta,
        }

    def _deserialize_chat_session(self, data: dict) -> ChatSession:
        return ChatSession(
            id=data["id"],
            owner_id=data["owner_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            last_message_at=self._deserialize_datetime(data["last_message_at"]),
            title=data.get("title"),
            message_count=data.get("message_count", 0),
            meta=data.get("meta"),
        )

    def _serialize_message(self, message: Message) -> dict:
        return {
            "id": message.id,
            "session_id": message.session_id,
            "role": message.role,
            "content": message.content,
            "seq": message.seq,
            "created_at": self._serialize_datetime(message.created_at),
            "attachments": message.attachments,
            "meta": message.meta,
        }

    def _deserialize_message(self, data: dict) -> Message:
        return Message(
            id=data["id"],
            session_id=data["session_id"],
            role=data["role"],
            content=data["content"],
            seq=data.get("seq", 0),
            created_at=self._deserialize_datetime(data["created_at"]),
            attachments=data.get("attachments") or [],
            meta=data.get("meta"),
        )

    def _serialize_guest(self, guest: GuestSession) -> dict:
        # Reservations are request-scoped and are not carried across restarts
        return {
            "id": guest.id,
            "session_token": guest.session_token,
            "created_at": self._serialize_datetime(guest.created_at),
            "expires_at": self._serialize_datetime(guest.expires_at),
            "message_count": guest.message_count,
            "max_messages": guest.max_messages,
            "ip_address": guest.ip_address,
            "user_agent": guest.user_agent,
        }

    def _deserialize_guest(self, data: dict) -> GuestSession:
        return GuestSession(
            id=data["id"],
            session_token=data["session_token"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            message_count=data.get("message_count", 0),
            max_messages=data.get("max_messages", 5),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
        )

    @staticmethod
    def _serialize_usage(record: UsageRecord) -> dict:
        return {
            "user_id": record.user_id,
            "day": record.day.isoformat(),
            "messages_count": record.messages_count,
            "files_uploaded": record.files_uploaded,
            "tokens_used": record.tokens_used,
        }

    @staticmethod
    def _deserialize_usage(data: dict) -> UsageRecord:
        return UsageRecord(
            user_id=data["user_id"],
            day=date.fromisoformat(data["day"]),
            messages_count=data.get("messages_count", 0),
            files_uploaded=data.get("files_uploaded", 0),
            tokens_used=data.get("tokens_used", 0),
        )

    def inspect_state(self) -> Dict[str, Any]:
        """Counts per collection, used by the health endpoint."""

        with self._data_lock:
            return {
                "users": len(self.users),
                "chat_sessions": len(self.chat_sessions),
                "messages": sum(len(m) for m in self.messages.values()),
                "guest_sessions": len(self.guest_sessions),
            }
