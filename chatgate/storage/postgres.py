from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from chatgate.logging import get_logger
from chatgate.storage.errors import ConstraintViolation, StoreUnavailable
from chatgate.storage.models import (
    ChatSession,
    GuestSession,
    Message,
    Session,
    UsageRecord,
    User,
    utcnow,
)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        handle TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        user_agent TEXT,
        ip_addr TEXT,
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_session (
        id UUID PRIMARY KEY,
        owner_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        title TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        last_message_at TIMESTAMPTZ NOT NULL,
        message_count INTEGER NOT NULL DEFAULT 0,
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message (
        id UUID PRIMARY KEY,
        session_id UUID NOT NULL REFERENCES chat_session(id) ON DELETE CASCADE,
        role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
        content TEXT NOT NULL,
        seq INTEGER NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        attachments JSONB NOT NULL DEFAULT '[]'::jsonb,
        meta JSONB,
        UNIQUE (session_id, seq)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS guest_session (
        id UUID PRIMARY KEY,
        session_token TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        message_count INTEGER NOT NULL DEFAULT 0,
        reserved_count INTEGER NOT NULL DEFAULT 0,
        max_messages INTEGER NOT NULL DEFAULT 5,
        ip_address TEXT,
        user_agent TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS usage_tracking (
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        day DATE NOT NULL,
        messages_count INTEGER NOT NULL DEFAULT 0,
        files_uploaded INTEGER NOT NULL DEFAULT 0,
        tokens_used INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (user_id, day)
    )
    """,
    "CREATE INDEX IF NOT EXISTS message_session_seq_idx ON message (session_id, seq)",
    "CREATE INDEX IF NOT EXISTS guest_session_expires_idx ON guest_session (expires_at)",
]


class PostgresStore:
    """Postgres-backed store for users, chat history, guest sessions and usage."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.warning("postgres_unavailable", error=str(exc))
            raise StoreUnavailable(str(exc)) from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

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
        user_id = str(uuid.uuid4())
        now = utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO app_user (id, email, handle, role, is_active, created_at, meta) VALUES (%s, %s, %s, %s, %s, %s, %s)",
                    (user_id, email, handle, role, is_active, now, json.dumps(meta or {})),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return User(
            id=user_id,
            email=email,
            handle=handle,
            role=role,
            created_at=now,
            is_active=is_active,
            meta=meta or {},
        )

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

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
        sess = Session.new(
            user_id=user_id,
            ttl_minutes=ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
            meta=meta,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO auth_session (id, user_id, created_at, expires_at, user_agent, ip_addr, meta) VALUES (%s, %s, %s, %s, %s, %s, %s)",
                    (
                        sess.id,
                        user_id,
                        sess.created_at,
                        sess.expires_at,
                        user_agent,
                        ip_addr,
                        json.dumps(meta) if meta else None,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        if not _is_uuid(session_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        if not row:
            return None
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
            meta=row.get("meta"),
        )

    def revoke_session(self, session_id: str) -> None:
        if not _is_uuid(session_id):
            return
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))

    # chat sessions
    def create_chat_session(
        self, owner_id: str, title: Optional[str] = None, meta: Optional[Dict] = None
    ) -> ChatSession:
        now = utcnow()
        chat = ChatSession(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            created_at=now,
            last_message_at=now,
            title=title,
            meta=meta or {},
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO chat_session (id, owner_id, title, created_at, last_message_at, message_count, meta) VALUES (%s, %s, %s, %s, %s, 0, %s)",
                    (chat.id, owner_id, title, now, now, json.dumps(chat.meta)),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "chat session owner missing", {"user_id": owner_id}
            )
        return chat

    def get_chat_session(
        self, session_id: str, *, owner_id: Optional[str] = None
    ) -> Optional[ChatSession]:
        if not _is_uuid(session_id):
            return None
        query = "SELECT * FROM chat_session WHERE id = %s"
        params: list[Any] = [session_id]
        if owner_id:
            query += " AND owner_id = %s"
            params.append(owner_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._chat_from_row(row) if row else None

    def touch_chat_session(
        self, session_id: str, *, added_messages: int, meta: Optional[Dict] = None
    ) -> Optional[ChatSession]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE chat_session
                SET message_count = message_count + %s,
                    last_message_at = %s,
                    meta = COALESCE(meta, '{}'::jsonb) || %s::jsonb
                WHERE id = %s
                RETURNING *
                """,
                (added_messages, utcnow(), json.dumps(meta or {}), session_id),
            ).fetchone()
        return self._chat_from_row(row) if row else None

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
        msg_id = str(uuid.uuid4())
        now = utcnow()
        try:
            with self._connect() as conn:
                with conn.transaction():
                    locked = conn.execute(
                        "SELECT 1 FROM chat_session WHERE id = %s FOR UPDATE",
                        (session_id,),
                    ).fetchone()
                    if not locked:
                        raise ConstraintViolation(
                            "chat session not found", {"session_id": session_id}
                        )
                    seq_row = conn.execute(
                        "SELECT COUNT(*) AS c FROM message WHERE session_id = %s",
                        (session_id,),
                    ).fetchone()
                    seq = seq_row["c"] if seq_row else 0
                    conn.execute(
                        "INSERT INTO message (id, session_id, role, content, seq, created_at, attachments, meta) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)",
                        (
                            msg_id,
                            session_id,
                            role,
                            content,
                            seq,
                            now,
                            json.dumps(attachments or []),
                            json.dumps(meta) if meta else None,
                        ),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "chat session not found", {"session_id": session_id}
            )
        return Message(
            id=msg_id,
            session_id=session_id,
            role=role,
            content=content,
            seq=seq,
            created_at=now,
            attachments=list(attachments or []),
            meta=meta,
        )

    def list_messages(
        self,
        session_id: str,
        limit: Optional[int] = None,
        *,
        owner_id: Optional[str] = None,
    ) -> List[Message]:
        if not _is_uuid(session_id):
            return []
        params: list[Any] = []
        query = "SELECT m.* FROM message m"
        if owner_id:
            query += " JOIN chat_session c ON c.id = m.session_id AND c.owner_id = %s"
            params.append(owner_id)
        query += " WHERE m.session_id = %s ORDER BY m.seq DESC"
        params.append(session_id)
        if limit is not None:
            query += " LIMIT %s"
            params.append(max(0, limit))
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        # Newest rows were selected first so the limit keeps the tail
        return [self._message_from_row(row) for row in reversed(rows)]

    def get_message(self, message_id: str) -> Optional[Message]:
        if not _is_uuid(message_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM message WHERE id = %s", (message_id,)
            ).fetchone()
        return self._message_from_row(row) if row else None

    def claim_continuation(self, message_id: str, *, owner_id: str) -> Optional[Message]:
        """Clear the incomplete flag if set; return the message when claimed."""

        if not _is_uuid(message_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE message m
                SET meta = jsonb_set(COALESCE(m.meta, '{}'::jsonb), '{incomplete}', 'false'::jsonb)
                FROM chat_session c
                WHERE m.id = %s
                  AND m.role = 'assistant'
                  AND c.id = m.session_id
                  AND c.owner_id = %s
                  AND COALESCE((m.meta->>'incomplete')::boolean, FALSE)
                RETURNING m.*
                """,
                (message_id, owner_id),
            ).fetchone()
        return self._message_from_row(row) if row else None

    def restore_continuation(self, message_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE message
                SET meta = jsonb_set(COALESCE(meta, '{}'::jsonb), '{incomplete}', 'true'::jsonb)
                WHERE id = %s
                """,
                (message_id,),
            )

    def extend_message(
        self, message_id: str, extra: str, *, meta: Optional[Dict] = None
    ) -> Optional[Message]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE message
                SET content = content || %s,
                    meta = COALESCE(meta, '{}'::jsonb) || %s::jsonb
                WHERE id = %s
                RETURNING *
                """,
                (extra, json.dumps(meta or {}), message_id),
            ).fetchone()
        return self._message_from_row(row) if row else None

    # guest sessions
    def create_guest_session(self, guest: GuestSession) -> GuestSession:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO guest_session (id, session_token, created_at, expires_at, message_count, reserved_count, max_messages, ip_address, user_agent) VALUES (%s, %s, %s, %s, %s, 0, %s, %s, %s)",
                    (
                        guest.id,
                        guest.session_token,
                        guest.created_at,
                        guest.expires_at,
                        guest.message_count,
                        guest.max_messages,
                        guest.ip_address,
                        guest.user_agent,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "guest token already exists", {"field": "session_token"}
            )
        return guest

    def get_guest_session(self, session_token: str) -> Optional[GuestSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM guest_session WHERE session_token = %s", (session_token,)
            ).fetchone()
        return self._guest_from_row(row) if row else None

    def reserve_guest_message(self, session_token: str) -> Optional[Tuple[bool, int, int]]:
        """Reserve one message slot; returns ``(allowed, current, limit)``."""

        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE guest_session
                SET reserved_count = reserved_count + 1
                WHERE session_token = %s
                  AND expires_at > now()
                  AND message_count + reserved_count < max_messages
                RETURNING message_count, reserved_count, max_messages
                """,
                (session_token,),
            ).fetchone()
            if row:
                return (True, row["message_count"] + row["reserved_count"], row["max_messages"])
            current = conn.execute(
                "SELECT message_count, max_messages FROM guest_session WHERE session_token = %s AND expires_at > now()",
                (session_token,),
            ).fetchone()
        if not current:
            return None
        return (False, current["message_count"], current["max_messages"])

    def commit_guest_message(self, session_token: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE guest_session
                SET message_count = message_count + 1,
                    reserved_count = GREATEST(reserved_count - 1, 0)
                WHERE session_token = %s
                RETURNING message_count
                """,
                (session_token,),
            ).fetchone()
        return row["message_count"] if row else None

    def release_guest_message(self, session_token: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE guest_session SET reserved_count = GREATEST(reserved_count - 1, 0) WHERE session_token = %s",
                (session_token,),
            )

    def add_guest_messages(self, session_token: str, count: int) -> Optional[GuestSession]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE guest_session
                SET message_count = message_count + %s
                WHERE session_token = %s
                  AND expires_at > now()
                  AND message_count + reserved_count + %s <= max_messages
                RETURNING *
                """,
                (count, session_token, count),
            ).fetchone()
        return self._guest_from_row(row) if row else None

    def purge_expired_guest_sessions(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM guest_session WHERE expires_at <= %s", (now or utcnow(),)
            )
            return cur.rowcount or 0

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
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO usage_tracking (user_id, day, messages_count, files_uploaded, tokens_used)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (user_id, day) DO UPDATE SET
                    messages_count = usage_tracking.messages_count + EXCLUDED.messages_count,
                    files_uploaded = usage_tracking.files_uploaded + EXCLUDED.files_uploaded,
                    tokens_used = usage_tracking.tokens_used + EXCLUDED.tokens_used
                RETURNING *
                """,
                (user_id, day, messages, files, tokens),
            ).fetchone()
        return self._usage_from_row(row)

    def get_usage(self, user_id: str, day: date) -> UsageRecord:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM usage_tracking WHERE user_id = %s AND day = %s",
                (user_id, day),
            ).fetchone()
        return self._usage_from_row(row) if row else UsageRecord(user_id=user_id, day=day)

    # row mapping
    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            handle=row.get("handle"),
            role=row.get("role", "user"),
            created_at=row["created_at"],
            is_active=row.get("is_active", True),
            meta=row.get("meta"),
        )

    @staticmethod
    def _chat_from_row(row: dict) -> ChatSession:
        return ChatSession(
            id=str(row["id"]),
            owner_id=str(row["owner_id"]),
            created_at=row["created_at"],
            last_message_at=row["last_message_at"],
            title=row.get("title"),
            message_count=row.get("message_count", 0),
            meta=row.get("meta"),
        )

    @staticmethod
    def _message_from_row(row: dict) -> Message:
        return Message(
            id=str(row["id"]),
            session_id=str(row["session_id"]),
            role=row["role"],
            content=row["content"],
            seq=row["seq"],
            created_at=row["created_at"],
            attachments=row.get("attachments") or [],
            meta=row.get("meta"),
        )

    @staticmethod
    def _guest_from_row(row: dict) -> GuestSession:
        return GuestSession(
            id=str(row["id"]),
            session_token=row["session_token"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            message_count=row["message_count"],
            max_messages=row["max_messages"],
            reserved_count=row.get("reserved_count", 0),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
        )

    @staticmethod
    def _usage_from_row(row: dict) -> UsageRecord:
        return UsageRecord(
            user_id=str(row["user_id"]),
            day=row["day"],
            messages_count=row["messages_count"],
            files_uploaded=row["files_uploaded"],
            tokens_used=row["tokens_used"],
        )


def _is_uuid(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True
