"""
Postgres persistence for rooms, chat sessions, messages and summaries.

Every method is a single statement, so it is atomic on its own row. The
lifecycle manager gets its cross-row consistency from ordering and from
partial unique indexes:

- chat_sessions_one_active_per_room  (room_id) WHERE status = 'active'
- summaries_one_processing_per_session  (session_id) WHERE status = 'processing'
- messages_line_message_id_unique  (line_message_id) WHERE line_message_id IS NOT NULL

Violations of those surface as SessionConflictError, SummaryInFlightError and
DuplicateMessageError.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import logging

import asyncpg

from .db import Database
from .errors import DuplicateMessageError, SessionConflictError, SummaryInFlightError
from .models import (
    ChatSession,
    Message,
    Room,
    SessionStatus,
    Summary,
)

logger = logging.getLogger(__name__)

ACTIVE_SESSION_CONSTRAINT = "chat_sessions_one_active_per_room"
PROCESSING_SUMMARY_CONSTRAINT = "summaries_one_processing_per_session"
LINE_MESSAGE_ID_CONSTRAINT = "messages_line_message_id_unique"

_SESSION_PATCH_COLUMNS = {
    "status",
    "end_time",
    "close_reason",
    "summary_id",
}
_SUMMARY_PATCH_COLUMNS = {
    "status",
    "content",
    "key_topics",
    "sentiment",
    "urgency",
    "category",
    "action_items",
    "error_message",
    "model",
    "tokens_used",
    "processing_time_ms",
}
_ROOM_COUNTERS = {"total_messages", "total_sessions"}


def _db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _build_set_clause(patch: Dict[str, Any], allowed: set, start: int) -> tuple:
    unknown = set(patch) - allowed
    if unknown:
        raise ValueError(f"Unsupported patch fields: {sorted(unknown)}")
    assignments = []
    args = []
    for offset, (column, value) in enumerate(sorted(patch.items())):
        assignments.append(f"{column} = ${start + offset}")
        args.append(_db_value(value))
    assignments.append("updated_at = NOW()")
    return ", ".join(assignments), args


class SessionStore:
    def __init__(self, db: Database):
        self.db = db

    # Rooms
    async def get_room(self, room_id: str) -> Optional[Room]:
        row = await self.db.fetchone("SELECT * FROM rooms WHERE room_id = $1", room_id)
        return Room(**row) if row else None

    async def upsert_room(
        self,
        room_id: str,
        owner_id: str,
        name: Optional[str],
        room_type: Any
    ) -> Room:
        row = await self.db.fetchone(
            """
            INSERT INTO rooms (room_id, owner_id, name, room_type)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (room_id) DO UPDATE SET
                name = COALESCE(EXCLUDED.name, rooms.name),
                room_type = EXCLUDED.room_type,
                updated_at = NOW()
            RETURNING *
            """,
            room_id,
            owner_id,
            name,
            _db_value(room_type)
        )
        return Room(**row)

    async def increment_room_stat(self, room_id: str, field: str, amount: int = 1) -> None:
        if field not in _ROOM_COUNTERS:
            raise ValueError(f"Unknown room counter: {field}")
        await self.db.execute(
            f"""
            UPDATE rooms
            SET {field} = {field} + $2, updated_at = NOW()
            WHERE room_id = $1
            """,
            room_id,
            amount
        )

    # Sessions
    async def get_session(self, session_id: str) -> Optional[ChatSession]:
        row = await self.db.fetchone(
            "SELECT * FROM chat_sessions WHERE session_id = $1",
            session_id
        )
        return ChatSession(**row) if row else None

    async def find_active_session(self, room_id: str) -> Optional[ChatSession]:
        row = await self.db.fetchone(
            """
            SELECT * FROM chat_sessions
            WHERE room_id = $1 AND status = 'active'
            """,
            room_id
        )
        return ChatSession(**row) if row else None

    async def create_session(self, session: ChatSession) -> ChatSession:
        try:
            row = await self.db.fetchone(
                """
                INSERT INTO chat_sessions (
                    session_id, room_id, owner_id, room_name, room_type, status, start_time
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                RETURNING *
                """,
                session.session_id,
                session.room_id,
                session.owner_id,
                session.room_name,
                _db_value(session.room_type),
                _db_value(session.status),
                session.start_time
            )
        except asyncpg.UniqueViolationError as e:
            if getattr(e, "constraint_name", None) == ACTIVE_SESSION_CONSTRAINT:
                raise SessionConflictError(
                    f"Room {session.room_id} already has an active session"
                ) from e
            raise
        return ChatSession(**row)

    async def update_session(
        self,
        session_id: str,
        patch: Dict[str, Any],
        expected_status: Optional[SessionStatus] = None
    ) -> Optional[ChatSession]:
        """
        Apply patch and return the new row.

        With expected_status this is a compare-and-set: None is returned when
        the stored status no longer matches.
        """
        set_clause, args = _build_set_clause(patch, _SESSION_PATCH_COLUMNS, start=2)
        query = f"UPDATE chat_sessions SET {set_clause} WHERE session_id = $1"
        if expected_status is not None:
            query += f" AND status = ${len(args) + 2}"
            args.append(_db_value(expected_status))
        row = await self.db.fetchone(query + " RETURNING *", session_id, *args)
        return ChatSession(**row) if row else None

    async def touch_session(self, session_id: str) -> None:
        await self.db.execute(
            "UPDATE chat_sessions SET updated_at = NOW() WHERE session_id = $1",
            session_id
        )

    async def find_expired_sessions(
        self,
        cutoff: datetime,
        limit: int = 100,
        after: Optional[Tuple[datetime, str]] = None
    ) -> List[ChatSession]:
        """
        Active sessions started at or before cutoff, oldest first.

        `after` is a (start_time, session_id) keyset cursor: only sessions
        ordered strictly after it are returned.
        """
        after_time, after_id = after if after is not None else (None, None)
        rows = await self.db.fetch(
            """
            SELECT * FROM chat_sessions
            WHERE status = 'active' AND start_time <= $1
              AND ($3::timestamptz IS NULL OR (start_time, session_id) > ($3::timestamptz, $4::text))
            ORDER BY start_time ASC, session_id ASC
            LIMIT $2
            """,
            cutoff,
            limit,
            after_time,
            after_id
        )
        return [ChatSession(**row) for row in rows]

    async def list_sessions(
        self,
        status: Optional[SessionStatus] = None,
        room_id: Optional[str] = None,
        limit: int = 100,
        owner_id: Optional[str] = None
    ) -> List[ChatSession]:
        rows = await self.db.fetch(
            """
            SELECT * FROM chat_sessions
            WHERE ($1::text IS NULL OR status = $1)
              AND ($2::text IS NULL OR room_id = $2)
              AND ($3::text IS NULL OR owner_id = $3)
            ORDER BY start_time DESC
            LIMIT $4
            """,
            _db_value(status),
            room_id,
            owner_id,
            limit
        )
        return [ChatSession(**row) for row in rows]

    async def find_sessions_with_failed_summary(self, limit: int = 100) -> List[ChatSession]:
        rows = await self.db.fetch(
            """
            SELECT s.*
            FROM chat_sessions s
            JOIN LATERAL (
                SELECT status
                FROM summaries
                WHERE session_id = s.session_id
                ORDER BY created_at DESC, id DESC
                LIMIT 1
            ) latest ON TRUE
            WHERE s.status = 'closed' AND latest.status = 'failed'
            ORDER BY s.end_time DESC NULLS LAST
            LIMIT $1
            """,
            limit
        )
        return [ChatSession(**row) for row in rows]

    async def session_statistics(self, room_id: str) -> Dict[str, Any]:
        rows = await self.db.fetch(
            """
            SELECT
                status,
                COUNT(*) AS count,
                AVG(EXTRACT(EPOCH FROM (end_time - start_time))) AS avg_duration_seconds
            FROM chat_sessions
            WHERE room_id = $1
            GROUP BY status
            """,
            room_id
        )
        total_messages = await self.db.fetchval(
            "SELECT COUNT(*) FROM messages WHERE room_id = $1",
            room_id
        )
        return {
            "sessions": {row["status"]: int(row["count"]) for row in rows},
            "avg_duration_seconds": {
                row["status"]: float(row["avg_duration_seconds"])
                for row in rows
                if row["avg_duration_seconds"] is not None
            },
            "total_messages": int(total_messages or 0),
        }

    # Messages
    async def append_message(self, session_id: str, fields: Dict[str, Any]) -> Optional[Message]:
        """
        Insert a message for an active session.

        The insert is conditioned on the session still being active, so a
        message can never land in a session that a concurrent caller closed.
        Returns None in that case. A LINE message id that is already stored
        raises DuplicateMessageError.
        """
        try:
            row = await self.db.fetchone(
                """
                INSERT INTO messages (
                    session_id, room_id, owner_id, direction, sender_role, message_type,
                    message, line_message_id, line_user_id, user_name, file_url, file_name,
                    latitude, longitude, timestamp
                )
                SELECT
                    s.session_id, s.room_id, s.owner_id, $2, $3, $4,
                    $5, $6, $7, $8, $9, $10,
                    $11, $12, COALESCE($13, NOW())
                FROM chat_sessions s
                WHERE s.session_id = $1 AND s.status = 'active'
                RETURNING *
                """,
                session_id,
                _db_value(fields["direction"]),
                _db_value(fields["sender_role"]),
                _db_value(fields["message_type"]),
                fields["message"],
                fields.get("line_message_id"),
                fields.get("line_user_id"),
                fields.get("user_name"),
                fields.get("file_url"),
                fields.get("file_name"),
                fields.get("latitude"),
                fields.get("longitude"),
                fields.get("timestamp")
            )
        except asyncpg.UniqueViolationError as e:
            if getattr(e, "constraint_name", None) == LINE_MESSAGE_ID_CONSTRAINT:
                raise DuplicateMessageError(
                    f"LINE message {fields.get('line_message_id')} already stored"
                ) from e
            raise
        return Message(**row) if row else None

    async def count_messages(self, session_id: str) -> int:
        count = await self.db.fetchval(
            "SELECT COUNT(*) FROM messages WHERE session_id = $1",
            session_id
        )
        return int(count or 0)

    async def list_messages(
        self,
        session_id: str,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[Message]:
        rows = await self.db.fetch(
            """
            SELECT * FROM messages
            WHERE session_id = $1
            ORDER BY timestamp ASC, id ASC
            LIMIT $2 OFFSET $3
            """,
            session_id,
            limit,
            offset
        )
        return [Message(**row) for row in rows]

    async def find_message_by_platform_id(self, line_message_id: str) -> Optional[Message]:
        row = await self.db.fetchone(
            """
            SELECT * FROM messages
            WHERE line_message_id = $1
            ORDER BY id ASC
            LIMIT 1
            """,
            line_message_id
        )
        return Message(**row) if row else None

    # Summaries
    async def create_summary(self, session: ChatSession) -> Summary:
        try:
            row = await self.db.fetchone(
                """
                INSERT INTO summaries (session_id, room_id, owner_id, status)
                VALUES ($1, $2, $3, 'processing')
                RETURNING *
                """,
                session.session_id,
                session.room_id,
                session.owner_id
            )
        except asyncpg.UniqueViolationError as e:
            if getattr(e, "constraint_name", None) == PROCESSING_SUMMARY_CONSTRAINT:
                raise SummaryInFlightError(
                    f"Summary already processing for session {session.session_id}"
                ) from e
            raise
        return Summary(**row)

    async def update_summary(self, summary_id: int, patch: Dict[str, Any]) -> Optional[Summary]:
        set_clause, args = _build_set_clause(patch, _SUMMARY_PATCH_COLUMNS, start=2)
        row = await self.db.fetchone(
            f"UPDATE summaries SET {set_clause} WHERE id = $1 RETURNING *",
            summary_id,
            *args
        )
        return Summary(**row) if row else None

    async def get_summary(self, summary_id: int) -> Optional[Summary]:
        row = await self.db.fetchone("SELECT * FROM summaries WHERE id = $1", summary_id)
        return Summary(**row) if row else None

    async def list_summaries(self, session_id: str) -> List[Summary]:
        rows = await self.db.fetch(
            """
            SELECT * FROM summaries
            WHERE session_id = $1
            ORDER BY created_at DESC, id DESC
            """,
            session_id
        )
        return [Summary(**row) for row in rows]
