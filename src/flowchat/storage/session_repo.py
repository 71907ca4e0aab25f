"""Session and message repository over the chat tables."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional

from flowchat.core.types import Role, SessionStatus
from flowchat.log import get_logger
from flowchat.storage.database import Database
from flowchat.storage.models import FallbackMessage, MessagePart, MessageRecord, SessionRecord

logger = get_logger(__name__)


def to_db_time(value: datetime) -> str:
    """UTC, fixed width, so stored timestamps compare correctly as strings."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value).replace(tzinfo=timezone.utc)


def _dumps(value: Any) -> Optional[str]:
    return json.dumps(value, ensure_ascii=False) if value else None


class SessionRepository:
    """CRUD over sessions and their messages."""

    def __init__(self, db: Database):
        self._db = db

    async def create_session(self, record: SessionRecord) -> None:
        await self._db.conn.execute(
            """INSERT INTO chat_sessions
               (uuid, instance_id, visitor_id, user_id, status, started_at, last_activity_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                record.uuid,
                record.instance_id,
                record.visitor_id,
                record.user_id,
                record.status.value,
                to_db_time(record.started_at),
                to_db_time(record.last_activity_at),
            ),
        )
        await self._db.conn.commit()

    async def get_session(self, uuid: str) -> SessionRecord | None:
        cursor = await self._db.conn.execute("SELECT * FROM chat_sessions WHERE uuid = ?", (uuid,))
        row = await cursor.fetchone()
        return self._row_to_session(row) if row else None

    async def touch(self, uuid: str, at: datetime) -> bool:
        cursor = await self._db.conn.execute(
            "UPDATE chat_sessions SET last_activity_at = ? WHERE uuid = ?",
            (to_db_time(at), uuid),
        )
        await self._db.conn.commit()
        return cursor.rowcount > 0

    async def set_status(self, uuid: str, status: SessionStatus, at: datetime) -> bool:
        """Move a session to closed/archived; closed_at keeps the first close time."""
        cursor = await self._db.conn.execute(
            """UPDATE chat_sessions
               SET status = ?, closed_at = COALESCE(closed_at, ?)
               WHERE uuid = ?""",
            (status.value, to_db_time(at), uuid),
        )
        await self._db.conn.commit()
        return cursor.rowcount > 0

    async def list_sessions(
        self,
        instance_id: str,
        status: SessionStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[SessionRecord]:
        if status is not None:
            cursor = await self._db.conn.execute(
                """SELECT * FROM chat_sessions
                   WHERE instance_id = ? AND status = ?
                   ORDER BY last_activity_at DESC
                   LIMIT ? OFFSET ?""",
                (instance_id, status.value, limit, offset),
            )
        else:
            cursor = await self._db.conn.execute(
                """SELECT * FROM chat_sessions
                   WHERE instance_id = ?
                   ORDER BY last_activity_at DESC
                   LIMIT ? OFFSET ?""",
                (instance_id, limit, offset),
            )
        rows = await cursor.fetchall()
        return [self._row_to_session(row) for row in rows]

    async def count_sessions(self, instance_id: str, status: SessionStatus | None = None) -> int:
        if status is not None:
            cursor = await self._db.conn.execute(
                "SELECT COUNT(*) FROM chat_sessions WHERE instance_id = ? AND status = ?",
                (instance_id, status.value),
            )
        else:
            cursor = await self._db.conn.execute(
                "SELECT COUNT(*) FROM chat_sessions WHERE instance_id = ?", (instance_id,)
            )
        row = await cursor.fetchone()
        return int(row[0])

    async def close_idle(self, idle_before: datetime, at: datetime) -> int:
        """Close active sessions whose last activity is older than ``idle_before``."""
        cursor = await self._db.conn.execute(
            """UPDATE chat_sessions
               SET status = 'closed', closed_at = ?
               WHERE status = 'active' AND last_activity_at < ?""",
            (to_db_time(at), to_db_time(idle_before)),
        )
        await self._db.conn.commit()
        return cursor.rowcount

    async def purge_closed(self, closed_before: datetime) -> int:
        """Delete closed/archived sessions (and their messages) closed before the cutoff."""
        cutoff = to_db_time(closed_before)
        await self._db.conn.execute(
            """DELETE FROM chat_messages WHERE session_uuid IN (
                   SELECT uuid FROM chat_sessions
                   WHERE status IN ('closed','archived') AND closed_at < ?
               )""",
            (cutoff,),
        )
        cursor = await self._db.conn.execute(
            "DELETE FROM chat_sessions WHERE status IN ('closed','archived') AND closed_at < ?",
            (cutoff,),
        )
        await self._db.conn.commit()
        return cursor.rowcount

    async def delete_instance_sessions(self, instance_id: str) -> int:
        await self._db.conn.execute(
            """DELETE FROM chat_messages WHERE session_uuid IN (
                   SELECT uuid FROM chat_sessions WHERE instance_id = ?
               )""",
            (instance_id,),
        )
        cursor = await self._db.conn.execute(
            "DELETE FROM chat_sessions WHERE instance_id = ?", (instance_id,)
        )
        await self._db.conn.commit()
        return cursor.rowcount

    async def save_message(self, record: MessageRecord) -> int:
        """Append a message and return its ID."""
        cursor = await self._db.conn.execute(
            """INSERT INTO chat_messages
               (session_uuid, role, content_json, tool_calls_json, tool_results_json,
                metadata_json, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                record.session_uuid,
                record.role.value,
                json.dumps([part.to_dict() for part in record.content], ensure_ascii=False),
                _dumps(record.tool_calls),
                _dumps(record.tool_results),
                _dumps(record.metadata),
                to_db_time(record.created_at),
            ),
        )
        await self._db.conn.commit()
        return cursor.lastrowid  # type: ignore[return-value]

    async def get_messages(self, session_uuid: str, limit: int = 100, offset: int = 0) -> list[MessageRecord]:
        cursor = await self._db.conn.execute(
            """SELECT * FROM chat_messages
               WHERE session_uuid = ?
               ORDER BY created_at ASC, id ASC
               LIMIT ? OFFSET ?""",
            (session_uuid, limit, offset),
        )
        rows = await cursor.fetchall()
        return [self._row_to_message(row) for row in rows]

    async def count_messages(self, session_uuid: str) -> int:
        cursor = await self._db.conn.execute(
            "SELECT COUNT(*) FROM chat_messages WHERE session_uuid = ?", (session_uuid,)
        )
        row = await cursor.fetchone()
        return int(row[0])

    async def save_fallback(self, message: FallbackMessage) -> int:
        cursor = await self._db.conn.execute(
            """INSERT INTO fallback_messages (instance_id, name, email, message, status, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                message.instance_id,
                message.name,
                message.email,
                message.message,
                message.status,
                to_db_time(message.created_at),
            ),
        )
        await self._db.conn.commit()
        return cursor.lastrowid  # type: ignore[return-value]

    async def list_fallbacks(self, instance_id: str, status: str = "pending") -> list[FallbackMessage]:
        cursor = await self._db.conn.execute(
            """SELECT * FROM fallback_messages
               WHERE instance_id = ? AND status = ?
               ORDER BY created_at ASC""",
            (instance_id, status),
        )
        rows = await cursor.fetchall()
        return [
            FallbackMessage(
                id=row["id"],
                instance_id=row["instance_id"],
                name=row["name"],
                email=row["email"],
                message=row["message"],
                status=row["status"],
                created_at=from_db_time(row["created_at"]),
            )
            for row in rows
        ]

    @staticmethod
    def _row_to_session(row) -> SessionRecord:
        return SessionRecord(
            uuid=row["uuid"],
            instance_id=row["instance_id"],
            visitor_id=row["visitor_id"],
            user_id=row["user_id"],
            status=SessionStatus(row["status"]),
            started_at=from_db_time(row["started_at"]),
            last_activity_at=from_db_time(row["last_activity_at"]),
            closed_at=from_db_time(row["closed_at"]),
        )

    @staticmethod
    def _row_to_message(row) -> MessageRecord:
        return MessageRecord(
            id=row["id"],
            session_uuid=row["session_uuid"],
            role=Role(row["role"]),
            content=[MessagePart.from_dict(part) for part in json.loads(row["content_json"])],
            tool_calls=json.loads(row["tool_calls_json"]) if row["tool_calls_json"] else None,
            tool_results=json.loads(row["tool_results_json"]) if row["tool_results_json"] else None,
            metadata=json.loads(row["metadata_json"]) if row["metadata_json"] else {},
            created_at=from_db_time(row["created_at"]),
        )
