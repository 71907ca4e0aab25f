"""Where finished messages go once an exchange completes."""

from __future__ import annotations

from typing import Any, Optional, Protocol, Sequence

from flowchat.core.types import Role
from flowchat.log import get_logger
from flowchat.storage.models import MessageRecord, text_parts
from flowchat.storage.session_repo import SessionRepository

logger = get_logger(__name__)


class TranscriptSink(Protocol):
    """Called once per finished message, never per partial chunk."""

    async def on_message_finalized(
        self,
        session_uuid: str,
        role: Role,
        content: str,
        tool_calls: Optional[Sequence[dict[str, Any]]] = None,
    ) -> None:
        ...


class SqliteTranscriptSink:
    """Appends finished messages to the chat_messages table."""

    def __init__(self, repo: SessionRepository):
        self._repo = repo

    async def on_message_finalized(
        self,
        session_uuid: str,
        role: Role,
        content: str,
        tool_calls: Optional[Sequence[dict[str, Any]]] = None,
    ) -> None:
        message_id = await self._repo.save_message(
            MessageRecord(
                session_uuid=session_uuid,
                role=role,
                content=text_parts(content),
                tool_calls=list(tool_calls) if tool_calls else None,
            )
        )
        logger.debug("message_saved", session_id=session_uuid, role=role.value, message_id=message_id)
