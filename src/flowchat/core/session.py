"""Session store binding a visitor to a durable conversation id per instance."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from flowchat.config import SessionConfig
from flowchat.core.errors import SessionInvalidError
from flowchat.core.types import SessionStatus
from flowchat.log import get_logger
from flowchat.storage.models import SessionRecord, utcnow
from flowchat.storage.session_repo import SessionRepository

logger = get_logger(__name__)


class SessionStore:
    """Creates, validates and renews sessions.

    One active session per (visitor, instance) conversation is kept by
    validating and reusing the id the client already holds, not by locking.
    """

    def __init__(
        self,
        repo: SessionRepository,
        config: SessionConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._repo = repo
        self._config = config or SessionConfig()
        self._clock = clock

    @property
    def repo(self) -> SessionRepository:
        return self._repo

    @property
    def idle_timeout(self) -> timedelta:
        return timedelta(minutes=self._config.idle_timeout_minutes)

    async def get_or_create(
        self,
        instance_id: str,
        visitor_id: str,
        client_session_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> str:
        """Reuse ``client_session_id`` when it is valid for this instance, else start a new session.

        An unknown, foreign, closed or idle-expired id is never an error for
        the caller; it simply leads to a fresh session.
        """
        if client_session_id:
            try:
                await self.require_active(client_session_id, instance_id)
            except SessionInvalidError as e:
                logger.info("session_rejected", session_id=client_session_id, instance_id=instance_id, reason=str(e))
            else:
                await self._repo.touch(client_session_id, self._clock())
                return client_session_id

        return await self.create(instance_id, visitor_id, user_id)

    async def create(self, instance_id: str, visitor_id: str, user_id: Optional[str] = None) -> str:
        now = self._clock()
        session_id = str(uuid.uuid4())
        await self._repo.create_session(
            SessionRecord(
                uuid=session_id,
                instance_id=instance_id,
                visitor_id=visitor_id,
                user_id=user_id,
                status=SessionStatus.ACTIVE,
                started_at=now,
                last_activity_at=now,
            )
        )
        logger.info("session_created", instance_id=instance_id, visitor_id=visitor_id, session_id=session_id)
        return session_id

    async def require_active(self, session_id: str, instance_id: str) -> SessionRecord:
        """Return the session if it belongs to ``instance_id`` and is active, else raise SessionInvalidError."""
        session = await self._repo.get_session(session_id)
        if session is None:
            raise SessionInvalidError("unknown session")
        if session.instance_id != instance_id:
            raise SessionInvalidError("session belongs to another instance")
        if not session.is_active:
            raise SessionInvalidError(f"session is {session.status.value}")
        if self._clock() - session.last_activity_at >= self.idle_timeout:
            await self._repo.set_status(session_id, SessionStatus.CLOSED, self._clock())
            raise SessionInvalidError("session idle timeout")
        return session

    async def get(self, session_id: str) -> SessionRecord | None:
        return await self._repo.get_session(session_id)

    async def touch(self, session_id: str) -> bool:
        return await self._repo.touch(session_id, self._clock())

    async def close(self, session_id: str) -> bool:
        closed = await self._repo.set_status(session_id, SessionStatus.CLOSED, self._clock())
        if closed:
            logger.info("session_closed", session_id=session_id)
        return closed

    async def archive(self, session_id: str) -> bool:
        archived = await self._repo.set_status(session_id, SessionStatus.ARCHIVED, self._clock())
        if archived:
            logger.info("session_archived", session_id=session_id)
        return archived

    async def sweep(self, retention: timedelta | None = None) -> int:
        """Close idle sessions and purge old closed/archived ones. Returns the number purged.

        Run by the maintenance scheduler, never on the request path.
        """
        retention = retention if retention is not None else timedelta(days=self._config.retention_days)
        now = self._clock()
        closed = await self._repo.close_idle(now - self.idle_timeout, now)
        purged = await self._repo.purge_closed(now - retention)
        logger.info("session_sweep", closed=closed, purged=purged, retention_days=retention.days)
        return purged
