"""Application orchestrator - wires all components and manages lifecycle."""

from __future__ import annotations

from typing import Optional

import httpx

from flowchat.chat.conversation import Conversation
from flowchat.chat.gateway import ChatGateway
from flowchat.chat.transcript import SqliteTranscriptSink
from flowchat.config import AppConfig
from flowchat.core.context import ContextBuilder, RequestContext, visitor_id_for
from flowchat.core.errors import ErrorClassifier, ErrorLog
from flowchat.core.events import EventBus, EventType
from flowchat.core.registry import InstanceRegistry
from flowchat.core.session import SessionStore
from flowchat.log import get_logger
from flowchat.services.rate_limiter import RateLimiter
from flowchat.services.scheduler import MaintenanceScheduler
from flowchat.storage.database import Database
from flowchat.storage.session_repo import SessionRepository
from flowchat.streaming.client import StreamingClient

logger = get_logger(__name__)


class FlowChatApp:
    """Top-level application orchestrator.

    Everything is constructor-injected from here; nothing reaches for
    module-level state.
    """

    def __init__(self, config: AppConfig, http_client: httpx.AsyncClient | None = None):
        self.config = config
        self.db = Database(config.storage.db_path)
        self.session_repo = SessionRepository(self.db)
        self.sessions = SessionStore(self.session_repo, config.sessions)
        self.registry = InstanceRegistry(config.instances)
        self.context_builder = ContextBuilder(config.site)
        self.rate_limiter = RateLimiter(config.rate_limits)
        self.error_log = ErrorLog()
        self.classifier = ErrorClassifier(self.error_log, debug=config.debug)
        self.events = EventBus()
        self.transcript = SqliteTranscriptSink(self.session_repo)
        self.gateway = ChatGateway(
            store=self.registry,
            sessions=self.sessions,
            context_builder=self.context_builder,
            rate_limiter=self.rate_limiter,
            classifier=self.classifier,
        )
        self.scheduler = MaintenanceScheduler(config.scheduler, self.sessions, self.rate_limiter)
        self._http = http_client
        self._owns_http = http_client is None
        self._scheduler_running = False

    async def start(self, run_scheduler: bool = True) -> None:
        """Initialize storage and, unless disabled, the maintenance scheduler."""
        # 1. Database
        await self.db.initialize()

        # 2. Shared connection pool for all conversations
        if self._http is None:
            self._http = httpx.AsyncClient()

        # 3. Maintenance
        if run_scheduler:
            await self.scheduler.start()
            self._scheduler_running = True

        logger.info(
            "flowchat_started",
            instance_count=len(self.registry.ids()),
            scheduler=run_scheduler,
        )

    async def stop(self) -> None:
        """Gracefully shut down all components."""
        if self._scheduler_running:
            await self.scheduler.stop()
            self._scheduler_running = False
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None
        await self.db.close()
        logger.info("flowchat_stopped")

    async def open_conversation(
        self,
        instance_id: str,
        request: RequestContext,
        client_identity: str,
        session_id: Optional[str] = None,
        token: Optional[str] = None,
    ) -> Conversation:
        """Run the init handshake and return a conversation bound to its session."""
        bundle = await self.gateway.init_chat(instance_id, request, client_identity, session_id)
        instance = self.registry.get(bundle.instance_id)
        assert instance is not None

        context = dict(bundle.context)
        if bundle.system_prompt:
            context["system_prompt"] = bundle.system_prompt

        conversation = Conversation(
            instance=instance,
            sessions=self.sessions,
            client=StreamingClient(self.config.streaming, http_client=self._http),
            rate_limiter=self.rate_limiter,
            classifier=self.classifier,
            events=self.events,
            visitor_id=visitor_id_for(request.visitor),
            client_identity=client_identity,
            context=context,
            retry=self.config.retry,
            transcript=self.transcript,
            session_id=bundle.session_id,
            user_id=request.visitor.user_id,
            token=token,
        )
        if bundle.session_id != session_id:
            await self.events.emit(
                EventType.SESSION_STARTED, instance.id, bundle.session_id, replaced=session_id
            )
        return conversation
