"""Host-page gateway: the operations a web host mounts for the chat widget."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Optional

from flowchat.config import InstanceConfig
from flowchat.core.context import ContextBuilder, RequestContext, VisitorInfo, visitor_id_for
from flowchat.core.errors import ChatError, ErrorClassifier, RateLimitExceeded, SessionInvalidError
from flowchat.core.registry import ConfigStore
from flowchat.core.session import SessionStore
from flowchat.core.types import OperationType
from flowchat.log import get_logger
from flowchat.routing.resolver import InstanceResolver
from flowchat.services.rate_limiter import RateLimiter
from flowchat.storage.models import FallbackMessage, MessageRecord

logger = get_logger(__name__)

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def frontend_config(instance: InstanceConfig) -> dict[str, Any]:
    """What the widget may see about an instance. Never includes the webhook URL."""
    features = instance.features
    return {
        "id": instance.id,
        "name": instance.name,
        "theme": instance.theme,
        "primaryColor": instance.primary_color,
        "chatTitle": instance.chat_title,
        "welcomeMessage": instance.welcome_message,
        "placeholderText": instance.placeholder_text,
        "suggestedPrompts": list(instance.suggested_prompts),
        "showHeader": instance.show_header,
        "showTimestamp": instance.show_timestamp,
        "showAvatar": instance.show_avatar,
        "avatarUrl": instance.avatar_url,
        "bubble": dict(instance.bubble),
        "autoOpen": dict(instance.auto_open),
        "features": {
            "fileUpload": features.file_upload,
            "fileTypes": list(features.file_types),
            "maxFileSize": features.max_file_size,
            "voiceInput": features.voice_input,
            "showTypingIndicator": features.show_typing_indicator,
            "enableHistory": features.enable_history,
            "enableFeedback": features.enable_feedback,
            "maxMessageLength": features.max_message_length,
        },
        "fallback": {
            "enabled": instance.fallback.enabled,
            "message": instance.fallback.message,
        },
    }


def message_to_dict(message: MessageRecord) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": message.id,
        "role": message.role.value,
        "content": message.text,
        "createdAt": message.created_at.isoformat(),
    }
    if message.tool_calls:
        data["toolCalls"] = message.tool_calls
    return data


@dataclass
class InitBundle:
    """Handed to the widget once, after access control has passed."""

    instance_id: str
    webhook_url: str
    session_id: str
    config: dict[str, Any]
    context: dict[str, str]
    system_prompt: str = ""
    messages: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "instanceId": self.instance_id,
            "webhookUrl": self.webhook_url,
            "sessionId": self.session_id,
            "config": self.config,
            "context": self.context,
            "systemPrompt": self.system_prompt,
            "messages": self.messages,
        }


class ChatGateway:
    def __init__(
        self,
        store: ConfigStore,
        sessions: SessionStore,
        context_builder: ContextBuilder,
        rate_limiter: RateLimiter,
        classifier: ErrorClassifier,
    ):
        self._store = store
        self._resolver = InstanceResolver(store)
        self._sessions = sessions
        self._context_builder = context_builder
        self._rate_limiter = rate_limiter
        self._classifier = classifier

    async def init_chat(
        self,
        instance_id: str,
        request: RequestContext,
        client_identity: str,
        session_id: Optional[str] = None,
    ) -> InitBundle:
        instance = self._require_instance(instance_id)
        self._check_access(instance, request.visitor)
        self._enforce_rate_limit(OperationType.API, client_identity, instance)

        visitor_id = visitor_id_for(request.visitor)
        resolved = await self._sessions.get_or_create(
            instance.id, visitor_id, session_id, request.visitor.user_id
        )
        context = self._context_builder.build_context(instance, request)
        system_prompt = self._context_builder.build_system_prompt(instance, context)

        messages: list[dict[str, Any]] = []
        if instance.features.enable_history and resolved == session_id:
            records = await self._sessions.repo.get_messages(resolved)
            messages = [message_to_dict(m) for m in records]

        logger.info("chat_initialized", instance_id=instance.id, session_id=resolved, history=len(messages))
        return InitBundle(
            instance_id=instance.id,
            webhook_url=instance.webhook_url,
            session_id=resolved,
            config=frontend_config(instance),
            context=context,
            system_prompt=system_prompt,
            messages=messages,
        )

    def page_config(self, request: RequestContext) -> list[dict[str, Any]]:
        """Every instance the page should offer to this visitor."""
        return [frontend_config(i) for i in self._resolver.visible_instances(request)]

    def resolve_for_page(self, request: RequestContext) -> InstanceConfig | None:
        return self._resolver.resolve(request)

    def resolve_for_embed(self, request: RequestContext) -> InstanceConfig | None:
        return self._resolver.resolve_with_default(request)

    async def submit_fallback(
        self,
        instance_id: str,
        name: str,
        email: str,
        message: str,
        client_identity: str,
    ) -> FallbackMessage:
        """Store an offline contact message for an instance whose backend is unavailable."""
        instance = self._require_instance(instance_id)
        if not instance.fallback.enabled:
            raise ChatError(self._classifier.create("E5004", {"feature": "fallback"}))

        name, email, message = name.strip(), email.strip(), message.strip()
        if not message:
            raise ChatError(self._classifier.create("E3001"))
        if not _EMAIL_PATTERN.match(email):
            raise ChatError(self._classifier.create("E3005", {"field": "email"}))

        self._enforce_rate_limit(OperationType.FALLBACK, f"{email.lower()}|{client_identity}", instance)

        record = FallbackMessage(instance_id=instance.id, name=name, email=email, message=message)
        record.id = await self._sessions.repo.save_fallback(record)
        logger.info("fallback_saved", instance_id=instance.id, fallback_id=record.id)
        return record

    async def get_history(self, instance_id: str, session_uuid: str, limit: int = 100) -> list[dict[str, Any]]:
        instance = self._require_instance(instance_id)
        if not instance.features.enable_history:
            raise ChatError(self._classifier.create("E5004", {"feature": "history"}))

        session = await self._sessions.get(session_uuid)
        if session is None or session.instance_id != instance.id:
            raise ChatError(self._classifier.classify(SessionInvalidError("unknown session"), instance))

        records = await self._sessions.repo.get_messages(session_uuid, limit=limit)
        return [message_to_dict(m) for m in records]

    async def close_session(self, session_uuid: str) -> bool:
        return await self._sessions.close(session_uuid)

    def _require_instance(self, instance_id: str) -> InstanceConfig:
        instance = self._store.get(instance_id)
        if instance is None or not instance.is_enabled:
            raise ChatError(self._classifier.create("E5001", {"instance_id": instance_id}))
        return instance

    def _check_access(self, instance: InstanceConfig, visitor: VisitorInfo) -> None:
        access = instance.access
        if not visitor.is_authenticated and (access.require_login or access.allowed_roles):
            raise ChatError(self._classifier.create("E2001", {"instance_id": instance.id}))
        if access.allowed_roles and not set(visitor.roles) & set(access.allowed_roles):
            raise ChatError(self._classifier.create("E2002", {"instance_id": instance.id}))

    def _enforce_rate_limit(self, operation: OperationType, client: str, instance: InstanceConfig) -> None:
        if not self._rate_limiter.check(operation, client):
            exc = RateLimitExceeded(operation.value, self._rate_limiter.retry_after(operation, client))
            raise ChatError(self._classifier.classify(exc, instance))
        self._rate_limiter.record(operation, client)
