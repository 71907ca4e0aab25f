"""Conversation controller: one visitor talking to one instance."""

from __future__ import annotations

import asyncio
import random
from contextlib import aclosing
from dataclasses import asdict
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Optional

from flowchat.chat.transcript import TranscriptSink
from flowchat.config import InstanceConfig, RetryConfig
from flowchat.core.errors import ChatError, ErrorClassifier, ErrorRecord, RateLimitExceeded
from flowchat.core.events import EventBus, EventType
from flowchat.core.session import SessionStore
from flowchat.core.types import OperationType, Role
from flowchat.log import get_logger
from flowchat.services.rate_limiter import RateLimiter
from flowchat.streaming.client import PartialResult, StreamingClient

logger = get_logger(__name__)


def backoff_delay(config: RetryConfig, attempt: int) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    delay = min(config.initial_delay * config.multiplier ** (attempt - 1), config.max_delay)
    if config.jitter:
        delay *= random.uniform(0.75, 1.25)
    return min(delay, config.max_delay)


class Conversation:
    """Drives send/cancel for the embedding layer and reports through the event bus.

    Sends are expected to be serialized by the caller; a second ``send``
    while one is streaming is not refused here.
    """

    def __init__(
        self,
        instance: InstanceConfig,
        sessions: SessionStore,
        client: StreamingClient,
        rate_limiter: RateLimiter,
        classifier: ErrorClassifier,
        events: EventBus,
        visitor_id: str,
        client_identity: str,
        context: Mapping[str, str] | None = None,
        retry: RetryConfig | None = None,
        transcript: TranscriptSink | None = None,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        token: Optional[str] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.instance = instance
        self._sessions = sessions
        self._client = client
        self._rate_limiter = rate_limiter
        self._classifier = classifier
        self._events = events
        self._visitor_id = visitor_id
        self._client_identity = client_identity
        self._context: dict[str, str] = dict(context or {})
        self._retry = retry or RetryConfig()
        self._transcript = transcript
        self._session_id = session_id
        self._user_id = user_id
        self._token = token
        self._sleep = sleep
        self._cancelled = False

    @property
    def context(self) -> dict[str, str]:
        return dict(self._context)

    def get_session_id(self) -> Optional[str]:
        return self._session_id

    def update_context(self, values: Mapping[str, str]) -> None:
        """Merge new values (for example after the visitor navigates) into the context map."""
        self._context.update(values)

    async def start(self) -> str:
        """Make sure a valid session exists before the first message."""
        await self._ensure_session()
        return self._session_id  # type: ignore[return-value]

    def cancel(self) -> None:
        self._cancelled = True
        self._client.cancel()

    async def send(self, text: str) -> AsyncIterator[PartialResult]:
        """Yield partial results for one exchange.

        Raises ChatError with a classified record on failure. Validation and
        rate limiting happen before any network traffic. After ``cancel()``
        the iterator stops without raising.
        """
        self._cancelled = False
        text = text.strip()
        await self._validate(text)
        await self._enforce_rate_limit()
        await self._ensure_session()
        session_id = self._session_id
        assert session_id is not None
        if self._cancelled:
            await self._events.emit(EventType.CANCELLED, self.instance.id, session_id)
            return

        await self._events.emit(EventType.MESSAGE_SENT, self.instance.id, session_id, message=text)

        prior: list[ErrorRecord] = []
        last: PartialResult | None = None
        attempt = 0
        while True:
            attempt += 1
            try:
                async with aclosing(
                    self._client.send(self.instance, session_id, text, self._context, token=self._token)
                ) as stream:
                    async for result in stream:
                        if self._cancelled:
                            break
                        last = result
                        await self._events.emit(
                            EventType.PARTIAL_UPDATE, self.instance.id, session_id, text=result.text
                        )
                        yield result
                break
            except Exception as e:
                if self._cancelled:
                    break
                record = self._classifier.classify(e, self.instance, prior)
                prior.append(record)
                if record.retryable and last is None and attempt < self._retry.max_attempts:
                    delay = backoff_delay(self._retry, attempt)
                    logger.info("send_retry", session_id=session_id, code=record.code, attempt=attempt, delay=round(delay, 2))
                    await self._sleep(delay)
                    if self._cancelled:
                        break
                    continue
                if record.retryable:
                    record = self._classifier.escalate(record, self.instance)
                raise await self._fail(record, session_id) from e

        if self._cancelled:
            await self._events.emit(EventType.CANCELLED, self.instance.id, session_id)
            return

        reply = last.text if last is not None else ""
        tool_calls = [asdict(call) for call in last.tool_calls] if last is not None else []
        await self._events.emit(
            EventType.COMPLETED, self.instance.id, session_id, text=reply, attempts=attempt
        )
        await self._finalize(session_id, text, reply, tool_calls)

    async def _validate(self, text: str) -> None:
        if not text:
            raise await self._fail(self._classifier.create("E3001"), self._session_id)
        max_length = self.instance.features.max_message_length
        if len(text) > max_length:
            raise await self._fail(
                self._classifier.create("E3002", {"max_length": max_length, "length": len(text)}),
                self._session_id,
            )
        if not self.instance.webhook_url:
            raise await self._fail(
                self._classifier.create("E5002", {"instance_id": self.instance.id}), self._session_id
            )

    async def _enforce_rate_limit(self) -> None:
        operation = OperationType.SEND_MESSAGE
        if not self._rate_limiter.check(operation, self._client_identity):
            exc = RateLimitExceeded(operation.value, self._rate_limiter.retry_after(operation, self._client_identity))
            raise await self._fail(self._classifier.classify(exc, self.instance), self._session_id)
        self._rate_limiter.record(operation, self._client_identity)

    async def _ensure_session(self) -> None:
        previous = self._session_id
        self._session_id = await self._sessions.get_or_create(
            self.instance.id, self._visitor_id, previous, self._user_id
        )
        if self._session_id != previous:
            await self._events.emit(
                EventType.SESSION_STARTED, self.instance.id, self._session_id, replaced=previous
            )

    async def _fail(self, record: ErrorRecord, session_id: Optional[str]) -> ChatError:
        await self._events.emit(EventType.ERROR, self.instance.id, session_id, **record.to_dict())
        return ChatError(record)

    async def _finalize(self, session_id: str, message: str, reply: str, tool_calls: list[dict[str, Any]]) -> None:
        if self._transcript is None:
            return
        try:
            await self._transcript.on_message_finalized(session_id, Role.USER, message)
            await self._transcript.on_message_finalized(session_id, Role.ASSISTANT, reply, tool_calls or None)
        except Exception as e:
            # The visitor already has the reply; a lost transcript is logged, not surfaced
            logger.error("transcript_save_failed", session_id=session_id, error=str(e))
