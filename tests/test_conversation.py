"""End-to-end tests for the conversation controller with a mocked backend."""

import asyncio
import json

import httpx
import pytest

from flowchat.chat.conversation import Conversation, backoff_delay
from flowchat.config import RateLimitRule, RetryConfig
from flowchat.core.errors import ChatError, ErrorClassifier
from flowchat.core.events import EventBus, EventType
from flowchat.core.session import SessionStore
from flowchat.core.types import ErrorCategory, RecoveryPolicy, Role
from flowchat.services.rate_limiter import RateLimiter
from flowchat.streaming.client import StreamingClient

from conftest import chunked, make_instance, mock_http, sse_body

SSE = {"content-type": "text/event-stream"}
HELLO = sse_body('{"text":"Hel"}', '{"text":"lo"}', "[DONE]")


class RecordingSink:
    def __init__(self):
        self.messages = []

    async def on_message_finalized(self, session_uuid, role, content, tool_calls=None):
        self.messages.append((session_uuid, role, content))


class Backend:
    """Scripted handler: each call pops the next response factory."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return response(request)


def _ok(request):
    return httpx.Response(200, headers=SSE, content=HELLO)


def _unavailable(request):
    return httpx.Response(503, text="busy")


def _timeout(request):
    raise httpx.ReadTimeout("no bytes for 30s", request=request)


@pytest.fixture
def harness(repo):
    class Harness:
        def __init__(self):
            self.events = EventBus()
            self.sink = RecordingSink()
            self.sleeps = []
            self.sessions = SessionStore(repo)
            self.limiter = RateLimiter(
                {
                    "send_message": RateLimitRule(threshold=20, window_seconds=60),
                    "api": RateLimitRule(threshold=60, window_seconds=60),
                }
            )

        async def sleep(self, delay):
            self.sleeps.append(delay)

        def conversation(self, backend, instance=None, **kwargs) -> Conversation:
            return Conversation(
                instance=instance or make_instance(),
                sessions=self.sessions,
                client=StreamingClient(http_client=mock_http(backend)),
                rate_limiter=kwargs.pop("rate_limiter", self.limiter),
                classifier=ErrorClassifier(),
                events=self.events,
                visitor_id="guest_abc",
                client_identity="203.0.113.5",
                context={"page_url": "https://example.com/"},
                retry=RetryConfig(max_attempts=3, initial_delay=1.0, jitter=False),
                transcript=self.sink,
                sleep=self.sleep,
                **kwargs,
            )

        def types(self):
            return [e.type for e in self.events.history()]

    return Harness()


async def _send(conversation: Conversation, text: str = "hello") -> list[str]:
    return [r.text async for r in conversation.send(text)]


class TestHappyPath:
    async def test_streams_and_persists(self, harness):
        conversation = harness.conversation(Backend(_ok))
        assert await _send(conversation) == ["Hel", "Hello"]

        session_id = conversation.get_session_id()
        assert harness.types() == [
            EventType.SESSION_STARTED,
            EventType.MESSAGE_SENT,
            EventType.PARTIAL_UPDATE,
            EventType.PARTIAL_UPDATE,
            EventType.COMPLETED,
        ]
        assert harness.sink.messages == [
            (session_id, Role.USER, "hello"),
            (session_id, Role.ASSISTANT, "Hello"),
        ]

    async def test_raising_listener_does_not_break_exchange(self, harness):
        def broken(event):
            raise RuntimeError("widget render failed")

        harness.events.subscribe(EventType.PARTIAL_UPDATE, broken)
        harness.events.subscribe("*", broken)
        conversation = harness.conversation(Backend(_ok))
        assert await _send(conversation) == ["Hel", "Hello"]

        completed = harness.events.history(EventType.COMPLETED)
        assert completed[0].data["text"] == "Hello"
        assert EventType.ERROR not in harness.types()
        assert len(harness.sink.messages) == 2

    async def test_session_is_kept_between_sends(self, harness):
        conversation = harness.conversation(Backend(_ok))
        await _send(conversation)
        first = conversation.get_session_id()
        await _send(conversation, "again")
        assert conversation.get_session_id() == first
        assert harness.types().count(EventType.SESSION_STARTED) == 1

    async def test_stale_session_is_replaced_silently(self, harness):
        old = await harness.sessions.create("support", "guest_abc")
        await harness.sessions.close(old)
        conversation = harness.conversation(Backend(_ok), session_id=old)
        assert await _send(conversation) == ["Hel", "Hello"]
        assert conversation.get_session_id() != old
        started = harness.events.history(EventType.SESSION_STARTED)
        assert started[0].data["replaced"] == old

    async def test_start_creates_session_up_front(self, harness):
        conversation = harness.conversation(Backend(_ok))
        session_id = await conversation.start()
        assert conversation.get_session_id() == session_id

    async def test_update_context_is_sent(self, harness):
        seen = []

        def backend(request):
            seen.append(json.loads(request.content)["context"])
            return _ok(request)

        conversation = harness.conversation(backend)
        conversation.update_context({"page_url": "https://example.com/pricing"})
        await _send(conversation)
        assert seen[0]["page_url"] == "https://example.com/pricing"


class TestRejectedBeforeNetwork:
    async def test_empty_message(self, harness):
        backend = Backend(_ok)
        with pytest.raises(ChatError) as info:
            await _send(harness.conversation(backend), "   ")
        assert info.value.code == "E3001"
        assert info.value.recovery is RecoveryPolicy.NONE
        assert backend.calls == 0
        assert harness.types() == [EventType.ERROR]

    async def test_message_too_long(self, harness):
        backend = Backend(_ok)
        instance = make_instance(features={"max_message_length": 5})
        with pytest.raises(ChatError) as info:
            await _send(harness.conversation(backend, instance), "too long")
        assert info.value.code == "E3002"
        assert "5 characters" in str(info.value)
        assert backend.calls == 0

    async def test_missing_webhook(self, harness):
        backend = Backend(_ok)
        with pytest.raises(ChatError) as info:
            await _send(harness.conversation(backend, make_instance(webhook_url="")))
        assert info.value.category is ErrorCategory.CONFIGURATION
        assert backend.calls == 0

    async def test_rate_limited(self, harness):
        backend = Backend(_ok)
        limiter = RateLimiter(
            {
                "send_message": RateLimitRule(threshold=1, window_seconds=60),
                "api": RateLimitRule(threshold=60, window_seconds=60),
            }
        )
        conversation = harness.conversation(backend, rate_limiter=limiter)
        await _send(conversation)
        with pytest.raises(ChatError) as info:
            await _send(conversation)
        assert info.value.recovery is RecoveryPolicy.WAIT
        assert info.value.record.retry_after >= 1
        assert backend.calls == 1


class TestRetry:
    async def test_recovers_after_server_error(self, harness):
        backend = Backend(_unavailable, _ok)
        assert await _send(harness.conversation(backend)) == ["Hel", "Hello"]
        assert backend.calls == 2
        assert harness.sleeps == [1.0]
        assert harness.events.history(EventType.COMPLETED)[0].data["attempts"] == 2

    async def test_exhausted_external_error_falls_back(self, harness):
        backend = Backend(_unavailable)
        with pytest.raises(ChatError) as info:
            await _send(harness.conversation(backend))
        assert backend.calls == 3
        assert harness.sleeps == [1.0, 2.0]
        assert info.value.code == "E9001"
        assert info.value.recovery is RecoveryPolicy.FALLBACK
        assert harness.sink.messages == []

    async def test_timeout_is_connection_retry(self, harness):
        backend = Backend(_timeout)
        with pytest.raises(ChatError) as info:
            await _send(harness.conversation(backend))
        assert info.value.category is ErrorCategory.CONNECTION
        assert info.value.recovery is RecoveryPolicy.RETRY
        errors = harness.events.history(EventType.ERROR)
        assert errors[0].data["code"] == "E1002"

    async def test_no_retry_once_output_was_shown(self, harness):
        def broken_midway(request):
            return httpx.Response(
                200, headers=SSE, content=chunked(b'data: {"text":"Hel"}\n\n', b'data: {"error":"crash"}\n\n')
            )

        backend = Backend(broken_midway)
        seen = []
        with pytest.raises(ChatError):
            async for result in harness.conversation(backend).send("hello"):
                seen.append(result.text)
        assert seen == ["Hel"]
        assert backend.calls == 1

    def test_backoff_is_capped(self):
        config = RetryConfig(initial_delay=1.0, multiplier=2.0, max_delay=5.0, jitter=False)
        assert [backoff_delay(config, n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_stays_within_cap(self):
        config = RetryConfig(initial_delay=4.0, max_delay=5.0, jitter=True)
        assert all(0 < backoff_delay(config, 1) <= 5.0 for _ in range(50))


class TestCancel:
    async def test_cancel_mid_stream(self, harness):
        never = asyncio.Event()

        async def body():
            yield b'data: {"text":"Hel"}\n\n'
            await never.wait()

        backend = Backend(lambda r: httpx.Response(200, headers=SSE, content=body()))
        conversation = harness.conversation(backend)
        seen = []
        async for result in conversation.send("hello"):
            seen.append(result.text)
            conversation.cancel()

        assert seen == ["Hel"]
        assert harness.types()[-1] is EventType.CANCELLED
        assert EventType.ERROR not in harness.types()
        assert harness.sink.messages == []

    async def test_cancel_during_session_setup_skips_the_request(self, harness):
        backend = Backend(_ok)
        conversation = harness.conversation(backend)
        harness.events.subscribe(EventType.SESSION_STARTED, lambda event: conversation.cancel())

        assert await _send(conversation) == []
        assert backend.calls == 0
        assert harness.types() == [EventType.SESSION_STARTED, EventType.CANCELLED]
        assert harness.sink.messages == []

    async def test_cancel_when_idle_is_harmless(self, harness):
        conversation = harness.conversation(Backend(_ok))
        conversation.cancel()
        assert await _send(conversation) == ["Hel", "Hello"]
