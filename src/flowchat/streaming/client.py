"""Streaming client for the automation backend's webhook endpoint."""

from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping, Optional

import httpx

from flowchat.config import InstanceConfig, StreamingConfig
from flowchat.core.errors import BackendStatusError, BackendStreamError, MalformedPayloadError
from flowchat.log import get_logger, webhook_host
from flowchat.streaming.decoder import FrameDecoder, FrameKind, StreamFormat, stream_format_for

logger = get_logger(__name__)

ACCEPT_HEADER = "text/event-stream, application/json"

# Decoded results waiting for the consumer; the producer stops reading the body when full
STREAM_QUEUE_SIZE = 32

_DOCUMENT_TEXT_FIELDS = ("output", "text", "message", "response", "content")


@dataclass(frozen=True, slots=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class PartialResult:
    """The full text accumulated so far in one exchange, not just the latest delta."""

    text: str
    tool_calls: tuple[ToolCall, ...] = ()
    final: bool = False
    session_id: Optional[str] = None


class _End:
    pass


_END = _End()


@dataclass
class StreamState:
    """Lives for one exchange only."""

    text: str = ""
    open: bool = True
    cancelled: bool = False
    task: Optional[asyncio.Task] = None
    queue: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=STREAM_QUEUE_SIZE))


def _parse_tool_calls(raw: Any) -> tuple[ToolCall, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise MalformedPayloadError("tool_calls is not a list")
    calls = []
    for item in raw:
        if not isinstance(item, dict) or not isinstance(item.get("name"), str):
            raise MalformedPayloadError("tool call without a name")
        arguments = item.get("arguments") or {}
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments)
            except json.JSONDecodeError as e:
                raise MalformedPayloadError("tool call arguments are not JSON") from e
        if not isinstance(arguments, dict):
            raise MalformedPayloadError("tool call arguments are not an object")
        calls.append(ToolCall(id=str(item.get("id") or uuid.uuid4().hex[:12]), name=item["name"], arguments=arguments))
    return tuple(calls)


def apply_payload(state: StreamState, payload: str) -> PartialResult | None:
    """Fold one decoded payload into the stream state.

    Returns the result to emit, or None when the payload carried nothing
    visible. Text that is not JSON is taken as a raw text delta.
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        if not payload.strip():
            return None
        state.text += payload
        return PartialResult(text=state.text)

    if isinstance(data, str):
        delta: Any = data
        tool_calls: tuple[ToolCall, ...] = ()
    elif isinstance(data, dict):
        if data.get("error") or data.get("type") == "error":
            raise BackendStreamError(str(data.get("error") or data.get("content") or "backend reported an error"))
        delta = data.get("text")
        if delta is None and data.get("type") == "item":
            delta = data.get("content")
        if delta is not None and not isinstance(delta, str):
            raise MalformedPayloadError("text delta is not a string")
        tool_calls = _parse_tool_calls(data.get("tool_calls"))
    elif isinstance(data, list):
        raise MalformedPayloadError("unexpected JSON array frame")
    else:
        # bare numbers and literals are just text
        delta, tool_calls = payload, ()

    if delta:
        state.text += delta
    if delta or tool_calls:
        return PartialResult(text=state.text, tool_calls=tool_calls)
    return None


def parse_document(state: StreamState, content_type: str, body: bytes) -> PartialResult:
    """Single-document responses: one terminal result."""
    text = body.decode("utf-8", errors="replace")
    session_id = None

    if "json" not in content_type.lower():
        output = text
    else:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            lines = [line for line in text.splitlines() if line.strip()]
            if len(lines) < 2:
                raise MalformedPayloadError("response body is not valid JSON") from e
            # Some backends stream line-delimited JSON under a plain JSON content type.
            # Every line must then be a JSON object or string; anything else is a broken document.
            decoder = FrameDecoder(StreamFormat.NDJSON)
            payloads = [f.payload for f in decoder.feed(text) + decoder.flush() if f.kind is FrameKind.DATA]
            for payload in payloads:
                try:
                    line = json.loads(payload)
                except json.JSONDecodeError:
                    raise MalformedPayloadError("response body is not valid JSON") from e
                if not isinstance(line, (dict, str)):
                    raise MalformedPayloadError("response body is not valid JSON") from e
            for payload in payloads:
                apply_payload(state, payload)
            return PartialResult(text=state.text, final=True)

        if isinstance(data, list) and data and isinstance(data[0], dict):
            data = data[0]
        if isinstance(data, str):
            output = data
        elif isinstance(data, dict):
            if data.get("error"):
                raise BackendStreamError(str(data["error"]))
            output = next((data[k] for k in _DOCUMENT_TEXT_FIELDS if isinstance(data.get(k), str)), None)
            if output is None:
                raise MalformedPayloadError("response has no output text")
            if isinstance(data.get("sessionId"), str):
                session_id = data["sessionId"]
        else:
            raise MalformedPayloadError("unexpected JSON document")

    state.text = output
    return PartialResult(text=output, final=True, session_id=session_id)


class StreamingClient:
    """Posts a message to the webhook and yields incremental results.

    Each ``send`` gets its own StreamState. ``cancel`` aborts the exchange that
    is currently open on this client; use one client per conversation.
    """

    def __init__(self, config: StreamingConfig | None = None, http_client: httpx.AsyncClient | None = None):
        self._config = config or StreamingConfig()
        self._client = http_client
        self._owns_client = http_client is None
        self._state: StreamState | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._config.connect_timeout,
            read=self._config.read_timeout,
            write=self._config.write_timeout,
            pool=self._config.connect_timeout,
        )

    @property
    def is_streaming(self) -> bool:
        return self._state is not None and self._state.open

    async def send(
        self,
        instance: InstanceConfig,
        session_id: str,
        message: str,
        context: Mapping[str, Any],
        token: str | None = None,
    ) -> AsyncIterator[PartialResult]:
        """Yield results until the backend finishes.

        Raises the low-level failure (httpx error, BackendStatusError,
        BackendStreamError, MalformedPayloadError) for the caller to classify.
        After ``cancel()`` the iterator just stops.
        """
        payload = {
            "action": "sendMessage",
            "sessionId": session_id,
            "message": message,
            "context": dict(context),
        }
        headers = {"Accept": ACCEPT_HEADER}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        if self.is_streaming:
            logger.warning("stream_overlap", session_id=session_id)

        state = StreamState()
        self._state = state
        state.task = asyncio.create_task(self._produce(state, instance.webhook_url, payload, headers))
        logger.info("stream_started", instance_id=instance.id, session_id=session_id, host=webhook_host(instance.webhook_url))

        try:
            while True:
                item = await state.queue.get()
                if state.cancelled or isinstance(item, _End):
                    break
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            state.open = False
            if not state.task.done():
                state.task.cancel()
                await asyncio.gather(state.task, return_exceptions=True)
            if self._state is state:
                self._state = None
            if state.cancelled:
                logger.info("stream_cancelled", session_id=session_id, chars=len(state.text))
            else:
                logger.debug("stream_closed", session_id=session_id, chars=len(state.text))

    def cancel(self) -> None:
        """Abort the open exchange. Safe to call repeatedly or after completion."""
        state = self._state
        if state is None or not state.open or state.cancelled:
            return
        state.cancelled = True
        if state.task is not None and not state.task.done():
            state.task.cancel()
        try:
            state.queue.put_nowait(_END)
        except asyncio.QueueFull:
            # the consumer checks the cancelled flag on its next item
            pass

    async def _produce(self, state: StreamState, url: str, payload: dict[str, Any], headers: dict[str, str]) -> None:
        try:
            client = self._get_client()
            async with client.stream("POST", url, json=payload, headers=headers, timeout=self._timeout()) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise BackendStatusError(response.status_code, body[:2000])

                content_type = response.headers.get("content-type", "")
                fmt = stream_format_for(content_type)
                if fmt is None:
                    await state.queue.put(parse_document(state, content_type, await response.aread()))
                else:
                    await self._consume_stream(state, response, FrameDecoder(fmt))
            await state.queue.put(_END)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await state.queue.put(e)

    @staticmethod
    async def _consume_stream(state: StreamState, response: httpx.Response, decoder: FrameDecoder) -> None:
        async for chunk in response.aiter_text():
            for frame in decoder.feed(chunk):
                if frame.kind is FrameKind.DATA:
                    result = apply_payload(state, frame.payload)
                    if result is not None:
                        await state.queue.put(result)
            if decoder.done:
                return
        for frame in decoder.flush():
            if frame.kind is FrameKind.DATA:
                result = apply_payload(state, frame.payload)
                if result is not None:
                    await state.queue.put(result)

    async def aclose(self) -> None:
        """Close the underlying connection pool if this client created it."""
        self.cancel()
        if self._client is not None and self._owns_client:
            try:
                await self._client.aclose()
            finally:
                self._client = None
