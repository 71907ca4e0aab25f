"""Wiring test: config -> app -> conversation -> database."""

import httpx
import pytest

from flowchat.app import FlowChatApp
from flowchat.config import AppConfig
from flowchat.core.events import EventType

from conftest import make_request, mock_http, sse_body


@pytest.fixture
async def app(tmp_path):
    body = sse_body('{"text":"Hi"}', '{"text":", Ada"}', "[DONE]")
    http = mock_http(lambda r: httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body))
    config = AppConfig(
        storage={"db_path": str(tmp_path / "app.db")},
        site={"name": "Example Store"},
        instances=[
            {
                "id": "support",
                "webhookUrl": "https://n8n.test/webhook/support",
                "isEnabled": True,
                "systemPrompt": "You work for {site_name}.",
            }
        ],
    )
    application = FlowChatApp(config, http_client=http)
    await application.start(run_scheduler=False)
    yield application
    await application.stop()
    await http.aclose()


class TestFlowChatApp:
    async def test_conversation_round_trip(self, app):
        conversation = await app.open_conversation("support", make_request(user_id="5"), "203.0.113.5")
        assert conversation.context["system_prompt"] == "You work for Example Store."

        texts = [r.text async for r in conversation.send("hello")]
        assert texts == ["Hi", "Hi, Ada"]

        messages = await app.session_repo.get_messages(conversation.get_session_id())
        assert [m.text for m in messages] == ["hello", "Hi, Ada"]
        assert [e.type for e in app.events.history(EventType.SESSION_STARTED)] == [EventType.SESSION_STARTED]

    async def test_resumed_session_does_not_announce_new_one(self, app):
        first = await app.open_conversation("support", make_request(), "c")
        again = await app.open_conversation("support", make_request(), "c", session_id=first.get_session_id())
        assert again.get_session_id() == first.get_session_id()
        assert len(app.events.history(EventType.SESSION_STARTED)) == 1

    async def test_sweep_runs_without_scheduler(self, app):
        assert await app.scheduler.run_sweep() == 0
