"""Shared fixtures: temporary database, fake clocks, instance factory, fake backend."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable

import httpx
import pytest

from flowchat.config import InstanceConfig
from flowchat.core.context import RequestContext, VisitorInfo
from flowchat.storage.database import Database
from flowchat.storage.session_repo import SessionRepository


class Clock:
    """Settable wall clock for session timing."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 12, 10, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class Ticker:
    """Settable monotonic clock for rate limiting."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_instance(instance_id: str = "support", **overrides: Any) -> InstanceConfig:
    data: dict[str, Any] = {
        "id": instance_id,
        "name": instance_id.title(),
        "webhook_url": f"https://n8n.test/webhook/{instance_id}",
        "is_enabled": True,
    }
    data.update(overrides)
    return InstanceConfig(**data)


def make_request(url: str = "https://example.com/", **visitor: Any) -> RequestContext:
    return RequestContext(url=url, visitor=VisitorInfo(**visitor))


def sse_body(*payloads: str) -> bytes:
    return "".join(f"data: {p}\n\n" for p in payloads).encode("utf-8")


async def chunked(*chunks: bytes) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk


def mock_http(handler: Callable[[httpx.Request], Any]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "flowchat-test.db"))
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def repo(db) -> SessionRepository:
    return SessionRepository(db)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def ticker() -> Ticker:
    return Ticker()
