"""Data models for storage layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from flowchat.core.types import Role, SessionStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SessionRecord:
    uuid: str
    instance_id: str
    visitor_id: str
    status: SessionStatus
    started_at: datetime
    last_activity_at: datetime
    user_id: Optional[str] = None
    closed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status is SessionStatus.ACTIVE


@dataclass(frozen=True, slots=True)
class MessagePart:
    type: str  # "text" | "image" | "file"
    text: str = ""
    url: str = ""
    name: str = ""
    media_type: str = ""

    def to_dict(self) -> dict[str, Any]:
        if self.type == "text":
            return {"type": "text", "text": self.text}
        data = {"type": self.type, "url": self.url}
        if self.name:
            data["name"] = self.name
        if self.media_type:
            data["mediaType"] = self.media_type
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MessagePart:
        return cls(
            type=data.get("type", "text"),
            text=data.get("text", ""),
            url=data.get("url", ""),
            name=data.get("name", ""),
            media_type=data.get("mediaType", ""),
        )


def text_parts(text: str) -> list[MessagePart]:
    return [MessagePart(type="text", text=text)]


@dataclass
class MessageRecord:
    session_uuid: str
    role: Role
    content: list[MessagePart]
    tool_calls: Optional[list[dict[str, Any]]] = None
    tool_results: Optional[list[dict[str, Any]]] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    @property
    def text(self) -> str:
        return "".join(part.text for part in self.content if part.type == "text")


@dataclass
class FallbackMessage:
    instance_id: str
    name: str
    email: str
    message: str
    status: str = "pending"
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None
