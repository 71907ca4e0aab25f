"""Shared types and enumerations."""

from __future__ import annotations

from enum import StrEnum


class RuleType(StrEnum):
    URL_PATTERN = "url_pattern"
    POST_TYPE = "post_type"
    PAGE_ID = "page_id"
    CATEGORY = "category"
    USER_ROLE = "user_role"


class Condition(StrEnum):
    EQUALS = "equals"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    CONTAINS = "contains"
    WILDCARD = "wildcard"
    REGEX = "regex"


class SessionStatus(StrEnum):
    ACTIVE = "active"
    CLOSED = "closed"
    ARCHIVED = "archived"


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ErrorCategory(StrEnum):
    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    VALIDATION = "validation"
    FILE = "file"
    CONFIGURATION = "configuration"
    RATE_LIMIT = "rate_limit"
    SESSION = "session"
    INTERNAL = "internal"
    EXTERNAL = "external"


class RecoveryPolicy(StrEnum):
    RETRY = "retry"
    FALLBACK = "fallback"
    WAIT = "wait"
    REFRESH = "refresh"
    LOGIN = "login"
    NEW_SESSION = "new_session"
    NONE = "none"


class OperationType(StrEnum):
    SEND_MESSAGE = "send_message"
    API = "api"
    FALLBACK = "fallback"
    UPLOAD = "upload"
