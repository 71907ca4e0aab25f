"""Error taxonomy, classification of low-level failures, and the rolling error log.

Every failure that reaches a caller is an ``ErrorRecord``: a stable code, a
category, a recovery policy and a user-facing message. Raw exception text is
only ever kept in ``debug_context`` (when debug mode is on) and in the logs.
"""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

import httpx

from flowchat.config import InstanceConfig
from flowchat.core.context import render
from flowchat.core.types import ErrorCategory, RecoveryPolicy
from flowchat.log import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ErrorDefinition:
    category: ErrorCategory
    message: str
    user_message: str
    recovery: RecoveryPolicy


_C = ErrorCategory
_R = RecoveryPolicy

ERROR_DEFINITIONS: dict[str, ErrorDefinition] = {
    # Connection (E1xxx)
    "E1001": ErrorDefinition(_C.CONNECTION, "Unable to connect to the chat backend",
                             "We're having trouble connecting. Please try again in a moment.", _R.RETRY),
    "E1002": ErrorDefinition(_C.CONNECTION, "Connection timeout",
                             "The connection timed out. Please check your internet and try again.", _R.RETRY),
    "E1003": ErrorDefinition(_C.CONNECTION, "Webhook URL unreachable",
                             "Chat service is temporarily unavailable. Please try again later.", _R.FALLBACK),
    "E1004": ErrorDefinition(_C.CONNECTION, "SSL/TLS certificate error",
                             "Secure connection failed. Please contact support.", _R.NONE),
    # Authentication (E2xxx)
    "E2001": ErrorDefinition(_C.AUTHENTICATION, "User not authenticated",
                             "Please log in to use the chat.", _R.LOGIN),
    "E2002": ErrorDefinition(_C.AUTHENTICATION, "Insufficient permissions",
                             "You don't have permission to access this chat.", _R.NONE),
    "E2003": ErrorDefinition(_C.AUTHENTICATION, "Session credentials expired",
                             "Your session has expired. Please refresh the page.", _R.REFRESH),
    "E2004": ErrorDefinition(_C.AUTHENTICATION, "Capability token invalid or expired",
                             "Security verification failed. Please refresh and try again.", _R.REFRESH),
    # Validation (E3xxx)
    "E3001": ErrorDefinition(_C.VALIDATION, "Message is empty", "Please enter a message.", _R.NONE),
    "E3002": ErrorDefinition(_C.VALIDATION, "Message too long",
                             "Your message is too long. Please keep it under {max_length} characters.", _R.NONE),
    "E3003": ErrorDefinition(_C.VALIDATION, "Invalid instance ID",
                             "Chat configuration error. Please contact support.", _R.NONE),
    "E3004": ErrorDefinition(_C.VALIDATION, "Invalid session ID",
                             "Session error. Starting a new conversation...", _R.NEW_SESSION),
    "E3005": ErrorDefinition(_C.VALIDATION, "Invalid input format",
                             "Invalid input. Please check and try again.", _R.NONE),
    # File (E4xxx)
    "E4001": ErrorDefinition(_C.FILE, "File too large",
                             "File is too large. Maximum size is {max_size}.", _R.NONE),
    "E4002": ErrorDefinition(_C.FILE, "Invalid file type", "This file type is not allowed.", _R.NONE),
    "E4003": ErrorDefinition(_C.FILE, "File upload failed",
                             "Failed to upload file. Please try again.", _R.RETRY),
    "E4004": ErrorDefinition(_C.FILE, "File not found", "The file could not be found.", _R.NONE),
    "E4005": ErrorDefinition(_C.FILE, "Too many files",
                             "Too many files. Maximum is {max_files} files.", _R.NONE),
    # Configuration (E5xxx)
    "E5001": ErrorDefinition(_C.CONFIGURATION, "Instance not found or disabled",
                             "Chat is not configured. Please contact the site administrator.", _R.NONE),
    "E5002": ErrorDefinition(_C.CONFIGURATION, "Webhook URL not configured",
                             "Chat service is not configured. Please contact support.", _R.NONE),
    "E5003": ErrorDefinition(_C.CONFIGURATION, "Invalid configuration",
                             "Configuration error. Please contact support.", _R.NONE),
    "E5004": ErrorDefinition(_C.CONFIGURATION, "Feature disabled",
                             "This feature is not available.", _R.NONE),
    # Rate limit (E6xxx)
    "E6001": ErrorDefinition(_C.RATE_LIMIT, "Too many requests",
                             "Too many messages. Please wait {retry_after} seconds before sending another.", _R.WAIT),
    "E6002": ErrorDefinition(_C.RATE_LIMIT, "Daily limit reached",
                             "You've reached your daily message limit. Please try again tomorrow.", _R.NONE),
    "E6003": ErrorDefinition(_C.RATE_LIMIT, "Concurrent request limit",
                             "Please wait for the current response to complete.", _R.WAIT),
    # Session (E7xxx)
    "E7001": ErrorDefinition(_C.SESSION, "Session creation failed",
                             "Failed to start chat session. Please refresh the page.", _R.REFRESH),
    "E7002": ErrorDefinition(_C.SESSION, "Session not found or not active",
                             "Session not found. Starting a new conversation...", _R.NEW_SESSION),
    # Internal (E8xxx)
    "E8001": ErrorDefinition(_C.INTERNAL, "Database error",
                             "An error occurred. Please try again.", _R.RETRY),
    "E8002": ErrorDefinition(_C.INTERNAL, "Unexpected error",
                             "An unexpected error occurred. Please try again.", _R.RETRY),
    # External (E9xxx)
    "E9001": ErrorDefinition(_C.EXTERNAL, "Backend workflow error",
                             "The chat service encountered an error. Please try again.", _R.RETRY),
    "E9002": ErrorDefinition(_C.EXTERNAL, "Backend response invalid",
                             "Received an invalid response. Please try again.", _R.RETRY),
    "E9003": ErrorDefinition(_C.EXTERNAL, "Backend service unavailable",
                             "Chat service is temporarily unavailable. Please try again later.", _R.FALLBACK),
    "E9004": ErrorDefinition(_C.EXTERNAL, "Backend rejected the request",
                             "The chat service could not handle this request.", _R.NONE),
}

_UNKNOWN = ErrorDefinition(_C.INTERNAL, "Unknown error", "An unexpected error occurred.", _R.NONE)

_HTTP_STATUS: dict[ErrorCategory, int] = {
    _C.AUTHENTICATION: 401,
    _C.VALIDATION: 400,
    _C.FILE: 400,
    _C.CONFIGURATION: 500,
    _C.RATE_LIMIT: 429,
    _C.SESSION: 400,
    _C.CONNECTION: 503,
    _C.EXTERNAL: 502,
    _C.INTERNAL: 500,
}

_QUIET_CATEGORIES = frozenset({_C.VALIDATION, _C.RATE_LIMIT, _C.SESSION})


@dataclass(frozen=True, slots=True)
class ErrorRecord:
    code: str
    category: ErrorCategory
    recovery: RecoveryPolicy
    user_message: str
    context: dict[str, Any] = field(default_factory=dict)
    debug_context: Optional[dict[str, Any]] = None

    @property
    def retryable(self) -> bool:
        return self.recovery is RecoveryPolicy.RETRY

    @property
    def fallback(self) -> bool:
        return self.recovery is RecoveryPolicy.FALLBACK

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS.get(self.category, 500)

    @property
    def retry_after(self) -> Optional[float]:
        return self.context.get("retry_after")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "code": self.code,
            "category": self.category.value,
            "recovery": self.recovery.value,
            "message": self.user_message,
        }
        if self.retry_after is not None:
            data["retryAfter"] = self.retry_after
        if self.debug_context is not None:
            data["debug"] = self.debug_context
        return data


class ChatError(Exception):
    """Raised to callers of the core; carries the classified record."""

    def __init__(self, record: ErrorRecord):
        super().__init__(record.user_message)
        self.record = record

    @property
    def code(self) -> str:
        return self.record.code

    @property
    def category(self) -> ErrorCategory:
        return self.record.category

    @property
    def recovery(self) -> RecoveryPolicy:
        return self.record.recovery


class RateLimitExceeded(Exception):
    def __init__(self, operation: str, retry_after: float):
        super().__init__(f"rate limit exceeded for {operation}, retry in {retry_after:.1f}s")
        self.operation = operation
        self.retry_after = retry_after


class SessionInvalidError(Exception):
    """A client-supplied session id is unknown, foreign to the instance, or not active."""


class BackendStatusError(Exception):
    def __init__(self, status_code: int, body: str = ""):
        super().__init__(f"backend returned HTTP {status_code}")
        self.status_code = status_code
        self.body = body


class BackendStreamError(Exception):
    """The backend reported an error inside an otherwise healthy response."""


class MalformedPayloadError(Exception):
    """A payload that parsed but does not have the expected shape, or a broken JSON document."""


@dataclass(frozen=True, slots=True)
class ErrorLogEntry:
    record: ErrorRecord
    internal_message: str
    timestamp: datetime


class ErrorLog:
    """Bounded rolling log of recent errors for diagnostics."""

    def __init__(self, max_entries: int = 100):
        self._entries: deque[ErrorLogEntry] = deque(maxlen=max_entries)

    def append(self, record: ErrorRecord, internal_message: str) -> None:
        self._entries.append(
            ErrorLogEntry(record=record, internal_message=internal_message, timestamp=datetime.now(timezone.utc))
        )

    def recent(self, limit: int = 50) -> list[ErrorLogEntry]:
        return list(reversed(self._entries))[:limit]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def _fallback_or(instance: InstanceConfig | None, otherwise: RecoveryPolicy) -> RecoveryPolicy:
    if instance is not None and instance.fallback.enabled:
        return RecoveryPolicy.FALLBACK
    return otherwise


class ErrorClassifier:
    """Maps failures to the closed taxonomy. Stateless apart from the optional log."""

    def __init__(self, error_log: ErrorLog | None = None, debug: bool = False):
        self._error_log = error_log
        self._debug = debug

    def create(
        self,
        code: str,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> ErrorRecord:
        definition = ERROR_DEFINITIONS.get(code, _UNKNOWN)
        context = dict(context or {})
        user_message = render(definition.user_message, {k: str(v) for k, v in context.items()})

        debug_context = None
        if self._debug:
            debug_context = {"internal_message": definition.message, "context": context}
            if cause is not None:
                debug_context["exception"] = repr(cause)

        record = ErrorRecord(
            code=code,
            category=definition.category,
            recovery=definition.recovery,
            user_message=user_message,
            context=context,
            debug_context=debug_context,
        )
        self._log(record, definition.message, cause)
        return record

    def classify(
        self,
        exc: BaseException,
        instance: InstanceConfig | None = None,
        prior: Iterable[ErrorRecord] = (),
    ) -> ErrorRecord:
        """Classify one failure. ``prior`` holds the records already seen in this exchange."""
        prior_codes = {r.code for r in prior}

        if isinstance(exc, ChatError):
            return exc.record
        if isinstance(exc, RateLimitExceeded):
            return self.create("E6001", {"retry_after": max(1, math.ceil(exc.retry_after))}, exc)
        if isinstance(exc, SessionInvalidError):
            return self.create("E7002", cause=exc)
        if isinstance(exc, httpx.TimeoutException):
            return self.create("E1002", cause=exc)
        if isinstance(exc, httpx.ConnectError) and "certificate" in str(exc).lower():
            return self.create("E1004", cause=exc)
        if isinstance(exc, httpx.TransportError):
            return self.create("E1001", cause=exc)
        if isinstance(exc, BackendStatusError):
            if exc.status_code >= 500 or exc.status_code in (408, 429):
                return self.create("E9001", {"status": exc.status_code}, exc)
            record = self.create("E9004", {"status": exc.status_code}, exc)
            return replace(record, recovery=_fallback_or(instance, RecoveryPolicy.NONE))
        if isinstance(exc, BackendStreamError):
            return self.create("E9001", cause=exc)
        if isinstance(exc, MalformedPayloadError):
            record = self.create("E9002", cause=exc)
            if "E9002" in prior_codes:
                return replace(record, recovery=_fallback_or(instance, RecoveryPolicy.NONE))
            return record

        record = self.create("E8002", cause=exc)
        if "E8002" in prior_codes:
            return replace(record, recovery=RecoveryPolicy.NONE)
        return record

    def escalate(self, record: ErrorRecord, instance: InstanceConfig | None = None) -> ErrorRecord:
        """Retries are exhausted: decide what the caller should do instead."""
        if record.recovery is not RecoveryPolicy.RETRY:
            return record
        if record.category is ErrorCategory.EXTERNAL and instance is not None and instance.fallback.enabled:
            return replace(record, recovery=RecoveryPolicy.FALLBACK)
        if record.category is ErrorCategory.INTERNAL:
            return replace(record, recovery=RecoveryPolicy.NONE)
        return record

    def _log(self, record: ErrorRecord, internal_message: str, cause: BaseException | None) -> None:
        log = logger.warning if record.category in _QUIET_CATEGORIES else logger.error
        log(
            "chat_error",
            code=record.code,
            category=record.category.value,
            recovery=record.recovery.value,
            detail=internal_message,
            error=str(cause) if cause is not None else None,
        )
        if self._error_log is not None:
            self._error_log.append(record, internal_message)
