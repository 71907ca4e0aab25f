"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _StoredModel(BaseModel):
    """Instance definitions are stored camelCase; snake_case is accepted too."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TargetingRule(_StoredModel):
    # Kept as plain strings so an unknown type or condition fails closed in the matcher
    type: str
    condition: str = "contains"
    value: str | list[str] = ""


class TargetingConfig(_StoredModel):
    enabled: bool = False
    priority: int = 0
    rules: list[TargetingRule] = Field(default_factory=list)


class AccessPolicy(_StoredModel):
    require_login: bool = False
    allowed_roles: list[str] = Field(default_factory=list)
    denied_message: str = "Please log in to use this chat."


class FeatureFlags(_StoredModel):
    file_upload: bool = False
    file_types: list[str] = Field(
        default_factory=lambda: ["image/jpeg", "image/png", "image/gif", "application/pdf"]
    )
    max_file_size: int = 10 * 1024 * 1024
    voice_input: bool = True
    show_typing_indicator: bool = True
    enable_history: bool = True
    enable_feedback: bool = False
    max_message_length: int = 10000


class FallbackPolicy(_StoredModel):
    enabled: bool = True
    email: str = ""
    message: str = "Our chat is temporarily unavailable. Please leave a message."


class InstanceConfig(_StoredModel):
    id: str
    name: str = "New Chat"
    webhook_url: str = ""
    is_enabled: bool = False
    is_default: bool = False

    # Appearance
    theme: str = "light"
    primary_color: str = "#3b82f6"

    # Content
    chat_title: str = "Chat"
    welcome_message: str = "Hi! How can I help you today?"
    placeholder_text: str = "Type your message..."
    system_prompt: str = ""
    suggested_prompts: list[str] = Field(default_factory=list)

    # UI options
    show_header: bool = True
    show_timestamp: bool = False
    show_avatar: bool = True
    avatar_url: str = ""
    bubble: dict[str, Any] = Field(default_factory=dict)
    auto_open: dict[str, Any] = Field(default_factory=dict)

    targeting: TargetingConfig = Field(default_factory=TargetingConfig)
    access: AccessPolicy = Field(default_factory=AccessPolicy)
    features: FeatureFlags = Field(default_factory=FeatureFlags)
    fallback: FallbackPolicy = Field(default_factory=FallbackPolicy)


class SiteConfig(BaseModel):
    name: str = ""
    url: str = ""
    description: str = ""
    language: str = "en_US"
    timezone: str = "UTC"


class StreamingConfig(BaseModel):
    connect_timeout: float = 10.0
    read_timeout: float = 30.0  # no bytes for this long counts as a connection failure
    write_timeout: float = 10.0


class RetryConfig(BaseModel):
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True


class SessionConfig(BaseModel):
    idle_timeout_minutes: int = 30
    retention_days: int = 90


class RateLimitRule(BaseModel):
    threshold: int
    window_seconds: float


def _default_rate_limits() -> dict[str, RateLimitRule]:
    return {
        "send_message": RateLimitRule(threshold=20, window_seconds=60),
        "api": RateLimitRule(threshold=60, window_seconds=60),
        "fallback": RateLimitRule(threshold=1, window_seconds=60),
        "upload": RateLimitRule(threshold=10, window_seconds=60),
    }


class SchedulerConfig(BaseModel):
    timezone: str = "UTC"
    sweep_cron: str = "0 * * * *"


class StorageConfig(BaseModel):
    db_path: str = "./data/flowchat.db"


class AppConfig(BaseModel):
    log_level: str = "INFO"
    data_dir: str = "./data"
    debug: bool = False
    site: SiteConfig = Field(default_factory=SiteConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    sessions: SessionConfig = Field(default_factory=SessionConfig)
    rate_limits: dict[str, RateLimitRule] = Field(default_factory=_default_rate_limits)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    instances: list[InstanceConfig] = Field(default_factory=list)

    def model_post_init(self, __context: Any) -> None:
        # A partial rate_limits section only overrides the operations it names
        merged = _default_rate_limits()
        merged.update(self.rate_limits)
        self.rate_limits = merged


_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def _interpolate_env_vars(text: str, extra: dict[str, str] | None = None) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if extra and var_name in extra:
            return extra[var_name]
        value = os.environ.get(var_name)
        if value is None:
            return match.group(0)
        return value

    return _ENV_VAR_PATTERN.sub(_replace, text)


def load_config(config_path: str | Path = "config.yaml", env_path: Optional[str | Path] = ".env") -> AppConfig:
    """Load and validate configuration from YAML file with env-var interpolation."""
    if env_path is not None:
        env_file = Path(env_path)
        if env_file.exists():
            load_dotenv(env_file)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    raw_text = config_file.read_text(encoding="utf-8")

    # First pass: extract data_dir for self-referencing
    raw_data = yaml.safe_load(raw_text) or {}
    data_dir = _interpolate_env_vars(str(raw_data.get("data_dir", "./data")))

    # Second pass: interpolate all env vars
    interpolated = _interpolate_env_vars(raw_text, extra={"data_dir": data_dir})
    data = yaml.safe_load(interpolated) or {}

    return AppConfig(**data)
