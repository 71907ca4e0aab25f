"""Request context, flat context map assembly, and system-prompt rendering."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Mapping, Optional
from urllib.parse import urlsplit
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flowchat.config import InstanceConfig, SiteConfig
from flowchat.log import get_logger

logger = get_logger(__name__)

CONTENT_PREVIEW_CHARS = 2000


@dataclass(frozen=True, slots=True)
class VisitorInfo:
    """Who is looking at the page. An empty user_id means a guest."""

    user_id: Optional[str] = None
    display_name: str = ""
    email: str = ""
    roles: tuple[str, ...] = ()
    first_name: str = ""
    last_name: str = ""
    ip: str = ""
    user_agent: str = ""

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)

    @property
    def primary_role(self) -> str:
        if not self.is_authenticated:
            return "guest"
        return self.roles[0] if self.roles else "subscriber"


@dataclass(frozen=True, slots=True)
class PageInfo:
    id: Optional[str] = None
    title: str = ""
    type: str = "unknown"
    post_type: str = ""
    slug: str = ""
    excerpt: str = ""
    content: str = ""
    author: str = ""
    categories: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class CartItem:
    name: str
    quantity: int
    price: str = ""


@dataclass(frozen=True, slots=True)
class CommerceSnapshot:
    """Cart state handed over by the commerce collaborator, when one is active."""

    cart_total: str = ""
    cart_count: int = 0
    currency: str = ""
    items: tuple[CartItem, ...] = ()


@dataclass(frozen=True, slots=True)
class RequestContext:
    """Built once per page view; never persisted as-is."""

    url: str
    visitor: VisitorInfo = field(default_factory=VisitorInfo)
    page: PageInfo = field(default_factory=PageInfo)
    commerce: Optional[CommerceSnapshot] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def path(self) -> str:
        return urlsplit(self.url).path or "/"


def visitor_id_for(visitor: VisitorInfo) -> str:
    """Stable visitor key: the account for logged-in users, a fingerprint for guests."""
    if visitor.is_authenticated:
        return f"user_{visitor.user_id}"
    digest = hashlib.md5(f"{visitor.ip}{visitor.user_agent}".encode("utf-8")).hexdigest()
    return f"guest_{digest[:16]}"


# Tag names used by prompts written for earlier releases.
LEGACY_ALIASES: dict[str, str] = {
    "current_page_url": "page_url",
    "current_page_title": "page_title",
    "current_page_content": "page_content",
    "current_page_excerpt": "page_excerpt",
    "current_page_type": "page_type",
    "user_name": "visitor_name",
    "user_email": "visitor_email",
    "user_role": "visitor_role",
    "user_logged_in": "visitor_logged_in",
    "current_date": "datetime_date",
    "current_time": "datetime_time",
    "current_day": "datetime_day",
    "woo_cart_total": "commerce_cart_total",
    "woo_cart_count": "commerce_cart_count",
    "woo_cart_items": "commerce_cart_items",
    "woo_currency": "commerce_currency",
}


class ContextBuilder:
    """Produces the flat key -> value map sent to the backend and used for prompt tags.

    Pure and synchronous: everything it needs arrives in the site config and
    the request context.
    """

    def __init__(self, site: SiteConfig):
        self._site = site

    def build_context(self, instance: InstanceConfig, request: RequestContext) -> dict[str, str]:
        context: dict[str, str] = {}
        context.update(self._site_context())
        context.update(self._page_context(request))
        context.update(self._visitor_context(request.visitor))
        context.update(self._datetime_context(request.timestamp))
        if request.commerce is not None:
            context.update(self._commerce_context(request.commerce))

        for legacy, key in LEGACY_ALIASES.items():
            if key in context:
                context[legacy] = context[key]

        context["instance_id"] = instance.id
        context["instance_name"] = instance.name
        return context

    def build_system_prompt(self, instance: InstanceConfig, context: Mapping[str, str]) -> str:
        if not instance.system_prompt:
            return ""
        template = PromptTemplate(instance.system_prompt)
        missing = template.missing(context)
        if missing:
            logger.warning("prompt_tags_unresolved", instance_id=instance.id, tags=sorted(missing))
        return template.render(context)

    def _site_context(self) -> dict[str, str]:
        return {
            "site_name": self._site.name,
            "site_url": self._site.url,
            "site_description": self._site.description,
            "site_language": self._site.language,
            "site_timezone": self._site.timezone,
        }

    @staticmethod
    def _page_context(request: RequestContext) -> dict[str, str]:
        page = request.page
        context = {
            "page_url": request.url,
            "page_path": request.path,
            "page_title": page.title,
            "page_type": page.type,
            "page_excerpt": page.excerpt,
            "page_content": " ".join(page.content.split())[:CONTENT_PREVIEW_CHARS],
        }
        if page.id is not None:
            context["page_id"] = str(page.id)
        if page.slug:
            context["page_slug"] = page.slug
        if page.author:
            context["page_author"] = page.author
        if page.categories:
            context["page_categories"] = ", ".join(page.categories)
        if page.tags:
            context["page_tags"] = ", ".join(page.tags)
        return context

    @staticmethod
    def _visitor_context(visitor: VisitorInfo) -> dict[str, str]:
        if not visitor.is_authenticated:
            return {
                "visitor_id": visitor_id_for(visitor),
                "visitor_name": "Guest",
                "visitor_email": "",
                "visitor_role": "guest",
                "visitor_logged_in": "no",
            }
        return {
            "visitor_id": visitor_id_for(visitor),
            "visitor_name": visitor.display_name,
            "visitor_email": visitor.email,
            "visitor_role": visitor.primary_role,
            "visitor_logged_in": "yes",
            "visitor_first_name": visitor.first_name,
            "visitor_last_name": visitor.last_name,
        }

    def _datetime_context(self, timestamp: datetime) -> dict[str, str]:
        try:
            tz = ZoneInfo(self._site.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("site_timezone_invalid", timezone=self._site.timezone)
            tz = ZoneInfo("UTC")
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        now = timestamp.astimezone(tz)
        hour = now.hour % 12 or 12
        return {
            "datetime_date": f"{now:%B} {now.day}, {now.year}",
            "datetime_time": f"{hour}:{now:%M} {'am' if now.hour < 12 else 'pm'}",
            "datetime_day": f"{now:%A}",
            "datetime_iso": now.isoformat(),
            "datetime_timestamp": str(int(now.timestamp())),
        }

    @staticmethod
    def _commerce_context(commerce: CommerceSnapshot) -> dict[str, str]:
        return {
            "commerce_cart_total": commerce.cart_total,
            "commerce_cart_count": str(commerce.cart_count),
            "commerce_currency": commerce.currency,
            "commerce_cart_items": ", ".join(f"{item.name} x{item.quantity}" for item in commerce.items),
        }


_TAG_PATTERN = re.compile(r"\{([a-z][a-z0-9_]*)\}")


class PromptTemplate:
    """Flat ``{tag}`` substitution with no control flow.

    Tags without a value are left in place so a misconfigured prompt is
    visible in what the backend receives. Substitution is a single pass:
    substituted values are not rescanned, so a value that itself contains
    a tag is inserted literally.
    """

    def __init__(self, text: str):
        self.text = text

    def placeholders(self) -> set[str]:
        return set(_TAG_PATTERN.findall(self.text))

    def missing(self, context: Mapping[str, str]) -> set[str]:
        return {tag for tag in self.placeholders() if tag not in context}

    def render(self, context: Mapping[str, str]) -> str:
        def _replace(match: re.Match) -> str:
            value = context.get(match.group(1))
            if value is None:
                return match.group(0)
            return str(value)

        return _TAG_PATTERN.sub(_replace, self.text)


def render(template: str, context: Mapping[str, str]) -> str:
    """Render a template string against a flat context map."""
    return PromptTemplate(template).render(context)
