"""Tests for the context map and prompt rendering."""

import hashlib
from datetime import datetime, timezone

from flowchat.config import SiteConfig
from flowchat.core.context import (
    CartItem,
    CommerceSnapshot,
    ContextBuilder,
    PageInfo,
    PromptTemplate,
    RequestContext,
    VisitorInfo,
    render,
    visitor_id_for,
)

from conftest import make_instance

SITE = SiteConfig(name="Example Store", url="https://example.com", description="Gear", timezone="UTC")
STAMP = datetime(2024, 12, 10, 15, 45, tzinfo=timezone.utc)


def _request(**kwargs) -> RequestContext:
    kwargs.setdefault("url", "https://example.com/pricing/enterprise?ref=nav")
    kwargs.setdefault("timestamp", STAMP)
    return RequestContext(**kwargs)


class TestBuildContext:
    def test_site_page_and_datetime_keys(self):
        ctx = ContextBuilder(SITE).build_context(
            make_instance("sales"),
            _request(page=PageInfo(id="12", title="Enterprise", type="page", slug="enterprise")),
        )
        assert ctx["site_name"] == "Example Store"
        assert ctx["page_url"] == "https://example.com/pricing/enterprise?ref=nav"
        assert ctx["page_path"] == "/pricing/enterprise"
        assert ctx["page_title"] == "Enterprise"
        assert ctx["page_id"] == "12"
        assert ctx["datetime_date"] == "December 10, 2024"
        assert ctx["datetime_time"] == "3:45 pm"
        assert ctx["datetime_day"] == "Tuesday"
        assert ctx["instance_id"] == "sales"

    def test_site_timezone_is_applied(self):
        site = SiteConfig(name="x", timezone="Asia/Tokyo")
        ctx = ContextBuilder(site).build_context(make_instance(), _request())
        assert ctx["datetime_date"] == "December 11, 2024"
        assert ctx["datetime_time"] == "12:45 am"

    def test_guest_visitor(self):
        ctx = ContextBuilder(SITE).build_context(make_instance(), _request())
        assert ctx["visitor_name"] == "Guest"
        assert ctx["visitor_role"] == "guest"
        assert ctx["visitor_logged_in"] == "no"
        assert ctx["visitor_id"].startswith("guest_")

    def test_authenticated_visitor(self):
        visitor = VisitorInfo(user_id="42", display_name="Ada", email="ada@example.com", roles=("customer",))
        ctx = ContextBuilder(SITE).build_context(make_instance(), _request(visitor=visitor))
        assert ctx["visitor_id"] == "user_42"
        assert ctx["visitor_name"] == "Ada"
        assert ctx["visitor_role"] == "customer"
        assert ctx["visitor_logged_in"] == "yes"

    def test_commerce_keys_only_with_snapshot(self):
        builder = ContextBuilder(SITE)
        assert not any(k.startswith("commerce_") for k in builder.build_context(make_instance(), _request()))

        cart = CommerceSnapshot(
            cart_total="59.00", cart_count=3, currency="EUR",
            items=(CartItem("Tent", 1), CartItem("Peg", 2)),
        )
        ctx = builder.build_context(make_instance(), _request(commerce=cart))
        assert ctx["commerce_cart_total"] == "59.00"
        assert ctx["commerce_cart_count"] == "3"
        assert ctx["commerce_cart_items"] == "Tent x1, Peg x2"
        assert ctx["woo_cart_total"] == "59.00"

    def test_legacy_aliases(self):
        ctx = ContextBuilder(SITE).build_context(make_instance(), _request())
        assert ctx["current_page_url"] == ctx["page_url"]
        assert ctx["user_name"] == ctx["visitor_name"]
        assert ctx["current_date"] == ctx["datetime_date"]

    def test_page_content_is_collapsed_and_truncated(self):
        page = PageInfo(content="a  b\n\n c" + " word" * 1000)
        ctx = ContextBuilder(SITE).build_context(make_instance(), _request(page=page))
        assert ctx["page_content"].startswith("a b c word")
        assert len(ctx["page_content"]) == 2000


class TestVisitorId:
    def test_user_id(self):
        assert visitor_id_for(VisitorInfo(user_id="9")) == "user_9"

    def test_guest_fingerprint(self):
        visitor = VisitorInfo(ip="203.0.113.5", user_agent="Mozilla/5.0")
        expected = hashlib.md5(b"203.0.113.5Mozilla/5.0").hexdigest()[:16]
        assert visitor_id_for(visitor) == f"guest_{expected}"
        assert visitor_id_for(visitor) == visitor_id_for(VisitorInfo(ip="203.0.113.5", user_agent="Mozilla/5.0"))


class TestPromptTemplate:
    def test_substitutes_known_tags(self):
        assert render("Hi {visitor_name} on {site_name}", {"visitor_name": "Ada", "site_name": "Shop"}) == "Hi Ada on Shop"

    def test_unknown_tags_left_verbatim(self):
        assert render("Cart: {commerce_cart_total}", {}) == "Cart: {commerce_cart_total}"

    def test_render_is_idempotent(self):
        ctx = {"a": "1", "b": "two"}
        template = "{a} and {b} and {missing} and {a}"
        once = render(template, ctx)
        assert render(once, ctx) == once
        assert once == "1 and two and {missing} and 1"

    def test_values_are_not_rescanned(self):
        ctx = {"site_name": "Acme", "page_title": "Use {site_name} today"}
        assert render("Page: {page_title}", ctx) == "Page: Use {site_name} today"
        # re-rendering output is only stable when no value carries a tag
        assert render(render("Page: {page_title}", ctx), ctx) == "Page: Use Acme today"

    def test_non_tag_braces_untouched(self):
        assert render('JSON {"key": 1} {Upper}', {"key": "x", "Upper": "y"}) == 'JSON {"key": 1} {Upper}'

    def test_placeholders_and_missing(self):
        template = PromptTemplate("{site_name} {page_title} {page_title} {nope}")
        assert template.placeholders() == {"site_name", "page_title", "nope"}
        assert template.missing({"site_name": "x", "page_title": "y"}) == {"nope"}

    def test_system_prompt_rendered_from_context(self):
        instance = make_instance(system_prompt="You help on {site_name}. Today is {datetime_day}.")
        builder = ContextBuilder(SITE)
        ctx = builder.build_context(instance, _request())
        assert builder.build_system_prompt(instance, ctx) == "You help on Example Store. Today is Tuesday."

    def test_empty_system_prompt(self):
        builder = ContextBuilder(SITE)
        assert builder.build_system_prompt(make_instance(), {}) == ""
