"""Evaluates a single targeting rule against a request context."""

from __future__ import annotations

import re
from functools import lru_cache

from flowchat.config import TargetingRule
from flowchat.core.context import RequestContext
from flowchat.core.types import Condition, RuleType
from flowchat.log import get_logger

logger = get_logger(__name__)

_MAX_PATTERN_LENGTH = 512


@lru_cache(maxsize=256)
def _wildcard_regex(pattern: str) -> re.Pattern[str]:
    escaped = re.escape(pattern).replace(r"\*", ".*").replace(r"\?", ".")
    return re.compile(f"^{escaped}$", re.IGNORECASE | re.DOTALL)


@lru_cache(maxsize=256)
def _user_regex(pattern: str) -> re.Pattern[str] | None:
    if len(pattern) > _MAX_PATTERN_LENGTH:
        return None
    # Accept both "/.../flags" and bare expressions
    flags = 0
    if len(pattern) > 1 and pattern.startswith("/") and pattern.rfind("/") > 0:
        end = pattern.rfind("/")
        modifiers = pattern[end + 1 :]
        if "i" in modifiers:
            flags |= re.IGNORECASE
        pattern = pattern[1:end]
    try:
        return re.compile(pattern, flags)
    except re.error:
        logger.warning("rule_regex_invalid", pattern=pattern)
        return None


def compare(value: str, pattern: str, condition: Condition) -> bool:
    """Apply one condition to one candidate string."""
    match condition:
        case Condition.EQUALS:
            return value == pattern
        case Condition.STARTS_WITH:
            return value.startswith(pattern)
        case Condition.ENDS_WITH:
            return value.endswith(pattern)
        case Condition.CONTAINS:
            return pattern in value
        case Condition.WILDCARD:
            return _wildcard_regex(pattern).match(value) is not None
        case Condition.REGEX:
            regex = _user_regex(pattern)
            return regex is not None and regex.search(value) is not None
    return False


def _rule_values(rule: TargetingRule) -> list[str]:
    values = rule.value if isinstance(rule.value, list) else [rule.value]
    return [v.strip() for v in values if isinstance(v, str) and v.strip()]


def _candidates(rule_type: RuleType, context: RequestContext) -> list[str]:
    match rule_type:
        case RuleType.URL_PATTERN:
            return [context.path]
        case RuleType.POST_TYPE:
            return [context.page.post_type] if context.page.post_type else []
        case RuleType.PAGE_ID:
            return [str(context.page.id)] if context.page.id is not None else []
        case RuleType.CATEGORY:
            return list(context.page.categories)
        case RuleType.USER_ROLE:
            if not context.visitor.is_authenticated:
                return ["guest"]
            return list(context.visitor.roles)
    return []


def matches(rule: TargetingRule, context: RequestContext) -> bool:
    """Return True if the rule selects this request.

    Never raises: an unknown rule type or condition, an empty value, or a
    pattern that does not compile all evaluate to False.
    """
    try:
        rule_type = RuleType(rule.type)
        condition = Condition(rule.condition)
    except ValueError:
        return False

    values = _rule_values(rule)
    if not values:
        return False

    candidates = _candidates(rule_type, context)
    try:
        return any(compare(candidate, value, condition) for candidate in candidates for value in values)
    except Exception as e:
        logger.warning("rule_evaluation_failed", rule_type=rule.type, error=str(e))
        return False
