"""Picks the chat instance for a page from priority-ordered targeting rules."""

from __future__ import annotations

from typing import Sequence

from flowchat.config import InstanceConfig
from flowchat.core.context import RequestContext, VisitorInfo
from flowchat.core.registry import ConfigStore
from flowchat.log import get_logger
from flowchat.routing.matcher import matches

logger = get_logger(__name__)


def is_routable(instance: InstanceConfig) -> bool:
    return instance.is_enabled and instance.targeting.enabled and bool(instance.targeting.rules)


def instance_matches(instance: InstanceConfig, context: RequestContext) -> bool:
    """Any single rule is enough; rules of different types are never combined."""
    return any(matches(rule, context) for rule in instance.targeting.rules)


def matching_instances(context: RequestContext, instances: Sequence[InstanceConfig]) -> list[InstanceConfig]:
    """All routable matches, highest priority first, declaration order on ties."""
    found = [i for i in instances if is_routable(i) and instance_matches(i, context)]
    # sorted() is stable with reverse=True, so equal priorities keep their order
    return sorted(found, key=lambda i: i.targeting.priority, reverse=True)


def resolve(context: RequestContext, instances: Sequence[InstanceConfig]) -> InstanceConfig | None:
    """Targeted match only: the best matching instance, or None."""
    found = matching_instances(context, instances)
    return found[0] if found else None


def default_instance(instances: Sequence[InstanceConfig]) -> InstanceConfig | None:
    """The enabled instance flagged as default, else the first enabled one."""
    for instance in instances:
        if instance.is_default and instance.is_enabled:
            return instance
    for instance in instances:
        if instance.is_enabled:
            return instance
    return None


def resolve_with_default(context: RequestContext, instances: Sequence[InstanceConfig]) -> InstanceConfig | None:
    """Targeted match, falling back to the default instance for explicit embeds."""
    return resolve(context, instances) or default_instance(instances)


def is_visible(instance: InstanceConfig, context: RequestContext) -> bool:
    """Page-config visibility: untargeted instances show everywhere."""
    if not instance.is_enabled:
        return False
    if not instance.targeting.enabled or not instance.targeting.rules:
        return True
    return instance_matches(instance, context)


def can_access(instance: InstanceConfig, visitor: VisitorInfo) -> bool:
    access = instance.access
    if access.require_login and not visitor.is_authenticated:
        return False
    if access.allowed_roles:
        if not visitor.is_authenticated:
            return False
        return bool(set(visitor.roles) & set(access.allowed_roles))
    return True


class InstanceResolver:
    """Resolver bound to a ConfigStore, so callers don't pass the instance list around."""

    def __init__(self, store: ConfigStore):
        self._store = store

    def resolve(self, context: RequestContext) -> InstanceConfig | None:
        instance = resolve(context, self._store.get_all())
        logger.debug(
            "instance_resolved",
            path=context.path,
            instance_id=instance.id if instance else None,
        )
        return instance

    def resolve_with_default(self, context: RequestContext) -> InstanceConfig | None:
        return resolve_with_default(context, self._store.get_all())

    def default_instance(self) -> InstanceConfig | None:
        return default_instance(self._store.get_all())

    def visible_instances(self, context: RequestContext) -> list[InstanceConfig]:
        return [
            i
            for i in self._store.get_all()
            if is_visible(i, context) and can_access(i, context.visitor)
        ]
