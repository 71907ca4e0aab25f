"""Read-only access to the configured chat instances."""

from __future__ import annotations

from typing import Iterable, Protocol

from flowchat.config import InstanceConfig


class ConfigStore(Protocol):
    """What the core needs from the persisted configuration: reads only."""

    def get_all(self) -> list[InstanceConfig]:
        ...

    def get(self, instance_id: str) -> InstanceConfig | None:
        ...


class InstanceRegistry:
    """In-memory ConfigStore over the instances declared in the app config.

    Keeps declaration order, which the resolver relies on for tie-breaks.
    """

    def __init__(self, instances: Iterable[InstanceConfig] = ()) -> None:
        self._instances: dict[str, InstanceConfig] = {}
        for instance in instances:
            self.register(instance)

    def register(self, instance: InstanceConfig) -> None:
        self._instances[instance.id] = instance

    def get(self, instance_id: str) -> InstanceConfig | None:
        return self._instances.get(instance_id)

    def get_all(self) -> list[InstanceConfig]:
        return list(self._instances.values())

    def ids(self) -> list[str]:
        return list(self._instances.keys())
