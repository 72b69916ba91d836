"""Immutable registry of capability providers.

Built once at startup from a list of providers and passed by reference
to the plan guardrail, the step executor and the orchestrator.
"""

import logging
from collections.abc import Iterable, Iterator
from types import MappingProxyType
from typing import Any

from conductor.core.exceptions import ActionNotAllowedError, ProviderNotFoundError
from conductor.providers.base import CapabilityProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Read-only lookup of providers by name."""

    def __init__(self, providers: Iterable[CapabilityProvider] = ()) -> None:
        by_name: dict[str, CapabilityProvider] = {}
        for provider in providers:
            if provider.name in by_name:
                raise ValueError(f"Duplicate capability provider: {provider.name}")
            by_name[provider.name] = provider
        self._providers = MappingProxyType(by_name)

        logger.info(
            "Provider registry built",
            extra={"providers": sorted(self._providers)},
        )

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def __iter__(self) -> Iterator[CapabilityProvider]:
        return iter(self._providers.values())

    def __len__(self) -> int:
        return len(self._providers)

    def names(self) -> list[str]:
        """Sorted provider names."""
        return sorted(self._providers)

    def get(self, name: str) -> CapabilityProvider | None:
        """Return the provider called *name*, or None."""
        return self._providers.get(name)

    def require(self, name: str, action: str | None = None) -> CapabilityProvider:
        """Return the provider called *name*, validating *action* if given.

        Raises:
            ProviderNotFoundError: If no provider is registered under *name*.
            ActionNotAllowedError: If *action* is not on its whitelist.
        """
        provider = self._providers.get(name)
        if provider is None:
            raise ProviderNotFoundError(name)
        if action is not None and not provider.validate_action(action):
            raise ActionNotAllowedError(name, action)
        return provider

    def has_action(self, name: str, action: str) -> bool:
        """Check whether (provider, action) is live."""
        provider = self._providers.get(name)
        return provider is not None and provider.validate_action(action)

    def capability_map(self) -> dict[str, list[str]]:
        """Provider name to its sorted action list."""
        return {
            name: sorted(provider.capabilities())
            for name, provider in sorted(self._providers.items())
        }

    def describe(self) -> str:
        """One line per provider, ``- name: action, action``."""
        lines = [
            f"- {name}: {', '.join(actions)}"
            for name, actions in self.capability_map().items()
        ]
        return "\n".join(lines)

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Anthropic-format tool definitions, one per (provider, action)."""
        tools: list[dict[str, Any]] = []
        for name, actions in self.capability_map().items():
            provider = self._providers[name]
            for action in actions:
                description = f"{name}.{action}"
                if provider.description:
                    description = f"{provider.description} ({name}.{action})"
                tools.append(
                    {
                        "name": f"{name}_{action}",
                        "description": description,
                        "input_schema": {
                            "type": "object",
                            "properties": {},
                            "additionalProperties": True,
                        },
                    }
                )
        return tools
