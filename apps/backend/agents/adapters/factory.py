"""
Adapter Factory
===============

Resolves a task's ``cli_tool`` id to a fresh adapter instance. Every agent
session gets its own adapter.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from core.errors import ValidationError

from .base import AgentAdapter
from .command import ClaudeCodeAdapter, CommandAdapter
from .mock import MockAdapter

AdapterFactory = Callable[[str], AgentAdapter]

_PROVIDERS: dict[str, Callable[[], AgentAdapter]] = {
    "mock": MockAdapter,
    "command": CommandAdapter,
    "claude-code": ClaudeCodeAdapter,
}


def available_providers() -> list[str]:
    return sorted(_PROVIDERS)


def register_provider(name: str, constructor: Callable[[], AgentAdapter]) -> None:
    """Make *constructor* available under *name*."""
    _PROVIDERS[name.lower()] = constructor


def describe_providers() -> list[dict[str, Any]]:
    """Every registered provider with its capabilities and config schema."""
    described = []
    for name in available_providers():
        adapter = create_adapter(name)
        described.append(
            {
                "name": name,
                "displayName": adapter.display_name or name,
                "capabilities": adapter.get_capabilities().to_dict(),
                "configSchema": [f.to_dict() for f in adapter.get_config_schema()],
            }
        )
    return described


def create_adapter(provider: str) -> AgentAdapter:
    """Instantiate the adapter registered under *provider*.

    Raises:
        ValidationError: Unknown provider
    """
    constructor = _PROVIDERS.get((provider or "").lower())
    if constructor is None:
        raise ValidationError(
            f"Unknown agent provider {provider!r}. "
            f"Available: {', '.join(available_providers())}"
        )
    return constructor()
