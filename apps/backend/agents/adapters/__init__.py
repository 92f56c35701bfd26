"""
Capability Adapters
===================

Concrete agent backends behind the AgentAdapter interface.
"""

from .base import (
    AdapterCapabilities,
    AgentAdapter,
    ConfigField,
    MessageType,
    StreamMessage,
)
from .command import ClaudeCodeAdapter, CommandAdapter
from .factory import (
    AdapterFactory,
    available_providers,
    describe_providers,
    create_adapter,
    register_provider,
)
from .mock import MockAdapter, MockScript

__all__ = [
    "AdapterCapabilities",
    "AdapterFactory",
    "AgentAdapter",
    "ClaudeCodeAdapter",
    "CommandAdapter",
    "ConfigField",
    "MessageType",
    "MockAdapter",
    "MockScript",
    "StreamMessage",
    "available_providers",
    "describe_providers",
    "create_adapter",
    "register_provider",
]
