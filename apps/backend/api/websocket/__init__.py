"""
WebSocket Package
=================

Socket.IO namespaces for real-time communication.
"""

from .agent_ns import register_agent_namespace

__all__ = ["register_agent_namespace"]
