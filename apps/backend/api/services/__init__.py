"""
Services Package
================

Backend services for live agent log streaming.
"""

from .log_relay import LogRelay

__all__ = ["LogRelay"]
