"""
RelayKit Core - messaging primitives shared by the plugin runtime.

This module contains:
- Event Bus: typed publish/subscribe hub with per-plugin subscription tags
- Events: normalized chat event records published by the host
- Event Publisher: builds those records for platform adapters
- Utils: identifier sanitizing and sync/async hook helpers
"""

__all__ = []
