"""
RelayKit Plugin System - plugin loading, lifecycle and runtime.

This module handles:
- Structural plugin type detection and dynamic loading
- The compatibility bridge for legacy apply() plugins
- Per-plugin contexts and storage
- Lifecycle state transitions
- The plugin runtime and spec discovery
"""

__all__ = []
