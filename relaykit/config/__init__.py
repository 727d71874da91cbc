"""
RelayKit Configuration - settings, confined paths and the plugin config store.

This module provides:
- Environment-driven settings (data root and capability gates)
- A confined-root path resolver that fails closed
- TOML I/O with atomic writes and backup recovery
- The plugin configuration store shared by installer and runtime
- structlog-based logging setup
"""

__all__ = []
