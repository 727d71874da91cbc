"""
RelayKit Marketplace - plugin package acquisition from marketplace indexes.

This module handles:
- The marketplace registry and the on-disk index cache
- Index schema validation and version selection
- Verified downloads, safe archive extraction and sandboxed installs
- Install, upgrade, rollback and uninstall under a global install lock
"""

__all__ = []
