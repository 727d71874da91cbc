"""
Confined filesystem root.

All installer and config-store paths go through ConfinedRoot.resolve(),
which resolves symlinks and rejects any path that lands outside the root.
"""

import os
from pathlib import Path

from relaykit.errors import ConfigError


class ConfinedRoot:
    """
    A directory that paths are not allowed to escape.

    Attributes:
        root: The real (symlink-resolved) root directory
    """

    def __init__(self, root: str | os.PathLike):
        self.root = Path(os.path.realpath(os.path.abspath(root)))

    def __repr__(self) -> str:
        return f"ConfinedRoot({str(self.root)!r})"

    def resolve(self, path: str | os.PathLike) -> Path:
        """
        Resolve a path and verify it stays under the root.

        Relative paths are interpreted relative to the root.

        Args:
            path: Absolute or root-relative path

        Returns:
            The resolved real path

        Raises:
            ConfigError: If the resolved path escapes the root
        """
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.root / candidate

        resolved = Path(os.path.realpath(candidate))
        if not self.contains(resolved):
            raise ConfigError(f"Path escapes confined root {self.root}: {path}")
        return resolved

    def join(self, *parts: str) -> Path:
        """Join parts onto the root and resolve the result."""
        return self.resolve(self.root.joinpath(*parts))

    def contains(self, path: str | os.PathLike) -> bool:
        """Check whether an already-resolved path lies under the root."""
        try:
            common = os.path.commonpath([str(self.root), str(path)])
        except ValueError:
            # Different drives on Windows
            return False
        return common == str(self.root)
