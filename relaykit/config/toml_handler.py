"""
TOML File I/O Handler.

This module provides TOML parsing and crash-safe writing for the plugin
config store and the marketplace registry.

Key features:
- Parse TOML files using tomllib (Python 3.11+)
- Write TOML files using tomlkit via a temp file and atomic rename
- Keep a .bak copy of the previous file and fall back to it on corruption
- Strip None values, which TOML cannot represent
"""

import logging
import os
import shutil
import tomllib
from pathlib import Path
from typing import Any

import tomlkit

logger = logging.getLogger(__name__)


class TOMLError(Exception):
    """Base exception for TOML-related errors."""

    pass


def read_toml(file_path: Path) -> dict[str, Any]:
    """
    Read and parse a TOML file.

    Args:
        file_path: Path to the TOML file

    Returns:
        Parsed TOML data as dictionary

    Raises:
        TOMLError: If file cannot be read or parsed
    """
    try:
        with open(file_path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError as e:
        raise TOMLError(f"TOML file not found: {file_path}") from e
    except tomllib.TOMLDecodeError as e:
        raise TOMLError(f"Failed to parse TOML file {file_path}: {e}") from e
    except OSError as e:
        raise TOMLError(f"Failed to read TOML file {file_path}: {e}") from e


def backup_path(file_path: Path) -> Path:
    return file_path.with_name(file_path.name + ".bak")


def read_toml_with_backup(file_path: Path) -> dict[str, Any] | None:
    """
    Read a TOML file, recovering from its .bak copy if needed.

    When the primary file is missing or unparsable and a backup exists, the
    backup is read and restored over the primary file.

    Args:
        file_path: Path to the TOML file

    Returns:
        Parsed data, or None if neither file exists

    Raises:
        TOMLError: If the file is corrupt and no usable backup exists
    """
    try:
        return read_toml(file_path)
    except TOMLError as primary_error:
        bak = backup_path(file_path)
        if not bak.exists():
            if not file_path.exists():
                return None
            raise

        data = read_toml(bak)
        logger.warning(
            "Recovered %s from backup after read failure: %s", file_path, primary_error
        )
        shutil.copyfile(bak, file_path)
        return data


def _strip_none(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _strip_none(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_strip_none(v) for v in value if v is not None]
    return value


def write_toml(file_path: Path, data: dict[str, Any], backup: bool = True) -> None:
    """
    Write data to a TOML file atomically using tomlkit.

    The document is written to ``<file>.tmp`` and renamed over the target.
    If ``backup`` is set, the previous file is copied to ``<file>.bak`` first.

    Args:
        file_path: Path to the TOML file
        data: Data to write
        backup: Keep a copy of the previous contents

    Raises:
        TOMLError: If file cannot be written
    """
    tmp_path = file_path.with_name(file_path.name + ".tmp")
    try:
        # Ensure parent directory exists
        file_path.parent.mkdir(parents=True, exist_ok=True)

        if backup and file_path.exists():
            shutil.copyfile(file_path, backup_path(file_path))

        with open(tmp_path, "w", encoding="utf-8") as f:
            tomlkit.dump(_strip_none(data), f)
        os.replace(tmp_path, file_path)
    except (OSError, TypeError, ValueError) as e:
        tmp_path.unlink(missing_ok=True)
        raise TOMLError(f"Failed to write TOML file {file_path}: {e}") from e
