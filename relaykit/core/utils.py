"""
Utils Module - small helpers shared by the runtime and the installer.

This module provides:
- sanitize_id(): Reduce an identifier to the safe [A-Za-z0-9_-] alphabet
- maybe_await(): Await a hook result only when it is awaitable
"""

import inspect
import re
from typing import Any

_UNSAFE_ID_CHARS = re.compile(r"[^\w-]", re.ASCII)
_DASH_RUNS = re.compile(r"-+")

MAX_ID_LENGTH = 64


def sanitize_id(value: Any, default: str = "plugin") -> str:
    """
    Sanitize a plugin or marketplace identifier.

    Unsafe characters become dashes, dash runs collapse, leading and
    trailing dashes/underscores are stripped and the result is capped at
    64 characters.

    Args:
        value: Raw identifier (None is treated as empty)
        default: Returned when nothing safe remains

    Returns:
        Sanitized identifier
    """
    text = str(value or "").strip()
    text = _UNSAFE_ID_CHARS.sub("-", text)
    text = _DASH_RUNS.sub("-", text)
    text = text.strip("-_")
    return text[:MAX_ID_LENGTH] or default


async def maybe_await(value: Any) -> Any:
    """Return value, awaiting it first if it is awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value

