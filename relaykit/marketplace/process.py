"""External process execution for archive extraction and dependency installs."""

import asyncio
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)


class ProcessError(Exception):
    """Raised when an external command cannot be started or exits non-zero."""

    pass


async def run_command(
    cmd: list[str],
    cwd: Path | None = None,
    env_vars: dict[str, str] | None = None,
) -> str:
    """
    Run a command and return its stdout.

    Args:
        cmd: Command and arguments
        cwd: Working directory
        env_vars: Variables added to the inherited environment

    Returns:
        Decoded stdout

    Raises:
        ProcessError: If the command is missing or exits non-zero
    """
    env = os.environ.copy()
    if env_vars:
        env.update(env_vars)

    logger.debug("Running %s (cwd=%s)", " ".join(cmd), cwd)
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=cwd,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise ProcessError(f"{cmd[0]} command not found") from e

    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        raise ProcessError(
            f"{cmd[0]} failed with exit code {proc.returncode}:\n"
            f"stdout: {stdout.decode(errors='replace')}\n"
            f"stderr: {stderr.decode(errors='replace')}"
        )
    return stdout.decode(errors="replace")
