"""
Safe archive extraction.

Archives come from third-party marketplaces. Every entry is validated
before anything is written: absolute names, ``.``/``..`` segments and
backslashes are rejected, and tar archives may only contain regular files
and directories. Extraction starts only after the whole listing passed.

Key features:
- zip extraction with zipfile, each entry written through ConfinedRoot
- tgz members read from their tar headers, extraction via the external ``tar``
- ArchiveSafetyError for traversal attempts and disallowed entry types
"""

import asyncio
import logging
import shutil
import tarfile
import zipfile
from pathlib import Path

from relaykit.config.paths import ConfinedRoot
from relaykit.errors import ArchiveSafetyError, ConfigError, ValidationError
from relaykit.marketplace.process import ProcessError, run_command

logger = logging.getLogger(__name__)

_ALLOWED_TAR_KINDS = ("file", "dir")


def is_safe_archive_path(name: str) -> bool:
    """
    Check whether an archive entry name is safe to extract.

    Args:
        name: Entry name as stored in the archive

    Returns:
        False for empty, absolute, backslashed or dot-segment names
    """
    if not name or name.startswith("/") or "\\" in name:
        return False
    parts = name.rstrip("/").split("/")
    return all(part not in ("", ".", "..") for part in parts)


def _check_entry(name: str) -> None:
    if not is_safe_archive_path(name):
        raise ArchiveSafetyError(f"Unsafe archive entry path: {name}")


def extract_zip(archive_path: Path, dest_dir: Path) -> int:
    """
    Extract a zip archive.

    Args:
        archive_path: Zip file
        dest_dir: Destination directory

    Returns:
        Number of files written

    Raises:
        ArchiveSafetyError: If any entry is unsafe
    """
    root = ConfinedRoot(dest_dir)
    try:
        with zipfile.ZipFile(archive_path) as zf:
            infos = zf.infolist()
            for info in infos:
                _check_entry(info.filename)

            written = 0
            for info in infos:
                if info.is_dir():
                    continue
                try:
                    out_path = root.resolve(info.filename)
                except ConfigError as e:
                    raise ArchiveSafetyError(
                        f"Zip entry escapes destination: {info.filename}"
                    ) from e
                out_path.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, open(out_path, "wb") as dst:
                    shutil.copyfileobj(src, dst)
                written += 1
    except zipfile.BadZipFile as e:
        raise ArchiveSafetyError(f"Invalid zip archive: {archive_path}") from e
    return written


def list_tar_members(archive_path: Path) -> list[tuple[str, str]]:
    """
    Read the member records of a gzipped tarball.

    Names come straight from the tar headers, so whitespace and ``->`` inside
    a name are preserved exactly.

    Returns:
        (kind, name) pairs where kind is "file", "dir", "symlink", "hardlink"
        or "other"

    Raises:
        ArchiveSafetyError: If the archive cannot be read
    """
    members = []
    try:
        with tarfile.open(archive_path, "r:gz") as tf:
            for member in tf:
                if member.isfile():
                    kind = "file"
                elif member.isdir():
                    kind = "dir"
                elif member.issym():
                    kind = "symlink"
                elif member.islnk():
                    kind = "hardlink"
                else:
                    kind = "other"
                members.append((kind, member.name))
    except (tarfile.TarError, OSError) as e:
        raise ArchiveSafetyError(f"Failed to list tar archive: {e}") from e
    return members


async def extract_tgz(archive_path: Path, dest_dir: Path) -> None:
    """
    Validate and extract a gzipped tarball with the system ``tar``.

    Raises:
        ArchiveSafetyError: If an entry is unsafe, has a disallowed type or
            tar fails
    """
    members = await asyncio.get_running_loop().run_in_executor(
        None, list_tar_members, archive_path
    )
    for kind, name in members:
        _check_entry(name)
        if kind not in _ALLOWED_TAR_KINDS:
            raise ArchiveSafetyError(f"Unsupported tar entry type {kind!r} for: {name}")

    try:
        await run_command(
            [
                "tar",
                "-xzf",
                str(archive_path),
                "-C",
                str(dest_dir),
                "--no-same-owner",
                "--no-same-permissions",
            ]
        )
    except ProcessError as e:
        raise ArchiveSafetyError(f"Failed to extract tar archive: {e}") from e


async def extract_archive(dist_type: str, archive_path: Path, dest_dir: Path) -> None:
    """
    Extract a downloaded archive into dest_dir.

    Args:
        dist_type: "zip" or "tgz"
        archive_path: Downloaded archive
        dest_dir: Install directory (created if needed)
    """
    dest_dir.mkdir(parents=True, exist_ok=True)
    if dist_type == "zip":
        count = extract_zip(archive_path, dest_dir)
        logger.debug("Extracted %d files from %s", count, archive_path.name)
    elif dist_type == "tgz":
        await extract_tgz(archive_path, dest_dir)
    else:
        raise ValidationError(f"Unsupported dist.type: {dist_type}")
