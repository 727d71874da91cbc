"""
Sandboxed dependency installation.

Plugin packages that declare ``install.mode = "pnpm"`` get their
dependencies installed with restricted flags. Three independent host
gates apply: npm install itself, network access, and install scripts.

Key features:
- Project directory lookup for flat and ``package/`` layouts
- ``pnpm install`` with production / ignore-scripts / frozen-lockfile flags
- Registry override through ``npm_config_registry``
- Host SDK packages linked (or copied) into the plugin's node_modules
"""

import logging
import os
import shutil
from pathlib import Path

from relaykit.config.paths import ConfinedRoot
from relaykit.config.settings import RelaySettings
from relaykit.errors import ConfigError, SandboxRefusalError, ValidationError
from relaykit.marketplace.index import InstallSpec
from relaykit.marketplace.process import ProcessError, run_command

logger = logging.getLogger(__name__)


def find_project_dir(install_dir: Path) -> Path | None:
    """
    Find the directory holding package.json.

    Args:
        install_dir: Extracted package root

    Returns:
        install_dir or install_dir/package, or None if neither has package.json
    """
    if (install_dir / "package.json").is_file():
        return install_dir
    if (install_dir / "package" / "package.json").is_file():
        return install_dir / "package"
    return None


def resolve_entry_file(install_dir: Path, entry_path: str) -> Path:
    """
    Locate the entry file after extraction (flat or ``package/`` layout).

    Raises:
        ValidationError: If the entry file does not exist or resolves outside
            install_dir
    """
    root = ConfinedRoot(install_dir)
    for candidate in (install_dir / entry_path, install_dir / "package" / entry_path):
        try:
            resolved = root.resolve(candidate)
        except ConfigError as e:
            raise ValidationError(f"Entry escapes install directory: {entry_path}") from e
        if resolved.is_file():
            return resolved
    raise ValidationError(f"Entry not found after extract: {entry_path}")


def build_pnpm_args(spec: InstallSpec) -> list[str]:
    args = ["pnpm", "install"]
    if spec.production:
        args.append("--prod")
    if spec.ignore_scripts:
        args.append("--ignore-scripts")
    args.append("--frozen-lockfile" if spec.frozen_lockfile else "--no-frozen-lockfile")
    args.append("--prefer-offline")
    return args


async def run_pnpm_install(
    project_dir: Path, spec: InstallSpec, settings: RelaySettings
) -> None:
    """
    Install dependencies with pnpm.

    Args:
        project_dir: Directory containing package.json
        spec: Resolved install instructions
        settings: Host settings (capability gates)

    Raises:
        SandboxRefusalError: If a required host gate is not enabled
        ValidationError: If pnpm fails
    """
    if not settings.plugin_allow_npm_install:
        raise SandboxRefusalError(
            "Refusing to run pnpm install without PLUGIN_ALLOW_NPM_INSTALL=1"
        )
    if not settings.plugin_allow_network:
        raise SandboxRefusalError(
            "pnpm install requires network; enable PLUGIN_ALLOW_NETWORK=1"
        )
    if not spec.ignore_scripts and not settings.plugin_allow_install_scripts:
        raise SandboxRefusalError(
            "Refusing to run install scripts without PLUGIN_ALLOW_INSTALL_SCRIPTS=1"
        )

    env_vars = {}
    if spec.registry:
        env_vars["npm_config_registry"] = spec.registry

    try:
        await run_command(build_pnpm_args(spec), cwd=project_dir, env_vars=env_vars)
    except ProcessError as e:
        raise ValidationError(f"Dependency install failed: {e}") from e
    logger.info("Installed dependencies in %s", project_dir)


def _sdk_packages(sdk_dir: Path) -> list[tuple[str, Path]]:
    """List (package name, path) pairs under an SDK node_modules-style dir."""
    packages = []
    for path in sorted(sdk_dir.iterdir()):
        if not path.is_dir() or path.name.startswith("."):
            continue
        if path.name.startswith("@"):
            for scoped in sorted(path.iterdir()):
                if scoped.is_dir():
                    packages.append((f"{path.name}/{scoped.name}", scoped))
        else:
            packages.append((path.name, path))
    return packages


def link_host_sdk(install_dir: Path, settings: RelaySettings) -> int:
    """
    Make host SDK packages importable from the plugin.

    Each package under ``PLUGIN_HOST_SDK_DIR`` is symlinked into the
    plugin's ``node_modules``; when symlinks are unavailable it is copied.
    Failures are logged and skipped.

    Returns:
        Number of packages linked or copied
    """
    sdk_dir = settings.plugin_host_sdk_dir
    if sdk_dir is None or not sdk_dir.is_dir():
        return 0

    project_dir = find_project_dir(install_dir) or install_dir
    node_modules = project_dir / "node_modules"

    linked = 0
    for name, source in _sdk_packages(sdk_dir):
        target = node_modules / name
        if target.exists() or target.is_symlink():
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.symlink(source.resolve(), target, target_is_directory=True)
        except OSError:
            try:
                shutil.copytree(source, target)
            except OSError as e:
                logger.warning("Failed to provide host SDK package %s: %s", name, e)
                continue
        linked += 1

    if linked:
        logger.debug("Linked %d host SDK packages into %s", linked, node_modules)
    return linked
