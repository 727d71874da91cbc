"""
RelayKit error taxonomy.

Every failure raised by the plugin runtime and the marketplace installer
derives from RelayKitError, so callers at an admin surface can catch the
whole family with one clause and still branch on the concrete type.

Key features:
- Config / validation / network / integrity errors for the installer
- Permission and sandbox refusals for environment-gated capabilities
- Archive safety errors for traversal attempts and disallowed entries
- Runtime errors for plugin hook failures and unknown plugin ids
"""


class RelayKitError(Exception):
    """Base exception for all relaykit errors."""

    pass


class ConfigError(RelayKitError):
    """Raised when a path or module specifier is unsafe or invalid."""

    pass


class IndexNotCachedError(ConfigError):
    """Raised when a marketplace index has not been refreshed yet."""

    pass


class ValidationError(RelayKitError):
    """Raised when a spec, index entry or manifest fails validation."""

    pass


class MissingPluginIdError(ValidationError):
    """Raised when a plugin spec has an empty or missing id."""

    pass


class DuplicatePluginError(ValidationError):
    """Raised when a plugin id occurs more than once in one start call."""

    pass


class NetworkError(RelayKitError):
    """Raised when a remote fetch returns a non-OK response."""

    pass


class IntegrityError(RelayKitError):
    """Raised when a downloaded archive does not match its pinned sha256."""

    pass


class PluginPermissionError(RelayKitError):
    """Raised when a requested capability is not enabled or not allowlisted."""

    pass


class SandboxRefusalError(RelayKitError):
    """Raised when a privileged install mode lacks its opt-in flag."""

    pass


class ArchiveSafetyError(RelayKitError):
    """Raised when an archive entry escapes its root or has a disallowed type."""

    pass


class PluginLoadError(RelayKitError):
    """Raised when a plugin module cannot be resolved or has the wrong shape."""

    pass


class PluginRuntimeError(RelayKitError):
    """Base exception for runtime and lifecycle errors."""

    pass


class PluginHookError(PluginRuntimeError):
    """Raised when a plugin install, uninstall or reload hook fails."""

    pass


class RuntimeInactiveError(PluginRuntimeError):
    """Raised when an operation needs a started runtime."""

    pass


class PluginNotFoundError(PluginRuntimeError):
    """Raised when a plugin id is not present in the instance table."""

    pass
