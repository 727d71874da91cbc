"""
Logging setup for the relaykit host process.

Library modules only call ``logging.getLogger(__name__)``. The host calls
configure_logging() once at startup; from then on records from relaykit,
from plugins and from third-party libraries share one stderr handler and
are rendered by structlog, either as console lines or as JSON.

Key features:
- Level and renderer taken from RelaySettings (``LOG_LEVEL``, ``LOG_JSON``)
- Records from plugin loggers carry a ``plugin`` key with the plugin id
- Calling it again swaps relaykit's own handler and leaves others alone
"""

import logging
import sys
from collections.abc import MutableMapping
from typing import Any

import structlog

from relaykit.config.settings import RelaySettings
from relaykit.errors import ConfigError

PLUGIN_LOGGER_PREFIX = "relaykit.plugins."

_HANDLER_NAME = "relaykit"
_QUIET_LOGGERS = ("httpx", "httpcore")


def get_plugin_logger(plugin_id: str) -> logging.Logger:
    """Return the child logger used by one plugin's context."""
    return logging.getLogger(f"{PLUGIN_LOGGER_PREFIX}{plugin_id}")


def add_plugin_id(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor tagging plugin records with the plugin id."""
    name = event_dict.get("logger") or ""
    if name.startswith(PLUGIN_LOGGER_PREFIX):
        event_dict.setdefault("plugin", name[len(PLUGIN_LOGGER_PREFIX) :])
    return event_dict


def resolve_level(value: str | int) -> int:
    """
    Turn a level name (``debug``, ``WARNING``) or number into a logging level.

    Raises:
        ConfigError: If the name is not a known level
    """
    if isinstance(value, int):
        return value
    level = logging.getLevelName(str(value).strip().upper())
    if not isinstance(level, int):
        raise ConfigError(f"Unknown log level: {value}")
    return level


def configure_logging(
    settings: RelaySettings | None = None,
    *,
    verbose: bool = False,
    log_json: bool | None = None,
) -> logging.Handler:
    """
    Route all logging through a structlog-rendered stderr handler.

    Args:
        settings: Source of ``log_level`` / ``log_json`` (read from the
            environment if omitted)
        verbose: Force DEBUG for relaykit loggers
        log_json: Override ``settings.log_json``

    Returns:
        The installed handler

    Raises:
        ConfigError: If ``log_level`` is not a known level
    """
    settings = settings or RelaySettings()
    level = logging.DEBUG if verbose else resolve_level(settings.log_level)
    as_json = settings.log_json if log_json is None else log_json

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_plugin_id,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    if as_json:
        final: list[structlog.types.Processor] = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        final = [structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *final],
        )
    )

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if existing.get_name() == _HANDLER_NAME:
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.WARNING)

    logging.getLogger("relaykit").setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return handler
