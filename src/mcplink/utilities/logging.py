"""Logging utilities for mcplink."""

import logging
from collections.abc import Mapping
from typing import Any, Literal

from rich.console import Console
from rich.logging import RichHandler

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def get_logger(name: str) -> logging.Logger:
    """Get a logger for an mcplink module.

    Args:
        name: the name of the logger, normally ``__name__``

    Returns:
        a configured logger instance
    """
    return logging.getLogger(name)


def configure_logging(level: LogLevel = "INFO") -> None:
    """Configure logging for mcplink.

    Installs a rich handler writing to stderr; stdout is left alone so that it
    stays usable for program output.

    Args:
        level: the log level to use
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


def redact_sensitive_data(
    data: Mapping[str, Any] | None,
    sensitive_keys: set[str] | None = None,
) -> Mapping[str, Any] | None:
    """Return a shallow copy with sensitive values replaced by "***".

    Used before logging HTTP headers and launch environments taken from the
    host configuration.

    Parameters
    ----------
    data:
        Original mapping. If *None* the function simply returns *None*.
    sensitive_keys:
        Optional set of lower-case keys that should be hidden; defaults to the
        usual credential headers.
    """

    if data is None:
        return None

    sensitive_keys = sensitive_keys or {
        "authorization",
        "proxy-authorization",
        "cookie",
        "x-api-key",
        "api_key",
        "token",
    }

    return {key: "***" if key.lower() in sensitive_keys else value for key, value in data.items()}
