# backend/diag.py
from __future__ import annotations

import logging
from typing import Any, MutableMapping, Optional, Tuple

from errors import ConfigError
from record import Site

DIAG_LOGGER = "h2scan.diag"


def open_diagnostic_sink(path: Optional[str]) -> logging.Logger:
    """
    Return the logger every worker writes per-host diagnostics to.

    With a path the file is created (truncated) and each message becomes one
    line; handler locking keeps lines from different workers whole. Without a
    path diagnostics are discarded.
    """
    logger = logging.getLogger(DIAG_LOGGER)
    logger.propagate = False
    logger.setLevel(logging.DEBUG)
    close_diagnostic_sink(logger)

    handler: logging.Handler
    if path:
        try:
            handler = logging.FileHandler(path, mode="w", encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"Failed to create log file {path}: {e}") from e
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler = logging.NullHandler()

    logger.addHandler(handler)
    return logger


def close_diagnostic_sink(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()


class SiteLog(logging.LoggerAdapter):
    """Prefixes each message with the site's name at the time of writing."""

    def __init__(self, logger: logging.Logger, site: Site) -> None:
        super().__init__(logger, {})
        self.site = site

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        return f"{self.site.name}: {msg}", kwargs
