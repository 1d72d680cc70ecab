# backend/errors.py
from __future__ import annotations


class H2ScanError(Exception):
    """Base class for errors that end a run."""


class ConfigError(H2ScanError):
    """Bad startup configuration (worker count, unopenable log file, ...)."""


class InputError(H2ScanError):
    """The host name stream could not be read to the end."""


class ProtocolSessionError(Exception):
    """A SPDY or HTTP/2 client session failed at the protocol level."""
