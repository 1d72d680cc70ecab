# backend/settings.py
from __future__ import annotations

import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, ValidationError, field_validator

from errors import ConfigError

DEFAULT_WORKERS = 10
DEFAULT_PORT = 443
DEFAULT_CONNECT_TIMEOUT = 2.0
DEFAULT_IO_TIMEOUT = 30.0

# Environment overrides for the defaults; command line flags win over these.
ENV_DEFAULTS = {
    "workers": "H2SCAN_WORKERS",
    "connect_timeout": "H2SCAN_CONNECT_TIMEOUT",
    "io_timeout": "H2SCAN_IO_TIMEOUT",
}


class ProbeSettings(BaseModel):
    workers: int = DEFAULT_WORKERS
    header: bool = False
    log: Optional[str] = None
    port: int = DEFAULT_PORT
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    # 0 means handshakes and requests may block forever
    io_timeout: float = DEFAULT_IO_TIMEOUT
    cafile: Optional[str] = None
    verbose: int = 0

    @field_validator("workers")
    @classmethod
    def _workers_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("-workers must be a positive number")
        return v

    @field_validator("port")
    @classmethod
    def _port_range(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError(f"port out of range: {v}")
        return v

    @field_validator("connect_timeout")
    @classmethod
    def _connect_timeout_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("connect timeout must be positive")
        return v

    @field_validator("io_timeout")
    @classmethod
    def _io_timeout_not_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("timeout must not be negative")
        return v

    @property
    def socket_timeout(self) -> Optional[float]:
        """Timeout to put on sockets after connect, None for blocking."""
        return self.io_timeout or None


def _first_error(e: ValidationError) -> str:
    errs = e.errors()
    if not errs:
        return str(e)
    msg = str(errs[0].get("msg") or "")
    # pydantic prefixes messages raised from validators
    return msg.replace("Value error, ", "", 1)


def load_settings(**overrides: Any) -> ProbeSettings:
    """
    Build settings from environment defaults plus explicit overrides.
    Overrides that are None are ignored so argparse defaults can be passed
    straight through.
    """
    values: Dict[str, Any] = {}
    for key, env in ENV_DEFAULTS.items():
        raw = os.environ.get(env, "").strip()
        if raw:
            values[key] = raw

    values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return ProbeSettings(**values)
    except ValidationError as e:
        raise ConfigError(_first_error(e)) from e
