"""
Process configuration read from the environment once at startup.

COLOR       fixed color, disables random selection
LATENCY     fixed delay in seconds (float)
ERROR_RATE  fixed success-rate percent, 0-100
"""

import math
import os
from typing import NamedTuple, Optional, Tuple

COLORS = ("red", "orange", "yellow", "green", "blue", "purple")

ERROR_STATUS = 500


class ConfigurationError(ValueError):
    """An environment value or flag could not be used."""


def env(k, d=None, environ=None):
    """Fetch an env var with a default, treat empty as missing."""
    v = (os.environ if environ is None else environ).get(k)
    if v is None or v == "":
        return d
    return v


class Config(NamedTuple):
    color: Optional[str] = None
    latency: Optional[float] = None
    error_rate: Optional[int] = None
    colors: Tuple[str, ...] = COLORS
    error_status: int = ERROR_STATUS


def load_config(environ=None):
    """Build a Config from COLOR / LATENCY / ERROR_RATE."""
    color = env("COLOR", environ=environ)

    latency = env("LATENCY", environ=environ)
    if latency is not None:
        try:
            latency = float(latency)
        except ValueError:
            raise ConfigurationError(f"LATENCY must be a number of seconds, got {latency!r}")
        if latency < 0 or not math.isfinite(latency):
            raise ConfigurationError(f"LATENCY must be >= 0, got {latency}")

    rate = env("ERROR_RATE", environ=environ)
    if rate is not None:
        try:
            rate = int(rate)
        except ValueError:
            raise ConfigurationError(f"ERROR_RATE must be an integer percent, got {rate!r}")
        if not 0 <= rate <= 100:
            raise ConfigurationError(f"ERROR_RATE must be within 0-100, got {rate}")

    return Config(color=color, latency=latency, error_rate=rate)


def parse_addr(a):
    """Split a listen address like ":8080", "0.0.0.0:80" or "[::1]:8443"."""
    host, sep, port = a.rpartition(":")
    if not sep:
        raise ConfigurationError(f"listen address needs a port: {a!r}")
    try:
        port = int(port)
    except ValueError:
        raise ConfigurationError(f"bad port in listen address {a!r}")
    if not 0 <= port <= 65535:
        raise ConfigurationError(f"port out of range in listen address {a!r}")
    return host.strip("[]"), port


def parse_burn(n):
    """Number of CPUs to burn: "" (none), an integer, or "all"."""
    if not n:
        return 0
    if n == "all":
        return os.cpu_count() or 1
    try:
        v = int(n)
    except ValueError:
        raise ConfigurationError(f"--cpu-burn must be a number or 'all', got {n!r}")
    if v < 0:
        raise ConfigurationError(f"--cpu-burn must be >= 0, got {v}")
    return v
