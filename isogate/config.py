from __future__ import annotations

import logging
import os
from typing import TypedDict

logger = logging.getLogger(__name__)

BIND_TIMEOUT_ENV = "ISOGATE_BIND_TIMEOUT"


class GatewayConfig(TypedDict, total=False):
    """Configuration for a :class:`~isogate.host.GatewaySession`.

    Every key is optional; missing keys fall back to ``DEFAULT_GATEWAY_CONFIG``.
    """

    address: str
    """Loopback address for both the gateway listener and the callback channel."""

    connect_timeout: float
    """Seconds to wait when opening a connection (0 waits forever)."""

    read_timeout: float
    """Seconds to wait for a reply on an open connection (0 waits forever)."""

    poll_interval: float
    """Seconds between checks while waiting for the listener to bind."""

    bind_timeout: float | None
    """Deadline for the listener to bind. None keeps the wait unbounded."""

    default_python: str
    """Executable exported to the secondary runtime when no override applies."""


DEFAULT_GATEWAY_CONFIG: GatewayConfig = {
    "address": "127.0.0.1",
    "connect_timeout": 10.0,
    "read_timeout": 0.0,
    "poll_interval": 0.02,
    "bind_timeout": None,
    "default_python": "python3",
}


def _bind_timeout_from_env() -> float | None:
    raw = os.environ.get(BIND_TIMEOUT_ENV)
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: not a number", BIND_TIMEOUT_ENV, raw)
        return None
    return value if value > 0 else None


def resolve_gateway_config(config: GatewayConfig | None = None) -> GatewayConfig:
    """Merge defaults, the environment and explicit overrides (highest wins)."""
    resolved: GatewayConfig = dict(DEFAULT_GATEWAY_CONFIG)  # type: ignore[assignment]
    env_timeout = _bind_timeout_from_env()
    if env_timeout is not None:
        resolved["bind_timeout"] = env_timeout
    if config:
        resolved.update(config)

    if resolved["poll_interval"] <= 0:
        raise ValueError("poll_interval must be positive")
    return resolved
