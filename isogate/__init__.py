"""
isogate - Bidirectional gateway bridge between a host and an embedded runtime.

isogate brings up a remote-procedure bridge between a host Python process and
a secondary runtime embedded in it. Code in the secondary runtime calls host
objects through the gateway; the host calls back into objects the secondary
side passed across through a reverse callback channel.

Key Features:
    - Optional token authentication, negotiated from the bridge library version
    - Listener start with an event-driven bind wait
    - Reverse callback channel wired to the port the secondary side bound
    - Session objects injected into the secondary namespace
    - Idempotent teardown of both sides, from a scope or at interpreter exit

Basic Usage:
    >>> import isogate
    >>> runtime = isogate.InProcessRuntime()
    >>> with isogate.GatewaySession(runtime, distributed_session) as bridge:
    ...     runtime.eval("session.conf.get('app.name')")
"""

from .config import GatewayConfig
from .errors import (
    BindTimeoutError,
    BridgeError,
    BridgeSetupError,
    GatewayAuthError,
    GatewayCallError,
    GatewayClosedError,
)
from .host import GatewaySession, LoggingProgressReporter
from .runtime import InProcessRuntime

__version__ = "0.10.9"

__all__ = [
    "BindTimeoutError",
    "BridgeError",
    "BridgeSetupError",
    "GatewayAuthError",
    "GatewayCallError",
    "GatewayClosedError",
    "GatewayConfig",
    "GatewaySession",
    "InProcessRuntime",
    "LoggingProgressReporter",
]
