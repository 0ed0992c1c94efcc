"""Gateway bridge lifecycle on the host side.

``GatewayBridge`` builds and starts the host listener, waits for it to bind
and publishes a ``BridgeHandle`` describing the live listener.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..config import GatewayConfig, resolve_gateway_config
from ..errors import BindTimeoutError, BridgeError
from .gateway_server import DEFAULT_ADDRESS, GatewayServer, GatewayServerBuilder
from .rpc_protocol import UNBOUND_PORT

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.02


@dataclass(frozen=True)
class BridgeHandle:
    """A started, bound listener."""

    port: int
    auth_enabled: bool
    server: GatewayServer


class BridgeHandleRef:
    """Set-once holder for the session's ``BridgeHandle``."""

    def __init__(self) -> None:
        self._handle: BridgeHandle | None = None
        self._lock = threading.Lock()

    def set(self, handle: BridgeHandle) -> None:
        with self._lock:
            if self._handle is not None:
                raise RuntimeError("Bridge handle already published for this session")
            self._handle = handle

    def get(self) -> BridgeHandle | None:
        with self._lock:
            return self._handle

    def __bool__(self) -> bool:
        return self.get() is not None


def wait_for_port(
    server: Any,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    timeout: float | None = None,
) -> int:
    """Block until *server* reports a bound port and return it.

    Waits on ``server.bound`` when the listener has one, otherwise polls
    ``server.listening_port``. Without *timeout* the wait is unbounded.

    Raises:
        BridgeError: The listener thread failed to bind.
        BindTimeoutError: *timeout* elapsed before the listener bound.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    bound_event: threading.Event | None = getattr(server, "bound", None)

    while True:
        bind_error = getattr(server, "bind_error", None)
        if bind_error is not None:
            raise BridgeError(f"Gateway listener failed to bind: {bind_error}") from bind_error

        port = server.listening_port
        if port != UNBOUND_PORT:
            return port

        if deadline is not None and time.monotonic() >= deadline:
            raise BindTimeoutError(f"Gateway listener did not bind within {timeout}s")

        if bound_event is not None and not bound_event.is_set():
            bound_event.wait(poll_interval)
        else:
            time.sleep(poll_interval)


class GatewayBridge:
    """Starts the host listener for one session and tears it down."""

    def __init__(
        self,
        handle_ref: BridgeHandleRef,
        config: GatewayConfig | None = None,
        builder_factory: Callable[[], GatewayServerBuilder] = GatewayServerBuilder,
    ) -> None:
        self._handle_ref = handle_ref
        self._config = resolve_gateway_config(config)
        self._builder_factory = builder_factory
        self._server: GatewayServer | None = None
        self._lock = threading.Lock()
        self._shut_down = False

    @property
    def server(self) -> GatewayServer | None:
        return self._server

    def start(self, entry_point: Any, require_auth: bool, secret: str) -> BridgeHandle:
        if self._server is not None or self._shut_down:
            raise RuntimeError("GatewayBridge can only be started once")

        address = self._config.get("address", DEFAULT_ADDRESS)
        builder = (
            self._builder_factory()
            .address(address)
            .port(0)
            .callback_client(0, address)
            .connect_timeout(self._config["connect_timeout"])
            .read_timeout(self._config["read_timeout"])
            .entry_point(entry_point)
        )

        auth_enabled = False
        if require_auth:
            try:
                builder = builder.auth_token(secret)
                auth_enabled = True
            except Exception as exc:
                logger.warning(
                    "[isogate][bridge] Failed to enable authentication, continuing without it: %s", exc
                )

        server = builder.build()
        self._server = server
        server.start(fork=True)

        port = wait_for_port(server, self._config["poll_interval"], self._config.get("bind_timeout"))
        handle = BridgeHandle(port=port, auth_enabled=auth_enabled, server=server)
        self._handle_ref.set(handle)
        logger.info("[isogate][bridge] Gateway listening on %s:%d (auth %s)",
                    address, port, "enabled" if auth_enabled else "disabled")
        return handle

    def shutdown(self) -> None:
        with self._lock:
            if self._shut_down:
                return
            self._shut_down = True
            server = self._server
        if server is not None:
            server.shutdown()
            logger.info("[isogate][bridge] Gateway bridge shut down")
