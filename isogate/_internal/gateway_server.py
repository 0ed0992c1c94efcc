"""Host-side gateway listener.

``GatewayServer`` exposes an entry point object to the secondary runtime and
owns a ``CallbackClient`` pointing back at the secondary runtime's callback
server. Servers are assembled with ``GatewayServerBuilder``.
"""

from __future__ import annotations

import logging
import threading
import weakref
from typing import Any

from .remote_handle import HOST, RemoteObjectHandle
from .rpc_protocol import UNBOUND_PORT, CommandClient, CommandServer
from .rpc_serialization import ENTRY_POINT_ID, GatewayCommand

__all__ = [
    "DEFAULT_ADDRESS",
    "DEFAULT_CONNECT_TIMEOUT",
    "DEFAULT_READ_TIMEOUT",
    "UNBOUND_PORT",
    "CallbackClient",
    "CallbackProxy",
    "GatewayServer",
    "GatewayServerBuilder",
]

logger = logging.getLogger(__name__)

DEFAULT_ADDRESS = "127.0.0.1"
DEFAULT_CONNECT_TIMEOUT = 10.0
# 0 means "block until the peer answers"; callbacks may run for a long time.
DEFAULT_READ_TIMEOUT = 0.0


class CallbackProxy:
    """Host-side stand-in for an object owned by the secondary runtime.

    Calls are routed through the server's *current* callback client, so a
    proxy created before ``reset_callback_client`` keeps working after it.
    Collecting the proxy releases the object in the secondary registry.
    """

    _isogate_proxy = True

    def __init__(self, handle: RemoteObjectHandle, server: GatewayServer) -> None:
        self.__dict__["_handle"] = handle
        self.__dict__["_server"] = server
        finalizer = weakref.finalize(self, server.release_callback, handle.object_id)
        finalizer.atexit = False

    def _client(self) -> CallbackClient:
        client = self._server.callback_client
        if client is None:
            raise RuntimeError("No callback client configured; the callback channel is not wired yet")
        return client

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self._client().call(self._handle.object_id, "__call__", args, kwargs)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        handle = self._handle

        def method(*args: Any, **kwargs: Any) -> Any:
            return self._client().call(handle.object_id, name, args, kwargs)

        method.__name__ = name
        return method

    def __repr__(self) -> str:
        return f"<CallbackProxy {self._handle.object_id} ({self._handle.type_name})>"


class CallbackClient(CommandClient):
    """Host -> secondary channel targeting the secondary runtime's callback server."""

    def __init__(
        self,
        server: GatewayServer,
        address: str,
        port: int,
        *,
        auth_token: str | None = None,
        connect_timeout: float | None = None,
        read_timeout: float | None = None,
    ) -> None:
        super().__init__(
            address=address,
            port=port,
            codec=server.codec,
            auth_token=auth_token,
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            name="callback-client",
        )

    def shutdown(self) -> None:
        self.close()


class GatewayServer(CommandServer):
    """Listener exposing the host's entry point to the secondary runtime."""

    side = HOST
    registry_prefix = "o"

    def __init__(
        self,
        entry_point: Any,
        *,
        address: str = DEFAULT_ADDRESS,
        port: int = 0,
        connect_timeout: float | None = DEFAULT_CONNECT_TIMEOUT,
        read_timeout: float | None = DEFAULT_READ_TIMEOUT,
        auth_token: str | None = None,
        callback_address: str = DEFAULT_ADDRESS,
        callback_port: int = 0,
    ) -> None:
        super().__init__(
            address=address,
            port=port,
            auth_token=auth_token,
            read_timeout=read_timeout,
            name="gateway",
        )
        self.connect_timeout = connect_timeout
        self.entry_point = entry_point
        self.registry.register(entry_point, ENTRY_POINT_ID)

        self._named_objects: dict[str, Any] = {}
        self._callback_lock = threading.Lock()
        self._callback_client = CallbackClient(
            self,
            callback_address,
            callback_port,
            auth_token=auth_token,
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
        )

    @property
    def callback_client(self) -> CallbackClient | None:
        return self._callback_client

    def _wrap_remote(self, handle: RemoteObjectHandle) -> Any:
        return CallbackProxy(handle, self)

    def get_object(self, object_id: str) -> Any | None:
        """Look up an object (including exceptions raised by host calls) by id."""
        return self.registry.find(object_id)

    def register_object(self, name: str, obj: Any) -> None:
        """Publish *obj* under *name* for lookup through the secondary's host view."""
        self._named_objects[name] = obj

    def release_callback(self, object_id: str) -> None:
        """Queue the release of a secondary-owned object through the current callback client."""
        client = self._callback_client
        if client is not None:
            client.schedule_release(object_id)

    def reset_callback_client(self, address: str, port: int) -> None:
        """Retarget the reverse channel at the port the secondary side actually bound."""
        with self._callback_lock:
            previous = self._callback_client
            self._callback_client = CallbackClient(
                self,
                address,
                port,
                auth_token=self.auth_token,
                connect_timeout=self.connect_timeout,
                read_timeout=self.read_timeout,
            )
        if previous is not None:
            previous.shutdown()
        logger.info("[isogate][gateway] Callback client now targets %s:%d", address, port)

    def dispatch(self, command: GatewayCommand) -> Any:
        kind = command.get("kind")
        if kind == "lookup":
            name = command.get("name", "")
            if name not in self._named_objects:
                raise AttributeError(f"No host object published as {name!r}")
            return self.codec.encode(self._named_objects[name])
        if kind == "shutdown":
            # Tearing down joins this connection's thread, so do it elsewhere.
            threading.Thread(
                target=self.shutdown, name="isogate-gateway-shutdown", daemon=True
            ).start()
            return None
        return super().dispatch(command)

    def _on_shutdown(self) -> None:
        with self._callback_lock:
            client, self._callback_client = self._callback_client, None
        if client is not None:
            client.shutdown()
        self._named_objects.clear()


class GatewayServerBuilder:
    """Fluent builder for ``GatewayServer``."""

    def __init__(self) -> None:
        self._entry_point: Any = None
        self._address = DEFAULT_ADDRESS
        self._port = 0
        self._callback_address = DEFAULT_ADDRESS
        self._callback_port = 0
        self._connect_timeout: float | None = DEFAULT_CONNECT_TIMEOUT
        self._read_timeout: float | None = DEFAULT_READ_TIMEOUT
        self._auth_token: str | None = None

    def entry_point(self, entry_point: Any) -> GatewayServerBuilder:
        self._entry_point = entry_point
        return self

    def address(self, address: str) -> GatewayServerBuilder:
        self._address = address
        return self

    def port(self, port: int) -> GatewayServerBuilder:
        if port < 0:
            raise ValueError(f"Invalid port {port}")
        self._port = port
        return self

    def callback_client(self, port: int, address: str = DEFAULT_ADDRESS) -> GatewayServerBuilder:
        self._callback_port = port
        self._callback_address = address
        return self

    def connect_timeout(self, seconds: float | None) -> GatewayServerBuilder:
        self._connect_timeout = seconds
        return self

    def read_timeout(self, seconds: float | None) -> GatewayServerBuilder:
        self._read_timeout = seconds
        return self

    def auth_token(self, token: str) -> GatewayServerBuilder:
        if not isinstance(token, str) or not token or not token.isalnum():
            raise ValueError("Authentication token must be a non-empty alphanumeric string")
        self._auth_token = token
        return self

    def build(self) -> GatewayServer:
        return GatewayServer(
            self._entry_point,
            address=self._address,
            port=self._port,
            connect_timeout=self._connect_timeout,
            read_timeout=self._read_timeout,
            auth_token=self._auth_token,
            callback_address=self._callback_address,
            callback_port=self._callback_port,
        )
