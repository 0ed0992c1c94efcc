"""Secondary-runtime side of the gateway bridge.

Code running in the secondary runtime uses ``GatewayClient`` to reach the
host's entry point, and the client's ``CallbackServer`` to let the host call
back into objects the secondary runtime passed across.

Typical wiring (what the host injects during setup)::

    gateway = GatewayClient(
        auto_field=True,
        auto_convert=True,
        gateway_parameters=GatewayParameters(port=port, auto_convert=True, auth_token=token),
        callback_server_parameters=CallbackServerParameters(port=0, auth_token=token),
    )
    port = gateway.get_callback_server().get_listening_port()
"""

from __future__ import annotations

import contextlib
import logging
import weakref
from dataclasses import dataclass
from typing import Any

from ._internal.remote_handle import HOST, SECONDARY, RemoteObjectHandle, handle_of
from ._internal.rpc_protocol import CommandClient, CommandServer
from ._internal.rpc_serialization import ENTRY_POINT_ID, GatewayCommand, ObjectRegistry, ValueCodec
from .errors import GatewayCallError, GatewayClosedError

__all__ = [
    "CallbackServer",
    "CallbackServerParameters",
    "GatewayClient",
    "GatewayParameters",
    "HostView",
    "RemoteMethod",
    "RemoteObject",
]

logger = logging.getLogger(__name__)

DEFAULT_ADDRESS = "127.0.0.1"


@dataclass
class GatewayParameters:
    """Where and how to reach the host gateway."""

    port: int
    address: str = DEFAULT_ADDRESS
    auto_convert: bool = False
    auth_token: str | None = None
    connect_timeout: float | None = 10.0
    read_timeout: float | None = None


@dataclass
class CallbackServerParameters:
    """How to run the callback server; ``port=0`` binds an ephemeral port."""

    port: int = 0
    address: str = DEFAULT_ADDRESS
    auth_token: str | None = None
    read_timeout: float | None = None
    bind_timeout: float | None = 10.0


class RemoteMethod:
    """Bound method of a host object."""

    def __init__(self, client: GatewayClient, handle: RemoteObjectHandle, name: str) -> None:
        self._client = client
        self._handle = handle
        self.__name__ = name

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self._client.command_client.call(self._handle.object_id, self.__name__, args, kwargs)

    def __repr__(self) -> str:
        return f"<RemoteMethod {self._handle.type_name}.{self.__name__}>"


class RemoteObject:
    """Secondary-side proxy for a host object.

    With ``auto_field`` enabled on the client, attribute access returns the
    host attribute's value when it is not callable; otherwise every attribute
    is treated as a method (use ``GatewayClient.get_field`` for fields).

    When the proxy is garbage-collected the host is told to release the
    object, unless the client has been closed by then.
    """

    _isogate_proxy = True

    def __init__(self, handle: RemoteObjectHandle, client: GatewayClient) -> None:
        self.__dict__["_handle"] = handle
        self.__dict__["_client"] = client
        if handle.object_id != ENTRY_POINT_ID:
            finalizer = weakref.finalize(self, client.command_client.schedule_release, handle.object_id)
            finalizer.atexit = False

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        client: GatewayClient = self._client
        if client.auto_field:
            is_callable, value = client.command_client.member(self._handle.object_id, name)
            if not is_callable:
                return value
        return RemoteMethod(client, self._handle, name)

    def __eq__(self, other: object) -> bool:
        other_handle = handle_of(other)
        if other_handle is None:
            return NotImplemented
        return self._handle == other_handle

    def __hash__(self) -> int:
        return hash(self._handle)

    def __repr__(self) -> str:
        return f"<RemoteObject {self._handle.object_id} ({self._handle.type_name})>"


class HostView:
    """Attribute-style access to objects the host published by name."""

    def __init__(self, client: GatewayClient) -> None:
        self.__dict__["_client"] = client

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self._client.command_client.send_command(GatewayCommand(kind="lookup", name=name))
        except GatewayCallError as exc:
            raise AttributeError(name) from exc


class CallbackServer(CommandServer):
    """Serves host -> secondary calls against objects passed to the host."""

    side = SECONDARY
    registry_prefix = "p"

    def __init__(self, parameters: CallbackServerParameters, client: GatewayClient) -> None:
        self.parameters = parameters
        self._client = client
        super().__init__(
            address=parameters.address,
            port=parameters.port,
            auth_token=parameters.auth_token,
            read_timeout=parameters.read_timeout,
            name="callback",
        )

    def _wrap_remote(self, handle: RemoteObjectHandle) -> Any:
        return RemoteObject(handle, self._client)

    def start(self, fork: bool = True) -> None:
        """Start serving and block until the socket is bound.

        On failure the server is shut down before the error propagates.
        """
        super().start(fork=fork)
        if not self.bound.wait(timeout=self.parameters.bind_timeout):
            self.shutdown()
            raise RuntimeError("Callback server did not bind in time")
        if self.bind_error is not None:
            self.shutdown()
            raise RuntimeError(f"Callback server failed to bind: {self.bind_error}") from self.bind_error

    def get_listening_port(self) -> int:
        return self.listening_port


class GatewayClient:
    """Connection from the secondary runtime to the host gateway."""

    def __init__(
        self,
        gateway_parameters: GatewayParameters,
        callback_server_parameters: CallbackServerParameters | None = None,
        auto_field: bool = False,
        auto_convert: bool = False,
    ) -> None:
        self.gateway_parameters = gateway_parameters
        self.auto_field = auto_field
        self.auto_convert = auto_convert or gateway_parameters.auto_convert
        self._closed = False

        self._callback_server: CallbackServer | None = None
        if callback_server_parameters is not None:
            self._callback_server = CallbackServer(callback_server_parameters, self)
            registry = self._callback_server.registry
        else:
            # Without a callback server, local objects cannot be passed to the host.
            registry = ObjectRegistry("p")

        self.codec = ValueCodec(registry, SECONDARY, self._wrap_remote, auto_convert=self.auto_convert)
        self.command_client = CommandClient(
            address=gateway_parameters.address,
            port=gateway_parameters.port,
            codec=self.codec,
            auth_token=gateway_parameters.auth_token,
            connect_timeout=gateway_parameters.connect_timeout,
            read_timeout=gateway_parameters.read_timeout,
            name="gateway-client",
        )

        self.entry_point = RemoteObject(RemoteObjectHandle(ENTRY_POINT_ID, "EntryPoint", HOST), self)
        self.host_view = HostView(self)

        if self._callback_server is not None:
            self._callback_server.start()
            logger.info(
                "[isogate][client] Callback server listening on port %d",
                self._callback_server.get_listening_port(),
            )

    def _wrap_remote(self, handle: RemoteObjectHandle) -> Any:
        return RemoteObject(handle, self)

    @property
    def closed(self) -> bool:
        return self._closed

    def get_callback_server(self) -> CallbackServer | None:
        return self._callback_server

    def get_field(self, obj: Any, name: str) -> Any:
        handle = handle_of(obj)
        if handle is None:
            raise TypeError(f"{obj!r} is not a host object")
        return self.command_client.field(handle.object_id, name)

    def detach(self, obj: Any) -> None:
        """Release a host object so the host registry can drop it."""
        handle = handle_of(obj)
        if handle is None:
            raise TypeError(f"{obj!r} is not a host object")
        self.command_client.release(handle.object_id)

    def close(self) -> None:
        """Close connections and the callback server, leaving the host gateway running."""
        if self._closed:
            return
        self._closed = True
        self.command_client.close()
        if self._callback_server is not None:
            self._callback_server.shutdown()

    def shutdown(self) -> None:
        """Ask the host gateway to shut down, then close this side."""
        if self._closed:
            return
        try:
            self.command_client.send_command(GatewayCommand(kind="shutdown"))
        except (OSError, GatewayClosedError, GatewayCallError) as exc:
            logger.debug("[isogate][client] Gateway shutdown request failed: %s", exc)
        logger.info("[isogate][client] Gateway client shutting down")
        self.close()

    def __enter__(self) -> GatewayClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        with contextlib.suppress(OSError):
            self.close()
