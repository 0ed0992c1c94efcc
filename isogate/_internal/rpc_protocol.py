"""
RPC Protocol & Core Logic.

This module contains:
- CommandServer (loopback listener with one accept thread and one thread per
  connection, shared by the host gateway and the secondary callback server)
- CommandClient (per-thread connections issuing commands to a CommandServer)
"""

from __future__ import annotations

import contextlib
import hmac
import itertools
import logging
import socket
import threading
from collections import deque
from typing import Any

from ..errors import GatewayAuthError, GatewayClosedError
from .remote_handle import Origin, RemoteObjectHandle
from .rpc_serialization import (
    AUTH_ERROR_TYPE,
    ENTRY_POINT_ID,
    GatewayCommand,
    GatewayResponse,
    ObjectRegistry,
    ValueCodec,
    make_response,
    raise_for_response,
)
from .rpc_transports import AUTH_FIELD, JSONSocketTransport

logger = logging.getLogger(__name__)

UNBOUND_PORT = -1
ACCEPT_POLL_INTERVAL = 0.2
JOIN_TIMEOUT = 5.0
# Exceptions raised by served calls stay fetchable by id; older ones are dropped.
MAX_RETAINED_ERRORS = 64


def as_socket_timeout(seconds: float | None) -> float | None:
    """Map the bridge's timeout convention (0 or None = wait forever) to socket semantics."""
    if not seconds:
        return None
    return float(seconds)


# ---------------------------------------------------------------------------
# CommandServer
# ---------------------------------------------------------------------------


class CommandServer:
    """Listener that serves bridge commands against a registry of local objects.

    ``start(fork=True)`` returns immediately; the socket is bound on the accept
    thread, so ``listening_port`` reads ``UNBOUND_PORT`` until ``bound`` is set.
    """

    side: Origin
    registry_prefix = "o"

    def __init__(
        self,
        *,
        address: str,
        port: int = 0,
        auth_token: str | None = None,
        read_timeout: float | None = None,
        name: str = "server",
    ) -> None:
        self.address = address
        self.requested_port = port
        self.auth_token = auth_token
        self.read_timeout = read_timeout
        self.name = name

        self.registry = ObjectRegistry(self.registry_prefix)
        self.codec = ValueCodec(self.registry, self.side, self._wrap_remote, auto_convert=True)

        self.bound = threading.Event()
        self.bind_error: BaseException | None = None

        self._error_ids: deque[str] = deque()
        self._errors_lock = threading.Lock()

        self._port = UNBOUND_PORT
        self._listener: socket.socket | None = None
        self._accept_thread: threading.Thread | None = None
        self._connections: dict[JSONSocketTransport, threading.Thread] = {}
        self._conn_lock = threading.Lock()
        self._stopping = threading.Event()
        self._shutdown_lock = threading.Lock()
        self._started = False
        self._is_shutdown = False

    @property
    def listening_port(self) -> int:
        return self._port

    @property
    def is_shutdown(self) -> bool:
        return self._is_shutdown

    def _wrap_remote(self, handle: RemoteObjectHandle) -> Any:
        return handle

    def start(self, fork: bool = True) -> None:
        """Bind and serve. With ``fork`` the accept loop runs on a daemon thread."""
        if self._started:
            raise RuntimeError(f"{self.name} already started")
        if self._is_shutdown:
            raise RuntimeError(f"{self.name} was shut down and cannot be restarted")
        self._started = True

        if not fork:
            self._serve()
            return

        self._accept_thread = threading.Thread(
            target=self._serve, name=f"isogate-{self.name}-accept", daemon=True
        )
        self._accept_thread.start()

    def _serve(self) -> None:
        try:
            listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            listener.bind((self.address, self.requested_port))
            listener.listen()
            listener.settimeout(ACCEPT_POLL_INTERVAL)
        except OSError as exc:
            self.bind_error = exc
            logger.error("[isogate][%s] Failed to bind %s:%s: %s", self.name, self.address, self.requested_port, exc)
            self.bound.set()
            return

        self._listener = listener
        self._port = listener.getsockname()[1]
        logger.info("[isogate][%s] Listening on %s:%d", self.name, self.address, self._port)
        self.bound.set()
        try:
            self._accept_loop(listener)
        finally:
            with contextlib.suppress(OSError):
                listener.close()

    def _accept_loop(self, listener: socket.socket) -> None:
        while not self._stopping.is_set():
            try:
                conn, peer = listener.accept()
            except socket.timeout:
                continue
            except OSError as exc:
                if not self._stopping.is_set():
                    logger.error("[isogate][%s] Accept failed: %s", self.name, exc)
                break

            conn.settimeout(as_socket_timeout(self.read_timeout))
            transport = JSONSocketTransport(conn)
            thread = threading.Thread(
                target=self._handle_connection,
                args=(transport,),
                name=f"isogate-{self.name}-conn",
                daemon=True,
            )
            with self._conn_lock:
                if self._stopping.is_set():
                    transport.close()
                    break
                self._connections[transport] = thread
            logger.debug("[isogate][%s] Accepted connection from %s", self.name, peer)
            thread.start()

    def _handle_connection(self, transport: JSONSocketTransport) -> None:
        try:
            while not self._stopping.is_set():
                try:
                    command = transport.recv()
                except (OSError, ValueError) as exc:
                    logger.debug("[isogate][%s] Connection closed (%s)", self.name, exc)
                    break

                if not self._authenticate(command):
                    logger.warning("[isogate][%s] Rejected command with invalid auth token", self.name)
                    call_id = command.get("call_id") if isinstance(command, dict) else None
                    with contextlib.suppress(OSError):
                        transport.send(
                            make_response(call_id, error="Authentication failed", error_type=AUTH_ERROR_TYPE)
                        )
                    break

                response = self.handle_command(command)
                try:
                    transport.send(response)
                except TypeError as exc:
                    transport.send(
                        make_response(
                            response["call_id"],
                            error=f"Response serialization failed: {exc}",
                            error_type=type(exc).__name__,
                        )
                    )
                except OSError as exc:
                    logger.debug("[isogate][%s] Send failed (%s)", self.name, exc)
                    break
        finally:
            transport.close()
            with self._conn_lock:
                self._connections.pop(transport, None)

    def _authenticate(self, command: Any) -> bool:
        if self.auth_token is None:
            return True
        if not isinstance(command, dict):
            return False
        token = command.get(AUTH_FIELD)
        return isinstance(token, str) and hmac.compare_digest(token, self.auth_token)

    def _retain_error(self, exc: BaseException) -> str:
        """Register *exc* for later lookup, evicting the oldest beyond ``MAX_RETAINED_ERRORS``."""
        error_id = self.registry.register(exc)
        with self._errors_lock:
            if len(self._error_ids) == MAX_RETAINED_ERRORS:
                self.registry.release(self._error_ids.popleft())
            self._error_ids.append(error_id)
        return error_id

    def handle_command(self, command: GatewayCommand) -> GatewayResponse:
        call_id = command.get("call_id")
        try:
            result = self.dispatch(command)
        except Exception as exc:
            error_id = self._retain_error(exc)
            logger.debug("[isogate][%s] Command %s failed: %r (error id %s)", self.name, command.get("kind"), exc, error_id)
            return make_response(
                call_id,
                error=str(exc) or type(exc).__name__,
                error_type=type(exc).__name__,
                error_id=error_id,
            )
        return make_response(call_id, result=result)

    def dispatch(self, command: GatewayCommand) -> Any:
        kind = command.get("kind")
        if kind == "ping":
            return None
        if kind == "release":
            released = [command["target"]] if "target" in command else []
            released.extend(command.get("args", []))
            for object_id in released:
                if object_id != ENTRY_POINT_ID:
                    self.registry.release(object_id)
            return None

        target = self.registry.get(command["target"])
        name = command.get("name", "")
        if name.startswith("_") and name != "__call__":
            raise AttributeError(f"Private member {name!r} is not exposed")

        if kind == "call":
            func = target if name == "__call__" else getattr(target, name)
            args = self.codec.decode(command.get("args", []))
            kwargs = self.codec.decode(command.get("kwargs", {}))
            return self.codec.encode(func(*args, **kwargs))
        if kind == "member":
            attr = getattr(target, name)
            if callable(attr):
                return {"callable": True, "value": None}
            return {"callable": False, "value": self.codec.encode(attr)}
        if kind == "field":
            return self.codec.encode(getattr(target, name))

        raise ValueError(f"Unknown command kind: {kind!r}")

    def shutdown(self) -> None:
        """Stop accepting, close every connection and join the server's threads.

        Safe to call more than once and from any thread; concurrent callers
        return only after the first one has finished tearing down.
        """
        with self._shutdown_lock:
            if self._is_shutdown:
                return
            self._is_shutdown = True
            self._stopping.set()
            logger.info("[isogate][%s] Shutting down (port %d)", self.name, self._port)

            if self._listener is not None:
                with contextlib.suppress(OSError):
                    self._listener.close()

            with self._conn_lock:
                connections = list(self._connections.items())
            for transport, _ in connections:
                transport.close()

            current = threading.current_thread()
            threads = [thread for _, thread in connections]
            if self._accept_thread is not None:
                threads.append(self._accept_thread)
            for thread in threads:
                if thread is not current and thread.is_alive():
                    thread.join(timeout=JOIN_TIMEOUT)

            self._on_shutdown()
            self.registry.clear()

    def _on_shutdown(self) -> None:
        """Hook for subclasses; runs once, after connections are closed."""


# ---------------------------------------------------------------------------
# CommandClient
# ---------------------------------------------------------------------------


class CommandClient:
    """Issues commands to a CommandServer.

    Each calling thread gets its own connection, so a call that re-enters this
    runtime through the reverse channel can call out again without waiting on
    the outer call's socket.
    """

    def __init__(
        self,
        *,
        address: str,
        port: int,
        codec: ValueCodec,
        auth_token: str | None = None,
        connect_timeout: float | None = None,
        read_timeout: float | None = None,
        name: str = "client",
    ) -> None:
        self.address = address
        self.port = port
        self.codec = codec
        self.auth_token = auth_token
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.name = name

        self._local = threading.local()
        self._transports: list[JSONSocketTransport] = []
        self._lock = threading.Lock()
        self._ids = itertools.count()
        self._closed = False
        self._pending_releases: deque[str] = deque()

    @property
    def closed(self) -> bool:
        return self._closed

    def _transport(self) -> JSONSocketTransport:
        if self._closed:
            raise GatewayClosedError(f"{self.name} is closed")
        transport: JSONSocketTransport | None = getattr(self._local, "transport", None)
        if transport is None or transport.closed:
            sock = socket.create_connection(
                (self.address, self.port), timeout=as_socket_timeout(self.connect_timeout)
            )
            sock.settimeout(as_socket_timeout(self.read_timeout))
            transport = JSONSocketTransport(sock, auth_token=self.auth_token)
            self._local.transport = transport
            with self._lock:
                self._transports = [t for t in self._transports if not t.closed]
                self._transports.append(transport)
            logger.debug("[isogate][%s] Connected to %s:%d", self.name, self.address, self.port)
        return transport

    def schedule_release(self, object_id: str) -> None:
        """Queue a ``release`` for *object_id*; it goes out ahead of the next command.

        Called from proxy finalizers, which may run on any thread in the
        middle of another call, so nothing is sent from here.
        """
        if not self._closed:
            self._pending_releases.append(object_id)

    def _exchange(self, transport: JSONSocketTransport, command: GatewayCommand) -> Any:
        command["call_id"] = next(self._ids)
        try:
            transport.send(command)
            response = transport.recv()
        except OSError as exc:
            transport.close()
            if self._closed:
                raise GatewayClosedError(f"{self.name} closed during call") from exc
            raise

        try:
            return raise_for_response(response)
        except GatewayAuthError:
            transport.close()
            raise

    def _flush_releases(self, transport: JSONSocketTransport) -> None:
        released: list[str] = []
        while True:
            try:
                released.append(self._pending_releases.popleft())
            except IndexError:
                break
        if released:
            self._exchange(transport, GatewayCommand(kind="release", args=released))
            logger.debug("[isogate][%s] Released %d remote objects", self.name, len(released))

    def send_command(self, command: GatewayCommand) -> Any:
        transport = self._transport()
        self._flush_releases(transport)
        return self.codec.decode(self._exchange(transport, command))

    def call(self, target: str, name: str, args: Any = (), kwargs: dict[str, Any] | None = None) -> Any:
        return self.send_command(
            GatewayCommand(
                kind="call",
                target=target,
                name=name,
                args=self.codec.encode_args(args),
                kwargs=self.codec.encode_kwargs(kwargs or {}),
            )
        )

    def member(self, target: str, name: str) -> tuple[bool, Any]:
        """Return ``(is_callable, value)`` for a member of a remote object."""
        result = self.send_command(GatewayCommand(kind="member", target=target, name=name))
        return bool(result["callable"]), result.get("value")

    def field(self, target: str, name: str) -> Any:
        return self.send_command(GatewayCommand(kind="field", target=target, name=name))

    def release(self, target: str) -> None:
        self.send_command(GatewayCommand(kind="release", target=target))

    def ping(self) -> None:
        self.send_command(GatewayCommand(kind="ping"))

    def close(self) -> None:
        self._closed = True
        self._pending_releases.clear()
        with self._lock:
            transports = list(self._transports)
            self._transports.clear()
        for transport in transports:
            transport.close()
