"""
RPC Transport Layer.

This module contains:
- RPCTransport Protocol
- JSONSocketTransport (length-prefixed JSON over a stream socket)
"""

from __future__ import annotations

import contextlib
import json
import logging
import socket
import struct
import threading
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

MAX_MESSAGE_SIZE = 100 * 1024 * 1024
AUTH_FIELD = "auth"


@runtime_checkable
class RPCTransport(Protocol):
    """Protocol for RPC transport mechanisms.

    Implementations must provide thread-safe send/recv operations.
    """

    def send(self, obj: Any) -> None:
        """Send an object to the remote endpoint."""
        ...

    def recv(self) -> Any:
        """Receive an object from the remote endpoint. Blocks until available."""
        ...

    def close(self) -> None:
        """Close the transport. Further send/recv calls may fail."""
        ...


class JSONSocketTransport:
    """Transport using raw sockets + JSON framing.

    Every message is a 4-byte big-endian length followed by a UTF-8 JSON
    document. When ``auth_token`` is set it is stamped on every outgoing
    message under the ``auth`` key; the receiving side decides whether to
    accept it.
    """

    def __init__(self, sock: socket.socket, auth_token: str | None = None) -> None:
        self._sock = sock
        self._auth_token = auth_token
        self._lock = threading.Lock()
        self._recv_lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, obj: Any) -> None:
        """Serialize to JSON with length prefix."""
        if self._auth_token is not None and isinstance(obj, dict):
            obj = {**obj, AUTH_FIELD: self._auth_token}

        try:
            data = json.dumps(obj).encode("utf-8")
        except TypeError as e:
            logger.error("[isogate][wire] Cannot serialize %s: %s", type(obj).__name__, e)
            raise TypeError(f"Cannot JSON-serialize {type(obj).__name__}: {e}") from e

        msg = struct.pack(">I", len(data)) + data
        with self._lock:
            self._sock.sendall(msg)

    def recv(self) -> Any:
        """Receive length-prefixed JSON message."""
        with self._recv_lock:
            raw_len = self._recvall(4)
            if len(raw_len) < 4:
                raise ConnectionError("Socket closed or incomplete length header")
            msg_len = struct.unpack(">I", raw_len)[0]
            if msg_len > MAX_MESSAGE_SIZE:
                raise ValueError(f"Message too large: {msg_len} bytes")
            data = self._recvall(msg_len)
            if len(data) < msg_len:
                raise ConnectionError(f"Incomplete message: got {len(data)}/{msg_len} bytes")
            return json.loads(data.decode("utf-8"))

    def _recvall(self, n: int) -> bytes:
        """Receive exactly n bytes from the socket."""
        chunks = []
        remaining = n
        while remaining > 0:
            chunk = self._sock.recv(min(remaining, 65536))
            if not chunk:
                break
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def close(self) -> None:
        """Shut down both directions (wakes blocked readers) and close the socket."""
        self._closed = True
        with contextlib.suppress(OSError):
            self._sock.shutdown(socket.SHUT_RDWR)
        with contextlib.suppress(OSError):
            self._sock.close()
