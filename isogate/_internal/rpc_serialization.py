"""
RPC Serialization Layer & Data Structures.

This module contains:
1. Data Structures: GatewayCommand / GatewayResponse TypedDicts, ObjectRegistry
2. Serialization Logic: ValueCodec (marker encoding of object references),
   response construction and error decoding
"""

from __future__ import annotations

import base64
import itertools
import logging
import threading
from collections.abc import Callable
from typing import Any, Literal, TypedDict

from ..errors import GatewayAuthError, GatewayCallError
from .remote_handle import HOST, SECONDARY, Origin, RemoteObjectHandle, handle_of

logger = logging.getLogger(__name__)

ENTRY_POINT_ID = "t"

REF_KEY = "__ref__"
CALLBACK_KEY = "__callback__"
MAP_KEY = "__map__"
BYTES_KEY = "__bytes__"

AUTH_ERROR_TYPE = "AuthenticationError"

_MARKERS: dict[str, str] = {HOST: REF_KEY, SECONDARY: CALLBACK_KEY}
_ORIGINS: dict[str, Origin] = {REF_KEY: HOST, CALLBACK_KEY: SECONDARY}

CommandKind = Literal["call", "member", "field", "lookup", "release", "ping", "shutdown"]

# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


class GatewayCommand(TypedDict, total=False):
    kind: CommandKind
    call_id: int
    target: str
    name: str
    args: list[Any]
    kwargs: dict[str, Any]
    auth: str


class GatewayResponse(TypedDict):
    kind: Literal["response"]
    call_id: int | None
    result: Any
    error: str | None
    error_type: str | None
    error_id: str | None


class ObjectRegistry:
    """Thread-safe id -> object table for objects exposed to the other side."""

    def __init__(self, prefix: str) -> None:
        self._prefix = prefix
        self._objects: dict[str, Any] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def register(self, obj: Any, object_id: str | None = None) -> str:
        with self._lock:
            if object_id is None:
                object_id = f"{self._prefix}{next(self._ids)}"
            self._objects[object_id] = obj
        return object_id

    def get(self, object_id: str) -> Any:
        with self._lock:
            try:
                return self._objects[object_id]
            except KeyError:
                raise KeyError(f"Object ID {object_id} not registered") from None

    def find(self, object_id: str) -> Any | None:
        with self._lock:
            return self._objects.get(object_id)

    def release(self, object_id: str) -> None:
        with self._lock:
            self._objects.pop(object_id, None)

    def clear(self) -> None:
        with self._lock:
            self._objects.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)

    def __contains__(self, object_id: object) -> bool:
        with self._lock:
            return object_id in self._objects


# ---------------------------------------------------------------------------
# Serialization Logic
# ---------------------------------------------------------------------------


class ValueCodec:
    """Encodes values for the wire from one side's point of view.

    Primitives pass through. Lists and string-keyed dicts are converted
    structurally when ``auto_convert`` is on. Anything else is registered in
    ``registry`` and travels as a reference marker; references owned by the
    other side come back through ``wrap_remote``.
    """

    def __init__(
        self,
        registry: ObjectRegistry,
        side: Origin,
        wrap_remote: Callable[[RemoteObjectHandle], Any],
        auto_convert: bool = True,
    ) -> None:
        self.registry = registry
        self.side = side
        self.wrap_remote = wrap_remote
        self.auto_convert = auto_convert

    def encode(self, value: Any) -> Any:
        if value is None or isinstance(value, (bool, int, float, str)):
            return value

        handle = handle_of(value)
        if handle is not None:
            return {_MARKERS[handle.origin]: handle.object_id, "type": handle.type_name}

        if isinstance(value, bytes):
            return {BYTES_KEY: base64.b64encode(value).decode("ascii")}

        if isinstance(value, (list, tuple, dict)):
            if not self.auto_convert:
                raise TypeError(
                    f"Cannot pass {type(value).__name__} across the bridge without auto_convert"
                )
            if isinstance(value, dict):
                converted: dict[str, Any] = {}
                for key, item in value.items():
                    if not isinstance(key, str):
                        raise TypeError(f"Map keys must be str, got {type(key).__name__}")
                    converted[key] = self.encode(item)
                return {MAP_KEY: converted}
            return [self.encode(item) for item in value]

        object_id = self.registry.register(value)
        return {_MARKERS[self.side]: object_id, "type": type(value).__name__}

    def decode(self, value: Any) -> Any:
        if isinstance(value, list):
            return [self.decode(item) for item in value]
        if not isinstance(value, dict):
            return value

        for marker, origin in _ORIGINS.items():
            if marker in value:
                object_id = value[marker]
                if origin == self.side:
                    return self.registry.get(object_id)
                return self.wrap_remote(
                    RemoteObjectHandle(object_id, value.get("type", "object"), origin)
                )
        if MAP_KEY in value:
            return {key: self.decode(item) for key, item in value[MAP_KEY].items()}
        if BYTES_KEY in value:
            return base64.b64decode(value[BYTES_KEY])
        return {key: self.decode(item) for key, item in value.items()}

    def encode_args(self, args: tuple[Any, ...] | list[Any]) -> list[Any]:
        return [self.encode(arg) for arg in args]

    def encode_kwargs(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        return {key: self.encode(item) for key, item in kwargs.items()}


def make_response(
    call_id: int | None,
    result: Any = None,
    error: str | None = None,
    error_type: str | None = None,
    error_id: str | None = None,
) -> GatewayResponse:
    return GatewayResponse(
        kind="response",
        call_id=call_id,
        result=result,
        error=error,
        error_type=error_type,
        error_id=error_id,
    )


def raise_for_response(response: Any) -> Any:
    """Return the encoded result of *response* or raise the remote error it carries."""
    if not isinstance(response, dict) or response.get("kind") != "response":
        raise GatewayCallError(f"Malformed response: {response!r}")
    error = response.get("error")
    if error is None:
        return response.get("result")
    error_type = response.get("error_type")
    if error_type == AUTH_ERROR_TYPE:
        raise GatewayAuthError(error, remote_type=error_type)
    raise GatewayCallError(error, object_id=response.get("error_id"), remote_type=error_type)
