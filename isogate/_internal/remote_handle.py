"""Remote object handle for cross-runtime object references.

RemoteObjectHandle is a lightweight reference to an object living on the other
side of the bridge. It carries only the object_id, the type_name and which side
owns the object, so either runtime can route calls back to the owner.
"""
from __future__ import annotations

from typing import Any, Literal

HOST = "host"
SECONDARY = "secondary"

Origin = Literal["host", "secondary"]


class RemoteObjectHandle:
    """Handle to an object owned by one side of the bridge.

    Attributes:
        object_id: Identifier of the object in its owner's registry.
        type_name: The type name of the remote object (for debugging/logging).
        origin: ``"host"`` or ``"secondary"``; the side that owns the object.
    """

    __slots__ = ("object_id", "type_name", "origin")

    def __init__(self, object_id: str, type_name: str, origin: Origin = HOST) -> None:
        self.object_id = object_id
        self.type_name = type_name
        self.origin = origin

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RemoteObjectHandle):
            return NotImplemented
        return self.object_id == other.object_id and self.origin == other.origin

    def __hash__(self) -> int:
        return hash((self.object_id, self.origin))

    def __repr__(self) -> str:
        return f"<RemoteObject id={self.object_id} type={self.type_name} origin={self.origin}>"


def handle_of(obj: Any) -> RemoteObjectHandle | None:
    """Return the handle behind a proxy object, or None for plain local objects."""
    if isinstance(obj, RemoteObjectHandle):
        return obj
    if getattr(type(obj), "_isogate_proxy", False):
        return obj.__dict__.get("_handle")
    return None
