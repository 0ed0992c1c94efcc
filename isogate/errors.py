"""Custom error types for isogate."""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for all isogate errors."""


class BindTimeoutError(BridgeError):
    """Raised when a listener does not bind within an explicitly configured deadline."""


class GatewayClosedError(BridgeError):
    """Raised when a gateway client or server is used after shutdown."""


class GatewayCallError(BridgeError):
    """Raised when the other side of the bridge reports an exception.

    ``object_id`` identifies the exception object in the owner's registry, so
    the owning side can fetch the original exception with it.
    """

    object_id: str | None
    remote_type: str | None
    remote_message: str

    def __init__(
        self,
        remote_message: str,
        object_id: str | None = None,
        remote_type: str | None = None,
    ) -> None:
        self.remote_message = remote_message
        self.object_id = object_id
        self.remote_type = remote_type
        prefix = f"Remote side raised {remote_type}" if remote_type else "Remote side raised an error"
        suffix = f" (object id {object_id})" if object_id else ""
        super().__init__(f"{prefix}: {remote_message}{suffix}")


class GatewayAuthError(GatewayCallError):
    """Raised when the remote listener rejects the authentication token."""


class BridgeSetupError(BridgeError):
    """Raised when bridge initialization fails.

    The originating exception is chained as ``__cause__``. When the failure
    came from a remote call, ``remote_error`` holds the original exception
    object fetched from the live bridge.
    """

    remote_error: BaseException | None

    def __init__(self, message: str, remote_error: BaseException | None = None) -> None:
        self.remote_error = remote_error
        super().__init__(message)
