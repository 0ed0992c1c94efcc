"""Public collaborator protocols for isogate.

These interfaces define the contract between the bridge and the pieces it
does not own: the secondary runtime that evaluates code, the distributed
session it exposes, and whoever reports task progress. They enable structural
typing so collaborators can be implemented without inheriting from concrete
base classes.
"""

from __future__ import annotations

from typing import Any, Protocol, TypeVar, runtime_checkable

T = TypeVar("T")


@runtime_checkable
class SecondaryRuntime(Protocol):
    """Embedded interpreter that the bridge injects its glue into."""

    @property
    def closed(self) -> bool:
        """True once the runtime has run its exit procedures."""

    def exec(self, source: str) -> None:
        """Execute statements in the runtime's namespace."""

    def eval(self, expression: str) -> Any:
        """Evaluate an expression and return its value."""

    def get_value(self, expression: str, expected_type: type[T]) -> T:
        """Evaluate *expression* and check the result against *expected_type*.

        Raises:
            TypeError: If the value is not an instance of *expected_type*.
        """

    def set_value(self, name: str, value: Any) -> None:
        """Bind *value* to *name* in the runtime's namespace."""

    def register_exit(self, expression: str) -> None:
        """Register the callable *expression* evaluates to as an exit procedure.

        Exit procedures run once, in reverse registration order, when the
        runtime exits normally.
        """

    def close(self) -> None:
        """Run exit procedures and release the runtime."""


@runtime_checkable
class HostConf(Protocol):
    """Configuration handle of the host's distributed session."""

    def get(self, key: str, default: str | None = None) -> str | None: ...

    def set(self, key: str, value: str) -> Any: ...

    def get_all(self) -> list[tuple[str, str]]: ...


@runtime_checkable
class HostSessionContext(Protocol):
    """Host-side context backing a distributed session."""

    def get_conf(self) -> HostConf: ...

    def stop(self) -> None: ...


@runtime_checkable
class DistributedSession(Protocol):
    """The host session exposed to the secondary runtime as the entry point.

    ``master`` carries the execution mode: values containing ``"local"``
    mean local execution, anything else a cluster deployment.
    """

    @property
    def master(self) -> str: ...

    def session_context(self) -> HostSessionContext: ...


@runtime_checkable
class ProgressReporter(Protocol):
    """Receives fractional progress (0.0-1.0) at setup milestones."""

    def update(self, progress: float) -> None: ...
