"""Secondary-runtime session objects built on top of a gateway connection.

The host injects these into the secondary runtime's namespace after the
callback channel is wired:

- ``session_conf``: :class:`SessionConf` over the host configuration
- ``context``: :class:`SessionContext`, holding a back-reference to the host context
- ``session``: :class:`Session` built from the gateway entry point
- ``query_context``: :class:`QueryContext` derived from the session

State that would otherwise live in class-level globals (cached gateway, host
view, accumulator counter, active context, python includes) lives in a
:class:`SessionState` bundle owned by the bridge that created it.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class SessionState:
    """Session-scoped state shared by the objects of one bridge session."""

    gateway: Any = None
    host_view: Any = None
    next_accum_id: int = 0
    active_context: Any = None
    python_includes: list[str] | None = None

    def reset(self) -> None:
        """Return every field to its initial value so a later session starts clean."""
        self.gateway = None
        self.host_view = None
        self.next_accum_id = 0
        self.active_context = None
        self.python_includes = None

    @property
    def is_pristine(self) -> bool:
        return (
            self.gateway is None
            and self.host_view is None
            and self.next_accum_id == 0
            and self.active_context is None
            and self.python_includes is None
        )


class SessionConf:
    """Read/write view over the host session configuration."""

    def __init__(self, host_conf: Any) -> None:
        self._host_conf = host_conf

    def get(self, key: str, default: str | None = None) -> str | None:
        return self._host_conf.get(key, default)

    def set(self, key: str, value: str) -> SessionConf:
        self._host_conf.set(key, value)
        return self

    def contains(self, key: str) -> bool:
        return self._host_conf.get(key, None) is not None

    def get_all(self) -> list[tuple[str, str]]:
        return [tuple(pair) for pair in self._host_conf.get_all()]  # type: ignore[misc]

    def __repr__(self) -> str:
        return f"<SessionConf {self._host_conf!r}>"


@dataclass
class Accumulator:
    id: int
    value: Any

    def add(self, term: Any) -> None:
        self.value += term


class SessionContext:
    """Secondary-side session context.

    Only one context may be active per :class:`SessionState`. Stopping the
    context stops the host context too unless :meth:`detach` was called first.
    """

    def __init__(self, host_context: Any, *, gateway: Any, conf: SessionConf, state: SessionState) -> None:
        if state.active_context is not None:
            raise ValueError(
                f"Cannot run multiple SessionContexts at once; existing context: {state.active_context!r}"
            )
        self._host_context = host_context
        self._gateway = gateway
        self._conf = conf
        self._state = state
        self._accumulators: dict[int, Accumulator] = {}
        self._stopped = False

        state.gateway = gateway
        state.host_view = gateway.host_view
        state.active_context = self
        state.python_includes = []

    @property
    def conf(self) -> SessionConf:
        return self._conf

    @property
    def host_context(self) -> Any:
        return self._host_context

    @property
    def stopped(self) -> bool:
        return self._stopped

    def accumulator(self, value: Any) -> Accumulator:
        acc = Accumulator(self._state.next_accum_id, value)
        self._state.next_accum_id += 1
        self._accumulators[acc.id] = acc
        return acc

    def add_py_file(self, path: str) -> None:
        if self._state.python_includes is None:
            self._state.python_includes = []
        self._state.python_includes.append(path)

    def detach(self) -> None:
        """Drop the host back-reference so :meth:`stop` stays on this side."""
        self._host_context = None

    def stop(self) -> None:
        if self._stopped:
            return
        if self._host_context is not None:
            self._host_context.stop()
            self._host_context = None
        self._accumulators.clear()
        if self._state.active_context is self:
            self._state.active_context = None
        self._stopped = True
        logger.info("[isogate][session] Session context stopped")

    def __repr__(self) -> str:
        return f"<SessionContext stopped={self._stopped}>"


class Session:
    """Entry point for secondary-side code, wrapping the host session."""

    def __init__(self, context: SessionContext, host_session: Any) -> None:
        self.context = context
        self.host_session = host_session
        self._query_context: QueryContext | None = None

    @property
    def conf(self) -> SessionConf:
        return self.context.conf

    @property
    def query_context(self) -> QueryContext:
        if self._query_context is None:
            self._query_context = QueryContext(self)
        return self._query_context

    def stop(self) -> None:
        self.context.stop()


class QueryContext:
    """Compatibility context derived from a :class:`Session`."""

    def __init__(self, session: Session) -> None:
        self.session = session

    @property
    def context(self) -> SessionContext:
        return self.session.context

    def get_conf(self, key: str, default: str | None = None) -> str | None:
        return self.session.conf.get(key, default)

    def set_conf(self, key: str, value: str) -> None:
        self.session.conf.set(key, value)


class SessionShutdown:
    """Exit procedure for one bridge session. Runs its steps at most once.

    Order matters: the host back-reference is dropped before the context is
    stopped, otherwise stopping the context would stop the host session too.
    """

    def __init__(self, context: SessionContext, gateway: Any, state: SessionState) -> None:
        self._context = context
        self._gateway = gateway
        self._state = state
        self._lock = threading.Lock()
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def __call__(self) -> None:
        with self._lock:
            if self._done:
                return
            self._done = True

        logger.info("[isogate][session] Running session exit procedure")
        self._context.detach()
        self._context.stop()
        self._state.reset()
        self._gateway.shutdown()
