"""In-process secondary runtime.

``InProcessRuntime`` evaluates code in a private namespace inside the current
interpreter. It satisfies :class:`~isogate.interfaces.SecondaryRuntime`, so
the bridge can be wired against it exactly as it would be against an
embedded interpreter in another host.
"""

from __future__ import annotations

import atexit
import logging
import threading
from collections.abc import Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InProcessRuntime:
    """Private-namespace interpreter with exit procedures.

    Exit procedures registered with :meth:`register_exit` run exactly once,
    newest first, either on :meth:`close` or at interpreter exit.
    """

    def __init__(
        self,
        name: str = "secondary",
        namespace: dict[str, Any] | None = None,
        register_atexit: bool = True,
    ) -> None:
        self.name = name
        self._namespace: dict[str, Any] = {"__name__": f"__isogate_{name}__"}
        if namespace:
            self._namespace.update(namespace)
        self._exit_hooks: list[Callable[[], Any]] = []
        self._lock = threading.RLock()
        self._closed = False
        self._atexit_registered = register_atexit
        if register_atexit:
            atexit.register(self.close)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def namespace(self) -> dict[str, Any]:
        return self._namespace

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError(f"Runtime {self.name!r} is closed")

    def exec(self, source: str) -> None:
        with self._lock:
            self._check_open()
            exec(compile(source, f"<{self.name}>", "exec"), self._namespace)

    def eval(self, expression: str) -> Any:
        with self._lock:
            self._check_open()
            return eval(compile(expression, f"<{self.name}>", "eval"), self._namespace)

    def get_value(self, expression: str, expected_type: type[T]) -> T:
        value = self.eval(expression)
        if not isinstance(value, expected_type):
            raise TypeError(
                f"{expression!r} evaluated to {type(value).__name__}, expected {expected_type.__name__}"
            )
        return value

    def set_value(self, name: str, value: Any) -> None:
        if not name.isidentifier():
            raise ValueError(f"Invalid variable name: {name!r}")
        with self._lock:
            self._check_open()
            self._namespace[name] = value

    def register_exit(self, expression: str) -> None:
        hook = self.eval(expression)
        if not callable(hook):
            raise TypeError(f"{expression!r} is not callable")
        with self._lock:
            self._exit_hooks.append(hook)

    def close(self) -> None:
        """Run exit procedures once, newest first. Hook failures are logged."""
        with self._lock:
            if self._closed:
                return
            hooks = list(reversed(self._exit_hooks))
            self._exit_hooks.clear()

            for hook in hooks:
                try:
                    hook()
                except Exception:
                    logger.exception("[isogate][runtime] Exit procedure %r failed", hook)

            self._closed = True
            self._namespace.clear()

        if self._atexit_registered:
            atexit.unregister(self.close)
            self._atexit_registered = False
        logger.debug("[isogate][runtime] Runtime %r closed", self.name)

    def __enter__(self) -> InProcessRuntime:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<InProcessRuntime {self.name!r} closed={self._closed}>"
