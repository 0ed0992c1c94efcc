"""Host-side orchestration of one gateway bridge session.

``GatewaySession`` brings up the bridge between the host process and a
secondary runtime, and tears both sides down again:

    >>> with GatewaySession(InProcessRuntime(), distributed_session) as bridge:
    ...     bridge.runtime.eval("session.conf.get('app.name')")

Setup order: environment, session library imports, authentication decision,
listener start and bind, callback channel, exit procedure.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from ._internal.auth import shared_secret, should_authenticate
from ._internal.bridge import BridgeHandle, BridgeHandleRef, GatewayBridge
from ._internal.callback_channel import CallbackChannelManager
from ._internal.environment import configure_python_executable, import_session_library
from ._internal.shutdown import ShutdownCoordinator
from .config import GatewayConfig, resolve_gateway_config
from .errors import BridgeSetupError, GatewayCallError
from .interfaces import DistributedSession, ProgressReporter, SecondaryRuntime
from .session import SessionState

__all__ = ["GatewaySession", "LoggingProgressReporter"]

logger = logging.getLogger(__name__)

SESSION_OBJECT_NAME = "session"

# Closes a client left behind when setup failed before the exit procedure existed.
CLEANUP_SCRIPT = """\
if 'gateway' in globals():
    gateway.close()
"""


class LoggingProgressReporter:
    """Default progress reporter; logs each milestone."""

    def update(self, progress: float) -> None:
        logger.info("[isogate][progress] %.0f%%", progress * 100)


def _find_call_error(exc: BaseException) -> GatewayCallError | None:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, GatewayCallError) and current.object_id is not None:
            return current
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return None


class GatewaySession:
    """One bridge between the host and a secondary runtime.

    A session is opened at most once; after :meth:`close` it cannot be
    reopened. Use it as a context manager, or call :meth:`open` and
    :meth:`close` explicitly.
    """

    def __init__(
        self,
        runtime: SecondaryRuntime,
        session: DistributedSession,
        config: GatewayConfig | None = None,
        progress: ProgressReporter | None = None,
    ) -> None:
        self.runtime = runtime
        self.session = session
        self.config = resolve_gateway_config(config)
        self.progress: ProgressReporter = progress or LoggingProgressReporter()

        self.state = SessionState()
        self.handle_ref = BridgeHandleRef()
        self._bridge = GatewayBridge(self.handle_ref, self.config)
        self._shutdown = ShutdownCoordinator(runtime)

        self._lock = threading.Lock()
        self._opened = False
        self._ready = False
        self._closed = False
        self._setup_done = threading.Event()
        self._setup_done.set()
        self.callback_port: int | None = None

    @property
    def handle(self) -> BridgeHandle | None:
        """The live bridge handle, or None until setup has completed."""
        if not self._ready:
            return None
        return self.handle_ref.get()

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def closed(self) -> bool:
        return self._closed

    def open(self) -> GatewaySession:
        with self._lock:
            if self._closed:
                raise RuntimeError("GatewaySession is closed and cannot be reopened")
            if self._opened:
                raise RuntimeError("GatewaySession is already open")
            self._opened = True
            self._setup_done.clear()

        try:
            self._setup()
        except Exception as exc:
            remote_error = None
            call_error = _find_call_error(exc)
            if call_error is not None:
                remote_error = self.get_remote_error(call_error.object_id)
            logger.error("[isogate][host] Bridge setup failed: %s", exc)
            raise BridgeSetupError(f"Bridge setup failed: {exc}", remote_error=remote_error) from exc
        finally:
            self._setup_done.set()
        return self

    def _setup(self) -> None:
        self.progress.update(0.2)

        configure_python_executable(self.runtime, self.session, self.config["default_python"])
        import_session_library(self.runtime)
        self.progress.update(0.3)

        require_auth = should_authenticate(self.runtime)
        secret = shared_secret()
        self.progress.update(0.4)
        self._check_not_closed()

        handle = self._bridge.start(self.session, require_auth, secret)
        handle.server.register_object(SESSION_OBJECT_NAME, self.session)
        self.progress.update(0.7)
        self._check_not_closed()

        self.callback_port = CallbackChannelManager(self.runtime, handle, self.state).register(secret)
        self._shutdown.install()
        self.progress.update(0.9)
        self._check_not_closed()

        self._ready = True
        logger.info("[isogate][host] Bridge ready (gateway port %d, callback port %d)",
                    handle.port, self.callback_port)
        self.progress.update(1.0)

    def _check_not_closed(self) -> None:
        if self._closed:
            raise RuntimeError("GatewaySession was closed during setup")

    async def open_async(self) -> GatewaySession:
        """Run :meth:`open` on a dedicated setup thread."""
        loop = asyncio.get_running_loop()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="isogate-setup")
        try:
            await loop.run_in_executor(executor, self.open)
        finally:
            executor.shutdown(wait=False)
        return self

    def get_remote_error(self, object_id: str | None) -> BaseException | None:
        """Fetch an exception raised by a host object during a bridge call."""
        server = self._bridge.server
        if object_id is None or server is None:
            return None
        obj = server.get_object(object_id)
        return obj if isinstance(obj, BaseException) else None

    def close(self) -> None:
        """Run the exit procedure and stop the listener. Safe to call twice."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._setup_done.wait()
        self._ready = False

        try:
            if self._shutdown.installed:
                self._shutdown.run()
            elif self._opened and not self.runtime.closed:
                self.runtime.exec(CLEANUP_SCRIPT)
        finally:
            self._bridge.shutdown()
            self.state.reset()
        logger.info("[isogate][host] Bridge closed")

    def __enter__(self) -> GatewaySession:
        try:
            return self.open()
        except BaseException:
            self.close()
            raise

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
