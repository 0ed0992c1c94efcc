"""Installs and triggers the secondary session's exit procedure."""

from __future__ import annotations

import logging

from ..interfaces import SecondaryRuntime

logger = logging.getLogger(__name__)

EXIT_PROCEDURE = "__exit_session__"

INSTALL_SCRIPT = f"{EXIT_PROCEDURE} = SessionShutdown(context, gateway, __isogate_state__)\n"


class ShutdownCoordinator:
    def __init__(self, runtime: SecondaryRuntime) -> None:
        self._runtime = runtime
        self._installed = False

    @property
    def installed(self) -> bool:
        return self._installed

    def install(self) -> None:
        """Define the exit procedure and register it with the runtime's exit facility."""
        self._runtime.exec(INSTALL_SCRIPT)
        self._runtime.register_exit(EXIT_PROCEDURE)
        self._installed = True
        logger.debug("[isogate][shutdown] Exit procedure installed")

    def run(self) -> None:
        """Run the exit procedure now. A no-op if it was never installed or already ran."""
        if not self._installed or self._runtime.closed:
            return
        self._runtime.eval(f"{EXIT_PROCEDURE}()")
