"""Secondary-runtime environment preparation.

Runs before any bridge activity: worker executable resolution is cached when
the secondary session is created, so the interpreter path has to be exported
first.
"""

from __future__ import annotations

import logging

from ..interfaces import DistributedSession, SecondaryRuntime

logger = logging.getLogger(__name__)

PYTHON_ENV_VAR = "ISOGATE_PYTHON"
DRIVER_PYTHON_ENV_VAR = "ISOGATE_DRIVER_PYTHON"
DEFAULT_PYTHON = "python3"

SESSION_IMPORTS = """\
from isogate.client import CallbackServerParameters, GatewayClient, GatewayParameters
from isogate.session import QueryContext, Session, SessionConf, SessionContext, SessionShutdown
"""


def is_local_mode(master: str) -> bool:
    return "local" in master


def resolve_python_executable(master: str, driver_python: str | None, default_python: str = DEFAULT_PYTHON) -> str:
    """Pick the executable workers should run.

    Cluster workers cannot resolve a path configured on the driver, so only
    local mode honours the driver override. An override that is set but
    empty is still an override (None means unset).
    """
    if is_local_mode(master) and driver_python is not None:
        return driver_python
    return default_python


def configure_python_executable(
    runtime: SecondaryRuntime,
    session: DistributedSession,
    default_python: str = DEFAULT_PYTHON,
) -> str:
    """Export ``ISOGATE_PYTHON`` inside the secondary runtime and return its value."""
    runtime.exec("import os")
    driver_python = None
    if runtime.get_value(f"{DRIVER_PYTHON_ENV_VAR!r} in os.environ", bool):
        driver_python = runtime.get_value(f"os.environ[{DRIVER_PYTHON_ENV_VAR!r}]", str)
    python = resolve_python_executable(session.master, driver_python, default_python)

    runtime.set_value("__isogate_python__", python)
    runtime.exec(f"os.environ[{PYTHON_ENV_VAR!r}] = __isogate_python__\ndel __isogate_python__")
    logger.info("[isogate][env] %s=%s (master=%s)", PYTHON_ENV_VAR, python, session.master)
    return python


def import_session_library(runtime: SecondaryRuntime) -> None:
    """Import the client and session classes the injected scripts refer to."""
    runtime.exec(SESSION_IMPORTS)
