"""Authentication negotiation for the gateway bridge.

Token authentication only exists from a specific patch level of the bridge
library onwards; the secondary runtime reports its version and older
deployments are never asked to speak it.
"""

from __future__ import annotations

import functools
import logging
import re
import secrets
import string
from typing import Any

from ..interfaces import SecondaryRuntime

logger = logging.getLogger(__name__)

MIN_AUTH_PATCH = 7
SECRET_LENGTH = 256

_VERSION_RE = re.compile(r"(\d+)\.(\d+)\.(\d+)")
_SECRET_ALPHABET = string.ascii_letters + string.digits


@functools.lru_cache(maxsize=1)
def shared_secret() -> str:
    """Return the process-wide bridge token, generating it on first use.

    The token is a capability: anyone holding it can attach to the listener.
    It is only ever produced here, never taken from user input.
    """
    return "".join(secrets.choice(_SECRET_ALPHABET) for _ in range(SECRET_LENGTH))


def supports_authentication(version: Any) -> bool:
    """True iff *version* is ``major.minor.patch`` with ``patch >= 7``."""
    if not isinstance(version, str):
        return False
    match = _VERSION_RE.fullmatch(version)
    if match is None:
        return False
    return int(match.group(3)) >= MIN_AUTH_PATCH


def should_authenticate(runtime: SecondaryRuntime) -> bool:
    """Ask the secondary runtime for its bridge-library version and decide on auth."""
    try:
        runtime.exec("import isogate")
        version = runtime.get_value("isogate.__version__", str)
    except (ImportError, AttributeError, NameError, TypeError) as exc:
        logger.warning("[isogate][auth] Could not read bridge version, disabling authentication: %s", exc)
        return False

    decision = supports_authentication(version)
    logger.info("[isogate][auth] Bridge library %s in secondary runtime; authentication %s",
                version, "enabled" if decision else "disabled")
    return decision
