"""Reverse callback channel wiring.

Connects the secondary runtime to the host listener, points the host's
callback client at the port the secondary callback server actually bound,
and populates the secondary namespace with the session objects.
"""

from __future__ import annotations

import logging

from ..interfaces import SecondaryRuntime
from ..session import SessionState
from .bridge import BridgeHandle
from .gateway_server import DEFAULT_ADDRESS

logger = logging.getLogger(__name__)

GATEWAY_SCRIPT = """\
try:
    gateway = GatewayClient(
        auto_field=True,
        auto_convert=True,
        gateway_parameters=GatewayParameters(**__isogate_gateway_params__),
        callback_server_parameters=CallbackServerParameters(**__isogate_callback_params__),
    )
finally:
    del __isogate_gateway_params__, __isogate_callback_params__
"""

CALLBACK_PORT_EXPR = "gateway.get_callback_server().get_listening_port()"

NAMESPACE_SCRIPT = """\
__isogate_host_context__ = gateway.entry_point.session_context()
session_conf = SessionConf(__isogate_host_context__.get_conf())
context = SessionContext(
    __isogate_host_context__, gateway=gateway, conf=session_conf, state=__isogate_state__
)
session = Session(context, gateway.entry_point)
query_context = session.query_context
del __isogate_host_context__
"""


class CallbackChannelManager:
    def __init__(self, runtime: SecondaryRuntime, handle: BridgeHandle, state: SessionState) -> None:
        self._runtime = runtime
        self._handle = handle
        self._state = state

    def register(self, secret: str) -> int:
        """Wire the callback channel and return the secondary callback port."""
        gateway_params: dict[str, object] = {"port": self._handle.port, "auto_convert": True}
        callback_params: dict[str, object] = {"port": 0}
        if self._handle.auth_enabled:
            gateway_params["auth_token"] = secret
            callback_params["auth_token"] = secret

        self._runtime.set_value("__isogate_gateway_params__", gateway_params)
        self._runtime.set_value("__isogate_callback_params__", callback_params)
        self._runtime.exec(GATEWAY_SCRIPT)

        port = self._runtime.get_value(CALLBACK_PORT_EXPR, int)
        self._handle.server.reset_callback_client(DEFAULT_ADDRESS, port)
        logger.info("[isogate][callback] Callback channel wired on port %d", port)

        self._runtime.set_value("__isogate_state__", self._state)
        self._runtime.exec(NAMESPACE_SCRIPT)
        return port
