"""Tests for GatewayBridge start/shutdown and the handle reference."""

import pytest
from typing_extensions import override

from isogate._internal.bridge import BridgeHandle, BridgeHandleRef, GatewayBridge
from isogate._internal.gateway_server import DEFAULT_ADDRESS, GatewayServerBuilder
from isogate._internal.rpc_protocol import UNBOUND_PORT
from isogate.errors import BindTimeoutError


class EntryPoint:
    def ping(self):
        return "pong"


class FailingAuthBuilder(GatewayServerBuilder):
    """Builder whose token application always fails."""

    @override
    def auth_token(self, token):
        raise RuntimeError("token support unavailable")


class RecordingBuilder(GatewayServerBuilder):
    instances = []

    def __init__(self):
        super().__init__()
        self.tokens = []
        RecordingBuilder.instances.append(self)

    @override
    def auth_token(self, token):
        self.tokens.append(token)
        return super().auth_token(token)


class NeverBindsServer:
    bind_error = None
    listening_port = UNBOUND_PORT

    def __init__(self):
        self.shutdown_calls = 0

    def start(self, fork=True):
        pass

    def shutdown(self):
        self.shutdown_calls += 1


class NeverBindsBuilder(GatewayServerBuilder):
    server = None

    @override
    def build(self):
        NeverBindsBuilder.server = NeverBindsServer()
        return NeverBindsBuilder.server


@pytest.fixture
def bridge():
    ref = BridgeHandleRef()
    gateway_bridge = GatewayBridge(ref)
    yield gateway_bridge, ref
    gateway_bridge.shutdown()


class TestBridgeHandleRef:
    def test_empty_until_set(self):
        ref = BridgeHandleRef()
        assert ref.get() is None
        assert not ref

    def test_set_once(self):
        ref = BridgeHandleRef()
        handle = BridgeHandle(port=1234, auth_enabled=False, server=None)
        ref.set(handle)
        assert ref.get() is handle
        with pytest.raises(RuntimeError, match="already published"):
            ref.set(BridgeHandle(port=5678, auth_enabled=False, server=None))
        assert ref.get() is handle

    def test_handle_is_frozen(self):
        handle = BridgeHandle(port=1, auth_enabled=True, server=None)
        with pytest.raises(AttributeError):
            handle.port = 2


class TestGatewayBridge:
    def test_start_without_auth(self, bridge):
        gateway_bridge, ref = bridge
        handle = gateway_bridge.start(EntryPoint(), require_auth=False, secret="abc")

        assert handle.port > 0
        assert handle.port != UNBOUND_PORT
        assert handle.auth_enabled is False
        assert handle.server.auth_token is None
        assert ref.get() is handle

    def test_start_with_auth(self, bridge):
        gateway_bridge, _ = bridge
        handle = gateway_bridge.start(EntryPoint(), require_auth=True, secret="Secret123")

        assert handle.auth_enabled is True
        assert handle.server.auth_token == "Secret123"

    def test_listener_configuration(self, bridge):
        gateway_bridge, _ = bridge
        entry = EntryPoint()
        handle = gateway_bridge.start(entry, require_auth=False, secret="abc")

        server = handle.server
        assert server.entry_point is entry
        assert server.address == DEFAULT_ADDRESS
        assert server.requested_port == 0
        assert server.callback_client.port == 0
        assert server.callback_client.address == DEFAULT_ADDRESS

    def test_timeouts_come_from_config(self):
        ref = BridgeHandleRef()
        gateway_bridge = GatewayBridge(ref, {"connect_timeout": 2.5, "read_timeout": 9.0})
        try:
            server = gateway_bridge.start(EntryPoint(), require_auth=False, secret="abc").server
            assert server.connect_timeout == 2.5
            assert server.read_timeout == 9.0
        finally:
            gateway_bridge.shutdown()

    def test_auth_failure_falls_back_to_unauthenticated(self, caplog):
        ref = BridgeHandleRef()
        gateway_bridge = GatewayBridge(ref, builder_factory=FailingAuthBuilder)
        try:
            handle = gateway_bridge.start(EntryPoint(), require_auth=True, secret="Secret123")
            assert handle.auth_enabled is False
            assert handle.server.auth_token is None
            assert handle.port > 0
            assert "continuing without it" in caplog.text
        finally:
            gateway_bridge.shutdown()

    def test_token_not_applied_when_not_required(self):
        RecordingBuilder.instances.clear()
        gateway_bridge = GatewayBridge(BridgeHandleRef(), builder_factory=RecordingBuilder)
        try:
            gateway_bridge.start(EntryPoint(), require_auth=False, secret="Secret123")
            assert RecordingBuilder.instances[0].tokens == []
        finally:
            gateway_bridge.shutdown()

    def test_start_only_once(self, bridge):
        gateway_bridge, _ = bridge
        gateway_bridge.start(EntryPoint(), require_auth=False, secret="abc")
        with pytest.raises(RuntimeError):
            gateway_bridge.start(EntryPoint(), require_auth=False, secret="abc")

    def test_shutdown_is_idempotent(self, bridge):
        gateway_bridge, _ = bridge
        handle = gateway_bridge.start(EntryPoint(), require_auth=False, secret="abc")
        gateway_bridge.shutdown()
        gateway_bridge.shutdown()
        assert handle.server.is_shutdown

    def test_shutdown_before_start(self):
        GatewayBridge(BridgeHandleRef()).shutdown()

    def test_bind_deadline_is_opt_in(self):
        ref = BridgeHandleRef()
        gateway_bridge = GatewayBridge(
            ref, {"bind_timeout": 0.05, "poll_interval": 0.01}, builder_factory=NeverBindsBuilder
        )
        with pytest.raises(BindTimeoutError):
            gateway_bridge.start(EntryPoint(), require_auth=False, secret="abc")
        assert ref.get() is None

        gateway_bridge.shutdown()
        assert NeverBindsBuilder.server.shutdown_calls == 1
