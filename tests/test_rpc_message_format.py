"""Tests for wire value encoding, the object registry and response decoding."""

import pytest

from isogate._internal.remote_handle import HOST, SECONDARY, RemoteObjectHandle
from isogate._internal.rpc_serialization import (
    AUTH_ERROR_TYPE,
    BYTES_KEY,
    CALLBACK_KEY,
    MAP_KEY,
    REF_KEY,
    ObjectRegistry,
    ValueCodec,
    make_response,
    raise_for_response,
)
from isogate.errors import GatewayAuthError, GatewayCallError


class Widget:
    pass


@pytest.fixture
def host_codec():
    return ValueCodec(ObjectRegistry("o"), HOST, lambda handle: ("remote", handle))


class TestObjectRegistry:
    def test_generated_ids_use_prefix(self):
        registry = ObjectRegistry("p")
        first = registry.register(object())
        second = registry.register(object())
        assert first.startswith("p")
        assert first != second
        assert len(registry) == 2

    def test_explicit_id(self):
        registry = ObjectRegistry("o")
        entry = object()
        assert registry.register(entry, "t") == "t"
        assert registry.get("t") is entry
        assert "t" in registry

    def test_get_unknown_raises_key_error(self):
        with pytest.raises(KeyError, match="not registered"):
            ObjectRegistry("o").get("o1")

    def test_find_release_clear(self):
        registry = ObjectRegistry("o")
        object_id = registry.register(Widget())
        assert registry.find(object_id) is not None
        registry.release(object_id)
        registry.release(object_id)
        assert registry.find(object_id) is None

        registry.register(Widget())
        registry.clear()
        assert len(registry) == 0


class TestValueCodec:
    @pytest.mark.parametrize("value", [None, True, 0, 3.5, "text"])
    def test_primitives_pass_through(self, host_codec, value):
        assert host_codec.encode(value) == value

    def test_local_objects_become_references(self, host_codec):
        widget = Widget()
        encoded = host_codec.encode(widget)
        assert set(encoded) == {REF_KEY, "type"}
        assert encoded["type"] == "Widget"
        assert host_codec.decode(encoded) is widget

    def test_secondary_side_uses_callback_marker(self):
        codec = ValueCodec(ObjectRegistry("p"), SECONDARY, lambda handle: handle)
        assert CALLBACK_KEY in codec.encode(Widget())

    def test_foreign_reference_is_wrapped(self, host_codec):
        kind, handle = host_codec.decode({CALLBACK_KEY: "p7", "type": "function"})
        assert kind == "remote"
        assert handle == RemoteObjectHandle("p7", "function", SECONDARY)

    def test_handles_encode_as_their_owner(self, host_codec):
        handle = RemoteObjectHandle("p3", "Thing", SECONDARY)
        assert host_codec.encode(handle) == {CALLBACK_KEY: "p3", "type": "Thing"}

    def test_maps_are_tagged(self, host_codec):
        encoded = host_codec.encode({"a": 1, "b": [2, 3]})
        assert encoded == {MAP_KEY: {"a": 1, "b": [2, 3]}}
        assert host_codec.decode(encoded) == {"a": 1, "b": [2, 3]}

    def test_map_keys_must_be_strings(self, host_codec):
        with pytest.raises(TypeError, match="Map keys"):
            host_codec.encode({1: "one"})

    def test_collections_require_auto_convert(self):
        codec = ValueCodec(ObjectRegistry("p"), SECONDARY, lambda handle: handle, auto_convert=False)
        for value in ([1], (1,), {"a": 1}):
            with pytest.raises(TypeError):
                codec.encode(value)

    def test_bytes_are_base64(self, host_codec):
        encoded = host_codec.encode(b"\x01\x02")
        assert encoded == {BYTES_KEY: "AQI="}
        assert host_codec.decode(encoded) == b"\x01\x02"


class TestResponses:
    def test_make_response_shape(self):
        response = make_response(3, result=10)
        assert response == {
            "kind": "response",
            "call_id": 3,
            "result": 10,
            "error": None,
            "error_type": None,
            "error_id": None,
        }

    def test_raise_for_response_returns_result(self):
        assert raise_for_response(make_response(1, result={"x": 1})) == {"x": 1}

    def test_remote_error(self):
        response = make_response(1, error="boom", error_type="ValueError", error_id="o5")
        with pytest.raises(GatewayCallError) as exc_info:
            raise_for_response(response)
        assert exc_info.value.object_id == "o5"
        assert exc_info.value.remote_type == "ValueError"
        assert exc_info.value.remote_message == "boom"

    def test_auth_error(self):
        response = make_response(None, error="Authentication failed", error_type=AUTH_ERROR_TYPE)
        with pytest.raises(GatewayAuthError):
            raise_for_response(response)

    @pytest.mark.parametrize("response", [None, [], {"kind": "command"}])
    def test_malformed_response(self, response):
        with pytest.raises(GatewayCallError, match="Malformed"):
            raise_for_response(response)
