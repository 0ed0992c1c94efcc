"""Tests for the length-prefixed JSON socket transport."""

import json
import socket
import struct
import threading

import pytest

from isogate._internal.rpc_transports import (
    AUTH_FIELD,
    MAX_MESSAGE_SIZE,
    JSONSocketTransport,
    RPCTransport,
)


@pytest.fixture
def socket_pair():
    left, right = socket.socketpair()
    yield left, right
    for sock in (left, right):
        sock.close()


class TestJSONSocketTransport:
    def test_satisfies_transport_protocol(self, socket_pair):
        assert isinstance(JSONSocketTransport(socket_pair[0]), RPCTransport)

    def test_message_framing(self, socket_pair):
        """Each message is a 4-byte big-endian length followed by UTF-8 JSON."""
        left, right = socket_pair
        JSONSocketTransport(left).send({"kind": "ping", "call_id": 1})

        header = right.recv(4)
        (length,) = struct.unpack(">I", header)
        body = right.recv(length)
        assert json.loads(body.decode("utf-8")) == {"kind": "ping", "call_id": 1}

    def test_send_recv_unicode(self, socket_pair):
        left, right = socket_pair
        JSONSocketTransport(left).send({"name": "café 測試"})
        assert JSONSocketTransport(right).recv() == {"name": "café 測試"}

    def test_auth_token_stamped_on_dict_messages(self, socket_pair):
        left, right = socket_pair
        message = {"kind": "ping"}
        JSONSocketTransport(left, auth_token="abc123").send(message)

        received = JSONSocketTransport(right).recv()
        assert received[AUTH_FIELD] == "abc123"
        assert AUTH_FIELD not in message

    def test_no_auth_field_without_token(self, socket_pair):
        left, right = socket_pair
        JSONSocketTransport(left).send({"kind": "ping"})
        assert AUTH_FIELD not in JSONSocketTransport(right).recv()

    def test_unserializable_payload_raises_type_error(self, socket_pair):
        with pytest.raises(TypeError, match="Cannot JSON-serialize"):
            JSONSocketTransport(socket_pair[0]).send({"value": object()})

    def test_oversized_message_rejected(self, socket_pair):
        left, right = socket_pair
        left.sendall(struct.pack(">I", MAX_MESSAGE_SIZE + 1))
        with pytest.raises(ValueError, match="too large"):
            JSONSocketTransport(right).recv()

    def test_peer_close_raises_connection_error(self, socket_pair):
        left, right = socket_pair
        left.close()
        with pytest.raises(ConnectionError):
            JSONSocketTransport(right).recv()

    def test_truncated_body_raises_connection_error(self, socket_pair):
        left, right = socket_pair
        left.sendall(struct.pack(">I", 50) + b'{"kind":')
        left.close()
        with pytest.raises(ConnectionError, match="Incomplete message"):
            JSONSocketTransport(right).recv()

    def test_close_wakes_blocked_reader(self, socket_pair):
        _, right = socket_pair
        transport = JSONSocketTransport(right)
        errors = []

        def reader():
            try:
                transport.recv()
            except (ConnectionError, OSError) as exc:
                errors.append(exc)

        thread = threading.Thread(target=reader, daemon=True)
        thread.start()
        thread.join(timeout=0.1)
        assert thread.is_alive()

        transport.close()
        thread.join(timeout=2.0)
        assert not thread.is_alive()
        assert errors
        assert transport.closed
