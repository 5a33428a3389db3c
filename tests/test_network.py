import io
import threading
from dataclasses import dataclass

import pytest

from datatransfer import message1_0, message1_1
from datatransfer.core import (
    PROTOCOL_DATA_TRANSFER_1_0,
    PROTOCOL_DATA_TRANSFER_1_1,
    ChannelID,
    Cid,
)
from datatransfer.network import DataTransferNetwork, NetworkError
from datatransfer.registry import Decoder


@dataclass
class _FakeVoucher:
    data: str = "fake voucher"

    def type(self):
        return "FakeDTType"

    def to_cbor_value(self):
        return [self.data]

    @classmethod
    def from_cbor_value(cls, value):
        return cls(value[0])


_DECODER = Decoder(_FakeVoucher)
_SELECTOR = {".": {}}
_BASE_CID = Cid(b"\x01\x55\x12\x20" + bytes(range(32)))


class _Stream:
    def __init__(self, protocol, remote_peer, data=b"", on_close=None):
        self.protocol = protocol
        self.remote_peer = remote_peer
        self._buffer = io.BytesIO(data)
        self._on_close = on_close
        self.closed = False
        self.was_reset = False
        self.deadlines = []

    def read(self, n=-1):
        return self._buffer.read(n)

    def write(self, data):
        return self._buffer.write(data)

    def set_write_deadline(self, deadline):
        self.deadlines.append(deadline)

    def close(self):
        if self.closed:
            return
        self.closed = True
        if self._on_close is not None and not self.was_reset:
            self._on_close(self._buffer.getvalue())

    def reset(self):
        self.was_reset = True


class _MockNet:
    def __init__(self):
        self.hosts = {}

    def gen_peer(self):
        host = _MockHost(self, f"peer-{len(self.hosts) + 1}")
        self.hosts[host.peer_id] = host
        return host


class _MockHost:
    def __init__(self, net, peer_id):
        self.net = net
        self.peer_id = peer_id
        self.handlers = {}
        self.connected = set()
        self.protected = set()
        self.failures = 0
        self.new_stream_calls = 0
        self.opened = []

    def new_stream(self, peer, protocols, timeout):
        self.new_stream_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("network err")
        remote = self.net.hosts[peer]
        for protocol in protocols:
            handler = remote.handlers.get(protocol)
            if handler is None:
                continue

            def deliver(data, protocol=protocol, handler=handler):
                handler(_Stream(protocol, self.peer_id, data))

            stream = _Stream(protocol, peer, on_close=deliver)
            self.opened.append(stream)
            return stream
        raise ConnectionError("protocols not supported")

    def set_stream_handler(self, protocol, handler):
        self.handlers[protocol] = handler

    def connect(self, peer):
        if peer not in self.net.hosts:
            raise ConnectionError("unknown peer")
        self.connected.add(peer)

    def protect(self, peer, tag):
        self.protected.add((peer, tag))

    def unprotect(self, peer, tag):
        if (peer, tag) in self.protected:
            self.protected.discard((peer, tag))
            return True
        return False


class _Receiver:
    def __init__(self):
        self.requests = []
        self.responses = []
        self.restarts = []
        self.errors = []
        self.error_seen = threading.Event()

    def receive_request(self, sender, incoming):
        self.requests.append((sender, incoming))

    def receive_response(self, sender, incoming):
        self.responses.append((sender, incoming))

    def receive_restart_existing_channel_request(self, sender, incoming):
        self.restarts.append((sender, incoming))

    def receive_error(self, error):
        self.errors.append(error)
        self.error_seen.set()


@pytest.fixture
def setup():
    net = _MockNet()
    host1 = net.gen_peer()
    host2 = net.gen_peer()
    dtnet1 = DataTransferNetwork(host1)
    dtnet2 = DataTransferNetwork(host2)
    receiver = _Receiver()
    dtnet1.set_delegate(receiver)
    dtnet2.set_delegate(receiver)
    dtnet1.connect_to(host2.peer_id)
    return host1, host2, dtnet1, dtnet2, receiver


def _request(transfer_id=1234):
    voucher = _FakeVoucher()
    return message1_1.new_request(
        transfer_id, False, False, voucher.type(), voucher, _BASE_CID, _SELECTOR
    )


def test_send_request(setup):
    host1, host2, dtnet1, _, receiver = setup
    request = _request(4321)
    dtnet1.send_message(host2.peer_id, request)

    assert len(receiver.requests) == 1
    sender, received = receiver.requests[0]
    assert sender == host1.peer_id
    assert received.transfer_id() == request.transfer_id()
    assert received.is_cancel() == request.is_cancel()
    assert received.is_pull() == request.is_pull()
    assert received.is_request() == request.is_request()
    assert received.base_cid() == request.base_cid()
    assert received.voucher(_DECODER) == request.voucher(_DECODER)
    assert received.selector() == request.selector()


def test_send_response(setup):
    host1, host2, _, dtnet2, receiver = setup
    result = _FakeVoucher("result")
    response = message1_1.new_response(77, False, False, result.type(), result)
    dtnet2.send_message(host1.peer_id, response)

    assert len(receiver.responses) == 1
    sender, received = receiver.responses[0]
    assert sender == host2.peer_id
    assert received.transfer_id() == response.transfer_id()
    assert received.accepted() == response.accepted()
    assert received.is_request() == response.is_request()
    assert received.voucher_result(_DECODER) == result


def test_send_restart_request(setup):
    host1, host2, dtnet1, _, receiver = setup
    chid = ChannelID(initiator="peer-a", responder="peer-b", id=99)
    dtnet1.send_message(host2.peer_id, message1_1.restart_existing_channel_request(chid))

    assert receiver.requests == []
    assert len(receiver.restarts) == 1
    sender, received = receiver.restarts[0]
    assert sender == host1.peer_id
    assert received.restart_channel_id() == chid


@pytest.mark.parametrize(
    "attempts, errors, success",
    [(1, 0, True), (1, 1, False), (2, 1, True), (2, 2, False)],
)
def test_send_message_retry(attempts, errors, success):
    net = _MockNet()
    host1 = net.gen_peer()
    host1.failures = errors
    host2 = net.gen_peer()
    dtnet1 = DataTransferNetwork(
        host1,
        max_stream_open_attempts=attempts,
        min_attempt_duration=0.001,
        max_attempt_duration=0.001,
        backoff_factor=1,
    )
    dtnet2 = DataTransferNetwork(host2)
    receiver = _Receiver()
    dtnet1.set_delegate(receiver)
    dtnet2.set_delegate(receiver)
    dtnet1.connect_to(host2.peer_id)

    request = _request()
    if not success:
        with pytest.raises(NetworkError):
            dtnet1.send_message(host2.peer_id, request)
        assert receiver.requests == []
        assert host1.new_stream_calls == attempts
    else:
        dtnet1.send_message(host2.peer_id, request)
        assert len(receiver.requests) == 1
        assert receiver.requests[0][0] == host1.peer_id


def test_exhausted_attempts_message():
    net = _MockNet()
    host1 = net.gen_peer()
    host1.failures = 5
    host2 = net.gen_peer()
    dtnet1 = DataTransferNetwork(
        host1,
        max_stream_open_attempts=3,
        min_attempt_duration=0.001,
        max_attempt_duration=0.001,
    )
    with pytest.raises(NetworkError, match="exhausted 3 attempts but failed to open stream to peer-2"):
        dtnet1.send_message(host2.peer_id, _request())
    assert host1.new_stream_calls == 3


def test_downgrade_to_legacy_protocol():
    net = _MockNet()
    host1 = net.gen_peer()
    host2 = net.gen_peer()
    dtnet1 = DataTransferNetwork(host1)
    dtnet2 = DataTransferNetwork(host2, protocols=[PROTOCOL_DATA_TRANSFER_1_0])
    receiver = _Receiver()
    dtnet2.set_delegate(receiver)

    dtnet1.send_message(host2.peer_id, _request(55))
    assert host1.opened[-1].protocol == PROTOCOL_DATA_TRANSFER_1_0
    assert len(receiver.requests) == 1
    received = receiver.requests[0][1]
    assert isinstance(received, message1_0.TransferRequest)
    assert received.transfer_id() == 55
    assert received.voucher(_DECODER) == _FakeVoucher()


def test_restart_to_legacy_peer_fails():
    net = _MockNet()
    host1 = net.gen_peer()
    host2 = net.gen_peer()
    dtnet1 = DataTransferNetwork(host1)
    dtnet2 = DataTransferNetwork(host2, protocols=[PROTOCOL_DATA_TRANSFER_1_0])
    receiver = _Receiver()
    dtnet2.set_delegate(receiver)

    request = message1_1.restart_existing_channel_request(ChannelID("a", "b", 1))
    with pytest.raises(NetworkError, match="failed to convert message for protocol: restart not supported on 1.0"):
        dtnet1.send_message(host2.peer_id, request)
    assert receiver.restarts == []


def test_unrecognized_protocol_resets_stream():
    net = _MockNet()
    host1 = net.gen_peer()
    host2 = net.gen_peer()
    dtnet1 = DataTransferNetwork(host1, protocols=["/custom/1.0.0"])
    dtnet2 = DataTransferNetwork(host2, protocols=["/custom/1.0.0"])
    receiver = _Receiver()
    dtnet2.set_delegate(receiver)

    with pytest.raises(NetworkError, match="protocol"):
        dtnet1.send_message(host2.peer_id, _request())
    assert host1.opened[-1].was_reset is True
    assert receiver.requests == []


def test_write_deadline_is_set_then_cleared(setup):
    host1, host2, dtnet1, _, _ = setup
    dtnet1.send_message(host2.peer_id, _request())
    deadlines = host1.opened[-1].deadlines
    assert len(deadlines) == 2
    assert isinstance(deadlines[0], float)
    assert deadlines[1] is None


def test_handle_stream_without_receiver_resets():
    net = _MockNet()
    dtnet = DataTransferNetwork(net.gen_peer())
    stream = _Stream(PROTOCOL_DATA_TRANSFER_1_1, "peer-x", b"")
    dtnet.handle_new_stream(stream)
    assert stream.was_reset is True
    assert stream.closed is True


def test_handle_stream_with_several_messages(setup):
    _, _, _, dtnet2, receiver = setup
    buffer = io.BytesIO()
    message1_1.cancel_request(1).to_net(buffer)
    message1_1.update_response(2, True).to_net(buffer)
    stream = _Stream(PROTOCOL_DATA_TRANSFER_1_1, "peer-x", buffer.getvalue())
    dtnet2.handle_new_stream(stream)

    assert [r.transfer_id() for _, r in receiver.requests] == [1]
    assert receiver.requests[0][1].is_cancel() is True
    assert [r.transfer_id() for _, r in receiver.responses] == [2]
    assert receiver.responses[0][0] == "peer-x"
    assert stream.was_reset is False
    assert stream.closed is True


def test_handle_stream_malformed_reports_error(setup):
    _, _, _, dtnet2, receiver = setup
    stream = _Stream(PROTOCOL_DATA_TRANSFER_1_1, "peer-x", bytes([0x83, 0xF5, 0xF6, 0xF6]))
    dtnet2.handle_new_stream(stream)
    assert receiver.error_seen.wait(2.0) is True
    assert stream.was_reset is True
    assert receiver.requests == []


def test_handle_legacy_stream_nil_request_reports_error(setup):
    _, _, _, dtnet2, receiver = setup
    stream = _Stream(PROTOCOL_DATA_TRANSFER_1_0, "peer-x", bytes([0x83, 0xF5, 0xF6, 0xF6]))
    dtnet2.handle_new_stream(stream)
    assert receiver.error_seen.wait(2.0) is True
    assert "invalid/malformed message" in str(receiver.errors[0])


def test_peer_id_and_protection(setup):
    host1, host2, dtnet1, _, _ = setup
    assert dtnet1.peer_id() == host1.peer_id
    assert host2.peer_id in host1.connected
    dtnet1.protect(host2.peer_id, "tag")
    assert (host2.peer_id, "tag") in host1.protected
    assert dtnet1.unprotect(host2.peer_id, "tag") is True
    assert dtnet1.unprotect(host2.peer_id, "tag") is False


def test_default_protocols_order():
    net = _MockNet()
    dtnet = DataTransferNetwork(net.gen_peer())
    assert dtnet.protocols == [PROTOCOL_DATA_TRANSFER_1_1, PROTOCOL_DATA_TRANSFER_1_0]