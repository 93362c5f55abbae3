import socket
import threading
import time

import pytest

from lanprobe.protocols.s7comm import S7CommModule
from lanprobe.protocols.s7comm_frames import build_connection_request
from lanprobe.tests.test_s7comm_frames import component_payload, module_payload, setup_ack, szl_reply

CONNECTION_CONFIRM = bytes.fromhex('0300001611d00001000100c0010ac1020100c2020102')


def request_ref(request):
    return int.from_bytes(request[11:13], 'big')


class FakePLC:
    """One-connection TCP server answering each request with the next scripted reply."""

    def __init__(self, replies):
        self.replies = replies
        self.received = []
        self.done = threading.Event()
        self.server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.server.bind(('127.0.0.1', 0))
        self.server.listen(1)
        self.port = self.server.getsockname()[1]
        self.thread = threading.Thread(target=self._serve, daemon=True)
        self.thread.start()

    def _serve(self):
        conn, _ = self.server.accept()
        with conn:
            for reply in self.replies:
                request = conn.recv(4096)
                if not request:
                    break
                self.received.append(request)
                data = reply(request)
                if data is None:
                    self.done.wait(5)
                    break
                conn.sendall(data)
            self.done.wait(5)

    def close(self):
        self.done.set()
        self.thread.join(5)
        self.server.close()


@pytest.fixture
def plc():
    servers = []

    def start(*replies):
        server = FakePLC(list(replies))
        servers.append(server)
        return server
    yield start
    for server in servers:
        server.close()


def confirm(request):
    return CONNECTION_CONFIRM


def ack(request):
    return setup_ack(request_ref(request))


def szl(request):
    return szl_reply(request_ref(request), module_payload())


def components(request):
    return szl_reply(request_ref(request), component_payload())


def test_full_handshake(plc):
    server = plc(confirm, ack, szl, components)
    result = S7CommModule(rack=0, slot=2).discover('127.0.0.1', server.port, 3000)
    assert result.found
    assert result.details['vendor'] == 'Siemens'
    assert result.details['pdu_length'] == 240
    assert result.details['szl_id'] == '0x0011'
    assert result.details['szl_payload'] == module_payload().hex()
    assert result.details['cpu_model'] == 'CPU 315-2EH14-0AB0'
    assert result.details['firmware_version'] == 'V3.2.6'
    assert server.received[0] == build_connection_request(0, 2)
    assert request_ref(server.received[1]) == 1
    assert request_ref(server.received[2]) == 2
    assert len(server.received[2]) == 34
    assert server.received[3][26:28] == b'\x00\x1c'
    assert request_ref(server.received[3]) == 3
    assert result.details['serial_number'] == 'S C-X4U421302009'
    assert result.details['module_name'] == 'PLC_1'
    assert result.details['plant_identification'] == 'Pump station'


def test_rack_and_slot_reach_the_wire(plc):
    server = plc(confirm, ack, szl, components)
    result = S7CommModule(rack=1, slot=3).discover('127.0.0.1', server.port, 3000)
    assert result.found
    assert server.received[0][21] == 35


def test_rejected_connection(plc):
    server = plc(lambda request: bytes.fromhex('0300000702f080'))
    assert not S7CommModule().discover('127.0.0.1', server.port, 3000).found
    assert len(server.received) == 1


def test_setup_refused(plc):
    server = plc(confirm, lambda request: setup_ack(request_ref(request), error=(0x81, 0x04)))
    assert not S7CommModule().discover('127.0.0.1', server.port, 3000).found
    assert len(server.received) == 2


def test_setup_reply_for_another_reference(plc):
    server = plc(confirm, lambda request: setup_ack(request_ref(request) + 1))
    assert not S7CommModule().discover('127.0.0.1', server.port, 3000).found


def test_szl_read_rejected(plc):
    server = plc(confirm, ack, lambda request: szl_reply(request_ref(request), b'', return_code=0x0A))
    assert not S7CommModule().discover('127.0.0.1', server.port, 3000).found
    assert len(server.received) == 3


def test_silent_target_times_out(plc):
    server = plc(lambda request: None)
    result = S7CommModule(stage_timeout_ms=200).discover('127.0.0.1', server.port, 1000)
    assert not result.found


def test_connection_refused():
    probe = socket.socket()
    probe.bind(('127.0.0.1', 0))
    port = probe.getsockname()[1]
    probe.close()
    assert not S7CommModule().discover('127.0.0.1', port, 1000).found


def test_component_read_refused_keeps_identification(plc):
    server = plc(confirm, ack, szl,
                 lambda request: szl_reply(request_ref(request), b'', param_error=0xD401))
    result = S7CommModule().discover('127.0.0.1', server.port, 3000)
    assert result.found
    assert result.details['cpu_model'] == 'CPU 315-2EH14-0AB0'
    assert 'serial_number' not in result.details
    assert 'module_name' not in result.details
    assert len(server.received) == 4


def test_component_read_unanswered_keeps_identification(plc):
    server = plc(confirm, ack, szl, lambda request: None)
    start = time.monotonic()
    result = S7CommModule(stage_timeout_ms=200).discover('127.0.0.1', server.port, 3000)
    assert time.monotonic() - start < 0.2 + 1.0
    assert result.found
    assert 'serial_number' not in result.details
