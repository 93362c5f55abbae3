import itertools
import logging
import socket
from typing import Optional

from lanprobe.config.discovery_config import (
    S7_DEFAULT_RACK,
    S7_DEFAULT_SLOT,
    S7_STAGE_TIMEOUT_MS,
    S7COMM_PORT,
)
from lanprobe.core.discovery import DiscoveryResult, ProtocolModule
from lanprobe.core.errors import DiscoveryError, DiscoveryTimeout, ParseError, TransportError
from lanprobe.core.utils import deadline_after, remaining
from lanprobe.protocols.s7comm_frames import (
    SZL,
    SetupAck,
    build_connection_request,
    build_setup_communication,
    build_szl_request,
    parse_component_identification,
    parse_module_identification,
    parse_setup_ack,
    parse_szl_response,
    parse_tpkt_length,
    validate_connection_confirm,
)

logger = logging.getLogger(__name__)


class S7Handshake:
    """
    Drives connection request, setup communication and an SZL read over one
    connected socket, strictly in that order. Each stage gets its own response
    timeout, capped by the overall deadline; any failure ends the handshake.
    """

    def __init__(self, sock: socket.socket, deadline: float, stage_timeout: float):
        self.sock = sock
        self.deadline = deadline
        self.stage_timeout = stage_timeout
        self._refs = itertools.count(1)
        self.pdu_length: Optional[int] = None

    def next_ref(self) -> int:
        return next(self._refs)

    def connection_request(self, rack: int, slot: int) -> None:
        frame = self._exchange(build_connection_request(rack, slot), 'connection request')
        validate_connection_confirm(frame)
        logger.debug("COTP connection established (rack=%d, slot=%d)", rack, slot)

    def setup_communication(self) -> SetupAck:
        ref = self.next_ref()
        frame = self._exchange(build_setup_communication(ref), 'setup communication')
        ack = parse_setup_ack(frame, expected_ref=ref)
        self.pdu_length = ack.pdu_length
        logger.debug("S7 communication set up, PDU length %d", ack.pdu_length)
        return ack

    def read_szl(self, szl_id: int, szl_index: int = 0x0000) -> bytes:
        ref = self.next_ref()
        frame = self._exchange(build_szl_request(szl_id, szl_index, ref), 'SZL read')
        payload = parse_szl_response(frame, expected_ref=ref)
        logger.debug("SZL 0x%04x read, %d bytes", szl_id, len(payload))
        return payload

    def _exchange(self, request: bytes, stage: str) -> bytes:
        stage_deadline = min(self.deadline, deadline_after(int(self.stage_timeout * 1000)))
        try:
            self._settimeout(stage_deadline, stage)
            self.sock.sendall(request)
            header = self._recv_exact(4, stage_deadline, stage)
            length = parse_tpkt_length(header)
            return header + self._recv_exact(length - 4, stage_deadline, stage)
        except socket.timeout as e:
            raise DiscoveryTimeout(f'{stage}: no reply in time') from e
        except OSError as e:
            raise TransportError(f'{stage}: {e}') from e

    def _settimeout(self, stage_deadline: float, stage: str) -> None:
        left = remaining(stage_deadline)
        if left <= 0:
            raise DiscoveryTimeout(f'{stage}: deadline expired')
        self.sock.settimeout(left)

    def _recv_exact(self, size: int, stage_deadline: float, stage: str) -> bytes:
        buf = b''
        while len(buf) < size:
            self._settimeout(stage_deadline, stage)
            chunk = self.sock.recv(size - len(buf))
            if not chunk:
                raise TransportError(f'{stage}: connection closed by peer')
            buf += chunk
        return buf


class S7CommModule(ProtocolModule):
    """
    Siemens S7 PLC identification: COTP connect, S7 setup, then an SZL read of the
    module identification list. Only a successful SZL reply counts as discovery.
    A follow-up read of the component identification adds names and the serial
    number when the PLC allows it.
    """
    name = 's7comm'
    default_port = S7COMM_PORT
    service = 's7comm'

    def __init__(self, rack: int = S7_DEFAULT_RACK, slot: int = S7_DEFAULT_SLOT,
                 stage_timeout_ms: int = S7_STAGE_TIMEOUT_MS):
        self.rack = rack
        self.slot = slot
        self.stage_timeout_ms = stage_timeout_ms

    def probe(self, address: str, port: int, timeout_ms: int) -> DiscoveryResult:
        deadline = deadline_after(timeout_ms)
        stage_timeout = self.stage_timeout_ms / 1000.0
        connect_timeout = min(stage_timeout, remaining(deadline))
        try:
            sock = socket.create_connection((address, port), timeout=connect_timeout)
        except socket.timeout as e:
            raise DiscoveryTimeout(f'connect to {address}:{port} timed out') from e
        except OSError as e:
            raise TransportError(f'connect to {address}:{port}: {e}') from e
        with sock:
            handshake = S7Handshake(sock, deadline, stage_timeout)
            handshake.connection_request(self.rack, self.slot)
            ack = handshake.setup_communication()
            payload = handshake.read_szl(SZL.MODULE_IDENTIFICATION)
            components = self.read_components(handshake, address)

        details = {
            'vendor': 'Siemens',
            'protocol': 's7comm',
            'port': port,
            'rack': self.rack,
            'slot': self.slot,
            'pdu_length': ack.pdu_length,
            'szl_id': f'0x{SZL.MODULE_IDENTIFICATION:04x}',
            'szl_payload': payload.hex(),
        }
        try:
            details.update(parse_module_identification(payload).to_details())
        except ParseError as e:
            logger.debug("Module identification from %s not decodable: %s", address, e)
        details.update(components)
        return DiscoveryResult(found=True, details=details)

    @staticmethod
    def read_components(handshake: S7Handshake, address: str) -> dict:
        """Component identification (SZL 0x001C); {} when the PLC refuses it."""
        try:
            payload = handshake.read_szl(SZL.COMPONENT_IDENTIFICATION)
            return parse_component_identification(payload).to_details()
        except DiscoveryError as e:
            logger.debug("No component identification from %s: %s", address, e)
            return {}
