"""
S7comm frame codec: TPKT (RFC 1006) + COTP (ISO 8073) + S7 PDU.

Only the requests needed to identify a PLC are built here: COTP connection
request, S7 setup communication and SZL reads (0x0011 module identification,
0x001C component identification). All multi-byte fields are big-endian.

Frame sizes:
    connection request    22 bytes, TPKT length 22
    setup communication   25 bytes, TPKT length 25
    SZL read request      34 bytes, TPKT length 33

The SZL read keeps the layout that has been seen to work against real CPUs,
including its TPKT length being one byte short of the frame. Don't "fix" it
without a device to test against.
"""
import re
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional

from lanprobe.core.errors import ParseError, ProtocolError

TPKT_VERSION = 0x03
TPKT_HEADER = struct.Struct('>BBH')

COTP_CONNECTION_REQUEST = 0xE0
COTP_CONNECTION_CONFIRM = 0xD0
COTP_DATA = 0xF0
COTP_PARAM_TPDU_SIZE = 0xC0
COTP_PARAM_CALLING_TSAP = 0xC1
COTP_PARAM_CALLED_TSAP = 0xC2
TPDU_SIZE_1024 = 0x0A

S7_PROTOCOL_ID = 0x32
S7_HEADER = struct.Struct('>BBHHHH')
S7_ACK_HEADER = struct.Struct('>BBHHHHBB')
FUNC_SETUP_COMM = 0xF0

SZL_RETURN_SUCCESS = 0xFF
SZL_TRANSPORT_OCTET_STRING = 0x09

CONNECTION_REQUEST_LENGTH = 22
SETUP_COMMUNICATION_LENGTH = 25
SZL_REQUEST_DECLARED_LENGTH = 33


class RequestKind(IntEnum):
    """S7 ROSCTR values."""
    SETUP = 0x01            # job
    ACK_DATA = 0x03
    DIAGNOSTIC_QUERY = 0x07  # userdata


class SZL(IntEnum):
    MODULE_IDENTIFICATION = 0x0011
    COMPONENT_IDENTIFICATION = 0x001C


@dataclass(frozen=True)
class TPKTHeader:
    length: int
    version: int = TPKT_VERSION
    reserved: int = 0

    def to_bytes(self) -> bytes:
        return TPKT_HEADER.pack(self.version, self.reserved, self.length)


@dataclass(frozen=True)
class ConnectionRequest:
    """COTP CR TPDU; the called TSAP's low byte carries rack*32+slot."""
    called_tsap: int
    calling_tsap: int = 0x0100
    dst_ref: int = 0x0000
    src_ref: int = 0x0001
    tpdu_size: int = TPDU_SIZE_1024

    def to_bytes(self) -> bytes:
        body = struct.pack('>BHHB', COTP_CONNECTION_REQUEST, self.dst_ref, self.src_ref, 0x00)
        body += bytes([COTP_PARAM_TPDU_SIZE, 1, self.tpdu_size])
        body += struct.pack('>BBH', COTP_PARAM_CALLING_TSAP, 2, self.calling_tsap)
        body += struct.pack('>BBH', COTP_PARAM_CALLED_TSAP, 2, self.called_tsap)
        return bytes([len(body)]) + body


@dataclass(frozen=True)
class DataTransfer:
    eot: bool = True

    def to_bytes(self) -> bytes:
        return bytes([0x02, COTP_DATA, 0x80 if self.eot else 0x00])


@dataclass(frozen=True)
class S7Header:
    request_kind: RequestKind
    sequence_ref: int
    param_length: int
    data_length: int
    redundancy_id: int = 0x0000
    protocol_id: int = S7_PROTOCOL_ID

    def to_bytes(self) -> bytes:
        return S7_HEADER.pack(self.protocol_id, self.request_kind, self.redundancy_id,
                              self.sequence_ref, self.param_length, self.data_length)


@dataclass(frozen=True)
class SetupParameters:
    max_amq_calling: int = 1
    max_amq_called: int = 1
    pdu_length: int = 960

    def to_bytes(self) -> bytes:
        return struct.pack('>BBHHH', FUNC_SETUP_COMM, 0x00,
                           self.max_amq_calling, self.max_amq_called, self.pdu_length)


@dataclass(frozen=True)
class DiagnosticQueryParameters:
    """Userdata parameters for a CPU-functions / read-SZL request."""
    szl_id: int
    szl_index: int = 0x0000
    sequence_number: int = 0x00

    def to_bytes(self) -> bytes:
        return (bytes([0x00, 0x01, 0x12, 0x04, 0x11, 0x44, 0x01, self.sequence_number, 0x00])
                + struct.pack('>HH', self.szl_id, self.szl_index))


@dataclass(frozen=True)
class SZLDataTrailer:
    return_code: int = SZL_RETURN_SUCCESS
    transport_size: int = SZL_TRANSPORT_OCTET_STRING
    length: int = 4

    def to_bytes(self) -> bytes:
        return struct.pack('>BBH', self.return_code, self.transport_size, self.length)


def tsap_for(rack: int, slot: int) -> int:
    if not 0 <= rack <= 7:
        raise ValueError(f'rack must be 0-7, got {rack}')
    if not 0 <= slot <= 31:
        raise ValueError(f'slot must be 0-31, got {slot}')
    return rack * 32 + slot


def build_connection_request(rack: int, slot: int) -> bytes:
    cotp = ConnectionRequest(called_tsap=0x0100 | tsap_for(rack, slot)).to_bytes()
    return TPKTHeader(length=TPKT_HEADER.size + len(cotp)).to_bytes() + cotp


def build_setup_communication(sequence_ref: int, pdu_length: int = 960) -> bytes:
    params = SetupParameters(pdu_length=pdu_length).to_bytes()
    header = S7Header(RequestKind.SETUP, sequence_ref, param_length=len(params), data_length=0)
    payload = DataTransfer().to_bytes() + header.to_bytes() + params
    return TPKTHeader(length=TPKT_HEADER.size + len(payload)).to_bytes() + payload


def build_szl_request(szl_id: int, szl_index: int, sequence_ref: int) -> bytes:
    params = DiagnosticQueryParameters(szl_id, szl_index).to_bytes()
    header = S7Header(RequestKind.DIAGNOSTIC_QUERY, sequence_ref, param_length=12, data_length=4)
    payload = DataTransfer().to_bytes() + header.to_bytes() + params + SZLDataTrailer().to_bytes()
    return TPKTHeader(length=SZL_REQUEST_DECLARED_LENGTH).to_bytes() + payload


# Replies

def parse_tpkt_length(header: bytes) -> int:
    if len(header) < TPKT_HEADER.size:
        raise ParseError('TPKT header too short')
    version, _, length = TPKT_HEADER.unpack_from(header)
    if version != TPKT_VERSION:
        raise ProtocolError(f'Unexpected TPKT version 0x{version:02x}')
    if length < TPKT_HEADER.size + 3:
        raise ProtocolError(f'TPKT length {length} too small')
    return length


def validate_connection_confirm(frame: bytes) -> None:
    if len(frame) < 7 or frame[0] != TPKT_VERSION:
        raise ParseError('Connection confirm too short')
    if frame[5] != COTP_CONNECTION_CONFIRM:
        raise ProtocolError(f'Expected COTP connection confirm, got PDU type 0x{frame[5]:02x}')


@dataclass(frozen=True)
class SetupAck:
    sequence_ref: int
    max_amq_calling: int
    max_amq_called: int
    pdu_length: int


def _s7_header(frame: bytes, expected_ref: Optional[int]) -> tuple:
    if len(frame) < 7 + S7_HEADER.size:
        raise ParseError('S7 reply too short')
    protocol_id, rosctr, _, ref, param_len, data_len = S7_HEADER.unpack_from(frame, 7)
    if protocol_id != S7_PROTOCOL_ID:
        raise ProtocolError(f'Not an S7 PDU (protocol id 0x{protocol_id:02x})')
    if expected_ref is not None and ref != expected_ref:
        raise ProtocolError(f'PDU reference mismatch: sent {expected_ref}, got {ref}')
    return rosctr, ref, param_len, data_len


def parse_setup_ack(frame: bytes, expected_ref: Optional[int] = None) -> SetupAck:
    rosctr, ref, _, _ = _s7_header(frame, expected_ref)
    if rosctr != RequestKind.ACK_DATA:
        raise ProtocolError(f'Expected ack-data for setup communication, got ROSCTR 0x{rosctr:02x}')
    if len(frame) < 7 + S7_ACK_HEADER.size + 8:
        raise ParseError('Setup communication reply too short')
    error_class, error_code = S7_ACK_HEADER.unpack_from(frame, 7)[6:]
    if error_class or error_code:
        raise ProtocolError(f'Setup communication rejected (class 0x{error_class:02x}, code 0x{error_code:02x})')
    func, _, amq_calling, amq_called, pdu_length = struct.unpack_from('>BBHHH', frame, 7 + S7_ACK_HEADER.size)
    if func != FUNC_SETUP_COMM:
        raise ProtocolError(f'Unexpected function 0x{func:02x} in setup reply')
    return SetupAck(ref, amq_calling, amq_called, pdu_length)


def parse_szl_response(frame: bytes, expected_ref: Optional[int] = None) -> bytes:
    """Return the SZL payload (starting at the SZL id) of a read-SZL reply."""
    rosctr, _, param_len, data_len = _s7_header(frame, expected_ref)
    if rosctr != RequestKind.DIAGNOSTIC_QUERY:
        raise ProtocolError(f'Expected userdata reply, got ROSCTR 0x{rosctr:02x}')
    params_start = 7 + S7_HEADER.size
    data_start = params_start + param_len
    if len(frame) < data_start + 4 or data_len < 4:
        raise ParseError('SZL reply has no data section')
    if param_len >= 12:
        error_code = struct.unpack_from('>H', frame, params_start + 10)[0]
        if error_code:
            raise ProtocolError(f'SZL read failed with error 0x{error_code:04x}')
    return_code, _, length = struct.unpack_from('>BBH', frame, data_start)
    if return_code != SZL_RETURN_SUCCESS:
        raise ProtocolError(f'SZL read rejected, return code 0x{return_code:02x}')
    payload = frame[data_start + 4:data_start + 4 + length]
    if not payload:
        raise ParseError('Empty SZL payload')
    return payload


@dataclass(frozen=True)
class ModuleRecord:
    index: int
    order_number: str
    module_type: int
    raw: bytes


@dataclass
class ModuleIdentification:
    szl_id: int
    szl_index: int
    records: List[ModuleRecord] = field(default_factory=list)

    def record(self, index: int) -> Optional[ModuleRecord]:
        for rec in self.records:
            if rec.index == index:
                return rec
        return None

    @property
    def order_number(self) -> Optional[str]:
        rec = self.record(0x0001) or (self.records[0] if self.records else None)
        if rec is None:
            return None
        return rec.order_number or None

    @property
    def cpu_model(self) -> Optional[str]:
        m = re.search(r'6ES7\s*(\d{3}[^-]*-\S+)', self.order_number or '')
        return f'CPU {m.group(1)}' if m else None

    @property
    def hardware_version(self) -> Optional[str]:
        rec = self.record(0x0006)
        if rec is None or len(rec.raw) < 2:
            return None
        return str(struct.unpack_from('>H', rec.raw, len(rec.raw) - 2)[0])

    @property
    def firmware_version(self) -> Optional[str]:
        rec = self.record(0x0007)
        if rec is None or len(rec.raw) < 3:
            return None
        major, minor, patch = rec.raw[-3:]
        return f'V{major}.{minor}.{patch}'

    def to_details(self) -> dict:
        details = {
            'order_number': self.order_number,
            'cpu_model': self.cpu_model,
            'hardware_version': self.hardware_version,
            'firmware_version': self.firmware_version,
        }
        return {k: v for k, v in details.items() if v}


def clean_string(data: bytes) -> str:
    text = data.decode('ascii', errors='ignore')
    text = re.sub(r'[\x00-\x08\x0b-\x1f\x7f]', '', text)
    return re.sub(r'\s+', ' ', text).strip()


def parse_module_identification(payload: bytes) -> ModuleIdentification:
    """
    Parse an SZL 0x0011 payload: id, index, record length, record count, then
    records of index(2) + order number(20) + module type(2) + versions(4).
    """
    if len(payload) < 8:
        raise ParseError('SZL payload too short')
    szl_id, szl_index, record_length, count = struct.unpack_from('>HHHH', payload)
    ident = ModuleIdentification(szl_id, szl_index)
    if record_length < 24:
        return ident
    offset = 8
    for _ in range(count):
        raw = payload[offset:offset + record_length]
        if len(raw) < record_length:
            break
        index = struct.unpack_from('>H', raw)[0]
        module_type = struct.unpack_from('>H', raw, 22)[0]
        ident.records.append(ModuleRecord(index, clean_string(raw[2:22]), module_type, raw))
        offset += record_length
    return ident


# SZL 0x001C record index -> detail key
COMPONENT_FIELDS = {
    0x0001: 'system_name',
    0x0002: 'module_name',
    0x0003: 'plant_identification',
    0x0004: 'copyright',
    0x0005: 'serial_number',
    0x0007: 'module_type_name',
    0x000B: 'location_designation',
}
COMPONENT_RECORD_LENGTH = 34


@dataclass
class ComponentIdentification:
    szl_id: int
    szl_index: int
    fields: dict = field(default_factory=dict)

    def to_details(self) -> dict:
        return {COMPONENT_FIELDS[index]: text for index, text in sorted(self.fields.items())
                if index in COMPONENT_FIELDS and text}


def parse_component_identification(payload: bytes) -> ComponentIdentification:
    """
    Parse an SZL 0x001C payload: same header as 0x0011, then 34-byte records of
    index(2) + text(32). Unknown indexes are kept in `fields` but not reported.
    """
    if len(payload) < 8:
        raise ParseError('SZL payload too short')
    szl_id, szl_index, record_length, count = struct.unpack_from('>HHHH', payload)
    components = ComponentIdentification(szl_id, szl_index)
    if record_length < COMPONENT_RECORD_LENGTH:
        raise ParseError(f'SZL 0x001C record length {record_length} too small')
    offset = 8
    for _ in range(count):
        raw = payload[offset:offset + record_length]
        if len(raw) < record_length:
            break
        index = struct.unpack_from('>H', raw)[0]
        components.fields[index] = clean_string(raw[2:COMPONENT_RECORD_LENGTH])
        offset += record_length
    return components
