import ipaddress
import logging
import random
import socket
import struct
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from scapy.layers.dns import DNS, DNSQR, dnstypes

from lanprobe.config.discovery_config import (
    DNS_PORT,
    DNS_QUERY_TIMEOUT_MS,
    DNS_RECORD_TYPE,
    DNS_TRANSPORT,
    DNS_TRANSPORTS,
)
from lanprobe.core.discovery import DiscoveryResult, ProtocolModule
from lanprobe.core.errors import (
    DiscoveryError,
    DiscoveryTimeout,
    DNSResponseError,
    ParseError,
    TransportError,
)
from lanprobe.core.utils import deadline_after, remaining

logger = logging.getLogger(__name__)

RCODES = {
    0: 'NOERROR',
    1: 'FORMERR',
    2: 'SERVFAIL',
    3: 'NXDOMAIN',
    5: 'REFUSED',
}
RCODE_NOERROR = 0
RCODE_FORMERR = 1
RCODE_SERVFAIL = 2
RCODE_NXDOMAIN = 3
RCODE_REFUSED = 5

DNS_TYPE_CODES = {name: code for code, name in dnstypes.items()}


@dataclass(frozen=True)
class DnsQueryResult:
    domain: str
    server: str
    record_type: str
    query_time_ms: int
    result_code: str
    rcode_value: int
    answers: Tuple[str, ...] = field(default_factory=tuple)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['answers'] = list(self.answers)
        if self.error is None:
            del data['error']
        return data


def reverse_name(address: str) -> str:
    """in-addr.arpa (or ip6.arpa) name for an address."""
    return ipaddress.ip_address(address).reverse_pointer


def _name(value: Any) -> str:
    if isinstance(value, bytes):
        value = value.decode(errors='replace')
    return str(value).rstrip('.')


def record_type_code(record_type: str) -> int:
    """
    Numeric query type for a mnemonic (MX) or a generic name (TYPE65, or just 65)
    as written for types without a mnemonic.
    """
    name = record_type.strip().upper()
    if name in DNS_TYPE_CODES:
        return DNS_TYPE_CODES[name]
    digits = name[4:] if name.startswith('TYPE') else name
    if digits.isdigit() and 0 < int(digits) <= 0xFFFF:
        return int(digits)
    raise ValueError(f'Unknown record type {record_type!r}')


def _field(rr: Any, name: str) -> Any:
    value = getattr(rr, name, None)
    if value is None:
        raise ParseError(f'{type(rr).__name__} record has no {name}')
    return value


def format_answer(rr: Any, record_type: str) -> Optional[str]:
    """
    Render one resource record the way each record type is usually shown. Types
    without a dedicated layout fall back to the rdata text, or \\# <length> <hex>
    for opaque rdata. Raises ParseError when the record lacks its fields.
    """
    if record_type == 'MX':
        return f'{_field(rr, "preference")} {_name(_field(rr, "exchange"))}'
    if record_type == 'SRV':
        return (f'{_field(rr, "priority")} {_field(rr, "weight")} {_field(rr, "port")} '
                f'{_name(_field(rr, "target"))}')
    if record_type == 'TXT':
        rdata = _field(rr, 'rdata')
        segments = rdata if isinstance(rdata, (list, tuple)) else [rdata]
        return ' '.join(_name(s) for s in segments)
    if record_type in ('A', 'AAAA', 'CNAME', 'NS', 'PTR'):
        return _name(_field(rr, 'rdata'))
    rdata = getattr(rr, 'rdata', None)
    if isinstance(rdata, bytes):
        return f'\\# {len(rdata)} {rdata.hex()}' if rdata else '\\# 0'
    return _name(rdata) if rdata is not None else rr.summary()


def classify_error(error: Exception) -> Tuple[str, int]:
    """Map a failed lookup onto a DNS-style (result code, rcode value) pair."""
    if isinstance(error, DNSResponseError):
        if error.rcode == RCODE_NXDOMAIN:
            return 'NXDOMAIN', RCODE_NXDOMAIN
        if error.rcode == RCODE_REFUSED:
            return 'REFUSED', RCODE_REFUSED
        if error.rcode == RCODE_FORMERR:
            return 'FORMERR', RCODE_FORMERR
        return 'SERVFAIL', RCODE_SERVFAIL
    if isinstance(error, (DiscoveryTimeout, socket.timeout)):
        return 'TIMEOUT', RCODE_SERVFAIL
    if isinstance(error, ConnectionRefusedError):
        return 'REFUSED', RCODE_REFUSED
    if isinstance(error, ValueError):
        return 'FORMERR', RCODE_FORMERR
    return 'SERVFAIL', RCODE_SERVFAIL


class DNSModule(ProtocolModule):
    """
    DNS server probe: one query per configured domain, against a resolver pinned to
    the target. With no domains configured the target's own reverse name is asked.
    """
    name = 'dns'
    default_port = DNS_PORT
    service = 'dns'

    def __init__(self, domains: Optional[Sequence[str]] = None, record_type: str = DNS_RECORD_TYPE,
                 query_timeout_ms: int = DNS_QUERY_TIMEOUT_MS, transport: str = DNS_TRANSPORT):
        if transport not in DNS_TRANSPORTS:
            raise ValueError(f'transport must be one of {DNS_TRANSPORTS}, got {transport!r}')
        self.domains = list(domains) if domains else None
        self.qtype = record_type_code(record_type)
        self.record_type = dnstypes.get(self.qtype, f'TYPE{self.qtype}')
        self.query_timeout_ms = query_timeout_ms
        self.transport = transport

    def probe(self, address: str, port: int, timeout_ms: int) -> DiscoveryResult:
        results = self.query(address, port, timeout_ms)
        found = any(r.rcode_value == RCODE_NOERROR for r in results)
        hostname = next((r.answers[0] for r in results if r.answers), None)
        details = {
            'server': f'{address}:{port}',
            'record_type': self.record_type,
            'queries': [r.to_dict() for r in results],
        }
        if hostname:
            details['hostname'] = hostname
        return DiscoveryResult(found=found, details=details)

    def test_dns_server(self, address: str, port: int = DNS_PORT,
                        timeout_ms: Optional[int] = None) -> bool:
        """True if at least one configured query came back NOERROR."""
        try:
            results = self.query(address, port, timeout_ms)
        except (DiscoveryError, OSError, ValueError) as e:
            logger.debug("DNS server test against %s:%d failed: %s", address, port, e)
            return False
        return any(r.rcode_value == RCODE_NOERROR for r in results)

    def query(self, server: str, port: int = DNS_PORT,
              timeout_ms: Optional[int] = None) -> List[DnsQueryResult]:
        domains = self.domains or [reverse_name(server)]
        deadline = deadline_after(timeout_ms) if timeout_ms is not None else None
        results = []
        for domain in domains:
            budget = self.query_timeout_ms
            if deadline is not None:
                budget = min(budget, int(remaining(deadline) * 1000))
            results.append(self.query_domain(server, port, domain, budget))
        return results

    def query_domain(self, server: str, port: int, domain: str, timeout_ms: int) -> DnsQueryResult:
        start = time.monotonic()
        try:
            answers = self.resolve(server, port, domain, timeout_ms)
        except (DiscoveryError, OSError, ValueError) as e:
            result_code, rcode_value = classify_error(e)
            logger.debug("DNS %s %s @%s:%d -> %s (%s)", self.record_type, domain, server, port, result_code, e)
            return DnsQueryResult(domain, server, self.record_type, self._elapsed_ms(start),
                                  result_code, rcode_value, (), str(e) or result_code)
        return DnsQueryResult(domain, server, self.record_type, self._elapsed_ms(start),
                              'NOERROR', RCODE_NOERROR, tuple(answers))

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)

    def resolve(self, server: str, port: int, domain: str, timeout_ms: int) -> List[str]:
        qtype = self.qtype
        query_id = random.randint(0, 0xFFFF)
        request = DNS(id=query_id, rd=1, qd=DNSQR(qname=domain, qtype=qtype))
        wire = self.exchange(server, port, bytes(request), query_id, timeout_ms)
        try:
            response = DNS(wire)
            rcode = response.rcode
            records = [rr for rr in (response.an or []) if getattr(rr, 'type', None) == qtype]
        except (struct.error, IndexError, ValueError, AttributeError, TypeError) as e:
            raise ParseError(f'Malformed DNS reply: {e}') from e
        if rcode != RCODE_NOERROR:
            raise DNSResponseError(rcode, RCODES.get(rcode, f'rcode {rcode}'))
        try:
            answers = [format_answer(rr, self.record_type) for rr in records]
        except (AttributeError, TypeError, ValueError) as e:
            raise ParseError(f'Malformed {self.record_type} record: {e}') from e
        answers = [a for a in answers if a]
        if not answers:
            raise DNSResponseError(RCODE_NXDOMAIN, f'No {self.record_type} data for {domain}')
        return answers

    def exchange(self, server: str, port: int, request: bytes, query_id: int, timeout_ms: int) -> bytes:
        """Send one DNS message and return the matching reply."""
        deadline = deadline_after(timeout_ms)
        if remaining(deadline) <= 0:
            raise DiscoveryTimeout('No time left for DNS query')
        family = socket.AF_INET6 if ':' in server else socket.AF_INET
        if self.transport == 'tcp':
            with socket.create_connection((server, port), timeout=remaining(deadline)) as sock:
                sock.sendall(struct.pack('>H', len(request)) + request)
                length = struct.unpack('>H', self._recv_exact(sock, 2, deadline))[0]
                return self._recv_exact(sock, length, deadline)
        with socket.socket(family, socket.SOCK_DGRAM) as sock:
            sock.connect((server, port))
            sock.send(request)
            while True:
                left = remaining(deadline)
                if left <= 0:
                    raise DiscoveryTimeout('DNS query timed out')
                sock.settimeout(left)
                try:
                    data = sock.recv(4096)
                except socket.timeout as e:
                    raise DiscoveryTimeout('DNS query timed out') from e
                if len(data) >= 2 and struct.unpack('>H', data[:2])[0] == query_id:
                    return data
                logger.debug("Discarding DNS reply with foreign id from %s", server)

    @staticmethod
    def _recv_exact(sock: socket.socket, size: int, deadline: float) -> bytes:
        buf = b''
        while len(buf) < size:
            left = remaining(deadline)
            if left <= 0:
                raise DiscoveryTimeout('DNS query timed out')
            sock.settimeout(left)
            try:
                chunk = sock.recv(size - len(buf))
            except socket.timeout as e:
                raise DiscoveryTimeout('DNS query timed out') from e
            if not chunk:
                raise TransportError('DNS server closed the connection')
            buf += chunk
        return buf
