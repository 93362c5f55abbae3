import base64
import hashlib
import logging
import os
import re
import socket
import uuid
import xml.etree.ElementTree as ET
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple
from urllib.parse import unquote, urlsplit
from xml.sax.saxutils import escape

import requests
import urllib3

from lanprobe.config.discovery_config import (
    SOAP_MAX_RESPONSE_BYTES,
    SOAP_READ_CHUNK,
    SOAP_TIMEOUT_MS,
    UDP_RECV_BUFFER,
    WSD_PORT,
)
from lanprobe.core.discovery import DiscoveryResult, ProtocolModule
from lanprobe.core.errors import DiscoveryTimeout, ParseError, ProtocolError
from lanprobe.core.utils import deadline_after, open_udp_socket, remaining, rewrite_url_host

logger = logging.getLogger(__name__)

SOAP_ENV_NS = 'http://www.w3.org/2003/05/soap-envelope'
WSA_NS = 'http://schemas.xmlsoap.org/ws/2004/08/addressing'
WSA_ANONYMOUS = 'http://schemas.xmlsoap.org/ws/2004/08/addressing/role/anonymous'
WSD_DISCOVERY_TO = 'urn:schemas-xmlsoap-org:ws:2005:04:discovery'
WSD_PROBE_ACTION = 'http://schemas.xmlsoap.org/ws/2005/04/discovery/Probe'
TRANSFER_GET_ACTION = 'http://schemas.xmlsoap.org/ws/2004/09/transfer/Get'
ONVIF_DEVICE_NS = 'http://www.onvif.org/ver10/device/wsdl'
WDP_PRINT_NS = 'http://schemas.microsoft.com/windows/2006/08/wdp/print'
WDP_SCAN_NS = 'http://schemas.microsoft.com/windows/2006/08/wdp/scan'
WSSE_NS = 'http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-secext-1.0.xsd'
WSU_NS = 'http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-utility-1.0.xsd'
WSSE_PASSWORD_DIGEST = ('http://docs.oasis-open.org/wss/2004/01/'
                        'oasis-200401-wss-username-token-profile-1.0#PasswordDigest')
WSSE_BASE64 = ('http://docs.oasis-open.org/wss/2004/01/'
               'oasis-200401-wss-soap-message-security-1.0#Base64Binary')

PROBE_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<soap-env:Envelope xmlns:soap-env="http://www.w3.org/2003/05/soap-envelope"
                   xmlns:a="http://schemas.xmlsoap.org/ws/2004/08/addressing"
                   xmlns:d="http://schemas.xmlsoap.org/ws/2005/04/discovery"
                   xmlns:dn="http://www.onvif.org/ver10/network/wsdl"
                   xmlns:wsdp="http://schemas.xmlsoap.org/ws/2006/02/devprof">
  <soap-env:Header>
    <a:Action mustUnderstand="1">{action}</a:Action>
    <a:MessageID>uuid:{message_id}</a:MessageID>
    <a:ReplyTo>
      <a:Address>{anonymous}</a:Address>
    </a:ReplyTo>
    <a:To mustUnderstand="1">{to}</a:To>
  </soap-env:Header>
  <soap-env:Body>
    <d:Probe>
      <d:Types></d:Types>
    </d:Probe>
  </soap-env:Body>
</soap-env:Envelope>"""

MAC_RE = re.compile(r'^([0-9A-Fa-f]{2}[:-]){5}[0-9A-Fa-f]{2}$')

# (substring in a lowercased type, category, device type); first match wins
DEVICE_CATEGORIES = [
    (('networkvideotransmitter', 'onvif'), 'camera', 'onvif_camera'),
    (('printdevice', 'print'), 'printer', 'wsd_printer'),
    (('scandevice', 'scan'), 'scanner', 'wsd_scanner'),
    (('mfp',), 'printer', 'wsd_mfp'),
]

ONVIF_OPERATIONS = [
    ('GetDeviceInformation', ''),
    ('GetCapabilities', '<tds:Category>All</tds:Category>'),
    ('GetServices', '<tds:IncludeCapability>false</tds:IncludeCapability>'),
]


@dataclass
class ScopeInfo:
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    mac_address: Optional[str] = None
    location: Optional[str] = None
    names: List[str] = field(default_factory=list)
    hardware: List[str] = field(default_factory=list)
    types: List[str] = field(default_factory=list)


@dataclass
class ProbeMatch:
    endpoint: str
    instance_id: str
    types: List[str]
    scopes: List[str]
    scope_info: ScopeInfo


@dataclass
class HostedService:
    endpoint: str
    types: List[str] = field(default_factory=list)
    operations: Set[str] = field(default_factory=set)

    def to_dict(self) -> Dict[str, Any]:
        return {'endpoint': self.endpoint, 'types': list(self.types), 'operations': sorted(self.operations)}


@dataclass
class DeviceInfo:
    endpoint: str
    instance_id: str
    device_category: str
    device_type: Optional[str]
    types: List[str]
    scopes: List[str] = field(default_factory=list)
    original_endpoint: Optional[str] = None
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    mac_address: Optional[str] = None
    location: Optional[str] = None
    firmware_version: Optional[str] = None
    serial_number: Optional[str] = None
    hardware_id: Optional[str] = None
    capabilities: Dict[str, str] = field(default_factory=dict)
    services: Optional[Dict[str, HostedService]] = None
    introspected: bool = False

    def to_details(self) -> Dict[str, Any]:
        details: Dict[str, Any] = {
            'endpoint': self.endpoint,
            'instance_id': self.instance_id,
            'types': list(self.types),
        }
        if self.introspected:
            details['device_category'] = self.device_category
            if self.device_type:
                details['device_type'] = self.device_type
        optional = {
            'scopes': list(self.scopes),
            'original_endpoint': self.original_endpoint,
            'manufacturer': self.manufacturer,
            'model': self.model,
            'mac_address': self.mac_address,
            'location': self.location,
            'firmware_version': self.firmware_version,
            'serial_number': self.serial_number,
            'hardware_id': self.hardware_id,
            'capabilities': dict(self.capabilities),
        }
        details.update({k: v for k, v in optional.items() if v})
        if self.services:
            details['services'] = {sid: svc.to_dict() for sid, svc in self.services.items()}
        return details


# XML helpers; replies use whatever prefixes the vendor picked, so match local names

def local_name(tag: Any) -> str:
    return tag.rsplit('}', 1)[-1] if isinstance(tag, str) else ''


def iter_named(elem: ET.Element, name: str) -> Iterator[ET.Element]:
    for child in elem.iter():
        if local_name(child.tag) == name:
            yield child


def find_named(elem: ET.Element, name: str) -> Optional[ET.Element]:
    return next(iter_named(elem, name), None)


def text_named(elem: ET.Element, name: str) -> Optional[str]:
    found = find_named(elem, name)
    if found is None or found.text is None:
        return None
    return found.text.strip() or None


def parse_xml(data: bytes) -> ET.Element:
    try:
        return ET.fromstring(data)
    # LookupError: unknown encoding in the XML declaration
    except (ET.ParseError, LookupError, ValueError) as e:
        raise ParseError(f'Malformed XML: {e}') from e


def fault_reason(root: ET.Element) -> Optional[str]:
    fault = find_named(root, 'Fault')
    if fault is None:
        return None
    return text_named(fault, 'Text') or text_named(fault, 'faultstring') or text_named(fault, 'Value') or 'SOAP fault'


# Phase 1: WS-Discovery probe

def build_probe(message_id: Optional[str] = None) -> bytes:
    return PROBE_TEMPLATE.format(
        action=WSD_PROBE_ACTION,
        message_id=message_id or uuid.uuid4(),
        anonymous=WSA_ANONYMOUS,
        to=WSD_DISCOVERY_TO,
    ).encode('utf-8')


def extract_scope_info(scopes: List[str]) -> ScopeInfo:
    """
    Pull name/hardware/type/location/mac out of scope URIs such as
    onvif://www.onvif.org/hardware/IPC-HDW and onvif://www.onvif.org/name/Dahua%20IPC-HDW.
    """
    info = ScopeInfo()
    for token in scopes:
        parts = token.split('/')
        if len(parts) < 2 or not parts[-2] or not parts[-1]:
            continue
        key, value_part = parts[-2], parts[-1]
        if ':' in value_part and key != 'mac':
            value = unquote(value_part.split(':')[-1])
        else:
            value = unquote(value_part)
        if key == 'mac':
            if MAC_RE.match(value):
                info.mac_address = value
        elif key == 'name':
            info.names.append(value)
        elif key == 'hardware':
            info.hardware.append(value)
        elif key == 'type':
            info.types.append(value)
        elif key == 'location' and info.location is None:
            info.location = value
    if len(info.names) == 1 and len(info.hardware) == 1:
        hardware = info.hardware[0]
        info.manufacturer = re.sub(re.escape(hardware), '', info.names[0], flags=re.IGNORECASE).strip() or None
        info.model = hardware
    return info


def categorize(types: List[str]) -> Tuple[str, Optional[str]]:
    lowered = [t.lower() for t in types]
    for needles, category, device_type in DEVICE_CATEGORIES:
        if any(n in t for t in lowered for n in needles):
            return category, device_type
    return 'unknown', None


def parse_probe_match(data: bytes) -> Optional[ProbeMatch]:
    """First ProbeMatch of a ProbeMatches reply, or None if the reply carries none."""
    root = parse_xml(data)
    reason = fault_reason(root)
    if reason:
        raise ProtocolError(f'Probe answered with fault: {reason}')
    match = find_named(root, 'ProbeMatch')
    if match is None:
        return None
    xaddrs = (text_named(match, 'XAddrs') or '').split()
    if not xaddrs:
        return None
    address = ''
    reference = find_named(match, 'EndpointReference')
    if reference is not None:
        address = text_named(reference, 'Address') or ''
    if 'uuid:' in address:
        instance_id = address.split('uuid:', 1)[1]
    else:
        instance_id = address.rsplit(':', 1)[-1]
    types = (text_named(match, 'Types') or '').split()
    scopes = (text_named(match, 'Scopes') or '').split()
    return ProbeMatch(xaddrs[0], instance_id, types, scopes, extract_scope_info(scopes))


# Phase 2: SOAP introspection

def username_token(username: str, password: str) -> str:
    nonce = os.urandom(16)
    created = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.000Z')
    digest = base64.b64encode(hashlib.sha1(nonce + created.encode() + password.encode()).digest()).decode()
    return (
        f'<wsse:Security xmlns:wsse="{WSSE_NS}" xmlns:wsu="{WSU_NS}">'
        '<wsse:UsernameToken>'
        f'<wsse:Username>{escape(username)}</wsse:Username>'
        f'<wsse:Password Type="{WSSE_PASSWORD_DIGEST}">{digest}</wsse:Password>'
        f'<wsse:Nonce EncodingType="{WSSE_BASE64}">{base64.b64encode(nonce).decode()}</wsse:Nonce>'
        f'<wsu:Created>{created}</wsu:Created>'
        '</wsse:UsernameToken>'
        '</wsse:Security>'
    )


def build_envelope(action: str, to: str, body: str = '', security: str = '',
                   namespaces: Optional[Dict[str, str]] = None) -> bytes:
    xmlns = ''.join(f' xmlns:{prefix}="{uri}"' for prefix, uri in (namespaces or {}).items())
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<soap:Envelope xmlns:soap="{SOAP_ENV_NS}" xmlns:wsa="{WSA_NS}"{xmlns}>'
        '<soap:Header>'
        f'<wsa:Action>{escape(action)}</wsa:Action>'
        f'<wsa:MessageID>urn:uuid:{uuid.uuid4()}</wsa:MessageID>'
        f'<wsa:ReplyTo><wsa:Address>{WSA_ANONYMOUS}</wsa:Address></wsa:ReplyTo>'
        f'<wsa:To>{escape(to)}</wsa:To>'
        f'{security}'
        '</soap:Header>'
        f'<soap:Body>{body}</soap:Body>'
        '</soap:Envelope>'
    ).encode('utf-8')


class WSDModule(ProtocolModule):
    """
    WS-Discovery for SOAP devices (ONVIF cameras, WSD printers and scanners).

    Phase 1 sends a Probe over UDP and takes the first ProbeMatch from the target.
    Phase 2 calls the advertised endpoint (device information, capabilities, hosted
    services) under its own soap_timeout budget. Phase-2 failures leave fields empty
    but never turn a probe match into non-discovery.
    """
    name = 'wsd'
    default_port = WSD_PORT
    service = 'wsd'

    def __init__(self, soap_timeout_ms: int = SOAP_TIMEOUT_MS, username: Optional[str] = None,
                 password: Optional[str] = None, full_traversal: bool = True):
        self.soap_timeout_ms = soap_timeout_ms
        self.username = username
        self.password = password
        self.full_traversal = full_traversal

    def probe(self, address: str, port: int, timeout_ms: int) -> DiscoveryResult:
        match = self.probe_device(address, port, timeout_ms)
        if match is None:
            return DiscoveryResult(found=False)
        device = self.device_from_match(match, address)
        if self.full_traversal:
            self.introspect(device)
        return DiscoveryResult(found=True, details=device.to_details())

    def probe_device(self, address: str, port: int, timeout_ms: int) -> Optional[ProbeMatch]:
        deadline = deadline_after(timeout_ms)
        with open_udp_socket(address=address) as sock:
            sock.sendto(build_probe(), (address, port))
            logger.debug("Sent WS-Discovery probe to %s:%d", address, port)
            while True:
                left = remaining(deadline)
                if left <= 0:
                    return None
                sock.settimeout(left)
                try:
                    data, addr = sock.recvfrom(UDP_RECV_BUFFER)
                except socket.timeout:
                    return None
                if addr[0] != address:
                    logger.debug("Ignoring WS-Discovery reply from %s (probed %s)", addr[0], address)
                    continue
                try:
                    match = parse_probe_match(data)
                except (ParseError, ProtocolError) as e:
                    logger.debug("Unusable WS-Discovery reply from %s: %s", address, e)
                    continue
                if match is not None:
                    return match

    @staticmethod
    def _rewrite(url: str, address: str) -> str:
        try:
            return rewrite_url_host(url, address)
        except ParseError:
            return url

    def device_from_match(self, match: ProbeMatch, address: str) -> DeviceInfo:
        endpoint = self._rewrite(match.endpoint, address)
        category, device_type = categorize(match.types)
        return DeviceInfo(
            endpoint=endpoint,
            instance_id=match.instance_id,
            device_category=category,
            device_type=device_type,
            types=list(match.types),
            scopes=list(match.scopes),
            original_endpoint=match.endpoint if match.endpoint != endpoint else None,
            manufacturer=match.scope_info.manufacturer,
            model=match.scope_info.model,
            mac_address=match.scope_info.mac_address,
            location=match.scope_info.location,
        )

    def introspect(self, device: DeviceInfo) -> None:
        deadline = deadline_after(self.soap_timeout_ms)
        if device.device_category == 'camera':
            services = self._onvif_services(device, deadline)
        else:
            services = self._hosted_services(device, deadline)
        if services:
            device.services = services

    def soap_call(self, url: str, action: str, to: str, body: str, deadline: float,
                  namespaces: Optional[Dict[str, str]] = None) -> ET.Element:
        left = remaining(deadline)
        if left <= 0:
            raise DiscoveryTimeout(f'SOAP budget exhausted before {action}')
        security = ''
        if self.username and self.password:
            security = username_token(self.username, self.password)
        envelope = build_envelope(action, to, body, security, namespaces)
        headers = {'Content-Type': f'application/soap+xml; charset=utf-8; action="{action}"'}
        resp = requests.post(url, data=envelope, headers=headers, timeout=left, stream=True)
        with closing(resp):
            content = self._read_body(resp, action, deadline)
        try:
            root = parse_xml(content)
        except ParseError:
            resp.raise_for_status()
            raise
        reason = fault_reason(root)
        if reason:
            raise ProtocolError(f'{action} fault from {url}: {reason}')
        resp.raise_for_status()
        body_elem = find_named(root, 'Body')
        if body_elem is None:
            raise ParseError(f'No SOAP body in reply to {action}')
        return body_elem

    @staticmethod
    def _read_body(resp: requests.Response, action: str, deadline: float) -> bytes:
        """
        Read a streamed reply under the SOAP deadline. The per-read timeout given to
        requests only bounds gaps between bytes, so a server that trickles its body
        is cut off here once the deadline passes. read1 returns whatever has arrived
        instead of waiting for a full chunk.
        """
        content = bytearray()
        while True:
            try:
                chunk = resp.raw.read1(SOAP_READ_CHUNK, decode_content=True)
            except urllib3.exceptions.ReadTimeoutError as e:
                raise DiscoveryTimeout(f'Reply to {action} stalled: {e}') from e
            except (urllib3.exceptions.HTTPError, OSError) as e:
                raise ProtocolError(f'Reply to {action} broke off: {e}') from e
            if not chunk:
                return bytes(content)
            content.extend(chunk)
            if len(content) > SOAP_MAX_RESPONSE_BYTES:
                raise ProtocolError(f'Reply to {action} exceeds {SOAP_MAX_RESPONSE_BYTES} bytes')
            if remaining(deadline) <= 0:
                raise DiscoveryTimeout(f'SOAP budget exhausted while reading reply to {action}')

    def _try_call(self, url: str, action: str, to: str, body: str, deadline: float,
                  namespaces: Optional[Dict[str, str]] = None) -> Optional[ET.Element]:
        try:
            return self.soap_call(url, action, to, body, deadline, namespaces)
        except (requests.RequestException, ParseError, ProtocolError, DiscoveryTimeout) as e:
            logger.debug("SOAP %s against %s failed: %s", action.rsplit('/', 1)[-1], url, e)
            return None

    def _onvif_services(self, device: DeviceInfo, deadline: float) -> Dict[str, HostedService]:
        services: Dict[str, HostedService] = {}
        device_service = HostedService(device.endpoint, [ONVIF_DEVICE_NS])
        for operation, body in ONVIF_OPERATIONS:
            reply = self._try_call(device.endpoint, f'{ONVIF_DEVICE_NS}/{operation}', device.endpoint,
                                   f'<tds:{operation}>{body}</tds:{operation}>', deadline,
                                   {'tds': ONVIF_DEVICE_NS})
            if reply is None:
                continue
            device.introspected = True
            device_service.operations.add(operation)
            if operation == 'GetDeviceInformation':
                device.manufacturer = text_named(reply, 'Manufacturer') or device.manufacturer
                device.model = text_named(reply, 'Model') or device.model
                device.firmware_version = text_named(reply, 'FirmwareVersion')
                device.serial_number = text_named(reply, 'SerialNumber')
                device.hardware_id = text_named(reply, 'HardwareId')
            elif operation == 'GetCapabilities':
                capabilities = find_named(reply, 'Capabilities')
                for category in (list(capabilities) if capabilities is not None else []):
                    xaddr = text_named(category, 'XAddr')
                    if xaddr:
                        device.capabilities[local_name(category.tag)] = xaddr
            elif operation == 'GetServices':
                for svc in iter_named(reply, 'Service'):
                    namespace = text_named(svc, 'Namespace')
                    xaddr = text_named(svc, 'XAddr')
                    if namespace and xaddr and namespace != ONVIF_DEVICE_NS:
                        services[namespace] = HostedService(self._rewrite(xaddr, _host_of(device.endpoint)),
                                                            [namespace])
        if device_service.operations:
            services['device'] = device_service
        return services

    def _hosted_services(self, device: DeviceInfo, deadline: float) -> Dict[str, HostedService]:
        to = f'urn:uuid:{device.instance_id}' if device.instance_id else device.endpoint
        reply = self._try_call(device.endpoint, TRANSFER_GET_ACTION, to, '', deadline)
        if reply is None:
            return {}
        device.introspected = True
        model = find_named(reply, 'ThisModel')
        if model is not None:
            device.manufacturer = device.manufacturer or text_named(model, 'Manufacturer')
            device.model = device.model or text_named(model, 'ModelName')
        this_device = find_named(reply, 'ThisDevice')
        if this_device is not None:
            device.firmware_version = text_named(this_device, 'FirmwareVersion')
            device.serial_number = text_named(this_device, 'SerialNumber')

        host = _host_of(device.endpoint)
        services: Dict[str, HostedService] = {}
        for hosted in iter_named(reply, 'Hosted'):
            reference = find_named(hosted, 'EndpointReference')
            endpoint = text_named(reference, 'Address') if reference is not None else None
            if not endpoint:
                continue
            service_id = text_named(hosted, 'ServiceId') or endpoint
            types = (text_named(hosted, 'Types') or '').split()
            services[service_id] = HostedService(self._rewrite(endpoint, host), types)

        for service in services.values():
            self._query_elements(service, deadline)
        return services

    def _query_elements(self, service: HostedService, deadline: float) -> None:
        type_names = [t.rsplit(':', 1)[-1] for t in service.types]
        if any(t.startswith('PrinterService') for t in type_names):
            namespace, prefix, operation, elements = WDP_PRINT_NS, 'wprt', 'GetPrinterElements', (
                'PrinterDescription', 'PrinterConfiguration', 'PrinterStatus')
        elif any(t.startswith('ScannerService') for t in type_names):
            namespace, prefix, operation, elements = WDP_SCAN_NS, 'wscn', 'GetScannerElements', (
                'ScannerDescription', 'ScannerConfiguration', 'ScannerStatus')
        else:
            return
        names = ''.join(f'<{prefix}:Name>{prefix}:{e}</{prefix}:Name>' for e in elements)
        body = (f'<{prefix}:{operation}><{prefix}:RequestedElements>{names}'
                f'</{prefix}:RequestedElements></{prefix}:{operation}>')
        reply = self._try_call(service.endpoint, f'{namespace}/{operation}', service.endpoint, body,
                               deadline, {prefix: namespace})
        if reply is not None:
            service.operations.add(operation)


def _host_of(url: str) -> str:
    return urlsplit(url).hostname or url
