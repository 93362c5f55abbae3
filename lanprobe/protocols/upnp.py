import logging
import socket
import xml.etree.ElementTree as ET
from typing import Any, Dict, Optional, Set

import requests

from lanprobe.config.discovery_config import (
    SSDP_MULTICAST_HOST,
    SSDP_MX,
    SSDP_PORT,
    SSDP_SEARCH_TARGET,
    SSDP_USER_AGENT,
    UDP_RECV_BUFFER,
)
from lanprobe.core.discovery import DiscoveryResult, ProtocolModule
from lanprobe.core.errors import ParseError
from lanprobe.core.utils import deadline_after, open_udp_socket, remaining, rewrite_url_host

logger = logging.getLogger(__name__)


def build_msearch() -> bytes:
    """
    M-SEARCH for unicast discovery. HOST still names the multicast group even though
    the datagram goes straight to the target; devices answer it either way.
    """
    return (
        'M-SEARCH * HTTP/1.1\r\n'
        f'HOST: {SSDP_MULTICAST_HOST}\r\n'
        'MAN: "ssdp:discover"\r\n'
        f'MX: {SSDP_MX}\r\n'
        f'ST: {SSDP_SEARCH_TARGET}\r\n'
        f'USER-AGENT: {SSDP_USER_AGENT}\r\n'
        '\r\n'
    ).encode()


def parse_ssdp_response(response: str) -> Dict[str, str]:
    """
    Header map of one SSDP reply, keys lowercased. The status line and lines
    without a colon are dropped; a repeated header keeps its last value.
    discover_locations only reads `location` from it.
    """
    headers = {}
    for line in response.split('\r\n'):
        if ':' in line:
            k, v = line.split(':', 1)
            headers[k.strip().lower()] = v.strip()
    return headers


class UPnPModule(ProtocolModule):
    """
    SSDP unicast discovery: one M-SEARCH to the target, then collect LOCATION URLs
    from its replies until the timeout expires.
    """
    name = 'upnp'
    default_port = SSDP_PORT
    service = 'upnp'

    def __init__(self, interface: Optional[str] = None, http_timeout: float = 5):
        self.interface = interface
        self.http_timeout = http_timeout

    def probe(self, address: str, port: int, timeout_ms: int) -> DiscoveryResult:
        locations = self.discover_locations(address, port, timeout_ms)
        if not locations:
            return DiscoveryResult(found=False)
        return DiscoveryResult(found=True, details={'locations': sorted(locations)})

    def discover_locations(self, address: str, port: int, timeout_ms: int) -> Set[str]:
        locations: Set[str] = set()
        deadline = deadline_after(timeout_ms)
        with open_udp_socket(self.interface, address) as sock:
            sock.sendto(build_msearch(), (address, port))
            logger.debug("Sent M-SEARCH to %s:%d", address, port)
            while True:
                left = remaining(deadline)
                if left <= 0:
                    break
                sock.settimeout(left)
                try:
                    data, addr = sock.recvfrom(UDP_RECV_BUFFER)
                except socket.timeout:
                    break
                if addr[0] != address:
                    logger.debug("Ignoring SSDP reply from %s (probed %s)", addr[0], address)
                    continue
                headers = parse_ssdp_response(data.decode(errors='ignore'))
                location = headers.get('location')
                if location:
                    locations.add(self.rewrite_location(location, address))
        return locations

    @staticmethod
    def rewrite_location(location: str, address: str) -> str:
        try:
            return rewrite_url_host(location, address)
        except ParseError:
            logger.debug("Keeping unparseable location %r", location)
            return location

    def enumerate(self, location: str) -> Dict[str, Any]:
        """
        Fetch and parse the UPnP device description XML behind a LOCATION URL.
        """
        try:
            resp = requests.get(location, timeout=self.http_timeout)
            resp.raise_for_status()
            info = self._parse_device_xml(ET.fromstring(resp.content))
            info['location'] = location
            return info
        except (requests.RequestException, ET.ParseError, LookupError, ValueError) as e:
            logger.debug("Could not enumerate %s: %s", location, e)
            return {'location': location, 'error': str(e)}

    def _parse_device_xml(self, xml: ET.Element) -> Dict[str, Any]:
        """
        Root device fields and its serviceList from a description document, matched
        on local tag names. Missing elements come back as None; a document without
        a <device> gives {}. Embedded devices are not walked.
        """
        for el in xml.iter():
            if isinstance(el.tag, str) and '}' in el.tag:
                el.tag = el.tag.split('}', 1)[1]
        device = xml.find('.//device')
        if device is None:
            return {}
        info = {
            'deviceType': device.findtext('deviceType'),
            'friendlyName': device.findtext('friendlyName'),
            'manufacturer': device.findtext('manufacturer'),
            'modelName': device.findtext('modelName'),
            'modelNumber': device.findtext('modelNumber'),
            'serialNumber': device.findtext('serialNumber'),
            'UDN': device.findtext('UDN'),
            'presentationURL': device.findtext('presentationURL'),
            'services': []
        }
        service_list = device.find('serviceList')
        if service_list is not None:
            for svc in service_list.findall('service'):
                info['services'].append({
                    'serviceType': svc.findtext('serviceType'),
                    'serviceId': svc.findtext('serviceId'),
                    'controlURL': svc.findtext('controlURL'),
                    'eventSubURL': svc.findtext('eventSubURL'),
                    'SCPDURL': svc.findtext('SCPDURL')
                })
        return info
