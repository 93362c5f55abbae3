import socket
import threading

import pytest
import requests

from lanprobe.protocols import upnp
from lanprobe.protocols.upnp import UPnPModule, build_msearch, parse_ssdp_response

TARGET = '203.0.113.9'

DEVICE_XML = b"""<?xml version="1.0"?>
<root xmlns="urn:schemas-upnp-org:device-1-0">
  <device>
    <deviceType>urn:schemas-upnp-org:device:InternetGatewayDevice:1</deviceType>
    <friendlyName>Gateway</friendlyName>
    <manufacturer>ACME</manufacturer>
    <modelName>GW-1</modelName>
    <UDN>uuid:1234</UDN>
    <serviceList>
      <service>
        <serviceType>urn:schemas-upnp-org:service:Layer3Forwarding:1</serviceType>
        <serviceId>urn:upnp-org:serviceId:L3Forwarding1</serviceId>
        <controlURL>/ctl/L3F</controlURL>
        <eventSubURL>/evt/L3F</eventSubURL>
        <SCPDURL>/L3F.xml</SCPDURL>
      </service>
    </serviceList>
  </device>
</root>"""


class FakeUDPSocket:
    def __init__(self, replies):
        self.replies = list(replies)
        self.sent = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def sendto(self, data, addr):
        self.sent.append((data, addr))

    def settimeout(self, timeout):
        pass

    def recvfrom(self, size):
        if self.replies:
            return self.replies.pop(0)
        raise socket.timeout()


def ssdp_reply(location):
    return (f'HTTP/1.1 200 OK\r\nCACHE-CONTROL: max-age=1800\r\nLOCATION: {location}\r\n'
            'ST: upnp:rootdevice\r\n\r\n').encode()


@pytest.fixture
def fake_socket(monkeypatch):
    def install(*replies):
        sock = FakeUDPSocket(replies)
        monkeypatch.setattr(upnp, 'open_udp_socket', lambda interface=None, address=None: sock)
        return sock
    return install


def test_msearch_message():
    assert build_msearch() == (
        b'M-SEARCH * HTTP/1.1\r\n'
        b'HOST: 239.255.255.250:1900\r\n'
        b'MAN: "ssdp:discover"\r\n'
        b'MX: 3\r\n'
        b'ST: ssdp:all\r\n'
        b'USER-AGENT: UNICAST\r\n'
        b'\r\n'
    )


def test_parse_ssdp_response_lowercases_headers():
    headers = parse_ssdp_response(ssdp_reply('http://x/desc.xml').decode())
    assert headers['location'] == 'http://x/desc.xml'
    assert headers['st'] == 'upnp:rootdevice'


def test_location_host_is_rewritten(fake_socket):
    sock = fake_socket((ssdp_reply('http://192.168.1.20:80/desc.xml'), (TARGET, 1900)))
    result = UPnPModule().discover(TARGET, timeout_ms=200)
    assert result.found
    assert list(result.details['locations']) == ['http://203.0.113.9:80/desc.xml']
    assert sock.sent == [(build_msearch(), (TARGET, 1900))]


def test_location_without_port(fake_socket):
    fake_socket((ssdp_reply('http://router.lan/rootDesc.xml?x=1'), (TARGET, 1900)))
    result = UPnPModule().discover(TARGET, timeout_ms=200)
    assert list(result.details['locations']) == ['http://203.0.113.9/rootDesc.xml?x=1']


def test_replies_from_other_hosts_are_ignored(fake_socket):
    fake_socket((ssdp_reply('http://198.51.100.1:80/desc.xml'), ('198.51.100.1', 1900)))
    assert not UPnPModule().discover(TARGET, timeout_ms=200).found


def test_duplicate_locations_collapse(fake_socket):
    fake_socket(
        (ssdp_reply('http://192.168.1.20:80/desc.xml'), (TARGET, 1900)),
        (ssdp_reply('http://10.0.0.1:80/desc.xml'), (TARGET, 1900)),
        (ssdp_reply('http://192.168.1.20:5000/other.xml'), (TARGET, 1900)),
    )
    result = UPnPModule().discover(TARGET, timeout_ms=200)
    assert list(result.details['locations']) == [
        'http://203.0.113.9:5000/other.xml',
        'http://203.0.113.9:80/desc.xml',
    ]


def test_rewrite_is_idempotent():
    once = UPnPModule.rewrite_location('http://192.168.1.20:80/desc.xml', TARGET)
    assert UPnPModule.rewrite_location(once, TARGET) == once


def test_unparseable_location_is_kept():
    assert UPnPModule.rewrite_location('not a url', TARGET) == 'not a url'


def test_no_reply(fake_socket):
    fake_socket()
    result = UPnPModule().discover(TARGET, timeout_ms=100)
    assert not result.found
    assert result.to_dict() == {'found': False}


def test_socket_failure_is_not_found(monkeypatch):
    def broken(interface=None, address=None):
        raise OSError('network unreachable')
    monkeypatch.setattr(upnp, 'open_udp_socket', broken)
    assert not UPnPModule().discover(TARGET, timeout_ms=100).found


class FakeResponse:
    def __init__(self, content, status_code=200):
        self.content = content
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f'{self.status_code} error')


def test_enumerate_parses_description(monkeypatch):
    monkeypatch.setattr(upnp.requests, 'get', lambda url, timeout: FakeResponse(DEVICE_XML))
    info = UPnPModule().enumerate('http://203.0.113.9:80/desc.xml')
    assert info['manufacturer'] == 'ACME'
    assert info['friendlyName'] == 'Gateway'
    assert info['services'][0]['controlURL'] == '/ctl/L3F'
    assert info['location'] == 'http://203.0.113.9:80/desc.xml'


def test_enumerate_http_error(monkeypatch):
    monkeypatch.setattr(upnp.requests, 'get', lambda url, timeout: FakeResponse(b'', 404))
    info = UPnPModule().enumerate('http://203.0.113.9:80/desc.xml')
    assert 'error' in info


def test_repeated_discovery_is_stable(fake_socket):
    reply = (ssdp_reply('http://192.168.1.20:80/desc.xml'), (TARGET, 1900))
    results = []
    for _ in range(2):
        fake_socket(reply)
        results.append(UPnPModule().discover(TARGET, timeout_ms=200).to_dict())
    assert results[0] == results[1]


def test_parse_ssdp_response_drops_status_line_and_keeps_last_value():
    headers = parse_ssdp_response('HTTP/1.1 200 OK\r\nST: a\r\nnot a header\r\nst: b\r\n\r\n')
    assert headers == {'st': 'b'}


def test_description_with_unknown_encoding(monkeypatch):
    body = b'<?xml version="1.0" encoding="x-bogus"?><root/>'
    monkeypatch.setattr(upnp.requests, 'get', lambda url, timeout: FakeResponse(body))
    info = UPnPModule().enumerate('http://203.0.113.9:5000/desc.xml')
    assert info['location'] == 'http://203.0.113.9:5000/desc.xml'
    assert 'error' in info


@pytest.fixture
def loopback_device():
    """
    Real UDP responder on 127.0.0.1. On the first datagram it answers from a second
    loopback address (127.0.0.2) and then from itself.
    """
    sockets = []

    def start(foreign_reply, reply=None):
        server = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        foreign = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sockets.extend([server, foreign])
        server.bind(('127.0.0.1', 0))
        try:
            foreign.bind(('127.0.0.2', 0))
        except OSError:
            pytest.skip('127.0.0.2 is not usable on this host')
        server.settimeout(2)

        def respond():
            try:
                _, client = server.recvfrom(65535)
            except OSError:
                return
            foreign.sendto(foreign_reply, client)
            if reply is not None:
                server.sendto(reply, client)

        threading.Thread(target=respond, daemon=True).start()
        return server.getsockname()[1]

    yield start
    for sock in sockets:
        sock.close()


def test_loopback_reply_from_other_address_is_ignored(loopback_device):
    port = loopback_device(ssdp_reply('http://127.0.0.2:5000/foreign.xml'),
                           ssdp_reply('http://192.168.1.1:5000/desc.xml'))
    result = UPnPModule().discover('127.0.0.1', port, 300)
    assert result.found
    assert list(result.details['locations']) == ['http://127.0.0.1:5000/desc.xml']


def test_loopback_only_other_address_replies(loopback_device):
    port = loopback_device(ssdp_reply('http://127.0.0.2:5000/foreign.xml'))
    assert not UPnPModule().discover('127.0.0.1', port, 300).found
