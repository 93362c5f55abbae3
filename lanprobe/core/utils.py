import ipaddress
import logging
import socket
import time
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from lanprobe.core.errors import ParseError, TransportError

logger = logging.getLogger(__name__)


def deadline_after(timeout_ms: int) -> float:
    """Monotonic deadline `timeout_ms` milliseconds from now."""
    return time.monotonic() + max(timeout_ms, 0) / 1000.0


def remaining(deadline: float) -> float:
    """Seconds left until `deadline`, never negative."""
    return max(0.0, deadline - time.monotonic())


def format_host(address: str) -> str:
    try:
        if ipaddress.ip_address(address).version == 6:
            return f'[{address}]'
    except ValueError:
        pass
    return address


def rewrite_url_host(url: str, address: str) -> str:
    """
    Replace the host of `url` with `address`, keeping scheme, port, path and query.
    Devices behind NAT (or with hostnames that do not resolve) advertise unusable hosts.
    """
    try:
        parts = urlsplit(url.strip())
        port = parts.port
    except ValueError as e:
        raise ParseError(f'Invalid URL {url!r}: {e}') from e
    if not parts.scheme or not parts.netloc:
        raise ParseError(f'Invalid URL {url!r}')
    netloc = format_host(address)
    if port is not None:
        netloc = f'{netloc}:{port}'
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, ''))


def get_iface_addr(iface: str) -> Optional[str]:
    from scapy.arch import get_if_addr

    try:
        addr = get_if_addr(iface)
    except (OSError, ValueError) as e:
        logger.debug("Could not get address for interface %s: %s", iface, e)
        return None
    if not addr or addr == '0.0.0.0':
        return None
    return addr


def address_family(address: Optional[str]) -> socket.AddressFamily:
    try:
        if address and ipaddress.ip_address(address).version == 6:
            return socket.AF_INET6
    except ValueError:
        pass
    return socket.AF_INET


def open_udp_socket(interface: Optional[str] = None, address: Optional[str] = None) -> socket.socket:
    """
    UDP socket bound to an ephemeral port, optionally on a given interface.
    The family follows `address` (the peer that will be contacted); interface
    binding is IPv4 only.
    """
    family = address_family(address)
    sock = socket.socket(family, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        if interface:
            if family == socket.AF_INET6:
                raise TransportError(f'Interface binding is IPv4 only, cannot reach {address} via {interface}')
            iface_addr = get_iface_addr(interface)
            if not iface_addr:
                raise TransportError(f'Interface {interface} not found or has no IPv4 address')
            sock.bind((iface_addr, 0))
        else:
            sock.bind(('::' if family == socket.AF_INET6 else '', 0))
    except (OSError, TransportError):
        sock.close()
        raise
    return sock
