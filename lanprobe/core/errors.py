class DiscoveryError(Exception):
    """Base class for failures raised inside a protocol module."""


class TransportError(DiscoveryError):
    """Connect or socket failure."""


class ProtocolError(DiscoveryError):
    """Malformed or unexpected reply."""


class DiscoveryTimeout(DiscoveryError):
    """No reply within the deadline."""


class ParseError(DiscoveryError):
    """Malformed URL, XML or binary payload."""


class DNSResponseError(ProtocolError):
    """A DNS server answered with a non-zero response code."""

    def __init__(self, rcode: int, message: str = ''):
        super().__init__(message or f'DNS response code {rcode}')
        self.rcode = rcode
