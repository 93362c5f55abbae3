import importlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from lanprobe.config.discovery_config import DEFAULT_DISCOVERY_TIMEOUT_MS, ERROR_MESSAGES

logger = logging.getLogger(__name__)

# Protocol name -> "module:Class"; classes are imported on first use.
PROTOCOLS = {
    'upnp': 'lanprobe.protocols.upnp:UPnPModule',
    'wsd': 'lanprobe.protocols.wsd:WSDModule',
    'dns': 'lanprobe.protocols.dns:DNSModule',
    's7comm': 'lanprobe.protocols.s7comm:S7CommModule',
}


def _plain(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted(_plain(v) for v in value)
    return value


@dataclass(frozen=True)
class DiscoveryResult:
    """Outcome of one discover() call. `details` is read-only once built."""
    found: bool
    details: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, 'details', MappingProxyType(dict(self.details)))

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {'found': self.found}
        if self.details:
            result['details'] = _plain(self.details)
        return result


class ProtocolModule(ABC):
    """
    Shared discovery contract: identity plus a discover() that never raises.

    Subclasses implement probe(), which may raise anything; discover() turns every
    failure into DiscoveryResult(found=False) so a battery of modules can run across
    many hosts without aborting on one unreachable or non-conforming target.
    """
    name: str = ''
    default_port: int = 0
    service: str = ''

    def discover(self, address: str, port: Optional[int] = None,
                 timeout_ms: int = DEFAULT_DISCOVERY_TIMEOUT_MS) -> DiscoveryResult:
        port = port or self.default_port
        try:
            return self.probe(address, port, timeout_ms)
        except Exception as e:
            logger.debug(ERROR_MESSAGES['discovery_failed'].format(self.name, address, port, e))
            return DiscoveryResult(found=False)

    @abstractmethod
    def probe(self, address: str, port: int, timeout_ms: int) -> DiscoveryResult:
        """Run the protocol exchange; failures propagate to discover()."""

    def __repr__(self):
        return f'<{type(self).__name__} name={self.name!r} port={self.default_port}>'


def load_module_class(protocol: str) -> type:
    try:
        target = PROTOCOLS[protocol]
    except KeyError:
        raise KeyError(ERROR_MESSAGES['unknown_protocol'].format(protocol)) from None
    module_name, class_name = target.split(':')
    return getattr(importlib.import_module(module_name), class_name)


class DiscoveryEngine:
    """Registry of protocol modules keyed by protocol name."""

    def __init__(self, options: Optional[Dict[str, Dict[str, Any]]] = None):
        self.options = options or {}
        self._modules: Dict[str, ProtocolModule] = {}

    def protocols(self) -> List[str]:
        return sorted(PROTOCOLS)

    def get(self, protocol: str) -> ProtocolModule:
        if protocol not in self._modules:
            cls = load_module_class(protocol)
            self._modules[protocol] = cls(**self.options.get(protocol, {}))
        return self._modules[protocol]

    def discover_protocol(self, protocol: str, address: str, port: Optional[int] = None,
                          timeout_ms: int = DEFAULT_DISCOVERY_TIMEOUT_MS) -> DiscoveryResult:
        """Protocol-specific discovery against one target."""
        return self.get(protocol).discover(address, port, timeout_ms)
