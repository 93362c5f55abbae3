"""
Configuration settings for the protocol discovery modules
"""

# Discovery timeouts
DEFAULT_DISCOVERY_TIMEOUT_MS = 5000
SOAP_TIMEOUT_MS = 5000  # WSD phase-2 budget, independent of the probe timeout
DNS_QUERY_TIMEOUT_MS = 2000
S7_STAGE_TIMEOUT_MS = 3000  # per handshake stage, capped by the overall deadline

# Default ports
SSDP_PORT = 1900
WSD_PORT = 3702
DNS_PORT = 53
S7COMM_PORT = 102

# SSDP
SSDP_MULTICAST_HOST = '239.255.255.250:1900'
SSDP_MX = 3
SSDP_SEARCH_TARGET = 'ssdp:all'
SSDP_USER_AGENT = 'UNICAST'

# DNS
DNS_RECORD_TYPE = 'PTR'
DNS_TRANSPORT = 'udp'
DNS_TRANSPORTS = ('udp', 'tcp')

# S7comm addressing
S7_DEFAULT_RACK = 0
S7_DEFAULT_SLOT = 2

# Socket buffer sizes
UDP_RECV_BUFFER = 65507
SOAP_READ_CHUNK = 4096
SOAP_MAX_RESPONSE_BYTES = 1024 * 1024

# Logging settings
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Error messages
ERROR_MESSAGES = {
    'unknown_protocol': "Unknown protocol '{}'",
    'discovery_failed': "{} discovery failed for {}:{} - {}",
    'not_found': "No {} device found at {}:{}",
}
