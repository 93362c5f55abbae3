import argparse
import json
import logging
import os
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, List, Optional

from tqdm import tqdm

from lanprobe.config.discovery_config import (
    DEFAULT_DISCOVERY_TIMEOUT_MS,
    DNS_RECORD_TYPE,
    DNS_TRANSPORT,
    DNS_TRANSPORTS,
    ERROR_MESSAGES,
    LOG_DATE_FORMAT,
    LOG_FORMAT,
    S7_DEFAULT_RACK,
    S7_DEFAULT_SLOT,
    SOAP_TIMEOUT_MS,
)
from lanprobe.core.discovery import DiscoveryEngine

logger = logging.getLogger('lanprobe')

LEGAL_DISCLAIMER = """
This tool is for authorized network inventory and educational use only.
Probing networks you do not own or have explicit permission to test may be illegal.
"""


def setup_logging(debug: bool = False) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
    root = logging.getLogger('lanprobe')
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    root.propagate = False


def module_options(args: argparse.Namespace) -> Dict[str, Dict[str, Any]]:
    """Constructor keyword arguments per protocol, taken from parsed CLI options."""
    options: Dict[str, Dict[str, Any]] = {
        'upnp': {'interface': getattr(args, 'interface', None)},
        'wsd': {
            'soap_timeout_ms': getattr(args, 'soap_timeout', SOAP_TIMEOUT_MS),
            'username': getattr(args, 'username', None),
            'password': getattr(args, 'password', None),
        },
        'dns': {
            'domains': getattr(args, 'domain', None),
            'record_type': getattr(args, 'record_type', DNS_RECORD_TYPE),
            'transport': getattr(args, 'transport', DNS_TRANSPORT),
        },
        's7comm': {
            'rack': getattr(args, 'rack', S7_DEFAULT_RACK),
            'slot': getattr(args, 'slot', S7_DEFAULT_SLOT),
        },
    }
    return options


def run_one(engine: DiscoveryEngine, protocol: str, target: str, port: Optional[int],
            timeout_ms: int, enumerate_locations: bool = False) -> Dict[str, Any]:
    result = engine.discover_protocol(protocol, target, port, timeout_ms)
    entry = {'protocol': protocol, 'target': target, **result.to_dict()}
    if not result.found:
        module = engine.get(protocol)
        logger.info(ERROR_MESSAGES['not_found'].format(protocol, target, port or module.default_port))
    elif enumerate_locations and protocol == 'upnp':
        upnp = engine.get('upnp')
        entry['devices'] = [upnp.enumerate(loc) for loc in result.details.get('locations', [])]
    return entry


def run_all(engine: DiscoveryEngine, target: str, timeout_ms: int, threads: int = 4,
            enumerate_locations: bool = False) -> List[Dict[str, Any]]:
    """Every registered adapter against one target, each on its default port."""
    protocols = engine.protocols()
    for protocol in protocols:
        engine.get(protocol)
    results = []
    bar = tqdm(total=len(protocols), desc='Probing', unit='proto', file=sys.stderr)
    with ThreadPoolExecutor(max_workers=max(threads, 1)) as executor:
        futs = {executor.submit(run_one, engine, p, target, None, timeout_ms, enumerate_locations): p
                for p in protocols}
        for fut in as_completed(futs):
            results.append(fut.result())
            bar.update(1)
    bar.close()
    return sorted(results, key=lambda r: r['protocol'])


def write_report(path: str, results: List[Dict[str, Any]]) -> str:
    report_dir = os.path.dirname(path)
    if report_dir:
        os.makedirs(report_dir, exist_ok=True)
    with open(path, 'w') as f:
        json.dump(results, f, indent=2)
    return path


def dns_record_type(value: str) -> str:
    from lanprobe.protocols.dns import record_type_code

    try:
        record_type_code(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e
    return value


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('target', help='IP address of the device to probe')
    common.add_argument('--timeout', type=int, default=DEFAULT_DISCOVERY_TIMEOUT_MS, help='Discovery timeout (ms)')
    common.add_argument('--report', type=str, help='Save results to a JSON file')
    common.add_argument('--debug', action='store_true', help='Enable debug output')

    parser = argparse.ArgumentParser(description="LANPROBE network device discovery")
    subparsers = parser.add_subparsers(dest='command')
    subparsers.required = True

    upnp_parser = subparsers.add_parser('upnp', parents=[common], help='UPnP/SSDP discovery')
    upnp_parser.add_argument('--port', type=int, help='SSDP port (default 1900)')
    upnp_parser.add_argument('--interface', type=str, help='Network interface to send from')
    upnp_parser.add_argument('--enumerate', action='store_true', help='Fetch the device descriptions found')

    wsd_parser = subparsers.add_parser('wsd', parents=[common], help='WS-Discovery / ONVIF discovery')
    wsd_parser.add_argument('--port', type=int, help='WS-Discovery port (default 3702)')
    wsd_parser.add_argument('--soap-timeout', type=int, default=SOAP_TIMEOUT_MS, help='SOAP introspection budget (ms)')
    wsd_parser.add_argument('--username', type=str, help='Username for ONVIF WS-Security')
    wsd_parser.add_argument('--password', type=str, help='Password for ONVIF WS-Security')

    dns_parser = subparsers.add_parser('dns', parents=[common], help='DNS server discovery')
    dns_parser.add_argument('--port', type=int, help='DNS port (default 53)')
    dns_parser.add_argument('--domain', action='append', help='Domain to query (repeatable)')
    dns_parser.add_argument('--record-type', type=dns_record_type, default=DNS_RECORD_TYPE,
                            help='Record type to query (mnemonic or TYPE<n>)')
    dns_parser.add_argument('--transport', choices=DNS_TRANSPORTS, default=DNS_TRANSPORT, help='Query transport')

    s7_parser = subparsers.add_parser('s7comm', parents=[common], help='Siemens S7 PLC identification')
    s7_parser.add_argument('--port', type=int, help='ISO-TSAP port (default 102)')
    s7_parser.add_argument('--rack', type=int, default=S7_DEFAULT_RACK, help='PLC rack (0-7)')
    s7_parser.add_argument('--slot', type=int, default=S7_DEFAULT_SLOT, help='PLC slot (0-31)')

    all_parser = subparsers.add_parser('all', parents=[common], help='Run every protocol against the target')
    all_parser.add_argument('--threads', type=int, default=4, help='Number of protocols probed in parallel')
    all_parser.add_argument('--enumerate', action='store_true', help='Fetch UPnP device descriptions found')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.debug)
    print(LEGAL_DISCLAIMER, file=sys.stderr)

    engine = DiscoveryEngine(module_options(args))
    if args.command == 'all':
        results = run_all(engine, args.target, args.timeout, args.threads, args.enumerate)
    else:
        results = [run_one(engine, args.command, args.target, args.port, args.timeout,
                           getattr(args, 'enumerate', False))]

    print(json.dumps(results, indent=2))
    if args.report:
        logger.info("Saved report to %s", write_report(args.report, results))
    return 0 if any(r['found'] for r in results) else 1


if __name__ == '__main__':
    sys.exit(main())
