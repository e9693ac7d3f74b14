"""CLI for the REST API service.

Provides `serve` (run in foreground until SIGINT/SIGTERM), `params`
(list parameters and defaults) and `probe` (readiness check).
"""

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path

from restapi.config import DEFAULT_PORT
from restapi.controller import RestAPI
from restapi.errors import APIError
from restapi.params import ParamStore
from restapi.readiness import check_api, wait_for_api
from restapi.session import Session
from restapi.tls import get_hostname

logger = logging.getLogger(__name__)


def _parse_assignment(value: str) -> tuple:
    if "=" not in value:
        raise argparse.ArgumentTypeError(f"expected name=value, got '{value}'")
    name, val = value.split("=", 1)
    return name.strip(), val


def _add_common_args(parser: argparse.ArgumentParser):
    parser.add_argument(
        "--config", "-c",
        type=Path,
        help="YAML file of parameter values",
    )
    parser.add_argument(
        "--set", "-s",
        dest="overrides",
        action="append",
        default=[],
        type=_parse_assignment,
        metavar="NAME=VALUE",
        help="Set a parameter (repeatable, applied after --config)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )


def _build(args) -> RestAPI:
    """Create the session and module and apply parameters.

    Raises:
        ConfigError: If the config file or an override is invalid
    """
    session = Session()
    api = RestAPI(session, store=ParamStore())
    if args.config:
        api.store.load_yaml(args.config)
    for name, value in args.overrides:
        api.store.set(name, value)
    return api


def _handle_serve(argv) -> int:
    """Handle 'serve': run the API in the foreground."""
    parser = argparse.ArgumentParser(
        prog="restapi serve",
        description="Start the REST API and serve until interrupted",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_common_args(parser)
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output startup info as JSON",
    )
    args = parser.parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        api = _build(args)
        config = api.start()
    except APIError as e:
        logger.error("Failed to start api server: %s", e.message)
        return 1

    stop_requested = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received %s", signal.Signals(signum).name)
        stop_requested.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    host, port = api.server_address
    scheme = "https" if config.is_tls else "http"
    if args.json:
        info = {
            "url": f"{scheme}://{host}:{port}",
            "hostname": get_hostname(),
            "port": port,
            "auth": config.auth_enabled,
            "websocket": config.use_websocket,
            "fingerprint": api.identity.fingerprint if api.identity else None,
        }
        print(json.dumps(info, indent=2))
    else:
        print(f"\nAPI running at {scheme}://{host}:{port}")
        if api.identity:
            print(f"Certificate fingerprint: {api.identity.fingerprint}")
        print("\nPress Ctrl+C to stop...")

    # Also wakes up when the module is turned off through the API
    while not stop_requested.is_set() and api.running:
        stop_requested.wait(0.5)

    api.stop()
    return 0


def _handle_params(argv) -> int:
    """Handle 'params': list parameters with their current values."""
    parser = argparse.ArgumentParser(
        prog="restapi params",
        description="List the module parameters",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_common_args(parser)
    args = parser.parse_args(argv)

    try:
        api = _build(args)
    except APIError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    for param in api.store.params():
        print(f"{param.name} = {api.store.get(param.name)!r}")
        if param.description:
            print(f"    {param.description}")
    return 0


def _handle_probe(argv) -> int:
    """Handle 'probe': check that a running API answers."""
    parser = argparse.ArgumentParser(
        prog="restapi probe",
        description="Check that a running REST API is reachable",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "url",
        nargs="?",
        default=f"http://127.0.0.1:{DEFAULT_PORT}",
        help="Base URL of the API",
    )
    parser.add_argument("--username", "-u", default="", help="Basic auth username")
    parser.add_argument("--password", "-p", default="", help="Basic auth password")
    parser.add_argument(
        "--wait",
        type=float,
        default=0,
        metavar="SECONDS",
        help="Keep retrying for up to SECONDS",
    )
    args = parser.parse_args(argv)

    if args.wait > 0:
        success, message = wait_for_api(args.url, args.username, args.password, timeout=args.wait)
    else:
        success, message = check_api(args.url, args.username, args.password)

    print(message)
    return 0 if success else 1


def main(argv=None):
    """CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    if argv is None:
        argv = sys.argv[1:]

    subcommands = {
        "serve": _handle_serve,
        "params": _handle_params,
        "probe": _handle_probe,
    }

    if not argv or argv[0] in ("-h", "--help"):
        print("Usage: restapi <command> [options]")
        print()
        print("Commands:")
        print("  serve    Start the REST API in the foreground")
        print("  params   List module parameters")
        print("  probe    Check that a running API answers")
        print()
        print("Run 'restapi <command> --help' for command-specific options.")
        return 0

    subcmd = argv[0]
    if subcmd not in subcommands:
        print(f"Error: Unknown command '{subcmd}'")
        print(f"Available commands: {', '.join(subcommands)}")
        return 1

    return subcommands[subcmd](argv[1:])


if __name__ == "__main__":
    sys.exit(main())
