"""
Command line entry point.

    python -m disguise [-n NETWORK] [-a ADDRESS] [-s SECRET] [--sign URL]

Flags override the matching environment variables. The process exits with
status 1 if the configuration is invalid or the listener cannot be bound.
"""

import argparse
import logging
import sys
from typing import List, Optional

from pydantic import ValidationError

from .auth import sign_url
from .config import Settings, validate_configuration
from .main import setup_logging
from .server import ServerStartupError, run_server

logger = logging.getLogger("disguise")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="disguise",
        description="Signed image proxy",
    )
    parser.add_argument("-n", dest="network", help="connection type (tcp, tcp4, tcp6, unix)")
    parser.add_argument("-a", dest="address", help="connection listen address")
    parser.add_argument("-s", dest="secret", help="shared secret (default: $CAMO_KEY)")
    parser.add_argument(
        "--sign",
        metavar="URL",
        help="print the signed path for URL and exit",
    )
    return parser


def load_settings(args: argparse.Namespace) -> Settings:
    """Build Settings from the environment with command line overrides."""
    overrides = {}
    if args.network is not None:
        overrides["DISGUISE_NETWORK"] = args.network
    if args.address is not None:
        overrides["DISGUISE_ADDRESS"] = args.address
    if args.secret is not None:
        overrides["CAMO_KEY"] = args.secret
    return Settings(**overrides)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args)
    except ValidationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    if args.sign is not None:
        print(sign_url(settings.secret_bytes, args.sign))
        return 0

    setup_logging(settings.LOG_LEVEL)

    status = validate_configuration(settings)
    for warning in status["warnings"]:
        logger.warning(f"Configuration warning: {warning}")
    if not status["valid"]:
        for error in status["errors"]:
            logger.error(f"Configuration error: {error}")
        return 1

    try:
        run_server(settings)
    except ServerStartupError as e:
        logger.error(f"Server failed to start: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
