# PassVault Engine - Main Entry Point
#
# Runs the engine API server. Settings come from PASSVAULT_* environment
# variables and an optional .env file; --host/--port override them.

import argparse
import logging
import sys

from . import __version__
from .core import EventSeverity, EventType, get_audit_logger
from .core.config import load_config, set_config


def main():
    """Main entry point for the PassVault engine."""
    parser = argparse.ArgumentParser(
        description="PassVault engine - encrypted backups, device sync and expiration alerts",
    )

    parser.add_argument(
        "--host",
        default=None,
        help="API host (default: PASSVAULT_API_HOST or 127.0.0.1)"
    )

    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="API port (default: PASSVAULT_API_PORT or 8000)"
    )

    parser.add_argument(
        "--env-file",
        default=None,
        help="Path of a .env file to load before reading the environment"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"PassVault engine v{__version__}"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_config(args.env_file)
    set_config(config)
    host = args.host or config.api_host
    port = args.port or config.api_port

    get_audit_logger().log_event(
        event_type=EventType.SYSTEM_START,
        severity=EventSeverity.INFO,
        message="PassVault engine starting",
        details={"version": __version__, "host": host, "port": port,
                 "data_dir": str(config.data_dir)},
    )

    from .api.main import start_api_server

    try:
        start_api_server(host=host, port=port)
    except KeyboardInterrupt:
        get_audit_logger().log_event(
            event_type=EventType.SYSTEM_STOP,
            severity=EventSeverity.INFO,
            message="PassVault engine stopped (user interrupt)"
        )
    except Exception as e:
        get_audit_logger().log_event(
            event_type=EventType.SYSTEM_STOP,
            severity=EventSeverity.CRITICAL,
            message=f"PassVault engine crashed: {e}"
        )
        logging.getLogger(__name__).exception("Engine crashed")
        sys.exit(1)


if __name__ == "__main__":
    main()
