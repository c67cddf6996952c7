import argparse
import logging
import signal
import sys
import threading
from typing import List, Optional

from . import __version__
from .config import load_config
from .errors import BindError, ConfigError, TLSError
from .log import setup_logging
from .server import ProxyServer

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_BIND = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='gondola',
        description='Lightweight YAML-configured reverse proxy.')
    parser.add_argument('-config', metavar='PATH', required=True,
                        help='path to the YAML configuration file')
    parser.add_argument('-version', action='version',
                        version=f'%(prog)s {__version__}')
    return parser


def install_signal_handlers(server: ProxyServer) -> threading.Thread:
    """Run shutdown on a helper thread when SIGTERM or SIGINT arrives."""
    shutdown_thread = threading.Thread(target=server.shutdown, name='shutdown')

    def handle_signal(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, shutting down")
        if not shutdown_thread.is_alive() and shutdown_thread.ident is None:
            shutdown_thread.start()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)
    return shutdown_thread


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"gondola: invalid configuration: {e}", file=sys.stderr)
        return EXIT_CONFIG

    setup_logging(config.python_log_level(), config.access_log)

    server = ProxyServer(config)
    try:
        server.bind()
    except TLSError as e:
        logger.error(f"TLS setup failed: {e}")
        return EXIT_CONFIG
    except BindError as e:
        logger.error(str(e))
        return EXIT_BIND

    shutdown_thread = install_signal_handlers(server)
    server.serve_forever()
    if shutdown_thread.ident is not None:
        shutdown_thread.join()
    return EXIT_OK


if __name__ == '__main__':
    sys.exit(main())
