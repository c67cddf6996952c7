import socket
import ssl
import time
import logging
from typing import TYPE_CHECKING, Optional, Tuple

from . import tls
from .config import ProxyConfig
from .connection import Connection
from .errors import ClientError
from .forwarder import forward
from .log import log_access
from .models import HTTPRequest, HTTPResponse
from .router import Static, Upstream, route
from .static import serve_static

if TYPE_CHECKING:
    from .server import ConnectionTracker

logger = logging.getLogger(__name__)

MAX_HEADER_SIZE = 65536


class RequestHandler:
    """Handles processing of individual client connections."""

    def __init__(self, config: ProxyConfig,
                 tracker: Optional['ConnectionTracker'] = None):
        """
        Initialize the request handler.

        Args:
            config: Immutable proxy configuration
            tracker: Optional ConnectionTracker used for forced shutdown
        """
        self._config = config
        self._tracker = tracker

    def handle_client(self, client_socket: socket.socket,
                      client_address: Tuple[str, int]) -> None:
        """
        Handle one client connection: a single request, then close.

        Args:
            client_socket: Socket object for client connection
            client_address: Tuple of client's IP and port
        """
        started = time.monotonic()
        deadline = started + self._config.read_header_timeout
        conn = Connection(client_socket)
        request = None
        status = None

        try:
            tls.handshake(client_socket, self._config.read_header_timeout)

            request = self._read_request(conn, deadline)
            if request is None:
                return
            request.client_address = client_address
            client_socket.settimeout(self._config.upstream_timeout)

            status = self._dispatch(conn, request)

        except ClientError as e:
            logger.debug(f"Bad request from {client_address}: {e}")
            status = e.status_code
            self._send_error(conn, status)
        except socket.timeout:
            if request is None:
                logger.info(f"Header read from {client_address} timed out, closing")
            else:
                logger.warning(f"Timed out serving {request.request_line} to {client_address}")
        except ssl.SSLError as e:
            logger.info(f"TLS error with {client_address}: {e}")
        except (OSError, EOFError) as e:
            logger.info(f"Connection error with {client_address}: {e}")
        except Exception:
            logger.exception(f"Error handling client {client_address}")
        finally:
            if request is not None and status is not None:
                log_access(request, status, conn.bytes_written,
                           time.monotonic() - started)
            if self._tracker is not None:
                self._tracker.untrack(client_socket)
            client_socket.close()

    def _read_request(self, conn: Connection, deadline: float) -> Optional[HTTPRequest]:
        """Read and parse the request head before ``deadline``."""
        try:
            head = conn.read_until(b'\r\n\r\n', MAX_HEADER_SIZE, deadline)
        except ValueError:
            raise ClientError("request headers too large", 431)
        if head is None:
            return None
        return HTTPRequest.from_head(head)

    def _dispatch(self, conn: Connection, request: HTTPRequest) -> int:
        decision = route(self._config, request)

        if isinstance(decision, Static):
            logger.debug(f"{request.path} -> static {decision.directory}")
            return serve_static(conn, request, decision.directory,
                                decision.stripped_path)

        if isinstance(decision, Upstream):
            logger.debug(f"{request.host} -> upstream {decision.route.target}")
            return forward(conn, request, decision.route,
                           self._config.upstream_timeout,
                           tls=self._config.tls_enabled,
                           tracker=self._tracker)

        logger.debug(f"No route for host {request.host!r} path {request.path}")
        self._send_error(conn, 404)
        return 404

    @staticmethod
    def _send_error(conn: Connection, status_code: int) -> None:
        try:
            conn.send_response(HTTPResponse.create_error(status_code))
        except OSError as e:
            logger.debug(f"Could not send {status_code}: {e}")
