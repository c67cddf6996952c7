import socket
import ssl
import select
import time
import logging
from typing import TYPE_CHECKING, Callable, Optional

from .config import UpstreamRoute
from .connection import BUFFER_SIZE, Connection
from .errors import ClientError, UpstreamError
from .models import HOP_BY_HOP, Headers, HTTPRequest, HTTPResponse

if TYPE_CHECKING:
    from .server import ConnectionTracker

logger = logging.getLogger(__name__)

MAX_RESPONSE_HEAD = 65536
CONTINUE = b'HTTP/1.1 100 Continue\r\n\r\n'


def _strip_hop_by_hop(headers: Headers) -> Headers:
    """Remove hop-by-hop headers, including any named in Connection."""
    headers = headers.copy()
    for value in headers.get_all('Connection'):
        for token in value.split(','):
            if token.strip():
                headers.remove(token.strip())
    for name in HOP_BY_HOP:
        headers.remove(name)
    return headers


def build_upstream_head(request: HTTPRequest, route: UpstreamRoute,
                        tls: bool = False) -> bytes:
    """
    Serialize the request head sent to the upstream.

    Host is rewritten to the target, forwarding headers are appended and
    the upstream is asked to close after one response unless the client is
    upgrading the connection.
    """
    headers = _strip_hop_by_hop(request.headers)
    headers.remove('Expect')
    headers.set('Host', route.netloc)

    if request.client_address:
        forwarded_for = request.headers.get('X-Forwarded-For')
        client_ip = request.client_address[0]
        headers.set('X-Forwarded-For',
                    f"{forwarded_for}, {client_ip}" if forwarded_for else client_ip)
    if request.host:
        headers.set('X-Forwarded-Host', request.host)
    headers.set('X-Forwarded-Proto', 'https' if tls else 'http')

    if request.is_upgrade:
        headers.set('Upgrade', request.headers.get('Upgrade'))
        headers.set('Connection', 'Upgrade')
    else:
        headers.set('Connection', 'close')

    head = f"{request.method} {request.target} HTTP/1.1\r\n{headers.to_lines()}\r\n"
    return head.encode('latin-1')


def open_upstream(route: UpstreamRoute, timeout: float) -> socket.socket:
    """Connect to the route target, wrapping in TLS for https targets."""
    try:
        sock = socket.create_connection((route.hostname, route.port), timeout=timeout)
    except OSError as e:
        raise UpstreamError(f"cannot connect to {route.target}: {e}") from e

    if route.scheme == 'https':
        context = ssl.create_default_context()
        try:
            sock = context.wrap_socket(sock, server_hostname=route.hostname)
        except (OSError, ssl.SSLError) as e:
            sock.close()
            raise UpstreamError(f"TLS handshake with {route.target} failed: {e}") from e
    return sock


def _copy_chunked(source: Connection, write: Callable[[bytes], None]) -> None:
    """
    Relay a chunked body verbatim, stopping after the last chunk's trailers.

    Raises:
        ValueError: on a malformed or oversized chunk size line
    """
    while True:
        line = source.readline()
        write(line)
        size = int(line.split(b';', 1)[0].strip(), 16)
        if size == 0:
            # trailers end with an empty line
            while True:
                trailer = source.readline()
                write(trailer)
                if trailer == b'\r\n':
                    return
        for chunk in source.read_exact(size + 2):
            write(chunk)


def copy_request_body(client: Connection, upstream: socket.socket,
                      request: HTTPRequest) -> None:
    if request.is_chunked:
        try:
            _copy_chunked(client, upstream.sendall)
        except ValueError as e:
            raise ClientError(f"malformed chunked body: {e}") from e
        return
    length = request.content_length
    if length:
        for chunk in client.read_exact(length):
            upstream.sendall(chunk)


def _client_closed(client: socket.socket) -> bool:
    """Peek at the client: True if it hung up, False if it sent more data."""
    try:
        return not client.recv(1, socket.MSG_PEEK)
    except BlockingIOError:
        return False
    except OSError:
        return True


def wait_for_upstream(upstream: Connection, client: Connection,
                      timeout: float) -> None:
    """
    Block until the upstream has data, watching the client for a hang-up.

    Raises:
        ConnectionAbortedError: if the client disconnected first
        UpstreamError: if the upstream stays silent past ``timeout``
    """
    watched = [upstream.sock]
    # TLS sockets cannot be peeked; a vanished TLS client shows up on write
    if not isinstance(client.sock, ssl.SSLSocket) and not client.has_buffered():
        watched.append(client.sock)

    deadline = time.monotonic() + timeout
    while not upstream.has_buffered():
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise UpstreamError(f"no response within {timeout:.1f}s")
        readable, _, _ = select.select(watched, [], [], remaining)
        if upstream.sock in readable:
            return
        if client.sock in readable:
            if _client_closed(client.sock):
                raise ConnectionAbortedError("client disconnected")
            watched.remove(client.sock)


def read_response_head(upstream: Connection, client: Connection,
                       timeout: float) -> HTTPResponse:
    """Read the final response head, skipping interim 1xx responses except 101."""
    while True:
        wait_for_upstream(upstream, client, timeout)
        try:
            head = upstream.read_until(b'\r\n\r\n', MAX_RESPONSE_HEAD,
                                       time.monotonic() + timeout)
        except ValueError:
            raise UpstreamError("response head too large")
        except EOFError:
            raise UpstreamError("upstream closed mid-response")
        if head is None:
            raise UpstreamError("upstream closed without responding")
        response = HTTPResponse.from_head(head)
        if 100 <= response.status_code < 200 and response.status_code != 101:
            continue
        return response


def pipe(client: Connection, upstream: Connection) -> None:
    """
    Shuttle bytes both ways until either side closes.

    Each direction is written in the order it was read; end of stream or an
    error on one side ends both.
    """
    peers = {client.sock: (client, upstream),
             upstream.sock: (upstream, client)}
    for conn, other in peers.values():
        pending = conn.drain_buffer()
        if pending:
            other.write(pending)
        conn.sock.settimeout(None)

    while True:
        readable = [s for s, (conn, _) in peers.items() if conn.has_buffered()]
        if not readable:
            readable, _, _ = select.select(list(peers), [], [])
        for sock in readable:
            data = sock.recv(BUFFER_SIZE)
            if not data:
                return
            peers[sock][1].write(data)


def _has_body(request: HTTPRequest, response: HTTPResponse) -> bool:
    if request.method == 'HEAD':
        return False
    return not (100 <= response.status_code < 200 or response.status_code in (204, 304))


def relay_response(client: Connection, upstream: Connection,
                   request: HTTPRequest, response: HTTPResponse) -> None:
    """Send the response head to the client and stream the body after it."""
    response.headers = _strip_hop_by_hop(response.headers)
    response.headers.set('Connection', 'close')
    client.send_response(response)

    if not _has_body(request, response):
        return
    # chunked and sized bodies end without waiting for the upstream to close
    if response.headers.contains_token('Transfer-Encoding', 'chunked'):
        try:
            _copy_chunked(upstream, client.write)
        except ValueError as e:
            raise UpstreamError(f"malformed chunked response: {e}") from e
        return
    length = response.content_length
    if length is not None:
        for chunk in upstream.read_exact(length):
            client.write(chunk)
        return
    # close-delimited
    while True:
        chunk = upstream.read_some()
        if not chunk:
            return
        client.write(chunk)


def forward(client: Connection, request: HTTPRequest, route: UpstreamRoute,
            timeout: float, tls: bool = False,
            tracker: Optional['ConnectionTracker'] = None) -> int:
    """
    Forward a request to its upstream and stream the response back.

    Args:
        client: Client connection, positioned at the start of the body
        request: Parsed request head
        route: Upstream selected for the request
        timeout: Seconds allowed for connecting and for each upstream read
        tls: Whether the client connected over TLS
        tracker: Optional ConnectionTracker told about the upstream socket

    Returns:
        The HTTP status code sent to the client
    """
    try:
        sock = open_upstream(route, timeout)
    except UpstreamError as e:
        logger.error(f"Error forwarding {request.request_line} to {route.target}: {e}")
        return _bad_gateway(client)

    if tracker is not None:
        tracker.track(sock)
    upstream = Connection(sock)
    status = None
    try:
        try:
            sock.sendall(build_upstream_head(request, route, tls))
        except OSError as e:
            raise UpstreamError(f"cannot send request: {e}") from e

        if request.headers.contains_token('Expect', '100-continue') and \
                (request.is_chunked or request.content_length):
            client.sock.sendall(CONTINUE)
        _send_body(client, sock, request)

        response = read_response_head(upstream, client, timeout)
        sock.settimeout(timeout)
        status = response.status_code
        logger.debug(f"{route.target} answered {response.status_code} "
                     f"for {request.request_line}")

        if response.status_code == 101 and request.is_upgrade:
            client.send_response(response)
            pipe(client, upstream)
            return 101

        relay_response(client, upstream, request, response)
        return response.status_code

    except (UpstreamError, socket.timeout) as e:
        logger.error(f"Error forwarding {request.request_line} to {route.target}: {e}")
        if status is not None:
            # head already relayed; the client sees a truncated body
            return status
        return _bad_gateway(client)
    finally:
        if tracker is not None:
            tracker.untrack(sock)
        sock.close()


def _send_body(client: Connection, upstream: socket.socket,
               request: HTTPRequest) -> None:
    # Errors reading from the client propagate as-is; write errors are the upstream's
    try:
        copy_request_body(client, upstream, request)
    except (BrokenPipeError, ConnectionResetError) as e:
        raise UpstreamError(f"upstream closed while receiving body: {e}") from e


def _bad_gateway(client: Connection) -> int:
    try:
        client.send_response(HTTPResponse.create_error(502))
    except OSError as e:
        logger.debug(f"Could not deliver 502 to client: {e}")
    return 502
