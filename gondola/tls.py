import socket
import ssl
import logging

from .errors import TLSError

logger = logging.getLogger(__name__)


def create_server_context(cert_path: str, key_path: str) -> ssl.SSLContext:
    """
    Build the server-side TLS context from a certificate/key pair.

    Raises:
        TLSError: if the files cannot be read, are not valid PEM or do not match
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    try:
        context.load_cert_chain(cert_path, key_path)
    except (OSError, ssl.SSLError) as e:
        raise TLSError(f"cannot load certificate {cert_path} with key {key_path}: {e}") from e
    return context


def wrap(listener: socket.socket, cert_path: str, key_path: str) -> ssl.SSLSocket:
    """
    Wrap a bound listening socket for TLS termination.

    Handshakes are not run on accept; the connection handler performs them
    under its header-read deadline.
    """
    context = create_server_context(cert_path, key_path)
    logger.info(f"TLS enabled with certificate {cert_path}")
    return context.wrap_socket(listener, server_side=True,
                               do_handshake_on_connect=False)


def handshake(conn: socket.socket, timeout: float) -> None:
    """Complete a deferred server-side handshake within ``timeout`` seconds."""
    if isinstance(conn, ssl.SSLSocket):
        conn.settimeout(timeout)
        conn.do_handshake()
