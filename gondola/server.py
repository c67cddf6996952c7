import socket
import select
import threading
import time
import logging
from enum import Enum
from typing import Optional, Set

from . import tls
from .config import ProxyConfig
from .errors import BindError
from .handler import RequestHandler

logger = logging.getLogger(__name__)

ACCEPT_POLL_INTERVAL = 0.5


class ServerState(Enum):
    STARTING = "starting"
    LISTENING = "listening"
    DRAINING = "draining"
    STOPPED = "stopped"


class ConnectionTracker:
    """Keeps the live client and upstream sockets so shutdown can reach them."""

    def __init__(self):
        self._sockets: Set[socket.socket] = set()
        self._handlers = 0
        self._cond = threading.Condition()

    def connection_started(self, client_socket: socket.socket) -> None:
        with self._cond:
            self._handlers += 1
            self._sockets.add(client_socket)

    def connection_finished(self) -> None:
        with self._cond:
            self._handlers -= 1
            self._cond.notify_all()

    def track(self, sock: socket.socket) -> None:
        with self._cond:
            self._sockets.add(sock)

    def untrack(self, sock: socket.socket) -> None:
        with self._cond:
            self._sockets.discard(sock)

    @property
    def active(self) -> int:
        with self._cond:
            return self._handlers

    def wait_idle(self, timeout: float) -> bool:
        """Wait for every handler to finish; False if ``timeout`` ran out."""
        with self._cond:
            return self._cond.wait_for(lambda: self._handlers == 0, timeout)

    def close_all(self) -> int:
        """Shut down every tracked socket, waking any thread blocked on it."""
        with self._cond:
            sockets = list(self._sockets)
        for sock in sockets:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass  # already closed by its handler
        return len(sockets)


class ProxyServer:
    """Listener, accept loop and graceful shutdown for the reverse proxy."""

    def __init__(self, config: ProxyConfig):
        """
        Initialize the proxy server.

        Args:
            config: Validated proxy configuration
        """
        self._config = config
        self._tracker = ConnectionTracker()
        self._handler = RequestHandler(config, self._tracker)
        self._server_socket: Optional[socket.socket] = None
        self._state = ServerState.STARTING
        self._state_lock = threading.Lock()
        self._listening = threading.Event()
        self._stopped = threading.Event()
        self._drained = True

    @property
    def config(self) -> ProxyConfig:
        return self._config

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def host(self) -> str:
        return self._config.host

    @property
    def port(self) -> int:
        """The bound port once listening, otherwise the configured one."""
        if self._server_socket is not None and self._state == ServerState.LISTENING:
            return self._server_socket.getsockname()[1]
        return self._config.port

    @property
    def active_connections(self) -> int:
        return self._tracker.active

    def _set_state(self, state: ServerState) -> None:
        logger.debug(f"Server state {self._state.value} -> {state.value}")
        self._state = state

    def bind(self) -> None:
        """
        Bind and listen, wrapping the socket for TLS when configured.

        Raises:
            BindError: if the address cannot be bound
            TLSError: if the certificate/key pair is unusable
        """
        server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            server_socket.bind((self._config.host, self._config.port))
            server_socket.listen(128)
        except OSError as e:
            server_socket.close()
            raise BindError(f"cannot listen on {self._config.host}:{self._config.port}: {e}") from e

        if self._config.tls_enabled:
            try:
                server_socket = tls.wrap(server_socket, self._config.tls_cert_path,
                                         self._config.tls_key_path)
            except Exception:
                server_socket.close()
                raise

        self._server_socket = server_socket
        with self._state_lock:
            self._set_state(ServerState.LISTENING)
        self._listening.set()
        scheme = "https" if self._config.tls_enabled else "http"
        logger.info(f"Reverse proxy listening on {scheme}://{self._config.host}:{self.port}")

    def wait_until_listening(self, timeout: Optional[float] = None) -> bool:
        return self._listening.wait(timeout)

    def serve_forever(self) -> None:
        """Accept connections until shutdown, one thread per connection."""
        server_socket = self._server_socket
        if server_socket is None:
            raise RuntimeError("bind() must be called before serve_forever()")

        while self._state == ServerState.LISTENING:
            try:
                readable, _, _ = select.select([server_socket], [], [], ACCEPT_POLL_INTERVAL)
                if not readable:
                    continue
                client_socket, client_address = server_socket.accept()
            except (OSError, ValueError) as e:
                if self._state == ServerState.LISTENING:
                    logger.error(f"Server error: {e}")
                    continue
                break

            with self._state_lock:
                if self._state != ServerState.LISTENING:
                    client_socket.close()
                    break
                self._tracker.connection_started(client_socket)

            # Handle each client in a separate thread
            thread = threading.Thread(
                target=self._run_handler,
                args=(client_socket, client_address),
                name=f"conn-{client_address[0]}:{client_address[1]}",
            )
            thread.daemon = True
            thread.start()

    def _run_handler(self, client_socket, client_address) -> None:
        try:
            self._handler.handle_client(client_socket, client_address)
        finally:
            self._tracker.connection_finished()

    def start(self) -> None:
        """Bind and serve until shutdown."""
        self.bind()
        self.serve_forever()

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        """
        Stop accepting, drain in-flight connections, then force the rest closed.

        Args:
            timeout: Drain deadline in seconds, defaulting to shutdown_timeout

        Returns:
            True if every connection finished before the deadline
        """
        with self._state_lock:
            already_stopping = self._state in (ServerState.DRAINING, ServerState.STOPPED)
            if not already_stopping:
                self._set_state(ServerState.DRAINING)
        if already_stopping:
            # the first caller owns the drain; report its outcome
            self._stopped.wait()
            return self._drained

        if timeout is None:
            timeout = self._config.shutdown_timeout
        if self._server_socket is not None:
            self._server_socket.close()

        logger.info(f"Draining {self._tracker.active} connection(s), "
                    f"waiting up to {timeout:.1f}s")
        started = time.monotonic()
        drained = self._tracker.wait_idle(timeout)
        if not drained:
            closed = self._tracker.close_all()
            logger.warning(f"Drain deadline reached, forcibly closed {closed} socket(s)")
            # give the handlers a moment to unwind from their broken sockets
            self._tracker.wait_idle(1.0)
        else:
            logger.info(f"Drained in {time.monotonic() - started:.2f}s")

        self._drained = drained
        with self._state_lock:
            self._set_state(ServerState.STOPPED)
        self._stopped.set()
        logger.info("Reverse proxy stopped")
        return drained
