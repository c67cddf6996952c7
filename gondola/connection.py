import socket
import ssl
import time
from typing import BinaryIO, Iterator, Optional

from .models import HTTPResponse

BUFFER_SIZE = 65536


class Connection:
    """Buffered reader over a blocking socket, shared by client and upstream sides."""

    def __init__(self, sock: socket.socket):
        self.sock = sock
        self._buffer = bytearray()
        # body bytes written through this connection; heads are not counted
        self.bytes_written = 0

    def _recv(self, deadline: Optional[float] = None) -> bytes:
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise socket.timeout("deadline exceeded")
            self.sock.settimeout(remaining)
        return self.sock.recv(BUFFER_SIZE)

    def read_until(self, delimiter: bytes, limit: int,
                   deadline: Optional[float] = None) -> Optional[bytes]:
        """
        Read up to and including ``delimiter``.

        Args:
            delimiter: Byte sequence ending the block
            limit: Maximum size of the block, delimiter included
            deadline: ``time.monotonic()`` value bounding the whole read

        Returns:
            The block, or None if the peer closed before sending anything

        Raises:
            ValueError: if the block exceeds ``limit``
            EOFError: if the peer closed in the middle of the block
            socket.timeout: if the deadline passes first
        """
        start = 0
        while True:
            index = self._buffer.find(delimiter, start)
            if index != -1:
                end = index + len(delimiter)
                if end > limit:
                    raise ValueError("block exceeds limit")
                block = bytes(self._buffer[:end])
                del self._buffer[:end]
                return block
            if len(self._buffer) > limit:
                raise ValueError("block exceeds limit")
            start = max(0, len(self._buffer) - len(delimiter) + 1)

            chunk = self._recv(deadline)
            if not chunk:
                if self._buffer:
                    raise EOFError("connection closed mid-message")
                return None
            self._buffer.extend(chunk)

    def readline(self, limit: int = 8192) -> bytes:
        line = self.read_until(b'\r\n', limit)
        if line is None:
            raise EOFError("connection closed")
        return line

    def read_some(self, size: int = BUFFER_SIZE) -> bytes:
        """Return buffered bytes if any, otherwise a single recv."""
        if self._buffer:
            data = bytes(self._buffer[:size])
            del self._buffer[:size]
            return data
        return self.sock.recv(size)

    def read_exact(self, size: int) -> Iterator[bytes]:
        """Yield chunks totalling exactly ``size`` bytes."""
        while size > 0:
            chunk = self.read_some(min(size, BUFFER_SIZE))
            if not chunk:
                raise EOFError(f"connection closed with {size} bytes outstanding")
            size -= len(chunk)
            yield chunk

    def drain_buffer(self) -> bytes:
        data = bytes(self._buffer)
        self._buffer.clear()
        return data

    def has_buffered(self) -> bool:
        """True if data is waiting in this buffer or inside the TLS layer."""
        if self._buffer:
            return True
        return isinstance(self.sock, ssl.SSLSocket) and self.sock.pending() > 0

    def write(self, data: bytes) -> None:
        self.sock.sendall(data)
        self.bytes_written += len(data)

    def send_response(self, response: HTTPResponse) -> None:
        """Send a response head together with its in-memory body."""
        self.sock.sendall(response.to_bytes())
        self.bytes_written += len(response.body)

    def sendfile(self, f: BinaryIO, offset: int = 0, count: Optional[int] = None) -> None:
        self.bytes_written += self.sock.sendfile(f, offset, count)
