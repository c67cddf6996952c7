from typing import Iterator, List, Optional, Tuple
from dataclasses import dataclass, field
from http import HTTPStatus

from .errors import ClientError, UpstreamError

# Headers that describe a single hop and are never forwarded as-is
HOP_BY_HOP = frozenset({
    'connection', 'keep-alive', 'proxy-authenticate', 'proxy-authorization',
    'proxy-connection', 'te', 'trailer', 'upgrade',
})


class Headers:
    """Ordered, case-insensitive HTTP header list allowing repeated names."""

    def __init__(self, items: Optional[List[Tuple[str, str]]] = None):
        self._items: List[Tuple[str, str]] = list(items or [])

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        name = name.lower()
        for key, value in self._items:
            if key.lower() == name:
                return value
        return default

    def get_all(self, name: str) -> List[str]:
        name = name.lower()
        return [value for key, value in self._items if key.lower() == name]

    def add(self, name: str, value: str) -> None:
        self._items.append((name, value))

    def set(self, name: str, value: str) -> None:
        """Replace every value of ``name`` with a single one."""
        self.remove(name)
        self._items.append((name, value))

    def remove(self, name: str) -> None:
        name = name.lower()
        self._items = [(k, v) for k, v in self._items if k.lower() != name]

    def contains_token(self, name: str, token: str) -> bool:
        """Check a comma-separated header such as Connection for a token."""
        token = token.lower()
        for value in self.get_all(name):
            if token in (part.strip().lower() for part in value.split(',')):
                return True
        return False

    def copy(self) -> 'Headers':
        return Headers(self._items)

    def items(self) -> Iterator[Tuple[str, str]]:
        return iter(list(self._items))

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    def __len__(self) -> int:
        return len(self._items)

    def to_lines(self) -> str:
        return ''.join(f"{k}: {v}\r\n" for k, v in self._items)


def _parse_header_lines(lines: List[str]) -> Headers:
    headers = Headers()
    for line in lines:
        if not line:
            continue
        if line[0] in ' \t':
            raise ValueError("obsolete header line folding")
        key, sep, value = line.partition(':')
        if not sep or not key or key != key.strip():
            raise ValueError(f"malformed header line {line!r}")
        headers.add(key, value.strip())
    return headers


def _split_head(head: bytes) -> List[str]:
    text = head.decode('latin-1')
    if text.endswith('\r\n\r\n'):
        text = text[:-4]
    return text.split('\r\n')


@dataclass
class HTTPRequest:
    """Model representing an HTTP request head."""
    method: str
    target: str
    protocol: str
    headers: Headers
    client_address: Optional[Tuple[str, int]] = None

    @classmethod
    def from_head(cls, head: bytes) -> 'HTTPRequest':
        """
        Create an HTTPRequest from a raw header block.

        Args:
            head: Request line and headers, up to and including the blank line

        Raises:
            ClientError: if the request line or headers are malformed
        """
        lines = _split_head(head)
        try:
            method, target, protocol = lines[0].split(' ')
        except ValueError:
            raise ClientError(f"malformed request line {lines[0]!r}")
        if not method.isalpha() or not protocol.startswith('HTTP/1.'):
            raise ClientError(f"malformed request line {lines[0]!r}")
        if not target.startswith('/'):
            raise ClientError(f"unsupported request target {target!r}")

        try:
            headers = _parse_header_lines(lines[1:])
        except ValueError as e:
            raise ClientError(str(e))

        request = cls(method=method.upper(), target=target, protocol=protocol,
                      headers=headers)
        if request.content_length is not None and request.is_chunked:
            raise ClientError("both Content-Length and chunked encoding present")
        return request

    @property
    def host(self) -> str:
        return self.headers.get('Host', '')

    @property
    def path(self) -> str:
        """Request path without the query string."""
        return self.target.split('?', 1)[0]

    @property
    def is_upgrade(self) -> bool:
        return 'Upgrade' in self.headers

    @property
    def is_chunked(self) -> bool:
        return self.headers.contains_token('Transfer-Encoding', 'chunked')

    @property
    def content_length(self) -> Optional[int]:
        value = self.headers.get('Content-Length')
        if value is None:
            return None
        if not value.isdigit():
            raise ClientError(f"invalid Content-Length {value!r}")
        return int(value)

    @property
    def request_line(self) -> str:
        return f"{self.method} {self.target} {self.protocol}"


@dataclass
class HTTPResponse:
    """Model representing an HTTP response head."""
    status_code: int
    status_message: str
    headers: Headers = field(default_factory=Headers)
    body: bytes = b''
    protocol: str = 'HTTP/1.1'

    @classmethod
    def from_head(cls, head: bytes) -> 'HTTPResponse':
        """
        Create an HTTPResponse from the upstream's raw header block.

        Raises:
            UpstreamError: if the status line or headers are malformed
        """
        lines = _split_head(head)
        protocol, _, rest = lines[0].partition(' ')
        status_code, _, status_message = rest.partition(' ')
        if not protocol.startswith('HTTP/') or len(status_code) != 3 \
                or not status_code.isdigit():
            raise UpstreamError(f"malformed status line {lines[0]!r}")

        try:
            headers = _parse_header_lines(lines[1:])
        except ValueError as e:
            raise UpstreamError(str(e))

        return cls(
            status_code=int(status_code),
            status_message=status_message,
            headers=headers,
            protocol=protocol,
        )

    @property
    def content_length(self) -> Optional[int]:
        value = self.headers.get('Content-Length')
        if value is None or not value.strip().isdigit():
            return None
        return int(value)

    def to_bytes(self) -> bytes:
        """Serialize the status line, headers and any in-memory body."""
        head = (
            f"HTTP/1.1 {self.status_code} {self.status_message}\r\n"
            f"{self.headers.to_lines()}"
            "\r\n"
        )
        return head.encode('latin-1') + self.body

    @classmethod
    def create_error(cls, status_code: int, message: Optional[str] = None,
                     extra_headers: Optional[List[Tuple[str, str]]] = None) -> 'HTTPResponse':
        """Create a plain-text error response."""
        reason = HTTPStatus(status_code).phrase
        body = (message or reason).encode('utf-8')
        headers = Headers([
            ('Content-Type', 'text/plain; charset=utf-8'),
            ('Content-Length', str(len(body))),
            ('Connection', 'close'),
        ] + list(extra_headers or []))
        return cls(status_code=status_code, status_message=reason,
                   headers=headers, body=body)
