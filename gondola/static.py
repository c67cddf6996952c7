import os
import gzip
import shutil
import logging
import mimetypes
from datetime import timezone
from email.utils import formatdate, parsedate_to_datetime
from typing import BinaryIO, Optional, Tuple
from urllib.parse import unquote

from .connection import BUFFER_SIZE, Connection
from .errors import FileSystemError
from .models import Headers, HTTPRequest, HTTPResponse

logger = logging.getLogger(__name__)

INDEX_FILE = 'index.html'
CACHE_CONTROL = 'max-age=31536000'
COMPRESSIBLE_TYPES = ('application/javascript', 'application/json',
                      'application/xml', 'image/svg+xml')


def resolve_path(directory: str, relative_path: str) -> str:
    """
    Map a request path onto a file inside ``directory``.

    Args:
        directory: Root directory of the static mapping
        relative_path: Request path with the mapping prefix removed

    Returns:
        Real path of the file to serve

    Raises:
        FileSystemError: 400 for NUL bytes, 403 when the resolved path
            leaves ``directory``, 404 when nothing is there
    """
    decoded = unquote(relative_path)
    if '\x00' in decoded:
        raise FileSystemError("invalid character in path", 400)

    root = os.path.realpath(directory)
    candidate = os.path.realpath(os.path.join(root, decoded.lstrip('/')))
    if os.path.commonpath([root, candidate]) != root:
        raise FileSystemError(f"{relative_path} resolves outside {directory}", 403)

    if os.path.isdir(candidate):
        candidate = os.path.join(candidate, INDEX_FILE)
    if not os.path.isfile(candidate):
        raise FileSystemError(f"{relative_path} not found in {directory}", 404)
    return candidate


def _content_type(path: str) -> str:
    file_type, encoding = mimetypes.guess_type(path)
    if file_type is None or encoding is not None:
        return 'application/octet-stream'
    if file_type.startswith('text/') or file_type in ('application/javascript', 'application/json'):
        return f"{file_type}; charset=utf-8"
    return file_type


def _compressible(content_type: str) -> bool:
    media_type = content_type.split(';', 1)[0].strip()
    return media_type.startswith('text/') or media_type in COMPRESSIBLE_TYPES


def open_static(directory: str, relative_path: str) -> Tuple[BinaryIO, HTTPResponse]:
    """Open the file behind a static request and build its response head."""
    path = resolve_path(directory, relative_path)
    try:
        f = open(path, 'rb')
    except FileNotFoundError:
        raise FileSystemError(f"{path} not found", 404)
    except PermissionError:
        raise FileSystemError(f"{path} is not readable", 403)
    except OSError as e:
        raise FileSystemError(f"cannot open {path}: {e}", 404)

    stat = os.fstat(f.fileno())
    content_type = _content_type(path)
    headers = Headers([
        ('Content-Type', content_type),
        ('Content-Length', str(stat.st_size)),
        ('Last-Modified', formatdate(stat.st_mtime, usegmt=True)),
        ('ETag', f'"{int(stat.st_mtime):x}-{stat.st_size:x}"'),
        ('Cache-Control', CACHE_CONTROL),
        ('Accept-Ranges', 'bytes'),
        ('X-Content-Type-Options', 'nosniff'),
        ('Connection', 'close'),
    ])
    if _compressible(content_type):
        headers.set('Vary', 'Accept-Encoding')
    return f, HTTPResponse(200, 'OK', headers)


def _parse_http_date(value: str):
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_not_modified(request: HTTPRequest, response: HTTPResponse) -> bool:
    """
    Evaluate the request's validators against the file's.

    If-None-Match takes precedence; If-Modified-Since is only consulted
    when it is absent.
    """
    if_none_match = request.headers.get('If-None-Match')
    if if_none_match is not None:
        etag = response.headers.get('ETag')
        tags = [tag.strip() for tag in if_none_match.split(',')]
        return '*' in tags or etag in tags or f'W/{etag}' in tags

    if_modified_since = request.headers.get('If-Modified-Since')
    if if_modified_since is None:
        return False
    since = _parse_http_date(if_modified_since)
    if since is None:
        return False
    return _parse_http_date(response.headers.get('Last-Modified')) <= since


def parse_range(value: str, size: int) -> Optional[Tuple[int, int]]:
    """
    Parse a single ``bytes=`` range into an inclusive (start, end) pair.

    Returns None for headers that are ignored: other units, multiple ranges
    and syntax errors all fall back to the full file.

    Raises:
        FileSystemError: 416 when the range lies outside the file
    """
    unit, _, ranges = value.partition('=')
    if unit.strip().lower() != 'bytes' or ',' in ranges:
        return None
    first, sep, last = ranges.strip().partition('-')
    if not sep:
        return None
    try:
        if not first:
            suffix = int(last)
            start, end = max(size - suffix, 0), size - 1
            if suffix <= 0:
                start = size
        else:
            start = int(first)
            end = int(last) if last else size - 1
    except ValueError:
        return None
    if start < 0 or start >= size or end < start:
        raise FileSystemError(f"range {value!r} not satisfiable for {size} bytes", 416)
    return start, min(end, size - 1)


def _if_range_matches(request: HTTPRequest, response: HTTPResponse) -> bool:
    if_range = request.headers.get('If-Range')
    if if_range is None:
        return True
    return if_range.strip() in (response.headers.get('ETag'),
                                response.headers.get('Last-Modified'))


def _accepts_gzip(request: HTTPRequest) -> bool:
    for value in request.headers.get_all('Accept-Encoding'):
        for coding in value.split(','):
            name, _, params = coding.partition(';')
            if name.strip().lower() != 'gzip':
                continue
            quality = params.replace(' ', '').lower()
            if quality.startswith('q='):
                try:
                    return float(quality[2:]) > 0
                except ValueError:
                    return False
            return True
    return False


def _not_modified_response(response: HTTPResponse) -> HTTPResponse:
    headers = Headers()
    for name in ('ETag', 'Last-Modified', 'Cache-Control', 'Vary'):
        value = response.headers.get(name)
        if value is not None:
            headers.set(name, value)
    headers.set('Connection', 'close')
    return HTTPResponse(304, 'Not Modified', headers)


def _send_file(client: Connection, request: HTTPRequest, f: BinaryIO,
               response: HTTPResponse) -> int:
    if is_not_modified(request, response):
        client.send_response(_not_modified_response(response))
        return 304

    size = response.content_length
    range_header = request.headers.get('Range')
    byte_range = None
    if range_header and _if_range_matches(request, response):
        try:
            byte_range = parse_range(range_header, size)
        except FileSystemError as e:
            logger.debug(f"Static request {request.path}: {e}")
            error = HTTPResponse.create_error(
                e.status_code, extra_headers=[('Content-Range', f'bytes */{size}')])
            client.send_response(error)
            return error.status_code

    if byte_range is not None:
        start, end = byte_range
        response.status_code, response.status_message = 206, 'Partial Content'
        response.headers.set('Content-Range', f'bytes {start}-{end}/{size}')
        response.headers.set('Content-Length', str(end - start + 1))
        client.send_response(response)
        if request.method == 'GET':
            client.sendfile(f, start, end - start + 1)
        return response.status_code

    if _compressible(response.headers.get('Content-Type')) and _accepts_gzip(request):
        # compressed length is unknown up front; the closing connection ends the body
        response.headers.remove('Content-Length')
        response.headers.set('Content-Encoding', 'gzip')
        client.send_response(response)
        if request.method == 'GET':
            with gzip.GzipFile(fileobj=client, mode='wb', mtime=0) as compressed:
                shutil.copyfileobj(f, compressed, BUFFER_SIZE)
        return response.status_code

    client.send_response(response)
    if request.method == 'GET':
        client.sendfile(f)
    return response.status_code


def serve_static(client: Connection, request: HTTPRequest,
                 directory: str, relative_path: str) -> int:
    """
    Serve a file from a static mapping.

    Conditional requests are answered with 304, single byte ranges with
    206, and compressible types are gzipped for clients that accept it.

    Returns:
        The HTTP status code sent to the client
    """
    if request.method not in ('GET', 'HEAD'):
        response = HTTPResponse.create_error(
            405, extra_headers=[('Allow', 'GET, HEAD')])
        client.send_response(response)
        return response.status_code

    try:
        f, response = open_static(directory, relative_path)
    except FileSystemError as e:
        logger.debug(f"Static request {request.path} rejected: {e}")
        response = HTTPResponse.create_error(e.status_code)
        client.send_response(response)
        return response.status_code

    with f:
        return _send_file(client, request, f, response)
