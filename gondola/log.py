import logging
import time
from typing import Optional

from .models import HTTPRequest

LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'

access_logger = logging.getLogger('gondola.access')


def setup_logging(level: int = logging.INFO, access_log: Optional[str] = None) -> None:
    """Configure root logging once, plus an optional access-log file."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)
    if access_log:
        handler = logging.FileHandler(access_log)
        handler.setFormatter(logging.Formatter('%(message)s'))
        access_logger.addHandler(handler)
        # access lines are always written to the file
        access_logger.setLevel(logging.INFO)


def _clean(value: str) -> str:
    return value.replace('\n', '\\n').replace('\r', '\\r').replace('\t', '\\t').replace('"', '\\"')


def client_ip(request: HTTPRequest) -> str:
    """The originating client: CF-Connecting-IP, then X-Forwarded-For, then the peer."""
    connecting_ip = request.headers.get('CF-Connecting-IP', '').strip()
    if connecting_ip:
        return connecting_ip
    forwarded_for = request.headers.get('X-Forwarded-For', '').split(',')[0].strip()
    if forwarded_for:
        return forwarded_for
    return request.client_address[0] if request.client_address else '-'


def log_access(request: HTTPRequest, status: int, body_bytes: int, duration: float) -> None:
    """
    Write one nginx-style access-log line prefixed with the virtual host.

    Args:
        request: The request being answered
        status: Status code sent to the client
        body_bytes: Response body bytes sent to the client
        duration: Seconds spent on the request
    """
    timestamp = time.strftime('%d/%b/%Y:%H:%M:%S +0000', time.gmtime())
    access_logger.info(
        f'{_clean(request.host) or "-"} {_clean(client_ip(request))} - - [{timestamp}] '
        f'"{_clean(request.request_line)}" {status} {body_bytes} '
        f'"{_clean(request.headers.get("Referer", ""))}" '
        f'"{_clean(request.headers.get("User-Agent", ""))}" {duration:.3f}'
    )
