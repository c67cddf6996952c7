"""
Request routing.

A request is served from a static mapping when its path falls under one,
otherwise it is forwarded to the first upstream whose host name matches the
Host header. Anything else is a 404.
"""
from dataclasses import dataclass
from typing import Optional, Union

from .config import ProxyConfig, StaticMapping, UpstreamRoute
from .models import HTTPRequest


@dataclass(frozen=True)
class Static:
    directory: str
    stripped_path: str
    mapping: StaticMapping


@dataclass(frozen=True)
class Upstream:
    route: UpstreamRoute


@dataclass(frozen=True)
class NotFound:
    pass


RouteDecision = Union[Static, Upstream, NotFound]


def split_host(host: str) -> str:
    """Drop a trailing :port from a Host header value, keeping IPv6 brackets."""
    host = host.strip().lower()
    if host.startswith('['):
        end = host.find(']')
        return host[:end + 1] if end != -1 else host
    name, sep, port = host.rpartition(':')
    if sep and port.isdigit():
        return name
    return host


def match_static(config: ProxyConfig, path: str) -> Optional[StaticMapping]:
    """Longest static prefix containing ``path``, if any."""
    best = None
    for mapping in config.static_files:
        if path.startswith(mapping.path_prefix):
            if best is None or len(mapping.path_prefix) > len(best.path_prefix):
                best = mapping
    return best


def match_host(config: ProxyConfig, host: str) -> Optional[UpstreamRoute]:
    """First registered upstream for ``host``, compared case-insensitively."""
    if not host:
        return None
    full = host.strip().lower()
    bare = split_host(host)
    for route in config.upstreams:
        name = route.host_name.lower()
        if name == full or name == bare:
            return route
    return None


def route(config: ProxyConfig, request: HTTPRequest) -> RouteDecision:
    mapping = match_static(config, request.path)
    if mapping is not None:
        stripped = request.path[len(mapping.path_prefix):]
        return Static(mapping.directory, stripped, mapping)

    upstream = match_host(config, request.host)
    if upstream is not None:
        return Upstream(upstream)

    return NotFound()
