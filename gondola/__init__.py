"""
A lightweight YAML-configured reverse proxy.
"""

__version__ = '1.0.0'

from .config import ProxyConfig, StaticMapping, UpstreamRoute, load_config
from .errors import (BindError, ClientError, ConfigError, ConfigErrorKind,
                     FileSystemError, TLSError, UpstreamError)
from .handler import RequestHandler
from .models import Headers, HTTPRequest, HTTPResponse
from .server import ProxyServer, ServerState

__all__ = [
    'ProxyServer', 'ServerState', 'RequestHandler', 'HTTPRequest', 'HTTPResponse',
    'Headers', 'ProxyConfig', 'StaticMapping', 'UpstreamRoute', 'load_config',
    'ConfigError', 'ConfigErrorKind', 'BindError', 'TLSError', 'ClientError',
    'UpstreamError', 'FileSystemError',
]
