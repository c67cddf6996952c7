import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import yaml

from .errors import ConfigError, ConfigErrorKind

logger = logging.getLogger(__name__)

DEFAULT_HOST = "0.0.0.0"
DEFAULT_READ_HEADER_TIMEOUT_MS = 2000
DEFAULT_SHUTDOWN_TIMEOUT_MS = 3000
DEFAULT_UPSTREAM_TIMEOUT_MS = 30000

# Debug:-4 Info:0 Warn:4 Error:8
_LOG_LEVELS = (
    (-4, logging.DEBUG),
    (0, logging.INFO),
    (4, logging.WARNING),
)


@dataclass(frozen=True)
class StaticMapping:
    """A path prefix served straight from a local directory."""
    path_prefix: str
    directory: str


@dataclass(frozen=True)
class UpstreamRoute:
    """A virtual host forwarded to one upstream target."""
    host_name: str
    target: str

    @property
    def scheme(self) -> str:
        return urlparse(self.target).scheme.lower()

    @property
    def hostname(self) -> str:
        return urlparse(self.target).hostname

    @property
    def port(self) -> int:
        port = urlparse(self.target).port
        if port:
            return port
        return 443 if self.scheme == "https" else 80

    @property
    def netloc(self) -> str:
        """Host header value the upstream expects."""
        return urlparse(self.target).netloc


@dataclass(frozen=True)
class ProxyConfig:
    """Immutable configuration snapshot shared by every connection."""
    port: int
    read_header_timeout_ms: int = DEFAULT_READ_HEADER_TIMEOUT_MS
    shutdown_timeout_ms: int = DEFAULT_SHUTDOWN_TIMEOUT_MS
    tls_cert_path: Optional[str] = None
    tls_key_path: Optional[str] = None
    static_files: Tuple[StaticMapping, ...] = field(default_factory=tuple)
    upstreams: Tuple[UpstreamRoute, ...] = field(default_factory=tuple)
    log_level: int = 0
    host: str = DEFAULT_HOST
    upstream_timeout_ms: int = DEFAULT_UPSTREAM_TIMEOUT_MS
    access_log: Optional[str] = None

    @property
    def tls_enabled(self) -> bool:
        return bool(self.tls_cert_path and self.tls_key_path)

    @property
    def read_header_timeout(self) -> float:
        return self.read_header_timeout_ms / 1000.0

    @property
    def shutdown_timeout(self) -> float:
        return self.shutdown_timeout_ms / 1000.0

    @property
    def upstream_timeout(self) -> float:
        return self.upstream_timeout_ms / 1000.0

    def python_log_level(self) -> int:
        """Map the configured level onto a :mod:`logging` level."""
        for threshold, level in _LOG_LEVELS:
            if self.log_level <= threshold:
                return level
        return logging.ERROR


def load_config(path: str) -> ProxyConfig:
    """
    Load and validate a YAML configuration file.

    Args:
        path: Path to the YAML configuration file

    Returns:
        The validated configuration

    Raises:
        ConfigError: if the file is missing, malformed or fails validation
    """
    if not os.path.isfile(path):
        raise ConfigError(ConfigErrorKind.FILE_NOT_FOUND,
                          f"config file {path} does not exist")

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(ConfigErrorKind.INVALID_VALUE,
                          f"cannot parse {path}: {e}") from e
    except OSError as e:
        raise ConfigError(ConfigErrorKind.FILE_NOT_FOUND,
                          f"cannot read {path}: {e}") from e

    config = parse_config(raw)
    logger.debug(f"Loaded configuration from {path}: {config}")
    return config


def parse_config(raw: Any) -> ProxyConfig:
    """Build a ProxyConfig from an already-parsed YAML document."""
    if not isinstance(raw, dict):
        raise ConfigError(ConfigErrorKind.INVALID_VALUE,
                          "configuration must be a mapping")

    proxy = raw.get("proxy")
    if proxy is None:
        raise ConfigError(ConfigErrorKind.MISSING_FIELD, "proxy")
    if not isinstance(proxy, dict):
        raise ConfigError(ConfigErrorKind.INVALID_VALUE,
                          "proxy must be a mapping")

    if "port" not in proxy:
        raise ConfigError(ConfigErrorKind.MISSING_FIELD, "proxy.port")
    port = _integer(proxy["port"], "proxy.port")
    if not 1 <= port <= 65535:
        raise ConfigError(ConfigErrorKind.INVALID_VALUE,
                          f"proxy.port must be between 1 and 65535, got {port}")

    read_header_timeout = _integer(
        proxy.get("read_header_timeout", DEFAULT_READ_HEADER_TIMEOUT_MS),
        "proxy.read_header_timeout", minimum=1)
    shutdown_timeout = _integer(
        proxy.get("shutdown_timeout", DEFAULT_SHUTDOWN_TIMEOUT_MS),
        "proxy.shutdown_timeout", minimum=0)
    upstream_timeout = _integer(
        proxy.get("upstream_timeout", DEFAULT_UPSTREAM_TIMEOUT_MS),
        "proxy.upstream_timeout", minimum=1)

    cert_path, key_path = _tls_paths(proxy)

    host = proxy.get("host", DEFAULT_HOST)
    if not isinstance(host, str) or not host:
        raise ConfigError(ConfigErrorKind.INVALID_VALUE,
                          "proxy.host must be a non-empty string")

    access_log = proxy.get("access_log")
    if access_log is not None and not isinstance(access_log, str):
        raise ConfigError(ConfigErrorKind.INVALID_VALUE,
                          "proxy.access_log must be a string")

    log_level = _integer(raw.get("log_level", 0), "log_level")

    return ProxyConfig(
        port=port,
        read_header_timeout_ms=read_header_timeout,
        shutdown_timeout_ms=shutdown_timeout,
        tls_cert_path=cert_path,
        tls_key_path=key_path,
        static_files=tuple(_static_files(proxy.get("static_files") or [])),
        upstreams=tuple(_upstreams(raw.get("upstreams") or [])),
        log_level=log_level,
        host=host,
        upstream_timeout_ms=upstream_timeout,
        access_log=access_log,
    )


def _integer(value: Any, name: str, minimum: Optional[int] = None) -> int:
    # bool is an int subclass; "port: yes" is not a port
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(ConfigErrorKind.INVALID_VALUE,
                          f"{name} must be an integer, got {value!r}")
    if minimum is not None and value < minimum:
        raise ConfigError(ConfigErrorKind.INVALID_VALUE,
                          f"{name} must be at least {minimum}, got {value}")
    return value


def _readable_file(path: Any, name: str) -> str:
    if not isinstance(path, str) or not path:
        raise ConfigError(ConfigErrorKind.INVALID_VALUE,
                          f"{name} must be a path")
    if not os.path.isfile(path) or not os.access(path, os.R_OK):
        raise ConfigError(ConfigErrorKind.FILE_NOT_FOUND,
                          f"{name} {path} is not a readable file")
    return path


def _tls_paths(proxy: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    cert_path = proxy.get("tls_cert_path")
    key_path = proxy.get("tls_key_path")
    if cert_path is None and key_path is None:
        return None, None
    if cert_path is None:
        raise ConfigError(ConfigErrorKind.MISSING_FIELD,
                          "proxy.tls_cert_path is required with proxy.tls_key_path")
    if key_path is None:
        raise ConfigError(ConfigErrorKind.MISSING_FIELD,
                          "proxy.tls_key_path is required with proxy.tls_cert_path")
    return (_readable_file(cert_path, "proxy.tls_cert_path"),
            _readable_file(key_path, "proxy.tls_key_path"))


def _static_files(entries: Any) -> List[StaticMapping]:
    if not isinstance(entries, list):
        raise ConfigError(ConfigErrorKind.INVALID_VALUE,
                          "proxy.static_files must be a list")

    mappings = []
    seen = set()
    for index, entry in enumerate(entries):
        name = f"proxy.static_files[{index}]"
        if not isinstance(entry, dict):
            raise ConfigError(ConfigErrorKind.INVALID_VALUE,
                              f"{name} must be a mapping")
        for key in ("path", "dir"):
            if key not in entry:
                raise ConfigError(ConfigErrorKind.MISSING_FIELD, f"{name}.{key}")

        prefix = entry["path"]
        if not isinstance(prefix, str) or not prefix.startswith("/"):
            raise ConfigError(ConfigErrorKind.INVALID_VALUE,
                              f"{name}.path must begin with '/', got {prefix!r}")
        if prefix in seen:
            raise ConfigError(ConfigErrorKind.INVALID_VALUE,
                              f"{name}.path {prefix} is already mapped")
        seen.add(prefix)

        directory = entry["dir"]
        if not isinstance(directory, str) or not os.path.isdir(directory):
            raise ConfigError(ConfigErrorKind.FILE_NOT_FOUND,
                              f"{name}.dir {directory!r} is not a directory")

        mappings.append(StaticMapping(prefix, os.path.abspath(directory)))
    return mappings


def _upstreams(entries: Any) -> List[UpstreamRoute]:
    if not isinstance(entries, list):
        raise ConfigError(ConfigErrorKind.INVALID_VALUE,
                          "upstreams must be a list")

    routes = []
    for index, entry in enumerate(entries):
        name = f"upstreams[{index}]"
        if not isinstance(entry, dict):
            raise ConfigError(ConfigErrorKind.INVALID_VALUE,
                              f"{name} must be a mapping")
        for key in ("host_name", "target"):
            if key not in entry:
                raise ConfigError(ConfigErrorKind.MISSING_FIELD, f"{name}.{key}")

        host_name = entry["host_name"]
        if not isinstance(host_name, str) or not host_name.strip():
            raise ConfigError(ConfigErrorKind.INVALID_VALUE,
                              f"{name}.host_name must be a non-empty string")

        target = entry["target"]
        parsed = urlparse(target) if isinstance(target, str) else None
        if parsed is None or parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ConfigError(ConfigErrorKind.INVALID_VALUE,
                              f"{name}.target must be an http(s) URL, got {target!r}")
        try:
            parsed.port
        except ValueError as e:
            raise ConfigError(ConfigErrorKind.INVALID_VALUE,
                              f"{name}.target has an invalid port: {e}") from e

        routes.append(UpstreamRoute(host_name.strip(), target))
    return routes
