from enum import Enum


class GondolaError(Exception):
    """Base class for all proxy errors."""


class ConfigErrorKind(Enum):
    MISSING_FIELD = "missing field"
    INVALID_VALUE = "invalid value"
    FILE_NOT_FOUND = "file not found"


class ConfigError(GondolaError):
    """Raised when the configuration file cannot be loaded or is invalid."""

    def __init__(self, kind: ConfigErrorKind, message: str):
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind
        self.message = message


class BindError(GondolaError):
    """Raised when the listening socket cannot be bound."""


class TLSError(GondolaError):
    """Raised when the certificate/key pair cannot be loaded."""


class ClientError(GondolaError):
    """Malformed or incomplete request from the client."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class UpstreamError(GondolaError):
    """Upstream connection, timeout or protocol failure."""


class FileSystemError(GondolaError):
    """Static file missing, unreadable or outside its directory."""

    def __init__(self, message: str, status_code: int = 404):
        super().__init__(message)
        self.status_code = status_code
