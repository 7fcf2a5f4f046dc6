"""
Exceptions raised by the registry components.

Every exception inherits from RegistryError and knows how it is reported to
npm clients: an HTTP status code, the CouchDB-style ``error`` code and a
human readable ``reason``.
"""

from typing import Optional


class RegistryError(Exception):
    """Base exception for all registry errors."""

    status_code: int = 500
    error: str = "internal_error"

    def __init__(self, reason: str, details: Optional[dict] = None):
        """
        Initialize registry error.

        Args:
            reason: Human-readable reason, sent to the client
            details: Additional error details (logged, never sent)
        """
        self.reason = reason
        self.details = details or {}
        super().__init__(reason)

    def to_dict(self) -> dict:
        """Convert error to the npm/CouchDB error body."""
        return {
            "error": self.error,
            "reason": self.reason,
        }


class ConfigError(RegistryError):
    """The registry root or settings are unusable."""

    error = "config_error"


class InvalidArgument(RegistryError):
    """Malformed caller input (package name, document shape)."""

    status_code = 400
    error = "invalid_argument"


class NotInitialized(RegistryError):
    """A store was used before ``initialize()`` was called."""

    def __init__(self, reason: str = "Registry is not initialized. Did you call initialize()?"):
        super().__init__(reason)


class NotFound(RegistryError):
    """Document, version or attachment does not exist."""

    status_code = 404
    error = "not_found"

    def __init__(self, reason: str = "document not found", details: Optional[dict] = None):
        super().__init__(reason, details=details)


class Conflict(RegistryError):
    """Revision mismatch on publish."""

    status_code = 409
    error = "conflict"


class BadRequest(RegistryError):
    """Request has the wrong content type."""

    status_code = 400
    error = "wrong_content"


class UpstreamError(RegistryError):
    """Upstream registry answered with something other than 200."""

    status_code = 502
    error = "upstream_error"

    def __init__(self, reason: str, status: Optional[int] = None, details: Optional[dict] = None):
        super().__init__(reason, details=details)
        self.status = status


class NetworkError(RegistryError):
    """Transport failure while talking to the upstream registry."""

    status_code = 502
    error = "network_error"


class FilesystemError(RegistryError):
    """Unexpected I/O failure below the registry root."""

    error = "filesystem_error"
