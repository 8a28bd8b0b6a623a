"""Exception taxonomy shared by source adapters, the importer and the cache.

Every error carries a human-readable ``message`` and a machine ``code``.
The resilience layer decides retry behaviour from the class alone, so
adapters must translate backend failures into these types at the boundary.
"""

from __future__ import annotations


class LibMirrorError(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, code: str = "LIBMIRROR_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


# ===== Source errors =====


class SourceError(LibMirrorError):
    """Base exception for storage backend failures."""

    def __init__(self, message: str, code: str = "SOURCE_ERROR"):
        super().__init__(message, code)


class NotFoundError(SourceError):
    """Raised when a path segment or file does not exist at the source."""

    def __init__(self, message: str = "Not found at source"):
        super().__init__(message, "NOT_FOUND")


class UnauthorizedError(SourceError):
    """Raised when the backend rejects an expired or invalid credential."""

    def __init__(self, message: str = "Credential expired or invalid"):
        super().__init__(message, "UNAUTHORIZED")


class AccessDeniedError(SourceError):
    """Raised when the credential is valid but lacks access to the resource."""

    def __init__(self, message: str = "Access denied"):
        super().__init__(message, "ACCESS_DENIED")


class RateLimitedError(SourceError):
    """Raised when the backend throttles requests."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: float | None = None,
    ):
        super().__init__(message, "RATE_LIMITED")
        self.retry_after = retry_after


class ServerError(SourceError):
    """Raised on a 5xx response from the backend."""

    def __init__(self, message: str = "Backend server error", status_code: int | None = None):
        super().__init__(message, "SERVER_ERROR")
        self.status_code = status_code


class TransientTransportError(SourceError):
    """Raised on timeouts and dropped connections before a response arrives."""

    def __init__(self, message: str = "Transient transport failure"):
        super().__init__(message, "TRANSPORT_ERROR")


class MaterializationTimeoutError(SourceError):
    """Raised when a cloud placeholder does not finish downloading in time."""

    def __init__(self, message: str = "Timed out waiting for file download"):
        super().__init__(message, "TIMEOUT")


class CredentialError(SourceError):
    """Raised when no usable credential is available or refresh fails."""

    def __init__(self, message: str = "Credential unavailable"):
        super().__init__(message, "CREDENTIAL_ERROR")


# ===== Import errors =====


class CorruptManifestError(LibMirrorError):
    """Raised when a manifest or metadata file cannot be parsed."""

    def __init__(self, message: str = "Manifest could not be parsed"):
        super().__init__(message, "CORRUPT")


class SyncCancelledError(LibMirrorError):
    """Raised at a cancellation checkpoint once the sync has been cancelled."""

    def __init__(self, message: str = "Sync was cancelled"):
        super().__init__(message, "CANCELLED")


RETRYABLE_ERRORS: tuple[type[SourceError], ...] = (
    UnauthorizedError,
    RateLimitedError,
    ServerError,
    TransientTransportError,
)


def is_retryable(error: BaseException) -> bool:
    """Return True if the resilience layer should retry after this error."""
    return isinstance(error, RETRYABLE_ERRORS)
