"""Error taxonomy shared by every gateway component."""

from typing import Optional


class GatewayError(Exception):
    """Base class for all errors raised by the gateway."""


class ConfigurationError(GatewayError, ValueError):
    """Raised when a tunable or connection descriptor is invalid."""


class ValidationError(GatewayError, ValueError):
    """Raised when a statement or identifier fails a safety check."""


class NotFoundError(GatewayError, LookupError):
    """Raised for unknown connection/transaction ids or terminal transactions."""


class GatewayTimeoutError(GatewayError, TimeoutError):
    """Raised when a backend call, pool acquire or subprocess exceeds its timeout."""


class ResourceError(GatewayError):
    """Raised when a pool or client could not be cleaned up."""


class UnsupportedDriverError(GatewayError):
    """Raised when no native adapter exists and the CLI fallback failed.

    The message always lists the natively supported drivers and, when the
    fallback was attempted, its own failure on a separate line.
    """

    def __init__(self, driver: str, supported: list[str], fallback_error: Optional[str] = None):
        self.driver = driver
        self.supported = supported
        self.fallback_error = fallback_error
        message = (
            f"Unsupported database driver: {driver}\n"
            f"  Natively supported drivers: {', '.join(supported)}"
        )
        if fallback_error:
            message += f"\n  CLI fallback failed: {fallback_error}"
        super().__init__(message)


class BackendError(GatewayError, RuntimeError):
    """Wrapped native driver failure with driver/host/database context.

    Callers must never pass credential values into ``message``.
    """

    def __init__(
        self,
        message: str,
        driver: Optional[str] = None,
        host: Optional[str] = None,
        database: Optional[str] = None,
    ):
        self.driver = driver
        self.host = host
        self.database = database
        context = ", ".join(
            f"{key}={value}"
            for key, value in (("driver", driver), ("host", host), ("database", database))
            if value
        )
        super().__init__(f"{message} ({context})" if context else message)
