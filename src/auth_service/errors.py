"""Exception types for startup gating and request handling."""

import traceback
from typing import Any, Dict, Optional


class StartupError(Exception):
    """A condition that must stop the service before it accepts traffic."""


class ConfigurationError(StartupError):
    """Required configuration (URI, URL, credentials) is missing or unusable."""


class CacheHandshakeError(StartupError):
    """Cache write-then-read verification failed."""


class BrokerConnectionError(StartupError):
    """Broker producer could not be connected."""


class BrokerNotConnectedError(RuntimeError):
    """Raised when publishing before the producer session is connected."""

    def __init__(self, message: str = "Producer not connected"):
        super().__init__(message)


class ApiError(Exception):
    """
    Operational error raised by request handlers.

    Carries the HTTP status that should be returned to the client. Errors
    that are not ``ApiError`` are wrapped into one by the error middleware.
    """

    def __init__(
        self,
        status_code: int,
        message: str,
        is_operational: bool = True,
        stack: Optional[str] = None
    ):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.success = False
        self.is_operational = is_operational
        self.stack = stack or "".join(traceback.format_stack()[:-1])

    @classmethod
    def wrap(cls, error: BaseException) -> "ApiError":
        """Normalize an arbitrary exception into an ``ApiError``."""
        if isinstance(error, cls):
            return error

        status_code = 500
        for attr in ("status_code", "status"):
            value = getattr(error, attr, None)
            if isinstance(value, int) and not isinstance(value, bool) and 400 <= value <= 599:
                status_code = value
                break

        message = str(error) or "Internal Server Error"
        stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))

        return cls(status_code, message, is_operational=False, stack=stack)

    def to_dict(self, include_stack: bool = False) -> Dict[str, Any]:
        """Serialize for a JSON response body."""
        body: Dict[str, Any] = {
            "statusCode": self.status_code,
            "success": self.success,
            "isOperational": self.is_operational,
            "message": self.message,
        }
        if include_stack:
            body["stack"] = self.stack
        return body
