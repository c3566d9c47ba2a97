"""
Service layer exceptions.

Every failure is classified where it originates (the HTTP clients, the
resolver, the snapshot store) into one of the ``ErrorKind`` members below.
Callers branch on the exception type or ``kind``, never on message text.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Closed set of failure categories."""

    ADDRESS_VALIDATION_FAILED = "ADDRESS_VALIDATION_FAILED"
    INVALID_ZIP = "ZIP_CODE_INVALID"
    ADDRESS_INCOMPLETE = "ADDRESS_INCOMPLETE"
    OUT_OF_SERVICE_AREA = "OUT_OF_SERVICE_AREA"
    RESOLUTION_FAILED = "TDSP_RESOLUTION_FAILED"
    RESOLUTION_TIMEOUT = "RESOLUTION_TIMEOUT"
    INVALID_SELECTION = "INVALID_SELECTION"
    API_TIMEOUT = "API_TIMEOUT"
    API_UNAUTHORIZED = "API_UNAUTHORIZED"
    API_RATE_LIMITED = "API_RATE_LIMITED"
    API_SERVER_ERROR = "API_SERVER_ERROR"
    API_BAD_REQUEST = "API_BAD_REQUEST"
    API_INVALID_RESPONSE = "API_INVALID_RESPONSE"
    NETWORK_ERROR = "NETWORK_ERROR"
    CONFIGURATION_MISSING = "CONFIGURATION_MISSING"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    SNAPSHOT_UNAVAILABLE = "SNAPSHOT_UNAVAILABLE"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ServiceError(Exception):
    """Base exception for service layer errors."""

    kind: ErrorKind = ErrorKind.API_SERVER_ERROR
    severity: Severity = Severity.MEDIUM
    retryable: bool = False
    user_message: str = "Something went wrong. Please try again in a moment."

    def __init__(
        self,
        message: str,
        service_id: str | None = None,
        user_message: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        self.service_id = service_id
        self.context = context or {}
        if user_message is not None:
            self.user_message = user_message
        super().__init__(message)

    @property
    def code(self) -> str:
        return self.kind.value

    @property
    def message(self) -> str:
        return str(self)

    def to_envelope(self) -> dict[str, Any]:
        """Public error envelope returned by the HTTP surface."""
        return {
            "code": self.code,
            "message": self.message,
            "userMessage": self.user_message,
            "retryable": self.retryable,
        }


# Validation


class AddressValidationFailed(ServiceError):
    """Address could not be validated."""

    kind = ErrorKind.ADDRESS_VALIDATION_FAILED
    severity = Severity.LOW
    user_message = "Please check your address and try again."


class InvalidZipCode(AddressValidationFailed):
    """ZIP code is malformed."""

    kind = ErrorKind.INVALID_ZIP
    user_message = "Please enter a valid 5-digit ZIP code."


class IncompleteAddress(AddressValidationFailed):
    """Address is missing required components."""

    kind = ErrorKind.ADDRESS_INCOMPLETE
    user_message = "Please provide a complete address including street, city, and ZIP code."

    def __init__(self, missing: list[str], **kwargs: Any):
        self.missing = missing
        super().__init__(
            f"Address is missing or has invalid fields: {', '.join(missing)}", **kwargs
        )


class OutOfServiceArea(AddressValidationFailed):
    """ZIP code lies outside the served region."""

    kind = ErrorKind.OUT_OF_SERVICE_AREA
    user_message = "This ZIP code is outside our Texas service area."

    def __init__(
        self,
        zip_code: str,
        suggestions: list[str] | None = None,
        deregulated: bool = True,
    ):
        self.zip_code = zip_code
        self.suggestions = suggestions or []
        self.deregulated = deregulated
        if deregulated:
            super().__init__(f"ZIP code {zip_code} is outside the service area")
        else:
            super().__init__(
                f"ZIP code {zip_code} is served by a utility without retail choice",
                user_message=(
                    "This area is served by a municipal utility or cooperative "
                    "and does not offer electricity plan choice."
                ),
            )


# Resolution


class ResolutionFailed(ServiceError):
    """No strategy could determine a territory."""

    kind = ErrorKind.RESOLUTION_FAILED
    severity = Severity.MEDIUM
    user_message = (
        "We couldn't determine your electricity provider. "
        "Please try entering your full address."
    )


class ResolutionTimeout(ServiceError):
    """Address-level lookup exceeded its time budget."""

    kind = ErrorKind.RESOLUTION_TIMEOUT
    retryable = True
    user_message = "Looking up your address is taking longer than expected. Please try again."

    def __init__(self, timeout: float, service_id: str | None = None):
        self.timeout = timeout
        super().__init__(
            f"Address resolution timed out after {timeout}s", service_id=service_id
        )


class InvalidSelection(ServiceError):
    """Chosen territory is not among the result's candidates."""

    kind = ErrorKind.INVALID_SELECTION
    severity = Severity.LOW
    user_message = "Please choose one of the listed electricity providers."


# Upstream API


class ApiTimeout(ServiceError):
    """Request timed out."""

    kind = ErrorKind.API_TIMEOUT
    retryable = True
    user_message = "The request is taking longer than expected. Please try again."

    def __init__(self, service_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Request to service '{service_id}' timed out after {timeout}s",
            service_id=service_id,
        )


class ApiUnauthorized(ServiceError):
    """Upstream rejected our credentials. Never retried."""

    kind = ErrorKind.API_UNAUTHORIZED
    severity = Severity.CRITICAL
    user_message = "Service temporarily unavailable. Please try again later."


class ApiRateLimited(ServiceError):
    """Rate limit exceeded."""

    kind = ErrorKind.API_RATE_LIMITED
    severity = Severity.LOW
    retryable = True
    user_message = "Too many requests. Please wait a moment and try again."

    def __init__(self, service_id: str, retry_after: float | None = None):
        self.retry_after = retry_after
        msg = f"Rate limit exceeded for service '{service_id}'"
        if retry_after:
            msg += f", retry after {retry_after:.1f}s"
        super().__init__(msg, service_id=service_id)


class ApiServerError(ServiceError):
    """Upstream returned 5xx."""

    kind = ErrorKind.API_SERVER_ERROR
    severity = Severity.HIGH
    retryable = True

    def __init__(self, message: str, status_code: int | None = None, **kwargs: Any):
        self.status_code = status_code
        super().__init__(message, **kwargs)


class ApiBadRequest(ServiceError):
    """Upstream rejected the request parameters (4xx other than 401/403/429)."""

    kind = ErrorKind.API_BAD_REQUEST
    severity = Severity.LOW
    user_message = "Invalid search parameters. Please check your input."

    def __init__(self, message: str, status_code: int | None = None, **kwargs: Any):
        self.status_code = status_code
        super().__init__(message, **kwargs)


class ApiInvalidResponse(ServiceError):
    """Upstream answered with a payload we cannot use."""

    kind = ErrorKind.API_INVALID_RESPONSE
    severity = Severity.HIGH
    retryable = True


# Infrastructure


class NetworkError(ServiceError):
    """Connection-level failure talking to an upstream."""

    kind = ErrorKind.NETWORK_ERROR
    retryable = True
    user_message = "Connection issue. Please check your internet connection and try again."


class ConfigurationMissing(ServiceError):
    """Required configuration is absent. Never retried."""

    kind = ErrorKind.CONFIGURATION_MISSING
    severity = Severity.CRITICAL
    user_message = "Service configuration error. Please contact support."


class CircuitOpenError(ServiceError):
    """Circuit breaker is open, request blocked."""

    kind = ErrorKind.CIRCUIT_OPEN
    severity = Severity.HIGH
    user_message = "Service temporarily unavailable. Please try again in a few minutes."

    def __init__(self, service_id: str, reset_after_seconds: float):
        self.reset_after_seconds = reset_after_seconds
        super().__init__(
            f"Circuit breaker open for service '{service_id}', "
            f"retry after {reset_after_seconds:.1f}s",
            service_id=service_id,
        )


class SnapshotUnavailable(ServiceError):
    """Upstream failed and no persisted snapshot exists to fall back on."""

    kind = ErrorKind.SNAPSHOT_UNAVAILABLE
    severity = Severity.HIGH
    retryable = True
    user_message = (
        "Electricity plans are temporarily unavailable for your area. "
        "Please try again shortly."
    )


FATAL_KINDS = frozenset({ErrorKind.API_UNAUTHORIZED, ErrorKind.CONFIGURATION_MISSING})


def is_fatal(error: BaseException) -> bool:
    """Errors that must surface immediately instead of degrading to a snapshot."""
    return isinstance(error, ServiceError) and error.kind in FATAL_KINDS
