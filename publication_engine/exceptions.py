"""
Custom exception classes for the scheduled publication engine.

Per-job failures (claim conflicts, unsupported platforms, credential
resolution and dispatch errors) are caught by the scheduler and turned into
a terminal job state.  Infrastructure failures (job store, credential
store) propagate so the current tick is abandoned and retried on the next.

Hierarchy:
    Exception
    +-- EngineBaseError (base for all per-job engine errors)
    |   +-- ClaimConflictError
    |   +-- InvalidTransitionError
    |   +-- UnsupportedPlatformError
    |   +-- CredentialResolutionError
    |   |   +-- CredentialNotFoundError
    |   +-- DispatchError
    |       +-- AuthError
    |       +-- RateLimitedError
    |       +-- PlatformValidationError
    |       +-- TransientError
    |       +-- UnknownDispatchError
    +-- ValidationError (ValueError)
    +-- DatabaseError
    +-- CredentialStoreError
    +-- EncryptionError
    +-- ConfigurationError
    +-- RetryExhaustedError
"""

from typing import Optional


# =============================================================================
# BASE EXCEPTION
# =============================================================================


class EngineBaseError(Exception):
    """Base exception for all per-job engine errors."""

    pass


# =============================================================================
# CORE EXCEPTIONS
# =============================================================================


class ValidationError(ValueError):
    """Raised when input validation fails."""

    pass


class DatabaseError(Exception):
    """Raised when the job store cannot be reached or rejects a query."""

    pass


class CredentialStoreError(Exception):
    """Raised when the credential store cannot be reached or rejects a query."""

    pass


class EncryptionError(Exception):
    """Raised when a credential cannot be encrypted or decrypted."""

    pass


class ConfigurationError(Exception):
    """Raised when system configuration is invalid."""

    pass


class RetryExhaustedError(Exception):
    """Raised when all retry attempts have been exhausted.

    Attributes:
        operation: Name of the operation that was retried.
        attempts: Total number of attempts made.
        last_error: The last exception raised before giving up.
    """

    def __init__(self, operation: str, attempts: int, last_error: Exception):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempts. "
            f"Last error: {last_error}"
        )


# =============================================================================
# LIFECYCLE EXCEPTIONS
# =============================================================================


class ClaimConflictError(EngineBaseError):
    """Raised when a conditional status transition loses its race.

    Attributes:
        job_id: The job whose status did not match.
        expected_status: The status the caller required.
    """

    def __init__(self, job_id: str, expected_status: str):
        self.job_id = job_id
        self.expected_status = expected_status
        super().__init__(
            f"Job {job_id} is not in expected state '{expected_status}'"
        )


class InvalidTransitionError(EngineBaseError):
    """Raised when a status change is not an edge of the job state machine."""

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid status transition: {from_status} -> {to_status}"
        )


class UnsupportedPlatformError(EngineBaseError):
    """Raised when no dispatch adapter is registered for a platform."""

    def __init__(self, platform: str):
        self.platform = platform
        super().__init__("unsupported platform")


# =============================================================================
# CREDENTIAL EXCEPTIONS
# =============================================================================


class CredentialResolutionError(EngineBaseError):
    """Raised when a dispatch secret cannot be resolved."""

    pass


class CredentialNotFoundError(CredentialResolutionError):
    """Raised when the credential store has no record for a scope key."""

    def __init__(self, scope_key: str):
        self.scope_key = scope_key
        super().__init__(f"No credentials configured for '{scope_key}'")


# =============================================================================
# DISPATCH EXCEPTIONS
# =============================================================================


class DispatchError(EngineBaseError):
    """Base class for normalized platform dispatch failures.

    Every adapter surfaces one of the subclasses below so the scheduler can
    record a uniform ``error_message`` regardless of the platform.

    Attributes:
        kind: Normalized failure kind used as the message prefix.
        platform: Platform identifier that produced the failure.
    """

    kind: str = "UnknownError"

    def __init__(self, message: str, platform: Optional[str] = None):
        self.message = message
        self.platform = platform
        super().__init__(message)

    @property
    def normalized_message(self) -> str:
        """Return ``"<Kind>: <message>"`` for storage in ``error_message``."""
        return f"{self.kind}: {self.message}"


class AuthError(DispatchError):
    """Credential invalid or expired. Never retried automatically."""

    kind = "AuthError"


class RateLimitedError(DispatchError):
    """Platform rate limit hit.

    Attributes:
        retry_after: Seconds until the platform accepts requests again,
            when the platform reported it.
    """

    kind = "RateLimited"

    def __init__(
        self,
        message: str,
        platform: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, platform)

    @property
    def normalized_message(self) -> str:
        base = super().normalized_message
        if self.retry_after is None:
            return base
        return f"{base} (retry after {int(self.retry_after)}s)"


class PlatformValidationError(DispatchError):
    """Payload rejected by the platform."""

    kind = "ValidationError"


class TransientError(DispatchError):
    """Network failure, timeout or 5xx response. Safe to retry later."""

    kind = "TransientError"


class UnknownDispatchError(DispatchError):
    """Any failure that does not fit the other categories."""

    kind = "UnknownError"


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "EngineBaseError",
    "ValidationError",
    "DatabaseError",
    "CredentialStoreError",
    "EncryptionError",
    "ConfigurationError",
    "RetryExhaustedError",
    "ClaimConflictError",
    "InvalidTransitionError",
    "UnsupportedPlatformError",
    "CredentialResolutionError",
    "CredentialNotFoundError",
    "DispatchError",
    "AuthError",
    "RateLimitedError",
    "PlatformValidationError",
    "TransientError",
    "UnknownDispatchError",
]
