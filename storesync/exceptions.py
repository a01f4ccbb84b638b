"""
Custom exception hierarchy for storesync.

Exception Hierarchy:
    SyncError (base)
    ├── TargetSystemError          - Raised by the rate limiter for one target system
    │   ├── CircuitOpenError       - Admission failure, no call attempted
    │   ├── OperationTimeoutError  - Call exceeded its timeout
    │   └── RetryExhaustedError    - Terminal failure after all attempts
    ├── UnknownTargetSystemError   - No profile configured for a system
    ├── UnknownBatchTypeError      - No executor registered for a batch type
    ├── BatchExecutionError        - Executor failed for a whole batch
    ├── SourceError                - E-commerce API failures
    │   ├── SourceConnectionError  - Network/timeout issues (recoverable)
    │   ├── SourceAPIError         - API returned error response
    │   └── SourceDataError        - Invalid response structure
    ├── SearchIndexError           - Search index call failed
    └── StorageError               - Primary store failures
        └── QueryTimeoutError      - Query exceeded timeout

    ConfigurationError             - Required configuration missing or invalid
"""
from typing import Optional


class SyncError(Exception):
    """Base exception for all storesync errors."""

    def __init__(self, message: str, details: str = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


# ═══════════════════════════════════════════════════════════════════════════════
# ADMISSION CONTROL
# ═══════════════════════════════════════════════════════════════════════════════

class TargetSystemError(SyncError):
    """Error raised while calling a rate-limited target system."""

    def __init__(self, system: str, message: str, details: str = None):
        super().__init__(message, details)
        self.system = system


class CircuitOpenError(TargetSystemError):
    """
    Circuit breaker is open for the target system.

    The operation was never attempted, so this does not count as a failure.
    """

    def __init__(self, system: str, retry_in: Optional[float] = None):
        details = f"retry in {retry_in:.1f}s" if retry_in is not None else None
        super().__init__(system, f"Circuit breaker open for {system}", details)
        self.retry_in = retry_in
        self.circuit_open = True


class OperationTimeoutError(TargetSystemError):
    """Call did not complete within its timeout."""

    def __init__(self, system: str, timeout: float):
        super().__init__(system, f"Call to {system} timed out after {timeout}s")
        self.timeout = timeout


class RetryExhaustedError(TargetSystemError):
    """
    All attempts failed.

    The last underlying error is available as ``__cause__``.
    """

    def __init__(
        self,
        system: str,
        attempts: int,
        circuit_open: bool = False,
        last_error: Optional[BaseException] = None,
    ):
        details = str(last_error) if last_error is not None else None
        message = f"Call to {system} failed after {attempts} attempt(s)"
        if circuit_open:
            message = f"{message} (circuit open)"
        super().__init__(system, message, details)
        self.attempts = attempts
        self.circuit_open = circuit_open
        self.last_error = last_error


class UnknownTargetSystemError(SyncError):
    """No rate limit profile configured for the requested system."""

    def __init__(self, system: str):
        super().__init__(f"Unknown target system: {system}")
        self.system = system


class UnknownBatchTypeError(SyncError):
    """No executor registered for the requested batch type."""

    def __init__(self, batch_type: str):
        super().__init__(f"Unknown batch type: {batch_type}")
        self.batch_type = batch_type


class BatchExecutionError(SyncError):
    """
    Batch executor failed outside its own per-group error handling.

    Every operation of the affected batch is rejected with this error.
    """

    def __init__(self, batch_type: str, message: str, details: str = None):
        super().__init__(message, details)
        self.batch_type = batch_type


# ═══════════════════════════════════════════════════════════════════════════════
# SOURCE SYSTEM
# ═══════════════════════════════════════════════════════════════════════════════

class SourceError(SyncError):
    """Base exception for e-commerce API errors."""


class SourceConnectionError(SourceError):
    """
    Network-related errors (timeout, connection refused, etc.).

    These are typically recoverable with retry.
    """

    def __init__(self, message: str, details: str = None, retry_after: int = None):
        super().__init__(message, details)
        self.retry_after = retry_after


class SourceAPIError(SourceError):
    """
    API returned an error response.

    Check status_code and error_code for specifics.
    """

    def __init__(
        self,
        message: str,
        details: str = None,
        status_code: int = None,
        error_code: str = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code
        self.error_code = error_code


class SourceDataError(SourceError):
    """API response has unexpected structure."""

    def __init__(self, message: str, details: str = None, expected: str = None, got: str = None):
        super().__init__(message, details)
        self.expected = expected
        self.got = got


# ═══════════════════════════════════════════════════════════════════════════════
# SEARCH INDEX / PRIMARY STORE
# ═══════════════════════════════════════════════════════════════════════════════

class SearchIndexError(SyncError):
    """Search index operation failed."""

    def __init__(self, message: str, details: str = None, namespace: str = None):
        super().__init__(message, details)
        self.namespace = namespace


class StorageError(SyncError):
    """Primary store operation failed."""


class QueryTimeoutError(StorageError):
    """
    Database query exceeded timeout.

    Indicates a long-running query that should be investigated.
    """

    def __init__(self, query: str, timeout: float, details: str = None):
        self.query = query[:200] + "..." if len(query) > 200 else query
        self.timeout = timeout
        message = f"Query timed out after {timeout}s"
        super().__init__(message, details)

    def __str__(self) -> str:
        return f"QueryTimeoutError: Query timed out after {self.timeout}s - {self.query}"


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass
