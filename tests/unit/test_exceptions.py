"""
Tests for storesync.exceptions module.
"""
import pytest

from storesync.exceptions import (
    SyncError,
    TargetSystemError,
    CircuitOpenError,
    OperationTimeoutError,
    RetryExhaustedError,
    UnknownTargetSystemError,
    UnknownBatchTypeError,
    BatchExecutionError,
    SourceError,
    SourceConnectionError,
    SourceAPIError,
    SourceDataError,
    SearchIndexError,
    StorageError,
    QueryTimeoutError,
    ConfigurationError,
)


class TestSyncError:
    """Tests for base SyncError exception."""

    def test_message_only(self):
        """Error with message only."""
        error = SyncError("Something went wrong")
        assert str(error) == "Something went wrong"
        assert error.message == "Something went wrong"
        assert error.details is None

    def test_message_with_details(self):
        """Error with message and details."""
        error = SyncError("Failed to fetch", "Connection timeout")
        assert str(error) == "Failed to fetch: Connection timeout"
        assert error.details == "Connection timeout"


class TestTargetSystemErrors:
    """Tests for rate limiter errors."""

    def test_circuit_open(self):
        """Circuit open error carries the system and remaining cooldown."""
        error = CircuitOpenError("source", retry_in=12.34)
        assert isinstance(error, TargetSystemError)
        assert error.system == "source"
        assert error.retry_in == 12.34
        assert error.circuit_open is True
        assert str(error) == "Circuit breaker open for source: retry in 12.3s"

    def test_circuit_open_without_retry_in(self):
        """Details are omitted when cooldown is unknown."""
        error = CircuitOpenError("search")
        assert str(error) == "Circuit breaker open for search"

    def test_timeout(self):
        """Timeout error records the limit."""
        error = OperationTimeoutError("search", 2.5)
        assert error.timeout == 2.5
        assert "2.5s" in str(error)

    def test_retry_exhausted(self):
        """Terminal failure keeps attempts and last error."""
        cause = ValueError("boom")
        error = RetryExhaustedError("source", 3, last_error=cause)
        assert error.attempts == 3
        assert error.circuit_open is False
        assert error.last_error is cause
        assert str(error) == "Call to source failed after 3 attempt(s): boom"

    def test_retry_exhausted_circuit_open(self):
        """Message notes when retries stopped because the circuit opened."""
        error = RetryExhaustedError("source", 2, circuit_open=True)
        assert str(error) == "Call to source failed after 2 attempt(s) (circuit open)"


class TestRegistryErrors:
    """Tests for unknown system / batch type errors."""

    def test_unknown_target_system(self):
        error = UnknownTargetSystemError("crm")
        assert error.system == "crm"
        assert str(error) == "Unknown target system: crm"

    def test_unknown_batch_type(self):
        error = UnknownBatchTypeError("email_send")
        assert error.batch_type == "email_send"
        assert isinstance(error, SyncError)

    def test_batch_execution_error(self):
        error = BatchExecutionError("search_upsert", "Batch failed", "index gone")
        assert error.batch_type == "search_upsert"
        assert str(error) == "Batch failed: index gone"


class TestSourceErrors:
    """Tests for source API errors."""

    def test_inheritance(self):
        """All source errors share the SourceError base."""
        for error in (
            SourceConnectionError("down"),
            SourceAPIError("bad"),
            SourceDataError("weird"),
        ):
            assert isinstance(error, SourceError)
            assert isinstance(error, SyncError)

    def test_retry_after(self):
        """Connection errors support retry_after."""
        assert SourceConnectionError("Rate limited", retry_after=60).retry_after == 60
        assert SourceConnectionError("Failed").retry_after is None

    def test_status_code(self):
        """API errors carry the HTTP status."""
        error = SourceAPIError("Not found", status_code=404)
        assert error.status_code == 404

    def test_data_error_shape(self):
        """Data errors describe expected vs got."""
        error = SourceDataError("Unexpected response", expected="list", got="dict")
        assert error.expected == "list"
        assert error.got == "dict"


class TestStorageErrors:
    """Tests for storage and search errors."""

    def test_search_index_error_namespace(self):
        error = SearchIndexError("Upsert failed", namespace="store-1-products")
        assert error.namespace == "store-1-products"

    def test_query_timeout_truncates_query(self):
        """Long queries are truncated in the error."""
        error = QueryTimeoutError("SELECT " + "x" * 300, 5.0)
        assert isinstance(error, StorageError)
        assert error.query.endswith("...")
        assert len(error.query) == 203
        assert "5.0s" in str(error)

    def test_configuration_error_is_not_sync_error(self):
        assert not issubclass(ConfigurationError, SyncError)

    def test_raise_and_catch_as_base(self):
        """Subclasses can be caught as SyncError."""
        with pytest.raises(SyncError):
            raise QueryTimeoutError("SELECT 1", 1.0)
