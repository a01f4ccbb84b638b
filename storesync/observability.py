"""
Observability module for structured logging, correlation IDs, and metrics.

Usage:
    from storesync.observability import setup_logging, get_logger, correlation_context

    # In app startup:
    setup_logging()

    # Per module:
    logger = get_logger(__name__)

    # Around one sync run or consistency check:
    with correlation_context(store_id=store_id):
        logger.info("Checking store", extra={"level": "standard"})
"""
import json
import logging
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional, Any, Dict, List

# Context variable for run correlation ID
_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Context variable for additional context (store_id, etc.)
_log_context: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})

_STANDARD_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "asctime", "taskName",
}


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID from context."""
    return _correlation_id.get()


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return str(uuid.uuid4())[:8]


class correlation_context:
    """
    Context manager binding a correlation ID and log context.

    Keyword arguments are added to every log line emitted inside the block.
    """

    def __init__(self, correlation_id: Optional[str] = None, **context: Any):
        self.correlation_id = correlation_id or generate_correlation_id()
        self.context = context
        self._id_token = None
        self._ctx_token = None

    def __enter__(self) -> str:
        self._id_token = _correlation_id.set(self.correlation_id)
        self._ctx_token = _log_context.set({**_log_context.get(), **self.context})
        return self.correlation_id

    def __exit__(self, *args):
        _log_context.reset(self._ctx_token)
        _correlation_id.reset(self._id_token)


def get_log_context() -> Dict[str, Any]:
    return dict(_log_context.get())


def _record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        k: v for k, v in record.__dict__.items()
        if k not in _STANDARD_ATTRS and not k.startswith("_")
    }


class StructuredFormatter(logging.Formatter):
    """
    JSON log formatter.

    Outputs timestamp, level, logger, message, correlation_id,
    bound context and extra fields.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            log_entry["correlation_id"] = correlation_id

        log_entry.update(_log_context.get())
        log_entry.update(_record_extras(record))

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable log formatter with correlation ID.

    Format: TIMESTAMP - LEVEL - LOGGER [CORRELATION_ID] - MESSAGE | extras
    """

    def format(self, record: logging.LogRecord) -> str:
        correlation_id = get_correlation_id()
        correlation_str = f" [{correlation_id}]" if correlation_id else ""
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        base_msg = f"{timestamp} - {record.levelname:8} - {record.name}{correlation_str} - {record.getMessage()}"

        extras = {**_log_context.get(), **_record_extras(record)}
        if extras:
            base_msg += f" | {extras}"

        if record.exc_info:
            base_msg += f"\n{self.formatException(record.exc_info)}"

        return base_msg


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    include_libs: bool = False
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: If True, output JSON logs; otherwise human-readable
        include_libs: If True, also log from third-party libraries
    """
    formatter = StructuredFormatter() if json_format else HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper()))

    # Quiet down noisy libraries unless explicitly included
    if not include_libs:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("urllib3").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(name)


# ═══════════════════════════════════════════════════════════════════════════════
# TIMING METRICS
# ═══════════════════════════════════════════════════════════════════════════════

class Timer:
    """
    Context manager for timing operations.

    Usage:
        with Timer("fetch_products", logger) as t:
            products = await client.get_products()
        print(f"Fetch took {t.elapsed_ms}ms")
    """

    def __init__(self, name: str, logger: Optional[logging.Logger] = None, warn_threshold_ms: float = 1000):
        self.name = name
        self.logger = logger
        self.warn_threshold_ms = warn_threshold_ms
        self.start_time: float = 0
        self.elapsed_ms: float = 0

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.elapsed_ms = (time.perf_counter() - self.start_time) * 1000

        if self.logger:
            level = logging.WARNING if self.elapsed_ms > self.warn_threshold_ms else logging.DEBUG
            self.logger.log(
                level,
                f"{self.name} completed",
                extra={"duration_ms": round(self.elapsed_ms, 2)}
            )


# ═══════════════════════════════════════════════════════════════════════════════
# METRICS COLLECTOR (simple in-memory stats)
# ═══════════════════════════════════════════════════════════════════════════════

class MetricsCollector:
    """
    Simple in-memory metrics collector.

    Tracks, per target system or batch type:
    - call counts (total / successful / failed)
    - circuit breaker trips and admission rejections
    - timing samples
    """

    def __init__(self, max_samples: int = 100):
        self._counters: Dict[str, Dict[str, int]] = {}
        self._timing_samples: Dict[str, List[float]] = {}
        self._max_samples = max_samples  # Keep last N samples per metric

    def increment(self, key: str, counter: str, amount: int = 1) -> None:
        counters = self._counters.setdefault(key, {})
        counters[counter] = counters.get(counter, 0) + amount

    def record_call(self, key: str, success: bool, duration_ms: float) -> None:
        """Record one completed call attempt."""
        self.increment(key, "total_requests")
        self.increment(key, "successful_requests" if success else "failed_requests")
        self.record_timing(key, duration_ms)

    def record_timing(self, key: str, duration_ms: float) -> None:
        samples = self._timing_samples.setdefault(key, [])
        samples.append(duration_ms)
        if len(samples) > self._max_samples:
            self._timing_samples[key] = samples[-self._max_samples:]

    def get_stats(self) -> Dict[str, Any]:
        """Get current metrics snapshot."""
        stats: Dict[str, Any] = {}
        for key in set(self._counters) | set(self._timing_samples):
            entry: Dict[str, Any] = dict(self._counters.get(key, {}))
            samples = self._timing_samples.get(key)
            if samples:
                sorted_samples = sorted(samples)
                entry["timing"] = {
                    "count": len(samples),
                    "avg_ms": round(sum(samples) / len(samples), 2),
                    "min_ms": round(sorted_samples[0], 2),
                    "max_ms": round(sorted_samples[-1], 2),
                    "p50_ms": round(sorted_samples[len(sorted_samples) // 2], 2),
                    "p95_ms": round(sorted_samples[int(len(sorted_samples) * 0.95)], 2) if len(sorted_samples) >= 20 else None,
                }
            stats[key] = entry
        return stats

    def reset(self) -> None:
        """Reset all metrics."""
        self._counters.clear()
        self._timing_samples.clear()
