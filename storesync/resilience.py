"""
Resilience patterns for calls to rate-limited target systems.

Provides:
- Circuit breaker (closed / open / half-open trial call)
- API rate limiter: sliding-window pacing, concurrency gate,
  exponential backoff retry and per-call timeouts
"""
import asyncio
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Callable, Awaitable, Deque, Tuple, TypeVar

from storesync.config import TargetSystemProfile
from storesync.exceptions import (
    CircuitOpenError,
    OperationTimeoutError,
    RetryExhaustedError,
)
from storesync.models import CallOptions, RateLimitStatus
from storesync.observability import get_logger, MetricsCollector

logger = get_logger(__name__)

T = TypeVar("T")

SECOND_WINDOW = 1.0
MINUTE_WINDOW = 60.0


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, reject requests
    HALF_OPEN = "half_open"  # Cooldown elapsed, one trial call allowed


@dataclass
class CircuitBreaker:
    """
    Circuit breaker implementation.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Circuit is tripped, requests fail immediately
    - HALF_OPEN: Cooldown elapsed, a single trial call tests recovery

    All transitions happen under one lock, so concurrent failures open
    the circuit at most once per threshold breach.
    """
    name: str = "default"
    failure_threshold: int = 5
    recovery_timeout: float = 60.0  # seconds before a trial call is allowed
    half_open_requests: int = 1
    clock: Callable[[], float] = time.monotonic
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    opened_at: float = 0
    half_open_attempts: int = 0
    trips: int = 0

    def __post_init__(self):
        self._lock = asyncio.Lock()

    async def can_execute(self) -> bool:
        """Check if request can proceed."""
        async with self._lock:
            if self.state == CircuitState.CLOSED:
                return True

            if self.state == CircuitState.OPEN:
                if self.clock() - self.opened_at >= self.recovery_timeout:
                    logger.info(f"Circuit breaker for {self.name} entering half-open state")
                    self.state = CircuitState.HALF_OPEN
                    self.half_open_attempts = 1
                    return True
                return False

            if self.half_open_attempts < self.half_open_requests:
                self.half_open_attempts += 1
                return True
            return False

    async def record_success(self) -> None:
        """Record successful request."""
        async with self._lock:
            if self.state == CircuitState.OPEN:
                # A call admitted before the trip does not close the circuit
                return
            if self.state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit breaker for {self.name} closing after successful trial call")
                self.state = CircuitState.CLOSED
            self.failure_count = 0

    async def record_failure(self) -> bool:
        """
        Record failed request.

        Returns:
            True if this failure opened the circuit
        """
        async with self._lock:
            self.failure_count += 1

            if self.state == CircuitState.HALF_OPEN:
                logger.warning(f"Circuit breaker for {self.name} re-opening after failed trial call")
                self._open()
                return True

            if self.state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold:
                logger.warning(
                    f"Circuit breaker for {self.name} opening after {self.failure_count} consecutive failures"
                )
                self._open()
                return True

            return False

    def release_trial(self) -> None:
        """Give back a half-open slot whose call ended without an outcome (e.g. cancelled)."""
        if self.state == CircuitState.HALF_OPEN and self.half_open_attempts > 0:
            logger.info(f"Circuit breaker for {self.name} trial call abandoned, slot released")
            self.half_open_attempts -= 1

    def _open(self) -> None:
        self.state = CircuitState.OPEN
        self.opened_at = self.clock()
        self.half_open_attempts = 0
        self.trips += 1

    def retry_in(self) -> Optional[float]:
        """Seconds left in the cooldown, None when not open."""
        if self.state != CircuitState.OPEN:
            return None
        return max(0.0, self.recovery_timeout - (self.clock() - self.opened_at))

    @property
    def is_open(self) -> bool:
        """Check if circuit is open (rejecting requests)."""
        return self.state == CircuitState.OPEN


class APIRateLimiter:
    """
    Admission control for one target system.

    Every call passes, in order:
    1. the circuit breaker (fails fast with CircuitOpenError),
    2. a concurrency gate sized to max_concurrent (FIFO),
    3. sliding-window pacing: at most requests_per_second dispatches in any
       rolling second and requests_per_minute + burst_allowance in any
       rolling minute,
    4. the operation itself, with optional timeout and exponential backoff
       retry while the circuit stays closed.
    """

    def __init__(
        self,
        profile: TargetSystemProfile,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.profile = profile
        self.metrics = metrics or MetricsCollector()
        self._clock = clock
        self.circuit_breaker = CircuitBreaker(
            name=profile.name,
            failure_threshold=profile.circuit_breaker_threshold,
            recovery_timeout=profile.cooldown_seconds,
            clock=clock,
        )
        self._gate = asyncio.Semaphore(profile.max_concurrent)
        self._window_lock = asyncio.Lock()
        self._call_times: Deque[float] = deque()
        self._latencies: Deque[float] = deque(maxlen=100)
        self._successes = 0
        self._failures = 0
        self._rejections = 0

    @property
    def name(self) -> str:
        return self.profile.name

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        options: Optional[CallOptions] = None,
    ) -> T:
        """
        Execute operation under this system's rate limit.

        Args:
            operation: Zero-argument callable returning an awaitable
            options: Priority, timeout and retry overrides

        Raises:
            CircuitOpenError: Circuit open, operation not attempted
            RetryExhaustedError: Every attempt failed (cause chained)
        """
        options = options or CallOptions()

        if not await self.circuit_breaker.can_execute():
            self._raise_circuit_open()
        trial = self.circuit_breaker.state == CircuitState.HALF_OPEN

        try:
            async with self._gate:
                # The circuit may have tripped while this call waited at the gate
                if self.circuit_breaker.is_open:
                    self._raise_circuit_open()
                return await self._execute_with_retry(operation, options)
        except BaseException:
            # No-op once the trial call recorded an outcome
            if trial:
                self.circuit_breaker.release_trial()
            raise

    def _raise_circuit_open(self) -> None:
        self._rejections += 1
        self.metrics.increment(self.name, "rejected_requests")
        raise CircuitOpenError(self.name, self.circuit_breaker.retry_in())

    async def _execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        options: CallOptions,
    ) -> T:
        max_retries = options.retries if options.retries is not None else self.profile.retry_attempts
        attempt = 0

        while True:
            await self._wait_for_slot()
            start = time.perf_counter()
            try:
                if options.timeout is not None:
                    try:
                        result = await asyncio.wait_for(operation(), timeout=options.timeout)
                    except asyncio.TimeoutError as e:
                        raise OperationTimeoutError(self.name, options.timeout) from e
                else:
                    result = await operation()
            except Exception as e:
                last_error = e
                elapsed_ms = (time.perf_counter() - start) * 1000
                self._failures += 1
                self.metrics.record_call(self.name, success=False, duration_ms=elapsed_ms)
                if await self.circuit_breaker.record_failure():
                    self.metrics.increment(self.name, "circuit_breaker_trips")
            else:
                elapsed_ms = (time.perf_counter() - start) * 1000
                self._successes += 1
                self._latencies.append(elapsed_ms)
                self.metrics.record_call(self.name, success=True, duration_ms=elapsed_ms)
                await self.circuit_breaker.record_success()
                return result

            attempt += 1
            circuit_open = self.circuit_breaker.is_open
            if attempt > max_retries or circuit_open:
                logger.error(
                    f"Call to {self.name} failed after {attempt} attempt(s): {last_error}",
                    extra={"system": self.name, "attempts": attempt, "circuit_open": circuit_open},
                )
                raise RetryExhaustedError(
                    self.name, attempt, circuit_open=circuit_open, last_error=last_error
                ) from last_error

            delay = self.profile.backoff_delay(attempt - 1)
            logger.warning(
                f"Retry {attempt}/{max_retries} for {self.name} in {delay:.2f}s",
                extra={"system": self.name, "error": str(last_error)},
            )
            await asyncio.sleep(delay)

    async def _wait_for_slot(self) -> None:
        """Reserve a dispatch slot, sleeping until the windows allow one."""
        while True:
            async with self._window_lock:
                now = self._clock()
                self._prune(now)
                wait = self._required_wait(now)
                if wait <= 0:
                    self._call_times.append(now)
                    return

            logger.debug(f"Rate limit wait for {self.name}: {wait * 1000:.0f}ms")
            await asyncio.sleep(wait)

    def _pace_window(self) -> Tuple[float, int]:
        """
        Rolling window and dispatch limit for the per-second rate.

        Rates below 1/s widen the window (0.5/s -> 1 call per 2s);
        fractional rates above 1/s round down (2.5/s -> 2 per second).
        """
        rps = self.profile.requests_per_second
        window = max(SECOND_WINDOW, 1.0 / rps)
        return window, max(1, int(rps * window + 1e-9))

    def _prune(self, now: float) -> None:
        horizon = max(MINUTE_WINDOW, self._pace_window()[0])
        while self._call_times and now - self._call_times[0] >= horizon:
            self._call_times.popleft()

    def _required_wait(self, now: float) -> float:
        wait = 0.0

        window, limit = self._pace_window()
        recent = [t for t in self._call_times if now - t < window]
        if len(recent) >= limit:
            oldest = recent[len(recent) - limit]
            wait = max(wait, oldest + window - now)

        per_minute = self.profile.requests_per_minute + self.profile.burst_allowance
        if len(self._call_times) >= per_minute:
            oldest = self._call_times[len(self._call_times) - per_minute]
            wait = max(wait, oldest + MINUTE_WINDOW - now)

        return wait

    def get_status(self) -> RateLimitStatus:
        """Point-in-time snapshot of this limiter."""
        now = self._clock()
        self._prune(now)
        in_window = len(self._call_times)
        reset_in = (self._call_times[0] + MINUTE_WINDOW - now) if self._call_times else 0.0
        attempts = self._successes + self._failures
        latency = sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

        return RateLimitStatus(
            api=self.name,
            requests_in_window=in_window,
            remaining_requests=max(0, self.profile.requests_per_minute - in_window),
            reset_time=time.time() + reset_in,
            circuit_state=self.circuit_breaker.state.value,
            circuit_breaker_open=self.circuit_breaker.is_open,
            average_latency_ms=round(latency, 2),
            success_rate=round(self._successes / attempts, 4) if attempts else 1.0,
        )
