"""
Centralized configuration for storesync.

Configuration is loaded from environment variables with sensible defaults.
The library itself never reads the global instance: the composition root
passes profiles and batch configs into the manager it builds.

Usage:
    from storesync.config import config

    profiles = config.rate_limits.profiles
    db_path = config.storage.db_path
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

from dotenv import load_dotenv

from storesync.exceptions import ConfigurationError
from storesync.models import BatchType, TargetSystem

# Load environment variables
load_dotenv()


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number (got {value!r})")


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


@dataclass(frozen=True)
class TargetSystemProfile:
    """Static rate limit profile for one external system."""

    name: str
    requests_per_second: float
    requests_per_minute: int
    burst_allowance: int
    max_concurrent: int
    retry_attempts: int
    backoff_multiplier: float
    circuit_breaker_threshold: int
    circuit_breaker_timeout_ms: int
    backoff_base_ms: float = 1000.0

    @property
    def cooldown_seconds(self) -> float:
        return self.circuit_breaker_timeout_ms / 1000.0

    def backoff_delay(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt + 1``."""
        return (self.backoff_multiplier ** attempt) * self.backoff_base_ms / 1000.0


@dataclass(frozen=True)
class BatchConfig:
    """Batching behaviour for one batch type."""

    max_batch_size: int = 100
    min_batch_size: int = 10
    flush_interval_ms: int = 1000
    max_wait_time_ms: int = 5000
    concurrent_batches: int = 3
    adaptive_sizing: bool = True


def default_profiles() -> Dict[TargetSystem, TargetSystemProfile]:
    """Rate limit profiles for each target system."""
    return {
        TargetSystem.SOURCE: TargetSystemProfile(
            name="source",
            requests_per_second=_env_float("SOURCE_REQUESTS_PER_SECOND", 2),
            requests_per_minute=120,
            burst_allowance=5,
            max_concurrent=_env_int("SOURCE_MAX_CONCURRENT", 3),
            retry_attempts=3,
            backoff_multiplier=1.5,
            circuit_breaker_threshold=5,
            circuit_breaker_timeout_ms=60000,
        ),
        TargetSystem.SEARCH: TargetSystemProfile(
            name="search",
            requests_per_second=_env_float("SEARCH_REQUESTS_PER_SECOND", 10),
            requests_per_minute=600,
            burst_allowance=20,
            max_concurrent=_env_int("SEARCH_MAX_CONCURRENT", 10),
            retry_attempts=2,
            backoff_multiplier=2,
            circuit_breaker_threshold=10,
            circuit_breaker_timeout_ms=30000,
        ),
        TargetSystem.LLM: TargetSystemProfile(
            name="llm",
            requests_per_second=1,
            requests_per_minute=60,
            burst_allowance=3,
            max_concurrent=2,
            retry_attempts=3,
            backoff_multiplier=2,
            circuit_breaker_threshold=3,
            circuit_breaker_timeout_ms=120000,
        ),
    }


def default_batch_configs() -> Dict[BatchType, BatchConfig]:
    """Batch configs for each batch type (deletes share the upsert config)."""
    upsert = BatchConfig(
        max_batch_size=100,
        min_batch_size=10,
        flush_interval_ms=1000,
        max_wait_time_ms=5000,
        concurrent_batches=3,
        adaptive_sizing=True,
    )
    return {
        BatchType.SEARCH_UPSERT: upsert,
        BatchType.SEARCH_DELETE: upsert,
        BatchType.SOURCE_FETCH: BatchConfig(
            max_batch_size=50,
            min_batch_size=5,
            flush_interval_ms=500,
            max_wait_time_ms=2000,
            concurrent_batches=2,
            adaptive_sizing=True,
        ),
    }


@dataclass(frozen=True)
class SourceAPIConfig:
    """E-commerce platform API configuration."""

    base_url: str = field(
        default_factory=lambda: os.getenv("SOURCE_API_BASE_URL", "https://api.tiendanube.com/v1")
    )
    user_agent: str = field(
        default_factory=lambda: os.getenv("SOURCE_USER_AGENT", "storesync/1.0")
    )
    request_timeout: float = 30.0
    page_size: int = 50
    max_pages: int = 100


@dataclass(frozen=True)
class SearchConfig:
    """Search index (Meilisearch) configuration."""

    url: str = field(default_factory=lambda: os.getenv("MEILISEARCH_URL", "http://localhost:7700"))
    master_key: str = field(default_factory=lambda: os.getenv("MEILISEARCH_MASTER_KEY", ""))
    namespace_prefix: str = "store"


@dataclass(frozen=True)
class StorageConfig:
    """Primary store (DuckDB) configuration."""

    db_path: Path = field(
        default_factory=lambda: Path(
            os.getenv("STORESYNC_DB_PATH", str(Path(__file__).parent.parent / "data" / "storesync.duckdb"))
        )
    )
    query_timeout: float = 30.0


@dataclass(frozen=True)
class ConsistencyPolicy:
    """Severity penalties and staleness threshold for consistency scoring."""

    staleness_days: float = field(default_factory=lambda: _env_float("CONSISTENCY_STALENESS_DAYS", 7))
    penalties: Dict[str, int] = field(default_factory=lambda: {
        "critical": 25,
        "high": 15,
        "medium": 10,
        "low": 5,
    })
    # Hours until the next suggested check, by worst finding
    next_check_hours: Dict[str, int] = field(default_factory=lambda: {
        "critical": 4,
        "high": 24,
        "any": 72,
        "none": 168,
    })
    consistent_threshold: int = 80

    def penalty(self, severity: str) -> int:
        return self.penalties.get(severity, 0)


@dataclass(frozen=True)
class LoggingConfig:
    level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    json_format: bool = field(
        default_factory=lambda: os.getenv("LOG_FORMAT", "human").lower() == "json"
    )


@dataclass(frozen=True)
class RateLimitConfig:
    profiles: Dict[TargetSystem, TargetSystemProfile] = field(default_factory=default_profiles)
    batches: Dict[BatchType, BatchConfig] = field(default_factory=default_batch_configs)


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""

    version: str = "1.0.0"
    source: SourceAPIConfig = field(default_factory=SourceAPIConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    consistency: ConsistencyPolicy = field(default_factory=ConsistencyPolicy)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# Global config instance (scripts and composition root only)
config = AppConfig()


def validate_config(app_config: AppConfig = None, require_search: bool = True) -> None:
    """
    Validate that all required configuration is present.

    Call this on application startup to fail fast with clear error messages
    instead of cryptic runtime failures.

    Raises:
        ConfigurationError: If required configuration is missing
    """
    app_config = app_config or config
    errors: List[str] = []

    if not app_config.source.base_url.startswith(("http://", "https://")):
        errors.append("SOURCE_API_BASE_URL must be an http(s) URL")

    if require_search and not app_config.search.url.startswith(("http://", "https://")):
        errors.append("MEILISEARCH_URL must be an http(s) URL")

    for system, profile in app_config.rate_limits.profiles.items():
        if profile.requests_per_second <= 0:
            errors.append(f"{system.value}: requests_per_second must be positive")
        if profile.max_concurrent < 1:
            errors.append(f"{system.value}: max_concurrent must be at least 1")
        if profile.circuit_breaker_threshold < 1:
            errors.append(f"{system.value}: circuit_breaker_threshold must be at least 1")
        if profile.retry_attempts < 0:
            errors.append(f"{system.value}: retry_attempts cannot be negative")

    for batch_type, batch in app_config.rate_limits.batches.items():
        if batch.min_batch_size < 1 or batch.min_batch_size > batch.max_batch_size:
            errors.append(
                f"{batch_type.value}: min_batch_size must be between 1 and max_batch_size"
            )
        if batch.concurrent_batches < 1:
            errors.append(f"{batch_type.value}: concurrent_batches must be at least 1")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)
