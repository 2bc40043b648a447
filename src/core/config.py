"""
Runtime configuration for the activity warehouse sync.

Settings are read from environment variables (optionally seeded from a
``.env`` file) into pydantic models. The pseudonymization key is loaded once
at startup by ``load_secret_key`` and passed explicitly to the transformer.
"""

import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from src.core.errors import ConfigurationError
from src.utils.validation import sanitize_sql_identifier


def _env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    return value if value not in (None, "") else default


class DatabaseSettings(BaseModel):
    """Connection settings for one PostgreSQL database."""

    host: str = "localhost"
    port: int = 5432
    database: str
    user: str = "pipeline"
    password: str | None = None
    min_size: int = Field(default=2, ge=1)
    max_size: int = Field(default=10, ge=1)
    timeout: float = Field(default=30.0, gt=0)
    statement_timeout_ms: int = Field(default=30_000, gt=0)

    @classmethod
    def from_env(cls, prefix: str, default_database: str) -> "DatabaseSettings":
        """
        Read ``{prefix}_HOST``, ``{prefix}_PORT`` etc., falling back to the
        shared ``DB_*`` variables.
        """

        def pick(suffix: str, default: str | None = None) -> str | None:
            return _env(f"{prefix}_{suffix}", _env(f"DB_{suffix}", default))

        return cls(
            host=pick("HOST", "localhost"),
            port=int(pick("PORT", "5432")),
            database=pick("NAME", default_database),
            user=pick("USER", "pipeline"),
            password=pick("PASSWORD"),
            min_size=int(pick("POOL_MIN_SIZE", "2")),
            max_size=int(pick("POOL_MAX_SIZE", "10")),
            timeout=float(pick("CONNECT_TIMEOUT", "30")),
            statement_timeout_ms=int(pick("STATEMENT_TIMEOUT_MS", "30000")),
        )


class RetrySettings(BaseModel):
    """Backoff schedule for live delivery."""

    max_attempts: int = Field(default=10, ge=1)
    base_delay_seconds: float = Field(default=1.0, gt=0)
    max_delay_seconds: float = Field(default=300.0, gt=0)

    @model_validator(mode="after")
    def _check_bounds(self) -> "RetrySettings":
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self


class ReprocessSettings(BaseModel):
    """Dead letter sweep schedule and limits."""

    interval_seconds: float = Field(default=300.0, gt=0)
    page_size: int = Field(default=100, ge=1)
    time_budget_seconds: float = Field(default=240.0, gt=0)
    lease_ttl_seconds: float = Field(default=600.0, gt=0)
    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=1.0, gt=0)
    max_delay_seconds: float = Field(default=30.0, gt=0)
    max_reprocess_sweeps: int = Field(default=5, ge=1)
    dead_letter_alert_threshold: int = Field(default=100, ge=0)

    @model_validator(mode="after")
    def _check_lease(self) -> "ReprocessSettings":
        if self.time_budget_seconds >= self.lease_ttl_seconds:
            raise ValueError("time_budget_seconds must be < lease_ttl_seconds")
        return self


class WorkerSettings(BaseModel):
    """Worker pool and transport settings."""

    transport: Literal["postgres", "kafka", "memory"] = "postgres"
    partitions: int = Field(default=4, ge=1)
    claim_batch_size: int = Field(default=50, ge=1)
    visibility_timeout_seconds: float = Field(default=300.0, gt=0)
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    publish_max_attempts: int = Field(default=3, ge=1)
    publish_retry_delay_seconds: float = Field(default=0.2, ge=0)
    kafka_bootstrap_servers: str = "localhost:9092"
    kafka_topic: str = "activity-completions"
    kafka_group_id: str = "activity-warehouse-sync"


class PipelineSettings(BaseModel):
    """
    Complete configuration of the sync.

    Attributes:
        state_db: Database holding ledger, attempts, dead letters and outbox
        warehouse_db: Analytical warehouse database
        warehouse_table: Target table for anonymized rows
        field_policy_path: Optional YAML allowlist overriding the built-in one
        retry: Live delivery backoff
        reprocess: Dead letter sweep settings
        worker: Worker pool and transport
        metrics_port: Port of the Prometheus endpoint (0 disables it)
    """

    state_db: DatabaseSettings
    warehouse_db: DatabaseSettings
    warehouse_table: str = "activity_records"
    field_policy_path: Path | None = None
    retry: RetrySettings = Field(default_factory=RetrySettings)
    reprocess: ReprocessSettings = Field(default_factory=ReprocessSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    metrics_port: int = Field(default=0, ge=0)

    @field_validator("warehouse_table")
    @classmethod
    def _check_table(cls, v: str) -> str:
        return sanitize_sql_identifier(v, "warehouse_table")

    @classmethod
    def from_env(cls, env_file: str | Path | None = None) -> "PipelineSettings":
        """
        Build settings from environment variables.

        Args:
            env_file: Optional .env file loaded before reading the environment

        Raises:
            ConfigurationError: If a value is present but invalid
        """
        if env_file is not None:
            load_dotenv(env_file, override=False)

        try:
            policy_path = _env("FIELD_POLICY_PATH")
            return cls(
                state_db=DatabaseSettings.from_env("STATE_DB", "sync_state"),
                warehouse_db=DatabaseSettings.from_env("WAREHOUSE_DB", "datawarehouse"),
                warehouse_table=_env("WAREHOUSE_TABLE", "activity_records"),
                field_policy_path=Path(policy_path) if policy_path else None,
                retry=RetrySettings(
                    max_attempts=int(_env("RETRY_MAX_ATTEMPTS", "10")),
                    base_delay_seconds=float(_env("RETRY_BASE_DELAY_SECONDS", "1.0")),
                    max_delay_seconds=float(_env("RETRY_MAX_DELAY_SECONDS", "300")),
                ),
                reprocess=ReprocessSettings(
                    interval_seconds=float(_env("REPROCESS_INTERVAL_SECONDS", "300")),
                    page_size=int(_env("REPROCESS_PAGE_SIZE", "100")),
                    time_budget_seconds=float(_env("REPROCESS_TIME_BUDGET_SECONDS", "240")),
                    lease_ttl_seconds=float(_env("REPROCESS_LEASE_TTL_SECONDS", "600")),
                    max_attempts=int(_env("REPROCESS_MAX_ATTEMPTS", "3")),
                    max_reprocess_sweeps=int(_env("REPROCESS_MAX_SWEEPS", "5")),
                    dead_letter_alert_threshold=int(_env("DEAD_LETTER_ALERT_THRESHOLD", "100")),
                ),
                worker=WorkerSettings(
                    transport=_env("TRANSPORT", "postgres"),
                    partitions=int(_env("WORKER_PARTITIONS", "4")),
                    claim_batch_size=int(_env("WORKER_CLAIM_BATCH_SIZE", "50")),
                    visibility_timeout_seconds=float(_env("WORKER_VISIBILITY_TIMEOUT_SECONDS", "300")),
                    poll_interval_seconds=float(_env("WORKER_POLL_INTERVAL_SECONDS", "1.0")),
                    publish_max_attempts=int(_env("PUBLISH_MAX_ATTEMPTS", "3")),
                    kafka_bootstrap_servers=_env("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092"),
                    kafka_topic=_env("KAFKA_TOPIC", "activity-completions"),
                    kafka_group_id=_env("KAFKA_GROUP_ID", "activity-warehouse-sync"),
                ),
                metrics_port=int(_env("METRICS_PORT", "0")),
            )
        except (ValidationError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e


class SecretProvider:
    """
    Reads the pseudonymization key from ``PSEUDONYMIZATION_KEY_FILE`` (preferred)
    or ``PSEUDONYMIZATION_KEY``.
    """

    KEY_ENV = "PSEUDONYMIZATION_KEY"
    KEY_FILE_ENV = "PSEUDONYMIZATION_KEY_FILE"

    def __init__(self, environ: dict[str, str] | None = None):
        self.environ = os.environ if environ is None else environ

    def get_key(self) -> bytes:
        """
        Return the key bytes.

        Raises:
            ConfigurationError: If no key is configured or the key file is unreadable
        """
        key_file = self.environ.get(self.KEY_FILE_ENV)
        if key_file:
            try:
                key = Path(key_file).read_bytes().strip()
            except OSError as e:
                raise ConfigurationError(f"Cannot read key file {key_file}: {e}") from e
            if not key:
                raise ConfigurationError(f"Key file {key_file} is empty")
            return key

        key = self.environ.get(self.KEY_ENV, "")
        if not key.strip():
            raise ConfigurationError(
                f"Pseudonymization key missing: set {self.KEY_ENV} or {self.KEY_FILE_ENV}"
            )
        return key.encode("utf-8")


def load_secret_key(environ: dict[str, str] | None = None) -> bytes:
    """Load the process-wide pseudonymization key once at startup."""
    return SecretProvider(environ).get_key()
