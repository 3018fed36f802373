"""
Centralized configuration management for dbstream.

This module provides:
- Type-safe configuration dataclasses for every component
- Environment variable parsing with documented defaults
- Validation of values that must fail fast at startup

There is no module-level configuration instance: build one AppConfig
(see ``load_configuration``) and pass it to the components that need it.
"""

import os
from typing import List, Optional, Dict, Any
from dataclasses import dataclass, field
from enum import Enum

from ..core.exceptions import ConfigurationError


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes", "on")


def _env_optional_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.getenv(name)
    if value is None:
        return default
    if value.lower() in ("", "none", "null"):
        return None
    return int(value)


class Environment(str, Enum):
    """Deployment environment enumeration."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class PollerMode(str, Enum):
    """How a DB poller decides which rows to publish."""
    TIME_BASED = "time_based"
    STATE_BASED = "state_based"


@dataclass
class KafkaConfig:
    """Kafka client configuration."""
    bootstrap_servers: List[str] = field(default_factory=lambda: ["localhost:29092"])
    group_id: str = "dbstream_consumer"
    auto_offset_reset: str = "earliest"
    enable_auto_commit: bool = False
    session_timeout_ms: int = 30000
    heartbeat_interval_ms: int = 3000
    fetch_min_bytes: int = 1
    fetch_wait_max_ms: int = 500

    # Consumer loop settings
    consumer_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> "KafkaConfig":
        """Create Kafka config from environment variables."""
        return cls(
            bootstrap_servers=os.getenv(
                "KAFKA_BOOTSTRAP_SERVERS", "localhost:29092"
            ).split(","),
            group_id=os.getenv("KAFKA_GROUP_ID", "dbstream_consumer"),
            auto_offset_reset=os.getenv("KAFKA_AUTO_OFFSET_RESET", "earliest"),
            enable_auto_commit=_env_bool("KAFKA_ENABLE_AUTO_COMMIT", "false"),
            session_timeout_ms=int(os.getenv("KAFKA_SESSION_TIMEOUT_MS", "30000")),
            heartbeat_interval_ms=int(os.getenv("KAFKA_HEARTBEAT_INTERVAL_MS", "3000")),
            fetch_min_bytes=int(os.getenv("KAFKA_FETCH_MIN_BYTES", "1")),
            fetch_wait_max_ms=int(os.getenv("KAFKA_FETCH_WAIT_MAX_MS", "500")),
            consumer_timeout_ms=int(os.getenv("KAFKA_CONSUMER_TIMEOUT_MS", "5000")),
        )

    def consumer_settings(self) -> Dict[str, Any]:
        """librdkafka settings for a consumer."""
        return {
            "bootstrap.servers": ",".join(self.bootstrap_servers),
            "group.id": self.group_id,
            "auto.offset.reset": self.auto_offset_reset,
            "enable.auto.commit": self.enable_auto_commit,
            "session.timeout.ms": self.session_timeout_ms,
            "heartbeat.interval.ms": self.heartbeat_interval_ms,
            "fetch.min.bytes": self.fetch_min_bytes,
            "fetch.wait.max.ms": self.fetch_wait_max_ms,
        }

    def producer_settings(self) -> Dict[str, Any]:
        """librdkafka settings for a producer."""
        return {
            "bootstrap.servers": ",".join(self.bootstrap_servers),
            "enable.idempotence": True,
        }


@dataclass
class DatabaseConfig:
    """Relational store configuration."""
    host: str = "localhost"
    port: int = 5432
    username: str = "admin"
    password: str = "admin"
    database: str = "app_db"

    # Full SQLAlchemy URL; takes precedence over the individual fields
    url: Optional[str] = None

    # Connection pool settings
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: int = 30
    pool_recycle: int = 3600
    echo: bool = False

    # SSL settings
    ssl_mode: Optional[str] = None

    @property
    def connection_string(self) -> str:
        """Generate the async SQLAlchemy connection string."""
        if self.url:
            if self.url.startswith("postgresql://"):
                return self.url.replace("postgresql://", "postgresql+asyncpg://", 1)
            return self.url

        base_url = (
            f"postgresql+asyncpg://{self.username}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )
        if self.ssl_mode:
            return f"{base_url}?ssl={self.ssl_mode}"
        return base_url

    @property
    def is_sqlite(self) -> bool:
        return self.connection_string.startswith("sqlite")

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Create database config from environment variables."""
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            username=os.getenv("DB_USERNAME", "admin"),
            password=os.getenv("DB_PASSWORD", "admin"),
            database=os.getenv("DB_NAME", "app_db"),
            url=os.getenv("DATABASE_URL"),
            pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "20")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
            pool_recycle=int(os.getenv("DB_POOL_RECYCLE", "3600")),
            echo=_env_bool("DB_ECHO", "false"),
            ssl_mode=os.getenv("DB_SSL_MODE"),
        )


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"

    # File logging
    log_to_file: bool = False
    log_file_path: Optional[str] = None
    max_file_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5

    # Structured logging (JSON)
    structured: bool = False

    @classmethod
    def from_env(cls) -> "LoggingConfig":
        """Create logging config from environment variables."""
        return cls(
            level=os.getenv("LOG_LEVEL", "INFO").upper(),
            format=os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            date_format=os.getenv("LOG_DATE_FORMAT", "%Y-%m-%d %H:%M:%S"),
            log_to_file=_env_bool("LOG_TO_FILE", "false"),
            log_file_path=os.getenv("LOG_FILE_PATH"),
            max_file_size=int(os.getenv("LOG_MAX_FILE_SIZE", str(10 * 1024 * 1024))),
            backup_count=int(os.getenv("LOG_BACKUP_COUNT", "5")),
            structured=_env_bool("LOG_STRUCTURED", "false"),
        )


@dataclass
class MonitoringConfig:
    """Monitoring and metrics configuration."""
    enabled: bool = True
    health_check_port: int = 8001
    metrics_namespace: str = "dbstream"

    prometheus_enabled: bool = True
    collect_system_metrics: bool = True

    @classmethod
    def from_env(cls) -> "MonitoringConfig":
        """Create monitoring config from environment variables."""
        return cls(
            enabled=_env_bool("MONITORING_ENABLED", "true"),
            health_check_port=int(os.getenv("HEALTH_CHECK_PORT", "8001")),
            metrics_namespace=os.getenv("METRICS_NAMESPACE", "dbstream"),
            prometheus_enabled=_env_bool("PROMETHEUS_ENABLED", "true"),
            collect_system_metrics=_env_bool("COLLECT_SYSTEM_METRICS", "true"),
        )


@dataclass
class ConsumerConfig:
    """Batch consumer configuration."""
    topics: List[str] = field(default_factory=list)

    # Batching
    batch_size: int = 500
    retry_delay_seconds: float = 1.0

    # Slicing
    compacted: bool = False
    no_keys: bool = False
    key_field: Optional[str] = None

    # Persistence
    max_db_batch_size: Optional[int] = None
    bulk_import_id_column: str = "bulk_import_id"
    replace_associations: bool = True

    # Deadlock handling
    deadlock_retries: int = 2
    deadlock_retry_delay_seconds: float = 0.5
    deadlock_retry_jitter_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "ConsumerConfig":
        """Create consumer config from environment variables."""
        topics_str = os.getenv("CONSUMER_TOPICS", "")
        topics = [topic.strip() for topic in topics_str.split(",") if topic.strip()]

        return cls(
            topics=topics,
            batch_size=int(os.getenv("CONSUMER_BATCH_SIZE", "500")),
            retry_delay_seconds=float(os.getenv("CONSUMER_RETRY_DELAY", "1.0")),
            compacted=_env_bool("CONSUMER_COMPACTED", "false"),
            no_keys=_env_bool("CONSUMER_NO_KEYS", "false"),
            key_field=os.getenv("CONSUMER_KEY_FIELD"),
            max_db_batch_size=_env_optional_int("CONSUMER_MAX_DB_BATCH_SIZE", None),
            bulk_import_id_column=os.getenv("CONSUMER_BULK_IMPORT_ID_COLUMN", "bulk_import_id"),
            replace_associations=_env_bool("CONSUMER_REPLACE_ASSOCIATIONS", "true"),
            deadlock_retries=int(os.getenv("CONSUMER_DEADLOCK_RETRIES", "2")),
            deadlock_retry_delay_seconds=float(os.getenv("CONSUMER_DEADLOCK_DELAY", "0.5")),
            deadlock_retry_jitter_seconds=float(os.getenv("CONSUMER_DEADLOCK_JITTER", "5.0")),
        )

    def validate(self) -> None:
        if self.batch_size <= 0:
            raise ConfigurationError("Consumer batch size must be positive")
        if self.max_db_batch_size is not None and self.max_db_batch_size <= 0:
            raise ConfigurationError("max_db_batch_size must be positive when set")
        if self.deadlock_retries < 0:
            raise ConfigurationError("Deadlock retries cannot be negative")


@dataclass
class PollerConfig:
    """Configuration for one DB poller."""
    producer_class: Optional[str] = None
    mode: PollerMode = PollerMode.TIME_BASED

    # Scheduling
    run_every: float = 60.0
    delay_time: float = 2.0
    idle_sleep_seconds: float = 0.1
    batch_size: int = 1000

    # Failure handling; retries of None means retry forever
    retries: Optional[int] = 1
    retry_delay_seconds: float = 0.5
    skip_too_large_messages: bool = False

    # Time-based
    timestamp_column: str = "updated_at"
    full_table: bool = False
    start_from_beginning: bool = True

    # State-based
    state_column: Optional[str] = None
    publish_timestamp_column: Optional[str] = None
    published_state: Optional[str] = None
    failed_state: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PollerConfig":
        """Create a poller config from a mapping, e.g. a YAML entry."""
        known = {name for name in cls.__dataclass_fields__}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown poller settings: {sorted(unknown)}")

        values = dict(data)
        if "mode" in values:
            values["mode"] = PollerMode(values["mode"])
        return cls(**values)

    def validate(self) -> None:
        if not self.producer_class:
            raise ConfigurationError("Poller is missing producer_class")
        if self.batch_size <= 0:
            raise ConfigurationError("Poller batch size must be positive")
        if self.mode == PollerMode.STATE_BASED and not self.state_column:
            raise ConfigurationError(
                f"State-based poller for {self.producer_class} needs a state_column"
            )


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = False

    # Component configs
    kafka: KafkaConfig = field(default_factory=KafkaConfig.from_env)
    database: DatabaseConfig = field(default_factory=DatabaseConfig.from_env)
    logging: LoggingConfig = field(default_factory=LoggingConfig.from_env)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig.from_env)
    consumer: ConsumerConfig = field(default_factory=ConsumerConfig.from_env)
    pollers: List[PollerConfig] = field(default_factory=list)

    # Application settings
    app_name: str = "dbstream"
    version: str = "1.0.0"

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Create application config from environment variables."""
        env_str = os.getenv("ENVIRONMENT", "development").lower()
        try:
            environment = Environment(env_str)
        except ValueError:
            environment = Environment.DEVELOPMENT

        return cls(
            environment=environment,
            debug=_env_bool("DEBUG", "false"),
            app_name=os.getenv("APP_NAME", "dbstream"),
            version=os.getenv("APP_VERSION", "1.0.0"),
        )

    def validate(self) -> None:
        """Validate configuration values."""
        if not self.kafka.bootstrap_servers:
            raise ConfigurationError("At least one Kafka bootstrap server must be configured")

        self.consumer.validate()

        seen = set()
        for poller in self.pollers:
            poller.validate()
            if poller.producer_class in seen:
                raise ConfigurationError(
                    f"Two pollers configured for producer {poller.producer_class}"
                )
            seen.add(poller.producer_class)

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary for logging."""
        return {
            "environment": self.environment.value,
            "debug": self.debug,
            "app_name": self.app_name,
            "version": self.version,
            "kafka": {
                "bootstrap_servers": self.kafka.bootstrap_servers,
                "group_id": self.kafka.group_id,
            },
            "database": {
                "host": self.database.host,
                "port": self.database.port,
                "database": self.database.database,
            },
            "consumer": {
                "topics": self.consumer.topics,
                "batch_size": self.consumer.batch_size,
                "max_db_batch_size": self.consumer.max_db_batch_size,
            },
            "pollers": [
                {"producer_class": p.producer_class, "mode": p.mode.value}
                for p in self.pollers
            ],
        }
