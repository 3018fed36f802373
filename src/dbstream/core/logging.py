"""
Logging configuration for dbstream.

This module provides:
- Structured logging with JSON output
- Console and rotating file handlers
- Log correlation IDs carried through contextvars
- Performance logging for batches and database operations
- Environment-specific logging levels for third-party libraries
"""

import os
import sys
import uuid
import logging
import logging.handlers
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path
from contextvars import ContextVar
from pythonjsonlogger import jsonlogger

from ..config.settings import LoggingConfig, Environment


# Context variables for log correlation
correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
batch_id: ContextVar[Optional[str]] = ContextVar('batch_id', default=None)


class StructuredFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding timestamp, correlation and service fields."""

    def __init__(self, *args, service: str = 'dbstream', **kwargs):
        super().__init__(*args, **kwargs)
        self.service = service

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.now(timezone.utc).isoformat()
        log_record['level'] = record.levelname

        if correlation_id.get():
            log_record['correlation_id'] = correlation_id.get()
        if batch_id.get():
            log_record['batch_id'] = batch_id.get()

        log_record['service'] = self.service
        log_record['version'] = os.getenv('APP_VERSION', '1.0.0')
        log_record['environment'] = os.getenv('ENVIRONMENT', 'development')

        if hasattr(record, 'duration_ms'):
            log_record['duration_ms'] = record.duration_ms
        if hasattr(record, 'operation'):
            log_record['operation'] = record.operation


class LogContextManager:
    """Context manager for log correlation."""

    def __init__(self, corr_id: Optional[str] = None, batch: Optional[str] = None):
        self.corr_id = corr_id or correlation_id.get()
        self.batch = batch or batch_id.get()
        self.token_corr = None
        self.token_batch = None

    def __enter__(self):
        self.token_corr = correlation_id.set(self.corr_id)
        self.token_batch = batch_id.set(self.batch)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        correlation_id.reset(self.token_corr)
        batch_id.reset(self.token_batch)


def setup_logging(
    config: LoggingConfig,
    environment: Environment,
    service: str = 'dbstream',
) -> None:
    """
    Set up logging for the process.

    Args:
        config: Logging configuration
        environment: Deployment environment
        service: Service name stamped on structured records
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    level = getattr(logging, config.level.upper(), logging.INFO)
    root_logger.setLevel(level)

    if config.structured:
        formatter = StructuredFormatter(
            fmt='%(timestamp)s %(level)s %(name)s %(message)s',
            service=service,
        )
    else:
        formatter = logging.Formatter(
            fmt=config.format,
            datefmt=config.date_format
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if config.log_to_file and config.log_file_path:
        log_path = Path(config.log_file_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=str(log_path),
            maxBytes=config.max_file_size,
            backupCount=config.backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    if environment == Environment.PRODUCTION:
        # Reduce noise from third-party libraries
        logging.getLogger('sqlalchemy').setLevel(logging.WARNING)
        logging.getLogger('confluent_kafka').setLevel(logging.WARNING)
        logging.getLogger('aiohttp').setLevel(logging.WARNING)
    elif environment == Environment.DEVELOPMENT:
        logging.getLogger('dbstream').setLevel(logging.DEBUG)


class PerformanceLogger:
    """Logger for performance monitoring."""

    def __init__(self, logger_name: str = 'dbstream.performance'):
        self.logger = logging.getLogger(logger_name)

    def log_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool = True,
        extra: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log operation performance."""
        level = logging.INFO if success else logging.WARNING

        extra_data = dict(extra or {})
        extra_data.update({
            'operation': operation,
            'duration_ms': duration_ms,
            'perf_success': success,
        })

        self.logger.log(
            level,
            f"Operation {operation} completed in {duration_ms:.2f}ms",
            extra=extra_data
        )

    def log_batch(
        self,
        batch_size: int,
        processing_time_ms: float,
        success: bool = True,
        extra: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log batch processing performance."""
        level = logging.INFO if success else logging.ERROR

        throughput = batch_size / (processing_time_ms / 1000) if processing_time_ms > 0 else 0

        extra_data = dict(extra or {})
        extra_data.update({
            'perf_batch_size': batch_size,
            'perf_processing_time_ms': processing_time_ms,
            'perf_throughput_msg_per_sec': throughput,
            'perf_success': success,
        })

        self.logger.log(
            level,
            f"Processed batch of {batch_size} messages in {processing_time_ms:.2f}ms "
            f"({throughput:.2f} msg/s)",
            extra=extra_data
        )

    def log_database_operation(
        self,
        operation: str,
        table: str,
        record_count: int,
        duration_ms: float,
        success: bool = True,
        extra: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log database operation performance."""
        level = logging.DEBUG if success else logging.ERROR

        records_per_sec = record_count / (duration_ms / 1000) if duration_ms > 0 else 0

        extra_data = dict(extra or {})
        extra_data.update({
            'operation': operation,
            'perf_table': table,
            'perf_record_count': record_count,
            'duration_ms': duration_ms,
            'perf_records_per_sec': records_per_sec,
            'perf_success': success,
        })

        self.logger.log(
            level,
            f"DB {operation} on {table}: {record_count} records in {duration_ms:.2f}ms "
            f"({records_per_sec:.2f} rec/s)",
            extra=extra_data
        )


performance_logger = PerformanceLogger()


def get_correlation_id() -> Optional[str]:
    """Get current correlation ID."""
    return correlation_id.get()


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return str(uuid.uuid4())
