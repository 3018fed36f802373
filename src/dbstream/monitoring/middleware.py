"""
Timing helpers for automatic metrics collection.

This module provides:
- Database operation timing context manager
- Generic operation timing context manager
- Performance logging on success and failure
"""

import time
from contextlib import asynccontextmanager
from typing import Optional

from ..core.logging import performance_logger
from .metrics import MetricsProvider


@asynccontextmanager
async def time_operation(operation: str, metrics: Optional[MetricsProvider] = None, tags=None):
    """
    Time a block, record a ``<operation>`` histogram and a performance log line.

    Usage:
        async with time_operation('poll_page', metrics, tags=['producer:widgets']):
            ...
    """
    start_time = time.monotonic()
    try:
        yield
    except Exception as e:
        duration = time.monotonic() - start_time
        performance_logger.log_operation(
            operation, duration * 1000, success=False, extra={"error": str(e)}
        )
        raise

    duration = time.monotonic() - start_time
    if metrics is not None:
        metrics.histogram(operation, duration, tags=tags)
    performance_logger.log_operation(operation, duration * 1000)


@asynccontextmanager
async def time_database_operation(
    operation: str,
    table: str,
    record_count: int = 0,
    metrics: Optional[MetricsProvider] = None,
):
    """
    Context manager for timing database operations.

    Usage:
        async with time_database_operation('upsert', 'widgets', len(rows), metrics):
            await session.execute(stmt)
    """
    start_time = time.monotonic()
    try:
        yield
    except Exception:
        duration = time.monotonic() - start_time
        performance_logger.log_database_operation(
            operation, table, record_count, duration * 1000, success=False
        )
        raise

    duration = time.monotonic() - start_time
    if metrics is not None:
        metrics.histogram("db_operation", duration, tags=[f"operation:{operation}", f"table:{table}"])
    performance_logger.log_database_operation(operation, table, record_count, duration * 1000)
