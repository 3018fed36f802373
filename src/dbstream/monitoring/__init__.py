"""
Monitoring package for dbstream.

This package provides:
- The metrics provider interface with Prometheus and in-memory backends
- Health check endpoints and system resource monitoring
- Timing context managers for operations and database calls
"""

from .metrics import (
    MetricsProvider,
    PrometheusMetrics,
    MockMetrics,
    parse_tags,
)

from .service import (
    HealthStatus,
    HealthChecker,
    MonitoringService,
)

from .middleware import (
    time_operation,
    time_database_operation,
)

__all__ = [
    # Metrics providers
    "MetricsProvider",
    "PrometheusMetrics",
    "MockMetrics",
    "parse_tags",

    # Service classes
    "HealthStatus",
    "HealthChecker",
    "MonitoringService",

    # Timing context managers
    "time_operation",
    "time_database_operation",
]
