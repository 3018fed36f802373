"""
Configuration validation utilities.

Provides startup checks that go beyond static validation:
- Database connectivity and presence of the poll checkpoint table
- Kafka broker connectivity and topic existence
- Resolvability of every configured poller producer class
"""

import logging
from typing import Dict, Any

from sqlalchemy import inspect, text
from sqlalchemy.ext.asyncio import create_async_engine
from confluent_kafka import Consumer, KafkaException

from ..core.exceptions import ConfigurationError
from .settings import AppConfig

logger = logging.getLogger(__name__)

POLL_INFO_TABLE = "dbstream_poll_info"


class ConfigValidator:
    """Configuration validator for dbstream services."""

    def __init__(self, config: AppConfig):
        self.config = config

    async def validate_all(self) -> Dict[str, Any]:
        """
        Validate all configuration components.

        Returns:
            Dict containing validation results for each component
        """
        results = {
            "config": self.validate_static(),
            "database": await self.validate_database(),
            "kafka": self.validate_kafka(),
            "pollers": self.validate_pollers(),
            "overall_status": "healthy",
        }

        failed_components = [
            component for component, status in results.items()
            if isinstance(status, dict) and status.get("status") == "failed"
        ]

        if failed_components:
            results["overall_status"] = "unhealthy"
            results["failed_components"] = failed_components

        return results

    def validate_static(self) -> Dict[str, Any]:
        try:
            self.config.validate()
        except ConfigurationError as e:
            return {"status": "failed", "error": str(e)}
        return {"status": "healthy"}

    async def validate_database(self) -> Dict[str, Any]:
        """
        Validate database connectivity and schema.

        Tests:
        - Connection establishment
        - Poll checkpoint table existence (only needed when pollers are configured)
        """
        engine = create_async_engine(self.config.database.connection_string)
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
                tables = await conn.run_sync(
                    lambda sync_conn: inspect(sync_conn).get_table_names()
                )

            if self.config.pollers and POLL_INFO_TABLE not in tables:
                return {
                    "status": "failed",
                    "error": f"Missing required table: {POLL_INFO_TABLE}",
                    "existing_tables": sorted(tables),
                }

            return {
                "status": "healthy",
                "message": "Database connection and schema validation successful",
            }

        except Exception as e:
            logger.error(f"Database validation failed: {e}")
            return {
                "status": "failed",
                "error": str(e),
                "connection_string": mask_connection_string(
                    self.config.database.connection_string
                ),
            }
        finally:
            await engine.dispose()

    def validate_kafka(self) -> Dict[str, Any]:
        """
        Validate Kafka connectivity and topic accessibility.

        Missing topics produce a warning, not a failure: brokers may
        auto-create them.
        """
        settings = self.config.kafka.consumer_settings()
        settings["group.id"] = f"{self.config.kafka.group_id}_validation"

        consumer = None
        try:
            consumer = Consumer(settings)
            metadata = consumer.list_topics(timeout=10.0)
            if metadata is None:
                raise KafkaException("Failed to retrieve cluster metadata")

            available_topics = set(metadata.topics.keys())
            configured_topics = set(self.config.consumer.topics)
            missing_topics = configured_topics - available_topics

            if missing_topics:
                return {
                    "status": "warning",
                    "message": f"Some topics do not exist yet: {missing_topics}",
                    "missing_topics": sorted(missing_topics),
                }

            return {
                "status": "healthy",
                "message": "Kafka connectivity and topic validation successful",
                "topic_partitions": {
                    topic: len(metadata.topics[topic].partitions)
                    for topic in configured_topics
                },
            }

        except KafkaException as e:
            logger.error(f"Kafka validation failed: {e}")
            return {
                "status": "failed",
                "error": str(e),
                "bootstrap_servers": self.config.kafka.bootstrap_servers,
            }
        finally:
            if consumer:
                consumer.close()

    def validate_pollers(self) -> Dict[str, Any]:
        """Check that every configured producer class can be imported."""
        # Imported here: the poller package depends on config.
        from ..poller.executor import resolve_producer_class

        errors = {}
        for poller in self.config.pollers:
            try:
                resolve_producer_class(poller.producer_class)
            except ConfigurationError as e:
                errors[poller.producer_class] = str(e)

        if errors:
            return {"status": "failed", "errors": errors}
        return {"status": "healthy", "count": len(self.config.pollers)}


def mask_connection_string(conn_string: str) -> str:
    """Mask credentials in a connection string for logging."""
    if "://" in conn_string and "@" in conn_string:
        protocol_end = conn_string.find("://") + 3
        at_symbol = conn_string.rfind("@")
        if protocol_end < at_symbol:
            return conn_string[:protocol_end] + "***:***" + conn_string[at_symbol:]
    return conn_string


async def validate_configuration(config: AppConfig) -> Dict[str, Any]:
    """
    Convenience function to validate configuration.

    Args:
        config: Application configuration to validate

    Returns:
        Validation results dictionary
    """
    validator = ConfigValidator(config)
    return await validator.validate_all()
