"""
Test configuration and fixtures for dbstream tests.

This module provides:
- A fresh in-memory SQLite database per test, and a file-backed one for
  tests that run several pollers at once, with dbstream's and the
  application tables created
- Metrics and publisher doubles
- Consumer and poller settings without back-off pauses
"""

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

from dbstream.config import ConsumerConfig, PollerConfig
from dbstream.database import Base, DatabaseManager
from dbstream.monitoring import MockMetrics
from dbstream.poller import MemoryPublisher

from factories import MockMessage
from support_models import AppBase


@pytest.fixture
async def database():
    """DatabaseManager over a private in-memory SQLite database."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.run_sync(AppBase.metadata.create_all)

    manager = DatabaseManager(engine=engine)
    yield manager

    await manager.close()


@pytest.fixture
async def file_database(tmp_path):
    """DatabaseManager over a SQLite file, one connection per session."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'dbstream.sqlite'}",
        poolclass=NullPool,
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.run_sync(AppBase.metadata.create_all)

    manager = DatabaseManager(engine=engine)
    yield manager

    await manager.close()


@pytest.fixture
def metrics() -> MockMetrics:
    return MockMetrics()


@pytest.fixture
def publisher() -> MemoryPublisher:
    return MemoryPublisher()


@pytest.fixture
def consumer_config() -> ConsumerConfig:
    """Consumer settings without deadlock back-off pauses."""
    return ConsumerConfig(
        topics=["widgets"],
        deadlock_retry_delay_seconds=0,
        deadlock_retry_jitter_seconds=0,
        retry_delay_seconds=0,
    )


@pytest.fixture
def poller_config() -> PollerConfig:
    return PollerConfig(
        producer_class="support_models.EventProducer",
        run_every=0,
        delay_time=0,
        idle_sleep_seconds=0.01,
        retry_delay_seconds=0,
    )


@pytest.fixture
def mock_kafka_message():
    return MockMessage


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
