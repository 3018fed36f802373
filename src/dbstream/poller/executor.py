"""
Running a set of pollers.

This module provides:
- PollerExecutor: one asyncio task per poller, restarted with backoff on crash
- Resolution of configured producer classes
- build_pollers / run_pollers to start every configured poller
"""

import asyncio
import importlib
import logging
import signal
from typing import List, Optional, Type

from ..config.settings import AppConfig, PollerMode
from ..core.exceptions import ConfigurationError
from ..database.session import DatabaseManager
from ..monitoring.metrics import MetricsProvider
from .base import DbPoller
from .producer import RowProducer
from .publisher import Publisher
from .state_based import StateBasedPoller
from .time_based import TimeBasedPoller

logger = logging.getLogger(__name__)


def class_for_config(mode) -> Type[DbPoller]:
    if PollerMode(mode) == PollerMode.STATE_BASED:
        return StateBasedPoller
    return TimeBasedPoller


def resolve_producer_class(path: Optional[str]) -> Type[RowProducer]:
    """Import ``package.module.ClassName`` and check it is a RowProducer."""
    module_name, _, class_name = (path or "").rpartition(".")
    if not module_name or not class_name:
        raise ConfigurationError(f"Class {path} not found!")
    try:
        module = importlib.import_module(module_name)
        producer_class = getattr(module, class_name)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Class {path} not found!") from e

    if not isinstance(producer_class, type) or not issubclass(producer_class, RowProducer):
        raise ConfigurationError(f"Class {path} is not a RowProducer!")
    return producer_class


class PollerExecutor:
    """
    Runs pollers concurrently.

    A poller whose ``start`` raises is restarted after ``sleep_seconds``,
    doubling on each consecutive crash up to ``max_sleep_seconds``.
    """

    def __init__(
        self,
        pollers: List[DbPoller],
        sleep_seconds: float = 5.0,
        max_sleep_seconds: float = 60.0,
    ):
        self.pollers = pollers
        self.sleep_seconds = sleep_seconds
        self.max_sleep_seconds = max_sleep_seconds
        self._stop_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    async def start(self) -> None:
        self._stop_event.clear()
        self._tasks = [
            asyncio.create_task(self._run(poller), name=f"poller-{poller.id}")
            for poller in self.pollers
        ]
        await asyncio.gather(*self._tasks)

    async def _run(self, poller: DbPoller) -> None:
        failures = 0
        while not self._stop_event.is_set():
            try:
                await poller.start()
                return
            except Exception as e:
                failures += 1
                delay = min(self.sleep_seconds * 2 ** (failures - 1), self.max_sleep_seconds)
                logger.error(
                    f"Poller {poller.identity} crashed: {e}; restarting in {delay:.1f}s",
                    exc_info=e,
                )
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass

    def stop(self) -> None:
        logger.info("Stopping pollers")
        self._stop_event.set()
        for poller in self.pollers:
            poller.stop()


def build_pollers(
    config: AppConfig,
    database: DatabaseManager,
    publisher: Publisher,
    metrics: Optional[MetricsProvider] = None,
) -> List[DbPoller]:
    if not config.pollers:
        raise ConfigurationError("No pollers configured!")

    pollers = []
    for poller_config in config.pollers:
        poller_config.validate()
        producer_class = resolve_producer_class(poller_config.producer_class)
        poller_class = class_for_config(poller_config.mode)
        pollers.append(poller_class(poller_config, database, producer_class(publisher), metrics))
    return pollers


async def run_pollers(
    config: AppConfig,
    database: DatabaseManager,
    publisher: Publisher,
    metrics: Optional[MetricsProvider] = None,
) -> None:
    """Run every configured poller until SIGINT or SIGTERM."""
    executor = PollerExecutor(build_pollers(config, database, publisher, metrics))
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, executor.stop)

    try:
        await executor.start()
    finally:
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)
        await publisher.close()
