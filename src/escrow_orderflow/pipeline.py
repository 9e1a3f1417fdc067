"""Service orchestration for the escrow orderflow pipeline.

Each deployable process is one service:

    listen:  Solana logs -> EventNormalizer -> escrow.events.v1
    store:   escrow.events.v1 -> StorageProjector (event log + offers)
    risk:    escrow.events.v1 -> RiskEvaluator -> escrow.alerts.v1
    notify:  escrow.events.v1 + escrow.alerts.v1 -> Notifier

Services share a lifecycle (``start``/``stop``/``run`` and async context
manager). A fatal error (retries exhausted) stops the service and is
re-raised from ``run()``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

from redis.asyncio import Redis

from escrow_orderflow.bus.redis_streams import RedisStreamBus
from escrow_orderflow.config import Settings, get_settings
from escrow_orderflow.consumer.framework import ConsumerGroupRunner, MessageHandler
from escrow_orderflow.ingestor.log_source import SolanaLogStreamHandler
from escrow_orderflow.ingestor.normalizer import EventNormalizer
from escrow_orderflow.notifier.formatter import NotificationFormatter
from escrow_orderflow.notifier.notifier import DeliveryLedger, LogChannel, Notifier
from escrow_orderflow.projector.projector import StorageProjector
from escrow_orderflow.projector.replay import ReplayReport, ReplayRunner, VerifyReport
from escrow_orderflow.risk.evaluator import RiskEvaluator
from escrow_orderflow.risk.history import RedisHistoryStore
from escrow_orderflow.risk.rules import default_registry
from escrow_orderflow.storage.database import DatabaseManager

if TYPE_CHECKING:
    from escrow_orderflow.bus.models import EventBus

logger = logging.getLogger(__name__)

ConsumerRole = Literal["store", "risk", "notify"]


class ServiceState(str, Enum):
    """Service lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ServiceStats:
    """Lifecycle statistics for a service."""

    started_at: datetime | None = None
    stopped_at: datetime | None = None
    last_error: str | None = None


class _Service:
    """Lifecycle shared by the listener and consumer services."""

    name = "service"

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        redis: Redis | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._state = ServiceState.STOPPED
        self._stats = ServiceStats()

        self._redis = redis
        self._owns_redis = redis is None
        self._bus = bus
        self._main_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ServiceState:
        """Current service state."""
        return self._state

    @property
    def stats(self) -> ServiceStats:
        """Current service statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == ServiceState.RUNNING

    def _get_redis(self) -> Redis:
        if self._redis is None:
            self._redis = Redis.from_url(self._settings.redis.url)
        return self._redis

    def _get_bus(self) -> EventBus:
        if self._bus is None:
            self._bus = RedisStreamBus(self._get_redis(), partitions=self._settings.bus.partitions)
        return self._bus

    async def _initialize_components(self) -> None:
        raise NotImplementedError

    async def _main(self) -> None:
        raise NotImplementedError

    def request_stop(self) -> None:
        """Ask the service to finish its current work and stop."""
        raise NotImplementedError

    async def _drain(self) -> None:
        """Wait for the main task after ``request_stop()``."""
        if self._main_task is None:
            return
        timeout = self._settings.consumer.shutdown_timeout_seconds
        done, _ = await asyncio.wait({self._main_task}, timeout=timeout)
        if not done:
            logger.warning("%s did not drain within %.0fs; cancelling", self.name, timeout)
            self._main_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._main_task

    async def start(self) -> None:
        """Start the service.

        Raises:
            RuntimeError: If the service is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != ServiceState.STOPPED:
            raise RuntimeError(f"Cannot start {self.name} in state {self._state}")

        self._state = ServiceState.STARTING
        logger.info("Starting %s service...", self.name)
        try:
            await self._initialize_components()
            self._main_task = asyncio.create_task(self._main(), name=self.name)
            self._stats.started_at = datetime.now(UTC)
            self._state = ServiceState.RUNNING
            logger.info("%s service started", self.name)
        except Exception as e:
            self._state = ServiceState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start %s service: %s", self.name, e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the service gracefully, letting in-flight work finish."""
        if self._state in (ServiceState.STOPPED, ServiceState.STOPPING):
            return

        failed = self._state == ServiceState.ERROR
        self._state = ServiceState.STOPPING
        logger.info("Stopping %s service...", self.name)
        self.request_stop()
        await self._drain()
        await self._cleanup()

        self._stats.stopped_at = datetime.now(UTC)
        self._state = ServiceState.ERROR if failed else ServiceState.STOPPED
        logger.info("%s service stopped", self.name)

    async def _cleanup(self) -> None:
        """Clean up resources."""
        if self._redis is not None and self._owns_redis:
            await self._redis.aclose()
            self._redis = None
        logger.debug("Resources cleaned up")

    async def run(self) -> None:
        """Start the service and run until stopped or failed.

        Raises:
            RetryError: If a transient failure outlasted every retry.
        """
        await self.start()
        if self._main_task is None:
            raise RuntimeError(f"{self.name} service has no main task")
        try:
            await asyncio.shield(self._main_task)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            self._state = ServiceState.ERROR
            self._stats.last_error = str(e)
            logger.error("%s service failed: %s", self.name, e)
            raise
        finally:
            await self.stop()

    async def __aenter__(self) -> Any:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()


class ConsumerService(_Service):
    """Runs one downstream consumer (store, risk or notify).

    Example:
        ```python
        service = ConsumerService(get_settings(), role="store")
        await service.run()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        role: ConsumerRole,
        redis: Redis | None = None,
        bus: EventBus | None = None,
        db_manager: DatabaseManager | None = None,
    ) -> None:
        super().__init__(settings, redis=redis, bus=bus)
        self.role = role
        self.name = role
        self._db_manager = db_manager
        self._owns_db = db_manager is None
        self._runner: ConsumerGroupRunner | None = None
        self.projector: StorageProjector | None = None
        self.evaluator: RiskEvaluator | None = None
        self.notifier: Notifier | None = None

    @property
    def runner(self) -> ConsumerGroupRunner | None:
        return self._runner

    def _build_handlers(self) -> tuple[str, dict[str, MessageHandler]]:
        s = self._settings
        if self.role == "store":
            if self._db_manager is None:
                self._db_manager = DatabaseManager(s.database.url)
            self.projector = StorageProjector(
                self._db_manager.session_factory,
                orphan_max_attempts=s.projector.orphan_max_attempts,
                orphan_retry_delay_seconds=s.projector.orphan_retry_delay_seconds,
            )
            return s.bus.storage_group, {s.bus.events_topic: self.projector.handle}

        if self.role == "risk":
            redis = self._get_redis()
            self.evaluator = RiskEvaluator(
                self._get_bus(),
                redis,
                RedisHistoryStore(
                    redis,
                    window_ms=s.risk.cancel_window_minutes * 60 * 1000,
                    max_entries=s.risk.history_max_entries,
                ),
                registry=default_registry(s.risk),
                alerts_topic=s.bus.alerts_topic,
            )
            return s.bus.risk_group, {s.bus.events_topic: self.evaluator.handle}

        self.notifier = Notifier(
            DeliveryLedger(self._get_redis(), ttl_seconds=s.notifier.dedup_ttl_seconds),
            channels=[LogChannel()],
            formatter=NotificationFormatter(s.notifier.verbosity),
            events_topic=s.bus.events_topic,
            alerts_topic=s.bus.alerts_topic,
        )
        return s.bus.notifier_group, self.notifier.handlers()

    async def _initialize_components(self) -> None:
        group, handlers = self._build_handlers()
        s = self._settings
        self._runner = ConsumerGroupRunner(
            self._get_bus(),
            group=group,
            handlers=handlers,
            read_count=s.bus.read_batch_size,
            block_ms=s.bus.read_block_ms,
            lease_ttl_seconds=s.bus.lease_ttl_seconds,
            max_retries=s.consumer.max_retries,
            base_delay=s.consumer.base_delay_seconds,
            max_delay=s.consumer.max_delay_seconds,
        )

    async def _main(self) -> None:
        if self._runner is None:
            raise RuntimeError("consumer service was not initialized")
        await self._runner.run()

    def request_stop(self) -> None:
        if self._runner is not None:
            self._runner.request_stop()

    async def _cleanup(self) -> None:
        if self._db_manager is not None and self._owns_db:
            await self._db_manager.dispose_async()
            self._db_manager = None
        await super()._cleanup()


class ListenerService(_Service):
    """Subscribes to program logs and publishes normalized events."""

    name = "listen"

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        redis: Redis | None = None,
        bus: EventBus | None = None,
    ) -> None:
        super().__init__(settings, redis=redis, bus=bus)
        self.normalizer: EventNormalizer | None = None
        self.stream: SolanaLogStreamHandler | None = None
        self._stop_task: asyncio.Task[None] | None = None

    async def _initialize_components(self) -> None:
        s = self._settings
        self.normalizer = EventNormalizer(
            self._get_bus(),
            topic=s.bus.events_topic,
            cluster=s.solana.cluster,
            program_id=s.solana.program_id,
            max_in_flight=s.normalizer.max_in_flight,
            publish_max_retries=s.normalizer.publish_max_retries,
            publish_base_delay=s.normalizer.publish_base_delay_seconds,
            publish_max_delay=s.normalizer.publish_max_delay_seconds,
        )
        self.stream = SolanaLogStreamHandler(
            host=s.solana.ws_url,
            program_id=s.solana.program_id,
            commitment=s.solana.commitment,
            on_record=self.normalizer.submit,
        )

    async def _main(self) -> None:
        if self.normalizer is None or self.stream is None:
            raise RuntimeError("listener service was not initialized")
        stream_task = asyncio.create_task(self.stream.start(), name="log-stream")
        failure_task = asyncio.create_task(self.normalizer.wait_failed(), name="normalizer-failure")
        try:
            done, _ = await asyncio.wait({stream_task, failure_task}, return_when=asyncio.FIRST_COMPLETED)
            if failure_task in done:
                await self.stream.stop()
                raise failure_task.result()
            # Surface stream errors (including a publish failure raised from submit()).
            stream_task.result()
        finally:
            failure_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await failure_task
            if not stream_task.done():
                await self.stream.stop()
                with contextlib.suppress(asyncio.CancelledError):
                    await stream_task
        await self.normalizer.drain()

    def request_stop(self) -> None:
        if self.stream is not None and self._stop_task is None:
            self._stop_task = asyncio.get_running_loop().create_task(self.stream.stop())


async def run_replay(
    settings: Settings | None = None, *, verify: bool = False
) -> ReplayReport | VerifyReport:
    """Rebuild (or verify) the offer view from the event log."""
    s = settings or get_settings()
    db = DatabaseManager(s.database.url)
    try:
        runner = ReplayRunner(db.session_factory, batch_size=s.projector.replay_batch_size)
        if verify:
            return await runner.verify()
        return await runner.rebuild()
    finally:
        await db.dispose_async()
