"""Startup sequencing for the service's infrastructure dependencies."""

import asyncio
import logging
from collections import deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, Optional

from .clients import BrokerConnection, CacheConnection, DatastoreConnection
from .config.settings import ServiceSettings
from .errors import StartupError
from .utils.connection_state import StateChange

logger = logging.getLogger(__name__)


class ReadinessSignal:
    """Monotonic gate: once set it stays set."""

    def __init__(self):
        self._event = asyncio.Event()
        self.ready_since: Optional[datetime] = None

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    def set(self) -> None:
        if not self._event.is_set():
            self.ready_since = datetime.now()
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


class BootstrapOrchestrator:
    """
    Brings up the datastore, cache and broker, then opens the listener.

    Gate order:
    - datastore: started in the background, never blocks or fails startup
    - cache: handshake must succeed
    - broker: producer must connect
    Only then does the listener start and readiness flip to true.
    """

    def __init__(
        self,
        settings: ServiceSettings,
        datastore: DatastoreConnection,
        cache: CacheConnection,
        broker: BrokerConnection,
        listener_factory: Optional[Callable[["BootstrapOrchestrator"], Any]] = None
    ):
        self.settings = settings
        self.datastore = datastore
        self.cache = cache
        self.broker = broker
        self.readiness = ReadinessSignal()

        if listener_factory is None:
            from .app import HttpListener
            listener_factory = HttpListener
        self.listener = listener_factory(self)

        self.timeline: Deque[StateChange] = deque(maxlen=200)
        for channel in (datastore.state_channel, cache.state_channel, broker.state_channel):
            channel.subscribe(self.timeline.append)

        self._datastore_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """
        Run the startup gates and open the listener.

        Raises:
            StartupError: any fatal gate failed; the listener was not started
        """
        logger.info("Starting infrastructure bootstrap")

        self.datastore.ensure_configured()
        self._datastore_task = asyncio.create_task(self._connect_datastore(), name="datastore-connect")

        await self.cache.verify_handshake()
        logger.info("Infrastructure: Redis is ready.")

        try:
            await self.broker.connect_producer()
        except Exception as e:
            logger.critical(f"Failed to start Infrastructure: {e}", exc_info=True)
            if isinstance(e, StartupError):
                raise
            raise StartupError(str(e)) from e

        logger.info("Infrastructure: Kafka Producer initialized")

        try:
            await self.listener.start()
        except Exception as e:
            logger.critical(f"Failed to start HTTP listener: {e}", exc_info=True)
            raise StartupError(f"HTTP listener failed to start: {e}") from e

        self.readiness.set()
        logger.info(f"Service ONLINE | Port: {self.settings.port} | Mode: {self.settings.environment}")

    async def _connect_datastore(self) -> None:
        try:
            await self.datastore.connect()
        except Exception as e:
            logger.error(f"Initial database connection failed. Retrying... ({e})")

    async def stop(self) -> None:
        """Tear down listener and connections in reverse startup order."""
        logger.info("Shutting down infrastructure")

        await self.listener.stop()
        await self.broker.disconnect()

        if self._datastore_task is not None and not self._datastore_task.done():
            self._datastore_task.cancel()
            try:
                await self._datastore_task
            except asyncio.CancelledError:
                pass
        await self.datastore.disconnect()

        await self.cache.close()
        logger.info("Infrastructure stopped")

    async def health_check(self) -> Dict[str, Any]:
        """Perform health check."""
        health_status = {
            "service": self.settings.service_name,
            "status": "healthy",
            "ready": self.readiness.is_set,
            "timestamp": datetime.now().isoformat(),
            "components": {
                "datastore": await self.datastore.health_check(),
                "cache": await self.cache.health_check(),
                "broker": await self.broker.health_check()
            }
        }

        # Determine overall health
        component_statuses = [
            comp.get("status", "unknown")
            for comp in health_status["components"].values()
        ]

        if any(status == "unhealthy" for status in component_statuses):
            health_status["status"] = "unhealthy"
        elif any(status == "degraded" for status in component_statuses):
            health_status["status"] = "degraded"

        return health_status


def build_orchestrator(
    settings: ServiceSettings,
    listener_factory: Optional[Callable[[BootstrapOrchestrator], Any]] = None
) -> BootstrapOrchestrator:
    """
    Construct every connection and wire them into an orchestrator.

    The cache is built first: a missing cache URL fails here, before any
    connection attempt is made.

    Raises:
        ConfigurationError: the cache URL is missing
    """
    cache = CacheConnection(settings.redis_url, settings.redis)
    datastore = DatastoreConnection(settings.database_url, settings.database)
    broker = BrokerConnection(
        settings.kafka_brokers,
        settings.kafka,
        production=settings.is_production,
        ca_cert=settings.kafka_ca_cert,
        service_cert=settings.kafka_service_cert,
        service_key=settings.kafka_service_key
    )

    return BootstrapOrchestrator(settings, datastore, cache, broker, listener_factory=listener_factory)
