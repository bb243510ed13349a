"""Primary datastore connection with bounded-then-background reconnection."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import asyncpg
from asyncpg import Connection, Pool

from ..config.settings import DatabaseConfig
from ..errors import ConfigurationError
from ..utils.connection_state import ConnectionState, StateChannel
from ..utils.logging import log_with_context
from ..utils.retry import ExhaustionAction, RetryPolicy

logger = logging.getLogger(__name__)


class DatastoreConnection:
    """
    Owns the pooled connection to the primary datastore.

    ``connect()`` never raises once the URI is known to be present. Failed
    attempts are retried on a fixed interval. After ``max_attempts`` the
    policy decides: with ``BACKGROUND_RETRY_FOREVER`` the controller keeps
    trying until the pool comes up or the process shuts down, with ``FATAL``
    it stops retrying and stays ``ERRORED``.
    """

    component = "datastore"

    def __init__(self, uri: Optional[str], config: DatabaseConfig, policy: Optional[RetryPolicy] = None):
        self.uri = uri
        self.config = config
        self.policy: RetryPolicy = policy or config.retry_policy()
        self.pool: Optional[Pool] = None

        self.retry_count = 0
        self.background_mode = False
        self.exhausted = False
        self.state_channel = StateChannel(self.component, ConnectionState.DISCONNECTED)
        self._retry_task: Optional[asyncio.Task] = None
        self._closing = False

        # Statistics
        self.stats = {
            "connect_attempts": 0,
            "connect_failures": 0,
            "connections_lost": 0,
            "last_connected_time": None
        }

    @property
    def state(self) -> ConnectionState:
        return self.state_channel.state

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def ensure_configured(self) -> None:
        """Fail before any network attempt when the URI is missing."""
        if not self.uri:
            logger.error("DATABASE_URL is missing in environment variables.")
            raise ConfigurationError("DATABASE_URL is missing in environment variables.")

    async def connect(self) -> None:
        """
        Attempt to establish the pool.

        Returns after the first attempt whatever its outcome; further attempts
        run in a scheduled retry task.
        """
        self.ensure_configured()
        self._closing = False
        self.exhausted = False

        if await self._attempt() or self.exhausted:
            return

        self._schedule_retry()

    async def _attempt(self) -> bool:
        """Make one connection attempt and update the retry bookkeeping."""
        self.stats["connect_attempts"] += 1
        self.state_channel.transition(ConnectionState.CONNECTING, attempt=self.retry_count + 1)

        try:
            self.pool = await asyncpg.create_pool(
                dsn=self.uri,
                min_size=self.config.min_pool_size,
                max_size=self.config.max_pool_size,
                timeout=self.config.server_selection_timeout_seconds,
                command_timeout=self.config.socket_timeout_seconds,
                init=self._init_connection
            )
        except Exception as e:
            self._on_attempt_failed(e)
            return False

        self.retry_count = 0
        self.background_mode = False
        self.stats["last_connected_time"] = datetime.now()
        self.state_channel.transition(ConnectionState.CONNECTED)
        logger.info("Database: Connection established successfully.")
        return True

    def _on_attempt_failed(self, error: Exception) -> None:
        self.retry_count += 1
        self.stats["connect_failures"] += 1
        self.state_channel.transition(ConnectionState.ERRORED, attempt=self.retry_count, error=str(error))

        log_with_context(
            logger,
            logging.ERROR,
            f"Database: Initial connection failed. Retry {self.retry_count}/{self.policy.max_attempts}",
            component=self.component,
            attempt=self.retry_count,
            error=str(error)
        )

        if self.retry_count < self.policy.max_attempts or self.background_mode:
            return

        if self.policy.on_exhaustion == ExhaustionAction.BACKGROUND_RETRY_FOREVER:
            self.background_mode = True
            logger.error("Database: Initial connection failed. API will stay alive, retrying in background...")
        else:
            self.exhausted = True
            logger.error(f"Database: Giving up after {self.retry_count} attempts.")

    def _schedule_retry(self) -> None:
        if self._retry_task is not None and not self._retry_task.done():
            return
        self._retry_task = asyncio.create_task(self._retry_loop(), name="datastore-retry")

    async def _retry_loop(self) -> None:
        """Recurring retry until a pool is established or the policy gives up."""
        while not self._closing and not self.exhausted:
            await asyncio.sleep(self.policy.interval_seconds)

            if self._closing:
                return

            if self.background_mode:
                logger.info("Database: Attempting background reconnection...")

            if await self._attempt():
                return

    async def _init_connection(self, conn: Connection) -> None:
        """Driver callback for every new pooled connection."""
        conn.add_termination_listener(self._on_connection_terminated)

        # Pool replaced its connections after an outage
        if self.pool is not None and self.state == ConnectionState.DISCONNECTED and not self._closing:
            self.stats["last_connected_time"] = datetime.now()
            self.state_channel.transition(ConnectionState.CONNECTED, reason="connection restored")
            logger.info("Database: Connection re-established.")

    def _on_connection_terminated(self, conn: Connection) -> None:
        """
        Driver callback fired whenever a pooled connection closes.

        The pool also closes connections itself (idle expiry, query limits)
        while others stay live; only a pool left without any live connection
        counts as lost.
        """
        if self._closing or self.pool is None or self.pool.is_closing():
            return

        if self.pool.get_size() > 0:
            logger.debug("Database: Pooled connection closed, pool still has live connections.")
            return

        if self.state != ConnectionState.CONNECTED:
            return

        self.stats["connections_lost"] += 1
        logger.warning("Database: Connection lost. Checking status...")
        self.state_channel.transition(ConnectionState.DISCONNECTED, reason="connection lost")

    async def disconnect(self) -> None:
        """Release the pool; failures are logged, never raised."""
        self._closing = True

        if self._retry_task is not None and not self._retry_task.done():
            self._retry_task.cancel()
            try:
                await self._retry_task
            except asyncio.CancelledError:
                pass
        self._retry_task = None

        if self.pool is None:
            if self.state != ConnectionState.DISCONNECTED:
                self.state_channel.transition(ConnectionState.DISCONNECTED, reason="shutdown")
            return

        try:
            await self.pool.close()
            logger.info("Database: Connection closed gracefully.")
        except Exception as e:
            log_with_context(
                logger,
                logging.ERROR,
                "Database: Error during graceful disconnection.",
                component=self.component,
                error=str(e)
            )
        finally:
            self.pool = None
            self.state_channel.transition(ConnectionState.DISCONNECTED, reason="shutdown")

    async def health_check(self) -> Dict[str, Any]:
        """Perform health check on the datastore pool."""

        health_status = {
            "status": "healthy",
            "state": self.state.value,
            "retry_count": self.retry_count,
            "background_retry": self.background_mode,
            "timestamp": datetime.now().isoformat(),
            "stats": self.stats.copy()
        }

        if self.pool is None or not self.is_connected:
            # The service keeps serving without the datastore
            health_status["status"] = "degraded"
            health_status["error"] = "Database pool not connected"
            return health_status

        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")

            health_status["pool_stats"] = {
                "size": self.pool.get_size(),
                "max_size": self.pool.get_max_size(),
                "idle_size": self.pool.get_idle_size()
            }
        except Exception as e:
            health_status["status"] = "degraded"
            health_status["error"] = str(e)

        return health_status
