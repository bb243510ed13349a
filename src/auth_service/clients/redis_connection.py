"""Cache connection with a fail-fast startup handshake."""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

import redis.asyncio as redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from ..config.settings import RedisConfig
from ..errors import CacheHandshakeError, ConfigurationError
from ..utils.connection_state import ConnectionState, StateChannel
from ..utils.logging import log_with_context

logger = logging.getLogger(__name__)


class CacheConnection:
    """
    Owns the cache client.

    The URL is checked at construction. After the startup handshake succeeds,
    reconnection is left to the driver's per-request retry.
    """

    component = "cache"

    def __init__(self, url: Optional[str], config: RedisConfig, client: Optional[redis.Redis] = None):
        if not url:
            logger.error("Redis URL not found. Environment variables are missing.")
            raise ConfigurationError("Redis URL not found. Environment variables are missing.")

        self.url = url
        self.config = config
        self.state_channel = StateChannel(self.component, ConnectionState.DISCONNECTED)
        self.state_channel.subscribe(self._log_lifecycle)

        self.client: redis.Redis = client if client is not None else redis.Redis.from_url(
            url,
            retry=Retry(ExponentialBackoff(), config.max_retries_per_request),
            retry_on_error=[ConnectionError, TimeoutError],
            decode_responses=True
        )

    @property
    def state(self) -> ConnectionState:
        return self.state_channel.state

    def _log_lifecycle(self, change) -> None:
        if change.current == ConnectionState.CONNECTING:
            logger.info("Redis: Attempting to connect...")
        elif change.current == ConnectionState.CONNECTED:
            logger.info("Redis: Connection established and ready to use.")
        elif change.current == ConnectionState.ERRORED:
            log_with_context(
                logger,
                logging.ERROR,
                "Redis: Connection Error",
                component=self.component,
                **change.context
            )

    async def verify_handshake(self) -> None:
        """
        Write a sentinel key, read it back and require the same value.

        Raises:
            CacheHandshakeError: on any driver error or a value mismatch
        """
        key = self.config.handshake_key
        expected = self.config.handshake_value

        self.state_channel.transition(ConnectionState.CONNECTING)

        try:
            await self.client.set(key, expected, ex=self.config.handshake_ttl_seconds)
            value = await self.client.get(key)
        except RedisError as e:
            self.state_channel.transition(ConnectionState.ERRORED, error=str(e))
            logger.error(f"Redis: Handshake test failed: {e}")
            raise CacheHandshakeError(f"Redis handshake failed: {e}") from e

        if value != expected:
            self.state_channel.transition(ConnectionState.ERRORED, error=f"unexpected value {value!r}")
            logger.error(f"Redis: Handshake test failed: expected {expected!r}, got {value!r}")
            raise CacheHandshakeError(f"Redis handshake returned {value!r}, expected {expected!r}")

        self.state_channel.transition(ConnectionState.CONNECTED)
        logger.info("Redis: Handshake test successful.")

    async def close(self) -> None:
        """Close the client; errors are logged, never raised."""
        try:
            await self.client.aclose()
            logger.info("Redis: Connection closed.")
        except Exception as e:
            logger.error(f"Redis: Error while closing connection: {e}")
        finally:
            self.state_channel.transition(ConnectionState.DISCONNECTED, reason="shutdown")

    async def health_check(self) -> Dict[str, Any]:
        """Perform health check on the cache connection."""

        health_status = {
            "status": "healthy",
            "state": self.state.value,
            "timestamp": datetime.now().isoformat()
        }

        try:
            if not await self.client.ping():
                health_status["status"] = "unhealthy"
                health_status["error"] = "Redis ping failed"
                return health_status

            info = await self.client.info()
            health_status["redis_info"] = {
                "redis_version": info.get("redis_version"),
                "connected_clients": info.get("connected_clients"),
                "uptime_in_seconds": info.get("uptime_in_seconds")
            }
        except Exception as e:
            health_status["status"] = "unhealthy"
            health_status["error"] = str(e)

        return health_status
