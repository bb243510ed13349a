"""TLS broker client and producer session."""

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from aiokafka import AIOKafkaProducer
from aiokafka.helpers import create_ssl_context

from ..config.settings import KafkaConfig
from ..errors import BrokerConnectionError, BrokerNotConnectedError, ConfigurationError, StartupError
from ..utils.connection_state import BrokerState, StateChannel
from ..utils.logging import log_with_context
from ..utils.retry import ExhaustionAction, RetryPolicy, exponential_backoff

logger = logging.getLogger(__name__)

CA_FILE = "ca.pem"
CERT_FILE = "service.cert"
KEY_FILE = "service.key"


def normalize_pem(value: str) -> str:
    """Turn literal ``\\n`` escapes from the environment into real newlines."""
    return value.replace("\\n", "\n")


def fixed_partitioner(key_bytes, all_partitions, available_partitions) -> int:
    """Route every record to partition 0."""
    return 0


def _write_atomic(path: Path, content: str, mode: int = 0o644) -> None:
    """Replace ``path`` in one step so readers never see a partial file."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class BrokerConnection:
    """
    Owns broker connectivity and the producer session.

    ``init()`` materializes TLS credentials and prepares client options;
    ``connect_producer()`` starts an idempotent producer under a bounded
    retry policy. There is no background fallback: failures propagate.
    """

    component = "broker"

    def __init__(
        self,
        brokers: List[str],
        config: KafkaConfig,
        production: bool = False,
        ca_cert: Optional[str] = None,
        service_cert: Optional[str] = None,
        service_key: Optional[str] = None,
        policy: Optional[RetryPolicy] = None
    ):
        self.brokers = brokers
        self.config = config
        self.production = production
        self._credentials = {
            CA_FILE: ca_cert,
            CERT_FILE: service_cert,
            KEY_FILE: service_key,
        }
        self.policy: RetryPolicy = policy or config.retry_policy()
        if self.policy.on_exhaustion != ExhaustionAction.FATAL:
            raise ValueError("Broker retry policy must be fatal on exhaustion")

        self.client_options: Optional[Dict[str, Any]] = None
        self.producer: Optional[AIOKafkaProducer] = None
        self.state_channel = StateChannel(self.component, BrokerState.UNINITIALIZED)

        # Statistics
        self.stats = {
            "connect_attempts": 0,
            "events_sent": 0,
            "send_errors": 0
        }

    @property
    def state(self) -> BrokerState:
        return self.state_channel.state

    @property
    def is_initialized(self) -> bool:
        return self.client_options is not None

    @property
    def cert_dir(self) -> Path:
        if self.config.cert_dir:
            return Path(self.config.cert_dir)
        if self.production:
            return Path(tempfile.gettempdir()) / "certs"
        return Path("cert").resolve()

    async def init(self) -> None:
        """
        Materialize credentials and build the client options.

        Raises:
            ConfigurationError: missing or unwritable credentials, missing CA
                file or unusable certificate material
        """
        self.state_channel.transition(BrokerState.INITIALIZING)
        cert_dir = self.cert_dir

        try:
            if self.production:
                try:
                    self._materialize_credentials(cert_dir)
                except OSError as e:
                    raise ConfigurationError(f"Cannot write SSL files to {cert_dir}: {e}") from e

            ca_path = cert_dir / CA_FILE
            cert_path = cert_dir / CERT_FILE
            key_path = cert_dir / KEY_FILE

            if not ca_path.exists():
                raise ConfigurationError(f"SSL files not found in {cert_dir}.")

            if not self.brokers:
                raise ConfigurationError("KAFKA_BROKER is missing in environment variables.")

            try:
                ssl_context = create_ssl_context(
                    cafile=str(ca_path),
                    certfile=str(cert_path),
                    keyfile=str(key_path)
                )
            except (OSError, ValueError) as e:
                raise ConfigurationError(f"Unusable SSL material in {cert_dir}: {e}") from e

            self.client_options = {
                "bootstrap_servers": self.brokers,
                "client_id": self.config.client_id,
                "security_protocol": "SSL",
                "ssl_context": ssl_context,
                "request_timeout_ms": self.config.connection_timeout_ms,
                "retry_backoff_ms": self.config.initial_retry_time_ms,
            }
        except StartupError as e:
            self.state_channel.transition(BrokerState.FAILED, error=str(e))
            log_with_context(
                logger,
                logging.ERROR,
                "Kafka: SSL Configuration Failure",
                component=self.component,
                error=str(e)
            )
            raise

        self.state_channel.transition(BrokerState.INITIALIZED)
        logger.info("Kafka: Client initialized successfully via SSL files.")

    def _materialize_credentials(self, cert_dir: Path) -> None:
        cert_dir.mkdir(parents=True, exist_ok=True)

        for filename, value in self._credentials.items():
            if not value:
                raise ConfigurationError(f"Kafka credential for {filename} is missing in environment variables.")

            mode = 0o600 if filename == KEY_FILE else 0o644
            _write_atomic(cert_dir / filename, normalize_pem(value), mode)

        logger.debug(f"Kafka: Credentials written to {cert_dir}")

    def _build_producer(self) -> AIOKafkaProducer:
        return AIOKafkaProducer(
            **self.client_options,
            enable_idempotence=True,
            partitioner=fixed_partitioner
        )

    async def _start_producer(self) -> AIOKafkaProducer:
        """One connect attempt, bounded by connection plus handshake timeouts."""
        self.stats["connect_attempts"] += 1
        producer = self._build_producer()
        timeout = (self.config.connection_timeout_ms + self.config.authentication_timeout_ms) / 1000.0

        try:
            await asyncio.wait_for(producer.start(), timeout=timeout)
        except BaseException:
            try:
                await producer.stop()
            except Exception as stop_error:
                logger.debug(f"Kafka: Cleanup after failed start raised: {stop_error}")
            raise

        return producer

    async def connect_producer(self) -> None:
        """
        Initialize if needed, then connect the producer.

        Raises:
            ConfigurationError: initialization failed
            BrokerConnectionError: the producer could not connect within the retry budget
        """
        if self.producer is not None:
            return

        if not self.is_initialized:
            await self.init()

        self.state_channel.transition(BrokerState.PRODUCER_CONNECTING)

        try:
            self.producer = await exponential_backoff(
                self._start_producer,
                self.policy,
                exceptions=(Exception,),
                operation="Kafka producer connect"
            )
        except Exception as e:
            self.state_channel.transition(BrokerState.FAILED, error=str(e))
            log_with_context(
                logger,
                logging.ERROR,
                "Kafka: Producer connection failed.",
                component=self.component,
                attempt=self.stats["connect_attempts"],
                error=str(e)
            )
            raise BrokerConnectionError(f"Kafka producer connection failed: {e}") from e

        self.state_channel.transition(BrokerState.PRODUCER_CONNECTED)
        logger.info("Kafka: Producer connected successfully.")

    async def send_event(self, topic: str, message: Dict[str, Any]) -> None:
        """
        Publish ``message`` as JSON to ``topic`` keyed by the configured field.

        Raises:
            BrokerNotConnectedError: the producer has not been connected
        """
        if self.producer is None:
            raise BrokerNotConnectedError()

        key = message.get(self.config.message_key_field)
        key_bytes = str(key).encode("utf-8") if key is not None else None
        value = json.dumps(message, separators=(',', ':'), default=str).encode("utf-8")

        try:
            await self.producer.send_and_wait(topic, value=value, key=key_bytes)
        except Exception:
            self.stats["send_errors"] += 1
            raise

        self.stats["events_sent"] += 1
        logger.debug(f"Kafka: Event sent to {topic}")

    async def disconnect(self) -> None:
        """Stop the producer; errors are logged, never raised."""
        if self.producer is None:
            return

        try:
            await self.producer.stop()
            logger.info("Kafka: Producer disconnected.")
        except Exception as e:
            logger.error(f"Kafka: Error while stopping producer: {e}")
        finally:
            self.producer = None
            self.state_channel.transition(BrokerState.INITIALIZED, reason="shutdown")

    async def health_check(self) -> Dict[str, Any]:
        """Report producer state."""
        connected = self.state == BrokerState.PRODUCER_CONNECTED
        return {
            "status": "healthy" if connected else "unhealthy",
            "state": self.state.value,
            "stats": self.stats.copy()
        }
