"""Configuration settings using Pydantic for validation."""

import os
import re
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..utils.retry import ExhaustionAction, RetryPolicy


class DatabaseConfig(BaseModel):
    """Primary datastore pool and reconnection settings."""
    max_pool_size: int = Field(default=50, description="Maximum pooled connections")
    min_pool_size: int = Field(default=1, description="Connections opened eagerly")
    server_selection_timeout_seconds: float = Field(default=5.0, description="Connect timeout per attempt")
    socket_timeout_seconds: float = Field(default=45.0, description="Command timeout")
    max_retries: int = Field(default=5, description="Startup attempts before background retry")
    retry_interval_ms: int = Field(default=5000, description="Fixed delay between attempts")

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_retries,
            interval_ms=self.retry_interval_ms,
            on_exhaustion=ExhaustionAction.BACKGROUND_RETRY_FOREVER,
        )


class RedisConfig(BaseModel):
    """Cache client settings."""
    max_retries_per_request: int = Field(default=3, description="Driver retries per command")
    handshake_key: str = Field(default="connection_test", description="Sentinel key for the startup round trip")
    handshake_value: str = Field(default="ok", description="Sentinel value")
    handshake_ttl_seconds: int = Field(default=10, description="Sentinel expiry")


class KafkaConfig(BaseModel):
    """Broker client settings."""
    client_id: str = Field(default="auth-service", description="Client identity presented to brokers")
    cert_dir: Optional[str] = Field(default=None, description="Credential directory override")
    connection_timeout_ms: int = Field(default=10000, description="Request/connection timeout")
    authentication_timeout_ms: int = Field(default=10000, description="TLS handshake timeout")
    retries: int = Field(default=10, description="Bounded connect retries")
    initial_retry_time_ms: int = Field(default=1000, description="Initial retry spacing")
    retry_multiplier: float = Field(default=2.0, description="Retry spacing multiplier")
    max_retry_time_ms: int = Field(default=30000, description="Retry spacing cap")
    message_key_field: str = Field(default="email", description="Message field used as record key")

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retries + 1,
            interval_ms=self.initial_retry_time_ms,
            on_exhaustion=ExhaustionAction.FATAL,
            backoff_multiplier=self.retry_multiplier,
            max_interval_ms=self.max_retry_time_ms,
        )


class HttpConfig(BaseModel):
    """HTTP listener settings."""
    host: str = Field(default="0.0.0.0", description="Bind address")
    rate_limit_window_seconds: int = Field(default=15 * 60, description="Rate limit window")
    rate_limit_max_requests: int = Field(default=100, description="Requests per window per client")
    body_limit_bytes: int = Field(default=10 * 1024, description="Maximum request body size")


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="text", description="Console format: json or text")
    output: str = Field(default="stdout", description="Console stream: stdout or stderr")
    file_path: Optional[str] = Field(default="./app.log", description="JSON log file, empty to disable")


class ServiceSettings(BaseSettings):
    """Main service settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Service configuration
    service_name: str = Field(default="auth-service", description="Service name")
    environment: str = Field(default="development", description="Environment: development or production")
    port: int = Field(default=3000, description="HTTP listener port")
    client_url: Optional[str] = Field(default=None, description="Allowed cross-origin client")

    # Infrastructure endpoints and secrets
    database_url: Optional[str] = Field(default=None, description="Datastore connection URI")
    redis_url: Optional[str] = Field(default=None, description="Cache connection URL")
    kafka_broker: Optional[str] = Field(default=None, description="Broker bootstrap address(es)")
    kafka_ca_cert: Optional[str] = Field(default=None, description="PEM CA certificate, newline-escaped")
    kafka_service_cert: Optional[str] = Field(default=None, description="PEM client certificate, newline-escaped")
    kafka_service_key: Optional[str] = Field(default=None, description="PEM client key, newline-escaped")
    better_stack_token: Optional[str] = Field(default=None, description="Cloud logging source token")

    # Component configurations
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    kafka: KafkaConfig = Field(default_factory=KafkaConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        v = v.lower()
        if v not in ["development", "production"]:
            raise ValueError("Environment must be 'development' or 'production'")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def kafka_brokers(self) -> List[str]:
        """Broker address list parsed from the comma-separated setting."""
        if not self.kafka_broker:
            return []
        return [broker.strip() for broker in self.kafka_broker.split(",") if broker.strip()]


def substitute_env_vars(obj: Any) -> Any:
    """
    Recursively substitute environment variables in configuration objects.

    Supports syntax:
    - ${VAR_NAME} - Required variable (raises error if not found)
    - ${VAR_NAME:-default} - Optional variable with default value

    Raises:
        ValueError: If required environment variable is not found
    """
    if isinstance(obj, dict):
        return {key: substitute_env_vars(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [substitute_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        def replace_env_var(match):
            var_expr = match.group(1)

            # Handle default values: VAR_NAME:-default_value
            if ':-' in var_expr:
                var_name, default_value = var_expr.split(':-', 1)
                return os.getenv(var_name.strip(), default_value)
            else:
                var_name = var_expr.strip()
                value = os.getenv(var_name)
                if value is None:
                    raise ValueError(f"Required environment variable '{var_name}' is not set")
                return value

        return re.sub(r'\$\{([^}]+)\}', replace_env_var, obj)
    else:
        return obj


def load_settings(config_file: Optional[str] = None) -> ServiceSettings:
    """
    Load settings from config file and environment variables.

    The config file supports environment variable substitution using ${VAR_NAME} syntax.
    Values given in the file are passed as init arguments and take precedence
    over the process environment; anything the file omits comes from the
    environment (or ``.env``).

    Raises:
        ValueError: If required environment variables are missing
        FileNotFoundError: If config file doesn't exist
    """
    if config_file and os.path.exists(config_file):
        import yaml

        with open(config_file, 'r') as f:
            raw_config = yaml.safe_load(f) or {}

        config_data = substitute_env_vars(raw_config)
        return ServiceSettings(**config_data)

    elif config_file:
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    # Load from environment variables only
    return ServiceSettings()
