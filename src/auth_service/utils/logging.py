"""Structured logging setup for the service."""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..config.settings import LoggingConfig

# Attributes every LogRecord carries; anything else was passed via ``extra``.
_RESERVED_ATTRS = frozenset([
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'exc_info', 'exc_text', 'stack_info', 'lineno', 'funcName',
    'created', 'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'message', 'asctime', 'taskName'
])


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""

        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Enhanced text formatter with colors for console output."""

    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m', # Magenta
        'RESET': '\033[0m'
    }

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as colored text."""

        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        level = record.levelname
        message = record.getMessage()

        if self.use_colors and level in self.COLORS:
            level = f"{self.COLORS[level]}{level}{self.COLORS['RESET']}"

        # Format: timestamp [LEVEL] logger: message
        formatted = f"{timestamp} [{level}] {record.name}: {message}"

        if record.exc_info:
            formatted += "\n" + self.formatException(record.exc_info)

        return formatted


class ServiceContextFilter(logging.Filter):
    """Stamps every record with the service name."""

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = self.service_name
        return True


def setup_logging(
    config: LoggingConfig,
    service_name: str = "auth-service",
    better_stack_token: Optional[str] = None
) -> None:
    """
    Setup logging configuration for the service.

    Console output always; a JSON file sink when ``config.file_path`` is set;
    a Better Stack sink only when a source token is configured.

    Args:
        config: Logging configuration
        service_name: Name of the service for log context
        better_stack_token: Optional Better Stack (Logtail) source token
    """
    handlers = []

    # Console
    if config.format.lower() == 'json':
        console_formatter = JSONFormatter()
    else:
        console_formatter = TextFormatter()

    stream = sys.stderr if config.output.lower() == 'stderr' else sys.stdout
    console = logging.StreamHandler(stream)
    console.setFormatter(console_formatter)
    handlers.append(console)

    # Local file
    if config.file_path:
        log_path = Path(config.file_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(JSONFormatter())
        handlers.append(file_handler)

    # Cloud sink
    if better_stack_token:
        from logtail import LogtailHandler

        handlers.append(LogtailHandler(source_token=better_stack_token))

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, config.level.upper()))
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
        existing.close()

    context_filter = ServiceContextFilter(service_name)
    for handler in handlers:
        handler.addFilter(context_filter)
        root_logger.addHandler(handler)

    # Configure specific loggers to reduce noise
    logging.getLogger('aiokafka').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    if not better_stack_token:
        logger.warning("Better Stack Token missing. Cloud logging disabled.")

    logger.info(
        f"Logging configured: level={config.level}, format={config.format}, "
        f"output={config.output}, file={config.file_path}, service={service_name}"
    )


def log_with_context(logger: logging.Logger, level: int, message: str, exc_info=None, **context):
    """Log a message with additional context."""
    extra = {f"ctx_{key}": value for key, value in context.items()}
    logger.log(level, message, extra=extra, exc_info=exc_info)
