"""Process-wide handling for failures that escape every local handler."""

import asyncio
import logging
from typing import Any, Dict, Optional

from .utils.logging import log_with_context

logger = logging.getLogger(__name__)


class FatalSignalFunnel:
    """
    Event-loop exception handler that logs and lets the loop continue.

    Unretrieved task exceptions and failing callbacks land here. They are
    logged at error level and never terminate the process; only the
    bootstrap gates in ``main`` do that.
    """

    def __init__(self):
        self.handled = 0
        self._previous_handler = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def install(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Register on ``loop`` (the running loop by default)."""
        self._loop = loop or asyncio.get_running_loop()
        self._previous_handler = self._loop.get_exception_handler()
        self._loop.set_exception_handler(self.handle)

    def uninstall(self) -> None:
        if self._loop is not None:
            self._loop.set_exception_handler(self._previous_handler)
            self._loop = None

    def handle(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        self.handled += 1

        exception = context.get("exception")
        source = context.get("task") or context.get("future") or context.get("handle")

        log_with_context(
            logger,
            logging.ERROR,
            f"Unhandled rejection: {context.get('message', 'unhandled exception in event loop')}",
            exc_info=exception,
            source=repr(source) if source is not None else None,
            reason=repr(exception) if exception is not None else None
        )
