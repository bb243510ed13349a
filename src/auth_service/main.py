"""Auth Service - infrastructure bootstrap and HTTP listener."""

import asyncio
import logging
import os
import signal
import sys
from typing import Optional

from .bootstrap import BootstrapOrchestrator, build_orchestrator
from .config.settings import load_settings
from .errors import StartupError
from .supervisor import FatalSignalFunnel
from .utils.logging import setup_logging

logger = logging.getLogger(__name__)


class AuthService:
    """Main service: runs the bootstrap gates, then serves until signalled."""

    def __init__(self, config_file: Optional[str] = None):
        self.config = load_settings(config_file)
        self.orchestrator: Optional[BootstrapOrchestrator] = None
        self.funnel = FatalSignalFunnel()
        self._shutdown_event = asyncio.Event()

        setup_logging(
            self.config.logging,
            service_name=self.config.service_name,
            better_stack_token=self.config.better_stack_token
        )
        logger.info("Auth Service initialized")

    async def start(self):
        """
        Start the service and block until shutdown.

        Raises:
            StartupError: a startup gate failed; nothing is listening
        """
        logger.info("Starting Auth Service")

        self.funnel.install()
        try:
            self.orchestrator = build_orchestrator(self.config)

            self._setup_signal_handlers()

            try:
                await self.orchestrator.start()

                # Wait for shutdown signal
                await self._shutdown_event.wait()
            finally:
                logger.info("Shutting down Auth Service")
                await self.orchestrator.stop()
        finally:
            self.funnel.uninstall()

        logger.info("Auth Service stopped")

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, initiating shutdown")
            self._shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)


async def main():
    """Main entry point."""
    config_file = os.getenv("CONFIG_FILE")

    try:
        service = AuthService(config_file)
        await service.start()
    except StartupError as e:
        logger.critical(f"Startup aborted: {e}", extra={"ctx_error_type": type(e).__name__})
        sys.exit(1)
    except Exception as e:
        logger.critical(f"Service failed: {e}", exc_info=True)
        sys.exit(1)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
