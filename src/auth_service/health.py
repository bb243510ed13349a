"""Health check endpoints."""

import logging
from datetime import datetime

from aiohttp import web, web_request
from aiohttp.web_response import Response

logger = logging.getLogger(__name__)


class HealthCheckHandler:
    """Health check HTTP handler."""

    def __init__(self, orchestrator):
        self.orchestrator = orchestrator

    async def health(self, request: web_request.Request) -> Response:
        """Aggregated component health."""
        try:
            health_data = await self.orchestrator.health_check()

            # Degraded (datastore down) still serves traffic
            status = 503 if health_data["status"] == "unhealthy" else 200

            return web.json_response(health_data, status=status)

        except Exception as e:
            logger.error(f"Health check failed: {e}", exc_info=True)
            return web.json_response(
                {
                    "service": self.orchestrator.settings.service_name,
                    "status": "unhealthy",
                    "error": str(e),
                    "timestamp": datetime.now().isoformat()
                },
                status=503
            )

    async def ready(self, request: web_request.Request) -> Response:
        """Readiness check: true once every startup gate has passed."""
        readiness = self.orchestrator.readiness
        is_ready = readiness.is_set

        return web.json_response(
            {
                "ready": is_ready,
                "ready_since": readiness.ready_since.isoformat() if readiness.ready_since else None,
                "timestamp": datetime.now().isoformat()
            },
            status=200 if is_ready else 503
        )

    async def live(self, request: web_request.Request) -> Response:
        """Liveness check."""
        return web.json_response(
            {
                "alive": True,
                "timestamp": datetime.now().isoformat()
            },
            status=200
        )
