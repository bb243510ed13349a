"""HTTP application and listener."""

import logging
import time
from typing import Dict, Optional, Tuple

from aiohttp import web, web_request

from .config.settings import ServiceSettings
from .errors import ApiError
from .health import HealthCheckHandler

logger = logging.getLogger(__name__)
access_logger = logging.getLogger("auth_service.access")

CORS_METHODS = "GET,POST,PUT,DELETE,PATCH,HEAD,OPTIONS"
CORS_HEADERS = ",".join([
    "Content-Type",
    "Authorization",
    "X-Requested-With",
    "device-remember-token",
    "Access-Control-Allow-Origin",
    "Origin",
    "Accept",
])

SECURITY_HEADERS = {
    "Content-Security-Policy": "default-src 'self';base-uri 'self';frame-ancestors 'self';object-src 'none'",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
}

RATE_LIMIT_MESSAGE = "Error!! To many requests detected ! please try later"


def client_address(request: web_request.Request) -> str:
    """Client IP, trusting exactly one proxy hop."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[-1].strip()
    return request.remote or "unknown"


class FixedWindowRateLimiter:
    """Per-client request counter reset every ``window_seconds``."""

    def __init__(self, max_requests: int, window_seconds: int):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._next_prune: Optional[float] = None

    def hit(self, key: str, now: Optional[float] = None) -> bool:
        """Count a request; returns False once the client is over the limit."""
        now = time.monotonic() if now is None else now
        started, count = self._windows.get(key, (now, 0))

        if now - started >= self.window_seconds:
            started, count = now, 0

        count += 1
        self._windows[key] = (started, count)

        # Expired windows are dropped at most once per window length
        if self._next_prune is None:
            self._next_prune = now + self.window_seconds
        elif now >= self._next_prune:
            self._prune(now)
            self._next_prune = now + self.window_seconds

        return count <= self.max_requests

    def _prune(self, now: float) -> None:
        expired = [k for k, (started, _) in self._windows.items() if now - started >= self.window_seconds]
        for key in expired:
            del self._windows[key]


def create_app(settings: ServiceSettings, orchestrator) -> web.Application:
    """Build the aiohttp application with the service's middleware stack."""
    limiter = FixedWindowRateLimiter(
        settings.http.rate_limit_max_requests,
        settings.http.rate_limit_window_seconds
    )

    @web.middleware
    async def cors_middleware(request: web_request.Request, handler):
        origin = request.headers.get("Origin")
        allowed = settings.client_url is not None and origin == settings.client_url

        if request.method == "OPTIONS" and "Access-Control-Request-Method" in request.headers:
            response = web.Response(status=204)
        else:
            response = await handler(request)

        if allowed:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Allow-Credentials"] = "true"
            response.headers["Access-Control-Allow-Methods"] = CORS_METHODS
            response.headers["Access-Control-Allow-Headers"] = CORS_HEADERS
            response.headers["Vary"] = "Origin"
        return response

    @web.middleware
    async def security_headers_middleware(request: web_request.Request, handler):
        response = await handler(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    @web.middleware
    async def error_middleware(request: web_request.Request, handler):
        try:
            return await handler(request)
        except web.HTTPNotFound:
            return web.json_response({"status": "error", "message": "Route not found"}, status=404)
        except web.HTTPException as e:
            if e.status < 400:
                raise
            error = ApiError(e.status, e.reason, is_operational=True)
        except Exception as e:
            error = ApiError.wrap(e)

        logger.error(
            error.message,
            extra={
                "ctx_status_code": error.status_code,
                "ctx_stack": error.stack,
                "ctx_path": request.path,
                "ctx_method": request.method
            }
        )
        return web.json_response(
            error.to_dict(include_stack=settings.is_development),
            status=error.status_code
        )

    @web.middleware
    async def rate_limit_middleware(request: web_request.Request, handler):
        if not limiter.hit(client_address(request)):
            return web.json_response(
                {"status": "error", "message": RATE_LIMIT_MESSAGE},
                status=429,
                headers={"Retry-After": str(settings.http.rate_limit_window_seconds)}
            )
        return await handler(request)

    @web.middleware
    async def parameter_pollution_middleware(request: web_request.Request, handler):
        # Repeated query keys collapse to their last value
        query = request.query
        if len(query) != len(set(query.keys())):
            deduped = {key: query.getall(key)[-1] for key in query.keys()}
            request = request.clone(rel_url=request.rel_url.with_query(deduped))
        return await handler(request)

    app = web.Application(
        client_max_size=settings.http.body_limit_bytes,
        middlewares=[
            cors_middleware,
            security_headers_middleware,
            error_middleware,
            rate_limit_middleware,
            parameter_pollution_middleware,
        ]
    )

    health = HealthCheckHandler(orchestrator)
    app.router.add_get('/health', health.health)
    app.router.add_get('/ready', health.ready)
    app.router.add_get('/live', health.live)

    return app


class HttpListener:
    """Binds the application once the orchestrator allows it."""

    def __init__(self, orchestrator, host: Optional[str] = None, port: Optional[int] = None):
        self.orchestrator = orchestrator
        self.settings: ServiceSettings = orchestrator.settings
        self.host = host or self.settings.http.host
        self.port = port if port is not None else self.settings.port
        self.app: Optional[web.Application] = None
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

    async def start(self):
        """Start listening."""
        logger.info(f"Starting HTTP listener on {self.host}:{self.port}")

        self.app = create_app(self.settings, self.orchestrator)

        # Request logging only in development
        self.runner = web.AppRunner(
            self.app,
            access_log=access_logger if self.settings.is_development else None
        )
        await self.runner.setup()

        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()

        logger.info(f"HTTP listener started on http://{self.host}:{self.port}")

    async def stop(self):
        """Stop the listener."""
        if self.site:
            await self.site.stop()
            self.site = None

        if self.runner:
            await self.runner.cleanup()
            self.runner = None

        logger.info("HTTP listener stopped")
