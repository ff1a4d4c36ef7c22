"""
RequestContext Middleware - Adds request tracking to all requests.

Adds to request.state:
- request_id: Unique ID for request tracing
- ip_address: Client IP address

The request_id is also bound into the structlog context so every log line
emitted while handling the request carries it.
"""

import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from leadinbox.config import settings
from leadinbox.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Adds request context and an X-Request-ID response header."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id

        ip_address = self._extract_client_ip(request)
        request.state.ip_address = ip_address

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        logger.debug(
            "Request started",
            method=request.method,
            path=request.url.path,
            ip_address=ip_address,
        )

        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers["X-Request-ID"] = request_id
        return response

    def _extract_client_ip(self, request: Request) -> str | None:
        """
        Client IP address, honouring X-Forwarded-For only from trusted proxies.

        Args:
            request: FastAPI Request

        Returns:
            Client IP address or None
        """
        if not settings.TRUST_X_FORWARDED_FOR:
            return request.client.host if request.client else None

        if request.client and request.client.host in settings.TRUSTED_PROXY_IPS:
            forwarded_for = request.headers.get("x-forwarded-for")
            if forwarded_for:
                # "client, proxy1, proxy2": first entry is the original client
                return forwarded_for.split(",")[0].strip()

        return request.client.host if request.client else None
