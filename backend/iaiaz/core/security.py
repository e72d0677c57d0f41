"""HTTP hardening: response headers, request logging and the endpoint limiter.

The per-tier chat windows live in rate_limits.py; the slowapi limiter here
only guards endpoints against bursts (checkout, invites, admin writes).
"""

import logging
import time
from typing import Callable

from fastapi import Request, Response
from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

# Paths too noisy to log on every hit
QUIET_PATHS = {"/", "/health", "/favicon.ico"}


def get_user_or_ip(request: Request) -> str:
    """Key the limiter on the authenticated user, falling back to the IP."""
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"user:{user_id}"
    return get_remote_address(request)


limiter = Limiter(key_func=get_user_or_ip)


def get_client_ip(request: Request) -> str:
    """Client IP behind Vercel/Cloudflare style proxies, for audit entries."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()

    for header in ("X-Real-IP", "CF-Connecting-IP"):
        value = request.headers.get(header)
        if value:
            return value

    if request.client:
        return request.client.host
    return "unknown"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds the standard hardening headers to every API response."""

    HEADERS = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "X-XSS-Protection": "1; mode=block",
        "Referrer-Policy": "strict-origin-when-cross-origin",
        "Content-Security-Policy": "default-src 'self'",
    }

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        for name, value in self.HEADERS.items():
            response.headers[name] = value
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs method, path, status, duration, client IP and user id per request.

    Bodies are never logged: chat messages may come from minors.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        response = await call_next(request)

        path = request.url.path
        if path in QUIET_PATHS:
            return response

        log_data = {
            "method": request.method,
            "path": path,
            "status_code": response.status_code,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            "client_ip": get_client_ip(request),
        }
        # Set by the auth dependency while the route ran
        user_id = getattr(request.state, "user_id", None)
        if user_id:
            log_data["user_id"] = user_id

        if response.status_code >= 500:
            logger.error(f"Request: {log_data}")
        elif response.status_code >= 400:
            logger.warning(f"Request: {log_data}")
        else:
            logger.info(f"Request: {log_data}")

        return response
