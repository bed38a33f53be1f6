"""
HTTP middleware for wagate.

Provides tenant API-key authentication, request logging and security headers.
"""
import time
from typing import Optional, Callable
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from wagate.database import API_KEY_PREFIXES, KEY_PREFIX_LENGTH, verify_api_key
from wagate.logger import get_logger

logger = get_logger(__name__)

PROTECTED_PREFIXES = ("/api/v1/", "/api/instances", "/api/send-message")
SLOW_REQUEST_SECONDS = 5.0


def _auth_error(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(
        {"success": False, "error": error, "message": message},
        status_code=status_code,
    )


class APIKeyAuthMiddleware(BaseHTTPMiddleware):
    """
    Tenant API key authentication.

    Checks for the key in:
    1. Authorization header: "Bearer <key>" (or the bare key)
    2. X-API-Key header: "<key>"

    Keys are looked up by their first 8 characters, verified against the
    stored bcrypt hash, and counted against the key's usage limit. On success
    the user and key records are attached as `request.state.user` and
    `request.state.api_key`.
    """

    def __init__(self, app, protected_prefixes: Optional[tuple] = None):
        super().__init__(app)
        self.protected_prefixes = tuple(protected_prefixes or PROTECTED_PREFIXES)

    def _extract_api_key(self, request: Request) -> Optional[str]:
        """Extract API key from request."""
        auth = request.headers.get("Authorization")
        if auth:
            return auth[7:] if auth.startswith("Bearer ") else auth
        return request.headers.get("X-API-Key")

    def _is_protected(self, path: str) -> bool:
        return path.startswith(self.protected_prefixes)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request with authentication."""
        if request.method == "OPTIONS" or not self._is_protected(request.url.path):
            return await call_next(request)

        api_key = self._extract_api_key(request)
        if not api_key:
            logger.warning(f"Missing API key for {request.url.path}")
            return _auth_error(
                401,
                "API key required",
                "Authorization header or X-API-Key header with API key is required",
            )

        if not api_key.startswith(API_KEY_PREFIXES):
            return _auth_error(
                401, "Invalid API key format", 'API key must start with "wapi_" or "wa_"'
            )

        db = request.app.state.database
        try:
            candidates = await run_in_threadpool(
                db.find_api_keys_by_prefix, api_key[:KEY_PREFIX_LENGTH]
            )
            if not candidates:
                logger.warning(f"Unknown API key for {request.url.path}")
                return _auth_error(401, "Invalid API key", "API key not found or inactive")

            # Prefixes are short and may collide; the hash decides
            record = None
            for candidate in candidates:
                if await run_in_threadpool(verify_api_key, api_key, candidate.key):
                    record = candidate
                    break
            if record is None:
                logger.warning(f"API key verification failed for {request.url.path}")
                return _auth_error(401, "Invalid API key", "API key authentication failed")

            if record.is_expired:
                return _auth_error(401, "API key expired", "Your API key has expired")

            if record.limit_reached:
                return _auth_error(
                    429, "Usage limit exceeded", "API key usage limit has been reached"
                )

            user = await run_in_threadpool(db.get_user, record.user_id)
            if user is None:
                return _auth_error(
                    401, "User not found", "Associated user account not found"
                )

            await run_in_threadpool(db.record_api_key_usage, record.id)
        except Exception as e:
            logger.error(f"API key validation error: {e}")
            return _auth_error(500, "Authentication error", "Failed to validate API key")

        request.state.user = user
        request.state.api_key = record
        return await call_next(request)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Hardening headers for every response.

    Device status carries live pairing QR codes (as data URLs), so API
    responses are never cached and `img-src` allows `data:`.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        headers = response.headers

        headers["X-Content-Type-Options"] = "nosniff"
        headers["X-Frame-Options"] = "DENY"
        headers["Referrer-Policy"] = "no-referrer"
        headers["Content-Security-Policy"] = "default-src 'self'; img-src 'self' data:"
        if request.url.scheme == "https":
            headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        if request.url.path.startswith("/api/"):
            headers["Cache-Control"] = "no-store"

        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One log line per request: method, path, status, duration and the tenant
    (when the request carried a valid API key). Slow requests, typically
    sends stuck on the bridge, are logged as warnings.
    """

    def __init__(self, app, slow_request_seconds: float = SLOW_REQUEST_SECONDS):
        super().__init__(app)
        self.slow_request_seconds = slow_request_seconds

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"{request.method} {request.url.path} failed: {e}")
            raise

        elapsed_ms = (time.perf_counter() - started) * 1000
        user = getattr(request.state, "user", None)
        tenant = f" user={user.id}" if user is not None else ""
        line = (
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"{elapsed_ms:.1f}ms{tenant}"
        )
        if elapsed_ms >= self.slow_request_seconds * 1000:
            logger.warning(f"Slow request: {line}")
        else:
            logger.info(line)

        response.headers["X-Response-Time"] = f"{elapsed_ms:.1f}ms"
        return response
