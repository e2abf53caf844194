"""
Application Middleware for the Character Chat API.

Cross-cutting request handling for the proxy: correlation IDs, client IP
resolution, error envelopes and request timing.

Key Middleware Components:
- `CorrelationMiddleware`: Adopts the caller's `X-Correlation-ID` (or
  `X-Request-ID`) or mints one, stores it with the resolved client IP on
  `request.state` and echoes it back.
- `ErrorHandlingMiddleware`: Renders `ChatAPIException` and unexpected
  exceptions as `{"error": {message, type, code}}`, keeping any headers the
  exception carries (rate-limit headers on 429 responses).
- `request_validation_handler`: Exception handler giving malformed bodies the
  same envelope (422, type `invalid_request`) instead of FastAPI's `detail` list.
- `PerformanceMiddleware`: Times requests into `X-Process-Time`. For streamed
  replies the figure is time to headers, not time to `[DONE]`.

`CorrelationMiddleware` sits outermost so every log line below it carries the
correlation ID; `ErrorHandlingMiddleware` sits innermost so timing and
correlation apply to error responses too.
"""

import time
import uuid
from typing import Callable, Optional

from fastapi import Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .exceptions import ChatAPIException, error_envelope, to_error_response
from .logging_config import get_logger, set_correlation_id

logger = get_logger("core.middleware")

UNKNOWN_IP = "unknown"
CORRELATION_HEADERS = ("X-Correlation-ID", "X-Request-ID")

# Paths polled by load balancers; logged at DEBUG only
QUIET_PATHS = ("/health", "/ping")


def _clean(value: Optional[str]) -> Optional[str]:
    if value and value.strip():
        return value.strip()
    return None


def _first_forwarded(value: Optional[str]) -> Optional[str]:
    return _clean(value.split(",")[0]) if value else None


# Most specific first. X-Forwarded-For may list a chain of proxies.
_IP_SOURCES = (
    ("cf-connecting-ip", _clean),
    ("true-client-ip", _clean),
    ("x-forwarded-for", _first_forwarded),
    ("x-real-ip", _clean),
)


def get_client_ip(request: Request) -> str:
    """
    Resolve the client IP that quotas are charged against.

    Walks the proxy headers in `_IP_SOURCES` order, then the socket peer.
    Returns "unknown" when nothing is available; the chat endpoint refuses
    such requests.
    """
    for header, extract in _IP_SOURCES:
        ip = extract(request.headers.get(header))
        if ip:
            return ip

    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN_IP


def _request_context(request: Request) -> dict:
    return {
        "method": request.method,
        "path": request.url.path,
        "client_ip": getattr(request.state, "client_ip", None),
    }


def describe_validation_error(exc: RequestValidationError) -> str:
    """First validation problem as "field.path: message" for the error envelope"""
    errors = exc.errors()
    if not errors:
        return "Invalid request body"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid value")
    return f"{location}: {message}" if location else message


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render body validation failures in the same envelope as every other error"""
    message = describe_validation_error(exc)
    logger.warning(
        f"Invalid request: {message}",
        extra={**_request_context(request), "error_count": len(exc.errors())},
    )
    return JSONResponse(
        status_code=422,
        content=error_envelope(message, "invalid_request", 422),
    )


class CorrelationMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = next(
            (request.headers[h] for h in CORRELATION_HEADERS if request.headers.get(h)),
            None,
        ) or str(uuid.uuid4())

        set_correlation_id(correlation_id)
        request.state.correlation_id = correlation_id
        request.state.client_ip = get_client_ip(request)

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Turns exceptions into the JSON error envelope"""

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except ChatAPIException as e:
            # Quota refusals are expected traffic, not faults
            log = logger.warning if e.status_code < 500 else logger.error
            log(
                f"{e.error_type}: {e.message}",
                extra={
                    **_request_context(request),
                    "error_type": e.error_type,
                    "status_code": e.status_code,
                },
            )
            return to_error_response(e)
        except Exception as e:
            logger.error(
                f"Unhandled {type(e).__name__}: {e}",
                extra={**_request_context(request), "error_type": type(e).__name__},
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content=error_envelope(str(e) or "An unexpected error occurred", "server_error"),
            )


class PerformanceMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, slow_request_seconds: float = 5.0):
        super().__init__(app)
        self.slow_request_seconds = slow_request_seconds

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        response.headers["X-Process-Time"] = str(elapsed_ms)

        streaming = response.headers.get("content-type", "").startswith("text/event-stream")
        context = {
            **_request_context(request),
            "status_code": response.status_code,
            "process_time_ms": elapsed_ms,
            "streaming": streaming,
        }
        log = logger.debug if request.url.path in QUIET_PATHS else logger.info
        log(f"{request.method} {request.url.path} -> {response.status_code}", extra=context)

        if elapsed_ms > self.slow_request_seconds * 1000:
            logger.warning(f"Slow request: {request.method} {request.url.path}", extra=context)

        return response
