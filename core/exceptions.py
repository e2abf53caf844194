"""
Custom Exception Classes for the Character Chat API.

This module defines the error taxonomy shared by the proxy endpoints and the
client-side conversation engine. Every server-side error is rendered into the
same `{"error": {"message", "type", "code"}}` envelope, so browser clients can
extract a user-facing message without knowing which endpoint failed.

Key Components:
- `ChatAPIException`: The base exception. It carries the message, the wire
  error type, the HTTP status code, an optional upstream code and any response
  headers that must accompany the error (e.g. rate-limit headers).
- `IPNotFoundError`: The client IP could not be resolved. Raised before quota
  tracking so no quota is consumed.
- `RateLimitExceededError`: The daily quota for (ip, model) is exhausted.
- `UpstreamError`: Anything that went wrong talking to the upstream provider,
  or any other unexpected failure, reported as `server_error`.
- `ConversationNotFoundError`: Client-side only. An unknown conversation id
  was passed to the conversation store.
- `TransportError`: Client-side only. Raised by the conversation engine's
  transports on a non-2xx response or a network failure; it is surfaced as a
  notification and never sent over the wire.
- `error_envelope`: The single builder of the error response body.

Architectural Design:
- Hierarchy of Exceptions: Handlers can catch `ChatAPIException` to deal with
  every known failure, or a specific subclass for targeted behavior.
- Headers travel with the error: the quota headers are attached to the
  exception itself so the error middleware can emit them on 429 responses.
"""

from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse

from core.models import RateLimitInfo

RATE_LIMIT_LIMIT_HEADER = "X-RateLimit-Limit"
RATE_LIMIT_REMAINING_HEADER = "X-RateLimit-Remaining"


def rate_limit_headers(limit: int, remaining: int) -> Dict[str, str]:
    return {
        RATE_LIMIT_LIMIT_HEADER: str(limit),
        RATE_LIMIT_REMAINING_HEADER: str(remaining),
    }


class ChatAPIException(Exception):
    """Base exception class for the Character Chat API"""

    def __init__(
        self,
        message: str,
        error_type: str = "server_error",
        status_code: int = 500,
        code: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        self.code = code
        self.headers = headers or {}
        self.details = details or {}
        super().__init__(self.message)


class IPNotFoundError(ChatAPIException):
    """Raised when the client IP cannot be resolved from the request"""

    def __init__(self):
        super().__init__(
            "We couldn't verify your browser, please try again or create your own API key.",
            "ip_not_found",
            400,
            code=400,
        )


class RateLimitExceededError(ChatAPIException):
    """Raised when the daily quota for a client IP and model is exhausted"""

    def __init__(self, limit: int, model: str = ""):
        super().__init__(
            "Daily limit reached for this model.",
            "rate_limit_exceeded",
            429,
            code=429,
            headers=rate_limit_headers(limit, 0),
            details={"limit": limit, "model": model},
        )
        self.limit = limit


class UpstreamError(ChatAPIException):
    """Raised when the upstream provider call fails"""

    def __init__(self, message: str, code: Optional[Any] = None):
        super().__init__(message, "server_error", 500, code=code)

    @classmethod
    def from_exception(cls, exc: Exception, fallback: str) -> "UpstreamError":
        """Build from an arbitrary exception, keeping the upstream message and code when present"""
        body = getattr(exc, "body", None)
        message = None
        code = getattr(exc, "code", None)

        if isinstance(body, dict):
            inner = body.get("error") if isinstance(body.get("error"), dict) else body
            message = inner.get("message")
            code = inner.get("code", code)

        if not message:
            message = getattr(exc, "message", None) or str(exc) or fallback

        return cls(message, code=code)


class TransportError(ChatAPIException):
    """Raised client-side when a chat transport call fails"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        rate_limit: Optional[RateLimitInfo] = None,
    ):
        super().__init__(message, "transport_error", status_code or 0)
        self.rate_limit = rate_limit

    def user_message(self) -> str:
        """Message for notifications, with the remaining quota appended when known"""
        if self.rate_limit:
            return f"{self.message} (remaining {self.rate_limit.remaining}/{self.rate_limit.limit})"
        return self.message


class ConversationNotFoundError(ChatAPIException):
    """Raised client-side when a conversation id is unknown"""

    def __init__(self, message: str):
        super().__init__(message, "not_found", 404)


def error_envelope(message: str, error_type: str, code: Optional[Any] = None) -> Dict[str, Any]:
    """Build the normalized error response body"""
    error: Dict[str, Any] = {"message": message, "type": error_type}
    if code is not None:
        error["code"] = code
    return {"error": error}


def to_error_response(exc: ChatAPIException) -> JSONResponse:
    """Convert a ChatAPIException into a JSON error response"""
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(exc.message, exc.error_type, exc.code),
        headers=exc.headers,
    )
