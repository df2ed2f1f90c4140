"""Error taxonomy for the chat core and classification of upstream failures."""

from __future__ import annotations

import asyncio
import enum
import logging

logger = logging.getLogger(__name__)


class ErrorKind(str, enum.Enum):
    BAD_REQUEST = "BAD_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    TOO_MANY_REQUESTS = "TOO_MANY_REQUESTS"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self]


_STATUS_CODES = {
    ErrorKind.BAD_REQUEST: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.TOO_MANY_REQUESTS: 429,
    ErrorKind.INTERNAL_ERROR: 500,
    ErrorKind.SERVICE_UNAVAILABLE: 503,
}


class ChatError(Exception):
    """An error with a stable outward ``code``; rendered as ``{error, code, details}``."""

    def __init__(self, kind: ErrorKind, message: str, details: dict | None = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.kind.value}
        if self.details:
            body["details"] = self.details
        return body

    def __repr__(self):
        return f"<ChatError {self.kind.value}: {self.message}>"


class ConfigurationError(ChatError):
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(ErrorKind.INTERNAL_ERROR, message, details)


class QuotaExceededError(ChatError):
    """Daily allowance cannot cover the request; carries the deficit."""

    def __init__(self, required: int, remaining: int):
        self.required = required
        self.remaining = remaining
        self.deficit = max(required - remaining, 0)
        super().__init__(
            ErrorKind.FORBIDDEN,
            f"Daily token allowance exceeded: need {self.deficit} more tokens, have {remaining}.",
            {"deficit": self.deficit, "required": required, "remaining": remaining},
        )


# ── Upstream failure classification ────────────────────────────────────────

class UpstreamFailure(str, enum.Enum):
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    QUOTA_EXCEEDED_UPSTREAM = "quota_exceeded_upstream"
    AUTH_INVALID = "auth_invalid"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"


_OUTWARD = {
    UpstreamFailure.TIMEOUT: (ErrorKind.SERVICE_UNAVAILABLE, "The model provider timed out. Please try again."),
    UpstreamFailure.RATE_LIMITED: (ErrorKind.TOO_MANY_REQUESTS, "Rate limit exceeded. Please try again later."),
    UpstreamFailure.QUOTA_EXCEEDED_UPSTREAM: (
        ErrorKind.SERVICE_UNAVAILABLE,
        "The model provider has insufficient credits.",
    ),
    UpstreamFailure.AUTH_INVALID: (ErrorKind.INTERNAL_ERROR, "The model provider rejected our credentials."),
    UpstreamFailure.UNAVAILABLE: (ErrorKind.SERVICE_UNAVAILABLE, "The model provider is unavailable."),
    UpstreamFailure.UNKNOWN: (ErrorKind.INTERNAL_ERROR, "The model provider returned an unexpected error."),
}


def _status_of(exc: BaseException) -> int | None:
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def classify_upstream_error(exc: BaseException) -> UpstreamFailure:
    """Map whatever the provider SDK raised onto an :class:`UpstreamFailure`.

    Checks exception type names first (openai/httpx are not imported here so
    any SDK raising similarly-named errors classifies the same), then HTTP
    status, then message text.
    """
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return UpstreamFailure.TIMEOUT

    names = {cls.__name__ for cls in type(exc).__mro__}
    if names & {"APITimeoutError", "TimeoutException", "ReadTimeout", "ConnectTimeout"}:
        return UpstreamFailure.TIMEOUT
    if "RateLimitError" in names:
        message = str(exc).lower()
        if "quota" in message or "credit" in message:
            return UpstreamFailure.QUOTA_EXCEEDED_UPSTREAM
        return UpstreamFailure.RATE_LIMITED
    if names & {"AuthenticationError", "PermissionDeniedError"}:
        return UpstreamFailure.AUTH_INVALID
    if names & {"APIConnectionError", "ConnectError", "InternalServerError"}:
        return UpstreamFailure.UNAVAILABLE

    status = _status_of(exc)
    if status is not None:
        if status in (401, 403):
            return UpstreamFailure.AUTH_INVALID
        if status == 402:
            return UpstreamFailure.QUOTA_EXCEEDED_UPSTREAM
        if status == 408 or status == 504:
            return UpstreamFailure.TIMEOUT
        if status == 429:
            return UpstreamFailure.RATE_LIMITED
        if status >= 500:
            return UpstreamFailure.UNAVAILABLE

    message = str(exc).lower()
    if "timed out" in message or "timeout" in message:
        return UpstreamFailure.TIMEOUT
    if "rate limit" in message:
        return UpstreamFailure.RATE_LIMITED
    if "insufficient credits" in message or "quota" in message:
        return UpstreamFailure.QUOTA_EXCEEDED_UPSTREAM
    if "unauthorized" in message or "invalid api key" in message:
        return UpstreamFailure.AUTH_INVALID
    if "service unavailable" in message or "connection" in message:
        return UpstreamFailure.UNAVAILABLE
    return UpstreamFailure.UNKNOWN


def upstream_chat_error(exc: BaseException, provider_name: str) -> ChatError:
    """Translate a raw provider exception into a :class:`ChatError`."""
    failure = classify_upstream_error(exc)
    kind, message = _OUTWARD[failure]
    logger.warning("%s call failed (%s): %s", provider_name, failure.value, exc)
    return ChatError(kind, message, {"upstream": failure.value, "provider": provider_name})
