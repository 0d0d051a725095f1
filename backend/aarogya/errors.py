import logging
from enum import Enum

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    INVALID_REQUEST = "invalid_request"
    AUTHENTICATION = "authentication"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    UPSTREAM = "upstream"


STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.AUTHENTICATION: 401,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.UPSTREAM: 500,
}

MESSAGE_BY_KIND: dict[ErrorKind, str] = {
    ErrorKind.INVALID_REQUEST: "Query is required and must be a non-empty string",
    ErrorKind.AUTHENTICATION: "Invalid API key. Please check GEMINI_API_KEY.",
    ErrorKind.RATE_LIMITED: "API rate limit or quota exceeded. Please try again later.",
    ErrorKind.TIMEOUT: "The language model did not respond in time.",
    ErrorKind.UPSTREAM: "Failed to process your request",
}

_AUTH_MARKERS = ("api_key_invalid", "api key not valid", "permission_denied", "unauthenticated")
_RATE_MARKERS = ("quota", "rate limit", "resource_exhausted", "too many requests")


class ProviderError(Exception):
    """An error raised by (or on behalf of) the language model provider."""

    def __init__(self, kind: ErrorKind, message: str = "", *, cause: BaseException | None = None):
        super().__init__(message or MESSAGE_BY_KIND[kind])
        self.kind = kind
        self.cause = cause

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]

    @property
    def public_message(self) -> str:
        return MESSAGE_BY_KIND[self.kind]


def _status_of(exc: BaseException) -> int | None:
    for attr in ("status_code", "code", "status"):
        value = getattr(exc, attr, None)
        if callable(value):
            continue
        if isinstance(value, int):
            return value
    return None


def classify_provider_exception(exc: BaseException) -> ErrorKind:
    """Map an SDK exception to an ErrorKind.

    Status codes win over message markers; Gemini reports key problems as
    400 INVALID_ARGUMENT with ``API_KEY_INVALID`` in the message, so the
    markers are still needed.
    """
    if isinstance(exc, ProviderError):
        return exc.kind

    status = _status_of(exc)
    if status in (401, 403):
        return ErrorKind.AUTHENTICATION
    if status == 429:
        return ErrorKind.RATE_LIMITED

    text = str(exc).lower()
    if any(marker in text for marker in _AUTH_MARKERS):
        return ErrorKind.AUTHENTICATION
    if any(marker in text for marker in _RATE_MARKERS):
        return ErrorKind.RATE_LIMITED
    if status in (408, 504) or "deadline" in text:
        return ErrorKind.TIMEOUT
    return ErrorKind.UPSTREAM


def wrap_provider_exception(exc: BaseException) -> ProviderError:
    if isinstance(exc, ProviderError):
        return exc
    kind = classify_provider_exception(exc)
    logger.debug("Classified %s as %s", type(exc).__name__, kind.value)
    return ProviderError(kind, str(exc) or MESSAGE_BY_KIND[kind], cause=exc)
