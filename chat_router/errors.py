"""Exceptions and upstream error classification."""

from typing import Optional

CATEGORY_TIMEOUT = "timeout"
CATEGORY_QUOTA = "quota"
CATEGORY_AUTH = "auth"
CATEGORY_GENERIC = "generic"

QUOTA_MARKERS = ("429", "quota", "rate limit", "resource_exhausted")
AUTH_MARKERS = ("api key not valid", "api_key_invalid", "permission_denied", "unauthenticated")


class UpstreamError(Exception):
    """A failed call to the upstream LLM provider."""

    def __init__(self, status_code: Optional[int], message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message

    def __str__(self) -> str:
        if self.status_code is None:
            return self.message
        return f"[{self.status_code}] {self.message}"


class UpstreamTimeout(UpstreamError):
    def __init__(self, message: str = "Upstream call timed out"):
        super().__init__(None, message)


class AdmissionRejected(Exception):
    """Raised when the admission queue is already at its maximum depth."""


class RateLimitExceeded(Exception):
    """Raised when a user exceeds the per-user chat rate limit."""


class AuthError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def is_quota_error(error: BaseException) -> bool:
    if isinstance(error, UpstreamError) and error.status_code == 429:
        return True
    text = str(error).lower()
    return any(marker in text for marker in QUOTA_MARKERS)


def classify_error(error: BaseException) -> str:
    """Map an upstream failure to a user-facing category."""
    if isinstance(error, UpstreamTimeout):
        return CATEGORY_TIMEOUT
    if is_quota_error(error):
        return CATEGORY_QUOTA
    if isinstance(error, UpstreamError) and error.status_code in (401, 403):
        return CATEGORY_AUTH
    text = str(error).lower()
    if any(marker in text for marker in AUTH_MARKERS):
        return CATEGORY_AUTH
    return CATEGORY_GENERIC
