"""
Error kinds raised by the gateway, store, and dispatcher.
Sweep results report `kind` and `retryable` so the scheduler can decide when to try again.
"""
from typing import Optional


class GitFortError(Exception):
    """Base class for engine errors."""
    kind: str = "error"
    retryable: bool = False

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail
        super().__init__(detail or self.kind)


class UpstreamError(GitFortError):
    kind = "upstream_error"


class UpstreamUnavailable(UpstreamError):
    kind = "upstream_unavailable"
    retryable = True


class UpstreamRateLimited(UpstreamError):
    kind = "upstream_rate_limited"
    retryable = True

    def __init__(self, detail: Optional[str] = None, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(detail)


class UpstreamAuthExpired(UpstreamError):
    kind = "upstream_auth_expired"


class UpstreamNotFound(UpstreamError):
    kind = "upstream_not_found"


class MalformedData(GitFortError):
    kind = "malformed_data"


class StorageUnavailable(GitFortError):
    kind = "storage_unavailable"
    retryable = True


class ConcurrentUpdate(GitFortError):
    kind = "concurrent_update"
    retryable = True


class DeliveryFailure(GitFortError):
    kind = "delivery_failure"
    retryable = True

    def __init__(self, detail: Optional[str] = None, failure_type: str = "unknown"):
        self.failure_type = failure_type
        super().__init__(detail)


class Unauthorized(GitFortError):
    kind = "unauthorized"


class UnknownUser(GitFortError):
    kind = "unknown_user"


__all__ = [
    "GitFortError",
    "UpstreamError",
    "UpstreamUnavailable",
    "UpstreamRateLimited",
    "UpstreamAuthExpired",
    "UpstreamNotFound",
    "MalformedData",
    "StorageUnavailable",
    "ConcurrentUpdate",
    "DeliveryFailure",
    "Unauthorized",
    "UnknownUser",
]
