"""Exception hierarchy for the metadata pipeline."""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Classification of pipeline failures."""

    CONFIG = "config"
    RATE_LIMITED = "rate_limited"
    VENDOR_HTTP = "vendor_http"
    RESPONSE_PARSE = "response_parse"
    PRICING_MISSING = "pricing_missing"
    INTERNAL = "internal"


RETRYABLE_KINDS = frozenset({ErrorKind.VENDOR_HTTP, ErrorKind.RESPONSE_PARSE})


def is_retryable(kind: ErrorKind) -> bool:
    """Whether a failure of this kind should be retried with backoff."""
    return kind in RETRYABLE_KINDS


class MediaSeoError(Exception):
    """Base class for all pipeline errors."""

    kind: ErrorKind = ErrorKind.CONFIG


class ConfigError(MediaSeoError):
    """Missing API key, unknown provider, invalid weights and similar."""

    kind = ErrorKind.CONFIG


class RateLimitExceeded(MediaSeoError):
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, provider: str, retry_after: int):
        super().__init__(f"Rate limit reached for {provider}, retry in {retry_after}s")
        self.provider = provider
        self.retry_after = retry_after


class VendorHTTPError(MediaSeoError):
    """Network failure or non-200 response from a vendor API."""

    kind = ErrorKind.VENDOR_HTTP

    def __init__(self, message: str, provider: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ResponseParseError(MediaSeoError):
    """Vendor response did not contain usable metadata JSON."""

    kind = ErrorKind.RESPONSE_PARSE


class PricingMissingError(MediaSeoError):
    kind = ErrorKind.PRICING_MISSING

    def __init__(self, model: str):
        super().__init__(f"Pricing not found for model: {model}")
        self.model = model


class ProcessingFailed(MediaSeoError):
    """A job could not be processed or reviewed."""

    kind = ErrorKind.INTERNAL

    def __init__(self, message: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.job_id = job_id


class InvalidTransition(MediaSeoError):
    """A job status change that the state machine does not allow."""

    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(f"Job {job_id}: illegal transition {current} -> {target}")
        self.job_id = job_id
        self.current = current
        self.target = target
