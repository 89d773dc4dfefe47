"""Data models for the media-seo pipeline."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .errors import ErrorKind, InvalidTransition, MediaSeoError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(Enum):
    """Job processing status."""

    PENDING = "pending"
    PROCESSING = "processing"
    NEEDS_REVIEW = "needs_review"
    APPROVED = "approved"
    FAILED = "failed"
    SKIPPED = "skipped"


# Allowed status changes; anything else raises InvalidTransition.
TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.SKIPPED, JobStatus.FAILED},
    JobStatus.PROCESSING: {
        JobStatus.APPROVED,
        JobStatus.NEEDS_REVIEW,
        JobStatus.FAILED,
        JobStatus.PENDING,
    },
    JobStatus.NEEDS_REVIEW: {JobStatus.APPROVED, JobStatus.PENDING, JobStatus.SKIPPED},
    JobStatus.APPROVED: {JobStatus.PENDING},
    JobStatus.FAILED: {JobStatus.PENDING},
    JobStatus.SKIPPED: {JobStatus.PENDING},
}


def check_transition(job_id: str, current: JobStatus, target: JobStatus):
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(job_id, current.value, target.value)


@dataclass(frozen=True)
class ProviderConfig:
    """Per-provider settings. Immutable once loaded."""

    name: str
    api_key: str = ""
    model: str = ""
    enabled: bool = True
    is_primary: bool = False
    api_url: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    timeout: int = 60

    @property
    def has_key(self) -> bool:
        return bool(self.api_key)


@dataclass
class Pricing:
    """Per-million-token pricing for one model."""

    model_name: str
    provider: str
    input_price_per_million: float
    output_price_per_million: float
    cache_read_price_per_million: Optional[float] = None
    cache_write_price_per_million: Optional[float] = None
    source: str = "manual"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Pricing":
        return cls(
            model_name=data["model_name"],
            provider=data.get("provider", ""),
            input_price_per_million=float(data["input_price_per_million"]),
            output_price_per_million=float(data["output_price_per_million"]),
            cache_read_price_per_million=_optional_float(data.get("cache_read_price_per_million")),
            cache_write_price_per_million=_optional_float(
                data.get("cache_write_price_per_million")
            ),
            source=data.get("source", "manual"),
        )


@dataclass
class TierInfo:
    """A provider account's usage tier and its requests-per-minute limit.

    ``detected`` is False when the vendor reported nothing and the figures
    are the built-in defaults.
    """

    provider: str
    tier: str
    tier_name: str
    rpm: int
    confidence: float
    detected: bool = False
    detected_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TierInfo":
        return cls(**data)


def _optional_float(value) -> Optional[float]:
    if value is None:
        return None
    return float(value)


@dataclass
class TokenUsage:
    """Token counts for one vendor call."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    estimated_input: bool = False

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class CostBreakdown:
    """USD cost of one call, each component rounded to 8 decimals."""

    input_cost: float = 0.0
    output_cost: float = 0.0
    cache_read_cost: float = 0.0
    cache_write_cost: float = 0.0
    total_cost: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass
class GeneratedMetadata:
    """Metadata produced by a vision model for one image."""

    alt: str
    caption: str = ""
    title: str = ""
    keywords: List[str] = field(default_factory=list)
    score: float = 0.85
    usage: TokenUsage = field(default_factory=TokenUsage)
    cost: Optional[CostBreakdown] = None
    provider: str = ""
    model: str = ""
    request_payload: Optional[Dict[str, Any]] = None
    response_payload: Optional[Dict[str, Any]] = None

    def fields(self) -> Dict[str, Any]:
        """The user-facing fields only."""
        return {
            "alt": self.alt,
            "caption": self.caption,
            "title": self.title,
            "keywords": list(self.keywords),
        }


@dataclass(frozen=True)
class Draft:
    """Metadata awaiting review. Live fields stay untouched."""

    metadata: GeneratedMetadata


@dataclass(frozen=True)
class Applied:
    """Metadata written to the live fields."""

    metadata: GeneratedMetadata


MetadataState = Union[Draft, Applied]


@dataclass
class ProcessingError:
    kind: ErrorKind
    message: str
    retry_after: Optional[int] = None

    @classmethod
    def from_exception(cls, exc: MediaSeoError) -> "ProcessingError":
        return cls(kind=exc.kind, message=str(exc), retry_after=getattr(exc, "retry_after", None))


@dataclass
class AnalysisResult:
    """Outcome of one provider call: metadata or error, never both."""

    metadata: Optional[GeneratedMetadata] = None
    error: Optional[ProcessingError] = None

    def __post_init__(self):
        if (self.metadata is None) == (self.error is None):
            raise ValueError("AnalysisResult needs exactly one of metadata or error")

    @classmethod
    def ok(cls, metadata: GeneratedMetadata) -> "AnalysisResult":
        return cls(metadata=metadata)

    @classmethod
    def failed(cls, error: ProcessingError) -> "AnalysisResult":
        return cls(error=error)

    def is_success(self) -> bool:
        return self.error is None


@dataclass
class ProcessingJob:
    """One attempt record for a subject+language pair."""

    job_id: str
    subject_id: str
    language_code: str = "en"
    status: JobStatus = JobStatus.PENDING
    provider: Optional[str] = None
    model: Optional[str] = None
    prompt_version: Optional[str] = None
    request_payload: Optional[Dict[str, Any]] = None
    response_payload: Optional[Dict[str, Any]] = None
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_input: bool = False
    input_cost: float = 0.0
    output_cost: float = 0.0
    total_cost: float = 0.0
    score: Optional[float] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    batch_id: Optional[str] = None
    scheduled_at: Optional[float] = None
    created_at: datetime = None
    processed_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ProcessingJob":
        d = dict(d)
        d["status"] = JobStatus(d.get("status", "pending"))
        return cls(**d)


@dataclass
class ProcessingResult:
    """Structured outcome returned to callers of the synchronizer."""

    success: bool
    status: JobStatus
    subject_id: str
    language: str
    job_id: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    score: Optional[float] = None
    metadata: Optional[Dict[str, Any]] = None
    errors: List[str] = field(default_factory=list)
    rescheduled_at: Optional[float] = None
    rate_limited: bool = False

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d


@dataclass
class BatchResult:
    batch_id: str
    total: int = 0
    success: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    rescheduled: List[str] = field(default_factory=list)
    cancelled: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    rate_limited: bool = False
    budget_exhausted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
