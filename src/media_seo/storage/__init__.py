"""Stores for jobs, pricing, subjects and the audit trail."""

from .audit import AuditLogger
from .job_store import JobStore, ParquetJobStore
from .pricing_store import PricingStore
from .subjects import ManifestSubjectStore, SubjectStore
from .tier_cache import TierCache

__all__ = [
    "AuditLogger",
    "JobStore",
    "ManifestSubjectStore",
    "ParquetJobStore",
    "PricingStore",
    "SubjectStore",
    "TierCache",
]
