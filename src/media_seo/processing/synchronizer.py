"""Single-job processing: claim, rate-limit, analyze, score, record.

Status flow per job::

    pending -> processing -> approved | needs_review | failed
                          -> pending   (rate limited or transient error, rescheduled)

Every call returns a ProcessingResult; errors never propagate to callers.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from ..config import ProcessingSettings
from ..context import context_score, final_score
from ..errors import ErrorKind, MediaSeoError, ProcessingFailed, RateLimitExceeded, is_retryable
from ..models import (
    AnalysisResult,
    Applied,
    Draft,
    GeneratedMetadata,
    JobStatus,
    ProcessingError,
    ProcessingJob,
    ProcessingResult,
    utcnow,
)
from ..quality import QualityScorer
from ..storage.audit import AuditLogger
from ..storage.job_store import JobStore
from ..storage.subjects import SubjectStore
from ..utils.rate_limiter import RateLimiter
from .scheduler import Scheduler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    retry_count: int
    delay: int = 0


def backoff_delay(retry_count: int, base: int = 5, max_delay: int = 300) -> int:
    """Exponential backoff for the n-th retry (1-based): base, 2*base, 4*base... capped."""
    return min(base * 2 ** (max(retry_count, 1) - 1), max_delay)


def decide_retry(
    kind: ErrorKind,
    retry_count: int,
    max_retries: int = 3,
    base: int = 5,
    max_delay: int = 300,
) -> RetryDecision:
    """Whether a failed attempt should be retried, and after how long.

    ``retry_count`` is the number of retries already made.
    """
    if not is_retryable(kind):
        return RetryDecision(retry=False, retry_count=retry_count)

    next_count = retry_count + 1
    if next_count > max_retries:
        return RetryDecision(retry=False, retry_count=next_count)
    return RetryDecision(retry=True, retry_count=next_count, delay=backoff_delay(next_count, base, max_delay))


class ProcessingSynchronizer:
    """Runs one subject+language through the pipeline."""

    def __init__(
        self,
        job_store: JobStore,
        subject_store: SubjectStore,
        provider_factory,
        rate_limiter: RateLimiter,
        quality_scorer: QualityScorer,
        scheduler: Scheduler,
        settings: Optional[ProcessingSettings] = None,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.job_store = job_store
        self.subject_store = subject_store
        self.provider_factory = provider_factory
        self.rate_limiter = rate_limiter
        self.quality_scorer = quality_scorer
        self.scheduler = scheduler
        self.settings = settings or ProcessingSettings()
        self.audit = audit or AuditLogger()
        self.clock = clock

    def process_single(
        self,
        subject_id: str,
        language: str = "en",
        job_id: Optional[str] = None,
        batch_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ProcessingResult:
        if job_id is not None:
            job = self.job_store.get(job_id)
            if job is None:
                return ProcessingResult(
                    success=False,
                    status=JobStatus.FAILED,
                    subject_id=subject_id,
                    language=language,
                    job_id=job_id,
                    errors=[f"Unknown job: {job_id}"],
                )
        else:
            job, _ = self.job_store.get_or_create_active(subject_id, language, batch_id)

        if not self.job_store.claim(job.job_id):
            logger.info(f"Subject {subject_id} ({language}) is already being processed")
            return ProcessingResult(
                success=False,
                status=JobStatus.SKIPPED,
                subject_id=subject_id,
                language=language,
                job_id=job.job_id,
                errors=["Already processing"],
            )

        provider = self.provider_factory.primary()
        if provider is None:
            return self._fail(job, ProcessingError(ErrorKind.CONFIG, "No provider configured."))

        try:
            self.rate_limiter.check(provider.name)
        except RateLimitExceeded as e:
            return self._reschedule_rate_limited(job, provider.name, e.retry_after)

        self.audit.analysis_started(subject_id, language, provider.name)

        context = {}
        try:
            context = self.subject_store.get_context(subject_id, language)
            analysis = AnalysisResult.ok(provider.analyze(subject_id, language, context))
        except MediaSeoError as e:
            analysis = AnalysisResult.failed(ProcessingError.from_exception(e))
            self.audit.provider_error(provider.name, str(e), subject_id=subject_id)
        except (KeyError, ValueError, OSError) as e:
            # Subject or image unavailable; retrying will not help.
            analysis = AnalysisResult.failed(
                ProcessingError(ErrorKind.CONFIG, f"Subject unavailable: {e}")
            )
        except Exception as e:
            logger.exception(f"Unexpected error analyzing subject {subject_id} ({language})")
            analysis = AnalysisResult.failed(ProcessingError(ErrorKind.INTERNAL, f"Analysis failed: {e}"))

        if not analysis.is_success():
            return self._handle_failure(job, analysis.error, provider.name, provider.model)

        cancelled = cancel_event is not None and cancel_event.is_set()
        try:
            return self._complete(job, analysis.metadata, context, cancelled)
        except Exception as e:
            logger.exception(f"Could not record result for job {job.job_id}")
            error = ProcessingError(ErrorKind.INTERNAL, f"Could not record result: {e}")
            current = self.job_store.get(job.job_id)
            if current is not None and current.status != JobStatus.PROCESSING:
                # Status was already recorded; only the bookkeeping after it failed.
                return ProcessingResult(
                    success=False,
                    status=current.status,
                    subject_id=job.subject_id,
                    language=job.language_code,
                    job_id=job.job_id,
                    provider=provider.name,
                    model=provider.model,
                    errors=[error.message],
                )
            return self._fail(job, error, provider.name, provider.model)

    def _complete(
        self,
        job: ProcessingJob,
        metadata: GeneratedMetadata,
        context: Dict,
        cancelled: bool = False,
    ) -> ProcessingResult:
        report = self.quality_scorer.evaluate(metadata)
        score = final_score(metadata.score, report.score, context_score(context))

        approve = report.passes_auto_approve and self.settings.auto_apply and not cancelled
        status = JobStatus.APPROVED if approve else JobStatus.NEEDS_REVIEW
        state = Applied(metadata) if approve else Draft(metadata)
        self.subject_store.apply_metadata(job.subject_id, job.language_code, state)

        cost = metadata.cost
        self.job_store.update_status(
            job.job_id,
            status,
            provider=metadata.provider,
            model=metadata.model,
            prompt_version=getattr(self.provider_factory.prompt_builder, "version", None),
            request_payload=metadata.request_payload,
            response_payload=metadata.response_payload,
            input_tokens=metadata.usage.input_tokens,
            output_tokens=metadata.usage.output_tokens,
            estimated_input=metadata.usage.estimated_input,
            input_cost=cost.input_cost if cost else 0.0,
            output_cost=cost.output_cost if cost else 0.0,
            total_cost=cost.total_cost if cost else 0.0,
            score=score,
            error_message=None,
            scheduled_at=None,
            processed_at=utcnow(),
        )
        self.audit.analysis_completed(
            job.subject_id, job.job_id, job.language_code, metadata.provider, score, status.value
        )
        total_cost = cost.total_cost if cost else 0.0
        logger.info(
            f"Subject {job.subject_id} ({job.language_code}): {status.value}, "
            f"score {score:.2f}, cost ${total_cost:.6f}"
        )

        errors: List[str] = []
        if cancelled:
            errors.append("Batch cancelled, metadata saved as draft")
        errors.extend(report.hard_violations)
        return ProcessingResult(
            success=True,
            status=status,
            subject_id=job.subject_id,
            language=job.language_code,
            job_id=job.job_id,
            provider=metadata.provider,
            model=metadata.model,
            score=score,
            metadata=metadata.fields(),
            errors=errors,
        )

    def _reschedule_rate_limited(self, job: ProcessingJob, provider: str, delay: int) -> ProcessingResult:
        run_at = self.clock() + delay
        self.job_store.update_status(job.job_id, JobStatus.PENDING, scheduled_at=run_at)
        self.scheduler.enqueue_at(run_at, job.job_id, group=job.batch_id)
        logger.info(f"Rate limit reached for {provider}, job {job.job_id} rescheduled in {delay}s")
        return ProcessingResult(
            success=False,
            status=JobStatus.PENDING,
            subject_id=job.subject_id,
            language=job.language_code,
            job_id=job.job_id,
            provider=provider,
            errors=[f"Rate limit reached for {provider}, retry in {delay}s"],
            rescheduled_at=run_at,
            rate_limited=True,
        )

    def _handle_failure(
        self, job: ProcessingJob, error: ProcessingError, provider: str, model: str
    ) -> ProcessingResult:
        decision = decide_retry(
            error.kind,
            job.retry_count,
            self.settings.max_retries,
            self.settings.backoff_base,
            self.settings.backoff_max,
        )
        if not decision.retry:
            return self._fail(job, error, provider, model, decision.retry_count)

        run_at = self.clock() + decision.delay
        self.job_store.update_status(
            job.job_id,
            JobStatus.PENDING,
            provider=provider,
            model=model,
            retry_count=decision.retry_count,
            error_message=error.message,
            scheduled_at=run_at,
        )
        self.scheduler.enqueue_at(run_at, job.job_id, group=job.batch_id)
        logger.warning(
            f"Job {job.job_id} failed ({error.kind.value}): {error.message}; "
            f"retry {decision.retry_count}/{self.settings.max_retries} in {decision.delay}s"
        )
        return ProcessingResult(
            success=False,
            status=JobStatus.PENDING,
            subject_id=job.subject_id,
            language=job.language_code,
            job_id=job.job_id,
            provider=provider,
            model=model,
            errors=[error.message],
            rescheduled_at=run_at,
        )

    def _fail(
        self,
        job: ProcessingJob,
        error: ProcessingError,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        retry_count: Optional[int] = None,
    ) -> ProcessingResult:
        self.job_store.update_status(
            job.job_id,
            JobStatus.FAILED,
            provider=provider,
            model=model,
            error_message=error.message,
            retry_count=job.retry_count if retry_count is None else retry_count,
            scheduled_at=None,
            processed_at=utcnow(),
        )
        self.audit.analysis_failed(job.subject_id, error.message, kind=error.kind.value, job_id=job.job_id)
        logger.error(f"Job {job.job_id} failed ({error.kind.value}): {error.message}")
        return ProcessingResult(
            success=False,
            status=JobStatus.FAILED,
            subject_id=job.subject_id,
            language=job.language_code,
            job_id=job.job_id,
            provider=provider,
            model=model,
            errors=[error.message],
        )

    def approve(self, job_id: str) -> ProcessingJob:
        """Apply a reviewed draft to the live fields."""
        job = self._require_job(job_id)
        draft = self.subject_store.get_draft(job.subject_id, job.language_code)
        job = self.job_store.update_status(job_id, JobStatus.APPROVED)
        if draft:
            self.subject_store.apply_metadata(
                job.subject_id, job.language_code, Applied(GeneratedMetadata(**draft))
            )
        self.audit.metadata_approved(job.subject_id, job_id, draft)
        return job

    def reject(self, job_id: str, reason: str = "") -> ProcessingJob:
        self._require_job(job_id)
        job = self.job_store.update_status(
            job_id, JobStatus.SKIPPED, error_message=reason or "Rejected in review"
        )
        self.audit.log_event("metadata_rejected", job.subject_id, job_id=job_id, reason=reason)
        return job

    def _require_job(self, job_id: str) -> ProcessingJob:
        job = self.job_store.get(job_id)
        if job is None:
            raise ProcessingFailed(f"Unknown job: {job_id}", job_id)
        return job
