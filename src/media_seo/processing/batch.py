"""Batch processing over a bounded worker pool."""

import logging
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, Iterable, List, Optional

from ..config import ProcessingSettings
from ..models import BatchResult, JobStatus, ProcessingResult
from .synchronizer import ProcessingSynchronizer

logger = logging.getLogger(__name__)

# Extra wait on top of the limiter delay when rescheduling the rest of a batch.
RESCHEDULE_BUFFER = 5


def new_batch_id(clock: Callable[[], float] = time.time) -> str:
    return f"batch_{int(clock())}_{uuid.uuid4().hex[:8]}"


class BatchProcessor:
    """Runs many subjects through the synchronizer.

    Dispatch stops early when the provider's rate limit is reached (the rest
    of the batch is rescheduled as one group), when the time budget runs
    out, or when ``cancel()`` is called.
    """

    def __init__(
        self,
        synchronizer: ProcessingSynchronizer,
        settings: Optional[ProcessingSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.synchronizer = synchronizer
        self.job_store = synchronizer.job_store
        self.scheduler = synchronizer.scheduler
        self.rate_limiter = synchronizer.rate_limiter
        self.audit = synchronizer.audit
        self.settings = settings or synchronizer.settings
        self.clock = clock
        self.cancel_event = threading.Event()

    def cancel(self):
        logger.info("Batch cancellation requested")
        self.cancel_event.set()

    def already_approved(self, subject_id: str, language: str) -> bool:
        return bool(self.job_store.find(subject_id, language, statuses=[JobStatus.APPROVED]))

    def process_batch(
        self,
        subject_ids: Iterable[str],
        language: str = "en",
        batch_id: Optional[str] = None,
        force: bool = False,
        max_workers: Optional[int] = None,
    ) -> BatchResult:
        subject_ids = list(dict.fromkeys(str(s) for s in subject_ids))
        batch_id = batch_id or new_batch_id(self.clock)
        max_workers = max(1, max_workers or self.settings.max_workers)
        result = BatchResult(batch_id=batch_id, total=len(subject_ids))
        self.cancel_event.clear()

        provider = self.synchronizer.provider_factory.primary()
        if provider is None:
            logger.error("No provider configured, batch not started")
            result.errors.append("No provider configured.")
            result.failed.extend(subject_ids)
            return result

        self.audit.batch_started(
            batch_id, len(subject_ids), {"language": language, "force": force, "workers": max_workers}
        )
        deadline = self.clock() + self.settings.time_budget

        queue: List[str] = []
        for subject_id in subject_ids:
            if not force and self.already_approved(subject_id, language):
                result.skipped.append(subject_id)
            else:
                queue.append(subject_id)

        in_flight: Dict[Future, str] = {}
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="media-seo") as pool:
            while queue or in_flight:
                while queue and len(in_flight) < max_workers and not self._should_stop(result, deadline, provider.name):
                    subject_id = queue.pop(0)
                    future = pool.submit(
                        self.synchronizer.process_single,
                        subject_id,
                        language,
                        batch_id=batch_id,
                        cancel_event=self.cancel_event,
                    )
                    in_flight[future] = subject_id

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in done:
                    subject_id = in_flight.pop(future)
                    self._record(result, subject_id, future)

        if queue:
            self._handle_undispatched(result, queue, language, batch_id, provider.name)

        self.job_store.flush()
        self.audit.batch_completed(
            batch_id,
            {
                "total": result.total,
                "success": len(result.success),
                "failed": len(result.failed),
                "skipped": len(result.skipped),
                "rescheduled": len(result.rescheduled),
                "cancelled": len(result.cancelled),
            },
        )
        logger.info(
            f"Batch {batch_id}: {len(result.success)} ok, {len(result.failed)} failed, "
            f"{len(result.skipped)} skipped, {len(result.rescheduled)} rescheduled, "
            f"{len(result.cancelled)} cancelled"
        )
        return result

    def _should_stop(self, result: BatchResult, deadline: float, provider: str) -> bool:
        if self.cancel_event.is_set() or result.rate_limited or result.budget_exhausted:
            return True
        if self.clock() >= deadline:
            logger.warning("Batch time budget exhausted, deferring remaining items")
            result.budget_exhausted = True
            return True
        if self.rate_limiter.wait_seconds(provider) > 0:
            result.rate_limited = True
            return True
        return False

    def _record(self, result: BatchResult, subject_id: str, future: Future):
        try:
            outcome: ProcessingResult = future.result()
        except Exception:
            logger.exception(f"Unexpected error processing subject {subject_id}")
            result.failed.append(subject_id)
            return

        if outcome.rate_limited:
            result.rate_limited = True
            result.rescheduled.append(subject_id)
        elif outcome.success:
            result.success.append(subject_id)
        elif outcome.status == JobStatus.SKIPPED:
            result.skipped.append(subject_id)
        elif outcome.status == JobStatus.PENDING:
            result.rescheduled.append(subject_id)
        else:
            result.failed.append(subject_id)

    def _handle_undispatched(
        self, result: BatchResult, remaining: List[str], language: str, batch_id: str, provider: str
    ):
        if self.cancel_event.is_set():
            result.cancelled.extend(remaining)
            return

        if result.rate_limited:
            delay = self.rate_limiter.wait_seconds(provider) + RESCHEDULE_BUFFER
        else:
            delay = 0
        self.reschedule_group(remaining, language, batch_id, delay)
        result.rescheduled.extend(remaining)

    def reschedule_group(self, subject_ids: List[str], language: str, batch_id: str, delay: int):
        """Create (or reuse) pending jobs for the subjects and schedule them together."""
        run_at = self.clock() + delay
        for subject_id in subject_ids:
            job, _ = self.job_store.get_or_create_active(subject_id, language, batch_id)
            if job.status != JobStatus.PENDING:
                continue
            self.job_store.update_fields(job.job_id, scheduled_at=run_at)
            self.scheduler.enqueue_at(run_at, job.job_id, group=batch_id)
        logger.info(f"Rescheduled {len(subject_ids)} items of {batch_id} in {delay}s")
