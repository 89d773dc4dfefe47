"""Queueing of subjects for background processing."""

import json
import logging
import math
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..models import JobStatus, ProcessingResult, utcnow
from ..storage.job_store import ACTIVE_STATUSES
from .batch import new_batch_id
from .scheduler import ScheduledItem
from .synchronizer import ProcessingSynchronizer

logger = logging.getLogger(__name__)

DONE_STATUSES = (JobStatus.APPROVED, JobStatus.NEEDS_REVIEW)


class QueueManager:
    """Enqueues jobs on the scheduler and drains them when due.

    Batches are split into chunks of ``batch_size``; each chunk is
    scheduled after the previous one by enough time to stay within the
    primary provider's per-minute limit.
    """

    def __init__(
        self,
        synchronizer: ProcessingSynchronizer,
        data_dir: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.synchronizer = synchronizer
        self.job_store = synchronizer.job_store
        self.scheduler = synchronizer.scheduler
        self.rate_limiter = synchronizer.rate_limiter
        self.audit = synchronizer.audit
        self.settings = synchronizer.settings
        self.clock = clock
        self.lock = threading.Lock()
        self.batches: Dict[str, Dict[str, Any]] = {}
        self.batches_path = None
        if data_dir is not None:
            self.batches_path = Path(data_dir) / "batches.json"
            if self.batches_path.exists():
                with open(self.batches_path) as f:
                    self.batches = json.load(f)

    def is_queued(self, subject_id: str, language: str) -> bool:
        return bool(self.job_store.find(subject_id, language, statuses=ACTIVE_STATUSES))

    def enqueue_single(self, subject_id: str, language: str = "en", delay: int = 0) -> Optional[str]:
        """Queue one subject. Returns the job id, or None if it is already queued."""
        if self.is_queued(subject_id, language):
            logger.debug(f"Subject {subject_id} ({language}) already queued")
            return None

        job, _ = self.job_store.get_or_create_active(subject_id, language)
        run_at = self.clock() + delay
        self.job_store.update_fields(job.job_id, scheduled_at=run_at)
        self.scheduler.enqueue_at(run_at, job.job_id)
        self.audit.log_event("queued_single", subject_id, language=language, job_id=job.job_id)
        return job.job_id

    def chunk_delay(self) -> int:
        provider = self.synchronizer.provider_factory.primary()
        if provider is None:
            return 0
        limit = self.rate_limiter.get_limit(provider.name, "minute")
        if limit <= 0:
            return 60
        return math.ceil(self.settings.batch_size * 60 / limit)

    def enqueue_batch(self, subject_ids: Iterable[str], language: str = "en", force: bool = False) -> Dict[str, Any]:
        batch_id = new_batch_id(self.clock)
        unique = [
            s
            for s in dict.fromkeys(str(s) for s in subject_ids)
            if not self.is_queued(s, language)
        ]
        if not force:
            unique = [
                s
                for s in unique
                if not self.job_store.find(s, language, statuses=[JobStatus.APPROVED])
            ]

        size = max(1, self.settings.batch_size)
        chunks = [unique[i : i + size] for i in range(0, len(unique), size)]
        step = self.chunk_delay()
        now = self.clock()

        job_ids: List[str] = []
        for index, chunk in enumerate(chunks):
            run_at = now + index * step
            for subject_id in chunk:
                job, _ = self.job_store.get_or_create_active(subject_id, language, batch_id)
                self.job_store.update_fields(job.job_id, scheduled_at=run_at)
                self.scheduler.enqueue_at(run_at, job.job_id, group=batch_id)
                job_ids.append(job.job_id)

        if unique:
            self._store_batch(
                batch_id,
                {
                    "total": len(unique),
                    "chunks": len(chunks),
                    "language": language,
                    "job_ids": job_ids,
                    "created_at": utcnow().isoformat(),
                    "status": "queued",
                },
            )
            self.audit.batch_started(batch_id, len(unique), {"language": language, "chunks": len(chunks)})
        self.job_store.flush()

        logger.info(f"Queued {len(unique)} subjects as {batch_id} in {len(chunks)} chunks")
        return {"batch_id": batch_id, "total": len(unique), "chunks": len(chunks), "job_ids": job_ids}

    def run_due(self, limit: Optional[int] = None) -> List[ProcessingResult]:
        """Process scheduled jobs whose time has come."""
        results = []
        due = self.scheduler.due(self.clock(), limit=limit)
        for index, item in enumerate(due):
            job = self.job_store.get(item.job_id)
            if job is None or job.status != JobStatus.PENDING:
                continue
            results.append(
                self.synchronizer.process_single(
                    job.subject_id, job.language_code, job_id=job.job_id, batch_id=job.batch_id
                )
            )
            if results[-1].rate_limited:
                # The rest would hit the same limit; push them past the window.
                self._defer(due[index + 1 :], results[-1].rescheduled_at)
                break

        self.job_store.flush()
        return results

    def _defer(self, items: List[ScheduledItem], run_at: float):
        for item in items:
            self.scheduler.enqueue_at(run_at, item.job_id, group=item.group)
            self.job_store.update_fields(item.job_id, scheduled_at=run_at)

    def cancel_batch(self, batch_id: str) -> int:
        batch = self.batches.get(batch_id)
        if batch is None:
            return 0

        cancelled = self.scheduler.cancel_group(batch_id)
        for job in self.job_store.find(batch_id=batch_id, statuses=[JobStatus.PENDING]):
            self.job_store.update_status(job.job_id, JobStatus.SKIPPED, error_message="Cancelled")

        self._update_batch(batch_id, status="cancelled")
        self.job_store.flush()
        logger.info(f"Cancelled {cancelled} scheduled jobs of {batch_id}")
        return cancelled

    def cancel_all(self) -> int:
        cancelled = 0
        for item in self.scheduler.pending():
            if self.scheduler.cancel(item.job_id):
                cancelled += 1
        for job in self.job_store.get_pending():
            self.job_store.update_status(job.job_id, JobStatus.SKIPPED, error_message="Cancelled")
        for batch_id, batch in self.batches.items():
            if batch.get("status") == "queued":
                self._update_batch(batch_id, status="cancelled")
        self.job_store.flush()
        return cancelled

    def get_batch_progress(self, batch_id: str) -> Dict[str, Any]:
        batch = self.batches.get(batch_id)
        if batch is None:
            return {"found": False, "total": 0, "completed": 0, "failed": 0, "percentage": 0}

        jobs = self.job_store.find(batch_id=batch_id)
        completed = sum(1 for j in jobs if j.status in DONE_STATUSES)
        failed = sum(1 for j in jobs if j.status == JobStatus.FAILED)
        total = batch.get("total", 0)
        percentage = (completed + failed) / total * 100 if total else 0
        return {
            "found": True,
            "total": total,
            "completed": completed,
            "failed": failed,
            "pending": total - completed - failed,
            "percentage": round(percentage, 2),
            "status": batch.get("status", "unknown"),
        }

    def get_status(self) -> Dict[str, Any]:
        counts = self.job_store.count_by_status()
        return {
            "pending": counts[JobStatus.PENDING.value],
            "in_progress": counts[JobStatus.PROCESSING.value],
            "failed": counts[JobStatus.FAILED.value],
            "scheduled": len(self.scheduler.pending()),
            "jobs": counts,
            "rate_limits": self.rate_limiter.status(),
        }

    def _store_batch(self, batch_id: str, data: Dict[str, Any]):
        with self.lock:
            self.batches[batch_id] = data
            self._save_batches()

    def _update_batch(self, batch_id: str, **fields):
        with self.lock:
            self.batches.setdefault(batch_id, {}).update(fields)
            self._save_batches()

    def _save_batches(self):
        if self.batches_path is None:
            return
        with open(self.batches_path, "w") as f:
            json.dump(self.batches, f, indent=2)
