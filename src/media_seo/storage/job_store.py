"""Processing job persistence."""

import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from ..models import JobStatus, ProcessingJob, check_transition, utcnow

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)


def new_job_id() -> str:
    return uuid.uuid4().hex


class JobStore(ABC):
    """Storage interface for ProcessingJob records."""

    @abstractmethod
    def create(self, job: ProcessingJob) -> ProcessingJob:
        pass

    @abstractmethod
    def get(self, job_id: str) -> Optional[ProcessingJob]:
        pass

    @abstractmethod
    def update_status(self, job_id: str, status: JobStatus, **fields) -> ProcessingJob:
        """Move a job to ``status``, validating the transition."""
        pass

    @abstractmethod
    def update_fields(self, job_id: str, **fields) -> ProcessingJob:
        pass

    @abstractmethod
    def claim(self, job_id: str) -> bool:
        """Atomically move a job from pending to processing.

        Returns False when the job is not pending, meaning another worker
        already owns it.
        """
        pass

    @abstractmethod
    def get_or_create_active(
        self, subject_id: str, language: str, batch_id: Optional[str] = None
    ) -> Tuple[ProcessingJob, bool]:
        """Return the pending/processing job for the pair, creating one if absent."""
        pass

    @abstractmethod
    def find(
        self,
        subject_id: Optional[str] = None,
        language: Optional[str] = None,
        statuses: Optional[Iterable[JobStatus]] = None,
        batch_id: Optional[str] = None,
    ) -> List[ProcessingJob]:
        pass

    def get_pending(self, batch_id: Optional[str] = None) -> List[ProcessingJob]:
        return self.find(statuses=[JobStatus.PENDING], batch_id=batch_id)

    def latest(self, subject_id: str, language: str) -> Optional[ProcessingJob]:
        jobs = self.find(subject_id=subject_id, language=language)
        if not jobs:
            return None
        return max(jobs, key=lambda j: j.created_at)

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        for job in self.find():
            counts[job.status.value] += 1
        return counts

    def flush(self):
        """Persist buffered changes. No-op for stores without buffering."""


class ParquetJobStore(JobStore):
    """Lock-guarded in-memory job table written to ``jobs.parquet``.

    Changes are flushed once ``buffer_size`` updates have accumulated and
    on explicit ``flush()``.
    """

    schema = pa.schema(
        [
            ("job_id", pa.string()),
            ("subject_id", pa.string()),
            ("language_code", pa.string()),
            ("status", pa.string()),
            ("provider", pa.string()),
            ("model", pa.string()),
            ("prompt_version", pa.string()),
            ("request_payload", pa.string()),
            ("response_payload", pa.string()),
            ("input_tokens", pa.int64()),
            ("output_tokens", pa.int64()),
            ("estimated_input", pa.bool_()),
            ("input_cost", pa.float64()),
            ("output_cost", pa.float64()),
            ("total_cost", pa.float64()),
            ("score", pa.float64()),
            ("error_message", pa.string()),
            ("retry_count", pa.int32()),
            ("batch_id", pa.string()),
            ("scheduled_at", pa.float64()),
            ("created_at", pa.timestamp("us", tz="UTC")),
            ("processed_at", pa.timestamp("us", tz="UTC")),
            ("approved_at", pa.timestamp("us", tz="UTC")),
        ]
    )

    def __init__(self, data_dir: Optional[Path] = None, buffer_size: int = 20):
        self.lock = threading.RLock()
        self.jobs: Dict[str, ProcessingJob] = {}
        self.buffer_size = buffer_size
        self.dirty = 0
        self.path = None

        if data_dir is not None:
            data_dir = Path(data_dir)
            data_dir.mkdir(parents=True, exist_ok=True)
            self.path = data_dir / "jobs.parquet"
            self._load()

    def _load(self):
        if not self.path.exists():
            return

        df = pq.read_table(self.path).to_pandas()
        for record in df.to_dict("records"):
            for key, value in record.items():
                if not isinstance(value, (list, dict)) and pd.isna(value):
                    record[key] = None
            for key in ("request_payload", "response_payload"):
                if record.get(key):
                    record[key] = json.loads(record[key])
            for key in ("created_at", "processed_at", "approved_at"):
                if record.get(key) is not None:
                    record[key] = record[key].to_pydatetime()
            for key in ("input_tokens", "output_tokens", "retry_count"):
                record[key] = int(record.get(key) or 0)
            for key in ("input_cost", "output_cost", "total_cost"):
                record[key] = float(record.get(key) or 0.0)
            record["estimated_input"] = bool(record.get("estimated_input"))
            job = ProcessingJob.from_dict(record)
            self.jobs[job.job_id] = job

        logger.info(f"Loaded {len(self.jobs)} jobs from {self.path}")

    def _mark_dirty(self):
        self.dirty += 1
        if self.dirty >= self.buffer_size:
            self._flush()

    def create(self, job: ProcessingJob) -> ProcessingJob:
        with self.lock:
            if job.job_id in self.jobs:
                raise ValueError(f"Job {job.job_id} already exists")
            self.jobs[job.job_id] = job
            self._mark_dirty()
        return job

    def get(self, job_id: str) -> Optional[ProcessingJob]:
        with self.lock:
            return self.jobs.get(job_id)

    def update_status(self, job_id: str, status: JobStatus, **fields) -> ProcessingJob:
        with self.lock:
            job = self._require(job_id)
            check_transition(job_id, job.status, status)
            job.status = status
            self._apply(job, fields)
            if status == JobStatus.APPROVED and job.approved_at is None:
                job.approved_at = utcnow()
            self._mark_dirty()
            return job

    def update_fields(self, job_id: str, **fields) -> ProcessingJob:
        with self.lock:
            job = self._require(job_id)
            self._apply(job, fields)
            self._mark_dirty()
            return job

    def claim(self, job_id: str) -> bool:
        with self.lock:
            job = self._require(job_id)
            if job.status != JobStatus.PENDING:
                return False
            job.status = JobStatus.PROCESSING
            self._mark_dirty()
            return True

    def get_or_create_active(
        self, subject_id: str, language: str, batch_id: Optional[str] = None
    ) -> Tuple[ProcessingJob, bool]:
        with self.lock:
            for job in self.jobs.values():
                if (
                    job.subject_id == subject_id
                    and job.language_code == language
                    and job.status in ACTIVE_STATUSES
                ):
                    return job, False

            job = ProcessingJob(
                job_id=new_job_id(),
                subject_id=subject_id,
                language_code=language,
                batch_id=batch_id,
            )
            self.jobs[job.job_id] = job
            self._mark_dirty()
            return job, True

    def find(
        self,
        subject_id: Optional[str] = None,
        language: Optional[str] = None,
        statuses: Optional[Iterable[JobStatus]] = None,
        batch_id: Optional[str] = None,
    ) -> List[ProcessingJob]:
        statuses = set(statuses) if statuses is not None else None
        with self.lock:
            return [
                job
                for job in self.jobs.values()
                if (subject_id is None or job.subject_id == subject_id)
                and (language is None or job.language_code == language)
                and (statuses is None or job.status in statuses)
                and (batch_id is None or job.batch_id == batch_id)
            ]

    def flush(self):
        with self.lock:
            self._flush()

    def _flush(self):
        self.dirty = 0
        if self.path is None:
            return

        rows = []
        for job in self.jobs.values():
            row = job.to_dict()
            for key in ("request_payload", "response_payload"):
                if row[key] is not None:
                    row[key] = json.dumps(row[key])
            rows.append(row)

        table = pa.Table.from_pylist(rows, schema=self.schema)
        pq.write_table(table, self.path, compression="snappy")
        logger.debug(f"Flushed {len(rows)} jobs to {self.path}")

    def _require(self, job_id: str) -> ProcessingJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise KeyError(f"Unknown job: {job_id}")
        return job

    @staticmethod
    def _apply(job: ProcessingJob, fields: Dict):
        for key, value in fields.items():
            if not hasattr(job, key):
                raise AttributeError(f"ProcessingJob has no field {key}")
            setattr(job, key, value)
