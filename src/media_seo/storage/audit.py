"""Append-only audit trail of pipeline events."""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..models import utcnow

logger = logging.getLogger(__name__)


class AuditLogger:
    """Writes one JSON line per event to ``audit.jsonl`` and mirrors it to logging.

    Without a data directory events only go to the log.
    """

    def __init__(self, data_dir: Optional[Path] = None):
        self.lock = threading.Lock()
        self.path = None
        if data_dir is not None:
            data_dir = Path(data_dir)
            data_dir.mkdir(parents=True, exist_ok=True)
            self.path = data_dir / "audit.jsonl"

    def log_event(self, event_type: str, subject_id: Optional[str] = None, **meta):
        record = {
            "timestamp": utcnow().isoformat(),
            "event": event_type,
            "subject_id": subject_id,
            **meta,
        }
        logger.debug(f"audit {event_type} subject={subject_id} {meta}")

        if self.path is None:
            return
        with self.lock:
            with open(self.path, "a") as f:
                f.write(json.dumps(record, default=str) + "\n")

    def analysis_started(self, subject_id: str, language: str, provider: str):
        self.log_event("analysis_started", subject_id, language=language, provider=provider)

    def analysis_completed(self, subject_id: str, job_id: str, language: str, provider: str, score: float, status: str):
        self.log_event(
            "analysis_completed",
            subject_id,
            job_id=job_id,
            language=language,
            provider=provider,
            score=score,
            status=status,
        )

    def analysis_failed(self, subject_id: str, error: str, **context):
        self.log_event("analysis_failed", subject_id, error=error, **context)

    def metadata_approved(self, subject_id: str, job_id: str, fields: Dict[str, Any]):
        self.log_event("metadata_approved", subject_id, job_id=job_id, fields=fields)

    def batch_started(self, batch_id: str, count: int, options: Dict[str, Any]):
        self.log_event("batch_started", batch_id=batch_id, count=count, options=options)

    def batch_completed(self, batch_id: str, summary: Dict[str, Any]):
        self.log_event("batch_completed", batch_id=batch_id, **summary)

    def provider_error(self, provider: str, error: str, **context):
        self.log_event("provider_error", provider=provider, error=error, **context)

    def trail(self, subject_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent events for one subject, newest first."""
        if self.path is None or not self.path.exists():
            return []

        events = []
        with self.lock:
            with open(self.path) as f:
                for line in f:
                    record = json.loads(line)
                    if record.get("subject_id") == subject_id:
                        events.append(record)
        return list(reversed(events))[:limit]
