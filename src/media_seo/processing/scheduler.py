"""Delayed re-execution of jobs."""

import heapq
import itertools
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(order=True)
class ScheduledItem:
    run_at: float
    seq: int = field(compare=True)
    job_id: str = field(compare=False)
    group: Optional[str] = field(default=None, compare=False)


class Scheduler(ABC):
    """Holds job ids until their run time."""

    @abstractmethod
    def enqueue_at(self, run_at: float, job_id: str, group: Optional[str] = None):
        """Schedule job_id; replaces any earlier entry for the same job."""
        pass

    @abstractmethod
    def due(self, now: Optional[float] = None, limit: Optional[int] = None) -> List[ScheduledItem]:
        """Pop and return entries whose run time has passed."""
        pass

    @abstractmethod
    def cancel(self, job_id: str) -> bool:
        pass

    @abstractmethod
    def cancel_group(self, group: str) -> int:
        pass

    @abstractmethod
    def pending(self) -> List[ScheduledItem]:
        pass


class InMemoryScheduler(Scheduler):
    """Heap-backed scheduler, optionally checkpointed to a JSON file."""

    def __init__(self, checkpoint_file: Optional[Path] = None, clock: Callable[[], float] = time.time):
        self.clock = clock
        self.lock = threading.Lock()
        self.heap: List[ScheduledItem] = []
        self.entries: Dict[str, ScheduledItem] = {}
        self.counter = itertools.count()
        self.checkpoint_file = Path(checkpoint_file) if checkpoint_file else None
        if self.checkpoint_file and self.checkpoint_file.exists():
            self._load()

    def _load(self):
        with open(self.checkpoint_file) as f:
            data = json.load(f)
        for raw in data.get("items", []):
            self._push(raw["run_at"], raw["job_id"], raw.get("group"))
        logger.info(f"Restored {len(self.entries)} scheduled jobs from {self.checkpoint_file}")

    def _save(self):
        if not self.checkpoint_file:
            return
        items = [asdict(item) for item in sorted(self.entries.values())]
        tmp = self.checkpoint_file.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump({"items": items}, f)
        tmp.replace(self.checkpoint_file)

    def _push(self, run_at: float, job_id: str, group: Optional[str]):
        item = ScheduledItem(run_at=run_at, seq=next(self.counter), job_id=job_id, group=group)
        self.entries[job_id] = item
        heapq.heappush(self.heap, item)

    def enqueue_at(self, run_at: float, job_id: str, group: Optional[str] = None):
        with self.lock:
            self._push(run_at, job_id, group)
            self._save()
        logger.debug(f"Scheduled job {job_id} in {max(0, run_at - self.clock()):.0f}s")

    def due(self, now: Optional[float] = None, limit: Optional[int] = None) -> List[ScheduledItem]:
        now = self.clock() if now is None else now
        result = []
        with self.lock:
            while self.heap and self.heap[0].run_at <= now:
                if limit is not None and len(result) >= limit:
                    break
                item = heapq.heappop(self.heap)
                # Skip entries superseded by a later enqueue or cancelled.
                if self.entries.get(item.job_id) is not item:
                    continue
                del self.entries[item.job_id]
                result.append(item)
            if result:
                self._save()
        return result

    def cancel(self, job_id: str) -> bool:
        with self.lock:
            removed = self.entries.pop(job_id, None) is not None
            if removed:
                self._save()
        return removed

    def cancel_group(self, group: str) -> int:
        with self.lock:
            job_ids = [job_id for job_id, item in self.entries.items() if item.group == group]
            for job_id in job_ids:
                del self.entries[job_id]
            if job_ids:
                self._save()
        return len(job_ids)

    def pending(self) -> List[ScheduledItem]:
        with self.lock:
            return sorted(self.entries.values())
