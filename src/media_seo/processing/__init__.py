"""Job processing: synchronizer, batch runner, queue and scheduler."""

from .batch import BatchProcessor
from .queue import QueueManager
from .scheduler import InMemoryScheduler, Scheduler
from .synchronizer import ProcessingSynchronizer, backoff_delay, decide_retry

__all__ = [
    "BatchProcessor",
    "InMemoryScheduler",
    "ProcessingSynchronizer",
    "QueueManager",
    "Scheduler",
    "backoff_delay",
    "decide_retry",
]
