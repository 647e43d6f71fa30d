"""
Bounded worker pool that drains the work queue.

Handlers are looked up by queue type in a registry supplied by the
orchestrator; each handler takes one claimed QueueItem and raises on failure.
"""

import logging
import threading
from collections.abc import Callable
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from calendar_bridge.models import QueueItem
from calendar_bridge.models import QueueType
from calendar_bridge.models import ValidationError
from calendar_bridge.queue import WorkQueue
from calendar_bridge.sync.utils import new_lease_owner

logger = logging.getLogger(__name__)

QueueHandler = Callable[[QueueItem], None]


@dataclass
class WorkerStats:
    processed: int = 0
    completed: int = 0
    failed: int = 0


def resolve_handler(handlers: Mapping[QueueType, QueueHandler], queue_type: QueueType) -> QueueHandler:
    handler = handlers.get(QueueType(queue_type))
    if not handler:
        raise ValidationError(f"Unknown queue type: {queue_type}")
    return handler


class QueueWorker:
    def __init__(
        self,
        work_queue: WorkQueue,
        handlers: Mapping[QueueType, QueueHandler],
        max_workers: int = 4,
    ):
        self.work_queue = work_queue
        self.handlers = handlers
        self.max_workers = max(1, max_workers)
        self._lock = threading.Lock()

    def process(self, item: QueueItem) -> bool:
        """Run one claimed item and settle it. Returns True on success."""
        try:
            resolve_handler(self.handlers, item.queue_type)(item)
        except Exception as e:
            # Malformed items never succeed on a retry.
            retryable = not isinstance(e, ValidationError)
            logger.debug("Queue item %s raised", item.id, exc_info=True)
            self.work_queue.fail(item.id, f"{type(e).__name__}: {e}", retryable=retryable)
            return False
        self.work_queue.complete(item.id)
        logger.debug(f"Queue item {item.id} ({item.queue_type.value}) completed")
        return True

    def _run(self, queue_types, budget: list[int] | None, stats: WorkerStats):
        worker_id = new_lease_owner()
        while True:
            with self._lock:
                if budget is not None:
                    if budget[0] <= 0:
                        return
                    budget[0] -= 1
            item = self.work_queue.claim_next(worker_id, queue_types)
            if item is None:
                return
            ok = self.process(item)
            with self._lock:
                stats.processed += 1
                if ok:
                    stats.completed += 1
                else:
                    stats.failed += 1

    def drain(self, queue_types: list[QueueType] | None = None, limit: int | None = None) -> WorkerStats:
        """Process due items until none are left (or ``limit`` have been claimed)."""
        stats = WorkerStats()
        budget = [limit] if limit is not None else None
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="queue") as pool:
            futures = [pool.submit(self._run, queue_types, budget, stats) for _ in range(self.max_workers)]
            for future in futures:
                future.result()
        if stats.processed:
            logger.info(
                f"Queue drained: {stats.processed} processed, {stats.completed} completed, "
                f"{stats.failed} failed"
            )
        return stats
