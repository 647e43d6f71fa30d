"""
Durable, priority-ordered work queue on top of the state database.
"""

import json
import logging
import sqlite3
import uuid

from calendar_bridge.db import BridgeStore
from calendar_bridge.models import DEFAULT_PRIORITY
from calendar_bridge.models import QueueItem
from calendar_bridge.models import QueueStatus
from calendar_bridge.models import QueueType

logger = logging.getLogger(__name__)


def _item_from_row(row: sqlite3.Row) -> QueueItem:
    return QueueItem(
        id=row["id"],
        queue_type=QueueType(row["queue_type"]),
        source_bridge=row["source_bridge"],
        target_bridge=row["target_bridge"],
        priority=row["priority"],
        payload=json.loads(row["payload"] or "{}"),
        status=QueueStatus(row["status"]),
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        scheduled_at=row["scheduled_at"],
        processed_at=row["processed_at"],
        error_message=row["error_message"],
        dedupe_key=row["dedupe_key"],
    )


class WorkQueue:
    """Enqueue, claim and settle queue items.

    Claiming is a conditional ``pending -> processing`` UPDATE on a single
    row, so of any number of racing workers exactly one sees a row count of 1.
    """

    def __init__(self, store: BridgeStore, max_attempts: int = 3):
        self.store = store
        self.max_attempts = max_attempts

    def enqueue(
        self,
        queue_type: QueueType,
        payload: dict,
        source_bridge: str | None = None,
        target_bridge: str | None = None,
        priority: int = DEFAULT_PRIORITY,
        delay_seconds: float = 0,
        dedupe_key: str | None = None,
    ) -> tuple[int, bool]:
        """Add an item and return ``(item_id, created)``.

        With a ``dedupe_key``, an unfinished item carrying the same key is
        returned instead of inserting a second one.
        """
        now = self.store.now()
        try:
            cursor = self.store.conn.execute(
                "INSERT INTO bridge_queue "
                "(queue_type, source_bridge, target_bridge, priority, payload, status, "
                " attempts, max_attempts, dedupe_key, scheduled_at, created_at) "
                "VALUES (?, ?, ?, ?, ?, 'pending', 0, ?, ?, ?, ?)",
                (
                    QueueType(queue_type).value,
                    source_bridge,
                    target_bridge,
                    priority,
                    json.dumps(payload, default=str),
                    self.max_attempts,
                    dedupe_key,
                    now + delay_seconds,
                    now,
                ),
            )
        except sqlite3.IntegrityError:
            row = self.store.conn.execute(
                "SELECT id FROM bridge_queue WHERE dedupe_key = ? AND status != 'completed'",
                (dedupe_key,),
            ).fetchone()
            if row is None:
                raise
            logger.debug("Queue item with key %s already exists (id=%s)", dedupe_key, row["id"])
            return row["id"], False
        return cursor.lastrowid, True

    def get(self, item_id: int) -> QueueItem | None:
        row = self.store.conn.execute("SELECT * FROM bridge_queue WHERE id = ?", (item_id,)).fetchone()
        return _item_from_row(row) if row else None

    def claim(self, item_id: int, worker_id: str | None = None) -> bool:
        """Atomically move one item from pending to processing."""
        cursor = self.store.conn.execute(
            "UPDATE bridge_queue SET status = 'processing', claimed_at = ?, claimed_by = ? "
            "WHERE id = ? AND status = 'pending'",
            (self.store.now(), worker_id or uuid.uuid4().hex, item_id),
        )
        return cursor.rowcount == 1

    def claim_next(
        self,
        worker_id: str | None = None,
        queue_types: list[QueueType] | None = None,
        scan: int = 20,
    ) -> QueueItem | None:
        """Claim the most urgent due item, or None when nothing is due."""
        sql = "SELECT id FROM bridge_queue WHERE status = 'pending' AND scheduled_at <= ?"
        params: list = [self.store.now()]
        if queue_types:
            sql += f" AND queue_type IN ({', '.join('?' for _ in queue_types)})"
            params.extend(QueueType(t).value for t in queue_types)
        sql += " ORDER BY priority ASC, scheduled_at ASC, id ASC LIMIT ?"
        params.append(scan)
        worker_id = worker_id or uuid.uuid4().hex
        for row in self.store.conn.execute(sql, params).fetchall():
            if self.claim(row["id"], worker_id):
                return self.get(row["id"])
        return None

    def complete(self, item_id: int):
        self.store.conn.execute(
            "UPDATE bridge_queue SET status = 'completed', processed_at = ?, error_message = NULL "
            "WHERE id = ? AND status = 'processing'",
            (self.store.now(), item_id),
        )

    def fail(self, item_id: int, error_message: str, retryable: bool = True):
        """Record a failed attempt.

        Items that will never be retried (attempts exhausted, or the error is
        not retryable) give up their dedupe key so the same work can be queued
        afresh later.
        """
        now = self.store.now()
        with self.store.transaction() as conn:
            row = conn.execute(
                "SELECT attempts, max_attempts FROM bridge_queue WHERE id = ?", (item_id,)
            ).fetchone()
            if row is None:
                return
            attempts = row["attempts"] + 1
            max_attempts = row["max_attempts"] if retryable else attempts
            terminal = attempts >= max_attempts
            conn.execute(
                "UPDATE bridge_queue SET status = 'failed', attempts = ?, max_attempts = ?, "
                "error_message = ?, processed_at = ?, "
                "dedupe_key = CASE WHEN ? THEN NULL ELSE dedupe_key END "
                "WHERE id = ?",
                (attempts, max_attempts, error_message[:2000], now, terminal, item_id),
            )
        if terminal:
            logger.error(f"Queue item {item_id} failed permanently after {attempts} attempt(s): {error_message}")
        else:
            logger.warning(f"Queue item {item_id} failed (attempt {attempts}): {error_message}")

    def retry_failed(self, backoff_seconds: float = 0) -> int:
        """Requeue failed items that still have attempts left."""
        cursor = self.store.conn.execute(
            "UPDATE bridge_queue SET status = 'pending', scheduled_at = ? "
            "WHERE status = 'failed' AND attempts < max_attempts",
            (self.store.now() + backoff_seconds,),
        )
        if cursor.rowcount:
            logger.info("Requeued %d failed item(s) for retry", cursor.rowcount)
        return cursor.rowcount

    def requeue_stale(self, grace_seconds: float) -> int:
        """Return items stuck in ``processing`` past the grace period to the queue.

        The abandoned run counts as a failed attempt.  Items that have used up
        their attempts become ``failed`` instead.
        """
        cutoff = self.store.now() - grace_seconds
        with self.store.transaction() as conn:
            failed = conn.execute(
                "UPDATE bridge_queue SET status = 'failed', attempts = attempts + 1, "
                "error_message = 'processing lease expired', dedupe_key = NULL, processed_at = ? "
                "WHERE status = 'processing' AND claimed_at < ? AND attempts + 1 >= max_attempts",
                (self.store.now(), cutoff),
            ).rowcount
            requeued = conn.execute(
                "UPDATE bridge_queue SET status = 'pending', attempts = attempts + 1, "
                "error_message = 'processing lease expired', claimed_at = NULL, claimed_by = NULL "
                "WHERE status = 'processing' AND claimed_at < ?",
                (cutoff,),
            ).rowcount
        if failed or requeued:
            logger.warning(
                "Stale processing sweep: %d requeued, %d failed permanently", requeued, failed
            )
        return requeued + failed

    # ------------------------------------------------------------------ #
    # Statistics                                                           #
    # ------------------------------------------------------------------ #

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in QueueStatus}
        for row in self.store.conn.execute(
            "SELECT status, COUNT(*) AS n FROM bridge_queue GROUP BY status"
        ):
            counts[row["status"]] = row["n"]
        counts["exhausted"] = self.store.conn.execute(
            "SELECT COUNT(*) FROM bridge_queue WHERE status = 'failed' AND attempts >= max_attempts"
        ).fetchone()[0]
        return counts

    def counts_by_type(self) -> dict[str, dict[str, int]]:
        result: dict[str, dict[str, int]] = {}
        for row in self.store.conn.execute(
            "SELECT queue_type, status, COUNT(*) AS n FROM bridge_queue GROUP BY queue_type, status"
        ):
            result.setdefault(row["queue_type"], {})[row["status"]] = row["n"]
        return result

    def failed_items(self, limit: int = 50) -> list[QueueItem]:
        rows = self.store.conn.execute(
            "SELECT * FROM bridge_queue WHERE status = 'failed' ORDER BY processed_at DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [_item_from_row(row) for row in rows]
