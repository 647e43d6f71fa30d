"""
Deletion, cancellation and re-enable reconciliation.

Two triggers feed one resolver.  Webhook notifications (push) and
existence polls (pull) both end in ``resolve_removal``, which is idempotent:
a mapping that is already gone, or an event that is already absent, is a
successful outcome rather than an error.
"""

import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from datetime import timezone
from typing import TYPE_CHECKING

from calendar_bridge.models import URGENT_PRIORITY
from calendar_bridge.models import CalendarBridgeError
from calendar_bridge.models import ConflictError
from calendar_bridge.models import EventFound
from calendar_bridge.models import EventMissing
from calendar_bridge.models import LookupFailed
from calendar_bridge.models import Mapping
from calendar_bridge.models import QueueItem
from calendar_bridge.models import QueueType
from calendar_bridge.models import ReconcileStats
from calendar_bridge.models import SyncDirection
from calendar_bridge.models import SyncStatus
from calendar_bridge.models import TransientBridgeError
from calendar_bridge.models import ValidationError
from calendar_bridge.queue import WorkQueue
from calendar_bridge.sync.utils import elapsed_ms
from calendar_bridge.sync.utils import new_lease_owner

if TYPE_CHECKING:
    from calendar_bridge.sync import BridgeOrchestrator

logger = logging.getLogger(__name__)

SOURCE = "source"
TARGET = "target"

RECONCILE_LOCK = "reconcile"


def _side(mapping: Mapping, side: str) -> tuple[str, str, str | None]:
    if side == SOURCE:
        return mapping.source_bridge, mapping.source_calendar_id, mapping.source_event_id
    if side == TARGET:
        return mapping.target_bridge, mapping.target_calendar_id, mapping.target_event_id
    raise ValidationError(f"Unknown mapping side: {side!r}")


def _other(side: str) -> str:
    return TARGET if side == SOURCE else SOURCE


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def enqueue_deletion_check(work_queue: WorkQueue, mapping: Mapping, side: str = SOURCE) -> tuple[int, bool]:
    """Ask the reconciler to verify that one side of a mapping still exists."""
    _, calendar_id, event_id = _side(mapping, side)
    return work_queue.enqueue(
        QueueType.DELETION_CHECK,
        {
            "mapping_id": mapping.id,
            "side": side,
            "calendar_id": calendar_id,
            "event_id": event_id,
            "timestamp": _now_iso(),
        },
        source_bridge=mapping.source_bridge,
        target_bridge=mapping.target_bridge,
        priority=URGENT_PRIORITY,
        dedupe_key=f"deletion_check:{mapping.id}",
    )


def enqueue_deletion(work_queue: WorkQueue, mapping: Mapping, vanished_side: str, reason: str) -> tuple[int, bool]:
    """Queue removal of a mapping whose ``vanished_side`` event is known to be gone."""
    return work_queue.enqueue(
        QueueType.DELETION,
        {
            "mapping_id": mapping.id,
            "vanished_side": vanished_side,
            "source_event_id": mapping.source_event_id,
            "target_event_id": mapping.target_event_id,
            "reason": reason,
            "timestamp": _now_iso(),
        },
        source_bridge=mapping.source_bridge,
        target_bridge=mapping.target_bridge,
        priority=URGENT_PRIORITY,
        dedupe_key=f"deletion:{mapping.id}:{vanished_side}",
    )


class Reconciler:
    """Propagates removals, cancellations and re-enables across bridges."""

    def __init__(self, orchestrator: "BridgeOrchestrator"):
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.work_queue = orchestrator.work_queue
        self.config = orchestrator.config

    # ------------------------------------------------------------------ #
    # Resolver                                                             #
    # ------------------------------------------------------------------ #

    def _log(self, mapping: Mapping, operation: str, status: str, started: float, details: dict, error=None):
        self.store.log_sync(
            mapping.source_bridge,
            mapping.target_bridge,
            operation,
            status,
            duration_ms=elapsed_ms(started, time.monotonic()),
            event_count=1 if status == "success" else 0,
            details={"mapping_id": mapping.id, **details},
            error_message=error,
        )

    def _delete_remote(self, mapping: Mapping, side: str, lease: str) -> None:
        """Delete one side's event while holding the lease. Absent events are fine."""
        bridge_name, calendar_id, event_id = _side(mapping, side)
        if not event_id:
            return
        bridge = self.orchestrator.get_bridge(bridge_name)
        try:
            bridge.delete_event(calendar_id, event_id)
        except TransientBridgeError as e:
            self.store.record_mapping_failure(mapping.id, lease, str(e))
            raise
        except CalendarBridgeError as e:
            self.store.mark_mapping_error(mapping.id, lease, str(e))
            raise

    def resolve_removal(self, mapping_id: int, vanished_side: str, reason: str) -> str:
        """Propagate the disappearance of one side of a mapping.

        Returns ``'absent'`` when the mapping no longer exists, ``'deleted'``
        when the other side was removed and the row hard-deleted, and
        ``'cancelled'`` when a one-way copy vanished and the row is kept as
        cancelled so a re-enable can recreate it.
        """
        mapping = self.store.get_mapping(mapping_id)
        if mapping is None:
            return "absent"
        lease = new_lease_owner()
        if not self.store.acquire_mapping_lease(mapping.id, lease, self.config.mapping_lease_seconds):
            raise TransientBridgeError(f"Mapping {mapping.id} is locked by another worker")
        started = time.monotonic()

        one_way_copy_lost = vanished_side == TARGET and mapping.sync_direction == SyncDirection.SOURCE_TO_TARGET
        if one_way_copy_lost:
            if mapping.sync_status == SyncStatus.CANCELLED:
                self.store.release_mapping_lease(mapping.id, lease)
                return "cancelled"
            self.store.mark_mapping_cancelled(mapping.id, lease, reason)
            logger.info(f"Mapping {mapping.id}: target copy removed ({reason}); marked cancelled")
            self._log(mapping, "cancel", "success", started, {"reason": reason, "side": vanished_side})
            return "cancelled"

        try:
            self._delete_remote(mapping, _other(vanished_side), lease)
        except CalendarBridgeError as e:
            self._log(mapping, "delete", "error", started, {"reason": reason}, error=str(e))
            raise
        self.store.delete_mapping(mapping.id, lease)
        logger.info(
            f"Mapping {mapping.id}: {vanished_side} event removed ({reason}); "
            f"deleted {_other(vanished_side)} event and mapping"
        )
        self._log(mapping, "delete", "success", started, {"reason": reason, "side": vanished_side})
        return "deleted"

    def _cancel(self, mapping: Mapping, reason: str) -> bool:
        """Delete the remote copy of an inactive reservation and mark the mapping cancelled."""
        lease = new_lease_owner()
        if not self.store.acquire_mapping_lease(
            mapping.id,
            lease,
            self.config.mapping_lease_seconds,
            statuses=[SyncStatus.PENDING, SyncStatus.SYNCED],
        ):
            return False
        started = time.monotonic()
        try:
            self._delete_remote(mapping, TARGET, lease)
        except CalendarBridgeError as e:
            self._log(mapping, "cancel", "error", started, {"reason": reason}, error=str(e))
            raise
        self.store.mark_mapping_cancelled(mapping.id, lease, reason)
        logger.info(f"Mapping {mapping.id}: {reason}; remote event {mapping.target_event_id} removed")
        self._log(mapping, "cancel", "success", started, {"reason": reason})
        return True

    # ------------------------------------------------------------------ #
    # Push trigger                                                         #
    # ------------------------------------------------------------------ #

    def handle_webhook(self, bridge_name: str, body) -> list[int]:
        """Normalize a webhook body and enqueue the work it implies.

        Deletions become ``deletion`` items for every live mapping touching
        the event; creates and updates become ``webhook`` items that trigger a
        sync of the affected resource.  Returns the queue item ids.
        """
        bridge = self.orchestrator.get_bridge(bridge_name)
        item_ids = []
        for notification in bridge.parse_notifications(body):
            if notification.action == "deleted":
                matches = self.store.find_live_mappings_for_event(
                    bridge_name, notification.resource_id, notification.event_id
                )
                if not matches:
                    logger.debug(
                        f"Deletion of unmapped event {notification.event_id} on {bridge_name} ignored"
                    )
                for mapping, side in matches:
                    item_id, _ = enqueue_deletion(self.work_queue, mapping, side, reason="webhook deleted")
                    item_ids.append(item_id)
                continue
            item_id, _ = self.work_queue.enqueue(
                QueueType.WEBHOOK,
                notification.to_payload(),
                source_bridge=bridge_name,
                priority=URGENT_PRIORITY,
                dedupe_key=f"webhook:{bridge_name}:{notification.resource_id}:{notification.event_id}",
            )
            item_ids.append(item_id)
        logger.info(f"Webhook from {bridge_name}: queued {len(item_ids)} item(s)")
        return item_ids

    # ------------------------------------------------------------------ #
    # Queue handlers                                                       #
    # ------------------------------------------------------------------ #

    def handle_deletion(self, item: QueueItem) -> None:
        payload = item.payload
        if "mapping_id" not in payload or payload.get("vanished_side") not in (SOURCE, TARGET):
            raise ValidationError(f"Deletion item {item.id} has a malformed payload")
        self.resolve_removal(payload["mapping_id"], payload["vanished_side"], payload.get("reason", "deleted"))

    def handle_deletion_check(self, item: QueueItem) -> None:
        payload = item.payload
        side = payload.get("side", SOURCE)
        if "mapping_id" not in payload or side not in (SOURCE, TARGET):
            raise ValidationError(f"Deletion-check item {item.id} has a malformed payload")
        mapping = self.store.get_mapping(payload["mapping_id"])
        if mapping is None or mapping.sync_status not in (SyncStatus.PENDING, SyncStatus.SYNCED):
            return
        bridge_name, calendar_id, event_id = _side(mapping, side)
        if not event_id:
            return
        result = self.orchestrator.get_bridge(bridge_name).get_event(calendar_id, event_id)
        match result:
            case EventMissing():
                self.resolve_removal(mapping.id, side, reason="not found on check")
            case EventFound(event=event) if not event.active and side == SOURCE:
                self._cancel(mapping, reason="source inactive")
            case EventFound():
                logger.debug(f"Mapping {mapping.id}: {side} event {event_id} still exists")
            case LookupFailed(reason=reason):
                raise TransientBridgeError(f"Existence check for {event_id} failed: {reason}")

    def handle_webhook_item(self, item: QueueItem) -> None:
        payload = item.payload
        bridge_name = item.source_bridge
        resource_id = payload.get("resource_id")
        if not bridge_name or not resource_id:
            raise ValidationError(f"Webhook item {item.id} has no bridge or resource")
        synced = self.orchestrator.sync_resource(bridge_name, resource_id)
        if not synced:
            logger.info(f"No active resource mapping for {bridge_name}:{resource_id}; nothing to sync")

    def process_deletion_checks(self) -> ReconcileStats:
        """Drain queued deletion and deletion-check items."""
        worker_stats = self.orchestrator.drain_queue([QueueType.DELETION_CHECK, QueueType.DELETION])
        return ReconcileStats(checked=worker_stats.processed, errors=worker_stats.failed)

    # ------------------------------------------------------------------ #
    # Pull triggers                                                        #
    # ------------------------------------------------------------------ #

    def _for_each(self, mappings: list[Mapping], fn: Callable[[Mapping], ReconcileStats]) -> ReconcileStats:
        """Run ``fn`` over mappings on a bounded pool; per-mapping failures stay isolated."""
        total = ReconcileStats()
        if not mappings:
            return total
        with ThreadPoolExecutor(
            max_workers=min(self.config.max_workers, len(mappings)), thread_name_prefix="reconcile"
        ) as pool:
            for stats in pool.map(fn, mappings):
                total.merge(stats)
        return total

    def _poll_source(self, mapping: Mapping) -> ReconcileStats:
        stats = ReconcileStats(checked=1)
        try:
            bridge = self.orchestrator.get_bridge(mapping.source_bridge)
            result = bridge.get_event(mapping.source_calendar_id, mapping.source_event_id)
            match result:
                case EventMissing():
                    outcome = self.resolve_removal(mapping.id, SOURCE, reason="not found on poll")
                    if outcome == "deleted":
                        stats.deleted += 1
                    elif outcome == "cancelled":
                        stats.cancelled += 1
                case LookupFailed(reason=reason):
                    logger.warning(f"Mapping {mapping.id}: existence check failed: {reason}")
                    stats.errors += 1
                case _:
                    stats.skipped += 1
        except CalendarBridgeError as e:
            logger.error(f"Mapping {mapping.id}: deletion sync failed: {e}")
            stats.errors += 1
        return stats

    def sync_deleted_events(self, backstop: bool = False) -> ReconcileStats:
        """Poll source events of recently synced mappings and propagate deletions.

        Only mappings whose source bridge has no push support are polled,
        unless ``backstop`` is set.
        """
        names = self.orchestrator.bridge_names()
        if not backstop:
            names = [n for n in names if not self.orchestrator.get_bridge(n).get_capabilities().supports_webhooks]
        since = self.store.now() - self.config.deletion_lookback_days * 86400
        mappings = self.store.list_mappings(
            statuses=[SyncStatus.PENDING, SyncStatus.SYNCED], source_bridges=names, synced_since=since
        )
        logger.info(f"Deletion sync: checking {len(mappings)} mapping(s) on {', '.join(names) or 'no bridges'}")
        stats = self._for_each(mappings, self._poll_source)
        logger.info(f"Deletion sync: {stats.deleted} deleted, {stats.errors} error(s)")
        return stats

    def _check_cancelled(self, mapping: Mapping) -> ReconcileStats:
        stats = ReconcileStats(checked=1)
        try:
            bridge = self.orchestrator.get_bridge(mapping.source_bridge)
            result = bridge.get_event(mapping.source_calendar_id, mapping.source_event_id)
            match result:
                case EventFound(event=event) if not event.active:
                    if self._cancel(mapping, reason="reservation cancelled"):
                        stats.cancelled += 1
                    else:
                        stats.skipped += 1
                case EventMissing():
                    if self.resolve_removal(mapping.id, SOURCE, reason="reservation removed") == "deleted":
                        stats.deleted += 1
                case LookupFailed(reason=reason):
                    logger.warning(f"Mapping {mapping.id}: cancellation check failed: {reason}")
                    stats.errors += 1
                case _:
                    stats.skipped += 1
        except CalendarBridgeError as e:
            logger.error(f"Mapping {mapping.id}: cancellation failed: {e}")
            stats.errors += 1
        return stats

    def detect_and_process_cancellations(self) -> ReconcileStats:
        """Cancel mappings whose source reservation is no longer active."""
        mappings = self.store.list_mappings(statuses=[SyncStatus.PENDING, SyncStatus.SYNCED])
        stats = self._for_each(mappings, self._check_cancelled)
        logger.info(f"Cancellation detection: {stats.checked} checked, {stats.cancelled} cancelled")
        return stats

    def _check_reenabled(self, mapping: Mapping) -> ReconcileStats:
        stats = ReconcileStats(checked=1)
        try:
            bridge = self.orchestrator.get_bridge(mapping.source_bridge)
            result = bridge.get_event(mapping.source_calendar_id, mapping.source_event_id)
            match result:
                case EventFound(event=event) if event.active:
                    if self._reenable(mapping):
                        stats.reenabled += 1
                    else:
                        stats.skipped += 1
                case EventMissing():
                    # Both sides are gone now.
                    lease = new_lease_owner()
                    if self.store.acquire_mapping_lease(
                        mapping.id, lease, self.config.mapping_lease_seconds, statuses=[SyncStatus.CANCELLED]
                    ) and self.store.delete_mapping(mapping.id, lease):
                        stats.deleted += 1
                    else:
                        stats.skipped += 1
                case LookupFailed(reason=reason):
                    logger.warning(f"Mapping {mapping.id}: re-enable check failed: {reason}")
                    stats.errors += 1
                case _:
                    stats.skipped += 1
        except CalendarBridgeError as e:
            logger.error(f"Mapping {mapping.id}: re-enable failed: {e}")
            stats.errors += 1
        return stats

    def _reenable(self, mapping: Mapping) -> bool:
        lease = new_lease_owner()
        if not self.store.acquire_mapping_lease(
            mapping.id, lease, self.config.mapping_lease_seconds, statuses=[SyncStatus.CANCELLED]
        ):
            return False
        started = time.monotonic()
        # Make sure the previous remote copy is really gone before forgetting its id.
        try:
            self._delete_remote(mapping, TARGET, lease)
        except CalendarBridgeError as e:
            self._log(mapping, "reenable", "error", started, {}, error=str(e))
            raise
        try:
            self.store.reset_mapping_for_resync(mapping.id, lease)
        except ConflictError:
            # A newer live mapping already covers this source event.
            self.store.delete_mapping(mapping.id, lease)
            logger.info(f"Mapping {mapping.id}: superseded by a live mapping; removed")
            return False
        logger.info(f"Mapping {mapping.id}: reservation re-enabled; reset to pending")
        self._log(mapping, "reenable", "success", started, {"previous_target_event_id": mapping.target_event_id})
        return True

    def detect_and_process_reenabled_reservations(self) -> ReconcileStats:
        """Reset cancelled mappings whose reservation is active again to ``pending``."""
        mappings = self.store.list_mappings(statuses=[SyncStatus.CANCELLED])
        stats = self._for_each(mappings, self._check_reenabled)
        logger.info(f"Re-enable detection: {stats.checked} checked, {stats.reenabled} re-enabled")
        return stats

    def retry_failed_mappings(self) -> int:
        count = self.store.retry_error_mappings()
        logger.info(f"Reset {count} errored mapping(s) to pending")
        return count

    # ------------------------------------------------------------------ #
    # Single-owner job                                                     #
    # ------------------------------------------------------------------ #

    def run_reconciliation(self, backstop: bool = False) -> dict[str, ReconcileStats] | None:
        """Run every reconciliation step in a fixed order under one job lock.

        Returns None when another run holds the lock.
        """
        owner = new_lease_owner()
        if not self.store.acquire_job_lock(RECONCILE_LOCK, owner, self.config.stale_processing_seconds):
            logger.info("Reconciliation already running elsewhere; skipping")
            return None
        try:
            results = {
                "deletion_checks": self.process_deletion_checks(),
                "deleted_events": self.sync_deleted_events(backstop=backstop),
                "cancellations": self.detect_and_process_cancellations(),
                "reenabled": self.detect_and_process_reenabled_reservations(),
            }
            results["queue_sweep"] = ReconcileStats(
                queued=self.work_queue.retry_failed()
                + self.work_queue.requeue_stale(self.config.stale_processing_seconds)
            )
            return results
        finally:
            self.store.release_job_lock(RECONCILE_LOCK, owner)
