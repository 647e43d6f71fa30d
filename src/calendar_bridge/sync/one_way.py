"""
One sync pass: copy creates and updates from a source calendar to a target
calendar.

Deletions are never carried out here.  Mappings whose source event has
disappeared from the window are handed to the reconciler as deletion-check
queue items, so only one component ever deletes.
"""

import logging
import time
from dataclasses import dataclass
from dataclasses import replace
from datetime import datetime

from calendar_bridge.bridges.base import CalendarBridge
from calendar_bridge.config import EngineConfig
from calendar_bridge.db import BridgeStore
from calendar_bridge.events import compute_hash
from calendar_bridge.events import snapshot_in_range
from calendar_bridge.events import validate_event
from calendar_bridge.models import CalendarBridgeError
from calendar_bridge.models import CanonicalEvent
from calendar_bridge.models import EventNotFoundError
from calendar_bridge.models import Mapping
from calendar_bridge.models import SyncDirection
from calendar_bridge.models import SyncOptions
from calendar_bridge.models import SyncResult
from calendar_bridge.models import SyncStatus
from calendar_bridge.models import TransientBridgeError
from calendar_bridge.queue import WorkQueue
from calendar_bridge.sync.reconcile import enqueue_deletion
from calendar_bridge.sync.reconcile import enqueue_deletion_check
from calendar_bridge.sync.utils import build_origin_index
from calendar_bridge.sync.utils import elapsed_ms
from calendar_bridge.sync.utils import new_lease_owner

CREATE = "create"
RECREATE = "create_pending"
UPDATE = "update"
SKIP = "skip"


@dataclass
class _Plan:
    action: str
    mapping: Mapping | None = None
    reason: str = ""


@dataclass
class _Pass:
    """Everything one pass needs; built once in run_one_way."""

    config: EngineConfig
    store: BridgeStore
    work_queue: WorkQueue
    logger: logging.Logger
    source: CalendarBridge
    target: CalendarBridge
    source_calendar_id: str
    target_calendar_id: str
    start: datetime
    end: datetime
    options: SyncOptions
    _origin_index: dict[str, str] | None = None

    def origin_index(self) -> dict[str, str]:
        """Marked target events by origin id, fetched at most once per pass."""
        if self._origin_index is None:
            events = self.target.get_events(self.target_calendar_id, self.start, self.end)
            self._origin_index = build_origin_index(self.target, events, self.source.name)
        return self._origin_index


def plan_event(ctx: _Pass, event: CanonicalEvent) -> _Plan:
    """Decide what a pass should do with one source event, without side effects."""
    if ctx.source.is_bridge_originated(event):
        return _Plan(SKIP, reason="bridge_originated")

    # The event is itself the copy side of a mapping running the other way.
    if ctx.store.find_mapping_by_target(ctx.source.name, ctx.source_calendar_id, event.id):
        return _Plan(SKIP, reason="mirrored_copy")

    mapping = ctx.store.find_mapping_by_source(ctx.source.name, ctx.source_calendar_id, event.id)
    if mapping is None:
        if not event.active:
            return _Plan(SKIP, reason="inactive")
        return _Plan(CREATE)

    if mapping.sync_status == SyncStatus.CANCELLED:
        return _Plan(SKIP, mapping, "cancelled")
    if mapping.sync_status == SyncStatus.ERROR:
        return _Plan(SKIP, mapping, "error")
    if (mapping.target_bridge, mapping.target_calendar_id) != (ctx.target.name, ctx.target_calendar_id):
        return _Plan(SKIP, mapping, "mapped_elsewhere")
    if not event.active:
        # Cancellation detection owns the removal of inactive events.
        return _Plan(SKIP, mapping, "inactive")
    if mapping.target_event_id is None:
        return _Plan(RECREATE, mapping)
    if ctx.options.skip_updates:
        return _Plan(SKIP, mapping, "updates_disabled")
    if _modified_since_sync(event, mapping) or compute_hash(event) != mapping.content_hash:
        return _Plan(UPDATE, mapping)
    return _Plan(SKIP, mapping, "unchanged")


def _modified_since_sync(event: CanonicalEvent, mapping: Mapping) -> bool:
    if event.last_modified is None or mapping.last_synced_at is None:
        return False
    return event.last_modified.timestamp() > mapping.last_synced_at


def _outgoing(ctx: _Pass, event: CanonicalEvent) -> CanonicalEvent:
    """The event as written to the target, carrying its origin marker."""
    return replace(event, id=None, origin_bridge=ctx.source.name, origin_event_id=event.id)


def _create_remote(ctx: _Pass, event: CanonicalEvent, mapping: Mapping, lease: str, recover: bool) -> str:
    """Create (or adopt) the target event for a leased mapping and mark it synced."""
    try:
        target_event_id = None
        if recover:
            target_event_id = ctx.origin_index().get(event.id)
            if target_event_id:
                ctx.logger.info(f"Recovering orphan: {event.id} → {target_event_id}")
        if target_event_id is None:
            target_event_id = ctx.target.create_event(ctx.target_calendar_id, _outgoing(ctx, event))
    except TransientBridgeError as e:
        ctx.store.record_mapping_failure(mapping.id, lease, str(e))
        raise
    except CalendarBridgeError as e:
        ctx.store.mark_mapping_error(mapping.id, lease, str(e))
        raise
    ctx.store.mark_mapping_synced(mapping.id, lease, target_event_id, compute_hash(event), event.snapshot())
    return target_event_id


def _apply(ctx: _Pass, plan: _Plan, event: CanonicalEvent) -> tuple[str, str | None]:
    """Carry out a plan. Returns the action taken and the target event id."""
    lease_seconds = ctx.config.mapping_lease_seconds
    lease = new_lease_owner()

    if plan.action == CREATE:
        validate_event(event)
        mapping = ctx.store.claim_new_mapping(
            ctx.source.name,
            ctx.target.name,
            ctx.source_calendar_id,
            ctx.target_calendar_id,
            event.id,
            ctx.options.sync_direction,
            lease,
            lease_seconds,
            event_data=event.snapshot(),
        )
        if mapping is None:
            ctx.logger.info(f"Event {event.id} was claimed by a concurrent pass, trusting its mapping")
            return "skipped:claimed_elsewhere", None
        return "created", _create_remote(ctx, event, mapping, lease, recover=False)

    if plan.action == RECREATE:
        validate_event(event)
        if not ctx.store.acquire_mapping_lease(
            plan.mapping.id, lease, lease_seconds, statuses=[SyncStatus.PENDING], require_no_target=True
        ):
            return "skipped:locked", None
        return "created", _create_remote(ctx, event, plan.mapping, lease, recover=True)

    # UPDATE
    validate_event(event)
    mapping = plan.mapping
    # A retried error row is pending but still owns its remote copy.
    if not ctx.store.acquire_mapping_lease(
        mapping.id, lease, lease_seconds, statuses=[SyncStatus.SYNCED, SyncStatus.PENDING]
    ):
        return "skipped:locked", None
    try:
        ctx.target.update_event(ctx.target_calendar_id, mapping.target_event_id, _outgoing(ctx, event))
    except EventNotFoundError:
        if mapping.sync_direction != SyncDirection.SOURCE_TO_TARGET:
            # A two-way copy removed on the target side: propagate, don't resurrect.
            ctx.store.release_mapping_lease(mapping.id, lease)
            enqueue_deletion(ctx.work_queue, mapping, vanished_side="target", reason="target missing on update")
            return "skipped:target_deleted", mapping.target_event_id
        ctx.logger.info(f"Target event {mapping.target_event_id} vanished; recreating from {event.id}")
        return "created", _create_remote(ctx, event, mapping, lease, recover=False)
    except TransientBridgeError as e:
        ctx.store.record_mapping_failure(mapping.id, lease, str(e))
        raise
    except CalendarBridgeError as e:
        ctx.store.mark_mapping_error(mapping.id, lease, str(e))
        raise
    ctx.store.mark_mapping_synced(
        mapping.id, lease, mapping.target_event_id, compute_hash(event), event.snapshot()
    )
    return "updated", mapping.target_event_id


def _queue_deletion_checks(ctx: _Pass, seen: set[str], result: SyncResult):
    for mapping in ctx.store.mappings_for_pair(
        ctx.source.name, ctx.source_calendar_id, ctx.target.name, ctx.target_calendar_id
    ):
        if mapping.source_event_id in seen:
            continue
        if not snapshot_in_range(mapping.event_data, ctx.start, ctx.end):
            continue
        if ctx.options.dry_run:
            ctx.logger.info(f"[DRY RUN] Would CHECK deletion: {mapping.source_event_id}")
            result.deletion_checks_queued += 1
            continue
        _, created = enqueue_deletion_check(ctx.work_queue, mapping, side="source")
        if created:
            result.deletion_checks_queued += 1


def _count(result: SyncResult, action: str):
    if action == "created":
        result.created += 1
    elif action == "updated":
        result.updated += 1
    else:
        result.skipped += 1


def run_one_way(
    config: EngineConfig,
    store: BridgeStore,
    work_queue: WorkQueue,
    logger: logging.Logger,
    source: CalendarBridge,
    target: CalendarBridge,
    source_calendar_id: str,
    target_calendar_id: str,
    start: datetime,
    end: datetime,
    options: SyncOptions,
) -> SyncResult:
    """Sync events starting in ``[start, end)`` from source to target."""
    ctx = _Pass(
        config,
        store,
        work_queue,
        logger,
        source,
        target,
        source_calendar_id,
        target_calendar_id,
        start,
        end,
        options,
    )
    result = SyncResult(source.name, target.name, dry_run=options.dry_run)
    started = time.monotonic()
    prefix = "[DRY RUN] " if options.dry_run else ""

    try:
        source_events = source.get_events(source_calendar_id, start, end)
    except CalendarBridgeError as e:
        logger.error(f"Fetching events from {source.name}/{source_calendar_id} failed: {e}")
        result.errors.append({"event_id": None, "error": str(e)})
        result.duration_ms = elapsed_ms(started, time.monotonic())
        if not options.dry_run:
            store.log_sync(
                source.name,
                target.name,
                "sync",
                "error",
                duration_ms=result.duration_ms,
                details={"source_calendar_id": source_calendar_id, **result.counts()},
                error_message=str(e),
            )
        return result

    result.source_events_found = len(source_events)
    logger.info(
        f"{prefix}[{source.name}→{target.name}] {len(source_events)} source event(s) "
        f"in {source_calendar_id}"
    )

    seen: set[str] = set()
    for event in source_events:
        seen.add(event.id)
        event_started = time.monotonic()
        try:
            plan = plan_event(ctx, event)
            if plan.action == SKIP:
                action, target_event_id = f"skipped:{plan.reason}", None
            elif options.dry_run:
                logger.info(f"[DRY RUN] [{source.name}→{target.name}] Would {plan.action.upper()}: {event.id}")
                action = "created" if plan.action in (CREATE, RECREATE) else "updated"
                target_event_id = plan.mapping.target_event_id if plan.mapping else None
            else:
                action, target_event_id = _apply(ctx, plan, event)
        except CalendarBridgeError as e:
            logger.error(f"Error syncing event {event.id}: {e}")
            result.errors.append({"event_id": event.id, "error": str(e)})
            continue
        _count(result, action)
        if action in ("created", "updated"):
            logger.debug(f"{prefix}{action.upper()} {event.id} -> {target_event_id}")
        result.processed_events.append(
            {
                "source_event_id": event.id,
                "target_event_id": target_event_id,
                "action": action,
                "duration_ms": elapsed_ms(event_started, time.monotonic()),
            }
        )

    if options.handle_deletions:
        _queue_deletion_checks(ctx, seen, result)

    result.duration_ms = elapsed_ms(started, time.monotonic())
    if not options.dry_run:
        if not result.errors:
            status = "success"
        elif result.created or result.updated or result.skipped:
            status = "partial"
        else:
            status = "error"
        store.log_sync(
            source.name,
            target.name,
            "sync",
            status,
            duration_ms=result.duration_ms,
            event_count=result.created + result.updated,
            details={
                "source_calendar_id": source_calendar_id,
                "target_calendar_id": target_calendar_id,
                **result.counts(),
                "events": [e for e in result.processed_events if not e["action"].startswith("skipped")],
                "failures": result.errors,
            },
        )

    logger.info(
        f"{prefix}[{source.name}→{target.name}] created={result.created} updated={result.updated} "
        f"skipped={result.skipped} errors={len(result.errors)}"
    )
    return result
