"""
Integration tests for one sync pass (BridgeOrchestrator.sync_between_bridges).

All tests use FakeBridge (in-memory) + a real SQLite BridgeStore so the actual
sync pass runs end-to-end without any network.

Setup for every scenario:
    booking_system : resource room-101 (events added per test)
    outlook        : mailbox room101@example.org (empty)
"""

import threading
from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest

from calendar_bridge.models import QueueType
from calendar_bridge.models import SyncDirection
from calendar_bridge.models import SyncOptions
from calendar_bridge.models import SyncStatus
from calendar_bridge.models import TransientBridgeError
from calendar_bridge.models import UnknownBridgeError
from calendar_bridge.models import ValidationError
from tests.conftest import BOOKING
from tests.conftest import MAILBOX
from tests.conftest import OUTLOOK
from tests.conftest import RESOURCE_ID
from tests.conftest import WINDOW_END
from tests.conftest import WINDOW_START
from tests.conftest import add_meeting
from tests.conftest import at

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _sync(orchestrator, source=BOOKING, target=OUTLOOK, **options):
    source_cal, target_cal = (RESOURCE_ID, MAILBOX) if source == BOOKING else (MAILBOX, RESOURCE_ID)
    return orchestrator.sync_between_bridges(
        source, target, source_cal, target_cal, WINDOW_START, WINDOW_END, SyncOptions(**options)
    )


def _only_mapping(store):
    mappings = store.list_mappings()
    assert len(mappings) == 1, f"expected one mapping, found {len(mappings)}"
    return mappings[0]


# ---------------------------------------------------------------------------
# Creates and updates
# ---------------------------------------------------------------------------


class TestCreate:
    def test_new_event_is_created_once(self, orchestrator, store, booking, outlook):
        """E1 exists only on the booking system: one create, one synced mapping, one SyncLog."""
        add_meeting(booking, "E1", "Team Sync")

        result = _sync(orchestrator)

        assert result.created == 1
        assert result.success
        assert len(outlook.creates) == 1
        mapping = _only_mapping(store)
        assert mapping.sync_status == SyncStatus.SYNCED
        assert mapping.target_event_id == outlook.creates[0][1]

        (log,) = store.recent_sync_logs()
        assert log["status"] == "success"
        assert log["event_count"] == 1
        assert log["details"]["created"] == 1
        assert log["details"]["events"][0]["source_event_id"] == "E1"

    def test_copy_carries_origin_marker(self, orchestrator, booking, outlook):
        add_meeting(booking, "E1")
        _sync(orchestrator)

        (copy,) = outlook.events(MAILBOX).values()
        assert copy.origin_bridge == BOOKING
        assert copy.origin_event_id == "E1"
        assert copy.subject == "Team Sync"
        assert copy.start == at(2, 10)

    def test_second_run_is_a_no_op(self, orchestrator, booking, outlook):
        add_meeting(booking, "E1")
        _sync(orchestrator)
        outlook.reset_counters()

        result = _sync(orchestrator)

        assert result.created == 0
        assert result.updated == 0
        assert result.skipped == 1
        assert outlook.creates == []
        assert outlook.updates == []

    def test_inactive_new_event_is_not_created(self, orchestrator, store, booking, outlook):
        add_meeting(booking, "E1", active=False)
        result = _sync(orchestrator)
        assert result.created == 0
        assert outlook.creates == []
        assert store.list_mappings() == []

    def test_event_outside_window_is_ignored(self, orchestrator, booking, outlook):
        booking.add_event(RESOURCE_ID, "E-april", "Later", WINDOW_END, WINDOW_END.replace(hour=1))
        result = _sync(orchestrator)
        assert result.source_events_found == 0
        assert outlook.creates == []


class TestUpdate:
    def test_changed_event_is_updated(self, orchestrator, store, booking, outlook):
        add_meeting(booking, "E1", "Team Sync")
        _sync(orchestrator)
        booking.edit_event(RESOURCE_ID, "E1", subject="Team Sync (moved)", start=at(2, 14), end=at(2, 15))
        outlook.reset_counters()

        result = _sync(orchestrator)

        assert result.updated == 1
        assert len(outlook.updates) == 1
        target_id = _only_mapping(store).target_event_id
        assert outlook.events(MAILBOX)[target_id].subject == "Team Sync (moved)"

    def test_modified_after_last_sync_is_updated(self, orchestrator, store, clock, booking, outlook):
        add_meeting(booking, "E1")
        _sync(orchestrator)
        synced_at = datetime.fromtimestamp(_only_mapping(store).last_synced_at, tz=timezone.utc)
        booking.edit_event(RESOURCE_ID, "E1", last_modified=synced_at + timedelta(hours=1))
        clock.advance(hours=2)
        outlook.reset_counters()

        result = _sync(orchestrator)

        assert result.updated == 1
        assert len(outlook.updates) == 1
        assert _only_mapping(store).last_synced_at == clock.now

    def test_modified_before_last_sync_is_unchanged(self, orchestrator, store, booking, outlook):
        add_meeting(booking, "E1")
        _sync(orchestrator)
        synced_at = datetime.fromtimestamp(_only_mapping(store).last_synced_at, tz=timezone.utc)
        booking.edit_event(RESOURCE_ID, "E1", last_modified=synced_at - timedelta(hours=1))
        outlook.reset_counters()

        result = _sync(orchestrator)

        assert result.updated == 0
        assert result.processed_events[0]["action"] == "skipped:unchanged"
        assert outlook.updates == []

    def test_skip_updates_option(self, orchestrator, booking, outlook):
        add_meeting(booking, "E1")
        _sync(orchestrator)
        booking.edit_event(RESOURCE_ID, "E1", subject="Changed")
        outlook.reset_counters()

        result = _sync(orchestrator, skip_updates=True)
        assert result.updated == 0
        assert outlook.updates == []

    def test_missing_one_way_copy_is_recreated(self, orchestrator, store, booking, outlook):
        add_meeting(booking, "E1")
        _sync(orchestrator)
        old_target = _only_mapping(store).target_event_id
        outlook.remove_event(MAILBOX, old_target)
        booking.edit_event(RESOURCE_ID, "E1", subject="Changed")

        result = _sync(orchestrator)

        assert result.created == 1
        new_target = _only_mapping(store).target_event_id
        assert new_target != old_target
        assert outlook.has_event(MAILBOX, new_target)

    def test_missing_two_way_copy_queues_deletion(self, orchestrator, store, work_queue, booking, outlook):
        add_meeting(booking, "E1")
        _sync(orchestrator, sync_direction=SyncDirection.BIDIRECTIONAL)
        outlook.remove_event(MAILBOX, _only_mapping(store).target_event_id)
        booking.edit_event(RESOURCE_ID, "E1", subject="Changed")
        outlook.reset_counters()

        result = _sync(orchestrator, sync_direction=SyncDirection.BIDIRECTIONAL)

        assert result.created == 0
        assert outlook.creates == []
        assert work_queue.counts_by_type() == {"deletion": {"pending": 1}}


# ---------------------------------------------------------------------------
# Dry run and loop prevention
# ---------------------------------------------------------------------------


def test_dry_run_counts_without_writing(orchestrator, store, booking, outlook):
    add_meeting(booking, "E1")
    add_meeting(booking, "E2", "Standup", day=3)

    result = _sync(orchestrator, dry_run=True)

    assert result.dry_run
    assert result.created == 2
    assert outlook.creates == []
    assert store.list_mappings() == []
    assert store.recent_sync_logs() == []


def test_copies_are_not_synced_back(orchestrator, booking, outlook):
    """Bridge-originated events on the target are never re-imported."""
    add_meeting(booking, "E1")
    _sync(orchestrator, sync_direction=SyncDirection.BIDIRECTIONAL)

    result = _sync(orchestrator, source=OUTLOOK, target=BOOKING, sync_direction=SyncDirection.BIDIRECTIONAL)

    assert result.created == 0
    assert result.skipped == 1
    assert booking.creates == []
    assert result.processed_events[0]["action"] == "skipped:bridge_originated"


def test_native_events_flow_the_other_way(orchestrator, booking, outlook):
    outlook.add_event(MAILBOX, "O1", "Walk-in", at(4, 9), at(4, 10))
    result = _sync(orchestrator, source=OUTLOOK, target=BOOKING)
    assert result.created == 1
    (copy,) = booking.events(RESOURCE_ID).values()
    assert copy.origin_event_id == "O1"


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailureIsolation:
    def test_one_failing_event_does_not_stop_the_rest(self, orchestrator, store, booking, outlook):
        add_meeting(booking, "E1")
        add_meeting(booking, "E2", "Standup", day=3)
        outlook.fail("create_event", TransientBridgeError("HTTP 503"))

        result = _sync(orchestrator)

        assert result.created == 1
        assert len(result.errors) == 1
        assert not result.success
        (log,) = store.recent_sync_logs()
        assert log["status"] == "partial"

        failed = [m for m in store.list_mappings() if m.target_event_id is None]
        assert len(failed) == 1
        assert failed[0].sync_status == SyncStatus.PENDING
        assert "503" in failed[0].error_message

    def test_transient_failure_is_retried_next_pass(self, orchestrator, store, booking, outlook):
        add_meeting(booking, "E1")
        outlook.fail("create_event", TransientBridgeError("timeout"))
        _sync(orchestrator)

        result = _sync(orchestrator)

        assert result.created == 1
        assert len(outlook.creates) == 1
        assert _only_mapping(store).sync_status == SyncStatus.SYNCED

    def test_invalid_event_is_reported_not_written(self, orchestrator, store, booking, outlook):
        booking.add_event(RESOURCE_ID, "bad", "Backwards", at(2, 11), at(2, 10))
        result = _sync(orchestrator)
        assert len(result.errors) == 1
        assert result.errors[0]["event_id"] == "bad"
        assert outlook.creates == []
        assert store.list_mappings() == []

    def test_source_fetch_failure_logs_error(self, orchestrator, store, booking):
        booking.fail("get_events", TransientBridgeError("connection refused"))
        result = _sync(orchestrator)
        assert not result.success
        (log,) = store.recent_sync_logs()
        assert log["status"] == "error"
        assert "connection refused" in log["error_message"]

    def test_empty_window_is_rejected(self, orchestrator):
        with pytest.raises(ValidationError):
            orchestrator.sync_between_bridges(BOOKING, OUTLOOK, RESOURCE_ID, MAILBOX, WINDOW_END, WINDOW_START)

    def test_unknown_bridge(self, orchestrator):
        with pytest.raises(UnknownBridgeError):
            orchestrator.sync_between_bridges("google", OUTLOOK, "x", MAILBOX, WINDOW_START, WINDOW_END)


# ---------------------------------------------------------------------------
# Crash recovery and concurrency
# ---------------------------------------------------------------------------


def test_orphaned_remote_event_is_adopted(orchestrator, store, clock, booking, outlook):
    """A run died after creating the remote event but before recording its id."""
    add_meeting(booking, "E1")
    store.claim_new_mapping(
        BOOKING, OUTLOOK, RESOURCE_ID, MAILBOX, "E1", SyncDirection.SOURCE_TO_TARGET, "dead-worker", 300
    )
    outlook.add_event(
        MAILBOX, "orphan-1", "Team Sync", at(2, 10), at(2, 11), origin_bridge=BOOKING, origin_event_id="E1"
    )
    clock.advance(301)

    result = _sync(orchestrator)

    assert result.created == 1
    assert outlook.creates == [], "the orphan should be adopted, not duplicated"
    mapping = _only_mapping(store)
    assert mapping.target_event_id == "orphan-1"
    assert mapping.sync_status == SyncStatus.SYNCED


def test_mapping_leased_by_live_worker_is_skipped(orchestrator, store, booking, outlook):
    add_meeting(booking, "E1")
    store.claim_new_mapping(
        BOOKING, OUTLOOK, RESOURCE_ID, MAILBOX, "E1", SyncDirection.SOURCE_TO_TARGET, "busy-worker", 300
    )
    result = _sync(orchestrator)
    assert result.created == 0
    assert outlook.creates == []
    assert result.processed_events[0]["action"] == "skipped:locked"


def test_concurrent_passes_create_at_most_once(orchestrator, store, booking, outlook):
    add_meeting(booking, "E1")
    booking.barrier = threading.Barrier(2)
    results = []
    errors = []

    def run():
        try:
            results.append(_sync(orchestrator))
        except Exception as e:  # surfaced through the assertion below
            errors.append(e)

    threads = [threading.Thread(target=run) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert sum(r.created for r in results) == 1
    assert len(outlook.creates) == 1
    assert _only_mapping(store).sync_status == SyncStatus.SYNCED


# ---------------------------------------------------------------------------
# Deletion hand-off
# ---------------------------------------------------------------------------


def test_vanished_source_event_queues_deletion_check(orchestrator, store, work_queue, booking, outlook):
    add_meeting(booking, "E1")
    _sync(orchestrator)
    target_id = _only_mapping(store).target_event_id
    booking.remove_event(RESOURCE_ID, "E1")

    result = _sync(orchestrator, handle_deletions=True)

    assert result.deletion_checks_queued == 1
    assert outlook.deletes == [], "a sync pass never deletes by itself"
    assert work_queue.counts_by_type() == {QueueType.DELETION_CHECK.value: {"pending": 1}}

    orchestrator.drain_queue()

    assert outlook.deletes == [(MAILBOX, target_id)]
    assert store.list_mappings() == []


def test_deletion_checks_are_deduplicated(orchestrator, booking):
    add_meeting(booking, "E1")
    _sync(orchestrator)
    booking.remove_event(RESOURCE_ID, "E1")

    first = _sync(orchestrator, handle_deletions=True)
    second = _sync(orchestrator, handle_deletions=True)

    assert first.deletion_checks_queued == 1
    assert second.deletion_checks_queued == 0
