"""
Unit tests for stateless event helpers in calendar_bridge.events and
calendar_bridge.sync.utils.
"""

from dataclasses import replace
from datetime import date
from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest

from calendar_bridge.events import compute_hash
from calendar_bridge.events import event_in_range
from calendar_bridge.events import format_datetime
from calendar_bridge.events import parse_datetime
from calendar_bridge.events import snapshot_in_range
from calendar_bridge.events import validate_event
from calendar_bridge.models import BRIDGE_MARKER
from calendar_bridge.models import CanonicalEvent
from calendar_bridge.models import ValidationError
from calendar_bridge.sync.utils import build_origin_index
from calendar_bridge.sync.utils import default_window
from tests.conftest import WINDOW_END
from tests.conftest import WINDOW_START
from tests.conftest import at
from tests.fake_bridge import FakeBridge


def _event(**changes) -> CanonicalEvent:
    base = CanonicalEvent(id="E1", subject="Team Sync", start=at(2, 10), end=at(2, 11))
    return replace(base, **changes)


# ---------------------------------------------------------------------------
# Datetime parsing
# ---------------------------------------------------------------------------


class TestParseDatetime:
    @pytest.mark.parametrize(
        "value",
        [
            "2026-03-02T10:00:00Z",
            "2026-03-02T10:00:00+00:00",
            "2026-03-02T11:00:00+01:00",
            "2026-03-02T10:00:00",
            "2026-03-02T10:00:00.0000000",
            datetime(2026, 3, 2, 10, 0),
        ],
    )
    def test_shapes_normalize_to_utc(self, value):
        assert parse_datetime(value) == at(2, 10)

    def test_plain_date(self):
        assert parse_datetime(date(2026, 3, 2)) == datetime(2026, 3, 2, tzinfo=timezone.utc)

    def test_empty_values(self):
        assert parse_datetime(None) is None
        assert parse_datetime("") is None

    def test_garbage_is_a_validation_error(self):
        with pytest.raises(ValidationError):
            parse_datetime("next tuesday")

    def test_graph_precision_is_truncated(self):
        assert parse_datetime("2026-03-02T10:00:00.1234567Z").microsecond == 123456

    def test_format_is_utc_with_z(self):
        moment = datetime(2026, 3, 2, 11, 0, 30, 999, tzinfo=timezone(timedelta(hours=1)))
        assert format_datetime(moment) == "2026-03-02T10:00:30Z"


# ---------------------------------------------------------------------------
# Windows
# ---------------------------------------------------------------------------


class TestWindow:
    def test_half_open(self):
        assert event_in_range(_event(start=WINDOW_START, end=WINDOW_START + timedelta(hours=1)), WINDOW_START, WINDOW_END)
        assert not event_in_range(_event(start=WINDOW_END, end=WINDOW_END + timedelta(hours=1)), WINDOW_START, WINDOW_END)

    def test_snapshot_in_range(self):
        assert snapshot_in_range(_event().snapshot(), WINDOW_START, WINDOW_END)
        assert not snapshot_in_range(None, WINDOW_START, WINDOW_END)
        assert not snapshot_in_range({"start": None}, WINDOW_START, WINDOW_END)

    def test_default_window_spans_whole_days(self):
        start, end = default_window(1, 30, now=at(15, 13, 45))
        assert start == datetime(2026, 3, 14, tzinfo=timezone.utc)
        assert end == datetime(2026, 4, 15, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Validation and hashing
# ---------------------------------------------------------------------------


class TestValidateEvent:
    def test_valid(self):
        validate_event(_event())

    def test_missing_subject(self):
        with pytest.raises(ValidationError, match="subject"):
            validate_event(_event(subject=""))

    def test_end_before_start(self):
        with pytest.raises(ValidationError, match="starts at or after"):
            validate_event(_event(end=at(2, 9)))


class TestComputeHash:
    def test_stable_across_identity_and_markers(self):
        original = _event()
        copy = _event(id="outlook-1", origin_bridge="booking_system", origin_event_id="E1", last_modified=at(5, 9))
        assert compute_hash(original) == compute_hash(copy)

    @pytest.mark.parametrize(
        "change",
        [
            {"subject": "Moved"},
            {"start": at(2, 9)},
            {"location": "Room 2"},
            {"attendees": frozenset({"bob@example.org"})},
            {"active": False},
        ],
    )
    def test_content_changes_alter_hash(self, change):
        assert compute_hash(_event()) != compute_hash(_event(**change))

    def test_attendee_order_does_not_matter(self):
        a = _event(attendees=frozenset({"a@x", "b@x"}))
        b = _event(attendees=frozenset({"b@x", "a@x"}))
        assert compute_hash(a) == compute_hash(b)


# ---------------------------------------------------------------------------
# Orphan recovery index
# ---------------------------------------------------------------------------


def test_origin_index_keeps_first_claim_and_ignores_foreign_markers():
    target = FakeBridge("outlook")
    events = [
        _event(id="T1", origin_bridge="booking_system", origin_event_id="E1"),
        _event(id="T2", origin_bridge="booking_system", origin_event_id="E1"),
        _event(id="T3", origin_bridge=BRIDGE_MARKER, origin_event_id="E2"),
        _event(id="T4", origin_bridge="other_system", origin_event_id="E3"),
        _event(id="T5"),
    ]
    assert build_origin_index(target, events, "booking_system") == {"E1": "T1", "E2": "T3"}
