"""
Tests for the HTTP-backed bridges against httpx.MockTransport, plus the
booking-system field mapping and the bridge factory.
"""

import json
import time

import httpx
import pytest

from calendar_bridge.bridges import build_bridge
from calendar_bridge.bridges.base import is_polling_subscription
from calendar_bridge.bridges.booking import GenericBookingBridge
from calendar_bridge.bridges.fields import FieldMapping
from calendar_bridge.bridges.outlook import PROP_BRIDGE_SOURCE
from calendar_bridge.bridges.outlook import PROP_SOURCE_BRIDGE
from calendar_bridge.bridges.outlook import PROP_SOURCE_EVENT_ID
from calendar_bridge.bridges.outlook import OutlookGraphBridge
from calendar_bridge.config import BridgeSettings
from calendar_bridge.models import BRIDGE_MARKER
from calendar_bridge.models import CalendarBridgeError
from calendar_bridge.models import CanonicalEvent
from calendar_bridge.models import ConfigurationError
from calendar_bridge.models import EventFound
from calendar_bridge.models import EventMissing
from calendar_bridge.models import EventNotFoundError
from calendar_bridge.models import LookupFailed
from calendar_bridge.models import ValidationError
from tests.conftest import MAILBOX
from tests.conftest import RESOURCE_ID
from tests.conftest import WINDOW_END
from tests.conftest import WINDOW_START
from tests.conftest import at

BOOKING_URL = "https://booking.test/api"
GRAPH_URL = "https://graph.test/v1.0"
TOKEN_URL = "https://login.test/token"


class Router:
    """MockTransport handler dispatching on ``(method, path)``; records every request."""

    def __init__(self):
        self.routes: dict[tuple[str, str], list] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, *responses):
        self.routes.setdefault((method, path), []).extend(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queued = self.routes.get((request.method, request.url.path))
        if not queued:
            return httpx.Response(404, json={"error": "no route"})
        # The last response for a route is sticky.
        template = queued.pop(0) if len(queued) > 1 else queued[0]
        return httpx.Response(template.status_code, headers=template.headers, content=template.content)

    def sent(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if (r.method, r.url.path) == (method, path)]

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self))


def _meeting(event_id: str = "E1", **extra) -> CanonicalEvent:
    return CanonicalEvent(id=event_id, subject="Team Sync", start=at(2, 10), end=at(2, 11), **extra)


# ---------------------------------------------------------------------------
# Field mapping
# ---------------------------------------------------------------------------


class TestFieldMapping:
    def test_defaults(self):
        mapping = FieldMapping()
        assert mapping.subject == "title"
        assert mapping.read({"title": "x"}, "subject") == "x"

    def test_from_options_overrides_and_ignores_other_keys(self):
        mapping = FieldMapping.from_options({"field.subject": "name", "base_url": "https://x"})
        assert mapping.subject == "name"
        assert mapping.start == "start"

    def test_unknown_canonical_field_is_rejected(self):
        with pytest.raises(ConfigurationError, match="colour"):
            FieldMapping.from_options({"field.colour": "color"})

    def test_empty_native_key_is_rejected(self):
        with pytest.raises(ConfigurationError):
            FieldMapping(subject=" ")

    def test_empty_path_segment_is_rejected(self):
        with pytest.raises(ConfigurationError):
            FieldMapping(start="times..begin")

    def test_required_fields_must_be_distinct(self):
        with pytest.raises(ConfigurationError):
            FieldMapping(start="when", end="when")

    def test_nested_paths(self):
        mapping = FieldMapping(start="times.begin")
        data: dict = {}
        mapping.write(data, "start", "2026-03-02T10:00:00Z")
        assert data == {"times": {"begin": "2026-03-02T10:00:00Z"}}
        assert mapping.read(data, "start") == "2026-03-02T10:00:00Z"
        assert mapping.read({"times": "flat"}, "start") is None


# ---------------------------------------------------------------------------
# Booking system
# ---------------------------------------------------------------------------


@pytest.fixture
def booking_router():
    return Router()


@pytest.fixture
def booking_bridge(booking_router):
    return GenericBookingBridge(
        "booking_system", booking_router.client(), BOOKING_URL, api_key="secret", max_attempts=1
    )


def _booking_event(event_id="E1", start="2026-03-02T10:00:00Z", end="2026-03-02T11:00:00Z", **extra):
    return {"id": event_id, "title": "Team Sync", "start": start, "end": end, **extra}


class TestBookingBridge:
    def test_get_events_filters_window_and_skips_malformed(self, booking_router, booking_bridge):
        booking_router.add(
            "GET",
            f"/api/resources/{RESOURCE_ID}/events",
            httpx.Response(
                200,
                json={
                    "events": [
                        _booking_event("E1"),
                        _booking_event("E2", start="2026-04-01T00:00:00Z", end="2026-04-01T01:00:00Z"),
                        {"id": "broken", "title": "No times"},
                    ]
                },
            ),
        )

        events = booking_bridge.get_events(RESOURCE_ID, WINDOW_START, WINDOW_END)

        assert [e.id for e in events] == ["E1"]
        (request,) = booking_router.requests
        assert request.url.params["start_date"] == "2026-03-01T00:00:00Z"
        assert request.headers["Authorization"] == "Bearer secret"

    def test_custom_field_mapping(self, booking_router):
        bridge = GenericBookingBridge(
            "booking_system",
            booking_router.client(),
            BOOKING_URL,
            field_mapping=FieldMapping(subject="name", start="times.begin", end="times.finish", active="enabled"),
        )
        booking_router.add(
            "GET",
            f"/api/resources/{RESOURCE_ID}/events",
            httpx.Response(
                200,
                json=[
                    {
                        "id": 7,
                        "name": "Board",
                        "times": {"begin": "2026-03-03T09:00:00Z", "finish": "2026-03-03T10:00:00Z"},
                        "enabled": "false",
                    }
                ],
            ),
        )

        (event,) = bridge.get_events(RESOURCE_ID, WINDOW_START, WINDOW_END)

        assert event.id == "7"
        assert event.subject == "Board"
        assert event.start == at(3, 9)
        assert not event.active

    def test_get_event_outcomes(self, booking_router, booking_bridge):
        path = f"/api/resources/{RESOURCE_ID}/events"
        booking_router.add("GET", f"{path}/E1", httpx.Response(200, json={"event": _booking_event("E1")}))
        booking_router.add("GET", f"{path}/E2", httpx.Response(404))
        booking_router.add("GET", f"{path}/E3", httpx.Response(500, text="boom"))

        found = booking_bridge.get_event(RESOURCE_ID, "E1")
        assert isinstance(found, EventFound)
        assert found.event.subject == "Team Sync"
        assert isinstance(booking_bridge.get_event(RESOURCE_ID, "E2"), EventMissing)
        assert isinstance(booking_bridge.get_event(RESOURCE_ID, "E3"), LookupFailed)

    def test_create_event_carries_marker(self, booking_router, booking_bridge):
        booking_router.add(
            "POST", f"/api/resources/{RESOURCE_ID}/events", httpx.Response(201, json={"event_id": "B-9"})
        )

        event_id = booking_bridge.create_event(
            RESOURCE_ID, _meeting(None, origin_bridge="outlook", origin_event_id="AAMk1")
        )

        assert event_id == "B-9"
        body = json.loads(booking_router.requests[0].content)
        assert body["source"] == BRIDGE_MARKER
        assert body["source_bridge"] == "outlook"
        assert body["source_event_id"] == "AAMk1"
        assert body["title"] == "Team Sync"
        assert body["start"] == "2026-03-02T10:00:00Z"

    def test_marker_follows_field_mapping(self):
        bridge = GenericBookingBridge(
            "booking_system",
            httpx.Client(),
            BOOKING_URL,
            field_mapping=FieldMapping(marker="meta.origin", origin_event_id="meta.ref"),
        )

        body = bridge.to_native(_meeting(None, origin_bridge="outlook", origin_event_id="AAMk1"), with_marker=True)

        assert body["meta"] == {"origin": BRIDGE_MARKER, "ref": "AAMk1"}
        assert body["source_bridge"] == "outlook"
        assert "source" not in body
        assert "bridge_import" not in body

    def test_create_event_without_id_fails(self, booking_router, booking_bridge):
        booking_router.add("POST", f"/api/resources/{RESOURCE_ID}/events", httpx.Response(201, json={}))
        with pytest.raises(CalendarBridgeError):
            booking_bridge.create_event(RESOURCE_ID, _meeting())

    def test_marked_event_is_bridge_originated(self, booking_bridge):
        event = booking_bridge.to_canonical(
            _booking_event("B-9", source=BRIDGE_MARKER, source_bridge="outlook", source_event_id="AAMk1")
        )
        assert booking_bridge.is_bridge_originated(event)
        assert (event.origin_bridge, event.origin_event_id) == ("outlook", "AAMk1")
        assert not booking_bridge.is_bridge_originated(booking_bridge.to_canonical(_booking_event()))

    def test_delete_of_absent_event_succeeds(self, booking_router, booking_bridge):
        booking_router.add("DELETE", f"/api/resources/{RESOURCE_ID}/events/E1", httpx.Response(404))
        assert booking_bridge.delete_event(RESOURCE_ID, "E1") is True

    def test_update_of_absent_event_raises(self, booking_router, booking_bridge):
        booking_router.add("PUT", f"/api/resources/{RESOURCE_ID}/events/E1", httpx.Response(404))
        with pytest.raises(EventNotFoundError):
            booking_bridge.update_event(RESOURCE_ID, "E1", _meeting())

    def test_subscribe_falls_back_to_polling(self, booking_router, booking_bridge):
        booking_router.add("POST", "/api/webhooks/subscribe", httpx.Response(501))

        subscription_id = booking_bridge.subscribe_to_changes(RESOURCE_ID, "https://hooks.test/in")

        assert is_polling_subscription(subscription_id)
        assert booking_bridge.unsubscribe_from_changes(subscription_id)
        assert booking_router.sent("DELETE", f"/api/webhooks/{subscription_id}") == []

    def test_get_calendars(self, booking_router, booking_bridge):
        booking_router.add(
            "GET", "/api/resources", httpx.Response(200, json={"resources": [{"id": 101, "name": "Room 101"}]})
        )
        assert booking_bridge.get_calendars() == [
            {"id": "101", "name": "Room 101", "type": "resource", "description": ""}
        ]

    def test_health_check_reports_failure(self, booking_router, booking_bridge):
        booking_router.add("GET", "/api/resources", httpx.Response(503))
        health = booking_bridge.health_check()
        assert health["status"] == "unhealthy"
        assert "503" in health["error"]


# ---------------------------------------------------------------------------
# Outlook / Microsoft Graph
# ---------------------------------------------------------------------------


@pytest.fixture
def graph_router():
    router = Router()
    router.add("POST", "/token", httpx.Response(200, json={"access_token": "tok", "expires_in": 3600}))
    return router


@pytest.fixture
def graph_bridge(graph_router):
    return OutlookGraphBridge(
        "outlook",
        graph_router.client(),
        tenant_id="tenant",
        client_id="client",
        client_secret="secret",
        graph_url=GRAPH_URL,
        token_url=TOKEN_URL,
        max_attempts=1,
    )


def _graph_event(event_id="AAMk1", start="2026-03-02T10:00:00.0000000", **extra):
    return {
        "id": event_id,
        "subject": "Team Sync",
        "start": {"dateTime": start, "timeZone": "UTC"},
        "end": {"dateTime": "2026-03-02T11:00:00.0000000", "timeZone": "UTC"},
        "organizer": {"emailAddress": {"address": "alice@example.org"}},
        **extra,
    }


class TestOutlookBridge:
    def test_token_is_fetched_once(self, graph_router, graph_bridge):
        graph_router.add("GET", f"/v1.0/users/{MAILBOX}/events/AAMk1", httpx.Response(200, json=_graph_event()))

        graph_bridge.get_event(MAILBOX, "AAMk1")
        graph_bridge.get_event(MAILBOX, "AAMk1")

        assert len(graph_router.sent("POST", "/token")) == 1
        last = graph_router.requests[-1]
        assert last.headers["Authorization"] == "Bearer tok"

    def test_get_events_follows_next_link(self, graph_router, graph_bridge):
        graph_router.add(
            "GET",
            f"/v1.0/users/{MAILBOX}/calendarView",
            httpx.Response(
                200, json={"value": [_graph_event("A")], "@odata.nextLink": f"{GRAPH_URL}/page-2?$skip=1"}
            ),
        )
        graph_router.add("GET", "/v1.0/page-2", httpx.Response(200, json={"value": [_graph_event("B")]}))

        events = graph_bridge.get_events(MAILBOX, WINDOW_START, WINDOW_END)

        assert [e.id for e in events] == ["A", "B"]
        assert events[0].start == at(2, 10)
        assert events[0].organizer == "alice@example.org"

    def test_markers_and_cancellation_are_read(self, graph_bridge):
        event = graph_bridge.to_canonical(
            _graph_event(
                isCancelled=True,
                singleValueExtendedProperties=[
                    {"id": PROP_BRIDGE_SOURCE, "value": BRIDGE_MARKER},
                    {"id": PROP_SOURCE_BRIDGE, "value": "booking_system"},
                    {"id": PROP_SOURCE_EVENT_ID, "value": "E1"},
                ],
            )
        )
        assert graph_bridge.is_bridge_originated(event)
        assert event.origin_bridge == "booking_system"
        assert event.origin_event_id == "E1"
        assert not event.active

    def test_create_event_sets_extended_properties(self, graph_router, graph_bridge):
        graph_router.add(
            "POST", f"/v1.0/users/{MAILBOX}/calendar/events", httpx.Response(201, json={"id": "AAMk9"})
        )

        event_id = graph_bridge.create_event(
            MAILBOX, _meeting(None, origin_bridge="booking_system", origin_event_id="E1")
        )

        assert event_id == "AAMk9"
        body = json.loads(graph_router.sent("POST", f"/v1.0/users/{MAILBOX}/calendar/events")[0].content)
        props = {p["id"]: p["value"] for p in body["singleValueExtendedProperties"]}
        assert props[PROP_BRIDGE_SOURCE] == BRIDGE_MARKER
        assert props[PROP_SOURCE_EVENT_ID] == "E1"
        assert body["start"] == {"dateTime": "2026-03-02T10:00:00", "timeZone": "UTC"}
        assert "attendees" not in body

    def test_get_event_missing(self, graph_router, graph_bridge):
        graph_router.add("GET", f"/v1.0/users/{MAILBOX}/events/gone", httpx.Response(404))
        assert isinstance(graph_bridge.get_event(MAILBOX, "gone"), EventMissing)

    def test_invalid_json_is_a_bridge_error(self, graph_router, graph_bridge):
        graph_router.add("GET", f"/v1.0/users/{MAILBOX}/calendarView", httpx.Response(200, text="<html>"))
        graph_router.add("GET", f"/v1.0/users/{MAILBOX}/events/AAMk1", httpx.Response(200, text="<html>"))

        with pytest.raises(CalendarBridgeError, match="invalid JSON"):
            graph_bridge.get_events(MAILBOX, WINDOW_START, WINDOW_END)
        assert isinstance(graph_bridge.get_event(MAILBOX, "AAMk1"), LookupFailed)

    def test_delete_is_idempotent(self, graph_router, graph_bridge):
        graph_router.add("DELETE", f"/v1.0/users/{MAILBOX}/events/gone", httpx.Response(404))
        assert graph_bridge.delete_event(MAILBOX, "gone") is True

    def test_parse_graph_notifications(self, graph_bridge):
        body = {
            "value": [
                {
                    "changeType": "deleted",
                    "resource": f"Users/{MAILBOX}/Events/AAMk1",
                    "resourceData": {"id": "AAMk1"},
                },
                {"changeType": "updated", "resource": f"Users/{MAILBOX}/Events/AAMk2"},
            ]
        }

        deleted, updated = graph_bridge.parse_notifications(body)

        assert (deleted.action, deleted.resource_id, deleted.event_id) == ("deleted", MAILBOX, "AAMk1")
        assert (updated.action, updated.event_id) == ("updated", "AAMk2")

    def test_unknown_change_type_is_rejected(self, graph_bridge):
        with pytest.raises(ValidationError):
            graph_bridge.parse_notifications(
                {"value": [{"changeType": "missed", "resource": f"Users/{MAILBOX}/Events/AAMk1"}]}
            )

    def test_renew_subscription_returns_future_expiry(self, graph_router, graph_bridge):
        graph_router.add("PATCH", "/v1.0/subscriptions/sub-1", httpx.Response(200, json={}))
        assert graph_bridge.renew_subscription("sub-1") > time.time()

    def test_get_calendars_lists_rooms(self, graph_router, graph_bridge):
        graph_router.add(
            "GET",
            "/v1.0/places/microsoft.graph.room",
            httpx.Response(200, json={"value": [{"emailAddress": MAILBOX, "displayName": "Room 101"}]}),
        )
        assert graph_bridge.get_calendars() == [{"id": MAILBOX, "name": "Room 101", "type": "room"}]


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


class TestBuildBridge:
    def test_builds_each_type(self):
        client = httpx.Client()
        outlook = build_bridge(
            BridgeSettings("outlook", "outlook", {"tenant_id": "t", "client_id": "c", "client_secret": "s"}),
            client,
        )
        booking = build_bridge(
            BridgeSettings(
                "rooms",
                "booking_system",
                {"base_url": BOOKING_URL},
                field_mapping=FieldMapping(subject="name"),
                supports_webhooks=True,
            ),
            client,
        )
        assert isinstance(outlook, OutlookGraphBridge)
        assert isinstance(booking, GenericBookingBridge)
        assert booking.name == "rooms"
        assert booking.fields.subject == "name"
        assert booking.get_capabilities().supports_webhooks

    def test_unknown_type(self):
        with pytest.raises(ConfigurationError):
            build_bridge(BridgeSettings("x", "caldav", {}), httpx.Client())
