"""
Bridge for a booking system exposing the generic resources/events REST API.
"""

import logging
from datetime import datetime

import httpx

from calendar_bridge.bridges.base import CalendarBridge
from calendar_bridge.bridges.base import is_polling_subscription
from calendar_bridge.bridges.base import polling_subscription_id
from calendar_bridge.bridges.fields import FieldMapping
from calendar_bridge.bridges.http import send
from calendar_bridge.events import format_datetime
from calendar_bridge.events import parse_datetime
from calendar_bridge.models import BRIDGE_MARKER
from calendar_bridge.models import BridgeCapabilities
from calendar_bridge.models import CalendarBridgeError
from calendar_bridge.models import CanonicalEvent
from calendar_bridge.models import EventFound
from calendar_bridge.models import EventMissing
from calendar_bridge.models import EventNotFoundError
from calendar_bridge.models import LookupFailed
from calendar_bridge.models import LookupResult
from calendar_bridge.models import ValidationError

logger = logging.getLogger(__name__)


def _as_bool(value, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() not in ("0", "false", "no", "off", "")
    return bool(value)


class GenericBookingBridge(CalendarBridge):
    """Booking system reachable over ``/resources/{id}/events[/{eventId}]``.

    Webhook subscription is attempted against ``/webhooks/subscribe``; when
    the system refuses, the bridge falls back to polling mode.
    """

    bridge_type = "booking_system"

    def __init__(
        self,
        name: str,
        client: httpx.Client,
        base_url: str,
        api_key: str | None = None,
        field_mapping: FieldMapping | None = None,
        max_attempts: int = 3,
        supports_webhooks: bool = False,
    ):
        super().__init__(name)
        self.supports_webhooks = supports_webhooks
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.fields = field_mapping or FieldMapping()
        self.max_attempts = max_attempts

    def _request(self, method: str, path: str, context: str, **kwargs) -> httpx.Response:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return send(
            self.client,
            method,
            f"{self.base_url}{path}",
            context=f"{self.name}: {context}",
            max_attempts=self.max_attempts,
            headers=headers,
            **kwargs,
        )

    @staticmethod
    def _json(response: httpx.Response) -> dict | list:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise CalendarBridgeError(f"Invalid JSON from booking system: {e}") from e

    # ------------------------------------------------------------------ #
    # Conversion                                                           #
    # ------------------------------------------------------------------ #

    def to_canonical(self, data: dict) -> CanonicalEvent:
        f = self.fields
        event_id = f.read(data, "id")
        start = parse_datetime(f.read(data, "start"))
        end = parse_datetime(f.read(data, "end"))
        if event_id is None or start is None or end is None:
            raise ValidationError(f"Booking event is missing id/start/end: {data!r}")
        attendees = f.read(data, "attendees") or []
        if isinstance(attendees, str):
            attendees = [attendees]
        marked = f.read(data, "marker") == BRIDGE_MARKER
        return CanonicalEvent(
            id=str(event_id),
            subject=f.read(data, "subject") or "",
            start=start,
            end=end,
            organizer=f.read(data, "organizer") or None,
            attendees=frozenset(str(a) for a in attendees if a),
            description=f.read(data, "description") or "",
            location=f.read(data, "location") or "",
            all_day=_as_bool(f.read(data, "all_day"), default=False),
            active=_as_bool(f.read(data, "active"), default=True),
            last_modified=parse_datetime(f.read(data, "last_modified")),
            origin_bridge=(f.read(data, "origin_bridge") or BRIDGE_MARKER) if marked else None,
            origin_event_id=f.read(data, "origin_event_id") if marked else None,
            raw=data,
        )

    def to_native(self, event: CanonicalEvent, with_marker: bool = False) -> dict:
        f = self.fields
        data: dict = {}
        f.write(data, "subject", event.subject)
        f.write(data, "start", format_datetime(event.start))
        f.write(data, "end", format_datetime(event.end))
        f.write(data, "description", event.description)
        f.write(data, "location", event.location)
        f.write(data, "organizer", event.organizer or "")
        f.write(data, "attendees", sorted(event.attendees))
        f.write(data, "all_day", event.all_day)
        if with_marker:
            f.write(data, "marker", BRIDGE_MARKER)
            if event.origin_bridge:
                f.write(data, "origin_bridge", event.origin_bridge)
            if event.origin_event_id:
                f.write(data, "origin_event_id", event.origin_event_id)
        return data

    # ------------------------------------------------------------------ #
    # CalendarBridge                                                       #
    # ------------------------------------------------------------------ #

    def get_capabilities(self) -> BridgeCapabilities:
        return BridgeCapabilities(
            supports_webhooks=self.supports_webhooks,
            supports_recurring=False,
            max_events_per_request=100,
            rate_limit_per_minute=60,
        )

    def get_events(self, calendar_id: str, start: datetime, end: datetime) -> list[CanonicalEvent]:
        response = self._request(
            "GET",
            f"/resources/{calendar_id}/events",
            "list events",
            params={"start_date": format_datetime(start), "end_date": format_datetime(end)},
        )
        body = self._json(response)
        items = body.get("events", []) if isinstance(body, dict) else body
        events = []
        for item in items:
            try:
                events.append(self.to_canonical(item))
            except ValidationError as e:
                logger.warning(f"Skipping malformed booking event on {calendar_id}: {e}")
        return self._within(events, start, end)

    def get_event(self, calendar_id: str, event_id: str) -> LookupResult:
        try:
            response = self._request("GET", f"/resources/{calendar_id}/events/{event_id}", "get event")
        except EventNotFoundError:
            return EventMissing()
        except CalendarBridgeError as e:
            return LookupFailed(str(e))
        try:
            body = self._json(response)
            if isinstance(body, dict) and isinstance(body.get("event"), dict):
                body = body["event"]
            return EventFound(self.to_canonical(body))
        except CalendarBridgeError as e:
            return LookupFailed(str(e))

    def create_event(self, calendar_id: str, event: CanonicalEvent) -> str:
        response = self._request(
            "POST",
            f"/resources/{calendar_id}/events",
            "create event",
            json=self.to_native(event, with_marker=True),
        )
        body = self._json(response)
        native_id = None
        if isinstance(body, dict):
            native_id = body.get("event_id") or body.get("id")
        if not native_id:
            raise CalendarBridgeError(f"Booking system did not return an id for the new event: {body!r}")
        logger.debug(f"Created booking event {native_id} on resource {calendar_id}")
        return str(native_id)

    def update_event(self, calendar_id: str, event_id: str, event: CanonicalEvent) -> bool:
        response = self._request(
            "PUT",
            f"/resources/{calendar_id}/events/{event_id}",
            "update event",
            json=self.to_native(event, with_marker=True),
        )
        body = self._json(response)
        return not isinstance(body, dict) or body.get("success", True) is not False

    def delete_event(self, calendar_id: str, event_id: str) -> bool:
        try:
            response = self._request("DELETE", f"/resources/{calendar_id}/events/{event_id}", "delete event")
        except EventNotFoundError:
            logger.debug(f"Booking event {event_id} already absent from {calendar_id}")
            return True
        body = self._json(response)
        return not isinstance(body, dict) or body.get("success", True) is not False

    def get_calendars(self) -> list[dict]:
        body = self._json(self._request("GET", "/resources", "list resources"))
        items = body.get("resources", []) if isinstance(body, dict) else body
        return [
            {
                "id": str(item["id"]),
                "name": item.get("name", str(item["id"])),
                "type": "resource",
                "description": item.get("description", ""),
            }
            for item in items
        ]

    def subscribe_to_changes(self, calendar_id: str, webhook_url: str) -> str:
        try:
            response = self._request(
                "POST",
                "/webhooks/subscribe",
                "subscribe",
                json={
                    "resource_id": calendar_id,
                    "callback_url": webhook_url,
                    "events": ["created", "updated", "deleted"],
                },
            )
        except CalendarBridgeError as e:
            logger.info(f"Webhooks unavailable on {self.name} ({e}); using polling mode")
            return polling_subscription_id(calendar_id)
        body = self._json(response)
        subscription_id = body.get("subscription_id") if isinstance(body, dict) else None
        return str(subscription_id) if subscription_id else polling_subscription_id(calendar_id)

    def unsubscribe_from_changes(self, subscription_id: str) -> bool:
        if is_polling_subscription(subscription_id):
            return True
        try:
            self._request("DELETE", f"/webhooks/{subscription_id}", "unsubscribe")
        except EventNotFoundError:
            return True
        except CalendarBridgeError as e:
            logger.warning(f"Failed to unsubscribe {subscription_id} on {self.name}: {e}")
            return False
        return True
