"""
Microsoft Graph (Outlook / Exchange Online) calendar bridge.

Authenticates with the client-credentials flow and reads room or user
calendars addressed by mailbox (``/users/{calendar_id}/...``).  Events
created by the engine carry single-value extended properties that mark them
as bridge-originated and record where they were copied from.
"""

import logging
import threading
import time
import uuid
from datetime import datetime
from datetime import timedelta
from datetime import timezone

import httpx

from calendar_bridge.bridges.base import CalendarBridge
from calendar_bridge.bridges.base import normalize_notification
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
from calendar_bridge.models import Notification
from calendar_bridge.models import ValidationError

logger = logging.getLogger(__name__)

GRAPH_URL = "https://graph.microsoft.com/v1.0"
TOKEN_URL = "https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"

PROPERTY_SET = "{66f5a359-4659-4830-9070-00047ec6ac6e}"
PROP_BRIDGE_SOURCE = f"String {PROPERTY_SET} Name BridgeSource"
PROP_SOURCE_BRIDGE = f"String {PROPERTY_SET} Name SourceBridge"
PROP_SOURCE_EVENT_ID = f"String {PROPERTY_SET} Name SourceEventId"

_EXPAND_MARKERS = (
    "singleValueExtendedProperties($filter="
    f"id eq '{PROP_BRIDGE_SOURCE}' or id eq '{PROP_SOURCE_BRIDGE}' "
    f"or id eq '{PROP_SOURCE_EVENT_ID}')"
)
_PAGE_SIZE = 999
# Graph caps calendar event subscriptions at just under three days; renew daily.
_SUBSCRIPTION_LIFETIME = timedelta(days=1)

_CHANGE_TYPES = {"created": "created", "updated": "updated", "deleted": "deleted"}


class OutlookGraphBridge(CalendarBridge):
    bridge_type = "outlook"
    subscription_ttl = _SUBSCRIPTION_LIFETIME.total_seconds()

    def __init__(
        self,
        name: str,
        client: httpx.Client,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        graph_url: str = GRAPH_URL,
        token_url: str | None = None,
        group_id: str | None = None,
        max_attempts: int = 3,
    ):
        super().__init__(name)
        self.client = client
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.graph_url = graph_url.rstrip("/")
        self.token_url = token_url or TOKEN_URL.format(tenant_id=tenant_id)
        self.group_id = group_id
        self.max_attempts = max_attempts
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Transport                                                            #
    # ------------------------------------------------------------------ #

    def _access_token(self) -> str:
        with self._token_lock:
            if self._token and time.time() < self._token_expires_at:
                return self._token
            response = send(
                self.client,
                "POST",
                self.token_url,
                context=f"{self.name}: token request",
                max_attempts=self.max_attempts,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "scope": GRAPH_SCOPE,
                },
            )
            body = self._json(response, "token request")
            token = body.get("access_token")
            if not token:
                raise CalendarBridgeError(f"{self.name}: token response has no access_token")
            self._token = token
            # Refresh a minute early so a token never expires mid-request.
            self._token_expires_at = time.time() + int(body.get("expires_in", 3600)) - 60
            return token

    def _request(self, method: str, url: str, context: str, **kwargs) -> httpx.Response:
        if not url.startswith("http"):
            url = f"{self.graph_url}{url}"
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Prefer": 'outlook.timezone="UTC"',
        }
        return send(
            self.client,
            method,
            url,
            context=f"{self.name}: {context}",
            max_attempts=self.max_attempts,
            headers=headers,
            **kwargs,
        )

    def _json(self, response: httpx.Response, context: str) -> dict:
        try:
            body = response.json()
        except ValueError as e:
            raise CalendarBridgeError(f"{self.name}: {context}: invalid JSON from Graph: {e}") from e
        if not isinstance(body, dict):
            raise CalendarBridgeError(f"{self.name}: {context}: expected a JSON object from Graph")
        return body

    # ------------------------------------------------------------------ #
    # Conversion                                                           #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _markers(data: dict) -> dict[str, str]:
        return {
            prop.get("id", ""): prop.get("value", "")
            for prop in data.get("singleValueExtendedProperties") or []
        }

    def to_canonical(self, data: dict) -> CanonicalEvent:
        try:
            start = parse_datetime(data["start"]["dateTime"])
            end = parse_datetime(data["end"]["dateTime"])
        except (KeyError, TypeError) as e:
            raise ValidationError(f"Graph event {data.get('id')!r} has no start/end") from e
        markers = {key.lower(): value for key, value in self._markers(data).items()}
        marked = markers.get(PROP_BRIDGE_SOURCE.lower()) == BRIDGE_MARKER
        organizer = ((data.get("organizer") or {}).get("emailAddress") or {}).get("address")
        attendees = frozenset(
            address
            for attendee in data.get("attendees") or []
            if (address := (attendee.get("emailAddress") or {}).get("address"))
        )
        return CanonicalEvent(
            id=data.get("id"),
            subject=data.get("subject") or "",
            start=start,
            end=end,
            organizer=organizer,
            attendees=attendees,
            description=(data.get("body") or {}).get("content") or data.get("bodyPreview") or "",
            location=(data.get("location") or {}).get("displayName") or "",
            all_day=bool(data.get("isAllDay")),
            active=not data.get("isCancelled", False),
            last_modified=parse_datetime(data.get("lastModifiedDateTime")),
            origin_bridge=(markers.get(PROP_SOURCE_BRIDGE.lower()) or BRIDGE_MARKER) if marked else None,
            origin_event_id=markers.get(PROP_SOURCE_EVENT_ID.lower()) if marked else None,
            raw=data,
        )

    @staticmethod
    def to_native(event: CanonicalEvent) -> dict:
        """Graph event body. Attendees are not sent, so no invitations go out."""
        return {
            "subject": event.subject,
            "body": {"contentType": "text", "content": event.description},
            "start": {"dateTime": format_datetime(event.start).rstrip("Z"), "timeZone": "UTC"},
            "end": {"dateTime": format_datetime(event.end).rstrip("Z"), "timeZone": "UTC"},
            "location": {"displayName": event.location},
            "isAllDay": event.all_day,
        }

    @staticmethod
    def _marker_properties(event: CanonicalEvent) -> list[dict]:
        props = [{"id": PROP_BRIDGE_SOURCE, "value": BRIDGE_MARKER}]
        if event.origin_bridge:
            props.append({"id": PROP_SOURCE_BRIDGE, "value": event.origin_bridge})
        if event.origin_event_id:
            props.append({"id": PROP_SOURCE_EVENT_ID, "value": event.origin_event_id})
        return props

    # ------------------------------------------------------------------ #
    # CalendarBridge                                                       #
    # ------------------------------------------------------------------ #

    def get_capabilities(self) -> BridgeCapabilities:
        return BridgeCapabilities(
            supports_webhooks=True,
            supports_recurring=True,
            max_events_per_request=_PAGE_SIZE,
            rate_limit_per_minute=1000,
        )

    def get_events(self, calendar_id: str, start: datetime, end: datetime) -> list[CanonicalEvent]:
        # calendarView expands recurring series and returns everything that
        # overlaps the window; _within trims it to events starting inside it.
        url = f"/users/{calendar_id}/calendarView"
        params: dict | None = {
            "startDateTime": format_datetime(start),
            "endDateTime": format_datetime(end),
            "$top": _PAGE_SIZE,
            "$expand": _EXPAND_MARKERS,
        }
        events = []
        while url:
            body = self._json(self._request("GET", url, "list events", params=params), "list events")
            for item in body.get("value", []):
                try:
                    events.append(self.to_canonical(item))
                except ValidationError as e:
                    logger.warning(f"Skipping malformed Graph event on {calendar_id}: {e}")
            url = body.get("@odata.nextLink")
            params = None  # nextLink already carries the query
        logger.debug(f"Fetched {len(events)} event(s) from {calendar_id}")
        return self._within(events, start, end)

    def get_event(self, calendar_id: str, event_id: str) -> LookupResult:
        try:
            response = self._request(
                "GET",
                f"/users/{calendar_id}/events/{event_id}",
                "get event",
                params={"$expand": _EXPAND_MARKERS},
            )
            return EventFound(self.to_canonical(self._json(response, "get event")))
        except EventNotFoundError:
            return EventMissing()
        except CalendarBridgeError as e:
            return LookupFailed(str(e))

    def create_event(self, calendar_id: str, event: CanonicalEvent) -> str:
        body = self.to_native(event)
        body["singleValueExtendedProperties"] = self._marker_properties(event)
        response = self._request(
            "POST", f"/users/{calendar_id}/calendar/events", "create event", json=body
        )
        native_id = self._json(response, "create event").get("id")
        if not native_id:
            raise CalendarBridgeError(f"{self.name}: Graph did not return an id for the new event")
        return native_id

    def update_event(self, calendar_id: str, event_id: str, event: CanonicalEvent) -> bool:
        self._request(
            "PATCH", f"/users/{calendar_id}/events/{event_id}", "update event", json=self.to_native(event)
        )
        return True

    def delete_event(self, calendar_id: str, event_id: str) -> bool:
        try:
            self._request("DELETE", f"/users/{calendar_id}/events/{event_id}", "delete event")
        except EventNotFoundError:
            logger.debug(f"Graph event {event_id} already absent from {calendar_id}")
        return True

    def get_calendars(self) -> list[dict]:
        if self.group_id:
            response = self._request("GET", f"/groups/{self.group_id}/members", "list group members")
            body = self._json(response, "list group members")
            return [
                {"id": member["mail"], "name": member.get("displayName") or member["mail"], "type": "user"}
                for member in body.get("value", [])
                if member.get("mail")
            ]
        body = self._json(self._request("GET", "/places/microsoft.graph.room", "list rooms"), "list rooms")
        return [
            {"id": room["emailAddress"], "name": room.get("displayName", room["emailAddress"]), "type": "room"}
            for room in body.get("value", [])
            if room.get("emailAddress")
        ]

    # ------------------------------------------------------------------ #
    # Subscriptions                                                        #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _expiry() -> datetime:
        return datetime.now(timezone.utc) + _SUBSCRIPTION_LIFETIME

    def subscribe_to_changes(self, calendar_id: str, webhook_url: str) -> str:
        response = self._request(
            "POST",
            "/subscriptions",
            "subscribe",
            json={
                "changeType": "created,updated,deleted",
                "notificationUrl": webhook_url,
                "resource": f"users/{calendar_id}/calendar/events",
                "expirationDateTime": format_datetime(self._expiry()),
                "clientState": f"calendar-bridge-{uuid.uuid4().hex}",
            },
        )
        subscription_id = self._json(response, "subscribe").get("id")
        if not subscription_id:
            raise CalendarBridgeError(f"{self.name}: Graph did not return a subscription id")
        logger.info(f"Subscribed to changes on {calendar_id}: {subscription_id}")
        return subscription_id

    def unsubscribe_from_changes(self, subscription_id: str) -> bool:
        try:
            self._request("DELETE", f"/subscriptions/{subscription_id}", "unsubscribe")
        except EventNotFoundError:
            pass
        return True

    def renew_subscription(self, subscription_id: str) -> float | None:
        expiry = self._expiry()
        self._request(
            "PATCH",
            f"/subscriptions/{subscription_id}",
            "renew subscription",
            json={"expirationDateTime": format_datetime(expiry)},
        )
        return expiry.timestamp()

    def parse_notifications(self, body) -> list[Notification]:
        """Accept Graph change notifications (``{"value": [...]}``) or the normalized shape."""
        if not (isinstance(body, dict) and isinstance(body.get("value"), list)):
            return super().parse_notifications(body)
        notifications = []
        for item in body["value"]:
            action = _CHANGE_TYPES.get(item.get("changeType", ""))
            resource = item.get("resource", "")
            event_id = (item.get("resourceData") or {}).get("id")
            # resource looks like "Users/{mailbox}/Events/{id}"
            parts = resource.split("/")
            mailbox = parts[1] if len(parts) > 1 else ""
            if not event_id and len(parts) >= 4:
                event_id = parts[3]
            notifications.append(
                normalize_notification(
                    {
                        "action": action,
                        "resource_id": mailbox,
                        "event_id": event_id,
                        "timestamp": None,
                    }
                )
            )
        return notifications
