"""
The calendar bridge contract every backend adapter implements.
"""

import logging
import time
import uuid
from abc import ABC
from abc import abstractmethod
from datetime import datetime

from calendar_bridge.events import event_in_range
from calendar_bridge.models import BridgeCapabilities
from calendar_bridge.models import CalendarBridgeError
from calendar_bridge.models import CanonicalEvent
from calendar_bridge.models import LookupResult
from calendar_bridge.models import Notification
from calendar_bridge.models import ValidationError

logger = logging.getLogger(__name__)

NOTIFICATION_ACTIONS = ("created", "updated", "deleted")
POLLING_PREFIX = "polling_"


def polling_subscription_id(calendar_id: str) -> str:
    """Synthetic subscription id for bridges that can only be polled."""
    return f"{POLLING_PREFIX}{calendar_id}_{uuid.uuid4().hex[:13]}"


def is_polling_subscription(subscription_id: str) -> bool:
    return subscription_id.startswith(POLLING_PREFIX)


def normalize_notification(data: dict) -> Notification:
    """Validate one ``{action, resource_id, event_id, event?, timestamp}`` payload."""
    if not isinstance(data, dict):
        raise ValidationError("Notification must be a JSON object")
    action = data.get("action")
    if action not in NOTIFICATION_ACTIONS:
        raise ValidationError(f"Unknown notification action: {action!r}")
    resource_id = data.get("resource_id")
    event_id = data.get("event_id")
    if not resource_id or not event_id:
        raise ValidationError("Notification requires resource_id and event_id")
    event = data.get("event")
    if event is not None and not isinstance(event, dict):
        raise ValidationError("Notification 'event' must be an object")
    return Notification(
        action=action,
        resource_id=str(resource_id),
        event_id=str(event_id),
        timestamp=data.get("timestamp"),
        event=event,
    )


class CalendarBridge(ABC):
    """Adapter between one backend's native events and CanonicalEvent."""

    bridge_type = "generic"
    # Seconds a push subscription lives before it must be renewed; None if it never expires.
    subscription_ttl: float | None = None

    def __init__(self, name: str):
        self.name = name

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.name!r}>"

    # ------------------------------------------------------------------ #
    # Event operations                                                     #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def get_events(self, calendar_id: str, start: datetime, end: datetime) -> list[CanonicalEvent]:
        """Events starting in ``[start, end)``."""

    @abstractmethod
    def get_event(self, calendar_id: str, event_id: str) -> LookupResult:
        """Single-event lookup: EventFound, EventMissing or LookupFailed."""

    @abstractmethod
    def create_event(self, calendar_id: str, event: CanonicalEvent) -> str:
        """Create the event, tagged as bridge-originated, and return its native id."""

    @abstractmethod
    def update_event(self, calendar_id: str, event_id: str, event: CanonicalEvent) -> bool:
        """Raises EventNotFoundError when the event no longer exists."""

    @abstractmethod
    def delete_event(self, calendar_id: str, event_id: str) -> bool:
        """Delete the event. An already-absent event counts as deleted."""

    @abstractmethod
    def get_calendars(self) -> list[dict]:
        """``[{id, name, type}]`` for every calendar or resource the bridge can see."""

    # ------------------------------------------------------------------ #
    # Change subscriptions                                                 #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def subscribe_to_changes(self, calendar_id: str, webhook_url: str) -> str:
        """Register for change notifications and return the subscription id."""

    @abstractmethod
    def unsubscribe_from_changes(self, subscription_id: str) -> bool:
        pass

    def renew_subscription(self, subscription_id: str) -> float | None:
        """Extend a subscription; returns its new expiry (epoch seconds) or None."""
        return None

    def parse_notifications(self, body) -> list[Notification]:
        """Turn a webhook body into normalized notifications.

        The default accepts the normalized shape itself, either one object or
        a list of them.
        """
        items = body if isinstance(body, list) else [body]
        return [normalize_notification(item) for item in items]

    # ------------------------------------------------------------------ #
    # Introspection                                                        #
    # ------------------------------------------------------------------ #

    def get_capabilities(self) -> BridgeCapabilities:
        return BridgeCapabilities()

    def is_bridge_originated(self, event: CanonicalEvent) -> bool:
        """True when the event carries this engine's loop-prevention marker."""
        return event.origin_bridge is not None

    def health_check(self) -> dict:
        """Probe the backend with a lightweight call and time it."""
        started = time.monotonic()
        try:
            calendars = self.get_calendars()
        except CalendarBridgeError as e:
            logger.warning(f"Health check for bridge {self.name} failed: {e}")
            return {
                "status": "unhealthy",
                "error": str(e),
                "response_time_ms": int((time.monotonic() - started) * 1000),
            }
        return {
            "status": "healthy",
            "calendars_count": len(calendars),
            "response_time_ms": int((time.monotonic() - started) * 1000),
        }

    @staticmethod
    def _within(events: list[CanonicalEvent], start: datetime, end: datetime) -> list[CanonicalEvent]:
        """Drop events the backend's own query returned outside ``[start, end)``."""
        return [event for event in events if event_in_range(event, start, end)]
