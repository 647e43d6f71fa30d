"""
Helpers shared by the sync pass and the reconciler.
"""

import logging
import os
import socket
import uuid
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import TYPE_CHECKING

from calendar_bridge.models import BRIDGE_MARKER
from calendar_bridge.models import CanonicalEvent

if TYPE_CHECKING:
    from calendar_bridge.bridges.base import CalendarBridge

_logger = logging.getLogger(__name__)

_HOST = socket.gethostname()


def new_lease_owner() -> str:
    """Unique owner token for one mapping lease or job lock."""
    return f"{_HOST}:{os.getpid()}:{uuid.uuid4().hex[:12]}"


def default_window(days_back: int, days_ahead: int, now: datetime | None = None) -> tuple[datetime, datetime]:
    """``[midnight days_back ago, midnight days_ahead from today)`` in UTC."""
    now = now or datetime.now(timezone.utc)
    today = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return today - timedelta(days=days_back), today + timedelta(days=days_ahead + 1)


def build_origin_index(
    target: "CalendarBridge", events: list[CanonicalEvent], source_bridge: str
) -> dict[str, str]:
    """Map source event id -> target event id for marked events on the target.

    Used to recover events that were created on the target by a run that
    died before its mapping row was updated.  Only events whose marker names
    ``source_bridge`` are considered.
    """
    index: dict[str, str] = {}
    for event in events:
        if not target.is_bridge_originated(event) or not event.origin_event_id or not event.id:
            continue
        if event.origin_bridge not in (source_bridge, BRIDGE_MARKER):
            continue
        if event.origin_event_id in index:
            _logger.warning(
                "Multiple target events claim origin %s: keeping %s, ignoring %s",
                event.origin_event_id,
                index[event.origin_event_id],
                event.id,
            )
            continue
        index[event.origin_event_id] = event.id
    return index


def elapsed_ms(started: float, finished: float) -> int:
    return int(round((finished - started) * 1000))
