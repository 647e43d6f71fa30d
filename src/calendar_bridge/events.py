"""
Stateless event-inspection helpers shared by bridges and the sync engine.
"""

import hashlib
import json
from datetime import date
from datetime import datetime
from datetime import timezone

from calendar_bridge.models import CanonicalEvent
from calendar_bridge.models import ValidationError


def to_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value) -> datetime | None:
    """Parse the datetime shapes the backends emit.

    Accepts ISO 8601 strings (with or without offset, with a trailing ``Z``,
    and with Graph's seven-digit fractional seconds), plain dates and
    ``datetime`` objects.  Values without an offset are read as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Graph returns 100ns precision; fromisoformat only takes microseconds.
    if "." in text:
        head, _, tail = text.partition(".")
        digits = ""
        rest = ""
        for i, ch in enumerate(tail):
            if ch.isdigit():
                digits += ch
            else:
                rest = tail[i:]
                break
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise ValidationError(f"Unparseable datetime: {value!r}") from e
    return to_utc(parsed)


def format_datetime(value: datetime) -> str:
    """UTC ISO 8601 with a ``Z`` suffix and whole seconds."""
    return to_utc(value).replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")


def event_in_range(event: CanonicalEvent, start: datetime, end: datetime) -> bool:
    """True when the event starts inside the half-open window ``[start, end)``."""
    return to_utc(start) <= to_utc(event.start) < to_utc(end)


def snapshot_in_range(snapshot: dict | None, start: datetime, end: datetime) -> bool:
    """Window test against a stored event snapshot (see CanonicalEvent.snapshot)."""
    if not snapshot or not snapshot.get("start"):
        return False
    event_start = parse_datetime(snapshot["start"])
    return to_utc(start) <= event_start < to_utc(end)


def validate_event(event: CanonicalEvent) -> None:
    """Raise ValidationError unless the event can be written to a bridge."""
    missing = [
        name
        for name, value in (("subject", event.subject), ("start", event.start), ("end", event.end))
        if not value
    ]
    if missing:
        raise ValidationError(f"Event {event.id!r} is missing required field(s): {', '.join(missing)}")
    if to_utc(event.start) >= to_utc(event.end):
        raise ValidationError(f"Event {event.id!r} starts at or after its end")


def compute_hash(event: CanonicalEvent) -> str:
    """Content hash over the fields a sync propagates.

    Identity, origin markers and ``last_modified`` are excluded; the sync pass
    compares ``last_modified`` against the mapping's last sync separately, and
    the hash catches edits on backends that report no modification time.
    """
    content = event.snapshot()
    for volatile in ("id", "last_modified", "origin_bridge", "origin_event_id"):
        content.pop(volatile, None)
    encoded = json.dumps(content, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()
