"""
Pure data models. No sqlite or HTTP imports.
"""

from dataclasses import asdict
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from enum import Enum
from pathlib import Path

DEFAULT_STATE_DB = Path.home() / ".local/share/calendar-bridge-state.db"
DEFAULT_CONFIG = Path.home() / ".config/calendar-bridge.conf"

# Value written into every bridge-originated event's marker property.
BRIDGE_MARKER = "calendar_bridge"

DEFAULT_PRIORITY = 5
URGENT_PRIORITY = 1


class CalendarBridgeError(Exception):
    """Base exception for calendar bridge errors."""

    pass


class ConfigurationError(CalendarBridgeError):
    """Invalid or incomplete configuration."""


class ValidationError(CalendarBridgeError):
    """Malformed event or payload. Never retried automatically."""


class TransientBridgeError(CalendarBridgeError):
    """Network failure, timeout or retryable HTTP status."""


class EventNotFoundError(CalendarBridgeError):
    """The remote event does not exist."""


class ConflictError(CalendarBridgeError):
    """A duplicate create or a claim lost to another worker."""


class DuplicateResourceMappingError(ConflictError):
    pass


class UnknownBridgeError(CalendarBridgeError):
    pass


class SyncDirection(str, Enum):
    SOURCE_TO_TARGET = "source_to_target"
    TARGET_TO_SOURCE = "target_to_source"
    BIDIRECTIONAL = "bidirectional"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    CANCELLED = "cancelled"
    ERROR = "error"


class QueueType(str, Enum):
    SYNC = "sync"
    WEBHOOK = "webhook"
    DELETION = "deletion"
    DELETION_CHECK = "deletion_check"
    RESOURCE_SYNC = "resource_sync"


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class CanonicalEvent:
    """Backend-neutral calendar event. Always derived from a bridge call."""

    id: str | None
    subject: str
    start: datetime
    end: datetime
    organizer: str | None = None
    attendees: frozenset[str] = frozenset()
    description: str = ""
    location: str = ""
    all_day: bool = False
    active: bool = True
    last_modified: datetime | None = None
    origin_bridge: str | None = None
    origin_event_id: str | None = None
    raw: dict = field(default_factory=dict, compare=False, repr=False)

    def snapshot(self) -> dict:
        """JSON-safe copy of the event's content, stored on its mapping."""
        data = asdict(self)
        data.pop("raw")
        data["attendees"] = sorted(self.attendees)
        for key in ("start", "end", "last_modified"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass(frozen=True)
class BridgeCapabilities:
    supports_webhooks: bool = False
    supports_recurring: bool = False
    max_events_per_request: int = 100
    rate_limit_per_minute: int = 60


# --------------------------------------------------------------------------- #
# Single-event lookup results                                                  #
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class EventFound:
    event: CanonicalEvent


@dataclass(frozen=True)
class EventMissing:
    pass


@dataclass(frozen=True)
class LookupFailed:
    reason: str


LookupResult = EventFound | EventMissing | LookupFailed


@dataclass
class Notification:
    """A change notification normalized from either side's webhook format."""

    action: str  # 'created', 'updated' or 'deleted'
    resource_id: str
    event_id: str
    timestamp: str | None = None
    event: dict | None = None

    def to_payload(self) -> dict:
        return asdict(self)


@dataclass
class SyncOptions:
    dry_run: bool = False
    handle_deletions: bool = False
    skip_updates: bool = False
    sync_direction: SyncDirection = SyncDirection.SOURCE_TO_TARGET


@dataclass
class SyncResult:
    """Outcome of one sync pass between two bridges."""

    source_bridge: str
    target_bridge: str
    source_events_found: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    deletion_checks_queued: int = 0
    errors: list[dict] = field(default_factory=list)
    processed_events: list[dict] = field(default_factory=list)
    dry_run: bool = False
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return not self.errors

    def counts(self) -> dict[str, int]:
        return {
            "source_events_found": self.source_events_found,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "deletion_checks_queued": self.deletion_checks_queued,
            "errors": len(self.errors),
        }


@dataclass
class ReconcileStats:
    """Counts for one reconciliation step."""

    checked: int = 0
    deleted: int = 0
    cancelled: int = 0
    reenabled: int = 0
    queued: int = 0
    skipped: int = 0
    errors: int = 0

    def merge(self, other: "ReconcileStats") -> None:
        for name in self.__dataclass_fields__:
            setattr(self, name, getattr(self, name) + getattr(other, name))


# --------------------------------------------------------------------------- #
# Persisted rows                                                               #
# --------------------------------------------------------------------------- #


@dataclass
class Mapping:
    """One synchronized event pair."""

    id: int
    source_bridge: str
    target_bridge: str
    source_calendar_id: str
    target_calendar_id: str
    source_event_id: str
    target_event_id: str | None
    sync_direction: SyncDirection
    sync_status: SyncStatus
    event_data: dict | None = None
    content_hash: str | None = None
    error_message: str | None = None
    last_synced_at: float | None = None
    cancelled_at: float | None = None
    created_at: float | None = None


@dataclass
class ResourceMapping:
    id: int
    bridge_from: str
    bridge_to: str
    resource_id: str
    calendar_id: str
    sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    is_active: bool = True
    sync_enabled: bool = True
    last_synced_at: float | None = None


@dataclass
class QueueItem:
    id: int
    queue_type: QueueType
    source_bridge: str | None
    target_bridge: str | None
    priority: int
    payload: dict
    status: QueueStatus
    attempts: int
    max_attempts: int
    scheduled_at: float
    processed_at: float | None = None
    error_message: str | None = None
    dedupe_key: str | None = None
