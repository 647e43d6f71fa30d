"""
Typed field mapping between a booking system's native event JSON and
CanonicalEvent.

A FieldMapping is built and validated once, when configuration is loaded;
reading an event then only follows the configured paths.
"""

from dataclasses import dataclass
from dataclasses import fields

from calendar_bridge.models import ConfigurationError

REQUIRED_FIELDS = ("id", "subject", "start", "end")


@dataclass(frozen=True)
class FieldMapping:
    """Native key for each canonical field. Dotted keys address nested objects."""

    id: str = "id"
    subject: str = "title"
    start: str = "start"
    end: str = "end"
    description: str = "description"
    location: str = "location"
    organizer: str = "organizer"
    attendees: str = "attendees"
    all_day: str = "all_day"
    active: str = "active"
    last_modified: str = "updated_at"
    marker: str = "source"
    origin_bridge: str = "source_bridge"
    origin_event_id: str = "source_event_id"

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if not isinstance(value, str) or not value.strip():
                raise ConfigurationError(f"Field mapping for {f.name!r} must be a non-empty string")
            if any(not part for part in value.split(".")):
                raise ConfigurationError(f"Field mapping for {f.name!r} has an empty path segment: {value!r}")
        native = [getattr(self, name) for name in REQUIRED_FIELDS]
        if len(set(native)) != len(native):
            raise ConfigurationError(f"Required fields must map to distinct native keys: {native}")

    @classmethod
    def from_options(cls, options: dict[str, str]) -> "FieldMapping":
        """Build from ``field.<canonical> = <native>`` configuration keys."""
        known = {f.name for f in fields(cls)}
        overrides = {}
        for key, value in options.items():
            if not key.startswith("field."):
                continue
            name = key[len("field."):]
            if name not in known:
                raise ConfigurationError(f"Unknown canonical field in mapping: {name!r}")
            overrides[name] = value.strip()
        return cls(**overrides)

    def read(self, data: dict, name: str):
        value = data
        for part in getattr(self, name).split("."):
            if not isinstance(value, dict):
                return None
            value = value.get(part)
        return value

    def write(self, data: dict, name: str, value) -> None:
        parts = getattr(self, name).split(".")
        target = data
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        target[parts[-1]] = value
