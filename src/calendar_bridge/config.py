"""
INI configuration: engine settings plus one section per bridge.

    [calendar-bridge]
    state_db = /var/lib/calendar-bridge/state.db
    max_workers = 4

    [bridge:outlook]
    type = outlook
    tenant_id = ...
    client_id = ...
    client_secret = ...

    [bridge:booking_system]
    type = booking_system
    base_url = https://booking.example.org/api
    api_key = ...
    supports_webhooks = no
    field.subject = name
    field.start = start_time
"""

from configparser import ConfigParser
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path

from calendar_bridge.bridges.fields import FieldMapping
from calendar_bridge.models import DEFAULT_STATE_DB
from calendar_bridge.models import ConfigurationError

ENGINE_SECTION = "calendar-bridge"
BRIDGE_PREFIX = "bridge:"

_REQUIRED_KEYS = {
    "outlook": ("tenant_id", "client_id", "client_secret"),
    "booking_system": ("base_url",),
}


@dataclass
class EngineConfig:
    """Engine-wide settings."""

    state_db_path: Path = field(default_factory=lambda: DEFAULT_STATE_DB)
    http_timeout: float = 30.0
    http_max_attempts: int = 3
    queue_max_attempts: int = 3
    stale_processing_seconds: float = 900.0
    mapping_lease_seconds: float = 300.0
    max_workers: int = 4
    sync_days_back: int = 1
    sync_days_ahead: int = 30
    deletion_lookback_days: int = 7
    log_retention_days: int = 30
    webhook_url: str | None = None


@dataclass
class BridgeSettings:
    name: str
    type: str
    options: dict[str, str] = field(default_factory=dict)
    field_mapping: FieldMapping | None = None
    supports_webhooks: bool = False


@dataclass
class AppConfig:
    engine: EngineConfig = field(default_factory=EngineConfig)
    bridges: dict[str, BridgeSettings] = field(default_factory=dict)


def _parse_engine(section) -> EngineConfig:
    defaults = EngineConfig()
    try:
        return EngineConfig(
            state_db_path=Path(section.get("state_db", str(defaults.state_db_path))).expanduser(),
            http_timeout=section.getfloat("http_timeout", defaults.http_timeout),
            http_max_attempts=section.getint("http_max_attempts", defaults.http_max_attempts),
            queue_max_attempts=section.getint("queue_max_attempts", defaults.queue_max_attempts),
            stale_processing_seconds=section.getfloat(
                "stale_processing_seconds", defaults.stale_processing_seconds
            ),
            mapping_lease_seconds=section.getfloat(
                "mapping_lease_seconds", defaults.mapping_lease_seconds
            ),
            max_workers=section.getint("max_workers", defaults.max_workers),
            sync_days_back=section.getint("sync_days_back", defaults.sync_days_back),
            sync_days_ahead=section.getint("sync_days_ahead", defaults.sync_days_ahead),
            deletion_lookback_days=section.getint(
                "deletion_lookback_days", defaults.deletion_lookback_days
            ),
            log_retention_days=section.getint("log_retention_days", defaults.log_retention_days),
            webhook_url=section.get("webhook_url") or None,
        )
    except ValueError as e:
        raise ConfigurationError(f"[{ENGINE_SECTION}]: {e}") from e


def _parse_bridge(name: str, section) -> BridgeSettings:
    options = dict(section)
    bridge_type = options.pop("type", "").strip()
    if bridge_type not in _REQUIRED_KEYS:
        raise ConfigurationError(
            f"[{BRIDGE_PREFIX}{name}]: type must be one of {', '.join(sorted(_REQUIRED_KEYS))}"
        )
    missing = [key for key in _REQUIRED_KEYS[bridge_type] if not options.get(key)]
    if missing:
        raise ConfigurationError(f"[{BRIDGE_PREFIX}{name}]: missing {', '.join(missing)}")
    field_mapping = None
    supports_webhooks = False
    if bridge_type == "booking_system":
        field_mapping = FieldMapping.from_options(options)
        try:
            supports_webhooks = section.getboolean("supports_webhooks", fallback=False)
        except ValueError as e:
            raise ConfigurationError(f"[{BRIDGE_PREFIX}{name}]: supports_webhooks: {e}") from e
        options.pop("supports_webhooks", None)
    elif any(key.startswith("field.") for key in options):
        raise ConfigurationError(f"[{BRIDGE_PREFIX}{name}]: field mappings only apply to booking systems")
    return BridgeSettings(
        name=name,
        type=bridge_type,
        options=options,
        field_mapping=field_mapping,
        supports_webhooks=supports_webhooks,
    )


def parse_config(parser: ConfigParser) -> AppConfig:
    """Build and validate an AppConfig from an already-read parser."""
    engine = _parse_engine(parser[ENGINE_SECTION]) if ENGINE_SECTION in parser else EngineConfig()
    if engine.max_workers < 1:
        raise ConfigurationError("max_workers must be at least 1")
    if engine.queue_max_attempts < 1:
        raise ConfigurationError("queue_max_attempts must be at least 1")
    bridges = {}
    for section_name in parser.sections():
        if not section_name.startswith(BRIDGE_PREFIX):
            continue
        name = section_name[len(BRIDGE_PREFIX):].strip()
        if not name:
            raise ConfigurationError(f"Bridge section [{section_name}] has no name")
        bridges[name] = _parse_bridge(name, parser[section_name])
    return AppConfig(engine=engine, bridges=bridges)


def load_config(config_path: Path) -> AppConfig:
    if not config_path.exists():
        return AppConfig()
    parser = ConfigParser(interpolation=None)
    parser.read(config_path)
    return parse_config(parser)
