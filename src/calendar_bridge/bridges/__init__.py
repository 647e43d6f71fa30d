"""
Calendar bridges and the factory that builds them from configuration.
"""

from typing import TYPE_CHECKING

import httpx

from calendar_bridge.bridges.base import CalendarBridge
from calendar_bridge.bridges.booking import GenericBookingBridge
from calendar_bridge.bridges.outlook import GRAPH_URL
from calendar_bridge.bridges.outlook import OutlookGraphBridge
from calendar_bridge.models import ConfigurationError

if TYPE_CHECKING:
    from calendar_bridge.config import BridgeSettings

__all__ = ["CalendarBridge", "GenericBookingBridge", "OutlookGraphBridge", "build_bridge"]


def build_bridge(settings: "BridgeSettings", client: httpx.Client, max_attempts: int = 3) -> CalendarBridge:
    """Construct a bridge, injecting the shared HTTP client."""
    opts = settings.options
    if settings.type == "outlook":
        return OutlookGraphBridge(
            settings.name,
            client,
            tenant_id=opts["tenant_id"],
            client_id=opts["client_id"],
            client_secret=opts["client_secret"],
            graph_url=opts.get("graph_url", GRAPH_URL),
            token_url=opts.get("token_url"),
            group_id=opts.get("group_id") or None,
            max_attempts=max_attempts,
        )
    if settings.type == "booking_system":
        return GenericBookingBridge(
            settings.name,
            client,
            base_url=opts["base_url"],
            api_key=opts.get("api_key") or None,
            field_mapping=settings.field_mapping,
            max_attempts=max_attempts,
            supports_webhooks=settings.supports_webhooks,
        )
    raise ConfigurationError(f"Unknown bridge type {settings.type!r} for bridge {settings.name!r}")
