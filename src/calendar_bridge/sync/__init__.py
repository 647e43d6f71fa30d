"""
BridgeOrchestrator: the bridge registry plus the operations that run between bridges.
"""

import logging
from dataclasses import asdict
from dataclasses import replace
from datetime import datetime

import httpx

from calendar_bridge.bridges import build_bridge
from calendar_bridge.bridges.base import CalendarBridge
from calendar_bridge.bridges.base import is_polling_subscription
from calendar_bridge.config import AppConfig
from calendar_bridge.config import EngineConfig
from calendar_bridge.db import BridgeStore
from calendar_bridge.events import parse_datetime
from calendar_bridge.models import CalendarBridgeError
from calendar_bridge.models import ConfigurationError
from calendar_bridge.models import EventNotFoundError
from calendar_bridge.models import QueueItem
from calendar_bridge.models import QueueType
from calendar_bridge.models import ResourceMapping
from calendar_bridge.models import SyncDirection
from calendar_bridge.models import SyncOptions
from calendar_bridge.models import SyncResult
from calendar_bridge.models import UnknownBridgeError
from calendar_bridge.models import ValidationError
from calendar_bridge.queue import WorkQueue
from calendar_bridge.resources import ResourceMappingService
from calendar_bridge.sync.one_way import run_one_way
from calendar_bridge.sync.reconcile import Reconciler
from calendar_bridge.sync.utils import default_window
from calendar_bridge.worker import QueueWorker
from calendar_bridge.worker import WorkerStats

# Which bridge type a calendar on the other side is normally paired with.
_PAIRED_TYPES = {"outlook": "booking_system", "booking_system": "outlook"}

_RENEW_AHEAD_SECONDS = 86400


class BridgeOrchestrator:
    """Registry of configured bridges plus the operations that run between them."""

    def __init__(
        self,
        config: EngineConfig,
        store: BridgeStore,
        work_queue: WorkQueue | None = None,
        bridges: list[CalendarBridge] | None = None,
    ):
        self.config = config
        self.store = store
        self.work_queue = work_queue or WorkQueue(store, max_attempts=config.queue_max_attempts)
        self.resources = ResourceMappingService(store)
        self.logger = logging.getLogger(__name__)
        self._bridges: dict[str, CalendarBridge] = {}
        for bridge in bridges or []:
            self.register_bridge(bridge)
        self.reconciler = Reconciler(self)

    @classmethod
    def from_config(cls, app_config: AppConfig, store: BridgeStore, client: httpx.Client) -> "BridgeOrchestrator":
        """Build every configured bridge around one shared HTTP client."""
        bridges = [
            build_bridge(settings, client, max_attempts=app_config.engine.http_max_attempts)
            for settings in app_config.bridges.values()
        ]
        return cls(app_config.engine, store, bridges=bridges)

    # ------------------------------------------------------------------ #
    # Registry                                                             #
    # ------------------------------------------------------------------ #

    def register_bridge(self, bridge: CalendarBridge):
        if bridge.name in self._bridges:
            raise ConfigurationError(f"Bridge {bridge.name!r} is already registered")
        self._bridges[bridge.name] = bridge
        self.logger.debug(f"Registered bridge {bridge.name} ({bridge.bridge_type})")

    def get_bridge(self, name: str) -> CalendarBridge:
        try:
            return self._bridges[name]
        except KeyError:
            raise UnknownBridgeError(f"No bridge named {name!r} is configured") from None

    def bridge_names(self) -> list[str]:
        return sorted(self._bridges)

    def determine_target_bridge(self, name: str) -> str:
        """The registered bridge a calendar on ``name`` is normally synced to."""
        wanted = _PAIRED_TYPES.get(self.get_bridge(name).bridge_type)
        for candidate in self.bridge_names():
            if candidate != name and self._bridges[candidate].bridge_type == wanted:
                return candidate
        raise UnknownBridgeError(f"No bridge is paired with {name!r}")

    # ------------------------------------------------------------------ #
    # Sync passes                                                          #
    # ------------------------------------------------------------------ #

    def sync_between_bridges(
        self,
        source: str,
        target: str,
        source_calendar_id: str,
        target_calendar_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        options: SyncOptions | None = None,
    ) -> SyncResult:
        """One create/update pass from ``source`` to ``target`` over ``[start, end)``."""
        if source == target:
            raise ValidationError("Source and target bridge must differ")
        source_bridge = self.get_bridge(source)
        target_bridge = self.get_bridge(target)
        default_start, default_end = default_window(self.config.sync_days_back, self.config.sync_days_ahead)
        start = start or default_start
        end = end or default_end
        if start >= end:
            raise ValidationError(f"Empty sync window: {start.isoformat()} >= {end.isoformat()}")
        return run_one_way(
            self.config,
            self.store,
            self.work_queue,
            self.logger,
            source_bridge,
            target_bridge,
            source_calendar_id,
            target_calendar_id,
            start,
            end,
            options or SyncOptions(),
        )

    @staticmethod
    def resource_passes(rm: ResourceMapping) -> list[tuple[str, str, str, str, SyncDirection]]:
        """``(source, target, source_calendar, target_calendar, direction)`` per pass."""
        forward = (rm.bridge_from, rm.bridge_to, rm.resource_id, rm.calendar_id)
        backward = (rm.bridge_to, rm.bridge_from, rm.calendar_id, rm.resource_id)
        if rm.sync_direction == SyncDirection.SOURCE_TO_TARGET:
            return [(*forward, SyncDirection.SOURCE_TO_TARGET)]
        if rm.sync_direction == SyncDirection.TARGET_TO_SOURCE:
            return [(*backward, SyncDirection.SOURCE_TO_TARGET)]
        return [(*forward, SyncDirection.BIDIRECTIONAL), (*backward, SyncDirection.BIDIRECTIONAL)]

    def sync_resource_mapping(
        self,
        rm: ResourceMapping,
        start: datetime | None = None,
        end: datetime | None = None,
        options: SyncOptions | None = None,
        from_bridge: str | None = None,
    ) -> list[SyncResult]:
        """Run the passes a resource mapping implies, optionally only those leaving ``from_bridge``."""
        options = options or SyncOptions()
        results = []
        for source, target, source_cal, target_cal, direction in self.resource_passes(rm):
            if from_bridge is not None and source != from_bridge:
                continue
            results.append(
                self.sync_between_bridges(
                    source,
                    target,
                    source_cal,
                    target_cal,
                    start,
                    end,
                    replace(options, sync_direction=direction),
                )
            )
        if results and not options.dry_run and all(r.success for r in results):
            self.resources.mark_synced(rm.id)
        return results

    def sync_resource_mappings(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        options: SyncOptions | None = None,
    ) -> list[SyncResult]:
        """Sync every active, sync-enabled resource mapping. One failing mapping does not stop the rest."""
        results = []
        mappings = self.resources.for_sync()
        self.logger.info(f"Syncing {len(mappings)} resource mapping(s)")
        for rm in mappings:
            try:
                results.extend(self.sync_resource_mapping(rm, start, end, options))
            except CalendarBridgeError as e:
                self.logger.error(f"Resource mapping {rm.id} ({rm.bridge_from}:{rm.resource_id}) failed: {e}")
                failed = SyncResult(rm.bridge_from, rm.bridge_to)
                failed.errors.append({"event_id": None, "error": str(e)})
                results.append(failed)
        return results

    def sync_resource(self, bridge_name: str, resource_id: str) -> list[SyncResult]:
        """Sync the resource mappings that read from ``resource_id`` on ``bridge_name``."""
        results = []
        for rm in self.resources.list_mappings(active_only=True, bridge=bridge_name, resource_id=resource_id):
            if not rm.sync_enabled:
                continue
            touches = (rm.bridge_from, rm.resource_id) == (bridge_name, resource_id) or (
                rm.bridge_to,
                rm.calendar_id,
            ) == (bridge_name, resource_id)
            if touches:
                results.extend(self.sync_resource_mapping(rm, from_bridge=bridge_name))
        return results

    # ------------------------------------------------------------------ #
    # Queue                                                                #
    # ------------------------------------------------------------------ #

    def _handle_sync_item(self, item: QueueItem):
        payload = item.payload
        try:
            source = payload.get("source_bridge") or item.source_bridge
            target = payload.get("target_bridge") or item.target_bridge
            source_cal = payload["source_calendar_id"]
            target_cal = payload["target_calendar_id"]
        except KeyError as e:
            raise ValidationError(f"Sync item {item.id} is missing {e}") from None
        start = parse_datetime(payload["start"]) if payload.get("start") else None
        end = parse_datetime(payload["end"]) if payload.get("end") else None
        options = SyncOptions(
            handle_deletions=bool(payload.get("handle_deletions", True)),
            skip_updates=bool(payload.get("skip_updates", False)),
            sync_direction=SyncDirection(payload.get("sync_direction", SyncDirection.SOURCE_TO_TARGET.value)),
        )
        result = self.sync_between_bridges(source, target, source_cal, target_cal, start, end, options)
        if not result.success:
            raise CalendarBridgeError(f"{len(result.errors)} event(s) failed to sync")

    def _handle_resource_sync_item(self, item: QueueItem):
        rm = self.resources.get(item.payload.get("resource_mapping_id"))
        if rm is None or not rm.is_active:
            self.logger.info(f"Resource sync item {item.id}: mapping is gone or inactive")
            return
        results = self.sync_resource_mapping(rm, options=SyncOptions(handle_deletions=True))
        if not all(r.success for r in results):
            raise CalendarBridgeError(f"Resource mapping {rm.id} synced with errors")

    def queue_handlers(self) -> dict:
        return {
            QueueType.SYNC: self._handle_sync_item,
            QueueType.RESOURCE_SYNC: self._handle_resource_sync_item,
            QueueType.WEBHOOK: self.reconciler.handle_webhook_item,
            QueueType.DELETION: self.reconciler.handle_deletion,
            QueueType.DELETION_CHECK: self.reconciler.handle_deletion_check,
        }

    def drain_queue(self, queue_types: list[QueueType] | None = None, limit: int | None = None) -> WorkerStats:
        worker = QueueWorker(self.work_queue, self.queue_handlers(), max_workers=self.config.max_workers)
        return worker.drain(queue_types, limit)

    # ------------------------------------------------------------------ #
    # Health and statistics                                                #
    # ------------------------------------------------------------------ #

    def get_all_bridges_info(self) -> dict:
        """Probe every bridge; overall status is healthy, degraded or unhealthy."""
        bridges = {}
        for name in self.bridge_names():
            bridge = self._bridges[name]
            info = {"type": bridge.bridge_type, "capabilities": asdict(bridge.get_capabilities())}
            info.update(bridge.health_check())
            bridges[name] = info
        healthy = sum(1 for info in bridges.values() if info["status"] == "healthy")
        if bridges and healthy == len(bridges):
            status = "healthy"
        elif healthy:
            status = "degraded"
        else:
            status = "unhealthy"
        return {"status": status, "bridges": bridges}

    def get_statistics(self) -> dict:
        return {
            "mappings": self.store.mapping_status_counts(),
            "orphaned_mappings": self.store.orphaned_mapping_count(),
            "cancellations": self.store.cancellation_counts(),
            "queue": self.work_queue.counts(),
            "queue_by_type": self.work_queue.counts_by_type(),
            "resource_mappings": self.resources.counts(),
            "sync_logs": [dict(row) for row in self.store.sync_log_summary()],
            "bridges": self.bridge_names(),
        }

    # ------------------------------------------------------------------ #
    # Subscriptions                                                        #
    # ------------------------------------------------------------------ #

    def subscribe_all(self, webhook_url: str | None = None) -> list[dict]:
        """Subscribe every calendar an active resource mapping reads from."""
        webhook_url = webhook_url or self.config.webhook_url
        if not webhook_url:
            raise ConfigurationError("No webhook_url configured")
        calendars = []
        for rm in self.resources.list_mappings(active_only=True):
            for source, _, source_cal, _, _ in self.resource_passes(rm):
                if (source, source_cal) not in calendars:
                    calendars.append((source, source_cal))

        results = []
        for bridge_name, calendar_id in calendars:
            entry = {"bridge": bridge_name, "calendar_id": calendar_id}
            try:
                bridge = self.get_bridge(bridge_name)
                subscription_id = bridge.subscribe_to_changes(calendar_id, webhook_url)
            except CalendarBridgeError as e:
                self.logger.error(f"Subscribing {bridge_name}/{calendar_id} failed: {e}")
                results.append({**entry, "status": "error", "error": str(e)})
                continue
            polling = is_polling_subscription(subscription_id)
            expires_at = None
            if not polling and bridge.subscription_ttl:
                expires_at = self.store.now() + bridge.subscription_ttl
            self.store.save_subscription(bridge_name, calendar_id, subscription_id, webhook_url, expires_at)
            results.append(
                {
                    **entry,
                    "status": "polling" if polling else "subscribed",
                    "subscription_id": subscription_id,
                }
            )
        return results

    def renew_subscriptions(self) -> int:
        """Renew push subscriptions that expire within a day. Returns how many were renewed."""
        renewed = 0
        for row in self.store.active_subscriptions(expiring_before=self.store.now() + _RENEW_AHEAD_SECONDS):
            subscription_id = row["subscription_id"]
            try:
                expires_at = self.get_bridge(row["bridge_name"]).renew_subscription(subscription_id)
            except EventNotFoundError:
                self.logger.warning(f"Subscription {subscription_id} no longer exists; deactivating")
                self.store.deactivate_subscription(subscription_id)
                continue
            except CalendarBridgeError as e:
                self.logger.error(f"Renewing subscription {subscription_id} failed: {e}")
                continue
            if expires_at is not None:
                self.store.update_subscription_expiry(subscription_id, expires_at)
                renewed += 1
        self.logger.info(f"Renewed {renewed} subscription(s)")
        return renewed
