"""
Administrative CRUD for resource mappings (which calendar on one bridge
pairs with which resource on another).
"""

import logging
import sqlite3

from calendar_bridge.db import BridgeStore
from calendar_bridge.models import DuplicateResourceMappingError
from calendar_bridge.models import ResourceMapping
from calendar_bridge.models import SyncDirection
from calendar_bridge.models import ValidationError

logger = logging.getLogger(__name__)

_UPDATABLE = {"sync_direction", "is_active", "sync_enabled", "calendar_id", "resource_id"}


def _resource_from_row(row: sqlite3.Row) -> ResourceMapping:
    return ResourceMapping(
        id=row["id"],
        bridge_from=row["bridge_from"],
        bridge_to=row["bridge_to"],
        resource_id=row["resource_id"],
        calendar_id=row["calendar_id"],
        sync_direction=SyncDirection(row["sync_direction"]),
        is_active=bool(row["is_active"]),
        sync_enabled=bool(row["sync_enabled"]),
        last_synced_at=row["last_synced_at"],
    )


class ResourceMappingService:
    def __init__(self, store: BridgeStore):
        self.store = store

    def create(
        self,
        bridge_from: str,
        bridge_to: str,
        resource_id: str,
        calendar_id: str,
        sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL,
        sync_enabled: bool = True,
    ) -> ResourceMapping:
        """Insert a mapping; a duplicate of an existing one (active or not) is rejected."""
        if not all((bridge_from, bridge_to, resource_id, calendar_id)):
            raise ValidationError("bridge_from, bridge_to, resource_id and calendar_id are required")
        if bridge_from == bridge_to:
            raise ValidationError("A resource mapping must connect two different bridges")
        now = self.store.now()
        try:
            cursor = self.store.conn.execute(
                "INSERT INTO resource_mappings "
                "(bridge_from, bridge_to, resource_id, calendar_id, sync_direction, "
                " is_active, sync_enabled, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?)",
                (
                    bridge_from,
                    bridge_to,
                    resource_id,
                    calendar_id,
                    SyncDirection(sync_direction).value,
                    int(sync_enabled),
                    now,
                    now,
                ),
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateResourceMappingError(
                f"Resource mapping {bridge_from}:{resource_id} -> {bridge_to}:{calendar_id} "
                f"already exists"
            ) from e
        logger.info(
            "Created resource mapping %s:%s -> %s:%s", bridge_from, resource_id, bridge_to, calendar_id
        )
        return self.get(cursor.lastrowid)

    def get(self, mapping_id: int) -> ResourceMapping | None:
        row = self.store.conn.execute(
            "SELECT * FROM resource_mappings WHERE id = ?", (mapping_id,)
        ).fetchone()
        return _resource_from_row(row) if row else None

    def list_mappings(
        self,
        active_only: bool = True,
        bridge: str | None = None,
        resource_id: str | None = None,
    ) -> list[ResourceMapping]:
        clauses = []
        params: list = []
        if active_only:
            clauses.append("is_active = 1")
        if bridge is not None:
            clauses.append("(bridge_from = ? OR bridge_to = ?)")
            params.extend((bridge, bridge))
        if resource_id is not None:
            clauses.append("(resource_id = ? OR calendar_id = ?)")
            params.extend((resource_id, resource_id))
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        rows = self.store.conn.execute(
            f"SELECT * FROM resource_mappings {where}ORDER BY id", params
        ).fetchall()
        return [_resource_from_row(row) for row in rows]

    def for_sync(self) -> list[ResourceMapping]:
        """Active mappings with sync switched on."""
        return [m for m in self.list_mappings(active_only=True) if m.sync_enabled]

    def update(self, mapping_id: int, **changes) -> ResourceMapping:
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
        if self.get(mapping_id) is None:
            raise ValidationError(f"Resource mapping {mapping_id} does not exist")
        if not changes:
            return self.get(mapping_id)
        values = []
        for name, value in changes.items():
            if name == "sync_direction":
                value = SyncDirection(value).value
            elif name in ("is_active", "sync_enabled"):
                value = int(bool(value))
            values.append(value)
        assignments = ", ".join(f"{name} = ?" for name in changes)
        try:
            self.store.conn.execute(
                f"UPDATE resource_mappings SET {assignments}, updated_at = ? WHERE id = ?",
                (*values, self.store.now(), mapping_id),
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateResourceMappingError(
                f"Update would duplicate another resource mapping: {e}"
            ) from e
        return self.get(mapping_id)

    def deactivate(self, mapping_id: int) -> bool:
        """Soft delete: the row stays, but sync and listings skip it."""
        cursor = self.store.conn.execute(
            "UPDATE resource_mappings SET is_active = 0, updated_at = ? WHERE id = ? AND is_active = 1",
            (self.store.now(), mapping_id),
        )
        return cursor.rowcount == 1

    def mark_synced(self, mapping_id: int):
        self.store.conn.execute(
            "UPDATE resource_mappings SET last_synced_at = ? WHERE id = ?",
            (self.store.now(), mapping_id),
        )

    def counts(self) -> dict[str, int]:
        row = self.store.conn.execute(
            "SELECT COUNT(*) AS total, "
            "SUM(CASE WHEN is_active = 1 THEN 1 ELSE 0 END) AS active, "
            "SUM(CASE WHEN is_active = 1 AND sync_enabled = 1 THEN 1 ELSE 0 END) AS syncing "
            "FROM resource_mappings"
        ).fetchone()
        return {"total": row["total"], "active": row["active"] or 0, "syncing": row["syncing"] or 0}
