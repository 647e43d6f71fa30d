"""
SQLite persistence for mappings, the work queue, sync logs and subscriptions.

The database is the only synchronization primitive between concurrent
workers.  Every thread gets its own connection; writes that must be atomic
run inside ``BEGIN IMMEDIATE`` transactions, and per-mapping exclusivity is
a lease taken with a conditional single-row UPDATE so that no transaction is
ever held open across a remote call.
"""

import json
import logging
import sqlite3
import threading
import time
from collections.abc import Callable
from collections.abc import Iterable
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from calendar_bridge.models import ConflictError
from calendar_bridge.models import Mapping
from calendar_bridge.models import SyncDirection
from calendar_bridge.models import SyncStatus

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS bridge_mappings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_bridge TEXT NOT NULL,
    target_bridge TEXT NOT NULL,
    source_calendar_id TEXT NOT NULL,
    target_calendar_id TEXT NOT NULL,
    source_event_id TEXT NOT NULL,
    target_event_id TEXT,
    sync_direction TEXT NOT NULL DEFAULT 'source_to_target'
        CHECK (sync_direction IN ('source_to_target', 'target_to_source', 'bidirectional')),
    sync_status TEXT NOT NULL DEFAULT 'pending'
        CHECK (sync_status IN ('pending', 'synced', 'cancelled', 'error')),
    event_data TEXT,
    content_hash TEXT,
    error_message TEXT,
    lease_owner TEXT,
    lease_expires_at REAL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    last_synced_at REAL,
    cancelled_at REAL
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_mappings_source
    ON bridge_mappings (source_bridge, source_calendar_id, source_event_id)
    WHERE sync_status != 'cancelled';

CREATE UNIQUE INDEX IF NOT EXISTS uq_mappings_target
    ON bridge_mappings (target_bridge, target_calendar_id, target_event_id)
    WHERE sync_status != 'cancelled' AND target_event_id IS NOT NULL;

CREATE INDEX IF NOT EXISTS ix_mappings_status ON bridge_mappings (sync_status);

CREATE TABLE IF NOT EXISTS resource_mappings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bridge_from TEXT NOT NULL,
    bridge_to TEXT NOT NULL,
    resource_id TEXT NOT NULL,
    calendar_id TEXT NOT NULL,
    sync_direction TEXT NOT NULL DEFAULT 'bidirectional'
        CHECK (sync_direction IN ('source_to_target', 'target_to_source', 'bidirectional')),
    is_active INTEGER NOT NULL DEFAULT 1,
    sync_enabled INTEGER NOT NULL DEFAULT 1,
    last_synced_at REAL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    UNIQUE (bridge_from, bridge_to, resource_id, calendar_id)
);

CREATE TABLE IF NOT EXISTS bridge_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    queue_type TEXT NOT NULL
        CHECK (queue_type IN ('sync', 'webhook', 'deletion', 'deletion_check', 'resource_sync')),
    source_bridge TEXT,
    target_bridge TEXT,
    priority INTEGER NOT NULL DEFAULT 5,
    payload TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    dedupe_key TEXT,
    scheduled_at REAL NOT NULL,
    claimed_at REAL,
    claimed_by TEXT,
    processed_at REAL,
    error_message TEXT,
    created_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS ix_queue_dequeue ON bridge_queue (status, priority, scheduled_at);

CREATE UNIQUE INDEX IF NOT EXISTS uq_queue_dedupe
    ON bridge_queue (dedupe_key)
    WHERE dedupe_key IS NOT NULL AND status != 'completed';

CREATE TABLE IF NOT EXISTS sync_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_bridge TEXT NOT NULL,
    target_bridge TEXT NOT NULL,
    operation TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('success', 'partial', 'error')),
    duration_ms INTEGER NOT NULL DEFAULT 0,
    event_count INTEGER NOT NULL DEFAULT 0,
    details TEXT,
    error_message TEXT,
    created_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS ix_sync_logs_created ON sync_logs (created_at);

CREATE TABLE IF NOT EXISTS subscriptions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bridge_name TEXT NOT NULL,
    calendar_id TEXT NOT NULL,
    subscription_id TEXT NOT NULL UNIQUE,
    webhook_url TEXT,
    expires_at REAL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS job_locks (
    name TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    expires_at REAL NOT NULL
);
"""

_ACTIVE_STATUSES = (SyncStatus.PENDING.value, SyncStatus.SYNCED.value)


def _mapping_from_row(row: sqlite3.Row) -> Mapping:
    return Mapping(
        id=row["id"],
        source_bridge=row["source_bridge"],
        target_bridge=row["target_bridge"],
        source_calendar_id=row["source_calendar_id"],
        target_calendar_id=row["target_calendar_id"],
        source_event_id=row["source_event_id"],
        target_event_id=row["target_event_id"],
        sync_direction=SyncDirection(row["sync_direction"]),
        sync_status=SyncStatus(row["sync_status"]),
        event_data=json.loads(row["event_data"]) if row["event_data"] else None,
        content_hash=row["content_hash"],
        error_message=row["error_message"],
        last_synced_at=row["last_synced_at"],
        cancelled_at=row["cancelled_at"],
        created_at=row["created_at"],
    )


class BridgeStore:
    """Manages the SQLite state database shared by sync passes and workers."""

    def __init__(self, db_path: Path, clock: Callable[[], float] = time.time, timeout: float = 30.0):
        self.db_path = Path(db_path)
        self.clock = clock
        self.timeout = timeout
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._lock = threading.Lock()

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Open this thread's connection and create the schema if needed."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn.executescript(_SCHEMA)

    @property
    def conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            # Autocommit mode: transactions are opened explicitly below.
            conn = sqlite3.connect(
                str(self.db_path), timeout=self.timeout, isolation_level=None, check_same_thread=False
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(f"PRAGMA busy_timeout={int(self.timeout * 1000)}")
            self._local.conn = conn
            with self._lock:
                self._connections.append(conn)
        return conn

    def now(self) -> float:
        return self.clock()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside ``BEGIN IMMEDIATE``, taking the write lock up front."""
        conn = self.conn
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    def close(self):
        """Close every connection opened through this store."""
        with self._lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            conn.close()
        self._local = threading.local()

    # ------------------------------------------------------------------ #
    # Mapping lookups                                                      #
    # ------------------------------------------------------------------ #

    def get_mapping(self, mapping_id: int) -> Mapping | None:
        row = self.conn.execute(
            "SELECT * FROM bridge_mappings WHERE id = ?", (mapping_id,)
        ).fetchone()
        return _mapping_from_row(row) if row else None

    def find_mapping_by_source(
        self, source_bridge: str, source_calendar_id: str, source_event_id: str
    ) -> Mapping | None:
        """Live mapping for a source event, falling back to the newest cancelled one."""
        row = self.conn.execute(
            "SELECT * FROM bridge_mappings "
            "WHERE source_bridge = ? AND source_calendar_id = ? AND source_event_id = ? "
            "ORDER BY (sync_status = 'cancelled'), id DESC LIMIT 1",
            (source_bridge, source_calendar_id, source_event_id),
        ).fetchone()
        return _mapping_from_row(row) if row else None

    def find_mapping_by_target(
        self, target_bridge: str, target_calendar_id: str, target_event_id: str
    ) -> Mapping | None:
        row = self.conn.execute(
            "SELECT * FROM bridge_mappings "
            "WHERE target_bridge = ? AND target_calendar_id = ? AND target_event_id = ? "
            "AND sync_status != 'cancelled' ORDER BY id DESC LIMIT 1",
            (target_bridge, target_calendar_id, target_event_id),
        ).fetchone()
        return _mapping_from_row(row) if row else None

    def find_live_mappings_for_event(
        self, bridge: str, calendar_id: str, event_id: str
    ) -> list[tuple[Mapping, str]]:
        """Non-cancelled mappings touching an event on either side.

        Returns ``(mapping, side)`` pairs where side is ``'source'`` or
        ``'target'`` depending on which end of the mapping the event is.
        """
        found = []
        for side in ("source", "target"):
            rows = self.conn.execute(
                f"SELECT * FROM bridge_mappings "
                f"WHERE {side}_bridge = ? AND {side}_calendar_id = ? AND {side}_event_id = ? "
                f"AND sync_status != 'cancelled'",
                (bridge, calendar_id, event_id),
            ).fetchall()
            found.extend((_mapping_from_row(row), side) for row in rows)
        return found

    def list_mappings(
        self,
        statuses: Iterable[SyncStatus] | None = None,
        source_bridges: Iterable[str] | None = None,
        synced_since: float | None = None,
    ) -> list[Mapping]:
        clauses = []
        params: list = []
        if statuses is not None:
            values = [SyncStatus(s).value for s in statuses]
            clauses.append(f"sync_status IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        if source_bridges is not None:
            names = list(source_bridges)
            if not names:
                return []
            clauses.append(f"source_bridge IN ({', '.join('?' for _ in names)})")
            params.extend(names)
        if synced_since is not None:
            clauses.append("last_synced_at >= ?")
            params.append(synced_since)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        rows = self.conn.execute(f"SELECT * FROM bridge_mappings {where}ORDER BY id", params)
        return [_mapping_from_row(row) for row in rows.fetchall()]

    def mappings_for_pair(
        self,
        source_bridge: str,
        source_calendar_id: str,
        target_bridge: str,
        target_calendar_id: str,
    ) -> list[Mapping]:
        """Live (pending or synced) mappings between two calendars."""
        rows = self.conn.execute(
            "SELECT * FROM bridge_mappings "
            "WHERE source_bridge = ? AND source_calendar_id = ? "
            "AND target_bridge = ? AND target_calendar_id = ? "
            "AND sync_status IN (?, ?) ORDER BY id",
            (source_bridge, source_calendar_id, target_bridge, target_calendar_id, *_ACTIVE_STATUSES),
        )
        return [_mapping_from_row(row) for row in rows.fetchall()]

    # ------------------------------------------------------------------ #
    # Mapping writes                                                       #
    # ------------------------------------------------------------------ #

    def claim_new_mapping(
        self,
        source_bridge: str,
        target_bridge: str,
        source_calendar_id: str,
        target_calendar_id: str,
        source_event_id: str,
        sync_direction: SyncDirection,
        lease_owner: str,
        lease_seconds: float,
        event_data: dict | None = None,
    ) -> Mapping | None:
        """Insert a ``pending`` mapping holding its own lease.

        Returns None when a live mapping for the source event already exists;
        the unique index decides which of two concurrent callers wins.
        """
        now = self.now()
        try:
            with self.transaction() as conn:
                cursor = conn.execute(
                    "INSERT INTO bridge_mappings "
                    "(source_bridge, target_bridge, source_calendar_id, target_calendar_id, "
                    " source_event_id, sync_direction, sync_status, event_data, "
                    " lease_owner, lease_expires_at, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?, ?, ?)",
                    (
                        source_bridge,
                        target_bridge,
                        source_calendar_id,
                        target_calendar_id,
                        source_event_id,
                        SyncDirection(sync_direction).value,
                        json.dumps(event_data) if event_data is not None else None,
                        lease_owner,
                        now + lease_seconds,
                        now,
                        now,
                    ),
                )
                mapping_id = cursor.lastrowid
        except sqlite3.IntegrityError:
            logger.debug(
                f"Mapping for {source_bridge}/{source_calendar_id}/{source_event_id} already exists"
            )
            return None
        return self.get_mapping(mapping_id)

    def acquire_mapping_lease(
        self,
        mapping_id: int,
        lease_owner: str,
        lease_seconds: float,
        statuses: Iterable[SyncStatus] | None = None,
        require_no_target: bool = False,
    ) -> bool:
        """Take the mapping's lease if it is free (or expired) and the row still qualifies."""
        now = self.now()
        sql = (
            "UPDATE bridge_mappings SET lease_owner = ?, lease_expires_at = ? "
            "WHERE id = ? AND (lease_owner IS NULL OR lease_expires_at < ?)"
        )
        params: list = [lease_owner, now + lease_seconds, mapping_id, now]
        if statuses is not None:
            values = [SyncStatus(s).value for s in statuses]
            sql += f" AND sync_status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        if require_no_target:
            sql += " AND target_event_id IS NULL"
        cursor = self.conn.execute(sql, params)
        return cursor.rowcount == 1

    def release_mapping_lease(self, mapping_id: int, lease_owner: str):
        self.conn.execute(
            "UPDATE bridge_mappings SET lease_owner = NULL, lease_expires_at = NULL "
            "WHERE id = ? AND lease_owner = ?",
            (mapping_id, lease_owner),
        )

    def _update_leased(self, mapping_id: int, lease_owner: str, assignments: str, params: tuple):
        """Apply an UPDATE to a mapping the caller holds, releasing the lease."""
        cursor = self.conn.execute(
            f"UPDATE bridge_mappings SET {assignments}, updated_at = ?, "
            f"lease_owner = NULL, lease_expires_at = NULL "
            f"WHERE id = ? AND lease_owner = ?",
            (*params, self.now(), mapping_id, lease_owner),
        )
        if cursor.rowcount != 1:
            logger.warning(f"Lease on mapping {mapping_id} was lost before the row could be updated")
        return cursor.rowcount == 1

    def mark_mapping_synced(
        self,
        mapping_id: int,
        lease_owner: str,
        target_event_id: str,
        content_hash: str,
        event_data: dict,
    ) -> bool:
        now = self.now()
        return self._update_leased(
            mapping_id,
            lease_owner,
            "target_event_id = ?, content_hash = ?, event_data = ?, sync_status = 'synced', "
            "error_message = NULL, last_synced_at = ?",
            (target_event_id, content_hash, json.dumps(event_data), now),
        )

    def record_mapping_failure(self, mapping_id: int, lease_owner: str, message: str) -> bool:
        """Keep the mapping's status but remember why the last attempt failed."""
        return self._update_leased(mapping_id, lease_owner, "error_message = ?", (message,))

    def mark_mapping_error(self, mapping_id: int, lease_owner: str, message: str) -> bool:
        return self._update_leased(
            mapping_id, lease_owner, "sync_status = 'error', error_message = ?", (message,)
        )

    def mark_mapping_cancelled(self, mapping_id: int, lease_owner: str, reason: str) -> bool:
        return self._update_leased(
            mapping_id,
            lease_owner,
            "sync_status = 'cancelled', cancelled_at = ?, error_message = ?",
            (self.now(), reason),
        )

    def reset_mapping_for_resync(self, mapping_id: int, lease_owner: str) -> bool:
        """Back to ``pending`` with no remote event, so the next pass creates one.

        Raises ConflictError when another live mapping already covers the
        same source event.
        """
        try:
            return self._update_leased(
                mapping_id,
                lease_owner,
                "sync_status = 'pending', target_event_id = NULL, content_hash = NULL, "
                "cancelled_at = NULL, error_message = NULL",
                (),
            )
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Mapping {mapping_id} cannot be re-enabled: {e}") from e

    def delete_mapping(self, mapping_id: int, lease_owner: str) -> bool:
        cursor = self.conn.execute(
            "DELETE FROM bridge_mappings WHERE id = ? AND lease_owner = ?",
            (mapping_id, lease_owner),
        )
        return cursor.rowcount == 1

    def retry_error_mappings(self) -> int:
        """Reset every ``error`` mapping to ``pending``; returns the number reset.

        The content hash is cleared so the next pass rewrites a copy that
        already exists instead of treating it as unchanged.
        """
        cursor = self.conn.execute(
            "UPDATE bridge_mappings SET sync_status = 'pending', content_hash = NULL, updated_at = ? "
            "WHERE sync_status = 'error' AND (lease_owner IS NULL OR lease_expires_at < ?)",
            (self.now(), self.now()),
        )
        return cursor.rowcount

    # ------------------------------------------------------------------ #
    # Sync log                                                             #
    # ------------------------------------------------------------------ #

    def log_sync(
        self,
        source_bridge: str,
        target_bridge: str,
        operation: str,
        status: str,
        duration_ms: int = 0,
        event_count: int = 0,
        details: dict | None = None,
        error_message: str | None = None,
    ) -> int:
        cursor = self.conn.execute(
            "INSERT INTO sync_logs "
            "(source_bridge, target_bridge, operation, status, duration_ms, event_count, "
            " details, error_message, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                source_bridge,
                target_bridge,
                operation,
                status,
                duration_ms,
                event_count,
                json.dumps(details or {}, default=str),
                error_message,
                self.now(),
            ),
        )
        return cursor.lastrowid

    def recent_sync_logs(self, limit: int = 20) -> list[dict]:
        rows = self.conn.execute(
            "SELECT * FROM sync_logs ORDER BY id DESC LIMIT ?", (limit,)
        ).fetchall()
        return [{**dict(row), "details": json.loads(row["details"] or "{}")} for row in rows]

    def cleanup_old_logs(self, retention_days: int) -> int:
        cutoff = self.now() - retention_days * 86400
        cursor = self.conn.execute("DELETE FROM sync_logs WHERE created_at < ?", (cutoff,))
        logger.info("Removed %d sync log row(s) older than %d days", cursor.rowcount, retention_days)
        return cursor.rowcount

    # ------------------------------------------------------------------ #
    # Subscriptions                                                        #
    # ------------------------------------------------------------------ #

    def save_subscription(
        self,
        bridge_name: str,
        calendar_id: str,
        subscription_id: str,
        webhook_url: str | None,
        expires_at: float | None,
    ):
        now = self.now()
        self.conn.execute(
            "INSERT INTO subscriptions "
            "(bridge_name, calendar_id, subscription_id, webhook_url, expires_at, "
            " is_active, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, 1, ?, ?) "
            "ON CONFLICT(subscription_id) DO UPDATE SET "
            "expires_at = excluded.expires_at, is_active = 1, updated_at = excluded.updated_at",
            (bridge_name, calendar_id, subscription_id, webhook_url, expires_at, now, now),
        )

    def active_subscriptions(self, expiring_before: float | None = None) -> list[sqlite3.Row]:
        if expiring_before is None:
            cursor = self.conn.execute(
                "SELECT * FROM subscriptions WHERE is_active = 1 ORDER BY id"
            )
        else:
            cursor = self.conn.execute(
                "SELECT * FROM subscriptions WHERE is_active = 1 "
                "AND expires_at IS NOT NULL AND expires_at < ? ORDER BY id",
                (expiring_before,),
            )
        return cursor.fetchall()

    def update_subscription_expiry(self, subscription_id: str, expires_at: float | None):
        self.conn.execute(
            "UPDATE subscriptions SET expires_at = ?, updated_at = ? WHERE subscription_id = ?",
            (expires_at, self.now(), subscription_id),
        )

    def deactivate_subscription(self, subscription_id: str):
        self.conn.execute(
            "UPDATE subscriptions SET is_active = 0, updated_at = ? WHERE subscription_id = ?",
            (self.now(), subscription_id),
        )

    # ------------------------------------------------------------------ #
    # Named job locks                                                      #
    # ------------------------------------------------------------------ #

    def acquire_job_lock(self, name: str, owner: str, ttl_seconds: float) -> bool:
        """Take a named lock unless a live holder exists. Expired locks are stolen."""
        now = self.now()
        with self.transaction() as conn:
            row = conn.execute("SELECT owner, expires_at FROM job_locks WHERE name = ?", (name,)).fetchone()
            if row is not None and row["expires_at"] >= now and row["owner"] != owner:
                return False
            conn.execute(
                "INSERT INTO job_locks (name, owner, expires_at) VALUES (?, ?, ?) "
                "ON CONFLICT(name) DO UPDATE SET owner = excluded.owner, "
                "expires_at = excluded.expires_at",
                (name, owner, now + ttl_seconds),
            )
        return True

    def release_job_lock(self, name: str, owner: str):
        self.conn.execute("DELETE FROM job_locks WHERE name = ? AND owner = ?", (name, owner))

    # ------------------------------------------------------------------ #
    # Statistics                                                           #
    # ------------------------------------------------------------------ #

    def mapping_status_counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in SyncStatus}
        for row in self.conn.execute(
            "SELECT sync_status, COUNT(*) AS n FROM bridge_mappings GROUP BY sync_status"
        ):
            counts[row["sync_status"]] = row["n"]
        return counts

    def orphaned_mapping_count(self, older_than_seconds: float = 86400) -> int:
        """Mappings in ``error``, or ``pending`` without a remote event for too long."""
        cutoff = self.now() - older_than_seconds
        return self.conn.execute(
            "SELECT COUNT(*) FROM bridge_mappings WHERE sync_status = 'error' "
            "OR (sync_status = 'pending' AND target_event_id IS NULL AND updated_at < ?)",
            (cutoff,),
        ).fetchone()[0]

    def cancellation_counts(self) -> dict[str, int]:
        since = self.now() - 86400
        row = self.conn.execute(
            "SELECT COUNT(*) AS total, "
            "SUM(CASE WHEN cancelled_at >= ? THEN 1 ELSE 0 END) AS recent "
            "FROM bridge_mappings WHERE sync_status = 'cancelled'",
            (since,),
        ).fetchone()
        return {"cancelled_total": row["total"], "cancelled_last_24h": row["recent"] or 0}

    def sync_log_summary(self) -> list[sqlite3.Row]:
        """Aggregate sync runs per bridge pair and operation."""
        return self.conn.execute("""
            SELECT
                source_bridge,
                target_bridge,
                operation,
                COUNT(*)                                          AS runs,
                SUM(CASE WHEN status = 'success' THEN 1 ELSE 0 END) AS successes,
                SUM(CASE WHEN status = 'error' THEN 1 ELSE 0 END)   AS failures,
                CAST(AVG(duration_ms) AS INTEGER)                   AS avg_duration_ms,
                SUM(event_count)                                    AS events,
                MAX(created_at)                                     AS last_run_at
            FROM sync_logs
            GROUP BY source_bridge, target_bridge, operation
            ORDER BY source_bridge, target_bridge, operation
        """).fetchall()
