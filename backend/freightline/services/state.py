"""SQLite-backed state store for loads, bids, documents, geofences and the audit trail."""
from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from freightline.core.config import get_settings
from freightline.core.errors import ConflictError
from freightline.core.logging import logger


def _iso(value: datetime) -> str:
    """Fixed-width UTC text so that string order matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _utc_now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def _column_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return _iso(value)
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Enum):
        return value.value
    return value


# table -> (primary key, indexed columns mirrored out of data_json)
TABLES: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    "users": ("user_id", ("email", "role", "carrier_id", "created_at")),
    "carriers": ("carrier_id", ("dot_number", "is_verified", "created_at")),
    "vehicles": ("vehicle_id", ("carrier_id", "vin", "status", "created_at")),
    "locations": ("location_id", ("created_by", "created_at")),
    "loads": (
        "load_id",
        ("reference_number", "shipper_id", "carrier_id", "driver_id", "status", "version", "created_at", "updated_at"),
    ),
    "bids": ("bid_id", ("load_id", "carrier_id", "status", "expires_at", "created_at")),
    "documents": ("document_id", ("load_id", "user_id", "type", "created_at")),
    "geofences": ("geofence_id", ("load_id", "is_active", "created_at")),
    "geofence_events": ("geofence_event_id", ("geofence_id", "load_id", "event_type", "timestamp", "created_at")),
    "events": ("event_id", ("load_id", "user_id", "event_type", "timestamp")),
    "load_history": ("history_id", ("load_id", "user_id", "action_type", "timestamp")),
    "notifications": ("notification_id", ("user_id", "is_read", "created_at")),
}

_OPERATORS = {"=", "!=", "<", "<=", ">", ">=", "IN"}

Condition = Tuple[str, str, Any]


class FreightStateStore:
    """Durable state manager for the freight domain.

    Rows keep the full pydantic payload in ``data_json`` and mirror the
    columns used for lookups, ordering and uniqueness.
    """

    _lock_registry: dict[str, RLock] = {}
    _lock_registry_guard = Lock()

    def __init__(self, db_path: str | Path | None = None) -> None:
        settings = get_settings()
        path = str(db_path or settings.state_db_path or "").strip() or "./data/freightline.db"

        self._db_path = Path(path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = self._get_shared_lock(str(self._db_path.resolve()))
        self._depth = 0
        self._idempotency_max_entries = max(1, int(settings.idempotency_max_entries))
        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            timeout=30.0,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.execute("PRAGMA busy_timeout = 30000")
        self._initialize_schema()

    @classmethod
    def _get_shared_lock(cls, key: str) -> RLock:
        with cls._lock_registry_guard:
            lock = cls._lock_registry.get(key)
            if lock is None:
                lock = RLock()
                cls._lock_registry[key] = lock
            return lock

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _initialize_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sequences (
                    key_name TEXT PRIMARY KEY,
                    next_value INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    role TEXT NOT NULL,
                    carrier_id TEXT,
                    created_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_users_carrier ON users (carrier_id);

                CREATE TABLE IF NOT EXISTS carriers (
                    carrier_id TEXT PRIMARY KEY,
                    dot_number TEXT NOT NULL UNIQUE,
                    is_verified INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS vehicles (
                    vehicle_id TEXT PRIMARY KEY,
                    carrier_id TEXT NOT NULL,
                    vin TEXT NOT NULL UNIQUE,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_vehicles_carrier ON vehicles (carrier_id);

                CREATE TABLE IF NOT EXISTS locations (
                    location_id TEXT PRIMARY KEY,
                    created_by TEXT,
                    created_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS loads (
                    load_id TEXT PRIMARY KEY,
                    reference_number TEXT NOT NULL UNIQUE,
                    shipper_id TEXT NOT NULL,
                    carrier_id TEXT,
                    driver_id TEXT,
                    status TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_loads_shipper ON loads (shipper_id, created_at DESC);
                CREATE INDEX IF NOT EXISTS idx_loads_carrier ON loads (carrier_id);
                CREATE INDEX IF NOT EXISTS idx_loads_driver ON loads (driver_id);
                CREATE INDEX IF NOT EXISTS idx_loads_status ON loads (status);

                CREATE TABLE IF NOT EXISTS bids (
                    bid_id TEXT PRIMARY KEY,
                    load_id TEXT NOT NULL,
                    carrier_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_bids_load ON bids (load_id, status);
                CREATE UNIQUE INDEX IF NOT EXISTS ux_bids_one_pending
                    ON bids (load_id, carrier_id) WHERE status = 'pending';

                CREATE TABLE IF NOT EXISTS documents (
                    document_id TEXT PRIMARY KEY,
                    load_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_documents_load ON documents (load_id, created_at DESC);

                CREATE TABLE IF NOT EXISTS geofences (
                    geofence_id TEXT PRIMARY KEY,
                    load_id TEXT NOT NULL,
                    is_active INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_geofences_load ON geofences (load_id);

                CREATE TABLE IF NOT EXISTS geofence_events (
                    geofence_event_id TEXT PRIMARY KEY,
                    geofence_id TEXT NOT NULL,
                    load_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_geofence_events_load ON geofence_events (load_id, timestamp DESC);
                CREATE INDEX IF NOT EXISTS idx_geofence_events_fence ON geofence_events (geofence_id, timestamp DESC);

                CREATE TABLE IF NOT EXISTS events (
                    event_id TEXT PRIMARY KEY,
                    load_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_events_load_ts ON events (load_id, timestamp DESC);
                CREATE INDEX IF NOT EXISTS idx_events_type ON events (event_type);

                CREATE TABLE IF NOT EXISTS load_history (
                    history_id TEXT PRIMARY KEY,
                    load_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    action_type TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_load_history_load_ts ON load_history (load_id, timestamp DESC);
                CREATE INDEX IF NOT EXISTS idx_load_history_action ON load_history (load_id, action_type);

                CREATE TABLE IF NOT EXISTS notifications (
                    notification_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    is_read INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications (user_id, created_at DESC);

                CREATE TABLE IF NOT EXISTS idempotency (
                    key_name TEXT PRIMARY KEY,
                    stored_at TEXT NOT NULL,
                    response_json TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_idempotency_time ON idempotency (stored_at);
                """
            )

    # ------------------------------------------------------------------
    # Transactions

    @contextmanager
    def transaction(self) -> Iterator["FreightStateStore"]:
        """Run the enclosed block atomically.

        The outermost call opens ``BEGIN IMMEDIATE``; nested calls use
        savepoints so an inner failure only unwinds its own writes.
        """
        with self._lock:
            depth = self._depth
            savepoint = f"sp_{depth}"
            self._conn.execute("BEGIN IMMEDIATE" if depth == 0 else f"SAVEPOINT {savepoint}")
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if depth == 0:
                    self._conn.execute("ROLLBACK")
                else:
                    self._conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                    self._conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                raise
            else:
                self._depth -= 1
                self._conn.execute("COMMIT" if depth == 0 else f"RELEASE SAVEPOINT {savepoint}")

    # ------------------------------------------------------------------
    # Sequences and idempotency

    def next_sequence(self, key: str) -> int:
        with self.transaction():
            row = self._conn.execute(
                "SELECT next_value FROM sequences WHERE key_name = ?",
                (key,),
            ).fetchone()
            if row is None:
                current = 1
                self._conn.execute(
                    "INSERT INTO sequences (key_name, next_value) VALUES (?, ?)",
                    (key, current + 1),
                )
            else:
                current = int(row["next_value"])
                self._conn.execute(
                    "UPDATE sequences SET next_value = ? WHERE key_name = ?",
                    (current + 1, key),
                )
            return current

    def next_id(self, prefix: str, width: int = 6) -> str:
        return f"{prefix}-{self.next_sequence(prefix.lower()):0{width}d}"

    def get_idempotent(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT response_json FROM idempotency WHERE key_name = ?",
                (key,),
            ).fetchone()
        if not row or row["response_json"] is None:
            return None
        return json.loads(row["response_json"])

    def claim_idempotent(self, key: str, *, stale_after: timedelta = timedelta(minutes=5)) -> Optional[Dict[str, Any]]:
        """Reserve ``key`` for one in-flight request.

        Returns the stored response when the key already completed, None once
        the caller holds the claim. A live claim held by another request
        raises ConflictError; a claim older than ``stale_after`` is taken over.
        """
        now = datetime.now(timezone.utc)
        with self.transaction():
            row = self._conn.execute(
                "SELECT stored_at, response_json FROM idempotency WHERE key_name = ?",
                (key,),
            ).fetchone()
            if row is not None:
                if row["response_json"] is not None:
                    return json.loads(row["response_json"])
                if datetime.fromisoformat(row["stored_at"]) > now - stale_after:
                    raise ConflictError("A request with this Idempotency-Key is still in progress")
                logger.warning("Taking over stale idempotency claim", key=key)
            self._conn.execute(
                """
                INSERT INTO idempotency (key_name, stored_at, response_json)
                VALUES (?, ?, NULL)
                ON CONFLICT(key_name)
                DO UPDATE SET stored_at = excluded.stored_at, response_json = NULL
                """,
                (key, _iso(now)),
            )
        return None

    def release_idempotent(self, key: str) -> None:
        """Drop an unfinished claim so the key can be retried."""
        with self.transaction():
            self._conn.execute(
                "DELETE FROM idempotency WHERE key_name = ? AND response_json IS NULL",
                (key,),
            )

    def set_idempotent(self, key: str, response: Dict[str, Any]) -> None:
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO idempotency (key_name, stored_at, response_json)
                VALUES (?, ?, ?)
                ON CONFLICT(key_name)
                DO UPDATE SET stored_at = excluded.stored_at, response_json = excluded.response_json
                """,
                (key, _utc_now_iso(), _json_dumps(response)),
            )
            self._conn.execute(
                """
                DELETE FROM idempotency
                WHERE response_json IS NOT NULL AND key_name NOT IN (
                    SELECT key_name FROM idempotency
                    ORDER BY stored_at DESC
                    LIMIT ?
                )
                """,
                (self._idempotency_max_entries,),
            )

    # ------------------------------------------------------------------
    # Generic row access

    @staticmethod
    def _table_layout(table: str) -> Tuple[str, Tuple[str, ...]]:
        try:
            return TABLES[table]
        except KeyError:
            raise ValueError(f"Unknown table: {table}") from None

    @classmethod
    def _check_column(cls, table: str, column: str) -> None:
        key, columns = cls._table_layout(table)
        if column != key and column not in columns:
            raise ValueError(f"Column {column!r} is not queryable on {table}")

    @classmethod
    def _row_values(cls, table: str, item: BaseModel) -> Tuple[List[str], List[Any]]:
        key, columns = cls._table_layout(table)
        names = [key, *columns, "data_json"]
        values = [_column_value(getattr(item, name)) for name in (key, *columns)]
        values.append(_json_dumps(item.model_dump(mode="json")))
        return names, values

    def put(self, table: str, item: BaseModel) -> None:
        """Insert or replace a row from a pydantic model."""
        key, _ = self._table_layout(table)
        names, values = self._row_values(table, item)
        assignments = ", ".join(f"{name} = excluded.{name}" for name in names if name != key)
        with self.transaction():
            self._conn.execute(
                f"""
                INSERT INTO {table} ({", ".join(names)})
                VALUES ({", ".join("?" for _ in names)})
                ON CONFLICT({key})
                DO UPDATE SET {assignments}
                """,
                values,
            )

    def put_if(self, table: str, item: BaseModel, conditions: Dict[str, Any]) -> bool:
        """Update an existing row only while every ``column = value`` condition holds.

        Returns False, leaving the row untouched, when the guard no longer matches.
        """
        key, _ = self._table_layout(table)
        for column in conditions:
            self._check_column(table, column)
        names, values = self._row_values(table, item)
        assignments = ", ".join(f"{name} = ?" for name in names if name != key)
        params = [value for name, value in zip(names, values) if name != key]
        clauses = [f"{key} = ?"]
        params.append(getattr(item, key))
        for column, expected in conditions.items():
            clauses.append(f"{column} = ?")
            params.append(_column_value(expected))
        with self.transaction():
            cursor = self._conn.execute(
                f"UPDATE {table} SET {assignments} WHERE {' AND '.join(clauses)}",
                params,
            )
            return cursor.rowcount == 1

    def get(self, table: str, item_id: str) -> Optional[Dict[str, Any]]:
        key, _ = self._table_layout(table)
        with self._lock:
            row = self._conn.execute(
                f"SELECT data_json FROM {table} WHERE {key} = ?",
                (item_id,),
            ).fetchone()
        if not row:
            return None
        return json.loads(row["data_json"])

    def delete(self, table: str, item_id: str) -> bool:
        key, _ = self._table_layout(table)
        with self.transaction():
            cursor = self._conn.execute(f"DELETE FROM {table} WHERE {key} = ?", (item_id,))
            return cursor.rowcount > 0

    def find(
        self,
        table: str,
        *,
        where: Optional[Dict[str, Any]] = None,
        conditions: Sequence[Condition] = (),
        order_by: Optional[str] = None,
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Select rows by equality filters plus ``(column, op, value)`` conditions.

        A ``None`` equality value matches SQL NULL. Ties on ``order_by`` fall
        back to insertion order.
        """
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (where or {}).items():
            self._check_column(table, column)
            if value is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = ?")
                params.append(_column_value(value))
        for column, op, value in conditions:
            self._check_column(table, column)
            op = op.upper()
            if op not in _OPERATORS:
                raise ValueError(f"Unsupported operator: {op}")
            if op == "IN":
                values = [_column_value(item) for item in value]
                if not values:
                    return []
                clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
                params.extend(values)
            else:
                clauses.append(f"{column} {op} ?")
                params.append(_column_value(value))

        sql = f"SELECT data_json FROM {table}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        direction = "DESC" if descending else "ASC"
        if order_by:
            self._check_column(table, order_by)
            sql += f" ORDER BY {order_by} {direction}, rowid {direction}"
        else:
            sql += f" ORDER BY rowid {direction}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [json.loads(row["data_json"]) for row in rows]

    def count(self, table: str, *, where: Optional[Dict[str, Any]] = None) -> int:
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (where or {}).items():
            self._check_column(table, column)
            clauses.append(f"{column} = ?")
            params.append(_column_value(value))
        sql = f"SELECT COUNT(*) AS n FROM {table}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
        return int(row["n"])

    def close(self) -> None:
        with self._lock:
            self._conn.close()
        logger.info("State store closed", db_path=str(self._db_path))

