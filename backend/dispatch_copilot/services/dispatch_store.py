"""SQLite-backed dispatch store with organization-scoped reads and writes."""
from __future__ import annotations

import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Dict, Iterator, List, Optional, Sequence

from dispatch_copilot.core.config import get_settings
from dispatch_copilot.core.logging import logger
from dispatch_copilot.models.dispatch import DriverStatus, LoadStatus


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _like(fragment: str) -> str:
    escaped = fragment.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class DispatchStoreError(Exception):
    """Raised when the backing store rejects a read or write."""


class DriverAlreadyAssignedError(DispatchStoreError):
    """Raised when an assignment targets a driver who is already ASSIGNED."""

    def __init__(self, driver_id: str) -> None:
        super().__init__(f"Driver {driver_id} is already assigned")
        self.driver_id = driver_id


LOAD_COLUMNS = (
    "id",
    "org_id",
    "reference",
    "load_number",
    "origin",
    "destination",
    "rate",
    "pickup_date",
    "delivery_date",
    "shipper",
    "equipment_type",
    "customer_reference",
    "weight",
    "commodity",
    "miles",
    "status",
    "problem_flag",
    "created_by",
    "created_at",
    "updated_at",
    "status_changed_at",
)

LOAD_MUTABLE_COLUMNS = frozenset(
    {
        "origin",
        "destination",
        "rate",
        "pickup_date",
        "delivery_date",
        "shipper",
        "equipment_type",
        "customer_reference",
        "weight",
        "commodity",
        "miles",
        "status",
        "problem_flag",
    }
)

DRIVER_COLUMNS = (
    "id",
    "org_id",
    "full_name",
    "phone",
    "cdl_class",
    "status",
    "med_exp",
    "cdl_exp",
    "notes",
    "created_at",
    "updated_at",
)

# Telemetry tables are written by the provider sync jobs; key columns first.
VEHICLE_TABLES: Dict[str, Sequence[str]] = {
    "motive_vehicle_locations_current": (
        "org_id",
        "motive_vehicle_id",
        "vehicle_number",
        "name",
        "vin",
        "license_plate",
        "make",
        "model",
        "year",
        "availability_status",
        "status",
        "latitude",
        "longitude",
        "heading_degrees",
        "speed_mph",
        "odometer_miles",
        "ignition_on",
        "located_at",
        "last_synced_at",
    ),
    "samsara_vehicles": (
        "org_id",
        "samsara_vehicle_id",
        "name",
        "license_plate",
        "license_plate_state",
        "vin",
        "make",
        "model",
        "model_year",
        "status",
        "is_active",
    ),
    "samsara_vehicle_locations_current": (
        "org_id",
        "samsara_vehicle_id",
        "latitude",
        "longitude",
        "heading_degrees",
        "speed_mph",
        "odometer_miles",
        "ignition_on",
        "located_at",
        "last_synced_at",
    ),
    "simulated_vehicles": (
        "org_id",
        "id",
        "name",
        "code",
        "make",
        "model",
        "year",
        "is_active",
    ),
    "simulated_vehicle_locations_current": (
        "org_id",
        "simulated_vehicle_id",
        "latitude",
        "longitude",
        "heading_degrees",
        "speed_mph",
        "odometer_miles",
        "ignition_on",
        "located_at",
        "last_synced_at",
    ),
}


class DispatchStore:
    """Durable store for loads, drivers, assignments, and vehicle positions."""

    _lock_registry: dict[str, RLock] = {}
    _lock_registry_guard = Lock()

    def __init__(self, db_path: Optional[str] = None) -> None:
        settings = get_settings()
        self._db_path = Path((db_path or settings.dispatch_db_path).strip())
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = self._get_shared_lock(str(self._db_path.resolve()))
        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            timeout=30.0,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.execute("PRAGMA busy_timeout = 30000")
        self._telemetry_timeout = max(0.1, float(settings.fleet_provider_timeout_seconds))
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

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _initialize_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS user_orgs (
                    user_id TEXT NOT NULL,
                    org_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, org_id)
                );

                CREATE TABLE IF NOT EXISTS loads (
                    id TEXT PRIMARY KEY,
                    org_id TEXT NOT NULL,
                    reference TEXT NOT NULL,
                    load_number TEXT,
                    origin TEXT,
                    destination TEXT,
                    rate REAL,
                    pickup_date TEXT,
                    delivery_date TEXT,
                    shipper TEXT,
                    equipment_type TEXT,
                    customer_reference TEXT,
                    weight REAL,
                    commodity TEXT,
                    miles REAL,
                    status TEXT NOT NULL,
                    problem_flag INTEGER NOT NULL DEFAULT 0,
                    created_by TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    status_changed_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_loads_org_created ON loads (org_id, created_at DESC);
                CREATE INDEX IF NOT EXISTS idx_loads_org_status ON loads (org_id, status);

                CREATE TABLE IF NOT EXISTS drivers (
                    id TEXT PRIMARY KEY,
                    org_id TEXT NOT NULL,
                    full_name TEXT NOT NULL,
                    phone TEXT,
                    cdl_class TEXT,
                    status TEXT NOT NULL,
                    med_exp TEXT,
                    cdl_exp TEXT,
                    notes TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_drivers_org_created ON drivers (org_id, created_at DESC);

                CREATE TABLE IF NOT EXISTS load_driver_assignments (
                    id TEXT PRIMARY KEY,
                    org_id TEXT NOT NULL,
                    load_id TEXT NOT NULL REFERENCES loads (id),
                    driver_id TEXT NOT NULL REFERENCES drivers (id),
                    assigned_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_assignments_org_load ON load_driver_assignments (org_id, load_id);

                CREATE TABLE IF NOT EXISTS motive_vehicle_locations_current (
                    org_id TEXT NOT NULL,
                    motive_vehicle_id TEXT NOT NULL,
                    vehicle_number TEXT,
                    name TEXT,
                    vin TEXT,
                    license_plate TEXT,
                    make TEXT,
                    model TEXT,
                    year INTEGER,
                    availability_status TEXT,
                    status TEXT,
                    latitude REAL,
                    longitude REAL,
                    heading_degrees REAL,
                    speed_mph REAL,
                    odometer_miles REAL,
                    ignition_on INTEGER,
                    located_at TEXT,
                    last_synced_at TEXT,
                    PRIMARY KEY (org_id, motive_vehicle_id)
                );

                CREATE TABLE IF NOT EXISTS samsara_vehicles (
                    org_id TEXT NOT NULL,
                    samsara_vehicle_id TEXT NOT NULL,
                    name TEXT,
                    license_plate TEXT,
                    license_plate_state TEXT,
                    vin TEXT,
                    make TEXT,
                    model TEXT,
                    model_year INTEGER,
                    status TEXT,
                    is_active INTEGER,
                    PRIMARY KEY (org_id, samsara_vehicle_id)
                );

                CREATE TABLE IF NOT EXISTS samsara_vehicle_locations_current (
                    org_id TEXT NOT NULL,
                    samsara_vehicle_id TEXT NOT NULL,
                    latitude REAL,
                    longitude REAL,
                    heading_degrees REAL,
                    speed_mph REAL,
                    odometer_miles REAL,
                    ignition_on INTEGER,
                    located_at TEXT,
                    last_synced_at TEXT,
                    PRIMARY KEY (org_id, samsara_vehicle_id)
                );

                CREATE TABLE IF NOT EXISTS simulated_vehicles (
                    org_id TEXT NOT NULL,
                    id TEXT NOT NULL,
                    name TEXT,
                    code TEXT,
                    make TEXT,
                    model TEXT,
                    year INTEGER,
                    is_active INTEGER,
                    PRIMARY KEY (org_id, id)
                );

                CREATE TABLE IF NOT EXISTS simulated_vehicle_locations_current (
                    org_id TEXT NOT NULL,
                    simulated_vehicle_id TEXT NOT NULL,
                    latitude REAL,
                    longitude REAL,
                    heading_degrees REAL,
                    speed_mph REAL,
                    odometer_miles REAL,
                    ignition_on INTEGER,
                    located_at TEXT,
                    last_synced_at TEXT,
                    PRIMARY KEY (org_id, simulated_vehicle_id)
                );
                """
            )
            self._conn.commit()

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        """Serialize access and commit on success; roll back and wrap store errors."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                logger.error("Dispatch store operation failed", db_path=str(self._db_path), error=str(exc))
                raise DispatchStoreError(str(exc)) from exc
            except BaseException:
                self._conn.rollback()
                raise

    @contextmanager
    def _telemetry_read(self) -> Iterator[sqlite3.Connection]:
        """Short-lived read-only connection for provider lookups.

        It bypasses the shared lock and gives up after the provider timeout,
        so a stalled or abandoned lookup cannot hold up loads and drivers.
        """
        try:
            conn = sqlite3.connect(str(self._db_path), check_same_thread=False, timeout=self._telemetry_timeout)
            conn.execute("PRAGMA query_only = ON")
        except sqlite3.Error as exc:
            raise DispatchStoreError(str(exc)) from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as exc:
            logger.error("Telemetry read failed", db_path=str(self._db_path), error=str(exc))
            raise DispatchStoreError(str(exc)) from exc
        finally:
            conn.close()

    @staticmethod
    def _rows(rows: Sequence[sqlite3.Row]) -> List[Dict[str, Any]]:
        return [dict(row) for row in rows]

    @staticmethod
    def _load_row(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
        if row is None:
            return None
        data = dict(row)
        data["problem_flag"] = bool(data.get("problem_flag"))
        return data

    # ---- organization membership -------------------------------------------------

    def add_user_to_org(self, user_id: str, org_id: str, role: str = "dispatcher") -> None:
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO user_orgs (user_id, org_id, role, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, org_id) DO UPDATE SET role = excluded.role
                """,
                (user_id, org_id, role, _utc_now_iso()),
            )

    def org_for_user(self, user_id: str) -> Optional[str]:
        with self._session() as conn:
            row = conn.execute(
                "SELECT org_id FROM user_orgs WHERE user_id = ? ORDER BY created_at LIMIT 1",
                (user_id,),
            ).fetchone()
        return str(row["org_id"]) if row else None

    # ---- loads -------------------------------------------------------------------

    def insert_load(self, org_id: str, fields: Dict[str, Any], created_by: Optional[str] = None) -> Dict[str, Any]:
        now = _utc_now_iso()
        row = {column: fields.get(column) for column in LOAD_COLUMNS}
        row.update(
            {
                "id": fields.get("id") or str(uuid.uuid4()),
                "org_id": org_id,
                "load_number": fields.get("load_number") or fields.get("reference"),
                "status": str(fields.get("status") or LoadStatus.AVAILABLE.value),
                "problem_flag": 1 if fields.get("problem_flag") else 0,
                "created_by": created_by,
                "created_at": fields.get("created_at") or now,
                "updated_at": now,
                "status_changed_at": now,
            }
        )
        if not row.get("reference"):
            raise DispatchStoreError("Load reference is required")
        placeholders = ", ".join("?" for _ in LOAD_COLUMNS)
        with self._session() as conn:
            conn.execute(
                f"INSERT INTO loads ({', '.join(LOAD_COLUMNS)}) VALUES ({placeholders})",
                tuple(row[column] for column in LOAD_COLUMNS),
            )
            created = conn.execute("SELECT * FROM loads WHERE id = ?", (row["id"],)).fetchone()
        return self._load_row(created) or {}

    def get_load(self, org_id: str, load_id: str) -> Optional[Dict[str, Any]]:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM loads WHERE org_id = ? AND id = ?",
                (org_id, load_id),
            ).fetchone()
        return self._load_row(row)

    def find_loads_by_reference(self, org_id: str, fragment: str, limit: int = 25) -> List[Dict[str, Any]]:
        """Case-insensitive substring match on the load reference, newest first."""
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT * FROM loads
                WHERE org_id = ? AND reference LIKE ? ESCAPE '\\'
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (org_id, _like(fragment), max(1, int(limit))),
            ).fetchall()
        return [self._load_row(row) for row in rows]

    def search_loads(
        self,
        org_id: str,
        status: Optional[LoadStatus] = None,
        origin: Optional[str] = None,
        destination: Optional[str] = None,
        limit: int = 10,
    ) -> List[Dict[str, Any]]:
        clauses = ["org_id = ?"]
        params: List[Any] = [org_id]
        if status:
            clauses.append("status = ?")
            params.append(status.value)
        if origin:
            clauses.append("origin LIKE ? ESCAPE '\\'")
            params.append(_like(origin))
        if destination:
            clauses.append("destination LIKE ? ESCAPE '\\'")
            params.append(_like(destination))
        params.append(max(1, int(limit)))
        with self._session() as conn:
            rows = conn.execute(
                f"""
                SELECT id, reference, origin, destination, status, rate, pickup_date, delivery_date
                FROM loads
                WHERE {' AND '.join(clauses)}
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                tuple(params),
            ).fetchall()
        return self._rows(rows)

    def update_load(self, org_id: str, load_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        changes = {key: value for key, value in updates.items() if key in LOAD_MUTABLE_COLUMNS}
        if not changes:
            raise DispatchStoreError("No updatable load fields supplied")
        now = _utc_now_iso()
        if "status" in changes:
            changes["status_changed_at"] = now
        if "problem_flag" in changes:
            changes["problem_flag"] = 1 if changes["problem_flag"] else 0
        changes["updated_at"] = now
        assignments = ", ".join(f"{column} = ?" for column in changes)
        with self._session() as conn:
            cursor = conn.execute(
                f"UPDATE loads SET {assignments} WHERE org_id = ? AND id = ?",
                (*changes.values(), org_id, load_id),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM loads WHERE id = ?", (load_id,)).fetchone()
        return self._load_row(row)

    # ---- drivers -----------------------------------------------------------------

    def insert_driver(self, org_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        now = _utc_now_iso()
        row = {column: fields.get(column) for column in DRIVER_COLUMNS}
        row.update(
            {
                "id": fields.get("id") or str(uuid.uuid4()),
                "org_id": org_id,
                "status": str(fields.get("status") or DriverStatus.ACTIVE.value),
                "created_at": fields.get("created_at") or now,
                "updated_at": now,
            }
        )
        if not str(row.get("full_name") or "").strip():
            raise DispatchStoreError("Driver full_name is required")
        placeholders = ", ".join("?" for _ in DRIVER_COLUMNS)
        with self._session() as conn:
            conn.execute(
                f"INSERT INTO drivers ({', '.join(DRIVER_COLUMNS)}) VALUES ({placeholders})",
                tuple(row[column] for column in DRIVER_COLUMNS),
            )
            created = conn.execute("SELECT * FROM drivers WHERE id = ?", (row["id"],)).fetchone()
        return dict(created)

    def get_driver(self, org_id: str, driver_id: str) -> Optional[Dict[str, Any]]:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM drivers WHERE org_id = ? AND id = ?",
                (org_id, driver_id),
            ).fetchone()
        return dict(row) if row else None

    def find_drivers_by_name(self, org_id: str, fragment: str, limit: int = 25) -> List[Dict[str, Any]]:
        """Case-insensitive substring match on the driver's full name, newest first."""
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT * FROM drivers
                WHERE org_id = ? AND full_name LIKE ? ESCAPE '\\'
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (org_id, _like(fragment), max(1, int(limit))),
            ).fetchall()
        return self._rows(rows)

    def search_drivers(
        self,
        org_id: str,
        status: Optional[DriverStatus] = None,
        location: Optional[str] = None,
        limit: int = 10,
    ) -> List[Dict[str, Any]]:
        clauses = ["org_id = ?"]
        params: List[Any] = [org_id]
        if status:
            clauses.append("status = ?")
            params.append(status.value)
        if location:
            clauses.append("notes LIKE ? ESCAPE '\\'")
            params.append(_like(location))
        params.append(max(1, int(limit)))
        with self._session() as conn:
            rows = conn.execute(
                f"""
                SELECT id, full_name, phone, cdl_class, status, med_exp, cdl_exp, notes
                FROM drivers
                WHERE {' AND '.join(clauses)}
                ORDER BY full_name ASC
                LIMIT ?
                """,
                tuple(params),
            ).fetchall()
        return self._rows(rows)

    # ---- assignments -------------------------------------------------------------

    def assignments_for_load(self, org_id: str, load_id: str) -> List[Dict[str, Any]]:
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT a.id, a.assigned_at, d.id AS driver_id, d.full_name, d.phone, d.status
                FROM load_driver_assignments a
                JOIN drivers d ON d.id = a.driver_id
                WHERE a.org_id = ? AND a.load_id = ?
                ORDER BY a.assigned_at DESC
                """,
                (org_id, load_id),
            ).fetchall()
        return [
            {
                "id": row["id"],
                "assigned_at": row["assigned_at"],
                "driver": {
                    "id": row["driver_id"],
                    "full_name": row["full_name"],
                    "phone": row["phone"],
                    "status": row["status"],
                },
            }
            for row in rows
        ]

    def list_assignments(self, org_id: str) -> List[Dict[str, Any]]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM load_driver_assignments WHERE org_id = ? ORDER BY assigned_at DESC",
                (org_id,),
            ).fetchall()
        return self._rows(rows)

    def assign_driver(self, org_id: str, load_id: str, driver_id: str) -> Dict[str, Any]:
        """Create the assignment, mark the driver ASSIGNED and start an AVAILABLE load.

        The driver's status is re-read inside the same transaction, so a stale
        read elsewhere cannot double-book them. All three writes share that
        transaction; any failure rolls every step back.
        """
        with self._session() as conn:
            load = conn.execute(
                "SELECT status FROM loads WHERE org_id = ? AND id = ?",
                (org_id, load_id),
            ).fetchone()
            if load is None:
                raise DispatchStoreError(f"Load {load_id} not found")
            driver = conn.execute(
                "SELECT status FROM drivers WHERE org_id = ? AND id = ?",
                (org_id, driver_id),
            ).fetchone()
            if driver is None:
                raise DispatchStoreError(f"Driver {driver_id} not found")
            if str(driver["status"]) == DriverStatus.ASSIGNED.value:
                raise DriverAlreadyAssignedError(driver_id)
            assignment = self._insert_assignment(conn, org_id, load_id, driver_id)
            self._set_driver_status(conn, org_id, driver_id, DriverStatus.ASSIGNED)
            load_status = str(load["status"])
            if load_status == LoadStatus.AVAILABLE.value:
                self._set_load_status(conn, org_id, load_id, LoadStatus.IN_TRANSIT)
                load_status = LoadStatus.IN_TRANSIT.value
        return {
            "assignment": assignment,
            "driver_status": DriverStatus.ASSIGNED.value,
            "load_status": load_status,
        }

    def _insert_assignment(
        self, conn: sqlite3.Connection, org_id: str, load_id: str, driver_id: str
    ) -> Dict[str, Any]:
        row = {
            "id": str(uuid.uuid4()),
            "org_id": org_id,
            "load_id": load_id,
            "driver_id": driver_id,
            "assigned_at": _utc_now_iso(),
        }
        conn.execute(
            """
            INSERT INTO load_driver_assignments (id, org_id, load_id, driver_id, assigned_at)
            VALUES (:id, :org_id, :load_id, :driver_id, :assigned_at)
            """,
            row,
        )
        return row

    def _set_driver_status(self, conn: sqlite3.Connection, org_id: str, driver_id: str, status: DriverStatus) -> None:
        cursor = conn.execute(
            "UPDATE drivers SET status = ?, updated_at = ? WHERE org_id = ? AND id = ?",
            (status.value, _utc_now_iso(), org_id, driver_id),
        )
        if cursor.rowcount == 0:
            raise sqlite3.IntegrityError(f"Driver {driver_id} not found")

    def _set_load_status(self, conn: sqlite3.Connection, org_id: str, load_id: str, status: LoadStatus) -> None:
        now = _utc_now_iso()
        conn.execute(
            "UPDATE loads SET status = ?, status_changed_at = ?, updated_at = ? WHERE org_id = ? AND id = ?",
            (status.value, now, now, org_id, load_id),
        )

    # ---- vehicle telemetry -------------------------------------------------------

    def upsert_vehicle_row(self, table: str, org_id: str, row: Dict[str, Any]) -> None:
        """Write one row into a provider sync table, keyed by (org_id, vehicle id)."""
        columns = VEHICLE_TABLES.get(table)
        if columns is None:
            raise DispatchStoreError(f"Unknown vehicle table: {table}")
        values = {column: row.get(column) for column in columns}
        values["org_id"] = org_id
        if values[columns[1]] is None:
            raise DispatchStoreError(f"{table} rows require {columns[1]}")
        for flag in ("ignition_on", "is_active"):
            if flag in values and values[flag] is not None:
                values[flag] = 1 if values[flag] else 0
        updates = ", ".join(f"{column} = excluded.{column}" for column in columns[2:])
        with self._session() as conn:
            conn.execute(
                f"""
                INSERT INTO {table} ({', '.join(columns)})
                VALUES ({', '.join('?' for _ in columns)})
                ON CONFLICT(org_id, {columns[1]}) DO UPDATE SET {updates}
                """,
                tuple(values[column] for column in columns),
            )

    def find_motive_locations(self, org_id: str, identifier: str, match_id: bool, limit: int = 1) -> List[Dict[str, Any]]:
        pattern = _like(identifier)
        clauses = [
            "vehicle_number LIKE ? ESCAPE '\\'",
            "name LIKE ? ESCAPE '\\'",
            "license_plate LIKE ? ESCAPE '\\'",
        ]
        params: List[Any] = [org_id, pattern, pattern, pattern]
        if match_id:
            clauses.append("motive_vehicle_id = ?")
            params.append(identifier)
        params.append(max(1, int(limit)))
        with self._telemetry_read() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM motive_vehicle_locations_current
                WHERE org_id = ? AND ({' OR '.join(clauses)})
                ORDER BY located_at DESC
                LIMIT ?
                """,
                tuple(params),
            ).fetchall()
        return self._rows(rows)

    def find_samsara_vehicles(self, org_id: str, identifier: str, limit: int = 3) -> List[Dict[str, Any]]:
        pattern = _like(identifier)
        with self._telemetry_read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM samsara_vehicles
                WHERE org_id = ?
                  AND (name LIKE ? ESCAPE '\\' OR license_plate LIKE ? ESCAPE '\\' OR samsara_vehicle_id = ?)
                LIMIT ?
                """,
                (org_id, pattern, pattern, identifier, max(1, int(limit))),
            ).fetchall()
        return self._rows(rows)

    def find_simulated_vehicles(self, org_id: str, identifier: str, match_id: bool, limit: int = 3) -> List[Dict[str, Any]]:
        pattern = _like(identifier)
        clauses = ["name LIKE ? ESCAPE '\\'", "code LIKE ? ESCAPE '\\'"]
        params: List[Any] = [org_id, pattern, pattern]
        if match_id:
            clauses.append("id = ?")
            params.append(identifier)
        params.append(max(1, int(limit)))
        with self._telemetry_read() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM simulated_vehicles
                WHERE org_id = ? AND ({' OR '.join(clauses)})
                LIMIT ?
                """,
                tuple(params),
            ).fetchall()
        return self._rows(rows)

    def latest_locations_for(
        self,
        table: str,
        id_column: str,
        org_id: str,
        vehicle_ids: Sequence[str],
        limit: int = 1,
    ) -> List[Dict[str, Any]]:
        if table not in VEHICLE_TABLES or id_column not in VEHICLE_TABLES[table]:
            raise DispatchStoreError(f"Unknown location table: {table}.{id_column}")
        ids = [str(value) for value in vehicle_ids if value is not None]
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        with self._telemetry_read() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM {table}
                WHERE org_id = ? AND {id_column} IN ({placeholders})
                ORDER BY located_at DESC
                LIMIT ?
                """,
                (org_id, *ids, max(1, int(limit))),
            ).fetchall()
        return self._rows(rows)

    def latest_motive_locations(self, org_id: str, limit: int) -> List[Dict[str, Any]]:
        with self._telemetry_read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM motive_vehicle_locations_current
                WHERE org_id = ?
                ORDER BY located_at DESC
                LIMIT ?
                """,
                (org_id, max(1, int(limit))),
            ).fetchall()
        return self._rows(rows)

    def latest_samsara_locations(self, org_id: str, limit: int) -> List[Dict[str, Any]]:
        with self._telemetry_read() as conn:
            rows = conn.execute(
                """
                SELECT l.*, v.name, v.license_plate, v.license_plate_state, v.vin, v.make, v.model,
                       v.model_year, v.status, v.is_active
                FROM samsara_vehicle_locations_current l
                LEFT JOIN samsara_vehicles v
                  ON v.org_id = l.org_id AND v.samsara_vehicle_id = l.samsara_vehicle_id
                WHERE l.org_id = ?
                ORDER BY l.located_at DESC
                LIMIT ?
                """,
                (org_id, max(1, int(limit))),
            ).fetchall()
        return self._rows(rows)

    def latest_simulated_locations(self, org_id: str, limit: int) -> List[Dict[str, Any]]:
        with self._telemetry_read() as conn:
            rows = conn.execute(
                """
                SELECT l.*, v.name, v.code, v.make, v.model, v.year, v.is_active
                FROM simulated_vehicle_locations_current l
                LEFT JOIN simulated_vehicles v
                  ON v.org_id = l.org_id AND v.id = l.simulated_vehicle_id
                WHERE l.org_id = ?
                ORDER BY l.located_at DESC
                LIMIT ?
                """,
                (org_id, max(1, int(limit))),
            ).fetchall()
        return self._rows(rows)

    # ---- maintenance -------------------------------------------------------------

    def reset_org(self, org_id: str) -> None:
        """Clear operational and telemetry rows so a demo seed starts clean."""
        with self._session() as conn:
            conn.execute("DELETE FROM load_driver_assignments WHERE org_id = ?", (org_id,))
            conn.execute("DELETE FROM loads WHERE org_id = ?", (org_id,))
            conn.execute("DELETE FROM drivers WHERE org_id = ?", (org_id,))
            for table in VEHICLE_TABLES:
                conn.execute(f"DELETE FROM {table} WHERE org_id = ?", (org_id,))
