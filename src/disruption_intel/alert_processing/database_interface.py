"""
Database interface for the disruption alert pipeline.

Defines the abstract ``AlertStore`` repository and ``AuditLogger`` sink the
pipeline depends on, the typed query/sort models used to talk to them, and
SQLite-backed implementations built on a shared ``DatabaseInterface``
connection wrapper.

The pipeline only relies on filter/sort/pagination semantics, so any store
honouring ``AlertQuery`` can be substituted.
"""
import json
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from disruption_intel.alert_processing.clock import Clock, SystemClock
from disruption_intel.alert_processing.data_models import Alert, AlertStatus, ensure_utc
from disruption_intel.logger import get_logger

SCHEMA_PATH = Path(__file__).resolve().parent / "database_schema.sql"

EXPECTED_TABLES = frozenset(["alert", "audit_log"])

logger = get_logger(__name__)

# --- DATABASE ERRORS

class DBError(Exception):
    """Base exception for database operations."""


class PersistenceError(DBError):
    """Raised when a record cannot be written."""


class AlertNotFoundError(DBError):
    """Raised when an alert id does not exist."""

    def __init__(self, alert_id: str) -> None:
        """Initialize the exception."""
        self.alert_id = alert_id
        super().__init__(f"Alert not found: {alert_id}")


class DBSchemaError(DBError):
    """Raised when schema validation fails."""

# ==== QUERY MODELS ====

class AlertQuery(BaseModel):
    """
    Filter over stored alerts. Unset fields do not constrain the result;
    set fields are combined with AND.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    ids: Optional[list[str]] = None
    statuses: Optional[list[AlertStatus]] = None
    origin_city: Optional[str] = None
    description: Optional[str] = None
    created_after: Optional[datetime] = None
    auto_update_enabled: Optional[bool] = None
    auto_update_suppressed: Optional[bool] = None
    last_check_before_or_unset: Optional[datetime] = None
    has_followers: Optional[bool] = None
    has_updates: Optional[bool] = None
    is_update_of: Optional[str] = None


class AlertSort(BaseModel):
    """Sort order for ``AlertStore.find``."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    field: Literal["created_at", "updated_at", "expected_start", "confidence", "last_auto_update_check_at"] = "created_at"
    descending: bool = True


class AuditEventRow(BaseModel):
    """Row from audit_log table."""

    model_config = ConfigDict(from_attributes=True, extra="forbid")

    event_id: int
    event_name: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

# ==== ABSTRACT COLLABORATORS ====

class AlertStore(ABC):
    """Generic entity repository for alerts."""

    @abstractmethod
    async def find(
        self,
        query: AlertQuery,
        sort: Optional[AlertSort] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Alert]:
        """Return alerts matching *query*."""

    @abstractmethod
    async def count_documents(self, query: AlertQuery) -> int:
        """Count alerts matching *query*."""

    @abstractmethod
    async def create(self, alert: Alert) -> Alert:
        """Insert a new alert."""

    @abstractmethod
    async def save(self, alert: Alert) -> Alert:
        """Persist changes to an existing alert."""

    @abstractmethod
    async def get(self, alert_id: str) -> Optional[Alert]:
        """Fetch one alert by id."""


class AuditLogger(ABC):
    """Structured event sink. Pipeline code writes through ``emit_audit_event``."""

    @abstractmethod
    async def log_system(self, event_name: str, details: dict[str, Any]) -> None:
        """Record a system event."""


async def emit_audit_event(audit: AuditLogger, event_name: str, details: dict[str, Any]) -> None:
    """Write an audit event; a failing sink is logged and never interrupts the caller."""
    try:
        await audit.log_system(event_name, details)
    except Exception:
        logger.exception("Audit sink rejected event %s", event_name)

# ==== HELPERS ====

def _to_db_ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC timestamp so lexical order matches chronological order."""
    if value is None:
        return None
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _serialize_json(value: dict | list | None) -> str | None:
    """Serialize a value to canonical JSON text."""
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str)


def _parse_json(text: str | None) -> dict | list | None:
    """Parse JSON text to Python object."""
    if text is None:
        return None
    return json.loads(text)


def build_where_clause(query: AlertQuery) -> tuple[str, list[Any]]:
    """
    Translate an ``AlertQuery`` into a SQL WHERE clause over the alert table.

    :param query: Filter to translate.
    :return: ``(clause, params)``; clause is ``"1=1"`` for an empty filter.
    """
    clauses: list[str] = []
    params: list[Any] = []

    if query.ids is not None:
        if not query.ids:
            return "0=1", []
        clauses.append(f"id IN ({', '.join('?' for _ in query.ids)})")
        params.extend(query.ids)
    if query.statuses is not None:
        if not query.statuses:
            return "0=1", []
        clauses.append(f"status IN ({', '.join('?' for _ in query.statuses)})")
        params.extend(s.value for s in query.statuses)
    if query.origin_city is not None:
        clauses.append("origin_city = ? COLLATE NOCASE")
        params.append(query.origin_city)
    if query.description is not None:
        clauses.append("description = ?")
        params.append(query.description)
    if query.created_after is not None:
        clauses.append("created_at >= ?")
        params.append(_to_db_ts(query.created_after))
    if query.auto_update_enabled is not None:
        clauses.append("auto_update_enabled = ?")
        params.append(int(query.auto_update_enabled))
    if query.auto_update_suppressed is not None:
        clauses.append("auto_update_suppressed = ?")
        params.append(int(query.auto_update_suppressed))
    if query.last_check_before_or_unset is not None:
        clauses.append("(last_auto_update_check_at IS NULL OR last_auto_update_check_at < ?)")
        params.append(_to_db_ts(query.last_check_before_or_unset))
    if query.has_followers is not None:
        clauses.append("follower_count > 0" if query.has_followers else "follower_count = 0")
    if query.has_updates is not None:
        clauses.append("update_count > 0" if query.has_updates else "update_count = 0")
    if query.is_update_of is not None:
        clauses.append("is_update_of = ?")
        params.append(query.is_update_of)

    return (" AND ".join(clauses) if clauses else "1=1"), params

# DATABASE INTERFACE

class DatabaseInterface:
    """
    SQLite connection wrapper.

    Owns one connection in autocommit mode, creates the schema on a fresh
    database, validates it otherwise, and provides the execute helpers
    shared by the store and the audit sink.
    """

    def __init__(self, db_path: Path | str) -> None:
        """Initialize the database adapter."""
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None

    def open(self) -> None:
        """Open the connection and ensure schema."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), timeout=30.0, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.execute("PRAGMA busy_timeout = 30000")
        self._validate_sqlite_features()
        if self._is_fresh_db():
            self._create_schema()
        else:
            self._validate_schema()

    def close(self) -> None:
        """Close the connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "DatabaseInterface":
        """Enter context manager."""
        self.open()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit context manager."""
        self.close()

    def _validate_sqlite_features(self) -> None:
        assert self._conn is not None
        try:
            self._conn.execute("SELECT json_valid('[]')")
        except sqlite3.OperationalError as e:
            raise DBSchemaError(f"JSON1 extension not available: {e}") from e

    def _is_fresh_db(self) -> bool:
        assert self._conn is not None
        result = self._conn.execute(
            "SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
        ).fetchone()
        return result[0] == 0

    def _create_schema(self) -> None:
        assert self._conn is not None
        schema_sql = Path(SCHEMA_PATH).read_text(encoding="utf-8")
        self._conn.executescript(schema_sql)

    def _validate_schema(self) -> None:
        assert self._conn is not None
        existing = {
            row[0] for row in self._conn.execute(
                "SELECT name FROM sqlite_master WHERE type IN ('table', 'view')"
            )
        }
        missing = EXPECTED_TABLES - existing
        if missing:
            raise DBSchemaError(f"Schema validation failed. Missing tables: {sorted(missing)}")

    def execute(self, sql: str, params: tuple | list | dict | None = None) -> sqlite3.Cursor:
        """Execute one statement, mapping sqlite failures to ``PersistenceError``."""
        if self._conn is None:
            raise PersistenceError("Database connection is not open")
        try:
            return self._conn.execute(sql, params or ())
        except sqlite3.Error as e:
            raise PersistenceError(str(e)) from e

    def fetchone(self, sql: str, params: tuple | list | dict | None = None) -> sqlite3.Row | None:
        """Execute and return the first row."""
        return self.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: tuple | list | dict | None = None) -> list[sqlite3.Row]:
        """Execute and return all rows."""
        return self.execute(sql, params).fetchall()

# SQLITE IMPLEMENTATIONS

class SQLiteAlertStore(AlertStore):
    """``AlertStore`` over the ``alert`` table."""

    def __init__(self, db: DatabaseInterface) -> None:
        """Initialize the store on an open database."""
        self._db = db

    @staticmethod
    def _row_params(alert: Alert) -> dict[str, Any]:
        return {
            "id": alert.id,
            "origin_city": alert.origin_location.city,
            "description": alert.description,
            "status": alert.status.value,
            "confidence": alert.confidence,
            "created_at": _to_db_ts(alert.created_at),
            "updated_at": _to_db_ts(alert.updated_at),
            "expected_start": _to_db_ts(alert.expected_start),
            "expected_end": _to_db_ts(alert.expected_end),
            "is_update_of": alert.is_update_of,
            "auto_update_enabled": int(alert.auto_update_enabled),
            "auto_update_suppressed": int(alert.auto_update_suppressed),
            "last_auto_update_check_at": _to_db_ts(alert.last_auto_update_check_at),
            "follower_count": alert.follower_count,
            "update_count": alert.update_count,
            "document": alert.model_dump_json(),
        }

    def _get_sync(self, alert_id: str) -> Optional[Alert]:
        row = self._db.fetchone("SELECT document FROM alert WHERE id = ?", (alert_id,))
        return Alert.model_validate_json(row["document"]) if row else None

    def _check_update_chain(self, alert: Alert) -> None:
        """Parent must exist and must not descend from *alert*."""
        if alert.is_update_of is None:
            return
        seen: set[str] = {alert.id}
        parent_id: Optional[str] = alert.is_update_of
        while parent_id is not None:
            if parent_id in seen:
                raise PersistenceError(
                    f"Alert {alert.id} cannot be an update of {alert.is_update_of}: update chain would be cyclic"
                )
            seen.add(parent_id)
            parent = self._get_sync(parent_id)
            if parent is None:
                raise PersistenceError(f"Parent alert not found: {parent_id}")
            parent_id = parent.is_update_of

    async def find(
        self,
        query: AlertQuery,
        sort: Optional[AlertSort] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Alert]:
        """Return alerts matching *query*."""
        sort = sort or AlertSort()
        where, params = build_where_clause(query)
        sql = (
            f"SELECT document FROM alert WHERE {where} "
            f"ORDER BY {sort.field} {'DESC' if sort.descending else 'ASC'}, id"
        )
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params = [*params, limit, offset]
        elif offset:
            sql += " LIMIT -1 OFFSET ?"
            params = [*params, offset]
        rows = self._db.fetchall(sql, params)
        return [Alert.model_validate_json(row["document"]) for row in rows]

    async def count_documents(self, query: AlertQuery) -> int:
        """Count alerts matching *query*."""
        where, params = build_where_clause(query)
        row = self._db.fetchone(f"SELECT COUNT(*) AS n FROM alert WHERE {where}", params)
        return int(row["n"]) if row else 0

    async def create(self, alert: Alert) -> Alert:
        """
        Insert a new alert.

        :raises PersistenceError: On duplicate id, missing parent or cyclic update chain.
        """
        self._check_update_chain(alert)
        params = self._row_params(alert)
        columns = ", ".join(params)
        placeholders = ", ".join(f":{k}" for k in params)
        self._db.execute(f"INSERT INTO alert ({columns}) VALUES ({placeholders})", params)
        return alert

    async def save(self, alert: Alert) -> Alert:
        """
        Persist changes to an existing alert.

        :raises AlertNotFoundError: If the alert was never created.
        """
        self._check_update_chain(alert)
        params = self._row_params(alert)
        assignments = ", ".join(f"{k} = :{k}" for k in params if k != "id")
        cursor = self._db.execute(f"UPDATE alert SET {assignments} WHERE id = :id", params)
        if cursor.rowcount == 0:
            raise AlertNotFoundError(alert.id)
        return alert

    async def get(self, alert_id: str) -> Optional[Alert]:
        """Fetch one alert by id."""
        return self._get_sync(alert_id)

    async def get_update_chain(self, alert_id: str) -> list[Alert]:
        """
        Return the ancestors of an alert, nearest parent first.

        :raises AlertNotFoundError: If *alert_id* does not exist.
        """
        alert = self._get_sync(alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        chain: list[Alert] = []
        seen = {alert.id}
        parent_id = alert.is_update_of
        while parent_id is not None and parent_id not in seen:
            parent = self._get_sync(parent_id)
            if parent is None:
                break
            chain.append(parent)
            seen.add(parent.id)
            parent_id = parent.is_update_of
        return chain


class SQLiteAuditLogger(AuditLogger):
    """``AuditLogger`` over the ``audit_log`` table."""

    def __init__(self, db: DatabaseInterface, clock: Clock | None = None) -> None:
        """Initialize the audit sink on an open database."""
        self._db = db
        self._clock = clock or SystemClock()

    async def log_system(self, event_name: str, details: dict[str, Any]) -> None:
        """Record a system event. Failures are logged, never raised."""
        try:
            self._db.execute(
                "INSERT INTO audit_log (event_name, details, created_at) VALUES (?, ?, ?)",
                (event_name, _serialize_json(details) or "{}", _to_db_ts(self._clock.now())),
            )
        except Exception:
            logger.exception("Failed to write audit event %s", event_name)

    def list_events(self, event_name: str | None = None) -> list[AuditEventRow]:
        """Read audit events back in insertion order."""
        if event_name is None:
            rows = self._db.fetchall("SELECT * FROM audit_log ORDER BY event_id")
        else:
            rows = self._db.fetchall(
                "SELECT * FROM audit_log WHERE event_name = ? ORDER BY event_id", (event_name,)
            )
        return [
            AuditEventRow.model_validate({**dict(row), "details": _parse_json(row["details"])})
            for row in rows
        ]
