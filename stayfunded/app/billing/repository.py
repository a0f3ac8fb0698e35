"""Persistence layer for entitlement records."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Optional

import psycopg2
import psycopg2.extras
from psycopg2 import sql
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ..entitlements.models import EntitlementRecord, EntitlementStatus
from .errors import Unavailable
from .models import Authority, EntitlementUpdate, FieldAction, FieldChange

try:  # pragma: no cover - resolve connection helper when imported from FastAPI app
    from stayfunded.app_context import get_conn
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "stayfunded":
        raise
    from ...app_context import get_conn  # type: ignore[no-redef]


ENTITLEMENTS_SCHEMA = """
CREATE TABLE IF NOT EXISTS billing_entitlements (
    user_id TEXT PRIMARY KEY,
    customer_id TEXT,
    subscription_id TEXT,
    status TEXT NOT NULL DEFAULT 'inactive'
        CHECK (status IN ('inactive', 'incomplete', 'active', 'past_due',
                          'lifetime', 'canceled', 'unknown')),
    price_id TEXT,
    current_period_end TIMESTAMPTZ,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT billing_entitlements_lifetime_chk
        CHECK (status <> 'lifetime' OR (subscription_id IS NULL AND current_period_end IS NULL))
);
CREATE INDEX IF NOT EXISTS billing_entitlements_customer_idx
    ON billing_entitlements (customer_id);
"""

_TABLE = sql.Identifier("billing_entitlements")
_CHANGE_COLUMNS = ("subscription_id", "price_id", "current_period_end")
_TRACKED_COLUMNS = ("customer_id", "status") + _CHANGE_COLUMNS
_FORWARD_ONLY_COLUMNS = ("current_period_end",)


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_entitlement(row: dict) -> EntitlementRecord:
    return EntitlementRecord(
        user_id=row["user_id"],
        customer_id=row.get("customer_id"),
        subscription_id=row.get("subscription_id"),
        status=EntitlementStatus(row["status"]),
        price_id=row.get("price_id"),
        current_period_end=row.get("current_period_end"),
        updated_at=row.get("updated_at"),
    )


def _existing(column: str) -> sql.Composable:
    return sql.SQL("{}.{}").format(_TABLE, sql.Identifier(column))


def _incoming(column: str, change: FieldChange) -> sql.Composable:
    if change.action == FieldAction.SET:
        incoming = sql.SQL("EXCLUDED.{}").format(sql.Identifier(column))
        if column in _FORWARD_ONLY_COLUMNS:
            return sql.SQL("GREATEST({}, {})").format(_existing(column), incoming)
        return incoming
    if change.action == FieldAction.CLEAR:
        return sql.SQL("NULL")
    return _existing(column)


def build_upsert(update: EntitlementUpdate) -> sql.Composed:
    """Single-statement upsert equivalent to :meth:`EntitlementUpdate.merge`."""

    if update.authority == Authority.LIFETIME_GRANT:
        locked = sql.SQL("FALSE")
    else:
        locked = sql.SQL("{} = {}").format(
            _existing("status"), sql.Literal(EntitlementStatus.LIFETIME.value)
        )

    new_values: Dict[str, sql.Composable] = {
        "customer_id": sql.SQL("COALESCE({}, EXCLUDED.customer_id)").format(_existing("customer_id")),
        "status": sql.SQL("CASE WHEN {} THEN {} ELSE EXCLUDED.status END").format(
            locked, _existing("status")
        ),
    }
    for column in _CHANGE_COLUMNS:
        new_values[column] = sql.SQL("CASE WHEN {} THEN {} ELSE {} END").format(
            locked, _existing(column), _incoming(column, getattr(update, column))
        )

    changed = sql.SQL("ROW({}) IS DISTINCT FROM ROW({})").format(
        sql.SQL(", ").join(new_values[column] for column in _TRACKED_COLUMNS),
        sql.SQL(", ").join(_existing(column) for column in _TRACKED_COLUMNS),
    )
    assignments = [
        sql.SQL("{} = {}").format(sql.Identifier(column), new_values[column])
        for column in _TRACKED_COLUMNS
    ]
    assignments.append(
        sql.SQL("updated_at = CASE WHEN {} THEN NOW() ELSE {} END").format(
            changed, _existing("updated_at")
        )
    )

    return sql.SQL(
        """
        INSERT INTO {table} (
            user_id,
            customer_id,
            subscription_id,
            status,
            price_id,
            current_period_end,
            updated_at
        )
        VALUES (%(user_id)s, %(customer_id)s, %(subscription_id)s, %(status)s,
                %(price_id)s, %(current_period_end)s, NOW())
        ON CONFLICT (user_id) DO UPDATE SET
            {assignments}
        RETURNING *
        """
    ).format(table=_TABLE, assignments=sql.SQL(",\n            ").join(assignments))


def upsert_parameters(user_id: str, update: EntitlementUpdate) -> Dict[str, object]:
    """Values used when the row does not exist yet."""

    return {
        "user_id": user_id,
        "customer_id": update.customer_id,
        "subscription_id": update.subscription_id.apply(None),
        "status": update.status.value,
        "price_id": update.price_id.apply(None),
        "current_period_end": update.current_period_end.apply(None),
    }


class PostgresEntitlementRepository:
    """Concrete repository persisting entitlement records in PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        try:
            with managed_connection(self._conn) as (connection, managed):
                cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
                try:
                    yield cursor
                    if managed:
                        connection.commit()
                except Exception:
                    if managed:
                        connection.rollback()
                    raise
                finally:
                    cursor.close()
        except psycopg2.Error as exc:
            raise Unavailable("Entitlement store is unavailable") from exc

    def ensure_schema(self) -> None:
        with self._cursor() as cursor:
            cursor.execute(ENTITLEMENTS_SCHEMA)

    def get_entitlement(self, user_id: str) -> Optional[EntitlementRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_entitlements
                WHERE user_id = %s
                LIMIT 1
                """,
                (user_id,),
            )
            row = cursor.fetchone()
            return _row_to_entitlement(row) if row else None

    def find_user_by_customer(self, customer_id: str) -> Optional[str]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT user_id
                FROM billing_entitlements
                WHERE customer_id = %s
                ORDER BY user_id
                LIMIT 1
                """,
                (customer_id,),
            )
            row = cursor.fetchone()
            return row["user_id"] if row else None

    def apply_update(self, user_id: str, update: EntitlementUpdate) -> EntitlementRecord:
        with self._cursor() as cursor:
            cursor.execute(build_upsert(update), upsert_parameters(user_id, update))
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist entitlement")
            return _row_to_entitlement(row)

    def attach_customer(self, user_id: str, customer_id: str) -> str:
        """Record ``customer_id`` for the user unless one is already stored."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_entitlements (user_id, customer_id, status)
                VALUES (%s, %s, %s)
                ON CONFLICT (user_id) DO UPDATE SET
                    customer_id = COALESCE(billing_entitlements.customer_id, EXCLUDED.customer_id),
                    updated_at = CASE
                        WHEN billing_entitlements.customer_id IS NULL THEN NOW()
                        ELSE billing_entitlements.updated_at
                    END
                RETURNING customer_id
                """,
                (user_id, customer_id, EntitlementStatus.INACTIVE.value),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to attach customer")
            return row["customer_id"]


class InMemoryEntitlementRepository:
    """Lock-guarded in-memory store suitable for tests and local development."""

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._rows: Dict[str, EntitlementRecord] = {}
        self._lock = threading.Lock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.write_count = 0

    def get_entitlement(self, user_id: str) -> Optional[EntitlementRecord]:
        return self._rows.get(user_id)

    def find_user_by_customer(self, customer_id: str) -> Optional[str]:
        matches = sorted(
            row.user_id for row in self._rows.values() if row.customer_id == customer_id
        )
        return matches[0] if matches else None

    def apply_update(self, user_id: str, update: EntitlementUpdate) -> EntitlementRecord:
        with self._lock:
            existing = self._rows.get(user_id)
            merged = update.merge(existing, user_id=user_id, now=self._clock())
            self._rows[user_id] = merged
            self.write_count += 1
            return merged

    def attach_customer(self, user_id: str, customer_id: str) -> str:
        with self._lock:
            existing = self._rows.get(user_id)
            if existing is None:
                existing = EntitlementRecord(
                    user_id=user_id, customer_id=customer_id, updated_at=self._clock()
                )
            elif existing.customer_id is None:
                existing = existing.model_copy(
                    update={"customer_id": customer_id, "updated_at": self._clock()}
                )
            self._rows[user_id] = existing
            return existing.customer_id or customer_id

    def put(self, record: EntitlementRecord) -> None:
        """Seed a row directly."""

        with self._lock:
            self._rows[record.user_id] = record


__all__ = [
    "ENTITLEMENTS_SCHEMA",
    "InMemoryEntitlementRepository",
    "PostgresEntitlementRepository",
    "build_upsert",
    "upsert_parameters",
]
