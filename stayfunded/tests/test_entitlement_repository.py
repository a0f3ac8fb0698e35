from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional

import psycopg2
from psycopg2 import sql
import pytest

from stayfunded.app.billing import Authority, EntitlementUpdate, FieldChange, Unavailable
from stayfunded.app.billing.repository import (
    PostgresEntitlementRepository,
    build_upsert,
    upsert_parameters,
)
from stayfunded.app.entitlements import EntitlementStatus

STAMP = datetime(2025, 2, 1, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows: List[dict], error: Optional[Exception] = None) -> None:
        self._rows = rows
        self._error = error
        self.executed: List[tuple] = []
        self.closed = False

    def execute(self, query: Any, params: Any = None) -> None:
        if self._error is not None:
            raise self._error
        self.executed.append((query, params))

    def fetchone(self) -> Optional[dict]:
        return self._rows.pop(0) if self._rows else None

    def close(self) -> None:
        self.closed = True


class FakeConnection:
    def __init__(self, cursor: FakeCursor) -> None:
        self._cursor = cursor
        self.cursor_factories: List[Any] = []

    def cursor(self, cursor_factory=None) -> FakeCursor:
        self.cursor_factories.append(cursor_factory)
        return self._cursor


def _row(**overrides) -> dict:
    row = {
        "user_id": "u1",
        "customer_id": "cus_1",
        "subscription_id": "sub_1",
        "status": "active",
        "price_id": "price_monthly",
        "current_period_end": STAMP,
        "updated_at": STAMP,
    }
    row.update(overrides)
    return row


def _payment_failed() -> EntitlementUpdate:
    return EntitlementUpdate(
        status=EntitlementStatus.PAST_DUE,
        authority=Authority.INVOICE,
        category="invoice_payment_failed",
        customer_id="cus_1",
        subscription_id=FieldChange.set("sub_1"),
        price_id=FieldChange.clear(),
    )


def test_get_entitlement_maps_row():
    cursor = FakeCursor([_row()])
    repository = PostgresEntitlementRepository(conn=FakeConnection(cursor))

    record = repository.get_entitlement("u1")

    assert record.status == EntitlementStatus.ACTIVE
    assert record.current_period_end == STAMP
    assert cursor.executed[0][1] == ("u1",)
    assert cursor.closed


def test_get_entitlement_missing_row():
    repository = PostgresEntitlementRepository(conn=FakeConnection(FakeCursor([])))

    assert repository.get_entitlement("u1") is None


def test_find_user_by_customer():
    cursor = FakeCursor([{"user_id": "u1"}])
    repository = PostgresEntitlementRepository(conn=FakeConnection(cursor))

    assert repository.find_user_by_customer("cus_1") == "u1"
    assert cursor.executed[0][1] == ("cus_1",)


def test_apply_update_runs_single_upsert():
    cursor = FakeCursor([_row(status="past_due", price_id=None)])
    repository = PostgresEntitlementRepository(conn=FakeConnection(cursor))
    update = _payment_failed()

    record = repository.apply_update("u1", update)

    assert record.status == EntitlementStatus.PAST_DUE
    assert record.price_id is None
    assert len(cursor.executed) == 1
    _, params = cursor.executed[0]
    assert params == upsert_parameters("u1", update)


def test_upsert_parameters_describe_fresh_row():
    params = upsert_parameters("u1", _payment_failed())

    assert params == {
        "user_id": "u1",
        "customer_id": "cus_1",
        "subscription_id": "sub_1",
        "status": "past_due",
        "price_id": None,
        "current_period_end": None,
    }


def _render(composable: sql.Composable) -> str:
    """Flatten a composed statement to text with unquoted identifiers."""

    if isinstance(composable, sql.Composed):
        return "".join(_render(part) for part in composable.seq)
    if isinstance(composable, sql.Identifier):
        return ".".join(composable.strings)
    if isinstance(composable, sql.Literal):
        return f"'{composable.wrapped}'"
    return composable.string


def _settled() -> EntitlementUpdate:
    return EntitlementUpdate(
        status=EntitlementStatus.ACTIVE,
        authority=Authority.INVOICE,
        category="invoice_settled",
        customer_id="cus_1",
        subscription_id=FieldChange.set("sub_1"),
        price_id=FieldChange.set("price_monthly"),
        current_period_end=FieldChange.set(STAMP),
    )


def _lifetime() -> EntitlementUpdate:
    return EntitlementUpdate(
        status=EntitlementStatus.LIFETIME,
        authority=Authority.LIFETIME_GRANT,
        category="one_time_checkout_completed",
        customer_id="cus_1",
        subscription_id=FieldChange.clear(),
        price_id=FieldChange.set("price_lifetime"),
        current_period_end=FieldChange.clear(),
    )


LOCKED = "billing_entitlements.status = 'lifetime'"


def test_build_upsert_keeps_sets_and_clears_columns():
    statement = build_upsert(_payment_failed())
    text = _render(statement)

    assert isinstance(statement, sql.Composed)
    assert "ON CONFLICT (user_id) DO UPDATE SET" in text
    assert "customer_id = COALESCE(billing_entitlements.customer_id, EXCLUDED.customer_id)" in text
    assert f"status = CASE WHEN {LOCKED} THEN billing_entitlements.status ELSE EXCLUDED.status END" in text
    assert (
        f"subscription_id = CASE WHEN {LOCKED} THEN billing_entitlements.subscription_id"
        " ELSE EXCLUDED.subscription_id END"
    ) in text
    assert f"price_id = CASE WHEN {LOCKED} THEN billing_entitlements.price_id ELSE NULL END" in text
    assert (
        f"current_period_end = CASE WHEN {LOCKED} THEN billing_entitlements.current_period_end"
        " ELSE billing_entitlements.current_period_end END"
    ) in text


def test_build_upsert_refreshes_timestamp_only_on_change():
    text = _render(build_upsert(_payment_failed()))

    assert "updated_at = CASE WHEN ROW(" in text
    assert (
        ") IS DISTINCT FROM ROW(billing_entitlements.customer_id, billing_entitlements.status,"
        " billing_entitlements.subscription_id, billing_entitlements.price_id,"
        " billing_entitlements.current_period_end) THEN NOW() ELSE billing_entitlements.updated_at END"
    ) in text


def test_build_upsert_never_moves_period_end_backwards():
    text = _render(build_upsert(_settled()))

    assert (
        f"current_period_end = CASE WHEN {LOCKED} THEN billing_entitlements.current_period_end"
        " ELSE GREATEST(billing_entitlements.current_period_end, EXCLUDED.current_period_end) END"
    ) in text


def test_build_upsert_lifetime_grant_is_never_locked_out():
    text = _render(build_upsert(_lifetime()))

    assert LOCKED not in text
    assert "status = CASE WHEN FALSE THEN billing_entitlements.status ELSE EXCLUDED.status END" in text
    assert (
        "subscription_id = CASE WHEN FALSE THEN billing_entitlements.subscription_id ELSE NULL END"
    ) in text
    assert (
        "current_period_end = CASE WHEN FALSE THEN billing_entitlements.current_period_end ELSE NULL END"
    ) in text


def test_attach_customer_returns_stored_id():
    cursor = FakeCursor([{"customer_id": "cus_first"}])
    repository = PostgresEntitlementRepository(conn=FakeConnection(cursor))

    assert repository.attach_customer("u1", "cus_second") == "cus_first"
    assert cursor.executed[0][1] == ("u1", "cus_second", "inactive")


def test_database_errors_become_unavailable():
    cursor = FakeCursor([], error=psycopg2.OperationalError("connection lost"))
    repository = PostgresEntitlementRepository(conn=FakeConnection(cursor))

    with pytest.raises(Unavailable):
        repository.apply_update("u1", _payment_failed())
    assert cursor.closed
