from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Optional

import pytest

from stayfunded.app.entitlements import (
    EntitlementRecord,
    EntitlementService,
    EntitlementStatus,
    PlanLabel,
)

PERIOD_END = datetime(2025, 3, 1, tzinfo=timezone.utc)


class FakeEntitlementRepository:
    def __init__(self) -> None:
        self._records: Dict[str, EntitlementRecord] = {}

    def add(self, record: EntitlementRecord) -> None:
        self._records[record.user_id] = record

    def get_entitlement(self, user_id: str) -> Optional[EntitlementRecord]:
        return self._records.get(user_id)


@pytest.fixture
def repository() -> FakeEntitlementRepository:
    return FakeEntitlementRepository()


@pytest.fixture
def entitlement_service(repository) -> EntitlementService:
    return EntitlementService(repository)


def test_missing_record_reads_as_inactive(entitlement_service):
    record = entitlement_service.get_entitlement("u_new")

    assert record.user_id == "u_new"
    assert record.status == EntitlementStatus.INACTIVE
    assert not entitlement_service.has_access("u_new")


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        (EntitlementStatus.ACTIVE, True),
        (EntitlementStatus.PAST_DUE, True),
        (EntitlementStatus.LIFETIME, True),
        (EntitlementStatus.INCOMPLETE, False),
        (EntitlementStatus.CANCELED, False),
        (EntitlementStatus.INACTIVE, False),
        (EntitlementStatus.UNKNOWN, False),
    ],
)
def test_access_by_status(repository, entitlement_service, status, expected):
    repository.add(EntitlementRecord(user_id="u1", status=status))

    assert entitlement_service.has_access("u1") is expected


def test_monthly_summary(repository, entitlement_service):
    repository.add(
        EntitlementRecord(
            user_id="u1",
            customer_id="cus_1",
            subscription_id="sub_1",
            status=EntitlementStatus.PAST_DUE,
            current_period_end=PERIOD_END,
        )
    )

    summary = entitlement_service.summarize("u1")

    assert summary.plan_label == PlanLabel.FOUNDER_MONTHLY
    assert summary.has_access
    assert summary.current_period_end == PERIOD_END
    assert summary.portal_eligible
    assert summary.monthly_is_current
    assert not summary.lifetime_is_current


def test_lifetime_summary_hides_portal(repository, entitlement_service):
    repository.add(
        EntitlementRecord(user_id="u2", customer_id="cus_2", status=EntitlementStatus.LIFETIME)
    )

    summary = entitlement_service.summarize("u2")

    assert summary.plan_label == PlanLabel.FOUNDER_LIFETIME
    assert summary.lifetime_is_current
    assert not summary.portal_eligible
    assert summary.current_period_end is None


def test_canceled_subscriber_keeps_monthly_label_without_access(repository, entitlement_service):
    repository.add(
        EntitlementRecord(user_id="u3", customer_id="cus_3", status=EntitlementStatus.CANCELED)
    )

    summary = entitlement_service.summarize("u3")

    assert summary.plan_label == PlanLabel.FOUNDER_MONTHLY
    assert not summary.has_access
    assert not summary.monthly_is_current
    assert summary.portal_eligible


def test_free_summary(entitlement_service):
    summary = entitlement_service.summarize("u_new")

    assert summary.plan_label == PlanLabel.FREE
    assert not summary.portal_eligible
