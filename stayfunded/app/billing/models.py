"""Domain models for the billing reconciliation pipeline."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..entitlements.models import EntitlementRecord, EntitlementStatus


class ProviderEvent(BaseModel):
    """A verified provider event with its raw data object."""

    event_id: str
    event_type: str
    data_object: Dict[str, Any]
    created: Optional[datetime] = None
    livemode: bool = False

    model_config = ConfigDict(frozen=True)


class FieldAction(str, Enum):
    """What a partial update does to a single column."""

    KEEP = "keep"
    SET = "set"
    CLEAR = "clear"


FieldValue = Optional[Union[datetime, str]]


class FieldChange(BaseModel):
    """Change applied to one entitlement column."""

    action: FieldAction = FieldAction.KEEP
    value: FieldValue = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def keep(cls) -> "FieldChange":
        return cls()

    @classmethod
    def clear(cls) -> "FieldChange":
        return cls(action=FieldAction.CLEAR)

    @classmethod
    def set(cls, value: FieldValue) -> "FieldChange":
        if value is None:
            raise ValueError("use FieldChange.clear() to null a column")
        return cls(action=FieldAction.SET, value=value)

    @classmethod
    def set_if_present(cls, value: FieldValue) -> "FieldChange":
        """SET when a value is known, otherwise leave the column alone."""

        return cls.keep() if value is None else cls.set(value)

    @classmethod
    def replace_with(cls, value: FieldValue) -> "FieldChange":
        """SET when a value is known, otherwise null the column."""

        return cls.clear() if value is None else cls.set(value)

    def apply(self, current: FieldValue) -> FieldValue:
        if self.action == FieldAction.SET:
            return self.value
        if self.action == FieldAction.CLEAR:
            return None
        return current


class Authority(IntEnum):
    """Precedence rank of the event family that produced an update."""

    PROVISIONAL = 1
    SUBSCRIPTION = 2
    INVOICE = 3
    LIFETIME_GRANT = 4


class EntitlementUpdate(BaseModel):
    """Partial update computed from one provider event.

    ``status`` is always written. The remaining columns carry a
    :class:`FieldChange`. Only invoice settlement may set
    ``current_period_end`` and only a lifetime grant may clear it; once a row
    holds a lifetime grant, lower ranked updates may only fill a missing
    customer id.
    """

    status: EntitlementStatus
    authority: Authority
    category: str
    customer_id: Optional[str] = None
    subscription_id: FieldChange = Field(default_factory=FieldChange.keep)
    price_id: FieldChange = Field(default_factory=FieldChange.keep)
    current_period_end: FieldChange = Field(default_factory=FieldChange.keep)

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _check_authority(self) -> "EntitlementUpdate":
        period = self.current_period_end.action
        if period == FieldAction.SET and self.authority != Authority.INVOICE:
            raise ValueError("only invoice settlement may set current_period_end")
        if period == FieldAction.CLEAR and self.authority != Authority.LIFETIME_GRANT:
            raise ValueError("only a lifetime grant may clear current_period_end")
        is_lifetime = self.status == EntitlementStatus.LIFETIME
        if is_lifetime != (self.authority == Authority.LIFETIME_GRANT):
            raise ValueError("lifetime status requires lifetime grant authority")
        if is_lifetime and (
            self.subscription_id.action != FieldAction.CLEAR or period != FieldAction.CLEAR
        ):
            raise ValueError("lifetime grants must clear subscription and period end")
        return self

    def locked_by(self, existing: Optional[EntitlementRecord]) -> bool:
        """Whether ``existing`` holds a grant this update may not touch."""

        return (
            existing is not None
            and existing.status == EntitlementStatus.LIFETIME
            and self.authority < Authority.LIFETIME_GRANT
        )

    def _period_end(self, current: Optional[datetime]) -> Optional[datetime]:
        incoming = self.current_period_end.apply(current)
        if self.current_period_end.action == FieldAction.SET and current is not None:
            # settled periods only move forward; a redelivered older invoice keeps the later end
            return max(current, incoming)
        return incoming

    def merge(
        self,
        existing: Optional[EntitlementRecord],
        *,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> EntitlementRecord:
        """Return the record produced by applying this update to ``existing``.

        The result is identical to ``existing`` (``updated_at`` included) when
        nothing changes, so replaying an event is a no-op.
        """

        base = existing or EntitlementRecord(user_id=user_id)
        customer_id = base.customer_id or self.customer_id

        if self.locked_by(existing):
            candidate = base.model_copy(update={"customer_id": customer_id})
        else:
            candidate = base.model_copy(
                update={
                    "customer_id": customer_id,
                    "status": self.status,
                    "subscription_id": self.subscription_id.apply(base.subscription_id),
                    "price_id": self.price_id.apply(base.price_id),
                    "current_period_end": self._period_end(base.current_period_end),
                }
            )
        if existing is not None and candidate.model_dump() == existing.model_dump():
            return existing
        stamp = now or datetime.now(timezone.utc)
        return EntitlementRecord.model_validate(
            {**candidate.model_dump(), "updated_at": stamp}
        )


class WebhookResult(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    UNRESOLVED = "unresolved"


class WebhookOutcome(BaseModel):
    """Result of processing one webhook delivery."""

    event_id: str
    event_type: str
    result: WebhookResult
    user_id: Optional[str] = None
    entitlement: Optional[EntitlementRecord] = None

    model_config = ConfigDict(frozen=True)


class SessionRedirect(BaseModel):
    """Hosted provider session the caller should be redirected to."""

    session_id: Optional[str] = None
    url: str

    model_config = ConfigDict(frozen=True)


class BillingAuditEventType(str, Enum):
    """Audit event categories emitted by the billing subsystem."""

    ENTITLEMENT_UPDATED = "entitlement_updated"
    EVENT_IGNORED = "event_ignored"
    EVENT_UNRESOLVED = "event_unresolved"
    CUSTOMER_CREATED = "customer_created"
    CUSTOMER_CONFLICT = "customer_conflict"
    CHECKOUT_STARTED = "checkout_started"
    PORTAL_OPENED = "portal_opened"


class BillingAuditEvent(BaseModel):
    """Structured audit event for analytics and support."""

    event_type: BillingAuditEventType
    user_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)
