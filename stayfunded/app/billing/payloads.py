"""Accessors for provider objects that may be plain dicts or SDK objects."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional, Union

PathKey = Union[str, int]


def dig(source: Any, *path: PathKey, default: Any = None) -> Any:
    """Follow ``path`` through nested mappings and lists, returning ``default`` on a miss."""

    current = source
    for key in path:
        if current is None or isinstance(current, str):
            return default
        try:
            current = current[key]
        except (IndexError, KeyError, TypeError):
            return default
    return default if current is None else current


def object_id(value: Any) -> Optional[str]:
    """Return the identifier of an id-or-expanded-object reference."""

    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    identifier = dig(value, "id")
    return str(identifier) if identifier else None


def metadata_value(source: Any, key: str) -> Optional[str]:
    value = dig(source, "metadata", key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def from_unix(value: Any) -> Optional[datetime]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def price_id_of(item: Any) -> Optional[str]:
    """Price identifier of a line item or subscription item."""

    return (
        object_id(dig(item, "price"))
        or object_id(dig(item, "pricing", "price_details", "price"))
        or object_id(dig(item, "plan"))
    )


def first_line_item(source: Any, collection: str) -> Any:
    return dig(source, collection, "data", 0)


def invoice_subscription_id(invoice: Any) -> Optional[str]:
    return object_id(dig(invoice, "subscription")) or object_id(
        dig(invoice, "parent", "subscription_details", "subscription")
    )


def invoice_period_end(invoice: Any) -> Optional[datetime]:
    """Entitled-through instant: first line's period end, else the invoice's own."""

    line = first_line_item(invoice, "lines")
    return from_unix(dig(line, "period", "end")) or from_unix(dig(invoice, "period_end"))
