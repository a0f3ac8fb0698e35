"""Maps provider objects to internal user identities."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional, Protocol

from .errors import NotFound
from .payloads import dig, metadata_value, object_id

logger = logging.getLogger("billing.resolver")


class CustomerIndex(Protocol):
    """Persisted customer -> user lookup."""

    def find_user_by_customer(self, customer_id: str) -> Optional[str]:
        ...


class CustomerDirectory(Protocol):
    """Upstream customer fetch."""

    def retrieve_customer(self, customer_id: str) -> Mapping[str, Any]:
        ...


class ResolutionStrategy(str, Enum):
    """Lookup strategies, listed in precedence order."""

    OBJECT_METADATA = "object_metadata"
    CLIENT_REFERENCE = "client_reference"
    CUSTOMER_INDEX = "customer_index"
    CUSTOMER_METADATA = "customer_metadata"


@dataclass(frozen=True)
class Resolution:
    user_id: str
    strategy: ResolutionStrategy
    customer_id: Optional[str] = None


class EntityResolver:
    """Resolves the owning user of a provider object.

    The strategies form a precedence chain: the first one that yields a user
    is used exclusively, even when a later one would disagree.
    """

    def __init__(self, index: CustomerIndex, customers: CustomerDirectory) -> None:
        self._index = index
        self._customers = customers

    def resolve(self, data_object: Mapping[str, Any]) -> Resolution:
        customer_id = object_id(dig(data_object, "customer"))

        user_id = metadata_value(data_object, "user_id")
        if user_id:
            return self._found(user_id, ResolutionStrategy.OBJECT_METADATA, customer_id)

        reference = dig(data_object, "client_reference_id")
        if reference and str(reference).strip():
            return self._found(str(reference).strip(), ResolutionStrategy.CLIENT_REFERENCE, customer_id)

        if not customer_id:
            raise NotFound("Event object carries no user reference or customer")

        user_id = self._index.find_user_by_customer(customer_id)
        if user_id:
            return self._found(user_id, ResolutionStrategy.CUSTOMER_INDEX, customer_id)

        user_id = self._user_from_customer(customer_id)
        if user_id:
            return self._found(user_id, ResolutionStrategy.CUSTOMER_METADATA, customer_id)

        raise NotFound(f"No user is associated with customer {customer_id}")

    def _user_from_customer(self, customer_id: str) -> Optional[str]:
        try:
            customer = self._customers.retrieve_customer(customer_id)
        except NotFound:
            return None
        if dig(customer, "deleted"):
            return None
        return metadata_value(customer, "user_id")

    @staticmethod
    def _found(user_id: str, strategy: ResolutionStrategy, customer_id: Optional[str]) -> Resolution:
        logger.debug("Resolved user %s via %s (customer=%s)", user_id, strategy.value, customer_id)
        return Resolution(user_id=user_id, strategy=strategy, customer_id=customer_id)
