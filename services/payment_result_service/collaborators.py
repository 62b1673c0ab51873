"""Interfaces of the platform collaborators consulted during resolution."""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .schemas import PollResult, Purchase, Subscription, Transaction


class IdentityProvider(ABC):
    """Current authenticated identity."""

    @abstractmethod
    async def current_user_id(self) -> Optional[str]:
        """Return the authenticated user id, or None for anonymous users."""


class CatalogService(ABC):
    """Read-only access to purchasable catalog entities."""

    @abstractmethod
    async def find_by_id(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        """Raw entity data, or None if not found."""

    @abstractmethod
    async def find_product_by_entity(self, entity_type: str, entity_id: str) -> Optional[str]:
        """Catalog-facing product id wrapping the entity."""

    @abstractmethod
    async def find_subscription(self, subscription_id: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def find_subscription_plan(self, plan_id: str) -> Optional[Dict[str, Any]]:
        pass


class TransactionGateway(ABC):
    """Transaction records and gateway status checks."""

    @abstractmethod
    async def lookup_by_page_request_id(self, page_request_id: str) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def lookup_by_transaction_id(self, transaction_id: str) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def poll_transaction_status(self, transaction_id: str) -> PollResult:
        """Ask the gateway for the true status of a transaction."""

    @abstractmethod
    async def check_page_abandoned(self, page_request_id: str) -> bool:
        """True when the payment page expired or was never completed."""

    @abstractmethod
    async def confirm_transaction(self, transaction_id: str, confirmation_token: str) -> bool:
        """
        Mark a pending transaction completed when the webhook is late.

        Must not touch a transaction already in a terminal state.
        Returns True when the write was applied.
        """


class PurchaseStore(ABC):
    """Purchase records owned by the platform."""

    @abstractmethod
    async def get_purchase(self, purchase_id: str) -> Optional[Purchase]:
        pass

    @abstractmethod
    async def find_by_transaction(self, transaction_id: str) -> List[Purchase]:
        pass

    @abstractmethod
    async def find_by_legacy_uid(self, transaction_uid: str) -> List[Purchase]:
        """Purchases whose metadata carries a legacy transaction uid."""

    @abstractmethod
    async def find_for_buyer(self, user_id: str, entity_type: str, entity_id: str) -> List[Purchase]:
        pass

    @abstractmethod
    async def mark_pending(self, purchase_ids: List[str]) -> None:
        """Safeguard write protecting in-flight purchases from cleanup."""

    @abstractmethod
    async def revert_pending_to_cart(self, transaction_id: str) -> int:
        """Move the transaction's pending purchases back to the cart."""

    @abstractmethod
    async def create_purchase(self, purchase_data: Dict[str, Any]) -> Purchase:
        pass
