"""Platform REST API client implementing the resolution collaborators."""
import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ValidationError

from checkout_common.exceptions import PlatformApiError

from .collaborators import CatalogService, IdentityProvider, PurchaseStore, TransactionGateway
from .schemas import PollResult, Purchase, PurchaseStatus, Subscription, Transaction

logger = logging.getLogger(__name__)


class PlatformApiClient(IdentityProvider, CatalogService, TransactionGateway, PurchaseStore):
    """Talks to the platform API on behalf of one authenticated user."""

    def __init__(self, http_client: httpx.AsyncClient, auth_token: Optional[str] = None):
        self.http_client = http_client
        self.auth_token = auth_token

    def with_token(self, auth_token: Optional[str]) -> "PlatformApiClient":
        """Client sharing the connection pool, scoped to another user."""
        return PlatformApiClient(self.http_client, auth_token)

    async def _request(
        self,
        method: str,
        path: str,
        allow_not_found: bool = True,
        **kwargs,
    ) -> Optional[Any]:
        headers = kwargs.pop("headers", {})
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"

        try:
            response = await self.http_client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise PlatformApiError(f"{method} {path} failed: {str(e)}") from e

        if response.status_code == 404 and allow_not_found:
            return None

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise PlatformApiError(
                f"{method} {path} returned {e.response.status_code}: {e.response.text}",
                status_code=e.response.status_code,
            ) from e

        if not response.content:
            return None

        try:
            return response.json()
        except ValueError as e:
            raise PlatformApiError(f"{method} {path} returned invalid JSON: {str(e)}") from e

    def _parse(self, model_class: type[BaseModel], data: Any, source: str) -> Any:
        try:
            return model_class.model_validate(data)
        except ValidationError as e:
            raise PlatformApiError(f"Invalid {model_class.__name__} from {source}: {str(e)}") from e

    # Identity

    async def current_user_id(self) -> Optional[str]:
        if not self.auth_token:
            return None
        try:
            data = await self._request("GET", "/auth/me")
        except PlatformApiError as e:
            if e.status_code in (401, 403):
                logger.info("User not authenticated")
                return None
            raise
        return data.get("id") if isinstance(data, dict) else None

    # Catalog

    async def find_by_id(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        data = await self._request("GET", f"/entities/{entity_type}/{entity_id}")
        if data is not None and not isinstance(data, dict):
            raise PlatformApiError(f"Invalid {entity_type} {entity_id}")
        return data

    async def find_product_by_entity(self, entity_type: str, entity_id: str) -> Optional[str]:
        products = await self._request(
            "GET",
            "/entities/product",
            params={"product_type": entity_type, "entity_id": entity_id},
        )
        if not products:
            logger.info(f"No product found for {entity_type}:{entity_id}")
            return None
        try:
            return products[0]["id"]
        except (KeyError, IndexError, TypeError) as e:
            raise PlatformApiError(f"Invalid product list for {entity_type}:{entity_id}") from e

    async def find_subscription(self, subscription_id: str) -> Optional[Subscription]:
        data = await self._request("GET", f"/entities/subscription/{subscription_id}")
        if not data:
            return None
        if not isinstance(data, dict):
            raise PlatformApiError(f"Invalid subscription {subscription_id}")
        return self._parse(
            Subscription,
            {
                "id": data.get("id"),
                "status": data.get("status"),
                "plan_id": data.get("subscription_plan_id") or data.get("plan_id"),
                "metadata": data.get("metadata") or {},
            },
            f"subscription {subscription_id}",
        )

    async def find_subscription_plan(self, plan_id: str) -> Optional[Dict[str, Any]]:
        return await self._request("GET", f"/entities/subscriptionplan/{plan_id}")

    # Transactions

    async def lookup_by_page_request_id(self, page_request_id: str) -> Optional[Transaction]:
        data = await self._request("GET", f"/payments/transactions/by-page-request/{page_request_id}")
        return self._parse(Transaction, data, "transaction lookup") if data else None

    async def lookup_by_transaction_id(self, transaction_id: str) -> Optional[Transaction]:
        data = await self._request("GET", f"/payments/transactions/{transaction_id}")
        return self._parse(Transaction, data, "transaction lookup") if data else None

    async def poll_transaction_status(self, transaction_id: str) -> PollResult:
        data = await self._request(
            "GET",
            f"/payments/transaction-status/{transaction_id}",
            allow_not_found=False,
        )
        return self._parse(PollResult, data, f"status of {transaction_id}")

    async def check_page_abandoned(self, page_request_id: str) -> bool:
        data = await self._request(
            "GET",
            f"/payments/payment-page-status/{page_request_id}",
            allow_not_found=False,
        )
        return isinstance(data, dict) and bool(data.get("abandoned"))

    async def confirm_transaction(self, transaction_id: str, confirmation_token: str) -> bool:
        data = await self._request(
            "POST",
            "/payments/update-status",
            allow_not_found=False,
            json={
                "transaction_id": transaction_id,
                "status": "completed",
                "confirmation_token": confirmation_token,
                "only_if_pending": True,
                "metadata": {"payment_completed_via_fallback": True},
            },
        )
        return isinstance(data, dict) and bool(data.get("updated"))

    # Purchases

    async def get_purchase(self, purchase_id: str) -> Optional[Purchase]:
        data = await self._request("GET", f"/entities/purchase/{purchase_id}")
        return self._parse(Purchase, data, f"purchase {purchase_id}") if data else None

    async def _filter_purchases(self, params: Dict[str, str]) -> List[Purchase]:
        data = await self._request("GET", "/entities/purchase", params=params)
        if data is not None and not isinstance(data, list):
            raise PlatformApiError(f"Invalid purchase list for {params}")
        return [self._parse(Purchase, item, "purchase list") for item in data or []]

    async def find_by_transaction(self, transaction_id: str) -> List[Purchase]:
        return await self._filter_purchases({"transaction_id": transaction_id})

    async def find_by_legacy_uid(self, transaction_uid: str) -> List[Purchase]:
        return await self._filter_purchases({"metadata.transaction_uid": transaction_uid})

    async def find_for_buyer(self, user_id: str, entity_type: str, entity_id: str) -> List[Purchase]:
        return await self._filter_purchases({
            "buyer_user_id": user_id,
            "purchasable_type": entity_type,
            "purchasable_id": entity_id,
        })

    async def mark_pending(self, purchase_ids: List[str]) -> None:
        for purchase_id in purchase_ids:
            await self._request(
                "PUT",
                f"/entities/purchase/{purchase_id}",
                allow_not_found=False,
                json={"payment_status": PurchaseStatus.PENDING.value},
            )

    async def revert_pending_to_cart(self, transaction_id: str) -> int:
        reverted = 0
        for purchase in await self.find_by_transaction(transaction_id):
            if purchase.payment_status != PurchaseStatus.PENDING:
                continue
            await self._request(
                "PUT",
                f"/entities/purchase/{purchase.id}",
                allow_not_found=False,
                json={"payment_status": PurchaseStatus.CART.value},
            )
            reverted += 1
        return reverted

    async def create_purchase(self, purchase_data: Dict[str, Any]) -> Purchase:
        data = await self._request(
            "POST",
            "/entities/purchase",
            allow_not_found=False,
            json=purchase_data,
        )
        return self._parse(Purchase, data, "created purchase")
