"""Loads the purchases of a transaction and the catalog entities they reference."""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from pydantic import ValidationError

from checkout_common.exceptions import CheckoutError

from .collaborators import CatalogService, PurchaseStore
from .schemas import (
    PURCHASABLE_TYPES,
    OutcomeStatus,
    PlaceholderEntity,
    PurchasableEntity,
    Purchase,
    RedirectParams,
    ResolutionContext,
    Subscription,
    SubscriptionPlan,
)
from .transaction_locator import LocatedTransaction

logger = logging.getLogger(__name__)

LEGACY_DEFAULT_TYPE = "workshop"
LEGACY_FALLBACK_TYPE = "game"


@dataclass
class PurchaseSet:
    """All purchases of one transaction plus their resolved entities."""

    purchases: List[Purchase] = field(default_factory=list)
    entities: List[PurchasableEntity] = field(default_factory=list)
    primary_entity: Optional[PurchasableEntity] = None
    product_id: Optional[str] = None
    subscription_status: Optional[OutcomeStatus] = None
    errors: List[CheckoutError] = field(default_factory=list)

    @property
    def purchase_count(self) -> int:
        return len(self.purchases)

    @property
    def is_multi_product(self) -> bool:
        return self.purchase_count > 1

    @property
    def primary_purchase(self) -> Optional[Purchase]:
        return self.purchases[0] if self.purchases else None

    def has_completed_purchase_for(self, entity: PurchasableEntity) -> bool:
        return any(
            p.is_completed and p.refers_to(entity.entity_type, entity.id)
            for p in self.purchases
        )


def subscription_outcome(subscription: Subscription, params: RedirectParams) -> OutcomeStatus:
    """Map a subscription's own status onto an outcome."""
    if subscription.status == "active":
        return OutcomeStatus.SUCCESS
    if subscription.status == "failed":
        return OutcomeStatus.FAILURE
    if subscription.status == "pending":
        return OutcomeStatus.SUCCESS if params.confirmation_token else OutcomeStatus.PENDING
    return OutcomeStatus.UNKNOWN


class PurchaseSetResolver:
    """Resolves a located transaction into purchases and catalog entities."""

    def __init__(self, purchases: PurchaseStore, catalog: CatalogService):
        self.purchases = purchases
        self.catalog = catalog

    async def resolve(
        self,
        located: LocatedTransaction,
        params: RedirectParams,
        context: ResolutionContext,
    ) -> PurchaseSet:
        """
        Load every purchase of the located transaction.

        Missing or unknown entities become placeholders; a failed catalog
        lookup never fails the resolution.
        """
        purchase_set = PurchaseSet()
        transaction = located.transaction

        if transaction is not None:
            try:
                purchase_set.purchases = await self.purchases.find_by_transaction(transaction.id)
            except CheckoutError as e:
                logger.error(f"Error loading purchases of {transaction.id}: {str(e)}")
                purchase_set.errors.append(e)

            if transaction.subscription_id:
                await self._resolve_subscription(transaction.subscription_id, params, purchase_set)
                return purchase_set

        elif located.legacy_purchase is not None:
            purchase_set.purchases = [located.legacy_purchase]

        elif params.is_free and params.order_id:
            await self._resolve_free_item(params, context, purchase_set)
            return purchase_set

        for purchase in purchase_set.purchases:
            purchase_set.entities.append(await self._resolve_entity(purchase, params, purchase_set))

        if purchase_set.entities:
            purchase_set.primary_entity = purchase_set.entities[0]
            purchase_set.product_id = await self._find_product_id(purchase_set.primary_entity, purchase_set)

        if purchase_set.product_id is None and purchase_set.primary_purchase:
            purchase_set.product_id = purchase_set.primary_purchase.product_id

        logger.info(
            f"Resolved {purchase_set.purchase_count} purchase(s) "
            f"for {transaction.id if transaction else 'legacy record'}"
        )
        return purchase_set

    async def load_entity(
        self,
        entity_type: str,
        entity_id: str,
        purchase_set: Optional[PurchaseSet] = None,
    ) -> PurchasableEntity:
        """Load one entity through the purchasable type dispatch table."""
        entity_class = PURCHASABLE_TYPES.get(entity_type)
        if entity_class is None:
            logger.warning(f"Unknown purchasable type {entity_type} for {entity_id}")
            return PlaceholderEntity(id=entity_id, requested_type=entity_type)

        try:
            data = await self.catalog.find_by_id(entity_type, entity_id)
        except CheckoutError as e:
            logger.error(f"Error loading {entity_type} {entity_id}: {str(e)}")
            if purchase_set is not None:
                purchase_set.errors.append(e)
            data = None

        if not data:
            return PlaceholderEntity(id=entity_id, requested_type=entity_type)

        try:
            return entity_class.model_validate({**data, "id": entity_id, "entity_type": entity_type})
        except ValidationError as e:
            logger.warning(f"Invalid {entity_type} data for {entity_id}: {str(e)}")
            return PlaceholderEntity(id=entity_id, requested_type=entity_type)

    def item_type(self, params: RedirectParams) -> str:
        if params.item_type_hint in PURCHASABLE_TYPES:
            return params.item_type_hint
        return LEGACY_DEFAULT_TYPE

    async def _resolve_entity(
        self,
        purchase: Purchase,
        params: RedirectParams,
        purchase_set: PurchaseSet,
    ) -> PurchasableEntity:
        if purchase.is_polymorphic:
            return await self.load_entity(purchase.purchasable_type, purchase.purchasable_id, purchase_set)

        if purchase.product_id:
            # Legacy records carry a bare product id
            candidate_types = [self.item_type(params)]
            if LEGACY_FALLBACK_TYPE not in candidate_types:
                candidate_types.append(LEGACY_FALLBACK_TYPE)

            entity = None
            for entity_type in candidate_types:
                entity = await self.load_entity(entity_type, purchase.product_id, purchase_set)
                if not isinstance(entity, PlaceholderEntity):
                    return entity
            return entity

        return PlaceholderEntity(id=purchase.id)

    async def _resolve_free_item(
        self,
        params: RedirectParams,
        context: ResolutionContext,
        purchase_set: PurchaseSet,
    ):
        entity = await self.load_entity(self.item_type(params), params.order_id, purchase_set)
        purchase_set.primary_entity = entity
        purchase_set.entities = [entity]

        if context.user_id and not isinstance(entity, PlaceholderEntity):
            try:
                purchase_set.purchases = await self.purchases.find_for_buyer(
                    context.user_id, entity.entity_type, entity.id
                )
            except CheckoutError as e:
                logger.error(f"Error loading purchases of user {context.user_id}: {str(e)}")
                purchase_set.errors.append(e)

        purchase_set.product_id = await self._find_product_id(entity, purchase_set)

    async def _resolve_subscription(
        self,
        subscription_id: str,
        params: RedirectParams,
        purchase_set: PurchaseSet,
    ):
        try:
            subscription = await self.catalog.find_subscription(subscription_id)
            plan_data = None
            if subscription and subscription.plan_id:
                plan_data = await self.catalog.find_subscription_plan(subscription.plan_id)
        except CheckoutError as e:
            logger.error(f"Error loading subscription {subscription_id}: {str(e)}")
            purchase_set.errors.append(e)
            subscription, plan_data = None, None

        if subscription is None:
            logger.warning(f"Subscription {subscription_id} not found")
            purchase_set.primary_entity = PlaceholderEntity(id=subscription_id)
            return

        purchase_set.subscription_status = subscription_outcome(subscription, params)

        if plan_data:
            try:
                purchase_set.primary_entity = SubscriptionPlan.model_validate(plan_data)
            except ValidationError as e:
                logger.warning(f"Invalid subscription plan data: {str(e)}")

        if purchase_set.primary_entity is None:
            purchase_set.primary_entity = PlaceholderEntity(id=subscription.plan_id or subscription_id)

        purchase_set.entities = [purchase_set.primary_entity]

        logger.info(
            f"Subscription {subscription_id} is {subscription.status} "
            f"-> {purchase_set.subscription_status.value}"
        )

    async def _find_product_id(
        self,
        entity: PurchasableEntity,
        purchase_set: PurchaseSet,
    ) -> Optional[str]:
        if isinstance(entity, PlaceholderEntity):
            return None
        try:
            return await self.catalog.find_product_by_entity(entity.entity_type, entity.id)
        except CheckoutError as e:
            logger.warning(f"No product for {entity.entity_type} {entity.id}: {str(e)}")
            purchase_set.errors.append(e)
            return None
