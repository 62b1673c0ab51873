"""Idempotent access grants for zero-price items."""
import logging
from typing import Optional

from .collaborators import PurchaseStore
from .purchase_resolver import PurchaseSet
from .schemas import PlaceholderEntity, PurchasableEntity, Purchase, PurchaseStatus, ResolutionContext

logger = logging.getLogger(__name__)


class FreeAccessGranter:
    """Creates completed purchases for free items without a gateway round-trip."""

    def __init__(self, purchases: PurchaseStore):
        self.purchases = purchases

    async def grant_if_free(
        self,
        entity: Optional[PurchasableEntity],
        purchase_set: PurchaseSet,
        context: ResolutionContext,
    ) -> Optional[Purchase]:
        """
        Grant lifetime access to a zero-price entity.

        The existence check runs against the purchase set of the current
        pass, and the created purchase is appended to it, so repeating the
        call never creates a second purchase.

        Returns:
            The created purchase, or None when nothing was granted
        """
        if entity is None or isinstance(entity, PlaceholderEntity) or not entity.is_free:
            return None

        if not context.user_id:
            logger.info(f"Skipping free grant for {entity.entity_type} {entity.id}: no user")
            return None

        if purchase_set.has_completed_purchase_for(entity):
            logger.info(
                f"User {context.user_id} already has access to {entity.entity_type} {entity.id}"
            )
            return None

        metadata = {
            "auto_granted": True,
            "created_via": "free_access",
            "entity_title": entity.title,
        }
        if context.pending_teacher_id:
            metadata["teacher_id"] = context.pending_teacher_id

        purchase = await self.purchases.create_purchase({
            "buyer_user_id": context.user_id,
            "purchasable_type": entity.entity_type,
            "purchasable_id": entity.id,
            "payment_status": PurchaseStatus.COMPLETED.value,
            "payment_method": "free",
            "payment_amount": 0,
            "original_price": 0,
            "discount_amount": 0,
            "access_expires_at": None,
            "metadata": metadata,
        })

        purchase_set.purchases.append(purchase)

        logger.info(
            f"Granted free access to {entity.entity_type} {entity.id} "
            f"for user {context.user_id} (purchase {purchase.id})"
        )
        return purchase
