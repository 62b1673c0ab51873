"""Locates the transaction behind a gateway redirect."""
import logging
from dataclasses import dataclass
from typing import Optional

from checkout_common.exceptions import CheckoutError

from .collaborators import PurchaseStore, TransactionGateway
from .schemas import Purchase, RedirectParams, Transaction, TransactionStatus

logger = logging.getLogger(__name__)

TRANSACTION_PREFIX = "txn_"
PURCHASE_PREFIX = "pur_"


@dataclass
class LocatedTransaction:
    """Lookup result handed to the purchase set resolver."""

    transaction: Optional[Transaction] = None
    legacy_purchase: Optional[Purchase] = None  # purchase without a transaction
    race_suspected: bool = False
    matched_by: Optional[str] = None
    error: Optional[CheckoutError] = None

    @property
    def found(self) -> bool:
        return self.transaction is not None or self.legacy_purchase is not None


class TransactionLocator:
    """Resolves redirect parameters to one transaction, first match wins."""

    def __init__(self, gateway: TransactionGateway, purchases: PurchaseStore):
        self.gateway = gateway
        self.purchases = purchases

    async def locate(self, params: RedirectParams) -> LocatedTransaction:
        """
        Find the transaction for a redirect.

        Lookup order:
            1. gateway page-request id
            2. order id as transaction id, purchase id, then legacy metadata uid

        Lookup errors are recorded on the result instead of raised.
        """
        located = LocatedTransaction()

        try:
            if params.page_request_id:
                transaction = await self.gateway.lookup_by_page_request_id(params.page_request_id)
                if transaction:
                    located.transaction = transaction
                    located.matched_by = "page_request_id"
                    located.race_suspected = (
                        transaction.payment_status == TransactionStatus.PENDING
                        and bool(params.confirmation_token)
                    )
                    if located.race_suspected:
                        logger.warning(
                            f"Transaction {transaction.id} still pending but redirect carries "
                            "a confirmation token, webhook may be delayed"
                        )
                    return located

                logger.warning(f"No transaction for page request {params.page_request_id}")

            if params.order_id:
                await self._locate_by_order(params.order_id, located)

        except CheckoutError as e:
            logger.error(f"Error locating transaction: {str(e)}", exc_info=True)
            located.error = e

        if not located.found:
            logger.info("No transaction located for redirect")

        return located

    async def _locate_by_order(self, order_id: str, located: LocatedTransaction):
        if order_id.startswith(TRANSACTION_PREFIX):
            transaction = await self.gateway.lookup_by_transaction_id(order_id)
            if transaction:
                located.transaction = transaction
                located.matched_by = "transaction_id"
                return

        if order_id.startswith(PURCHASE_PREFIX):
            purchase = await self.purchases.get_purchase(order_id)
            if purchase:
                await self._attach_purchase(purchase, located, "purchase_id")
                return

        legacy = await self.purchases.find_by_legacy_uid(order_id)
        if legacy:
            await self._attach_purchase(legacy[0], located, "legacy_uid")

    async def _attach_purchase(self, purchase: Purchase, located: LocatedTransaction, matched_by: str):
        located.matched_by = matched_by

        if purchase.transaction_id:
            transaction = await self.gateway.lookup_by_transaction_id(purchase.transaction_id)
            if transaction:
                located.transaction = transaction
                return

        located.legacy_purchase = purchase
