"""Payment outcome state machine and resolution pass orchestration."""
import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Optional

from checkout_common.exceptions import CheckoutError

from .collaborators import CatalogService, PurchaseStore, TransactionGateway
from .free_access import FreeAccessGranter
from .purchase_resolver import PurchaseSet, PurchaseSetResolver
from .schemas import (
    TERMINAL_OUTCOMES,
    OutcomeStatus,
    PlaceholderEntity,
    PurchaseStatus,
    RedirectParams,
    ResolutionContext,
    ResolvedOutcome,
    Transaction,
    TransactionStatus,
)
from .transaction_locator import LocatedTransaction, TransactionLocator

logger = logging.getLogger(__name__)

# Outcomes kept for the most recently resolved keys
LATEST_OUTCOME_LIMIT = 1000

STILL_SYNCING_NOTE = "Payment received, purchase details are still syncing"

# Purchase statuses the pending safeguard may overwrite
SAFEGUARD_STATUSES = {PurchaseStatus.CART, PurchaseStatus.PENDING}


@dataclass
class ReconciledStatus:
    """Outcome status decided by the reconciler."""

    status: OutcomeStatus
    note: Optional[str] = None
    awaiting_confirmation: bool = False
    fallback_applied: bool = False


class StatusReconciler:
    """
    Combines redirect evidence, recorded status and gateway polls.

    Priority:
        1. race suspected -> safeguard purchases, poll the gateway, adopt result
        2. recorded terminal status
        3. recorded pending status (token -> success)
        4. nothing located -> completed own purchase, token, then terminal
           redirect status, else unknown

    A confirmation token is positive evidence: with a token present no
    path produces FAILURE.
    """

    def __init__(self, gateway: TransactionGateway, purchases: PurchaseStore):
        self.gateway = gateway
        self.purchases = purchases

    async def reconcile(
        self,
        located: LocatedTransaction,
        purchase_set: PurchaseSet,
        params: RedirectParams,
    ) -> ReconciledStatus:
        if purchase_set.subscription_status is not None:
            if purchase_set.subscription_status == OutcomeStatus.FAILURE and params.confirmation_token:
                logger.warning("Subscription failed but redirect carries a confirmation token")
                return ReconciledStatus(OutcomeStatus.PENDING, awaiting_confirmation=True)
            return ReconciledStatus(purchase_set.subscription_status)

        transaction = located.transaction
        if transaction is not None:
            if located.race_suspected:
                return await self._resolve_race(transaction, purchase_set, params)

            status = self.map_recorded_status(transaction.payment_status.value, params)
            return ReconciledStatus(
                status,
                awaiting_confirmation=(
                    transaction.payment_status == TransactionStatus.PENDING
                    or status == OutcomeStatus.PENDING
                ),
            )

        if located.legacy_purchase is not None:
            return ReconciledStatus(
                self.map_recorded_status(located.legacy_purchase.payment_status.value, params)
            )

        # Free items resolve to the buyer's own purchases
        if any(p.is_completed for p in purchase_set.purchases):
            return ReconciledStatus(OutcomeStatus.SUCCESS)

        status = self.map_unlocated(params)
        note = STILL_SYNCING_NOTE if located.error and status == OutcomeStatus.SUCCESS else None
        return ReconciledStatus(status, note=note)

    def map_recorded_status(self, recorded: str, params: RedirectParams) -> OutcomeStatus:
        """Map a transaction or purchase status recorded by the platform."""
        outcome = TERMINAL_OUTCOMES.get(recorded)

        if outcome is None:
            if recorded == TransactionStatus.PENDING.value:
                return OutcomeStatus.SUCCESS if params.confirmation_token else OutcomeStatus.PENDING
            return OutcomeStatus.UNKNOWN

        if outcome != OutcomeStatus.SUCCESS and params.confirmation_token:
            logger.warning(
                f"Recorded status {recorded} conflicts with confirmation token, "
                "keeping outcome pending"
            )
            return OutcomeStatus.PENDING

        return outcome

    def map_unlocated(self, params: RedirectParams) -> OutcomeStatus:
        """Outcome when no transaction or purchase could be located."""
        if params.confirmation_token:
            return OutcomeStatus.SUCCESS

        if params.raw_status in {s.value for s in TERMINAL_OUTCOMES.values()}:
            return OutcomeStatus(params.raw_status)

        return OutcomeStatus.UNKNOWN

    async def _resolve_race(
        self,
        transaction: Transaction,
        purchase_set: PurchaseSet,
        params: RedirectParams,
    ) -> ReconciledStatus:
        await self._safeguard_purchases(purchase_set)

        try:
            poll = await self.gateway.poll_transaction_status(transaction.id)
        except CheckoutError as e:
            logger.error(f"Error polling transaction {transaction.id}: {str(e)}")
            return ReconciledStatus(
                OutcomeStatus.SUCCESS,
                note=STILL_SYNCING_NOTE,
                awaiting_confirmation=True,
            )

        logger.info(
            f"Polled transaction {transaction.id}: status={poll.status.value}, "
            f"confirmed={poll.confirmed}"
        )

        fallback_applied = False
        if poll.status == TransactionStatus.COMPLETED or (
            poll.confirmed and poll.status == TransactionStatus.PENDING
        ):
            fallback_applied = await self._apply_fallback_write(transaction, params.confirmation_token)
            return ReconciledStatus(OutcomeStatus.SUCCESS, fallback_applied=fallback_applied)

        status = self.map_recorded_status(poll.status.value, params)
        return ReconciledStatus(
            status,
            awaiting_confirmation=poll.status == TransactionStatus.PENDING or status == OutcomeStatus.PENDING,
        )

    async def _safeguard_purchases(self, purchase_set: PurchaseSet):
        """Flag in-flight purchases pending so cleanup jobs leave them alone."""
        to_flag = [p for p in purchase_set.purchases if p.payment_status in SAFEGUARD_STATUSES]
        if not to_flag:
            return

        try:
            await self.purchases.mark_pending([p.id for p in to_flag])
        except CheckoutError as e:
            logger.error(f"Error flagging purchases pending: {str(e)}")
            return

        for purchase in to_flag:
            purchase.payment_status = PurchaseStatus.PENDING

        logger.info(f"Flagged {len(to_flag)} purchase(s) pending")

    async def _apply_fallback_write(self, transaction: Transaction, confirmation_token: str) -> bool:
        if transaction.payment_status != TransactionStatus.PENDING:
            return False

        try:
            applied = await self.gateway.confirm_transaction(transaction.id, confirmation_token)
        except CheckoutError as e:
            logger.warning(f"Could not confirm transaction {transaction.id}: {str(e)}")
            return False

        if applied:
            transaction.payment_status = TransactionStatus.COMPLETED
            transaction.confirmation_token = confirmation_token
            logger.info(f"Transaction {transaction.id} confirmed via fallback write")

        return applied


class PaymentOutcomeResolver:
    """
    Runs full resolution passes.

    Passes sharing a resolution key never interleave: a second request
    waits for the in-flight pass and then runs in full, so the last
    full resolution wins.
    """

    def __init__(
        self,
        gateway: TransactionGateway,
        purchases: PurchaseStore,
        catalog: CatalogService,
        success_redirect_seconds: Optional[int] = None,
        latest_outcome_limit: int = LATEST_OUTCOME_LIMIT,
    ):
        self.locator = TransactionLocator(gateway, purchases)
        self.purchase_resolver = PurchaseSetResolver(purchases, catalog)
        self.reconciler = StatusReconciler(gateway, purchases)
        self.granter = FreeAccessGranter(purchases)
        self.success_redirect_seconds = success_redirect_seconds
        self.latest_outcome_limit = latest_outcome_limit
        self.latest_outcome: "OrderedDict[str, ResolvedOutcome]" = OrderedDict()
        # Locks exist only while a pass for the key is running or waiting
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = {}

    async def resolve(
        self,
        params: RedirectParams,
        context: Optional[ResolutionContext] = None,
    ) -> ResolvedOutcome:
        """Resolve the outcome of one gateway redirect."""
        context = context or ResolutionContext()
        key = params.resolution_key

        if key is None:
            return await self._resolve_pass(params, context)

        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_holders[key] = self._lock_holders.get(key, 0) + 1
        try:
            async with lock:
                outcome = await self._resolve_pass(params, context)
                self._remember(key, outcome)
        finally:
            self._lock_holders[key] -= 1
            if not self._lock_holders[key]:
                del self._lock_holders[key]
                del self._locks[key]

        return outcome

    def _remember(self, key: str, outcome: ResolvedOutcome):
        self.latest_outcome[key] = outcome
        self.latest_outcome.move_to_end(key)
        while len(self.latest_outcome) > self.latest_outcome_limit:
            self.latest_outcome.popitem(last=False)

    async def resolve_transaction(
        self,
        transaction_id: str,
        page_request_id: Optional[str] = None,
        context: Optional[ResolutionContext] = None,
    ) -> ResolvedOutcome:
        """Fresh pass for a known transaction, used by the poller."""
        params = RedirectParams(page_request_id=page_request_id, order_id=transaction_id)
        return await self.resolve(params, context)

    async def _resolve_pass(self, params: RedirectParams, context: ResolutionContext) -> ResolvedOutcome:
        try:
            located = await self.locator.locate(params)
            purchase_set = await self.purchase_resolver.resolve(located, params, context)
            reconciled = await self.reconciler.reconcile(located, purchase_set, params)

            auto_granted = None
            if located.transaction is None and reconciled.status not in (
                OutcomeStatus.FAILURE,
                OutcomeStatus.CANCEL,
            ):
                auto_granted = await self.granter.grant_if_free(
                    purchase_set.primary_entity, purchase_set, context
                )
                if auto_granted is not None:
                    reconciled.status = OutcomeStatus.SUCCESS

        except CheckoutError as e:
            logger.error(f"Error resolving payment outcome: {str(e)}", exc_info=True)
            return self._error_outcome(params)

        if purchase_set.errors and reconciled.status == OutcomeStatus.SUCCESS:
            reconciled.note = reconciled.note or STILL_SYNCING_NOTE

        outcome = self._build_outcome(params, located, purchase_set, reconciled, auto_granted is not None)

        logger.info(
            f"Resolved payment outcome {outcome.status.value} "
            f"(transaction={outcome.transaction_id}, purchases={outcome.purchase_count})"
        )
        return outcome

    def _build_outcome(
        self,
        params: RedirectParams,
        located: LocatedTransaction,
        purchase_set: PurchaseSet,
        reconciled: ReconciledStatus,
        auto_granted: bool,
    ) -> ResolvedOutcome:
        primary_entity = purchase_set.primary_entity
        if primary_entity is None and reconciled.status == OutcomeStatus.SUCCESS:
            primary_entity = PlaceholderEntity(id=params.order_id or params.confirmation_token or "unknown")

        primary_purchase = purchase_set.primary_purchase
        transaction = located.transaction

        reference = None
        if primary_purchase is not None:
            reference = primary_purchase.metadata.get("transaction_uid") or primary_purchase.id
        if transaction is not None:
            reference = transaction.id
        reference = reference or params.order_id

        redirect_after_seconds = None
        if reconciled.status == OutcomeStatus.SUCCESS and purchase_set.product_id:
            redirect_after_seconds = self.success_redirect_seconds

        return ResolvedOutcome(
            status=reconciled.status,
            is_multi_product=purchase_set.is_multi_product,
            purchase_count=purchase_set.purchase_count,
            primary_purchase=primary_purchase,
            primary_entity=primary_entity,
            product_id=purchase_set.product_id,
            transaction_id=transaction.id if transaction else None,
            page_request_id=(transaction.page_request_uid if transaction else None) or params.page_request_id,
            purchases=purchase_set.purchases,
            entities=purchase_set.entities,
            is_free=params.is_free or auto_granted,
            auto_granted=auto_granted,
            race_suspected=located.race_suspected,
            awaiting_confirmation=reconciled.awaiting_confirmation,
            note=reconciled.note,
            reference=reference,
            redirect_after_seconds=redirect_after_seconds,
        )

    def _error_outcome(self, params: RedirectParams) -> ResolvedOutcome:
        if params.has_success_evidence:
            return ResolvedOutcome(
                status=OutcomeStatus.SUCCESS,
                primary_entity=PlaceholderEntity(id=params.order_id or params.confirmation_token or "unknown"),
                note=STILL_SYNCING_NOTE,
                reference=params.order_id,
                is_free=params.is_free,
            )
        return ResolvedOutcome(status=OutcomeStatus.UNKNOWN, reference=params.order_id)
