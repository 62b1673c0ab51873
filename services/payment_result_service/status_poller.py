"""
Background polling of transactions left pending after a gateway redirect.

The poller keeps a watchlist table of transactions the client believes
are pending and, on every tick:
1. Polls the gateway for the true transaction status
2. Re-runs a full resolution pass when the status turned terminal
3. Reverts pending purchases to the cart when the payment page was abandoned

Update events are delivered to subscriber queues in order. Nothing is
applied or delivered once the poller has been stopped.
"""
import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select

from checkout_common.events import (
    BaseEvent,
    ContinuePollingEvent,
    RevertedToCartEvent,
    StatusResolvedEvent,
)
from checkout_common.exceptions import CheckoutError
from checkout_common.message_broker import MessageBroker

from .collaborators import PurchaseStore, TransactionGateway
from .models import PendingCheck, PendingCheckStatus
from .reconciler import PaymentOutcomeResolver
from .schemas import PollResult, ResolutionContext, TransactionStatus

logger = logging.getLogger(__name__)


class PendingStatusPoller:
    """Re-checks pending transactions until they resolve or are abandoned."""

    def __init__(
        self,
        session_factory,
        gateway: TransactionGateway,
        purchases: PurchaseStore,
        resolver: PaymentOutcomeResolver,
        message_broker: Optional[MessageBroker] = None,
        poll_interval: float = 10.0,
        check_timeout: float = 5.0,
        batch_size: int = 100,
        checkout_redirect_delay: int = 3,
    ):
        """
        Initialize the poller.

        Args:
            session_factory: Async session factory for the watchlist table
            gateway: Transaction status collaborator
            purchases: Purchase store used to revert abandoned checkouts
            resolver: Runs fresh resolution passes on terminal status
            message_broker: Optional broker that also receives update events
            poll_interval: Seconds to wait between ticks
            check_timeout: Seconds allowed for each gateway call
            batch_size: Number of watched transactions checked per tick
            checkout_redirect_delay: Seconds before consumers route back to checkout
        """
        self.session_factory = session_factory
        self.gateway = gateway
        self.purchases = purchases
        self.resolver = resolver
        self.message_broker = message_broker
        self.poll_interval = poll_interval
        self.check_timeout = check_timeout
        self.batch_size = batch_size
        self.checkout_redirect_delay = checkout_redirect_delay
        self._running = False
        self._cancelled = False
        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._subscribers: List[asyncio.Queue] = []

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Start the poller."""
        if self._running:
            logger.warning("Pending-status poller already running")
            return

        self._running = True
        self._cancelled = False
        self._generation += 1
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("Pending-status poller started")

    async def stop(self):
        """Stop the poller and discard any in-flight check."""
        self._cancelled = True
        self._generation += 1
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Pending-status poller stopped")

    def subscribe(self) -> asyncio.Queue:
        """Queue receiving every update event in delivery order."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    async def watch(
        self,
        transaction_id: str,
        page_request_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ):
        """Add a transaction to the watchlist (no-op when already watched)."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(PendingCheck).where(PendingCheck.transaction_id == transaction_id)
            )
            check = result.scalar_one_or_none()

            if check is None:
                session.add(PendingCheck(
                    transaction_id=transaction_id,
                    page_request_id=page_request_id,
                    user_id=user_id,
                    status=PendingCheckStatus.WATCHING.value,
                    created_at=datetime.utcnow(),
                ))
                logger.info(f"Watching pending transaction {transaction_id}")
            elif check.status != PendingCheckStatus.WATCHING.value:
                check.status = PendingCheckStatus.WATCHING.value
                check.page_request_id = page_request_id or check.page_request_id
                check.user_id = user_id or check.user_id
                logger.info(f"Watching transaction {transaction_id} again")

            await session.commit()

    async def unwatch(self, transaction_id: str):
        """Remove a transaction from the watchlist."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(PendingCheck).where(PendingCheck.transaction_id == transaction_id)
            )
            check = result.scalar_one_or_none()
            if check is not None:
                await session.delete(check)
                await session.commit()
                logger.info(f"Stopped watching transaction {transaction_id}")

    async def list_watched(self) -> List[PendingCheck]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PendingCheck)
                .where(PendingCheck.status == PendingCheckStatus.WATCHING.value)
                .order_by(PendingCheck.created_at)
            )
            return list(result.scalars().all())

    async def _poll_loop(self):
        """Check the watchlist until stopped."""
        while self._running:
            try:
                await self.check_once()
            except Exception as e:
                logger.error(f"Error in pending-status poller: {str(e)}", exc_info=True)

            await asyncio.sleep(self.poll_interval)

    async def check_once(self) -> List[BaseEvent]:
        """
        Run one tick over the watchlist.

        Returns:
            Events delivered during this tick
        """
        generation = self._generation
        events: List[BaseEvent] = []

        if self._cancelled:
            return events

        async with self.session_factory() as session:
            result = await session.execute(
                select(PendingCheck)
                .where(PendingCheck.status == PendingCheckStatus.WATCHING.value)
                .order_by(PendingCheck.created_at)
                .limit(self.batch_size)
            )
            checks = result.scalars().all()

            if not checks:
                return events

            logger.info(f"Checking {len(checks)} pending transaction(s)")

            for check in checks:
                event = await self._check_transaction(check, generation)
                if not self._is_current(generation):
                    logger.info("Poller stopped during check, discarding results")
                    return []
                if event is not None:
                    events.append(event)

            await session.commit()

        delivered = []
        for event in events:
            if not self._is_current(generation):
                break
            await self._emit(event)
            delivered.append(event)

        return delivered

    def _is_current(self, generation: int) -> bool:
        return not self._cancelled and generation == self._generation

    async def _call(self, awaitable):
        return await asyncio.wait_for(awaitable, timeout=self.check_timeout)

    async def _check_transaction(self, check: PendingCheck, generation: int) -> Optional[BaseEvent]:
        check.check_count = (check.check_count or 0) + 1
        check.last_checked_at = datetime.utcnow()

        try:
            poll: PollResult = await self._call(
                self.gateway.poll_transaction_status(check.transaction_id)
            )
            abandoned = False
            if poll.status == TransactionStatus.PENDING and check.page_request_id:
                abandoned = await self._call(self.gateway.check_page_abandoned(check.page_request_id))
        except asyncio.TimeoutError:
            logger.warning(f"Status check for {check.transaction_id} timed out")
            check.last_error = "timeout"
            return None
        except CheckoutError as e:
            logger.warning(f"Status check for {check.transaction_id} failed: {str(e)}")
            check.last_error = str(e)
            return None

        if not self._is_current(generation):
            return None

        check.last_error = None
        check.last_known_status = poll.status.value

        if poll.status.is_terminal:
            return await self._handle_terminal(check, poll)

        if abandoned:
            return await self._handle_abandoned(check)

        return ContinuePollingEvent(
            transaction_id=check.transaction_id,
            new_status=poll.status.value,
            count=1,
        )

    async def _handle_terminal(self, check: PendingCheck, poll: PollResult) -> StatusResolvedEvent:
        logger.info(f"Transaction {check.transaction_id} is now {poll.status.value}, resolving")

        outcome = await self.resolver.resolve_transaction(
            check.transaction_id,
            page_request_id=check.page_request_id,
            context=ResolutionContext(user_id=check.user_id),
        )
        check.status = PendingCheckStatus.RESOLVED.value

        return StatusResolvedEvent(
            transaction_id=check.transaction_id,
            new_status=poll.status.value,
            count=outcome.purchase_count,
            outcome=outcome.model_dump(mode="json"),
        )

    async def _handle_abandoned(self, check: PendingCheck) -> Optional[RevertedToCartEvent]:
        try:
            reverted = await self.purchases.revert_pending_to_cart(check.transaction_id)
        except CheckoutError as e:
            logger.warning(f"Could not revert purchases of {check.transaction_id}: {str(e)}")
            check.last_error = str(e)
            return None

        check.status = PendingCheckStatus.REVERTED.value
        logger.info(
            f"Payment page for {check.transaction_id} abandoned, "
            f"reverted {reverted} purchase(s) to cart"
        )

        return RevertedToCartEvent(
            transaction_id=check.transaction_id,
            count=reverted,
            redirect_after_seconds=self.checkout_redirect_delay,
        )

    async def _emit(self, event: BaseEvent):
        for queue in list(self._subscribers):
            queue.put_nowait(event)

        if self.message_broker is not None:
            try:
                await self.message_broker.publish_event(event)
            except Exception as e:
                logger.error(f"Failed to publish event {event.event_id}: {str(e)}", exc_info=True)
