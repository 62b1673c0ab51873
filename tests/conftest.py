import os

# The app module builds its engine at import time
os.environ.setdefault("DATABASE_URL_OVERRIDE", "sqlite+aiosqlite:///:memory:")

from typing import Any, Dict, List, Optional, Set, Tuple  # noqa: E402

import pytest  # noqa: E402

from checkout_common.database import Database  # noqa: E402
from checkout_common.exceptions import PlatformApiError  # noqa: E402
from services.payment_result_service.collaborators import (  # noqa: E402
    CatalogService,
    IdentityProvider,
    PurchaseStore,
    TransactionGateway,
)
from services.payment_result_service.reconciler import PaymentOutcomeResolver  # noqa: E402
from services.payment_result_service.schemas import (  # noqa: E402
    PollResult,
    Purchase,
    PurchaseStatus,
    Subscription,
    Transaction,
    TransactionStatus,
)


class FakePlatform(IdentityProvider, CatalogService, TransactionGateway, PurchaseStore):
    """In-memory platform backing every collaborator interface."""

    def __init__(self):
        self.user_id: Optional[str] = None
        self.transactions: Dict[str, Transaction] = {}
        self.purchases: Dict[str, Purchase] = {}
        self.entities: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.products: Dict[Tuple[str, str], str] = {}
        self.subscriptions: Dict[str, Subscription] = {}
        self.plans: Dict[str, Dict[str, Any]] = {}
        self.poll_results: Dict[str, PollResult] = {}
        self.abandoned_pages: Set[str] = set()
        self.fail_on: Set[str] = set()
        self.calls: List[Tuple[str, tuple]] = []
        self._purchase_seq = 0

    # Test helpers

    def add_transaction(self, **kwargs) -> Transaction:
        transaction = Transaction(**kwargs)
        self.transactions[transaction.id] = transaction
        return transaction

    def add_purchase(self, **kwargs) -> Purchase:
        purchase = Purchase(**kwargs)
        self.purchases[purchase.id] = purchase
        return purchase

    def add_entity(self, entity_type: str, entity_id: str, product_id: Optional[str] = None, **data):
        self.entities[(entity_type, entity_id)] = {"id": entity_id, **data}
        if product_id:
            self.products[(entity_type, entity_id)] = product_id

    def called(self, name: str) -> List[tuple]:
        return [args for call, args in self.calls if call == name]

    def _record(self, name: str, *args):
        self.calls.append((name, args))
        if name in self.fail_on:
            raise PlatformApiError(f"{name} unavailable", status_code=503)

    # Identity

    async def current_user_id(self) -> Optional[str]:
        self._record("current_user_id")
        return self.user_id

    # Catalog

    async def find_by_id(self, entity_type, entity_id):
        self._record("find_by_id", entity_type, entity_id)
        data = self.entities.get((entity_type, entity_id))
        return dict(data) if data else None

    async def find_product_by_entity(self, entity_type, entity_id):
        self._record("find_product_by_entity", entity_type, entity_id)
        return self.products.get((entity_type, entity_id))

    async def find_subscription(self, subscription_id):
        self._record("find_subscription", subscription_id)
        return self.subscriptions.get(subscription_id)

    async def find_subscription_plan(self, plan_id):
        self._record("find_subscription_plan", plan_id)
        return self.plans.get(plan_id)

    # Transactions

    async def lookup_by_page_request_id(self, page_request_id):
        self._record("lookup_by_page_request_id", page_request_id)
        for transaction in self.transactions.values():
            if transaction.page_request_uid == page_request_id:
                return transaction.model_copy(deep=True)
        return None

    async def lookup_by_transaction_id(self, transaction_id):
        self._record("lookup_by_transaction_id", transaction_id)
        transaction = self.transactions.get(transaction_id)
        return transaction.model_copy(deep=True) if transaction else None

    async def poll_transaction_status(self, transaction_id):
        self._record("poll_transaction_status", transaction_id)
        if transaction_id in self.poll_results:
            return self.poll_results[transaction_id]
        return PollResult(status=self.transactions[transaction_id].payment_status)

    async def check_page_abandoned(self, page_request_id):
        self._record("check_page_abandoned", page_request_id)
        return page_request_id in self.abandoned_pages

    async def confirm_transaction(self, transaction_id, confirmation_token):
        self._record("confirm_transaction", transaction_id, confirmation_token)
        transaction = self.transactions[transaction_id]
        if transaction.payment_status != TransactionStatus.PENDING:
            return False
        transaction.payment_status = TransactionStatus.COMPLETED
        transaction.confirmation_token = confirmation_token
        return True

    # Purchases

    async def get_purchase(self, purchase_id):
        self._record("get_purchase", purchase_id)
        purchase = self.purchases.get(purchase_id)
        return purchase.model_copy(deep=True) if purchase else None

    async def find_by_transaction(self, transaction_id):
        self._record("find_by_transaction", transaction_id)
        return [
            p.model_copy(deep=True) for p in self.purchases.values()
            if p.transaction_id == transaction_id
        ]

    async def find_by_legacy_uid(self, transaction_uid):
        self._record("find_by_legacy_uid", transaction_uid)
        return [
            p.model_copy(deep=True) for p in self.purchases.values()
            if p.metadata.get("transaction_uid") == transaction_uid
        ]

    async def find_for_buyer(self, user_id, entity_type, entity_id):
        self._record("find_for_buyer", user_id, entity_type, entity_id)
        return [
            p.model_copy(deep=True) for p in self.purchases.values()
            if p.buyer_user_id == user_id and p.refers_to(entity_type, entity_id)
        ]

    async def mark_pending(self, purchase_ids):
        self._record("mark_pending", list(purchase_ids))
        for purchase_id in purchase_ids:
            self.purchases[purchase_id].payment_status = PurchaseStatus.PENDING

    async def revert_pending_to_cart(self, transaction_id):
        self._record("revert_pending_to_cart", transaction_id)
        reverted = 0
        for purchase in self.purchases.values():
            if purchase.transaction_id == transaction_id and purchase.payment_status == PurchaseStatus.PENDING:
                purchase.payment_status = PurchaseStatus.CART
                reverted += 1
        return reverted

    async def create_purchase(self, purchase_data):
        self._record("create_purchase", purchase_data)
        self._purchase_seq += 1
        purchase = Purchase.model_validate({"id": f"pur_auto_{self._purchase_seq}", **purchase_data})
        self.purchases[purchase.id] = purchase
        return purchase.model_copy(deep=True)


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def resolver(platform) -> PaymentOutcomeResolver:
    return PaymentOutcomeResolver(
        gateway=platform,
        purchases=platform,
        catalog=platform,
        success_redirect_seconds=10,
    )


@pytest.fixture
async def database(tmp_path):
    from services.payment_result_service.models import PendingCheck  # noqa: F401

    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'pending_checks.db'}")
    await db.create_tables()
    yield db
    await db.drop_tables()
    await db.close()
