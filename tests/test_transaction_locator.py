from services.payment_result_service.schemas import RedirectParams, TransactionStatus
from services.payment_result_service.transaction_locator import TransactionLocator


class TestTransactionLocator:
    """Test suite for transaction lookup priority."""

    async def test_page_request_lookup_wins(self, platform):
        """Test that the page request id is tried first and stops the search."""
        platform.add_transaction(id="txn_1", page_request_uid="abc", payment_status="completed")
        platform.add_transaction(id="txn_2")
        locator = TransactionLocator(platform, platform)

        located = await locator.locate(RedirectParams(page_request_id="abc", order_id="txn_2"))

        assert located.transaction.id == "txn_1"
        assert located.matched_by == "page_request_id"
        assert located.race_suspected is False
        assert platform.called("lookup_by_transaction_id") == []

    async def test_race_suspected_for_pending_with_token(self, platform):
        """Test the webhook race flag."""
        platform.add_transaction(id="txn_1", page_request_uid="abc")
        locator = TransactionLocator(platform, platform)

        located = await locator.locate(RedirectParams(page_request_id="abc", confirmation_token="tok"))

        assert located.race_suspected is True

    async def test_no_race_without_token(self, platform):
        """Test that a pending transaction alone is not a race."""
        platform.add_transaction(id="txn_1", page_request_uid="abc")
        locator = TransactionLocator(platform, platform)

        located = await locator.locate(RedirectParams(page_request_id="abc"))

        assert located.transaction.payment_status == TransactionStatus.PENDING
        assert located.race_suspected is False

    async def test_falls_back_to_order_when_page_request_unknown(self, platform):
        """Test that the order id is used when the page request matches nothing."""
        platform.add_transaction(id="txn_7")
        locator = TransactionLocator(platform, platform)

        located = await locator.locate(RedirectParams(page_request_id="missing", order_id="txn_7"))

        assert located.transaction.id == "txn_7"
        assert located.matched_by == "transaction_id"

    async def test_purchase_id_resolves_its_transaction(self, platform):
        """Test lookup by purchase id for a purchase that belongs to a transaction."""
        platform.add_transaction(id="txn_3")
        platform.add_purchase(id="pur_1", transaction_id="txn_3")
        locator = TransactionLocator(platform, platform)

        located = await locator.locate(RedirectParams(order_id="pur_1"))

        assert located.transaction.id == "txn_3"
        assert located.legacy_purchase is None

    async def test_purchase_without_transaction_is_legacy(self, platform):
        """Test that a bare purchase is returned as a legacy record."""
        platform.add_purchase(id="pur_1", product_id="wk_1", payment_status="completed")
        locator = TransactionLocator(platform, platform)

        located = await locator.locate(RedirectParams(order_id="pur_1"))

        assert located.transaction is None
        assert located.legacy_purchase.id == "pur_1"
        assert located.matched_by == "purchase_id"

    async def test_legacy_metadata_uid(self, platform):
        """Test lookup through the metadata-embedded legacy uid."""
        platform.add_purchase(id="pur_9", metadata={"transaction_uid": "LEG-42"})
        locator = TransactionLocator(platform, platform)

        located = await locator.locate(RedirectParams(order_id="LEG-42"))

        assert located.legacy_purchase.id == "pur_9"
        assert located.matched_by == "legacy_uid"

    async def test_nothing_found(self, platform):
        """Test that an unknown order yields an empty result."""
        locator = TransactionLocator(platform, platform)

        located = await locator.locate(RedirectParams(order_id="pur_123"))

        assert located.found is False
        assert located.error is None

    async def test_lookup_error_is_recorded(self, platform):
        """Test that API errors are captured instead of raised."""
        platform.fail_on.add("lookup_by_page_request_id")
        locator = TransactionLocator(platform, platform)

        located = await locator.locate(RedirectParams(page_request_id="abc"))

        assert located.found is False
        assert located.error is not None
