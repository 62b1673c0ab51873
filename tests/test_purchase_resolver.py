import pytest

from services.payment_result_service.purchase_resolver import PurchaseSetResolver
from services.payment_result_service.schemas import (
    PURCHASABLE_TYPES,
    Course,
    Game,
    OutcomeStatus,
    PlaceholderEntity,
    PurchasableEntity,
    RedirectParams,
    ResolutionContext,
    Subscription,
    SubscriptionPlan,
    Workshop,
    register_purchasable_type,
)
from services.payment_result_service.transaction_locator import LocatedTransaction


def located_for(platform, transaction_id):
    return LocatedTransaction(transaction=platform.transactions[transaction_id])


class TestPurchaseSetResolver:
    """Test suite for loading purchases and their entities."""

    @pytest.mark.parametrize("count", [1, 2, 5])
    async def test_multi_item_counts(self, platform, count):
        """Test that purchase_count and is_multi_product follow the purchase set."""
        platform.add_transaction(id="txn_1")
        for i in range(count):
            platform.add_purchase(
                id=f"pur_{i}",
                transaction_id="txn_1",
                purchasable_type="course",
                purchasable_id=f"c{i}",
            )
            platform.add_entity("course", f"c{i}", title=f"Course {i}", price=50)

        purchase_set = await PurchaseSetResolver(platform, platform).resolve(
            located_for(platform, "txn_1"), RedirectParams(), ResolutionContext()
        )

        assert purchase_set.purchase_count == count
        assert purchase_set.is_multi_product == (count > 1)
        assert len(purchase_set.entities) == count
        assert isinstance(purchase_set.primary_entity, Course)

    async def test_product_id_for_primary_entity(self, platform):
        """Test that the catalog product id is attached for navigation."""
        platform.add_transaction(id="txn_1")
        platform.add_purchase(id="pur_1", transaction_id="txn_1", purchasable_type="workshop", purchasable_id="w1")
        platform.add_entity("workshop", "w1", product_id="prod_1", title="Intro", price=100)

        purchase_set = await PurchaseSetResolver(platform, platform).resolve(
            located_for(platform, "txn_1"), RedirectParams(), ResolutionContext()
        )

        assert isinstance(purchase_set.primary_entity, Workshop)
        assert purchase_set.product_id == "prod_1"

    async def test_unknown_type_yields_placeholder(self, platform):
        """Test that an unregistered purchasable type does not fail resolution."""
        platform.add_transaction(id="txn_1")
        platform.add_purchase(id="pur_1", transaction_id="txn_1", purchasable_type="hologram", purchasable_id="h1")

        purchase_set = await PurchaseSetResolver(platform, platform).resolve(
            located_for(platform, "txn_1"), RedirectParams(), ResolutionContext()
        )

        assert isinstance(purchase_set.primary_entity, PlaceholderEntity)
        assert purchase_set.primary_entity.id == "h1"
        assert purchase_set.product_id is None

    async def test_partial_resolution_of_multi_item(self, platform):
        """Test that one missing entity does not hide the others."""
        platform.add_transaction(id="txn_1")
        platform.add_purchase(id="pur_1", transaction_id="txn_1", purchasable_type="file", purchasable_id="f1")
        platform.add_purchase(id="pur_2", transaction_id="txn_1", purchasable_type="file", purchasable_id="missing")
        platform.add_entity("file", "f1", title="Worksheet", price=10, file_url="https://cdn/f1.pdf")

        purchase_set = await PurchaseSetResolver(platform, platform).resolve(
            located_for(platform, "txn_1"), RedirectParams(), ResolutionContext()
        )

        assert purchase_set.entities[0].file_url == "https://cdn/f1.pdf"
        assert isinstance(purchase_set.entities[1], PlaceholderEntity)

    async def test_catalog_error_becomes_placeholder(self, platform):
        """Test that catalog failures are recorded, not raised."""
        platform.add_transaction(id="txn_1")
        platform.add_purchase(id="pur_1", transaction_id="txn_1", purchasable_type="tool", purchasable_id="t1")
        platform.fail_on.add("find_by_id")

        purchase_set = await PurchaseSetResolver(platform, platform).resolve(
            located_for(platform, "txn_1"), RedirectParams(), ResolutionContext()
        )

        assert isinstance(purchase_set.primary_entity, PlaceholderEntity)
        assert len(purchase_set.errors) == 1

    async def test_legacy_purchase_defaults_to_workshop(self, platform):
        """Test legacy product ids without a type hint."""
        purchase = platform.add_purchase(id="pur_1", product_id="p1", payment_status="completed")
        platform.add_entity("workshop", "p1", title="Legacy workshop")

        purchase_set = await PurchaseSetResolver(platform, platform).resolve(
            LocatedTransaction(legacy_purchase=purchase), RedirectParams(), ResolutionContext()
        )

        assert isinstance(purchase_set.primary_entity, Workshop)
        assert purchase_set.product_id == "p1"

    async def test_legacy_purchase_falls_back_to_game(self, platform):
        """Test the game fallback for legacy product ids."""
        purchase = platform.add_purchase(id="pur_1", product_id="g1")
        platform.add_entity("game", "g1", title="Memory")

        purchase_set = await PurchaseSetResolver(platform, platform).resolve(
            LocatedTransaction(legacy_purchase=purchase), RedirectParams(), ResolutionContext()
        )

        assert isinstance(purchase_set.primary_entity, Game)

    async def test_new_type_is_one_registration(self, platform):
        """Test that registering an entity class makes it resolvable."""

        @register_purchasable_type
        class Bundle(PurchasableEntity):
            entity_type: str = "bundle"

        try:
            platform.add_transaction(id="txn_1")
            platform.add_purchase(id="pur_1", transaction_id="txn_1", purchasable_type="bundle", purchasable_id="b1")
            platform.add_entity("bundle", "b1", title="Starter pack")

            purchase_set = await PurchaseSetResolver(platform, platform).resolve(
                located_for(platform, "txn_1"), RedirectParams(), ResolutionContext()
            )

            assert isinstance(purchase_set.primary_entity, Bundle)
        finally:
            PURCHASABLE_TYPES.pop("bundle", None)


class TestSubscriptionResolution:
    """Test suite for subscription-backed transactions."""

    @pytest.mark.parametrize(
        "subscription_status,token,expected",
        [
            ("active", None, OutcomeStatus.SUCCESS),
            ("failed", None, OutcomeStatus.FAILURE),
            ("pending", "tok", OutcomeStatus.SUCCESS),
            ("pending", None, OutcomeStatus.PENDING),
            ("expired", None, OutcomeStatus.UNKNOWN),
        ],
    )
    async def test_status_derived_from_subscription(self, platform, subscription_status, token, expected):
        """Test the subscription status mapping."""
        platform.add_transaction(id="txn_1", metadata={"subscription_id": "sub_1"})
        platform.subscriptions["sub_1"] = Subscription(id="sub_1", status=subscription_status, plan_id="plan_1")
        platform.plans["plan_1"] = {"id": "plan_1", "title": "Pro", "price": 49}

        purchase_set = await PurchaseSetResolver(platform, platform).resolve(
            located_for(platform, "txn_1"), RedirectParams(confirmation_token=token), ResolutionContext()
        )

        assert purchase_set.subscription_status == expected
        assert isinstance(purchase_set.primary_entity, SubscriptionPlan)
        assert purchase_set.primary_entity.title == "Pro"

    async def test_missing_subscription(self, platform):
        """Test that a missing subscription leaves the status to the reconciler."""
        platform.add_transaction(id="txn_1", metadata={"subscription_id": "sub_1"})

        purchase_set = await PurchaseSetResolver(platform, platform).resolve(
            located_for(platform, "txn_1"), RedirectParams(), ResolutionContext()
        )

        assert purchase_set.subscription_status is None
        assert isinstance(purchase_set.primary_entity, PlaceholderEntity)
