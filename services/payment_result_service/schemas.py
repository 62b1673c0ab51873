"""Domain models for payment outcome resolution."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, SerializeAsAny


class TransactionStatus(str, Enum):
    """Transaction status as recorded by the platform."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


class PurchaseStatus(str, Enum):
    """Purchase status. CART is the pre-checkout state."""
    CART = "cart"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class OutcomeStatus(str, Enum):
    """Authoritative outcome shown to the user."""
    SUCCESS = "success"
    FAILURE = "failure"
    CANCEL = "cancel"
    PENDING = "pending"
    UNKNOWN = "unknown"


TERMINAL_OUTCOMES = {
    TransactionStatus.COMPLETED.value: OutcomeStatus.SUCCESS,
    TransactionStatus.FAILED.value: OutcomeStatus.FAILURE,
    TransactionStatus.CANCELLED.value: OutcomeStatus.CANCEL,
}


class Transaction(BaseModel):
    """One checkout attempt at the payment gateway."""

    id: str
    page_request_uid: Optional[str] = None
    payment_status: TransactionStatus = TransactionStatus.PENDING
    confirmation_token: Optional[str] = None
    buyer_user_id: Optional[str] = None
    total_amount: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        from_attributes = True

    @property
    def subscription_id(self) -> Optional[str]:
        return self.metadata.get("subscription_id")


class Purchase(BaseModel):
    """Access granted (or pending) for one purchasable entity."""

    id: str
    transaction_id: Optional[str] = None
    product_id: Optional[str] = None  # legacy records only
    purchasable_type: Optional[str] = None
    purchasable_id: Optional[str] = None
    payment_status: PurchaseStatus = PurchaseStatus.PENDING
    payment_amount: float = 0
    access_expires_at: Optional[datetime] = None
    buyer_user_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        from_attributes = True

    @property
    def is_completed(self) -> bool:
        return self.payment_status == PurchaseStatus.COMPLETED

    @property
    def has_lifetime_access(self) -> bool:
        return self.access_expires_at is None

    @property
    def is_polymorphic(self) -> bool:
        return bool(self.purchasable_type and self.purchasable_id)

    def refers_to(self, entity_type: str, entity_id: str) -> bool:
        if self.is_polymorphic:
            return self.purchasable_type == entity_type and self.purchasable_id == entity_id
        return self.product_id == entity_id


class Subscription(BaseModel):
    """Subscription instance referenced from transaction metadata."""

    id: str
    status: str
    plan_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PollResult(BaseModel):
    """Authoritative transaction status reported by the gateway."""

    status: TransactionStatus
    confirmed: bool = False


# Purchasable entities

class PurchasableEntity(BaseModel):
    """Catalog item referenced by a purchase."""

    id: str
    entity_type: str = "product"
    title: str = ""
    short_description: Optional[str] = None
    price: Optional[float] = None

    class Config:
        extra = "allow"

    @property
    def is_free(self) -> bool:
        return self.price is not None and self.price == 0


PURCHASABLE_TYPES: Dict[str, type[PurchasableEntity]] = {}


def register_purchasable_type(entity_class: type[PurchasableEntity]) -> type[PurchasableEntity]:
    """Add an entity class to the purchasable type dispatch table."""
    entity_type = entity_class.model_fields["entity_type"].default
    PURCHASABLE_TYPES[entity_type] = entity_class
    return entity_class


@register_purchasable_type
class Workshop(PurchasableEntity):
    entity_type: str = "workshop"
    scheduled_date: Optional[datetime] = None


@register_purchasable_type
class Course(PurchasableEntity):
    entity_type: str = "course"
    course_modules: List[Dict[str, Any]] = Field(default_factory=list)


@register_purchasable_type
class File(PurchasableEntity):
    entity_type: str = "file"
    file_url: Optional[str] = None


@register_purchasable_type
class Tool(PurchasableEntity):
    entity_type: str = "tool"


@register_purchasable_type
class Game(PurchasableEntity):
    entity_type: str = "game"


class SubscriptionPlan(PurchasableEntity):
    """Plan of a subscription; loaded through the subscription, not the table."""
    entity_type: str = "subscription_plan"
    billing_period: Optional[str] = None


class PlaceholderEntity(PurchasableEntity):
    """Stand-in shown when the catalog entity cannot be loaded."""
    entity_type: str = "placeholder"
    title: str = "Your purchase"


# Resolution input and output

class RedirectParams(BaseModel):
    """Normalized parameters of the gateway return URL."""

    confirmation_token: Optional[str] = None
    page_request_id: Optional[str] = None
    raw_status: Optional[str] = None
    order_id: Optional[str] = None
    item_type_hint: str = "product"
    is_free: bool = False

    @property
    def has_success_evidence(self) -> bool:
        return bool(self.confirmation_token) or self.raw_status == OutcomeStatus.SUCCESS.value

    @property
    def resolution_key(self) -> Optional[str]:
        return self.page_request_id or self.order_id or self.confirmation_token


class ResolutionContext(BaseModel):
    """Explicit per-request context for one resolution pass."""

    user_id: Optional[str] = None
    pending_teacher_id: Optional[str] = None


class ResolvedOutcome(BaseModel):
    """Result of one resolution pass; recomputed on every pass."""

    status: OutcomeStatus
    is_multi_product: bool = False
    purchase_count: int = 0
    primary_purchase: Optional[Purchase] = None
    primary_entity: Optional[SerializeAsAny[PurchasableEntity]] = None
    product_id: Optional[str] = None
    transaction_id: Optional[str] = None
    page_request_id: Optional[str] = None
    purchases: List[Purchase] = Field(default_factory=list)
    entities: List[SerializeAsAny[PurchasableEntity]] = Field(default_factory=list)
    is_free: bool = False
    auto_granted: bool = False
    race_suspected: bool = False
    awaiting_confirmation: bool = False
    note: Optional[str] = None
    reference: Optional[str] = None
    redirect_after_seconds: Optional[int] = None
