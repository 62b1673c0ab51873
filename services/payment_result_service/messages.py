"""User-facing messages for resolved outcomes."""
from typing import Optional

from pydantic import BaseModel

from .schemas import OutcomeStatus, ResolvedOutcome


class OutcomeMessage(BaseModel):
    title: str
    message: str
    action: Optional[str] = None  # route suggested to the user


STATUS_MESSAGES = {
    OutcomeStatus.SUCCESS: OutcomeMessage(
        title="Payment completed successfully!",
        message="Thank you for your purchase! It is now available in your account.",
        action="/account",
    ),
    OutcomeStatus.FAILURE: OutcomeMessage(
        title="Payment failed",
        message="The payment was not completed. Please try again or contact support.",
        action="/checkout",
    ),
    OutcomeStatus.CANCEL: OutcomeMessage(
        title="Payment cancelled",
        message="You cancelled the payment. You can try again at any time.",
        action="/checkout",
    ),
    OutcomeStatus.PENDING: OutcomeMessage(
        title="Payment is being processed",
        message="We are waiting for the payment provider to confirm your payment.",
    ),
    OutcomeStatus.UNKNOWN: OutcomeMessage(
        title="Payment status unknown",
        message="We could not determine the payment status. Please contact support.",
        action="/contact",
    ),
}

FREE_ACCESS_MESSAGE = OutcomeMessage(
    title="Free access granted!",
    message="The item was added to your account. You can access it now.",
    action="/account",
)

FREE_SIGN_IN_MESSAGE = OutcomeMessage(
    title="Sign in to get free access",
    message="This item is free. Sign in and it will be added to your account.",
    action="/login",
)


def outcome_message(outcome: ResolvedOutcome, signed_in: bool = True) -> OutcomeMessage:
    """Pick the message shown for an outcome."""
    message = STATUS_MESSAGES[outcome.status]

    if outcome.is_free and outcome.status == OutcomeStatus.SUCCESS:
        has_access = outcome.auto_granted or any(p.is_completed for p in outcome.purchases)
        if has_access:
            message = FREE_ACCESS_MESSAGE
        elif not signed_in:
            return FREE_SIGN_IN_MESSAGE

    if outcome.status == OutcomeStatus.SUCCESS and outcome.product_id:
        message = message.model_copy(update={"action": f"/product/{outcome.product_id}"})

    return message
