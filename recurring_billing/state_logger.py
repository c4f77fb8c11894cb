"""State change logging for subscriptions.

Tracks status transitions and period_end moves with before/after values
for debugging and auditing.
"""

from typing import Any, Optional

from recurring_billing.logging_config import get_logger

logger = get_logger(__name__)


def log_subscription_status_change(
    key: Any,
    old_status: Any,
    new_status: Any,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log subscription status change.

    Args:
        key: SubscriptionKey of the record
        old_status: Previous status
        new_status: New status
        reason: Reason for status change
        **extra_context: Additional context
    """
    logger.info(
        "subscription_status_changed",
        payer=key.payer,
        product_id=key.product_id,
        old_status=str(old_status),
        new_status=str(new_status),
        reason=reason,
        **extra_context,
    )


def log_period_end_change(
    key: Any,
    old_period_end: int,
    new_period_end: int,
    reason: str,
    **extra_context: Any,
) -> None:
    """Log a period_end move.

    Args:
        key: SubscriptionKey of the record
        old_period_end: Previous period end (seconds)
        new_period_end: New period end (seconds)
        reason: Reason for change (payment, administrative override)
        **extra_context: Additional context
    """
    logger.info(
        "period_end_changed",
        payer=key.payer,
        product_id=key.product_id,
        old_period_end=old_period_end,
        new_period_end=new_period_end,
        delta_seconds=new_period_end - old_period_end,
        reason=reason,
        **extra_context,
    )


def log_transfer(
    asset: str,
    source: str,
    destination: str,
    amount: int,
    outcome: str,
    **extra_context: Any,
) -> None:
    """Log a ledger transfer attempt and its outcome."""
    logger.info(
        "transfer_recorded",
        asset=asset,
        source=source,
        destination=destination,
        amount=amount,
        outcome=outcome,
        **extra_context,
    )
