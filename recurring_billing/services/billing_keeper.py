"""Charge sweep for due subscriptions.

The keeper is driven from outside (cron job, timer, operator). Each call
scans the store once and attempts one charge per due subscription; it
never schedules itself.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from recurring_billing.errors import BillingError
from recurring_billing.logging_config import get_logger
from recurring_billing.models.subscription import SubscriptionKey
from recurring_billing.services.billing_engine import (
    SubscriptionEngine,
    get_subscription_engine,
)

logger = get_logger(__name__)


class ChargeSweepResult(BaseModel):
    """Outcome of one charge sweep."""

    swept_at: int = Field(..., description="Timestamp the sweep selected due subscriptions at")
    charged: List[SubscriptionKey] = Field(default_factory=list, description="Keys charged successfully")
    failed: Dict[SubscriptionKey, str] = Field(default_factory=dict, description="Key -> error message")

    @property
    def total(self) -> int:
        return len(self.charged) + len(self.failed)


class BillingKeeper:
    """Charges every subscription whose paid period has ended.

    Args:
        subscription_engine: optional subscription engine object, if missing,
        global instance is used
    """

    def __init__(self, subscription_engine: Optional[SubscriptionEngine] = None) -> None:
        self._engine = subscription_engine or get_subscription_engine()

    def charge_due(self, now: Optional[int] = None) -> ChargeSweepResult:
        """Attempt one charge for every ACTIVE subscription due at `now`.

        A failure for one subscription is recorded and the sweep continues.
        A subscription several periods behind is charged once per sweep.

        Args:
            now: Selection time in seconds (defaults to the engine's clock)

        Returns:
            ChargeSweepResult listing charged and failed keys
        """
        if now is None:
            now = self._engine.clock.now()

        due = self._engine.store.get_due_for_charge(now)
        result = ChargeSweepResult(swept_at=now)

        logger.info("charge_sweep_started", swept_at=now, subscriptions_due=len(due))

        for subscription in due:
            key = subscription.key
            try:
                self._engine.charge(subscription.payer, subscription.product_id)
                result.charged.append(key)
            except BillingError as e:
                result.failed[key] = str(e)
                logger.warning(
                    "charge_sweep_item_failed",
                    payer=subscription.payer,
                    product_id=subscription.product_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            except Exception as e:
                result.failed[key] = str(e)
                logger.error(
                    "charge_sweep_item_error",
                    payer=subscription.payer,
                    product_id=subscription.product_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )

        logger.info(
            "charge_sweep_completed",
            swept_at=now,
            charged=len(result.charged),
            failed=len(result.failed),
        )
        return result
