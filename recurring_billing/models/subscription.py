"""Subscription record, status and transition table.

Includes the composite store key and the allowed lifecycle transitions.
"""

from enum import IntEnum
from typing import NamedTuple

from pydantic import BaseModel, Field

from recurring_billing.errors import InvalidTransitionError


class SubscriptionStatus(IntEnum):
    """Lifecycle status of a subscription."""

    ACTIVE = 1  # Charges allowed once the period elapses
    PAUSED = 2  # Charges suspended, can be resumed within the paid period
    CANCELED = 3  # Terminal


class SubscriptionKey(NamedTuple):
    """Composite store key: one subscription per (payer, product_id)."""

    payer: str
    product_id: str

    def __str__(self) -> str:
        return f"{self.payer}/{self.product_id}"


ALLOWED_TRANSITIONS = {
    SubscriptionStatus.ACTIVE: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAUSED,
        SubscriptionStatus.CANCELED,
    },
    SubscriptionStatus.PAUSED: {
        SubscriptionStatus.PAUSED,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELED,
    },
    SubscriptionStatus.CANCELED: set(),
}


def assert_transition(old: SubscriptionStatus, new: SubscriptionStatus) -> None:
    if new not in ALLOWED_TRANSITIONS.get(old, set()):
        raise InvalidTransitionError(
            f"Illegal subscription transition: {old.name} -> {new.name}"
        )


class SubscriptionRecord(BaseModel):
    """Persisted subscription state for one (payer, product_id) key."""

    payer: str = Field(..., description="Paying principal")
    beneficiary: str = Field(..., description="Receiving principal")
    asset: str = Field(..., description="Fungible asset transferred each period")
    product_id: str = Field(..., description="Caller-chosen product identifier")

    amount: int = Field(..., gt=0, description="Amount transferred per billing period")
    period_duration: int = Field(..., gt=0, description="Billing period length (seconds)")
    period_end: int = Field(..., ge=0, description="End of the paid period, next eligible charge time")

    status: SubscriptionStatus = Field(default=SubscriptionStatus.ACTIVE, description="Lifecycle status")

    created_at: int = Field(..., ge=0, description="Timestamp of start (seconds)")
    charge_count: int = Field(default=0, ge=0, description="Successful recurring charges")

    @property
    def key(self) -> SubscriptionKey:
        return SubscriptionKey(self.payer, self.product_id)

    def set_status(self, new_status: SubscriptionStatus, reason: str) -> None:
        """Change status along the transition table and log the transition.

        Args:
            new_status: Status to transition to
            reason: Reason for the change

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        from recurring_billing.state_logger import log_subscription_status_change

        old_status = self.status
        assert_transition(old_status, new_status)
        if old_status != new_status:
            self.status = new_status
            log_subscription_status_change(
                key=self.key,
                old_status=old_status.name,
                new_status=new_status.name,
                reason=reason,
            )

    def advance_period(self) -> None:
        """Move period_end forward by exactly one billing period."""
        from recurring_billing.state_logger import log_period_end_change
        from recurring_billing.utils.billing_period import next_period_end

        old_period_end = self.period_end
        self.period_end = next_period_end(old_period_end, self.period_duration)
        self.charge_count += 1
        log_period_end_change(
            key=self.key,
            old_period_end=old_period_end,
            new_period_end=self.period_end,
            reason="Payment collected",
            charge_count=self.charge_count,
        )

    class Config:
        json_schema_extra = {
            "example": {
                "payer": "GCUSTOMER...",
                "beneficiary": "GMERCHANT...",
                "asset": "USDC",
                "product_id": "pro_monthly",
                "amount": 100,
                "period_duration": 2592000,
                "period_end": 1702592000,
                "status": SubscriptionStatus.ACTIVE,
                "created_at": 1700000000,
                "charge_count": 0,
            }
        }
