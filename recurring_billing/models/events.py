"""Lifecycle event models published to the event sink."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventTopic(str, Enum):
    """Lifecycle notification topics."""

    SUBSCRIPTION_STARTED = "sub_start"
    PAYMENT_COLLECTED = "sub_pay"
    SUBSCRIPTION_PAUSED = "sub_pau"
    SUBSCRIPTION_RESUMED = "sub_res"
    SUBSCRIPTION_CANCELED = "sub_can"
    SUBSCRIPTION_UPDATED = "sub_upd"


class BillingEvent(BaseModel):
    """A lifecycle notification keyed by (payer, product_id)."""

    version: str = Field(default="1.0", description="Event schema version")
    topic: EventTopic = Field(..., description="Notification topic")
    payer: str = Field(..., description="Payer half of the subscription key")
    product_id: str = Field(..., description="Product half of the subscription key")
    event_time: int = Field(..., description="Event timestamp (seconds)")
    payload: dict[str, Any] = Field(default_factory=dict, description="Topic-specific data")

    class Config:
        json_schema_extra = {
            "example": {
                "version": "1.0",
                "topic": "sub_pay",
                "payer": "GCUSTOMER...",
                "product_id": "pro_monthly",
                "event_time": 1702592000,
                "payload": {"amount": 100, "period_end": 1705184000},
            }
        }
