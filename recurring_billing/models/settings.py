"""Configuration models loaded from billing.yaml."""

from typing import Literal

from pydantic import BaseModel, Field


class BillingSettings(BaseModel):
    """Billing state machine behaviour."""

    authorization_mode: Literal["or", "strict"] = Field(
        default="or",
        description="'or': payer or beneficiary may pause/resume/cancel; 'strict': payer only",
    )
    events_enabled: bool = Field(default=True, description="Emit lifecycle events")
    event_backend: Literal["memory", "pubsub"] = Field(
        default="memory", description="Event sink backend"
    )

    class Config:
        json_schema_extra = {
            "example": {
                "authorization_mode": "or",
                "events_enabled": True,
                "event_backend": "memory",
            }
        }


class PubSubConfig(BaseModel):
    """Pub/Sub configuration for the event sink."""

    project_id: str = Field(default="billing-local", description="GCP project ID")
    topic: str = Field(default="subscription-events", description="Pub/Sub topic name")
    publish_timeout_seconds: float = Field(default=5.0, gt=0, description="Publish wait timeout")


class LedgerBalance(BaseModel):
    """Opening balance for one account in the in-memory ledger."""

    asset: str
    account: str
    amount: int = Field(..., ge=0)


class LedgerSettings(BaseModel):
    """In-memory ledger seed data."""

    initial_balances: list[LedgerBalance] = Field(default_factory=list)


class BillingConfig(BaseModel):
    """Complete billing.yaml configuration."""

    billing: BillingSettings = Field(default_factory=BillingSettings)
    pubsub: PubSubConfig = Field(default_factory=PubSubConfig)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
