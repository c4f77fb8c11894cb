"""Pydantic models for subscription records, events and configuration."""

# Subscription models
from .subscription import (
    ALLOWED_TRANSITIONS,
    SubscriptionKey,
    SubscriptionRecord,
    SubscriptionStatus,
    assert_transition,
)

# Event models
from .events import (
    BillingEvent,
    EventTopic,
)

# Configuration models
from .settings import (
    BillingConfig,
    BillingSettings,
    LedgerBalance,
    LedgerSettings,
    PubSubConfig,
)

__all__ = [
    # Subscription
    "ALLOWED_TRANSITIONS",
    "SubscriptionKey",
    "SubscriptionRecord",
    "SubscriptionStatus",
    "assert_transition",
    # Events
    "BillingEvent",
    "EventTopic",
    # Configuration
    "BillingConfig",
    "BillingSettings",
    "LedgerBalance",
    "LedgerSettings",
    "PubSubConfig",
]
