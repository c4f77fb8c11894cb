"""Utility functions and helpers for billing."""

from recurring_billing.utils.billing_period import (
    format_billing_period,
    initial_period_end,
    is_charge_due,
    is_within_paid_period,
    next_period_end,
    parse_billing_period,
    periods_overdue,
    validate_amount,
    validate_period_duration,
)

__all__ = [
    "parse_billing_period",
    "format_billing_period",
    "validate_period_duration",
    "validate_amount",
    "initial_period_end",
    "next_period_end",
    "is_charge_due",
    "is_within_paid_period",
    "periods_overdue",
]
