"""Recurring billing state machine.

Tracks per-(payer, product) subscriptions, enforces who may change their
lifecycle, and gates recurring transfers on elapsed time and status.
"""

__version__ = "0.1.0"
