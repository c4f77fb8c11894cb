"""Billing error taxonomy.

Every error aborts the operation that raised it with no state mutation.
"""


class BillingError(Exception):
    """Base exception for billing errors."""

    pass


class SubscriptionNotFoundError(BillingError):
    """Raised when no subscription exists for a (payer, product_id) key."""

    pass


class AlreadyExistsError(BillingError):
    """Raised when starting a subscription for a key that already has one."""

    pass


class UnauthorizedError(BillingError):
    """Raised when the authorization policy is not satisfied for the call."""

    pass


class NotActiveError(BillingError):
    """Raised when an operation requires a status the subscription is not in."""

    pass


class PeriodNotElapsedError(BillingError):
    """Raised when charging before the current paid period has ended."""

    pass


class PeriodElapsedError(BillingError):
    """Raised when resuming after the paid period has already lapsed."""

    pass


class TransferFailedError(BillingError):
    """Raised when the ledger refuses to move funds."""

    pass


class InsufficientFundsError(TransferFailedError):
    """Raised when the source account cannot cover the transfer."""

    pass


class AccountFrozenError(TransferFailedError):
    """Raised when the source or destination account is frozen."""

    pass


class InvalidArgumentError(BillingError, ValueError):
    """Raised for non-positive amounts or durations and other bad inputs."""

    pass


class InvalidTransitionError(BillingError):
    """Raised when a status change is not in the transition table."""

    pass
