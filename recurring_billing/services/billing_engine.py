"""Subscription billing state machine.

Responsibilities:
- Start subscriptions (first payment bundled with creation)
- Collect recurring payments once a billing period has elapsed
- Pause, resume and cancel under the configured authorization policy
- Keep every funds transfer atomic with the state write that records it
- Emit lifecycle events
"""

from typing import Any, Callable, Dict, Optional

from recurring_billing.config import get_config
from recurring_billing.errors import (
    AlreadyExistsError,
    InvalidArgumentError,
    NotActiveError,
    PeriodElapsedError,
    PeriodNotElapsedError,
    TransferFailedError,
)
from recurring_billing.logging_config import get_logger
from recurring_billing.models.events import EventTopic
from recurring_billing.models.subscription import (
    SubscriptionKey,
    SubscriptionRecord,
    SubscriptionStatus,
)
from recurring_billing.repositories.subscription_store import (
    SubscriptionStore,
    get_subscription_store,
)
from recurring_billing.services.authorization import (
    AuthorizationContext,
    require_owner,
    require_payer_or_beneficiary,
)
from recurring_billing.services.clock import Clock, get_clock
from recurring_billing.services.event_dispatcher import (
    EventDispatcher,
    get_event_dispatcher,
)
from recurring_billing.services.ledger import Ledger, TransferReceipt, get_ledger
from recurring_billing.state_logger import log_period_end_change
from recurring_billing.utils.billing_period import (
    initial_period_end,
    is_charge_due,
    is_within_paid_period,
    validate_amount,
    validate_period_duration,
)

logger = get_logger(__name__)


class SubscriptionEngine:
    """Subscription billing state machine.

    Every operation runs under the store's per-key lock, validates before
    touching the ledger, and persists only after the ledger accepted the
    transfer.

    Args:
        subscription_store: Subscription storage (defaults to global instance)
        ledger: Value-transfer collaborator (defaults to global instance)
        clock: Timestamp source (defaults to global instance)
        event_dispatcher: Event sink (defaults to global instance)
    """

    def __init__(
            self,
            subscription_store: Optional[SubscriptionStore] = None,
            ledger: Optional[Ledger] = None,
            clock: Optional[Clock] = None,
            event_dispatcher: Optional[EventDispatcher] = None,
    ):
        self.store = subscription_store if subscription_store is not None else get_subscription_store()
        self.ledger = ledger or get_ledger()
        self.clock = clock or get_clock()
        self.config = get_config()
        self._event_dispatcher = event_dispatcher

        logger.info(
            "subscription_engine_initialized",
            authorization_mode=self.config.authorization_mode,
        )

    def _get_event_dispatcher(self) -> EventDispatcher:
        if self._event_dispatcher is None:
            self._event_dispatcher = get_event_dispatcher()
        return self._event_dispatcher

    def _publish_event(
            self,
            topic: EventTopic,
            key: SubscriptionKey,
            payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Publish a lifecycle event; failures are logged, never raised."""
        try:
            self._get_event_dispatcher().notify(topic, key, payload, event_time=self.clock.now())
        except Exception as e:
            logger.error(
                "event_publish_failed",
                topic=topic.value,
                payer=key.payer,
                product_id=key.product_id,
                error=str(e),
                exc_info=True,
            )

    def _authorize_lifecycle_change(
            self, auth: AuthorizationContext, subscription: SubscriptionRecord
    ) -> str:
        """Apply the pause/resume/cancel policy, returning the acting principal."""
        if self.config.authorization_mode == "strict":
            return require_owner(auth, subscription.payer)
        return require_payer_or_beneficiary(auth, subscription.payer, subscription.beneficiary)

    def _collect(self, subscription: SubscriptionRecord, operation: str) -> TransferReceipt:
        """Transfer one period's amount from payer to beneficiary.

        Raises:
            TransferFailedError: Propagated from the ledger, nothing written
        """
        try:
            return self.ledger.transfer(
                subscription.asset,
                subscription.payer,
                subscription.beneficiary,
                subscription.amount,
            )
        except TransferFailedError as e:
            logger.warning(
                f"{operation}_transfer_failed",
                payer=subscription.payer,
                product_id=subscription.product_id,
                asset=subscription.asset,
                amount=subscription.amount,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

    def _commit(
            self,
            subscription: SubscriptionRecord,
            receipt: TransferReceipt,
            write: Callable[[SubscriptionRecord], None],
    ) -> None:
        """Persist a record paid for by `receipt`.

        If the write fails the transfer is reversed before the error
        propagates, so a payment never survives without its record.
        """
        try:
            write(subscription)
        except Exception as e:
            logger.error(
                "subscription_write_failed_reversing_transfer",
                payer=subscription.payer,
                product_id=subscription.product_id,
                transfer_id=receipt.transfer_id,
                error=str(e),
                exc_info=True,
            )
            try:
                self.ledger.reverse(receipt)
            except Exception as reverse_error:
                logger.critical(
                    "transfer_reversal_failed",
                    payer=subscription.payer,
                    product_id=subscription.product_id,
                    transfer_id=receipt.transfer_id,
                    error=str(reverse_error),
                    exc_info=True,
                )
                raise reverse_error from e
            raise

    def start(
            self,
            payer: str,
            beneficiary: str,
            asset: str,
            product_id: str,
            amount: int,
            period_duration: int,
            auth: AuthorizationContext,
    ) -> SubscriptionRecord:
        """Start a subscription and collect its first payment.

        The first period is paid immediately; the record is written only if
        that transfer succeeds.

        Args:
            payer: Paying principal (must have authorized the call)
            beneficiary: Receiving principal
            asset: Asset transferred each period
            product_id: Caller-chosen product identifier
            amount: Amount per period, > 0
            period_duration: Period length in seconds, > 0
            auth: Principals that authorized this call

        Returns:
            Created SubscriptionRecord

        Raises:
            InvalidArgumentError: If amount or period_duration is not positive
            UnauthorizedError: If the payer has not authorized the call
            AlreadyExistsError: If (payer, product_id) already has a subscription
            TransferFailedError: If the first payment fails
        """
        validate_amount(amount)
        validate_period_duration(period_duration)

        key = SubscriptionKey(payer, product_id)
        with self.store.lock_for(key):
            require_owner(auth, payer)

            if self.store.exists(key):
                raise AlreadyExistsError(f"Subscription already exists for key: {key}")

            now = self.clock.now()
            subscription = SubscriptionRecord(
                payer=payer,
                beneficiary=beneficiary,
                asset=asset,
                product_id=product_id,
                amount=amount,
                period_duration=period_duration,
                period_end=initial_period_end(now, period_duration),
                status=SubscriptionStatus.ACTIVE,
                created_at=now,
            )

            receipt = self._collect(subscription, "start")
            self._commit(subscription, receipt, self.store.add)

        logger.info(
            "subscription_started",
            payer=payer,
            beneficiary=beneficiary,
            product_id=product_id,
            asset=asset,
            amount=amount,
            period_end=subscription.period_end,
            transfer_id=receipt.transfer_id,
        )

        self._publish_event(EventTopic.SUBSCRIPTION_STARTED, key, {"amount": amount})

        return subscription

    def charge(self, payer: str, product_id: str) -> SubscriptionRecord:
        """Collect the next period's payment.

        Validate, then transfer, then advance period_end by exactly one
        period and persist. A failed transfer leaves the stored record
        untouched; retrying is the caller's job.

        Args:
            payer: Paying principal
            product_id: Product identifier

        Returns:
            Updated SubscriptionRecord

        Raises:
            SubscriptionNotFoundError: If no subscription exists for the key
            NotActiveError: If the subscription is paused or canceled
            PeriodNotElapsedError: If the paid period has not ended yet
            TransferFailedError: If the payment fails
        """
        key = SubscriptionKey(payer, product_id)
        with self.store.lock_for(key):
            subscription = self.store.get(key)

            if subscription.status != SubscriptionStatus.ACTIVE:
                raise NotActiveError(
                    f"Cannot charge subscription in {subscription.status.name} state"
                )

            now = self.clock.now()
            if not is_charge_due(subscription.period_end, now):
                raise PeriodNotElapsedError(
                    f"Period for {key} ends at {subscription.period_end}, now is {now}"
                )

            receipt = self._collect(subscription, "charge")

            updated = subscription.model_copy(deep=True)
            updated.advance_period()
            self._commit(updated, receipt, self.store.set)

        logger.info(
            "payment_collected",
            payer=payer,
            product_id=product_id,
            amount=updated.amount,
            period_end=updated.period_end,
            charge_count=updated.charge_count,
            transfer_id=receipt.transfer_id,
        )

        self._publish_event(
            EventTopic.PAYMENT_COLLECTED,
            key,
            {"amount": updated.amount, "period_end": updated.period_end},
        )

        return updated

    def _change_status(
            self,
            payer: str,
            product_id: str,
            auth: AuthorizationContext,
            new_status: SubscriptionStatus,
            topic: EventTopic,
            log_event: str,
            require_paid_period: bool = False,
    ) -> SubscriptionRecord:
        key = SubscriptionKey(payer, product_id)
        with self.store.lock_for(key):
            subscription = self.store.get(key)
            acted_by = self._authorize_lifecycle_change(auth, subscription)

            if subscription.status == SubscriptionStatus.CANCELED:
                raise NotActiveError(f"Subscription {key} is canceled")

            if require_paid_period:
                now = self.clock.now()
                if not is_within_paid_period(subscription.period_end, now):
                    raise PeriodElapsedError(
                        f"Period for {key} ended at {subscription.period_end}, now is {now}"
                    )

            updated = subscription.model_copy(deep=True)
            updated.set_status(new_status, reason=f"{log_event} by {acted_by}")
            self.store.set(updated)

        logger.info(
            log_event,
            payer=payer,
            product_id=product_id,
            acted_by=acted_by,
            period_end=updated.period_end,
        )

        self._publish_event(topic, key, {"acted_by": acted_by})

        return updated

    def pause(self, payer: str, product_id: str, auth: AuthorizationContext) -> SubscriptionRecord:
        """Pause a subscription. No time restriction; re-pausing is allowed.

        Raises:
            SubscriptionNotFoundError: If no subscription exists for the key
            UnauthorizedError: If the authorization policy is not satisfied
            NotActiveError: If the subscription is canceled
        """
        return self._change_status(
            payer,
            product_id,
            auth,
            SubscriptionStatus.PAUSED,
            EventTopic.SUBSCRIPTION_PAUSED,
            "subscription_paused",
        )

    def resume(self, payer: str, product_id: str, auth: AuthorizationContext) -> SubscriptionRecord:
        """Resume a subscription while its paid period is still running.

        A subscription whose paid period has lapsed cannot be resumed.

        Raises:
            SubscriptionNotFoundError: If no subscription exists for the key
            UnauthorizedError: If the authorization policy is not satisfied
            NotActiveError: If the subscription is canceled
            PeriodElapsedError: If now > period_end
        """
        return self._change_status(
            payer,
            product_id,
            auth,
            SubscriptionStatus.ACTIVE,
            EventTopic.SUBSCRIPTION_RESUMED,
            "subscription_resumed",
            require_paid_period=True,
        )

    def cancel(self, payer: str, product_id: str, auth: AuthorizationContext) -> SubscriptionRecord:
        """Cancel a subscription. Cancellation is terminal.

        Raises:
            SubscriptionNotFoundError: If no subscription exists for the key
            UnauthorizedError: If the authorization policy is not satisfied
            NotActiveError: If the subscription is already canceled
        """
        return self._change_status(
            payer,
            product_id,
            auth,
            SubscriptionStatus.CANCELED,
            EventTopic.SUBSCRIPTION_CANCELED,
            "subscription_canceled",
        )

    def get(self, payer: str, product_id: str) -> SubscriptionRecord:
        """Get a subscription. Not privileged.

        Raises:
            SubscriptionNotFoundError: If no subscription exists for the key
        """
        return self.store.get(SubscriptionKey(payer, product_id))

    def find(self, payer: str, product_id: str) -> Optional[SubscriptionRecord]:
        return self.store.find(SubscriptionKey(payer, product_id))

    def update(
            self,
            payer: str,
            product_id: str,
            auth: AuthorizationContext,
            amount: Optional[int] = None,
            period_duration: Optional[int] = None,
            period_end: Optional[int] = None,
            status: Optional[SubscriptionStatus] = None,
    ) -> SubscriptionRecord:
        """Administrative override of billing terms, payer only.

        The only way to change amount, and the only way to move period_end
        other than by a successful charge. No funds move.

        Args:
            payer: Paying principal (must have authorized the call)
            product_id: Product identifier
            auth: Principals that authorized this call
            amount: New amount per period, > 0
            period_duration: New period length in seconds, > 0
            period_end: New period end, >= 0
            status: New status, subject to the transition table

        Returns:
            Updated SubscriptionRecord

        Raises:
            SubscriptionNotFoundError: If no subscription exists for the key
            UnauthorizedError: If the payer has not authorized the call
            NotActiveError: If the subscription is canceled
            InvalidArgumentError: If no field is given or a value is invalid
            InvalidTransitionError: If the status change is not allowed
        """
        if amount is None and period_duration is None and period_end is None and status is None:
            raise InvalidArgumentError("Nothing to update")
        if amount is not None:
            validate_amount(amount)
        if period_duration is not None:
            validate_period_duration(period_duration)
        if period_end is not None and (isinstance(period_end, bool) or not isinstance(period_end, int) or period_end < 0):
            raise InvalidArgumentError(f"Period end must be a non-negative integer, got: {period_end!r}")

        key = SubscriptionKey(payer, product_id)
        with self.store.lock_for(key):
            subscription = self.store.get(key)
            require_owner(auth, payer)

            if subscription.status == SubscriptionStatus.CANCELED:
                raise NotActiveError(f"Subscription {key} is canceled")

            updated = subscription.model_copy(deep=True)
            changes: Dict[str, Any] = {}

            if amount is not None and amount != updated.amount:
                updated.amount = amount
                changes["amount"] = amount
            if period_duration is not None and period_duration != updated.period_duration:
                updated.period_duration = period_duration
                changes["period_duration"] = period_duration
            if period_end is not None and period_end != updated.period_end:
                log_period_end_change(
                    key=key,
                    old_period_end=updated.period_end,
                    new_period_end=period_end,
                    reason="Administrative override",
                )
                updated.period_end = period_end
                changes["period_end"] = period_end
            if status is not None and status != updated.status:
                updated.set_status(status, reason="Administrative override")
                changes["status"] = status.name

            if not changes:
                raise InvalidArgumentError(f"Nothing to update for {key}, values already current")

            self.store.set(updated)

        logger.info(
            "subscription_updated",
            payer=payer,
            product_id=product_id,
            changes=changes,
        )

        self._publish_event(EventTopic.SUBSCRIPTION_UPDATED, key, changes)

        return updated


# Global engine instance
_engine_instance: Optional[SubscriptionEngine] = None


def get_subscription_engine() -> SubscriptionEngine:
    """Get global subscription engine instance (singleton)."""
    global _engine_instance
    if _engine_instance is None:
        _engine_instance = SubscriptionEngine()
    return _engine_instance


def reset_subscription_engine() -> None:
    """Drop the global subscription engine instance (for testing)."""
    global _engine_instance
    _engine_instance = None
