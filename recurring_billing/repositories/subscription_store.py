"""Subscription store - in-memory storage for subscription records.

Records are keyed by (payer, product_id). The store hands out copies so
that callers cannot change stored state without an explicit write.
"""

import threading
from typing import Dict, List, Optional

from recurring_billing.errors import AlreadyExistsError, SubscriptionNotFoundError
from recurring_billing.models.subscription import (
    SubscriptionKey,
    SubscriptionRecord,
    SubscriptionStatus,
)

# Number of striped per-key locks; unrelated keys may share a stripe
LOCK_STRIPES = 64


class SubscriptionStore:
    """In-memory storage for subscription records.

    Thread-safe storage with lookup by key, payer, beneficiary and status.
    Also owns a fixed pool of re-entrant locks, striped by key, so
    read-modify-write sequences on the same subscription are serialized
    (`lock_for`). The pool does not grow with the number of keys seen.
    """

    def __init__(self):
        """Initialize subscription store with empty storage."""
        self._subscriptions: Dict[SubscriptionKey, SubscriptionRecord] = {}
        self._key_locks = tuple(threading.RLock() for _ in range(LOCK_STRIPES))
        self._lock = threading.RLock()

    def lock_for(self, key: SubscriptionKey) -> threading.RLock:
        """Get the lock serializing operations on one key.

        Args:
            key: Subscription key

        Returns:
            Re-entrant lock shared by every caller using this key
        """
        return self._key_locks[hash(key) % LOCK_STRIPES]

    def add(self, subscription: SubscriptionRecord) -> None:
        """Add a new subscription to the store.

        Args:
            subscription: SubscriptionRecord to store

        Raises:
            AlreadyExistsError: If a record already exists for the key
        """
        with self._lock:
            if subscription.key in self._subscriptions:
                raise AlreadyExistsError(
                    f"Subscription already exists for key: {subscription.key}"
                )
            self._subscriptions[subscription.key] = subscription.model_copy(deep=True)

    def get(self, key: SubscriptionKey) -> SubscriptionRecord:
        """Get subscription by key.

        Args:
            key: Subscription key

        Returns:
            Copy of the stored SubscriptionRecord

        Raises:
            SubscriptionNotFoundError: If key not found
        """
        with self._lock:
            subscription = self._subscriptions.get(key)
            if subscription is None:
                raise SubscriptionNotFoundError(f"Subscription not found for key: {key}")
            return subscription.model_copy(deep=True)

    def find(self, key: SubscriptionKey) -> Optional[SubscriptionRecord]:
        """Find subscription by key (returns None if not found)."""
        with self._lock:
            subscription = self._subscriptions.get(key)
            return subscription.model_copy(deep=True) if subscription else None

    def set(self, subscription: SubscriptionRecord) -> None:
        """Replace an existing subscription.

        Args:
            subscription: Updated SubscriptionRecord

        Raises:
            SubscriptionNotFoundError: If no record exists for the key
        """
        with self._lock:
            if subscription.key not in self._subscriptions:
                raise SubscriptionNotFoundError(
                    f"Subscription not found for key: {subscription.key}"
                )
            self._subscriptions[subscription.key] = subscription.model_copy(deep=True)

    def exists(self, key: SubscriptionKey) -> bool:
        with self._lock:
            return key in self._subscriptions

    def get_by_payer(self, payer: str) -> List[SubscriptionRecord]:
        """Get all subscriptions paid by one principal."""
        with self._lock:
            return [
                s.model_copy(deep=True)
                for s in self._subscriptions.values()
                if s.payer == payer
            ]

    def get_by_beneficiary(self, beneficiary: str) -> List[SubscriptionRecord]:
        """Get all subscriptions paying one principal."""
        with self._lock:
            return [
                s.model_copy(deep=True)
                for s in self._subscriptions.values()
                if s.beneficiary == beneficiary
            ]

    def get_by_status(self, status: SubscriptionStatus) -> List[SubscriptionRecord]:
        with self._lock:
            return [
                s.model_copy(deep=True)
                for s in self._subscriptions.values()
                if s.status == status
            ]

    def get_due_for_charge(self, at_time: int) -> List[SubscriptionRecord]:
        """Get subscriptions eligible for a charge at a specific time.

        Returns ACTIVE subscriptions whose period has ended at or before
        the given time, oldest period_end first.

        Args:
            at_time: Timestamp in seconds

        Returns:
            List of SubscriptionRecord objects due for charge
        """
        with self._lock:
            due = [
                s.model_copy(deep=True)
                for s in self._subscriptions.values()
                if s.status == SubscriptionStatus.ACTIVE and s.period_end <= at_time
            ]
        return sorted(due, key=lambda s: s.period_end)

    def count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def count_by_status(self, status: SubscriptionStatus) -> int:
        with self._lock:
            return sum(1 for s in self._subscriptions.values() if s.status == status)

    def clear(self) -> None:
        """Clear all subscriptions from the store.

        Warning: This removes all data. Use with caution.
        """
        with self._lock:
            self._subscriptions.clear()

    def get_statistics(self) -> Dict[str, int]:
        """Get subscription store statistics.

        Returns:
            Dictionary with statistics:
            - total_subscriptions: Total number of subscriptions
            - unique_payers: Number of unique payers
            - unique_beneficiaries: Number of unique beneficiaries
            - active: Count of active subscriptions
            - paused: Count of paused subscriptions
            - canceled: Count of canceled subscriptions
        """
        with self._lock:
            subscriptions = list(self._subscriptions.values())
            return {
                "total_subscriptions": len(subscriptions),
                "unique_payers": len(set(s.payer for s in subscriptions)),
                "unique_beneficiaries": len(set(s.beneficiary for s in subscriptions)),
                "active": sum(1 for s in subscriptions if s.status == SubscriptionStatus.ACTIVE),
                "paused": sum(1 for s in subscriptions if s.status == SubscriptionStatus.PAUSED),
                "canceled": sum(1 for s in subscriptions if s.status == SubscriptionStatus.CANCELED),
            }

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, key: SubscriptionKey) -> bool:
        return self.exists(key)

    def __repr__(self) -> str:
        return f"SubscriptionStore(subscriptions={self.count()})"


# Global store instance
_store_instance: Optional[SubscriptionStore] = None
_store_lock = threading.Lock()


def get_subscription_store() -> SubscriptionStore:
    """Get global subscription store instance (singleton).

    Returns:
        SubscriptionStore instance
    """
    global _store_instance
    if _store_instance is None:
        with _store_lock:
            if _store_instance is None:
                _store_instance = SubscriptionStore()
    return _store_instance


def reset_subscription_store() -> None:
    """Reset global subscription store (clears all data).

    Warning: This removes all subscription data. Use with caution.
    """
    get_subscription_store().clear()
