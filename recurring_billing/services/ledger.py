"""Value-transfer collaborator.

Responsibilities:
- Move an amount of an asset between two accounts, all-or-nothing
- Report failures as TransferFailedError subclasses
- Reverse a committed transfer (compensating action for failed persistence)
"""

import threading
import uuid
from typing import Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, Field

from recurring_billing.errors import (
    AccountFrozenError,
    InsufficientFundsError,
    InvalidArgumentError,
    TransferFailedError,
)
from recurring_billing.logging_config import get_logger
from recurring_billing.state_logger import log_transfer

logger = get_logger(__name__)


class TransferReceipt(BaseModel):
    """Proof of a committed transfer."""

    transfer_id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Unique transfer ID")
    asset: str
    source: str
    destination: str
    amount: int = Field(..., gt=0)


class Ledger:
    """Interface of the external value-movement system."""

    def transfer(self, asset: str, source: str, destination: str, amount: int) -> TransferReceipt:
        """Move `amount` of `asset` from `source` to `destination`.

        Raises:
            TransferFailedError: If the transfer did not happen
        """
        raise NotImplementedError

    def reverse(self, receipt: TransferReceipt) -> TransferReceipt:
        """Undo a committed transfer, returning the receipt of the reversal."""
        raise NotImplementedError


class InMemoryLedger(Ledger):
    """Thread-safe in-memory balances per (asset, account).

    Accounts can be frozen to simulate a counterparty refusing funds.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._balances: Dict[Tuple[str, str], int] = {}
        self._frozen: Set[str] = set()
        self._history: List[TransferReceipt] = []
        self._reversed: Set[str] = set()

    def deposit(self, asset: str, account: str, amount: int) -> int:
        """Credit an account, returning the new balance."""
        if amount <= 0:
            raise InvalidArgumentError(f"Deposit amount must be positive, got: {amount}")
        with self._lock:
            key = (asset, account)
            self._balances[key] = self._balances.get(key, 0) + amount
            return self._balances[key]

    def balance_of(self, asset: str, account: str) -> int:
        with self._lock:
            return self._balances.get((asset, account), 0)

    def freeze(self, account: str) -> None:
        with self._lock:
            self._frozen.add(account)
        logger.info("account_frozen", account=account)

    def unfreeze(self, account: str) -> None:
        with self._lock:
            self._frozen.discard(account)
        logger.info("account_unfrozen", account=account)

    @property
    def history(self) -> List[TransferReceipt]:
        with self._lock:
            return list(self._history)

    def transfer(self, asset: str, source: str, destination: str, amount: int) -> TransferReceipt:
        if amount <= 0:
            raise InvalidArgumentError(f"Transfer amount must be positive, got: {amount}")

        with self._lock:
            for account in (source, destination):
                if account in self._frozen:
                    log_transfer(asset, source, destination, amount, outcome="frozen", account=account)
                    raise AccountFrozenError(f"Account {account} is frozen")

            available = self._balances.get((asset, source), 0)
            if available < amount:
                log_transfer(asset, source, destination, amount, outcome="insufficient_funds", available=available)
                raise InsufficientFundsError(
                    f"Insufficient {asset} balance for {source}: {available} < {amount}"
                )

            self._balances[(asset, source)] = available - amount
            self._balances[(asset, destination)] = self._balances.get((asset, destination), 0) + amount

            receipt = TransferReceipt(asset=asset, source=source, destination=destination, amount=amount)
            self._history.append(receipt)

        log_transfer(asset, source, destination, amount, outcome="committed", transfer_id=receipt.transfer_id)
        return receipt

    def reverse(self, receipt: TransferReceipt) -> TransferReceipt:
        with self._lock:
            if receipt.transfer_id in self._reversed:
                raise TransferFailedError(f"Transfer {receipt.transfer_id} was already reversed")

            available = self._balances.get((receipt.asset, receipt.destination), 0)
            if available < receipt.amount:
                raise InsufficientFundsError(
                    f"Cannot reverse transfer {receipt.transfer_id}: "
                    f"{receipt.destination} holds {available} < {receipt.amount}"
                )

            self._balances[(receipt.asset, receipt.destination)] = available - receipt.amount
            self._balances[(receipt.asset, receipt.source)] = (
                self._balances.get((receipt.asset, receipt.source), 0) + receipt.amount
            )
            self._reversed.add(receipt.transfer_id)

            reversal = TransferReceipt(
                asset=receipt.asset,
                source=receipt.destination,
                destination=receipt.source,
                amount=receipt.amount,
            )
            self._history.append(reversal)

        log_transfer(
            receipt.asset,
            reversal.source,
            reversal.destination,
            receipt.amount,
            outcome="reversed",
            transfer_id=reversal.transfer_id,
            reverses=receipt.transfer_id,
        )
        return reversal


_ledger_instance: Optional[Ledger] = None
_ledger_lock = threading.Lock()


def get_ledger() -> Ledger:
    """Get global ledger instance (singleton).

    The default InMemoryLedger is seeded from the ledger section of the config.
    """
    global _ledger_instance
    if _ledger_instance is None:
        with _ledger_lock:
            if _ledger_instance is None:
                from recurring_billing.config import get_config

                ledger = InMemoryLedger()
                for balance in get_config().ledger_settings.initial_balances:
                    if balance.amount:
                        ledger.deposit(balance.asset, balance.account, balance.amount)
                _ledger_instance = ledger
    return _ledger_instance


def reset_ledger() -> None:
    """Drop the global ledger instance (for testing)."""
    global _ledger_instance
    with _ledger_lock:
        _ledger_instance = None
