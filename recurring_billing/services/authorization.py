"""Authorization policy for lifecycle operations.

The host environment verifies signatures; this module only sees the set
of principals that authorized the current call and decides whether a
policy is satisfied.
"""

from typing import Iterable

from recurring_billing.errors import UnauthorizedError
from recurring_billing.logging_config import get_logger

logger = get_logger(__name__)


class AuthorizationContext:
    """Principals that have authorized the current invocation.

    Args:
        signers: Identities whose authorization the host has verified for this call
    """

    def __init__(self, signers: Iterable[str] = ()):
        self._signers = frozenset(signers)

    @property
    def signers(self) -> frozenset:
        return self._signers

    def authorized_by(self, principal: str) -> bool:
        """Has `principal` authorized the current call?"""
        return principal in self._signers

    def require(self, principal: str) -> None:
        """Require authorization from `principal`.

        Raises:
            UnauthorizedError: If `principal` has not authorized the call
        """
        if not self.authorized_by(principal):
            raise UnauthorizedError(f"Call is not authorized by {principal}")

    def __repr__(self) -> str:
        return f"AuthorizationContext(signers={sorted(self._signers)})"


def require_owner(auth: AuthorizationContext, payer: str) -> str:
    """Strict-owner policy: only the payer may act.

    Returns:
        The authorizing principal (always the payer)

    Raises:
        UnauthorizedError: If the payer has not authorized the call
    """
    auth.require(payer)
    return payer


def require_payer_or_beneficiary(
    auth: AuthorizationContext, payer: str, beneficiary: str
) -> str:
    """OR policy: the payer or the beneficiary may act.

    If the payer is among the signers their authorization is required (and
    thereby confirmed); otherwise the beneficiary's is required.

    Returns:
        The authorizing principal

    Raises:
        UnauthorizedError: If neither principal authorized the call
    """
    if auth.authorized_by(payer):
        auth.require(payer)
        return payer

    auth.require(beneficiary)
    logger.debug("authorized_by_beneficiary", payer=payer, beneficiary=beneficiary)
    return beneficiary
