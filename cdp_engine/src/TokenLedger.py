"""TokenLedger: Interface to the external fungible-token ledgers.

The vault ledger moves the stable unit and the collateral wrappers through
these collaborators. ``debit`` takes tokens from an account into protocol
custody (or burns them); ``credit`` releases or mints tokens to an account.
Either call may fail, and implementations signal that with ``TransferFailed``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from .errors import TransferFailed
from .fixed_point import format_fixed

logger = logging.getLogger(__name__)


class TokenLedger(ABC):
    """Abstract token ledger for one token.

    :cvar symbol: Token symbol, used in logs.
    """

    symbol: str = ""

    @abstractmethod
    def credit(self, account: str, amount: int) -> None:
        """Credit ``amount`` to ``account``.

        :param account: Checksummed account address.
        :param amount: Fixed-point amount, always positive.
        :raises TransferFailed: If the transfer could not be made.
        """
        pass

    @abstractmethod
    def debit(self, account: str, amount: int) -> None:
        """Debit ``amount`` from ``account``.

        :param account: Checksummed account address.
        :param amount: Fixed-point amount, always positive.
        :raises TransferFailed: If the transfer could not be made.
        """
        pass


class InMemoryTokenLedger(TokenLedger):
    """Balance table kept in process memory.

    Debits fail when the account balance is insufficient. Used by the CLI and
    by tests in place of a real token service.

    .. code-block:: python

        >>> stable = InMemoryTokenLedger("cdpUSD")
        >>> stable.credit(alice, 5_00000000)
        >>> stable.balance_of(alice)
        500000000
    """

    def __init__(self, symbol: str, balances: dict[str, int] | None = None) -> None:
        self.symbol = symbol
        self._balances: dict[str, int] = dict(balances or {})
        self.total_supply = sum(self._balances.values())

    def balance_of(self, account: str) -> int:
        """Current balance of an account (0 if unknown)."""
        return self._balances.get(account, 0)

    def credit(self, account: str, amount: int) -> None:
        if amount <= 0:
            raise TransferFailed(f"{self.symbol}: credit amount must be positive")
        self._balances[account] = self.balance_of(account) + amount
        self.total_supply += amount
        logger.debug(f"{self.symbol}: credited {format_fixed(amount)} to {account}")

    def debit(self, account: str, amount: int) -> None:
        if amount <= 0:
            raise TransferFailed(f"{self.symbol}: debit amount must be positive")
        balance = self.balance_of(account)
        if balance < amount:
            raise TransferFailed(
                f"{self.symbol}: insufficient balance for {account} "
                f"({format_fixed(balance)} < {format_fixed(amount)})"
            )
        self._balances[account] = balance - amount
        self.total_supply -= amount
        logger.debug(f"{self.symbol}: debited {format_fixed(amount)} from {account}")
