"""Vault records and health reports returned by the ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from .Asset import Asset


class VaultState(Enum):
    """Ledger-level lifecycle of a vault."""

    OPEN = "open"
    LIQUIDATING = "liquidating"
    CLOSED = "closed"


@dataclass
class Vault:
    """A single owner's collateral position and debt.

    The ledger owns the live instance; callers only ever receive copies.

    :ivar vault_id: Sequential numeric id.
    :ivar owner: Checksummed owner address.
    :ivar collateral: Locked fixed-point amount per asset.
    :ivar debt: Outstanding stable-unit debt (fixed-point).
    :ivar state: Lifecycle state.
    :ivar version: Incremented on every successful mutation.
    :ivar updated_at: Unix timestamp of the last mutation.
    """

    vault_id: int
    owner: str
    collateral: dict[Asset, int] = field(default_factory=dict)
    debt: int = 0
    state: VaultState = VaultState.OPEN
    version: int = 0
    updated_at: float = 0.0

    @property
    def is_empty(self) -> bool:
        """True if the vault holds no collateral and owes no debt."""
        return self.debt == 0 and not any(self.collateral.values())

    def held_assets(self) -> list[Asset]:
        """Assets with a non-zero locked amount."""
        return [asset for asset, amount in self.collateral.items() if amount > 0]

    def copy(self) -> Vault:
        """Detached copy safe to hand to callers."""
        return Vault(
            vault_id=self.vault_id,
            owner=self.owner,
            collateral=dict(self.collateral),
            debt=self.debt,
            state=self.state,
            version=self.version,
            updated_at=self.updated_at,
        )


@dataclass(frozen=True)
class HealthReport:
    """Collateralization of a vault at current trusted prices.

    :ivar vault_id: Vault the report describes.
    :ivar version: Vault version the report was computed against.
    :ivar collateral_value: Sum of collateral x price (fixed-point USD).
    :ivar borrow_limit: Sum of collateral x price x LTV.
    :ivar debt: Outstanding debt.
    :ivar ratio: collateral_value / debt as a fixed-point number, or None when
        the vault has no debt ("fully healthy").
    :ivar prices: Fixed-point price used per asset.
    :ivar price_observed_at: Observation timestamp of each price used.
    """

    vault_id: int
    version: int
    collateral_value: int
    borrow_limit: int
    debt: int
    ratio: int | None
    prices: dict[Asset, int] = field(default_factory=dict)
    price_observed_at: dict[Asset, float] = field(default_factory=dict)

    @property
    def is_fully_healthy(self) -> bool:
        """True if the vault carries no debt."""
        return self.ratio is None

    @property
    def within_ltv(self) -> bool:
        """True if debt is at or under the mint-time borrow limit."""
        return self.debt <= self.borrow_limit


@dataclass(frozen=True)
class LiquidationPlan:
    """Seizure and repayment computed by the liquidation engine.

    :ivar debt_repaid: Debt the keeper pays off (fixed-point stable units).
    :ivar collateral_seized: Amount taken from the vault per asset, bonus included.
    :ivar seized_value: USD value of the seized collateral at the evaluated prices.
    :ivar bonus_paid: Part of ``seized_value`` above ``debt_repaid``.
    :ivar bad_debt: Debt written off because no collateral is left to cover it.
    :ivar full: True if the plan seizes everything or repays all debt.
    """

    debt_repaid: int
    collateral_seized: dict[Asset, int]
    seized_value: int
    bonus_paid: int
    bad_debt: int = 0
    full: bool = False
