"""VaultLedger: Authoritative collateral and debt state for every vault.

Owners deposit collateral, mint the stable unit against it, repay and
withdraw. Every mutation that adds risk is checked against the mint-time LTV
ceiling using fresh prices from the ``PriceOracle``:

    debt <= sum(collateral[asset] * price[asset] * ltv[asset])

Token movements go through external ``TokenLedger`` collaborators and happen
before the vault is touched. A failed transfer therefore leaves the vault
exactly as it was. Only the bound liquidation engine may call ``liquidate``,
and only against the vault version it evaluated.

.. code-block:: python

    >>> ledger = VaultLedger(oracle, stable, {Asset.CKBTC: ckbtc})
    >>> vault = ledger.deposit(alice, Asset.CKBTC, to_fixed("1"))
    >>> ledger.mint(alice, vault.vault_id, to_fixed("750"))
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from web3 import Web3

from .Asset import Asset, AssetParams, default_asset_params
from .errors import (
    BelowMinimumCollateral,
    ExceedsLTV,
    InsufficientCollateral,
    InvalidAmount,
    InvalidIdentity,
    NotVaultOwner,
    OverRepay,
    StateChanged,
    TransferFailed,
    Unauthorized,
    UnsupportedAsset,
    VaultNotFound,
)
from .fixed_point import BPS, SCALE, div_fixed, format_fixed, mul_fixed
from .PriceOracle import PriceOracle
from .TokenLedger import TokenLedger
from .Vault import HealthReport, LiquidationPlan, Vault, VaultState

logger = logging.getLogger(__name__)


def normalize_identity(account: str) -> str:
    """Validate an account address and return its checksummed form.

    :param account: Hex address, any case.
    :returns: EIP-55 checksummed address.
    :raises InvalidIdentity: If the value is not a 20-byte hex address.
    """
    if not isinstance(account, str) or not Web3.is_address(account):
        raise InvalidIdentity(f"Invalid account address: {account!r}")
    return Web3.to_checksum_address(account)


class VaultLedger:
    """Owns every vault and applies the enumerated mutations atomically.

    :ivar oracle: Source of trusted prices.
    :ivar stable_token: Ledger of the minted stable unit.
    :ivar collateral_tokens: Ledger per collateral asset.
    :ivar asset_params: Risk parameters per collateral asset.
    :ivar bad_debt: Total debt written off by liquidations.
    """

    def __init__(
        self,
        oracle: PriceOracle,
        stable_token: TokenLedger,
        collateral_tokens: dict[Asset, TokenLedger],
        asset_params: dict[Asset, AssetParams] | None = None,
    ) -> None:
        """Initialize the ledger.

        :param oracle: Price oracle consulted for every risk check.
        :param stable_token: Token ledger for the stable unit.
        :param collateral_tokens: Token ledger per accepted collateral asset.
        :param asset_params: Per-asset overrides; unspecified assets use defaults.
        :raises ValueError: If no collateral asset is configured.
        """
        if not collateral_tokens:
            raise ValueError("At least one collateral asset must be configured")

        self.oracle = oracle
        self.stable_token = stable_token
        self.collateral_tokens = dict(collateral_tokens)
        self.asset_params = default_asset_params()
        self.asset_params.update(asset_params or {})
        self.bad_debt = 0

        self._vaults: dict[int, Vault] = {}
        self._by_owner: dict[str, int] = {}
        self._next_vault_id = 1
        self._in_flight: set[str] = set()
        self._liquidation_authority: object | None = None

    # --- Queries --------------------------------------------------------------

    @property
    def supported_assets(self) -> list[Asset]:
        """Assets accepted as collateral."""
        return list(self.collateral_tokens)

    def get_vault(self, vault_id: int) -> Vault:
        """Return a detached copy of a vault.

        :raises VaultNotFound: If no vault has this id.
        """
        return self._get(vault_id).copy()

    def vault_id_for(self, owner: str) -> int | None:
        """Id of the owner's vault, or None if they never deposited."""
        return self._by_owner.get(normalize_identity(owner))

    def vault_ids(self) -> list[int]:
        """Ids of every vault, closed ones included."""
        return sorted(self._vaults)

    def health(self, vault_id: int) -> HealthReport:
        """Collateralization of a vault at current trusted prices.

        :param vault_id: Vault to inspect.
        :returns: HealthReport; ``ratio`` is None when the vault has no debt.
        :raises VaultNotFound: If no vault has this id.
        :raises StalePrice: If a held asset's price is stale.
        :raises NoPrice: If a held asset was never priced.
        """
        vault = self._get(vault_id)
        return self._valuation(vault, vault.collateral, vault.debt)

    # --- Owner mutations ------------------------------------------------------

    def deposit(self, owner: str, asset: Asset, amount: int) -> Vault:
        """Lock collateral, opening the owner's vault on first deposit.

        :param owner: Depositing account.
        :param asset: Collateral asset.
        :param amount: Fixed-point amount, positive.
        :returns: Copy of the updated vault.
        :raises InvalidAmount: If amount is not positive.
        :raises UnsupportedAsset: If the asset is not accepted.
        :raises BelowMinimumCollateral: If the locked total stays under the minimum.
        :raises TransferFailed: If the collateral debit failed.
        """
        owner = normalize_identity(owner)
        self._check_amount(amount)
        token = self._collateral_token(asset)

        with self._exclusive(owner):
            vault_id = self._by_owner.get(owner)
            vault = self._vaults.get(vault_id) if vault_id is not None else None
            if vault is not None:
                self._ensure_idle(vault)

            locked = (vault.collateral.get(asset, 0) if vault else 0) + amount
            self._check_minimum(asset, locked)

            self._transfer(token, "debit", owner, amount)

            if vault is None:
                vault = Vault(vault_id=self._next_vault_id, owner=owner)
                self._vaults[vault.vault_id] = vault
                self._by_owner[owner] = vault.vault_id
                self._next_vault_id += 1
                logger.info(f"Vault {vault.vault_id} opened for {owner}")

            vault.collateral[asset] = locked
            self._commit(vault)

        logger.info(
            f"Vault {vault.vault_id}: deposited {format_fixed(amount)} {asset.value}"
        )
        return vault.copy()

    def mint(self, owner: str, vault_id: int, amount: int) -> Vault:
        """Increase debt and credit the stable unit to the owner.

        :raises ExceedsLTV: If the new debt exceeds the borrow limit.
        :raises StalePrice: If any held asset's price is stale.
        :raises NoPrice: If any held asset was never priced.
        :raises TransferFailed: If the stable credit failed.
        """
        self._check_amount(amount)
        vault = self._owned(owner, vault_id)

        with self._exclusive(vault.owner):
            self._ensure_idle(vault)
            new_debt = vault.debt + amount
            report = self._valuation(vault, vault.collateral, new_debt)
            if not report.within_ltv:
                raise ExceedsLTV(vault_id, new_debt, report.borrow_limit)

            self._transfer(self.stable_token, "credit", vault.owner, amount)
            vault.debt = new_debt
            self._commit(vault)

        logger.info(
            f"Vault {vault_id}: minted {format_fixed(amount)} "
            f"(debt {format_fixed(vault.debt)}, limit {format_fixed(report.borrow_limit)})"
        )
        return vault.copy()

    def repay(self, owner: str, vault_id: int, amount: int) -> Vault:
        """Burn the owner's stable unit against the vault's debt.

        :raises OverRepay: If amount exceeds the outstanding debt.
        :raises TransferFailed: If the stable debit failed.
        """
        self._check_amount(amount)
        vault = self._owned(owner, vault_id)

        with self._exclusive(vault.owner):
            self._ensure_idle(vault)
            if amount > vault.debt:
                raise OverRepay(
                    f"vault {vault_id}: repayment {format_fixed(amount)} exceeds "
                    f"debt {format_fixed(vault.debt)}"
                )

            self._transfer(self.stable_token, "debit", vault.owner, amount)
            vault.debt -= amount
            self._commit(vault)

        logger.info(
            f"Vault {vault_id}: repaid {format_fixed(amount)} "
            f"(debt {format_fixed(vault.debt)})"
        )
        return vault.copy()

    def withdraw(self, owner: str, vault_id: int, asset: Asset, amount: int) -> Vault:
        """Release collateral if the remaining position stays within LTV.

        No price is needed when the vault carries no debt.

        :raises InsufficientCollateral: If amount exceeds the locked amount.
        :raises BelowMinimumCollateral: If a non-zero remainder is under the minimum.
        :raises ExceedsLTV: If the remaining collateral cannot back the debt.
        :raises StalePrice: If any remaining asset's price is stale.
        :raises TransferFailed: If the collateral credit failed.
        """
        self._check_amount(amount)
        token = self._collateral_token(asset)
        vault = self._owned(owner, vault_id)

        with self._exclusive(vault.owner):
            self._ensure_idle(vault)
            locked = vault.collateral.get(asset, 0)
            if amount > locked:
                raise InsufficientCollateral(
                    f"vault {vault_id}: withdrawal {format_fixed(amount)} exceeds "
                    f"locked {format_fixed(locked)} {asset.value}"
                )
            remaining = dict(vault.collateral)
            remaining[asset] = locked - amount
            self._check_minimum(asset, remaining[asset])

            if vault.debt > 0:
                report = self._valuation(vault, remaining, vault.debt)
                if not report.within_ltv:
                    raise ExceedsLTV(vault_id, vault.debt, report.borrow_limit)

            self._transfer(token, "credit", vault.owner, amount)
            vault.collateral = remaining
            self._commit(vault)

        logger.info(
            f"Vault {vault_id}: withdrew {format_fixed(amount)} {asset.value}"
        )
        return vault.copy()

    # --- Privileged -----------------------------------------------------------

    def bind_liquidator(self, authority: object) -> None:
        """Register the single component allowed to call ``liquidate``.

        :raises Unauthorized: If a different authority is already bound.
        """
        if self._liquidation_authority is not None and self._liquidation_authority is not authority:
            raise Unauthorized("A liquidation authority is already bound")
        self._liquidation_authority = authority

    def liquidate(
        self,
        vault_id: int,
        plan: LiquidationPlan,
        expected_version: int,
        caller: str,
        authority: object,
    ) -> Vault:
        """Apply a liquidation plan atomically.

        The keeper pays ``plan.debt_repaid`` in the stable unit and receives
        ``plan.collateral_seized``. If any transfer fails, completed transfers
        are reversed and the vault is left untouched.

        :param vault_id: Vault being liquidated.
        :param plan: Seizure and repayment computed by the engine.
        :param expected_version: Vault version the plan was computed against.
        :param caller: Keeper account.
        :param authority: Must be the bound liquidation authority.
        :returns: Copy of the updated vault.
        :raises Unauthorized: If authority is not the bound engine.
        :raises StateChanged: If the vault moved past ``expected_version`` or is
            mid-mutation.
        :raises InvalidAmount: If the plan does not fit the vault.
        :raises TransferFailed: If a transfer failed.
        """
        if self._liquidation_authority is None or authority is not self._liquidation_authority:
            raise Unauthorized("liquidate() may only be called by the bound liquidation engine")

        caller = normalize_identity(caller)
        vault = self._get(vault_id)

        with self._exclusive(vault.owner, vault_id):
            self._ensure_idle(vault)
            if vault.version != expected_version:
                raise StateChanged(
                    vault_id,
                    "version advanced",
                    expected_version=expected_version,
                    actual_version=vault.version,
                )
            self._check_plan(vault, plan)

            vault.state = VaultState.LIQUIDATING
            try:
                self._apply_transfers(caller, plan)
            except TransferFailed:
                vault.state = VaultState.OPEN
                raise

            for asset, amount in plan.collateral_seized.items():
                vault.collateral[asset] = vault.collateral.get(asset, 0) - amount
            vault.debt -= plan.debt_repaid + plan.bad_debt
            self.bad_debt += plan.bad_debt
            vault.state = VaultState.OPEN
            self._commit(vault)

        logger.info(
            f"Vault {vault_id}: liquidated by {caller}, repaid "
            f"{format_fixed(plan.debt_repaid)}, seized value "
            f"{format_fixed(plan.seized_value)}"
            + (f", wrote off {format_fixed(plan.bad_debt)}" if plan.bad_debt else "")
        )
        return vault.copy()

    # --- Internals ------------------------------------------------------------

    def _get(self, vault_id: int) -> Vault:
        vault = self._vaults.get(vault_id)
        if vault is None:
            raise VaultNotFound(f"Vault {vault_id} not found")
        return vault

    def _owned(self, owner: str, vault_id: int) -> Vault:
        owner = normalize_identity(owner)
        vault = self._get(vault_id)
        if vault.owner != owner:
            raise NotVaultOwner(f"{owner} does not own vault {vault_id}")
        return vault

    def _collateral_token(self, asset: Asset) -> TokenLedger:
        token = self.collateral_tokens.get(asset)
        if token is None:
            raise UnsupportedAsset(f"{asset.value} is not accepted as collateral")
        return token

    @staticmethod
    def _check_amount(amount: int) -> None:
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise InvalidAmount(f"Amount must be a positive fixed-point integer, got {amount!r}")

    def _check_minimum(self, asset: Asset, locked: int) -> None:
        minimum = self.asset_params[asset].min_collateral
        if 0 < locked < minimum:
            raise BelowMinimumCollateral(
                f"{asset.value}: {format_fixed(locked)} is below the minimum "
                f"{format_fixed(minimum)}"
            )

    @staticmethod
    def _ensure_idle(vault: Vault) -> None:
        if vault.state is VaultState.LIQUIDATING:
            raise StateChanged(vault.vault_id, "liquidation in progress")

    @contextmanager
    def _exclusive(self, owner: str, vault_id: int | None = None) -> Iterator[None]:
        """Reject re-entrant calls for an owner while its transfers are in flight."""
        if owner in self._in_flight:
            raise StateChanged(
                vault_id if vault_id is not None else self._by_owner.get(owner),
                "another operation is in progress",
            )
        self._in_flight.add(owner)
        try:
            yield
        finally:
            self._in_flight.discard(owner)

    def _commit(self, vault: Vault) -> None:
        vault.version += 1
        vault.updated_at = time.time()
        vault.state = VaultState.CLOSED if vault.is_empty else VaultState.OPEN

    def _valuation(self, vault: Vault, collateral: dict[Asset, int], debt: int) -> HealthReport:
        """Value a (possibly hypothetical) collateral set against a debt."""
        prices: dict[Asset, int] = {}
        observed: dict[Asset, float] = {}
        collateral_value = 0
        borrow_limit = 0

        for asset, amount in collateral.items():
            if amount <= 0:
                continue
            price = self.oracle.get_price(asset)
            prices[asset] = price.value
            observed[asset] = price.observed_at
            value = mul_fixed(amount, price.value)
            collateral_value += value
            # Floor once over the full product to avoid compounding truncation
            borrow_limit += amount * price.value * self.asset_params[asset].ltv_bps // (SCALE * BPS)

        return HealthReport(
            vault_id=vault.vault_id,
            version=vault.version,
            collateral_value=collateral_value,
            borrow_limit=borrow_limit,
            debt=debt,
            ratio=div_fixed(collateral_value, debt) if debt > 0 else None,
            prices=prices,
            price_observed_at=observed,
        )

    def _check_plan(self, vault: Vault, plan: LiquidationPlan) -> None:
        if plan.debt_repaid < 0 or plan.bad_debt < 0:
            raise InvalidAmount("Liquidation amounts must not be negative")
        if plan.debt_repaid == 0 and plan.bad_debt == 0:
            raise InvalidAmount("Liquidation plan repays nothing")
        if plan.debt_repaid + plan.bad_debt > vault.debt:
            raise InvalidAmount(
                f"vault {vault.vault_id}: plan settles more than the debt "
                f"{format_fixed(vault.debt)}"
            )
        for asset, amount in plan.collateral_seized.items():
            if amount < 0 or amount > vault.collateral.get(asset, 0):
                raise InvalidAmount(
                    f"vault {vault.vault_id}: cannot seize {format_fixed(amount)} {asset.value}"
                )
        if plan.bad_debt > 0 and any(
            vault.collateral.get(a, 0) != plan.collateral_seized.get(a, 0)
            for a in vault.held_assets()
        ):
            raise InvalidAmount("Bad debt may only be written off once all collateral is seized")

    def _apply_transfers(self, caller: str, plan: LiquidationPlan) -> None:
        """Keeper pays the debt, then receives collateral; reversed on failure."""
        undo: list[tuple[TokenLedger, str, int]] = []
        try:
            if plan.debt_repaid > 0:
                self._transfer(self.stable_token, "debit", caller, plan.debt_repaid)
                undo.append((self.stable_token, "credit", plan.debt_repaid))
            for asset, amount in plan.collateral_seized.items():
                if amount <= 0:
                    continue
                token = self._collateral_token(asset)
                self._transfer(token, "credit", caller, amount)
                undo.append((token, "debit", amount))
        except TransferFailed:
            for token, op, amount in reversed(undo):
                try:
                    self._transfer(token, op, caller, amount)
                except TransferFailed:
                    logger.exception(
                        f"Failed to reverse {op} of {format_fixed(amount)} "
                        f"{token.symbol} for {caller}"
                    )
            raise

    @staticmethod
    def _transfer(token: TokenLedger, op: str, account: str, amount: int) -> None:
        """Call a token collaborator, normalizing any failure to TransferFailed."""
        method: Callable[[str, int], None] = getattr(token, op)
        try:
            method(account, amount)
        except TransferFailed:
            raise
        except Exception as e:
            raise TransferFailed(
                f"{token.symbol}: {op} of {format_fixed(amount)} for {account} failed: {e}"
            ) from e
