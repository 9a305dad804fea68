"""LiquidationEngine: On-demand evaluation and liquidation of unsafe vaults.

A vault is ``ELIGIBLE`` once its collateral ratio falls below the liquidation
ratio, a stricter bound than any asset's mint-time LTV ceiling. Liquidation
repays the least debt that restores the ratio to the threshold and hands the
keeper collateral worth the repaid debt plus a bonus, taken pro rata from
every asset in the vault.

Competing keepers are resolved optimistically: ``evaluate`` captures the
vault version and the prices used, and ``liquidate`` is rejected with
``Superseded`` if either has moved on. The engine never runs a background
loop; keepers poll ``scan``/``evaluate`` and decide when to act.

.. code-block:: python

    >>> engine = LiquidationEngine(ledger, oracle)
    >>> assessment = engine.evaluate(vault_id)
    >>> assessment.state
    <LiquidationState.ELIGIBLE: 'eligible'>
    >>> record = engine.liquidate(vault_id, keeper, assessment)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum

from web3 import Web3

from .Asset import Asset
from .errors import (
    NoPrice,
    NotLiquidatable,
    PriceUnavailable,
    StalePrice,
    StateChanged,
    Superseded,
    UnauthorizedLiquidator,
)
from .fixed_point import BPS, ceil_div, format_fixed, mul_fixed
from .PriceOracle import PriceOracle
from .Vault import HealthReport, LiquidationPlan, Vault, VaultState
from .VaultLedger import VaultLedger, normalize_identity

logger = logging.getLogger(__name__)

DEFAULT_LIQUIDATION_RATIO_BPS = 12500  # 125% collateral / debt
DEFAULT_CLOSE_FACTOR_BPS = BPS  # up to 100% of debt per call


class _Unset(Enum):
    UNSET = "unset"


# Marks an optional ``update_config`` argument that may legitimately be None
_UNSET = _Unset.UNSET


class LiquidationState(Enum):
    """Liquidation state of a vault as seen by the engine."""

    HEALTHY = "healthy"
    ELIGIBLE = "eligible"
    LIQUIDATING = "liquidating"
    CLOSED = "closed"


@dataclass(frozen=True)
class LiquidationAssessment:
    """Outcome of ``evaluate`` for one vault.

    :ivar vault_id: Vault evaluated.
    :ivar state: Liquidation state at evaluation time.
    :ivar version: Vault version the assessment is valid for.
    :ivar health: Health report, or None when no prices were needed.
    :ivar plan: Liquidation plan when ``state`` is ELIGIBLE.
    """

    vault_id: int
    state: LiquidationState
    version: int
    health: HealthReport | None = None
    plan: LiquidationPlan | None = None

    @property
    def eligible(self) -> bool:
        return self.state is LiquidationState.ELIGIBLE


@dataclass(frozen=True)
class LiquidationRecord:
    """Audit record of a completed liquidation.

    :ivar record_id: Keccak hash identifying the liquidation.
    :ivar vault_id: Vault liquidated.
    :ivar liquidator: Keeper that performed it.
    :ivar collateral_seized: Amount seized per asset, bonus included.
    :ivar debt_repaid: Debt the keeper paid off.
    :ivar bonus_paid: Seized value above the repaid debt.
    :ivar bad_debt: Debt written off in the same step.
    :ivar timestamp: Unix timestamp of completion.
    :ivar vault_version: Vault version after the liquidation.
    """

    record_id: str
    vault_id: int
    liquidator: str
    collateral_seized: dict[Asset, int]
    debt_repaid: int
    bonus_paid: int
    bad_debt: int
    timestamp: float
    vault_version: int = 0
    prices: dict[Asset, int] = field(default_factory=dict)


class LiquidationEngine:
    """Evaluates vault safety and executes liquidations through the ledger.

    :ivar ledger: Vault ledger; the engine binds itself as its liquidation authority.
    :ivar oracle: Price oracle used for freshness checks.
    :ivar liquidation_ratio_bps: Collateral ratio below which vaults are eligible.
    :ivar close_factor_bps: Max share of debt repaid per liquidation.
    :ivar min_liquidation_debt: Smallest debt repayment of a partial liquidation.
    :ivar max_liquidation_debt: Largest debt repayment per call, or None.
    :ivar allowed_liquidators: Optional allow-list of keeper addresses.
    """

    def __init__(
        self,
        ledger: VaultLedger,
        oracle: PriceOracle,
        liquidation_ratio_bps: int = DEFAULT_LIQUIDATION_RATIO_BPS,
        close_factor_bps: int = DEFAULT_CLOSE_FACTOR_BPS,
        allowed_liquidators: list[str] | None = None,
        min_liquidation_debt: int = 0,
        max_liquidation_debt: int | None = None,
    ) -> None:
        """Initialize the engine and bind it to the ledger.

        :param ledger: Ledger holding the vaults.
        :param oracle: Oracle the ledger prices against.
        :param liquidation_ratio_bps: Liquidation threshold as collateral/debt in
            basis points (default 12500 = 1.25).
        :param close_factor_bps: Cap on debt repaid per call (default 10000 = 100%).
        :param allowed_liquidators: Keeper addresses allowed to liquidate; None
            lets anyone liquidate.
        :param min_liquidation_debt: Dust floor in fixed-point stable units. A
            partial liquidation repays at least this much, and one that would
            leave less than this much debt behind closes the debt instead.
        :param max_liquidation_debt: Optional cap on the debt repaid per call.
        :raises ValueError: If the threshold is not stricter than every asset's
            LTV or the amounts are inconsistent.
        """
        self.ledger = ledger
        self.oracle = oracle
        self.liquidation_ratio_bps = DEFAULT_LIQUIDATION_RATIO_BPS
        self.close_factor_bps = DEFAULT_CLOSE_FACTOR_BPS
        self.min_liquidation_debt = 0
        self.max_liquidation_debt: int | None = None
        self.allowed_liquidators: set[str] | None = None
        self.update_config(
            liquidation_ratio_bps=liquidation_ratio_bps,
            close_factor_bps=close_factor_bps,
            min_liquidation_debt=min_liquidation_debt,
            max_liquidation_debt=max_liquidation_debt,
            allowed_liquidators=allowed_liquidators,
        )
        self._records: list[LiquidationRecord] = []

        ledger.bind_liquidator(self)

    def update_config(
        self,
        *,
        liquidation_ratio_bps: int | None = None,
        close_factor_bps: int | None = None,
        min_liquidation_debt: int | None = None,
        max_liquidation_debt: int | None | _Unset = _UNSET,
        allowed_liquidators: list[str] | None | _Unset = _UNSET,
    ) -> None:
        """Change liquidation parameters at runtime.

        Arguments left out keep their value. The whole update is validated
        before anything changes. Assessments taken under the old parameters
        no longer match and are rejected by ``liquidate``.

        :raises ValueError: If the resulting configuration is invalid.
        """
        ratio = self.liquidation_ratio_bps if liquidation_ratio_bps is None else liquidation_ratio_bps
        close_factor = self.close_factor_bps if close_factor_bps is None else close_factor_bps
        min_debt = self.min_liquidation_debt if min_liquidation_debt is None else min_liquidation_debt
        max_debt = (
            self.max_liquidation_debt if max_liquidation_debt is _UNSET else max_liquidation_debt
        )

        if ratio <= BPS:
            raise ValueError("liquidation_ratio_bps must be above 10000 (ratio > 1)")
        for asset in self.ledger.supported_assets:
            ltv_bps = self.ledger.asset_params[asset].ltv_bps
            if ratio * ltv_bps >= BPS * BPS:
                raise ValueError(
                    f"liquidation_ratio_bps {ratio} is not stricter "
                    f"than the {asset.value} LTV ceiling of {ltv_bps} bps"
                )
        if not 0 < close_factor <= BPS:
            raise ValueError("close_factor_bps must be between 1 and 10000")
        if min_debt < 0:
            raise ValueError("min_liquidation_debt must not be negative")
        if max_debt is not None and max_debt < max(1, min_debt):
            raise ValueError("max_liquidation_debt must be positive and >= min_liquidation_debt")

        self.liquidation_ratio_bps = ratio
        self.close_factor_bps = close_factor
        self.min_liquidation_debt = min_debt
        self.max_liquidation_debt = max_debt
        if allowed_liquidators is not _UNSET:
            self.allowed_liquidators = (
                {normalize_identity(a) for a in allowed_liquidators}
                if allowed_liquidators is not None
                else None
            )
        logger.info(
            f"Liquidation config: ratio {ratio} bps, close factor {close_factor} bps, "
            f"repay range [{format_fixed(min_debt)}, "
            f"{'unbounded' if max_debt is None else format_fixed(max_debt)}]"
        )

    def evaluate(self, vault_id: int) -> LiquidationAssessment:
        """Classify a vault and, if eligible, compute its liquidation plan.

        :param vault_id: Vault to evaluate.
        :returns: LiquidationAssessment valid for the vault's current version.
        :raises VaultNotFound: If no vault has this id.
        :raises PriceUnavailable: If a held asset's price is stale or missing.
        """
        vault = self.ledger.get_vault(vault_id)

        if vault.state is VaultState.LIQUIDATING:
            return LiquidationAssessment(vault_id, LiquidationState.LIQUIDATING, vault.version)
        if vault.state is VaultState.CLOSED:
            return LiquidationAssessment(vault_id, LiquidationState.CLOSED, vault.version)
        if vault.debt == 0:
            return LiquidationAssessment(vault_id, LiquidationState.HEALTHY, vault.version)

        try:
            health = self.ledger.health(vault_id)
        except (StalePrice, NoPrice) as e:
            raise PriceUnavailable(f"vault {vault_id}: {e}") from e

        if health.collateral_value * BPS >= self.liquidation_ratio_bps * health.debt:
            return LiquidationAssessment(
                vault_id, LiquidationState.HEALTHY, vault.version, health=health
            )

        plan = self._plan(vault, health)
        return LiquidationAssessment(
            vault_id, LiquidationState.ELIGIBLE, vault.version, health=health, plan=plan
        )

    def scan(self) -> list[LiquidationAssessment]:
        """Evaluate every vault and return the eligible ones.

        Vaults whose prices are unavailable are skipped and logged.
        """
        eligible: list[LiquidationAssessment] = []
        for vault_id in self.ledger.vault_ids():
            try:
                assessment = self.evaluate(vault_id)
            except PriceUnavailable as e:
                logger.warning(f"Skipping vault {vault_id}: {e}")
                continue
            if assessment.eligible:
                eligible.append(assessment)
        return eligible

    def liquidate(
        self,
        vault_id: int,
        caller: str,
        assessment: LiquidationAssessment | None = None,
    ) -> LiquidationRecord:
        """Liquidate an eligible vault on behalf of a keeper.

        The plan applied is always the engine's own. A keeper-supplied
        assessment only pins the vault version and prices the keeper acted
        on; it must match a fresh evaluation exactly.

        :param vault_id: Vault to liquidate.
        :param caller: Keeper account; pays the debt, receives the collateral.
        :param assessment: Result of an earlier ``evaluate``. If omitted, the
            vault is evaluated now.
        :returns: The appended LiquidationRecord.
        :raises UnauthorizedLiquidator: If an allow-list excludes the caller.
        :raises NotLiquidatable: If the vault is not eligible.
        :raises PriceUnavailable: If prices went stale since evaluation.
        :raises Superseded: If the vault or its prices changed since evaluation.
        :raises ValueError: If the assessment is for another vault or does not
            match the engine's evaluation.
        :raises TransferFailed: If a token transfer failed; nothing was applied.
        """
        keeper = normalize_identity(caller)
        if self.allowed_liquidators is not None and keeper not in self.allowed_liquidators:
            raise UnauthorizedLiquidator(f"{keeper} is not an allowed liquidator")

        if assessment is not None:
            self._check_assessment_current(vault_id, assessment, keeper)
        current = self.evaluate(vault_id)
        if current.state is LiquidationState.LIQUIDATING:
            cause = StateChanged(vault_id, "liquidation in progress")
            logger.info(f"Liquidation of vault {vault_id} by {keeper} superseded: {cause}")
            raise Superseded(f"vault {vault_id}: {cause}") from cause
        if not current.eligible or current.plan is None or current.health is None:
            raise NotLiquidatable(f"vault {vault_id} is {current.state.value}")
        if assessment is not None and assessment != current:
            raise ValueError(f"Assessment for vault {vault_id} does not match its evaluation")

        plan = current.plan
        try:
            vault = self.ledger.liquidate(vault_id, plan, current.version, keeper, authority=self)
        except StateChanged as e:
            logger.info(f"Liquidation of vault {vault_id} by {keeper} superseded: {e}")
            raise Superseded(f"vault {vault_id}: {e}") from e

        record = LiquidationRecord(
            record_id=Web3.to_hex(
                Web3.keccak(text=f"{vault_id}/{current.version}/{keeper}")
            ),
            vault_id=vault_id,
            liquidator=keeper,
            collateral_seized=dict(plan.collateral_seized),
            debt_repaid=plan.debt_repaid,
            bonus_paid=plan.bonus_paid,
            bad_debt=plan.bad_debt,
            timestamp=time.time(),
            vault_version=vault.version,
            prices=dict(current.health.prices),
        )
        self._records.append(record)

        logger.info(
            f"Vault {vault_id} liquidated by {keeper}: repaid "
            f"{format_fixed(plan.debt_repaid)}, bonus {format_fixed(plan.bonus_paid)}"
        )
        return record

    def records(self, vault_id: int | None = None) -> list[LiquidationRecord]:
        """Liquidation audit log, oldest first, optionally for one vault."""
        if vault_id is None:
            return list(self._records)
        return [r for r in self._records if r.vault_id == vault_id]

    def _check_assessment_current(
        self, vault_id: int, assessment: LiquidationAssessment, keeper: str
    ) -> None:
        """Reject an assessment whose vault version or prices have moved on."""
        if assessment.vault_id != vault_id:
            raise ValueError(
                f"Assessment is for vault {assessment.vault_id}, not vault {vault_id}"
            )
        version = self.ledger.get_vault(vault_id).version
        if version != assessment.version:
            cause = StateChanged(
                vault_id,
                "version advanced",
                expected_version=assessment.version,
                actual_version=version,
            )
            logger.info(f"Liquidation of vault {vault_id} by {keeper} superseded: {cause}")
            raise Superseded(f"vault {vault_id}: {cause}") from cause
        if assessment.health is not None:
            self._check_prices_unchanged(vault_id, assessment.health)

    def _check_prices_unchanged(self, vault_id: int, health: HealthReport) -> None:
        for asset, observed_at in health.price_observed_at.items():
            try:
                current = self.oracle.get_price(asset)
            except (StalePrice, NoPrice) as e:
                raise PriceUnavailable(f"vault {vault_id}: {e}") from e
            if current.observed_at != observed_at:
                raise Superseded(f"vault {vault_id}: {asset} price was republished")

    def _effective_bonus_bps(self, vault: Vault, health: HealthReport) -> int:
        """Collateral-value-weighted liquidation bonus across the vault's assets."""
        if health.collateral_value == 0:
            return 0
        weighted = sum(
            mul_fixed(vault.collateral[asset], price)
            * self.ledger.asset_params[asset].liquidation_bonus_bps
            for asset, price in health.prices.items()
        )
        return weighted // health.collateral_value

    def _bound_repayment(self, repay: int, debt: int) -> int:
        """Apply the close factor, the per-call cap and the dust floor."""
        cap = debt * self.close_factor_bps // BPS
        if self.max_liquidation_debt is not None:
            cap = min(cap, self.max_liquidation_debt)
        repay = max(min(repay, cap), min(debt, self.min_liquidation_debt))
        if 0 < debt - repay < self.min_liquidation_debt:
            repay = debt
        return max(1, repay)

    def _plan(self, vault: Vault, health: HealthReport) -> LiquidationPlan:
        """Compute the ratio-restoring repayment and the pro-rata seizure.

        Repaying x and seizing x * (1 + bonus) of value restores the ratio R when

            (C - x * (1 + b)) >= R * (D - x)  <=>  x >= (R*D - C) / (R - 1 - b)

        If no such x exists or it exceeds the debt, the whole position goes.
        When the seizure would take every asset, collateral worth at least the
        debt settles it in full and the bonus shrinks to the surplus. Only
        collateral worth less than the debt leaves bad debt behind.
        """
        collateral_value = health.collateral_value
        debt = health.debt
        bonus_bps = self._effective_bonus_bps(vault, health)
        ratio_bps = self.liquidation_ratio_bps

        denominator = ratio_bps - BPS - bonus_bps
        shortfall = ratio_bps * debt - collateral_value * BPS
        underwater = collateral_value * BPS < debt * (BPS + bonus_bps)

        if denominator <= 0 or underwater:
            repay = debt
        else:
            repay = min(debt, ceil_div(shortfall, denominator))

        repay = self._bound_repayment(repay, debt)
        seize_value = repay * (BPS + bonus_bps) // BPS

        bad_debt = 0
        if seize_value >= collateral_value:
            seized = {asset: vault.collateral[asset] for asset in health.prices}
            if collateral_value >= debt:
                repay = debt
            else:
                repay = collateral_value * BPS // (BPS + bonus_bps)
                bad_debt = debt - repay
        else:
            seized = {
                asset: vault.collateral[asset] * seize_value // collateral_value
                for asset in health.prices
            }

        seized_value = sum(mul_fixed(seized[a], p) for a, p in health.prices.items())
        return LiquidationPlan(
            debt_repaid=repay,
            collateral_seized=seized,
            seized_value=seized_value,
            bonus_paid=max(0, seized_value - repay),
            bad_debt=bad_debt,
            full=bad_debt > 0 or repay == debt,
        )
