"""Exception taxonomy for the oracle, the vault ledger and the liquidation engine.

Oracle and ledger errors are surfaced directly to callers. ``Superseded`` and
``StateChanged`` are expected outcomes of competing keepers, not faults.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .Asset import Asset


class EngineError(Exception):
    """Base exception for every engine error."""

    pass


# --- Oracle -----------------------------------------------------------------


class OracleError(EngineError):
    """Base exception for price oracle errors.

    :ivar asset: Asset the failure relates to.
    """

    def __init__(self, asset: Asset, message: str):
        self.asset = asset
        super().__init__(f"{asset}: {message}")


class InsufficientQuorum(OracleError):
    """Fewer usable quotes than the configured quorum.

    :ivar available: Number of quotes that survived the freshness filter.
    :ivar required: Configured quorum.
    """

    def __init__(self, asset: Asset, available: int, required: int):
        self.available = available
        self.required = required
        super().__init__(
            asset, f"insufficient quorum ({available} of {required} sources)"
        )


class DeviationTooHigh(OracleError):
    """Too many quotes deviated from the median to keep a quorum.

    :ivar dropped: Dict of source name to the dropped fixed-point price.
    """

    def __init__(self, asset: Asset, dropped: dict[str, int]):
        self.dropped = dropped
        super().__init__(asset, f"deviation too high, dropped {sorted(dropped)}")


class DriftTooLarge(OracleError):
    """Candidate price moved too far from the previous published price.

    :ivar drift_bps: Measured move in basis points.
    """

    def __init__(self, asset: Asset, drift_bps: int):
        self.drift_bps = drift_bps
        super().__init__(asset, f"drift of {drift_bps} bps exceeds limit")


class StalePrice(OracleError):
    """Published price is older than the staleness window.

    :ivar age: Age of the published observation in seconds.
    """

    def __init__(self, asset: Asset, age: float):
        self.age = age
        super().__init__(asset, f"price is stale ({age:.0f}s old)")


class NoPrice(OracleError):
    """Asset has never been aggregated."""

    def __init__(self, asset: Asset):
        super().__init__(asset, "no price has been published")


class UnknownSource(OracleError):
    """Quote came from a source that is not registered with the oracle."""

    def __init__(self, asset: Asset, source: str):
        self.source = source
        super().__init__(asset, f"unknown price source '{source}'")


class InvalidQuote(OracleError):
    """Quote carries a non-positive price."""

    pass


# --- Ledger -----------------------------------------------------------------


class LedgerError(EngineError):
    """Base exception for vault ledger errors."""

    pass


class ExceedsLTV(LedgerError):
    """Mutation would leave debt above the LTV-weighted collateral value.

    :ivar debt: Debt the mutation would produce.
    :ivar limit: Maximum debt allowed by the collateral.
    """

    def __init__(self, vault_id: int, debt: int, limit: int):
        self.vault_id = vault_id
        self.debt = debt
        self.limit = limit
        super().__init__(f"vault {vault_id}: debt {debt} would exceed limit {limit}")


class InsufficientCollateral(LedgerError):
    """Withdrawal exceeds the locked amount."""

    pass


class BelowMinimumCollateral(LedgerError):
    """Locked amount would fall below the asset's non-zero minimum."""

    pass


class OverRepay(LedgerError):
    """Repayment exceeds the outstanding debt."""

    pass


class StateChanged(LedgerError):
    """Vault moved on since the caller read it, or is mid-mutation.

    :ivar vault_id: Vault concerned, or None for an owner with no vault yet.
    :ivar expected_version: Version the caller evaluated against, if any.
    :ivar actual_version: Current vault version, if any.
    """

    def __init__(
        self,
        vault_id: int | None,
        reason: str,
        *,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ):
        self.vault_id = vault_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(f"vault {vault_id}: state changed ({reason})")


class VaultNotFound(LedgerError):
    """No vault with the given id."""

    pass


class NotVaultOwner(LedgerError):
    """Caller does not own the vault."""

    pass


class InvalidAmount(LedgerError):
    """Amount is zero or negative."""

    pass


class UnsupportedAsset(LedgerError):
    """Asset is not configured as collateral."""

    pass


class InvalidIdentity(LedgerError):
    """Account identity is not a valid address."""

    pass


class Unauthorized(LedgerError):
    """Privileged ledger operation invoked by someone other than the bound engine."""

    pass


# --- Liquidation ------------------------------------------------------------


class LiquidationError(EngineError):
    """Base exception for liquidation engine errors."""

    pass


class PriceUnavailable(LiquidationError):
    """A price needed for the decision is stale or missing."""

    pass


class Superseded(LiquidationError):
    """Another actor changed the vault or the price first; re-evaluate."""

    pass


class NotLiquidatable(LiquidationError):
    """Vault is not eligible for liquidation."""

    pass


class UnauthorizedLiquidator(LiquidationError):
    """Caller is not on the liquidator allow-list."""

    pass


# --- Collaborators ----------------------------------------------------------


class TransferFailed(EngineError):
    """A token ledger credit or debit failed; the enclosing operation was aborted."""

    pass


# --- Price sources ----------------------------------------------------------


class FetcherError(EngineError):
    """A price source could not produce a quote.

    Raised inside fetchers and caught there; it never reaches the oracle.
    """

    pass


class FetcherConfigError(FetcherError):
    """A fetcher was configured with an unusable API key or endpoint."""

    pass


class FetcherHTTPError(FetcherError):
    """A venue answered with a non-2xx status.

    :ivar status_code: Status code returned by the venue.
    """

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}")
