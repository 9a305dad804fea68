"""
CDP Engine - Collateralized Debt Core

This module provides the oracle, ledger and liquidation components:
- Asset: Supported collateral kinds and their risk parameters
- PriceAggregator: Two-stage median with outlier detection
- PriceOracle: Quote rounds, quorum and staleness policy
- SourceManager: Per-source failure tracking with exponential backoff
- QuoteCollector: Concurrent fetching and oracle rounds
- VaultLedger: Vault state and its atomic mutations
- LiquidationEngine: Health evaluation and optimistic liquidation
- fetchers: Modular price fetcher implementations
"""

from .Asset import Asset, AssetParams
from .errors import EngineError, LedgerError, LiquidationError, OracleError, TransferFailed
from .fixed_point import BPS, NUM_DECIMALS, SCALE
from .LiquidationEngine import (
    LiquidationAssessment,
    LiquidationEngine,
    LiquidationRecord,
    LiquidationState,
)
from .PriceAggregator import AggregationResult, PriceAggregator
from .PriceOracle import PriceOracle
from .PriceQuote import AggregatedPrice, PriceQuote
from .QuoteCollector import QuoteCollector
from .SourceManager import SourceManager, SourceStatus
from .TokenLedger import InMemoryTokenLedger, TokenLedger
from .Vault import HealthReport, LiquidationPlan, Vault, VaultState
from .VaultLedger import VaultLedger

__all__ = [
    "AggregatedPrice",
    "AggregationResult",
    "Asset",
    "AssetParams",
    "BPS",
    "EngineError",
    "HealthReport",
    "InMemoryTokenLedger",
    "LedgerError",
    "LiquidationAssessment",
    "LiquidationEngine",
    "LiquidationError",
    "LiquidationPlan",
    "LiquidationRecord",
    "LiquidationState",
    "NUM_DECIMALS",
    "OracleError",
    "PriceAggregator",
    "PriceOracle",
    "PriceQuote",
    "QuoteCollector",
    "SCALE",
    "SourceManager",
    "SourceStatus",
    "TokenLedger",
    "TransferFailed",
    "Vault",
    "VaultLedger",
    "VaultState",
]
