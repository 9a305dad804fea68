#!/usr/bin/env python3
"""CDP Engine.

Fetches collateral prices from multiple off-chain sources, publishes the
median price per asset and watches the vault ledger for vaults that fall
below the liquidation ratio.

Configure via command-line options or the matching environment variables.
"""

import argparse
import asyncio
import logging
import os
import sys

from .src.Asset import Asset, AssetParams
from .src.fetchers import BaseFetcher, get_available_fetchers, get_fetcher
from .src.fixed_point import format_fixed, to_fixed
from .src.LiquidationEngine import LiquidationEngine
from .src.PriceOracle import PriceOracle
from .src.QuoteCollector import QuoteCollector
from .src.TokenLedger import InMemoryTokenLedger
from .src.VaultLedger import VaultLedger

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

STABLE_SYMBOL = "cdpUSD"


def parse_api_keys(api_key_str: str | None) -> dict[str, str]:
    """Parse comma-separated API key string into a dictionary.

    Format: source1=key1,source2=key2
    Example: coingecko=demo:CG-abc123

    :param api_key_str: Comma-separated API key string.
    :returns: Dict mapping source names to API keys.
    """
    if not api_key_str:
        return {}

    api_keys = {}
    for item in api_key_str.split(","):
        item = item.strip()
        if "=" in item:
            source, key = item.split("=", 1)
            api_keys[source.strip().lower()] = key.strip()
    return api_keys


def parse_env_api_keys() -> dict[str, str]:
    """Parse API keys from individual environment variables.

    Looks for: API_KEY_COINGECKO, APIKEY_COINGECKO, etc.

    :returns: Dict mapping source names to API keys.
    """
    api_keys = {}
    prefixes = ["API_KEY_", "APIKEY_"]

    for key, value in os.environ.items():
        for prefix in prefixes:
            if key.startswith(prefix) and value:
                source = key[len(prefix):].lower()
                api_keys[source] = value
                break

    return api_keys


def parse_bps_overrides(value: str | None, assets: list[Asset]) -> dict[Asset, int]:
    """Parse a per-asset basis-point setting.

    A bare number applies to every asset; otherwise the format is
    asset1=bps1,asset2=bps2 and unlisted assets keep their default.
    Example: ckbtc=7000,icp=6000

    :param value: Setting string.
    :param assets: Assets a bare number applies to.
    :returns: Dict mapping asset to basis points.
    :raises ValueError: On unknown assets or non-integer values.
    """
    if not value or not value.strip():
        return {}

    value = value.strip()
    if "=" not in value:
        return {asset: int(value) for asset in assets}

    overrides: dict[Asset, int] = {}
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        if "=" not in item:
            raise ValueError(f"Expected asset=bps, got '{item}'")
        name, bps = item.split("=", 1)
        overrides[Asset.from_string(name)] = int(bps.strip())
    return overrides


def parse_source_weights(value: str | None) -> dict[str, int]:
    """Parse comma-separated source weights (e.g. coinbase=2,kraken=1)."""
    return {source: int(weight) for source, weight in parse_api_keys(value).items()}


def parse_amount(value: str | None) -> int | None:
    """Parse a stable-unit amount such as '250.5' into fixed point; None if unset."""
    if not value or not value.strip():
        return None
    return to_fixed(value.strip())


def build_asset_params(
    assets: list[Asset],
    ltv: dict[Asset, int],
    bonus: dict[Asset, int],
) -> dict[Asset, AssetParams]:
    """Combine per-asset overrides into AssetParams, defaults elsewhere."""
    params = {}
    for asset in assets:
        kwargs = {}
        if asset in ltv:
            kwargs["ltv_bps"] = ltv[asset]
        if asset in bonus:
            kwargs["liquidation_bonus_bps"] = bonus[asset]
        params[asset] = AssetParams(**kwargs)
    return params


async def run(
    collector: QuoteCollector,
    engine: LiquidationEngine,
    fetch_period: int,
) -> None:
    """Price loop: publish a round, then scan the ledger for unsafe vaults.

    :param collector: Quote collector driving the oracle.
    :param engine: Liquidation engine to scan after each round.
    :param fetch_period: Seconds between rounds.
    """
    logger.info(f"Starting price loop for {len(collector.assets)} assets")
    try:
        while True:
            published, failures = await collector.collect()
            if failures:
                logger.warning(
                    f"Round published {len(published)} prices, "
                    f"failed for: {', '.join(a.value for a in failures)}"
                )

            for assessment in engine.scan():
                plan = assessment.plan
                assert plan is not None
                logger.info(
                    f"Vault {assessment.vault_id} eligible for liquidation "
                    f"(version {assessment.version}): repay {format_fixed(plan.debt_repaid)}, "
                    f"seize value {format_fixed(plan.seized_value)}"
                )

            await asyncio.sleep(fetch_period)
    finally:
        # Clean up shared HTTP client
        await BaseFetcher.close_shared_client()


def main() -> None:
    """Main entry point for the CDP Engine CLI."""
    available_sources = get_available_fetchers()
    supported_assets = ", ".join(a.value for a in Asset)

    parser = argparse.ArgumentParser(
        description="CDP Engine: Multi-source price oracle and liquidation watcher",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Available price sources:
  {', '.join(available_sources)}

Supported assets:
  {supported_assets}

Examples:
  # All assets from the free sources
  python -m cdp_engine.main --assets icp,ckbtc,cketh \\
      --sources coinbase,kraken,coingecko

  # Stricter ckBTC LTV and weighted sources
  python -m cdp_engine.main --ltv ckbtc=7000 --source-weights coinbase=2

Environment variables (CLI args take precedence):
  ASSETS, SOURCES, MIN_SOURCES, MAX_DEVIATION_BPS, DRIFT_LIMIT_BPS,
  STALENESS_SECONDS, LTV_BPS, LIQUIDATION_RATIO_BPS, LIQUIDATION_BONUS_BPS,
  CLOSE_FACTOR_BPS, MIN_LIQUIDATION_DEBT, MAX_LIQUIDATION_DEBT, SOURCE_WEIGHTS, FETCH_PERIOD, FETCH_TIMEOUT, LIQUIDATORS,
  API_KEYS, API_KEY_COINGECKO, etc.
""",
    )

    parser.add_argument(
        "--assets",
        type=str,
        help=f"Comma-separated collateral assets. Supported: {supported_assets}",
        default=os.environ.get("ASSETS") or "icp,ckbtc,cketh",
    )

    parser.add_argument(
        "--sources",
        type=str,
        help=f"Comma-separated price sources. Available: {', '.join(available_sources)}",
        default=os.environ.get("SOURCES") or "coinbase,kraken,coingecko,binance",
    )

    parser.add_argument(
        "--min-sources",
        dest="min_sources",
        type=int,
        help="Minimum sources required for valid aggregation (default: 2)",
        default=int(os.environ.get("MIN_SOURCES") or "2"),
    )

    parser.add_argument(
        "--max-deviation",
        dest="max_deviation",
        type=int,
        help="Max deviation from the median in bps before excluding (default: 500)",
        default=int(os.environ.get("MAX_DEVIATION_BPS") or "500"),
    )

    parser.add_argument(
        "--drift-limit",
        dest="drift_limit",
        type=int,
        help="Max change vs previous price in bps (default: 1000, 0 to disable)",
        default=int(os.environ.get("DRIFT_LIMIT_BPS") or "1000"),
    )

    parser.add_argument(
        "--staleness",
        type=float,
        help="Seconds after which quotes and prices are stale (default: 300)",
        default=float(os.environ.get("STALENESS_SECONDS") or "300"),
    )

    parser.add_argument(
        "--source-weights",
        dest="source_weights",
        type=str,
        help="Comma-separated median weights (e.g., coinbase=2,kraken=1)",
        default=os.environ.get("SOURCE_WEIGHTS"),
    )

    parser.add_argument(
        "--ltv",
        type=str,
        help="LTV ceiling in bps, for all assets or per asset (e.g., ckbtc=7000)",
        default=os.environ.get("LTV_BPS"),
    )

    parser.add_argument(
        "--liquidation-ratio",
        dest="liquidation_ratio",
        type=int,
        help="Collateral/debt ratio in bps below which vaults are liquidated (default: 12500)",
        default=int(os.environ.get("LIQUIDATION_RATIO_BPS") or "12500"),
    )

    parser.add_argument(
        "--liquidation-bonus",
        dest="liquidation_bonus",
        type=str,
        help="Keeper bonus in bps, for all assets or per asset (default: 1000)",
        default=os.environ.get("LIQUIDATION_BONUS_BPS"),
    )

    parser.add_argument(
        "--close-factor",
        dest="close_factor",
        type=int,
        help="Max share of debt repaid per liquidation in bps (default: 10000)",
        default=int(os.environ.get("CLOSE_FACTOR_BPS") or "10000"),
    )

    parser.add_argument(
        "--min-liquidation-debt",
        dest="min_liquidation_debt",
        type=str,
        help="Smallest debt repaid by a partial liquidation, in stable units (default: 0)",
        default=os.environ.get("MIN_LIQUIDATION_DEBT"),
    )

    parser.add_argument(
        "--max-liquidation-debt",
        dest="max_liquidation_debt",
        type=str,
        help="Largest debt repaid per liquidation, in stable units (default: unbounded)",
        default=os.environ.get("MAX_LIQUIDATION_DEBT"),
    )

    parser.add_argument(
        "--liquidators",
        type=str,
        help="Comma-separated keeper addresses allowed to liquidate (default: anyone)",
        default=os.environ.get("LIQUIDATORS"),
    )

    parser.add_argument(
        "--fetch-period",
        dest="fetch_period",
        type=int,
        help="Seconds between price rounds (minimum: 1, default: 60)",
        default=int(os.environ.get("FETCH_PERIOD") or "60"),
    )

    parser.add_argument(
        "--fetch-timeout",
        dest="fetch_timeout",
        type=float,
        help="Timeout for individual fetch requests in seconds (default: 10.0)",
        default=float(os.environ.get("FETCH_TIMEOUT") or "10.0"),
    )

    parser.add_argument(
        "--api-keys",
        dest="api_keys",
        type=str,
        help="Comma-separated API keys (e.g., coingecko=demo:CG-abc)",
        default=os.environ.get("API_KEYS"),
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    args = parser.parse_args()

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # Validate arguments
    if args.fetch_period < 1:
        parser.error("--fetch-period must be at least 1 second")

    if args.min_sources < 1:
        parser.error("--min-sources must be at least 1")

    if args.staleness <= 0:
        parser.error("--staleness must be positive")

    # Parse assets and sources
    try:
        assets = [Asset.from_string(a) for a in args.assets.split(",") if a.strip()]
        ltv = parse_bps_overrides(args.ltv, assets)
        bonus = parse_bps_overrides(args.liquidation_bonus, assets)
        weights = parse_source_weights(args.source_weights)
        min_liquidation_debt = parse_amount(args.min_liquidation_debt) or 0
        max_liquidation_debt = parse_amount(args.max_liquidation_debt)
    except ValueError as e:
        parser.error(str(e))
    sources = [s.strip().lower() for s in args.sources.split(",") if s.strip()]

    if not assets:
        parser.error("At least one asset must be specified")

    if not sources:
        parser.error("At least one source must be specified")

    # Validate sources
    invalid_sources = [s for s in sources if s not in available_sources]
    if invalid_sources:
        parser.error(
            f"Unknown sources: {invalid_sources}. "
            f"Available: {', '.join(available_sources)}"
        )

    liquidators = None
    if args.liquidators:
        liquidators = [a.strip() for a in args.liquidators.split(",") if a.strip()]

    # Parse API keys (CLI + environment)
    api_keys = parse_env_api_keys()
    api_keys.update(parse_api_keys(args.api_keys))

    # Handle drift limit (0 means disabled)
    drift_limit = args.drift_limit if args.drift_limit > 0 else None

    # Log configuration
    logger.info("=" * 60)
    logger.info("CDP Engine - Oracle and Liquidation Watcher")
    logger.info("=" * 60)
    logger.info(f"Assets:            {', '.join(a.value for a in assets)}")
    logger.info(f"Sources:           {', '.join(sources)}")
    logger.info(f"Min Sources:       {args.min_sources}")
    logger.info(f"Max Deviation:     {args.max_deviation} bps")
    logger.info(f"Drift Limit:       {args.drift_limit} bps" if drift_limit else "Drift Limit:       disabled")
    logger.info(f"Staleness:         {args.staleness}s")
    logger.info(f"Liquidation Ratio: {args.liquidation_ratio} bps")
    logger.info(f"Close Factor:      {args.close_factor} bps")
    if min_liquidation_debt or max_liquidation_debt is not None:
        upper = "unbounded" if max_liquidation_debt is None else format_fixed(max_liquidation_debt)
        logger.info(f"Repay Range:       [{format_fixed(min_liquidation_debt)}, {upper}]")
    logger.info(f"Fetch Period:      {args.fetch_period}s")
    logger.info(f"Fetch Timeout:     {args.fetch_timeout}s")
    if weights:
        logger.info(f"Source Weights:    {weights}")
    if api_keys:
        logger.info(f"API Keys:          {', '.join(api_keys.keys())}")
    logger.info("=" * 60)

    try:
        oracle = PriceOracle(
            sources=sources,
            min_sources=args.min_sources,
            max_deviation_bps=args.max_deviation,
            drift_limit_bps=drift_limit,
            staleness_seconds=args.staleness,
            source_weights=weights or None,
        )
        ledger = VaultLedger(
            oracle,
            stable_token=InMemoryTokenLedger(STABLE_SYMBOL),
            collateral_tokens={asset: InMemoryTokenLedger(asset.value) for asset in assets},
            asset_params=build_asset_params(assets, ltv, bonus),
        )
        engine = LiquidationEngine(
            ledger,
            oracle,
            liquidation_ratio_bps=args.liquidation_ratio,
            close_factor_bps=args.close_factor,
            allowed_liquidators=liquidators,
            min_liquidation_debt=min_liquidation_debt,
            max_liquidation_debt=max_liquidation_debt,
        )
        fetchers = {
            source: get_fetcher(source, api_key=api_keys.get(source), timeout=args.fetch_timeout)
            for source in sources
        }
        collector = QuoteCollector(oracle, fetchers, assets, fetch_timeout=args.fetch_timeout)
        asyncio.run(run(collector, engine, args.fetch_period))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
