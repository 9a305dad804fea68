"""Unit tests for Asset and AssetParams."""

import pytest

from cdp_engine.src.Asset import Asset, AssetParams, default_asset_params


class TestAssetBasics:
    """Test basic Asset functionality."""

    def test_pair_base(self) -> None:
        """Wrapped assets should be priced via the underlying symbol."""
        assert Asset.ICP.pair_base == "icp"
        assert Asset.CKBTC.pair_base == "btc"
        assert Asset.CKETH.pair_base == "eth"

    def test_pair_quote_is_usd(self) -> None:
        """Every asset should be quoted in USD."""
        assert all(asset.pair_quote == "usd" for asset in Asset)

    def test_str_format(self) -> None:
        """String format should be 'aggregated/base/quote'."""
        assert str(Asset.CKETH) == "aggregated/eth/usd"
        assert str(Asset.ICP) == "aggregated/icp/usd"

    def test_usable_as_dict_key(self) -> None:
        """Asset should work as dictionary key."""
        d = {Asset.CKBTC: "value1"}
        d[Asset.from_string("btc")] = "value2"  # Same asset

        assert len(d) == 1
        assert d[Asset.CKBTC] == "value2"


class TestAssetFromString:
    """Test parsing assets from names."""

    def test_wrapper_name(self) -> None:
        assert Asset.from_string("ckbtc") is Asset.CKBTC

    def test_venue_symbol(self) -> None:
        """The symbol venues quote should resolve to the wrapped asset."""
        assert Asset.from_string("eth") is Asset.CKETH

    def test_case_and_whitespace(self) -> None:
        assert Asset.from_string("  ICP ") is Asset.ICP

    def test_unknown_asset(self) -> None:
        with pytest.raises(ValueError, match="Unknown asset 'doge'"):
            Asset.from_string("doge")


class TestAssetParams:
    """Test per-asset risk parameters."""

    def test_defaults(self) -> None:
        """Defaults are 75% LTV and a 10% liquidation bonus."""
        params = AssetParams()
        assert params.ltv_bps == 7500
        assert params.liquidation_bonus_bps == 1000
        assert params.min_collateral == 0

    def test_default_asset_params_covers_every_asset(self) -> None:
        params = default_asset_params()
        assert set(params) == set(Asset)

    def test_invalid_ltv(self) -> None:
        with pytest.raises(ValueError, match="ltv_bps"):
            AssetParams(ltv_bps=0)
        with pytest.raises(ValueError, match="ltv_bps"):
            AssetParams(ltv_bps=10_000)

    def test_invalid_bonus(self) -> None:
        with pytest.raises(ValueError, match="liquidation_bonus_bps"):
            AssetParams(liquidation_bonus_bps=-1)

    def test_invalid_min_collateral(self) -> None:
        with pytest.raises(ValueError, match="min_collateral"):
            AssetParams(min_collateral=-1)

    def test_frozen(self) -> None:
        params = AssetParams()
        with pytest.raises(AttributeError):
            params.ltv_bps = 5000  # type: ignore[misc]
