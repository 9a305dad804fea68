"""Unit tests for the price fetchers."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from cdp_engine.src.Asset import Asset
from cdp_engine.src.fetchers import (
    BaseFetcher,
    BinanceFetcher,
    BitstampFetcher,
    CoinbaseFetcher,
    CoinGeckoFetcher,
    FetcherConfigError,
    FetcherError,
    FetcherHTTPError,
    KrakenFetcher,
    get_available_fetchers,
    get_fetcher,
    register_fetcher,
)
from cdp_engine.src.fixed_point import to_fixed


def response(payload) -> MagicMock:
    mock = MagicMock()
    mock.json.return_value = payload
    return mock


class TestRegistry:
    """Test the fetcher registry."""

    def test_available_fetchers(self) -> None:
        assert get_available_fetchers() == [
            "binance", "bitstamp", "coinbase", "coingecko", "kraken",
        ]

    def test_get_fetcher(self) -> None:
        fetcher = get_fetcher("kraken", timeout=3.0)
        assert isinstance(fetcher, KrakenFetcher)
        assert fetcher.timeout == 3.0
        assert not fetcher.has_api_key

    def test_unknown_fetcher(self) -> None:
        with pytest.raises(ValueError, match="Unknown fetcher 'nope'"):
            get_fetcher("nope")

    def test_duplicate_name_rejected(self) -> None:
        class Impostor(BaseFetcher):
            name = "kraken"

            async def fetch(self, asset):
                return None

        with pytest.raises(ValueError, match="already used by KrakenFetcher"):
            register_fetcher(Impostor)
        assert get_fetcher("kraken").__class__ is KrakenFetcher


class TestBaseFetcher:
    """Test shared fetcher behaviour."""

    @patch("cdp_engine.src.fetchers.base.time.time")
    def test_quote_defaults_observed_at(self, mock_time) -> None:
        mock_time.return_value = 1234.0
        quote = CoinbaseFetcher()._quote(Asset.ICP, "5.25")

        assert quote.price == to_fixed("5.25")
        assert quote.source == "coinbase"
        assert quote.observed_at == 1234.0

    def test_quote_rejects_non_positive(self) -> None:
        with pytest.raises(ValueError, match="Non-positive"):
            CoinbaseFetcher()._quote(Asset.ICP, "0")

    def test_http_error(self) -> None:
        """Non-2xx responses raise FetcherHTTPError with the status code."""
        client = MagicMock()
        client.get = AsyncMock(return_value=httpx.Response(429, text="slow down"))
        with patch.object(BaseFetcher, "get_shared_client", return_value=client):
            with pytest.raises(FetcherHTTPError) as exc_info:
                asyncio.run(CoinbaseFetcher()._get("https://example.invalid"))
        assert exc_info.value.status_code == 429

    def test_network_error(self) -> None:
        client = MagicMock()
        client.get = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with patch.object(BaseFetcher, "get_shared_client", return_value=client):
            with pytest.raises(FetcherError, match="Request failed"):
                asyncio.run(CoinbaseFetcher()._get("https://example.invalid"))

    def test_default_fetch_batch_skips_unsupported(self) -> None:
        """Bitstamp has no batch endpoint; ICP is answered without a request."""
        fetcher = BitstampFetcher()
        payload = {"last": "100", "timestamp": "1700000000"}
        with patch.object(fetcher, "_get", AsyncMock(return_value=response(payload))) as get:
            quotes = asyncio.run(fetcher.fetch_batch([Asset.ICP, Asset.CKBTC, Asset.CKETH]))

        assert quotes[Asset.ICP] is None
        assert quotes[Asset.CKBTC].price == to_fixed("100")
        assert quotes[Asset.CKETH].price == to_fixed("100")
        assert get.await_count == 2


class TestCoinbaseFetcher:
    """Test Coinbase ticker parsing."""

    def test_fetch(self) -> None:
        fetcher = CoinbaseFetcher()
        payload = {"price": "64000.12", "time": "2024-01-01T00:00:00Z"}
        with patch.object(fetcher, "_get", AsyncMock(return_value=response(payload))) as get:
            quote = asyncio.run(fetcher.fetch(Asset.CKBTC))

        assert quote.asset is Asset.CKBTC
        assert quote.price == to_fixed("64000.12")
        assert quote.observed_at == 1704067200.0
        assert get.call_args.args[0].endswith("/products/BTC-USD/ticker")

    def test_missing_price(self) -> None:
        fetcher = CoinbaseFetcher()
        with patch.object(fetcher, "_get", AsyncMock(return_value=response({}))):
            assert asyncio.run(fetcher.fetch(Asset.CKBTC)) is None

    def test_fetch_error(self) -> None:
        fetcher = CoinbaseFetcher()
        with patch.object(fetcher, "_get", AsyncMock(side_effect=FetcherHTTPError(500, "down"))):
            assert asyncio.run(fetcher.fetch(Asset.ICP)) is None


class TestBitstampFetcher:
    """Test Bitstamp ticker parsing."""

    def test_fetch(self) -> None:
        fetcher = BitstampFetcher()
        payload = {"last": "3100.5", "timestamp": "1700000000"}
        with patch.object(fetcher, "_get", AsyncMock(return_value=response(payload))):
            quote = asyncio.run(fetcher.fetch(Asset.CKETH))

        assert quote.price == to_fixed("3100.5")
        assert quote.observed_at == 1700000000.0

    def test_icp_unsupported(self) -> None:
        fetcher = BitstampFetcher()
        assert not fetcher.supports_asset(Asset.ICP)
        assert asyncio.run(fetcher.fetch(Asset.ICP)) is None


class TestKrakenFetcher:
    """Test Kraken batch parsing."""

    def test_fetch_batch(self) -> None:
        fetcher = KrakenFetcher()
        payload = {
            "error": [],
            "result": {
                "XXBTZUSD": {"c": ["64000.1", "0.01"]},
                "ICPUSD": {"c": ["5.5", "10"]},
            },
        }
        with patch.object(fetcher, "_get", AsyncMock(return_value=response(payload))) as get:
            quotes = asyncio.run(fetcher.fetch_batch([Asset.CKBTC, Asset.ICP]))

        assert quotes[Asset.CKBTC].price == to_fixed("64000.1")
        assert quotes[Asset.ICP].price == to_fixed("5.5")
        assert get.call_args.kwargs["params"] == {"pair": "XBTUSD,ICPUSD"}

    def test_api_error(self) -> None:
        fetcher = KrakenFetcher()
        payload = {"error": ["EQuery:Unknown asset pair"], "result": {}}
        with patch.object(fetcher, "_get", AsyncMock(return_value=response(payload))):
            assert asyncio.run(fetcher.fetch(Asset.ICP)) is None

    def test_bad_ticker_only_affects_its_asset(self) -> None:
        fetcher = KrakenFetcher()
        payload = {
            "error": [],
            "result": {"XETHZUSD": {"c": ["abc"]}, "ICPUSD": {"c": ["5.5"]}},
        }
        with patch.object(fetcher, "_get", AsyncMock(return_value=response(payload))):
            quotes = asyncio.run(fetcher.fetch_batch([Asset.CKETH, Asset.ICP]))

        assert quotes[Asset.CKETH] is None
        assert quotes[Asset.ICP].price == to_fixed("5.5")

    def test_out_of_range_ticker_only_affects_its_asset(self) -> None:
        fetcher = KrakenFetcher()
        payload = {
            "error": [],
            "result": {"XXBTZUSD": {"c": ["1e40"]}, "ICPUSD": {"c": ["5.5"]}},
        }
        with patch.object(fetcher, "_get", AsyncMock(return_value=response(payload))):
            quotes = asyncio.run(fetcher.fetch_batch([Asset.CKBTC, Asset.ICP]))

        assert quotes[Asset.CKBTC] is None
        assert quotes[Asset.ICP].price == to_fixed("5.5")


class TestCoinGeckoFetcher:
    """Test CoinGecko parsing and key handling."""

    def test_fetch_batch(self) -> None:
        fetcher = CoinGeckoFetcher()
        payload = {
            "bitcoin": {"usd": 64000.5, "last_updated_at": 1700000000},
            "internet-computer": {"usd": 5.1},
        }
        with patch.object(fetcher, "_get", AsyncMock(return_value=response(payload))) as get:
            quotes = asyncio.run(fetcher.fetch_batch([Asset.CKBTC, Asset.ICP, Asset.CKETH]))

        assert quotes[Asset.CKBTC].price == to_fixed("64000.5")
        assert quotes[Asset.CKBTC].observed_at == 1700000000.0
        assert quotes[Asset.ICP].price == to_fixed("5.1")
        assert quotes[Asset.CKETH] is None
        assert get.call_args.kwargs["params"]["ids"] == "bitcoin,ethereum,internet-computer"
        assert get.call_args.kwargs["headers"] is None

    def test_demo_key(self) -> None:
        fetcher = CoinGeckoFetcher(api_key="demo:CG-abc")
        assert fetcher.api_key == "CG-abc"
        assert fetcher.base_url == CoinGeckoFetcher.BASE_URL_FREE
        assert fetcher._headers() == {"x-cg-demo-api-key": "CG-abc"}

    def test_pro_key(self) -> None:
        fetcher = CoinGeckoFetcher(api_key="pro-key")
        assert fetcher.base_url == CoinGeckoFetcher.BASE_URL_PRO
        assert fetcher._headers() == {"x-cg-pro-api-key": "pro-key"}

    def test_empty_demo_key(self) -> None:
        with pytest.raises(FetcherConfigError, match="demo key is empty"):
            CoinGeckoFetcher(api_key="demo:")


class TestBinanceFetcher:
    """Test Binance USDT conversion."""

    def test_converts_through_usdt(self) -> None:
        fetcher = BinanceFetcher()
        payload = [
            {"symbol": "BTCUSDT", "price": "64000.00"},
            {"symbol": "USDTUSD", "price": "1.001"},
        ]
        with patch.object(fetcher, "_get", AsyncMock(return_value=response(payload))) as get:
            quote = asyncio.run(fetcher.fetch(Asset.CKBTC))

        assert quote.price == to_fixed("64064")
        assert json.loads(get.call_args.kwargs["params"]["symbols"]) == ["BTCUSDT", "USDTUSD"]

    def test_depeg_excludes_all(self) -> None:
        fetcher = BinanceFetcher()
        payload = [
            {"symbol": "BTCUSDT", "price": "64000.00"},
            {"symbol": "USDTUSD", "price": "0.97"},
        ]
        with patch.object(fetcher, "_get", AsyncMock(return_value=response(payload))):
            assert asyncio.run(fetcher.fetch(Asset.CKBTC)) is None

    def test_missing_usdt_rate(self) -> None:
        fetcher = BinanceFetcher()
        payload = [{"symbol": "ICPUSDT", "price": "5.0"}]
        with patch.object(fetcher, "_get", AsyncMock(return_value=response(payload))):
            assert asyncio.run(fetcher.fetch(Asset.ICP)) is None
