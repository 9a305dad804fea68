"""Common machinery for venue price fetchers.

A fetcher turns one venue's ticker payload into fixed-point ``PriceQuote``
objects. Transport and parse failures stay inside the fetcher: they are
logged and the asset is reported as None, so a broken venue only costs the
oracle one quote.

Every fetcher goes through one process-wide ``httpx.AsyncClient``. Close it
with ``BaseFetcher.close_shared_client()`` on shutdown.

.. code-block:: python

    @register_fetcher
    class VenueFetcher(BaseFetcher):
        name = "venue"

        async def fetch(self, asset: Asset) -> PriceQuote | None:
            response = await self._get(f"{self.BASE_URL}/{asset.pair_base}")
            return self._quote(asset, response.json()["last"])
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, ClassVar

import httpx

from ..Asset import Asset
from ..errors import FetcherConfigError, FetcherError, FetcherHTTPError
from ..fixed_point import to_fixed
from ..PriceQuote import PriceQuote

logger = logging.getLogger(__name__)

__all__ = [
    "FETCHER_REGISTRY",
    "BaseFetcher",
    "FetcherConfigError",
    "FetcherError",
    "FetcherHTTPError",
    "get_available_fetchers",
    "get_fetcher",
    "register_fetcher",
]

# Response bodies are truncated to this many characters in error messages
ERROR_BODY_LIMIT = 200


class BaseFetcher(ABC):
    """A single price venue.

    Subclasses set ``name`` and implement ``fetch``. Venues whose API can
    price several assets in one request also override ``fetch_batch`` and
    ``supports_batch``.

    :cvar name: Source name the oracle knows this venue by.
    :cvar DEFAULT_TIMEOUT: Per-request timeout in seconds.
    :ivar api_key: Venue API key, if any.
    :ivar timeout: Per-request timeout in seconds.
    """

    _shared_client: ClassVar[httpx.AsyncClient | None] = None

    name: ClassVar[str] = ""

    DEFAULT_TIMEOUT = 10.0

    def __init__(self, api_key: str | None = None, timeout: float | None = None):
        self.api_key = api_key
        self.timeout = timeout or self.DEFAULT_TIMEOUT

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, timeout={self.timeout})"

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key)

    @classmethod
    def get_shared_client(cls) -> httpx.AsyncClient:
        """Return the process-wide HTTP client, opening a new one if needed."""
        client = BaseFetcher._shared_client
        if client is None or client.is_closed:
            client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
                follow_redirects=True,
            )
            BaseFetcher._shared_client = client
        return client

    @classmethod
    async def close_shared_client(cls) -> None:
        client, BaseFetcher._shared_client = BaseFetcher._shared_client, None
        if client is not None and not client.is_closed:
            await client.aclose()

    @abstractmethod
    async def fetch(self, asset: Asset) -> PriceQuote | None:
        """Price one asset in USD.

        :param asset: Collateral asset to price.
        :returns: Quote, or None when the venue could not provide one.
        """

    def supports_asset(self, asset: Asset) -> bool:
        """Whether the venue lists a USD market for the asset."""
        return True

    async def fetch_batch(self, assets: list[Asset]) -> dict[Asset, PriceQuote | None]:
        """Price several assets.

        The default issues one ``fetch`` per supported asset concurrently.
        Unsupported assets map to None without a request.

        :param assets: Assets to price.
        :returns: Quote or None for every requested asset.
        """
        supported = [asset for asset in assets if self.supports_asset(asset)]
        quotes = await asyncio.gather(*(self.fetch(asset) for asset in supported))
        results: dict[Asset, PriceQuote | None] = dict.fromkeys(assets)
        results.update(zip(supported, quotes))
        return results

    @property
    def supports_batch(self) -> bool:
        """True when ``fetch_batch`` prices all assets in one request."""
        return False

    def _quote(
        self, asset: Asset, raw_price: Any, observed_at: float | None = None
    ) -> PriceQuote:
        """Build a quote from a payload price.

        :param asset: Asset being priced.
        :param raw_price: Price string or number from the payload.
        :param observed_at: Venue timestamp; defaults to now.
        :raises ValueError: If the price does not parse or is not positive.
        """
        price = to_fixed(raw_price)
        if price <= 0:
            raise ValueError(f"Non-positive price {raw_price!r}")
        if observed_at is None:
            observed_at = time.time()
        return PriceQuote(asset=asset, price=price, source=self.name, observed_at=observed_at)

    async def _get(
        self,
        url: str,
        *,
        params: dict | None = None,
        headers: dict | None = None,
    ) -> httpx.Response:
        """GET ``url`` through the shared client.

        :raises FetcherHTTPError: If the venue answers with a non-2xx status.
        :raises FetcherError: If the request times out or cannot be sent.
        """
        client = self.get_shared_client()
        try:
            response = await client.get(url, params=params, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise FetcherError(f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            raise FetcherError(f"Request failed: {e}") from e

        if response.is_success:
            return response
        body = response.text[:ERROR_BODY_LIMIT]
        logger.debug(f"[{self.name}] GET {url} -> {response.status_code}: {body}")
        raise FetcherHTTPError(response.status_code, body)


FETCHER_REGISTRY: dict[str, type[BaseFetcher]] = {}


def register_fetcher(cls: type[BaseFetcher]) -> type[BaseFetcher]:
    """Class decorator adding a fetcher to ``FETCHER_REGISTRY`` under its name.

    :raises ValueError: If the class has no ``name`` or the name is taken.
    """
    if not cls.name:
        raise ValueError(f"Fetcher {cls.__name__} must define a 'name' class variable")
    existing = FETCHER_REGISTRY.get(cls.name)
    if existing is not None and existing is not cls:
        raise ValueError(f"Fetcher name '{cls.name}' already used by {existing.__name__}")
    FETCHER_REGISTRY[cls.name] = cls
    return cls


def get_fetcher(
    name: str, api_key: str | None = None, timeout: float | None = None
) -> BaseFetcher:
    """Instantiate a registered fetcher.

    :param name: Source name, e.g. ``"kraken"``.
    :param api_key: Venue API key, if the venue takes one.
    :param timeout: Per-request timeout in seconds.
    :raises ValueError: If no fetcher is registered under ``name``.
    """
    try:
        fetcher_cls = FETCHER_REGISTRY[name]
    except KeyError:
        available = ", ".join(get_available_fetchers())
        raise ValueError(f"Unknown fetcher '{name}'. Available: {available}") from None
    return fetcher_cls(api_key=api_key, timeout=timeout)


def get_available_fetchers() -> list[str]:
    return sorted(FETCHER_REGISTRY)
