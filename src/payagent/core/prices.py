"""Token price service.

Fetches USD prices from a CoinGecko-style ``simple/price`` endpoint with a
5-minute cache. When the source fails, a stale cached value is served (logged
as degraded); with nothing cached, a hardcoded fallback per asset is used.
Fallback prices can be far from market during long outages. Fee computation
accepts that in exchange for never blocking a payment on the oracle.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Generic, Optional, Protocol, TypeVar

import httpx

from payagent.config import config
from payagent.exceptions import PriceUnavailableError, UnsupportedAssetError
from payagent.logging_utils import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# symbol -> price source id
PRICE_SOURCE_IDS: dict[str, str] = {
    "LCX": "lcx",
    "ETH": "ethereum",
    "USDC": "usd-coin",
    "USDT": "tether",
}

FALLBACK_PRICES_USD: dict[str, Decimal] = {
    "LCX": Decimal("0.15"),
    "ETH": Decimal("3000"),
    "USDC": Decimal("1"),
    "USDT": Decimal("1"),
}


class Clock(Protocol):
    def now(self) -> float:
        """Seconds since the epoch."""
        ...


class SystemClock:
    def now(self) -> float:
        return time.time()


@dataclass
class CacheEntry(Generic[T]):
    value: T
    stored_at: float


class TtlCache(Generic[T]):
    """One entry per key with a freshness window.

    Expired entries are kept so callers can still read them as stale values.
    """

    def __init__(self, ttl_seconds: float, clock: Optional[Clock] = None):
        self.ttl_seconds = ttl_seconds
        self.clock = clock or SystemClock()
        self._entries: dict[str, CacheEntry[T]] = {}

    def get_fresh(self, key: str) -> Optional[T]:
        entry = self._entries.get(key)
        if entry is None or self.is_stale(key):
            return None
        return entry.value

    def get_stale(self, key: str) -> Optional[T]:
        entry = self._entries.get(key)
        return entry.value if entry else None

    def put(self, key: str, value: T) -> None:
        self._entries[key] = CacheEntry(value=value, stored_at=self.clock.now())

    def invalidate(self, key: Optional[str] = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def is_stale(self, key: str) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return True
        return (self.clock.now() - entry.stored_at) >= self.ttl_seconds

    def entry(self, key: str) -> Optional[CacheEntry[T]]:
        return self._entries.get(key)


class PriceOracle:
    """USD prices for the incentive token and reference assets."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        cache: Optional[TtlCache[Decimal]] = None,
        timeout: Optional[float] = None,
        http: Optional[httpx.AsyncClient] = None,
        fallbacks: Optional[dict[str, Decimal]] = None,
    ):
        self.api_url = api_url or config.price_api_url
        self.cache = cache if cache is not None else TtlCache(config.price_cache_ttl_seconds)
        self.timeout = timeout if timeout is not None else config.price_timeout_seconds
        self.fallbacks = fallbacks if fallbacks is not None else dict(FALLBACK_PRICES_USD)
        self._http = http

    async def price_usd(self, symbol: str) -> Decimal:
        """Current USD price of ``symbol``.

        Raises:
            UnsupportedAssetError: If the asset has no price source id.
        """
        symbol = symbol.upper()
        source_id = PRICE_SOURCE_IDS.get(symbol)
        if source_id is None:
            raise UnsupportedAssetError(f"No price source for asset {symbol!r}")

        cached = self.cache.get_fresh(symbol)
        if cached is not None:
            return cached

        try:
            price = await self._fetch(source_id)
        except (httpx.HTTPError, PriceUnavailableError) as e:
            logger.error(f"{symbol} price fetch error: {e}")

            stale = self.cache.get_stale(symbol)
            if stale is not None:
                logger.warning(f"Degraded read: using stale {symbol} price {stale} from cache")
                return stale

            fallback = self.fallbacks[symbol]
            logger.warning(f"Degraded read: no cached {symbol} price, using fallback {fallback}")
            return fallback

        self.cache.put(symbol, price)
        return price

    async def _fetch(self, source_id: str) -> Decimal:
        params = {"ids": source_id, "vs_currencies": "usd"}
        headers = {"Accept": "application/json"}

        if self._http is not None:
            response = await self._http.get(
                self.api_url, params=params, headers=headers, timeout=self.timeout
            )
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as http:
                response = await http.get(self.api_url, params=params, headers=headers)

        if response.status_code != 200:
            raise PriceUnavailableError(f"Price API returned {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise PriceUnavailableError("Price API returned invalid JSON") from e

        entry = data.get(source_id) if isinstance(data, dict) else None
        usd = entry.get("usd") if isinstance(entry, dict) else None
        if isinstance(usd, bool) or not isinstance(usd, (int, float)):
            raise PriceUnavailableError(f"Invalid price response format for {source_id}")

        price = Decimal(str(usd))
        if not price.is_finite() or price <= 0:
            raise PriceUnavailableError(f"Unusable price {usd!r} for {source_id}")
        return price

    def cache_info(self) -> dict[str, Any]:
        """Diagnostics for every asset the oracle knows about."""
        info: dict[str, Any] = {}
        now = self.cache.clock.now()
        for symbol in PRICE_SOURCE_IDS:
            entry = self.cache.entry(symbol)
            info[symbol.lower()] = {
                "price": str(entry.value) if entry else None,
                "fetchedAt": (
                    datetime.fromtimestamp(entry.stored_at, tz=timezone.utc).isoformat()
                    if entry
                    else None
                ),
                "ageSeconds": round(now - entry.stored_at, 3) if entry else None,
                "isStale": self.cache.is_stale(symbol),
            }
        return info


price_oracle = PriceOracle()
