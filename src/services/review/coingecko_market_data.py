# coding: utf-8
"""
CoinGecko market data adapter for the review pipeline

Supplies market-wide signals, market-cap universes and per-symbol quotes.
Retries are the caller's job (call_external); this adapter only classifies
failures: network errors, 429 and 5xx become TransientExternalError.
"""
import asyncio
import time
from collections import deque
from statistics import mean
from typing import Any, Dict, List, Optional

import aiohttp
from loguru import logger

from config.config import COINGECKO_API_KEY
from src.core.enums import CoinUniverse
from src.core.exceptions import TransientExternalError, ValidationError
from src.services.review.entities import CoinSnapshot, MarketSignals


class RateLimitExceeded(Exception):
    """Raised when rate limit is exceeded and waiting would take too long"""
    pass


class RateLimiter:
    """
    Rate limiter using sliding window algorithm
    Tracks request timestamps to enforce rate limits
    """

    def __init__(self, max_calls: int, time_window: int = 60):
        """
        Args:
            max_calls: Maximum number of calls allowed in time window
            time_window: Time window in seconds (default: 60s)
        """
        self.max_calls = max_calls
        self.time_window = time_window
        self.calls: deque = deque()
        self._lock = asyncio.Lock()

    async def acquire(self, max_wait: float = 10.0) -> None:
        """
        Wait until a request slot is available

        Raises:
            RateLimitExceeded: If the slot is further away than max_wait
        """
        while True:
            async with self._lock:
                now = time.monotonic()

                # Remove timestamps outside time window
                while self.calls and self.calls[0] <= now - self.time_window:
                    self.calls.popleft()

                if len(self.calls) < self.max_calls:
                    self.calls.append(now)
                    return

                sleep_time = self.calls[0] + self.time_window - now
                if sleep_time > max_wait:
                    raise RateLimitExceeded(
                        f"Rate limit exceeded. Need to wait {sleep_time:.1f}s (max: {max_wait:.1f}s)"
                    )

            logger.warning(
                f"Rate limit reached ({len(self.calls)}/{self.max_calls}), waiting {sleep_time:.1f}s"
            )
            await asyncio.sleep(sleep_time)


class CoinGeckoMarketData:
    """
    MarketDataProvider backed by the CoinGecko public/demo API.

    Signals:
    - avg_daily_range_pct: mean (high-low)/low of the top coins over 24h
    - price_movement_pct: share of top coins with a >5% 24h move
    - volume_change_pct: total top-coin volume vs the previous call
    - btc_dominance_pct / trend_pct: from /global
    """

    BASE_URL = "https://api.coingecko.com/api/v3"
    SIGNAL_SAMPLE = 20       # top coins used for market-wide signals
    MOVER_THRESHOLD_PCT = 5.0

    def __init__(self, rate_limit: int = 25, request_timeout: float = 10.0):
        """
        Args:
            rate_limit: Max API calls per minute (25 for Demo API, 10 without key)
            request_timeout: Per-request HTTP timeout in seconds
        """
        self.api_key = COINGECKO_API_KEY
        self.rate_limiter = RateLimiter(max_calls=rate_limit, time_window=60)
        self.request_timeout = request_timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._symbol_ids: Dict[str, str] = {}
        self._last_total_volume: Optional[float] = None

        logger.info(f"CoinGecko market data initialized ({rate_limit} calls/min)")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def _make_request(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Single GET against CoinGecko.

        Raises:
            TransientExternalError: network error, timeout, 429, 5xx, local rate limit
            ValidationError: other 4xx
        """
        params = dict(params or {})
        if self.api_key:
            params["x_cg_demo_api_key"] = self.api_key

        try:
            await self.rate_limiter.acquire(max_wait=10.0)
        except RateLimitExceeded as e:
            raise TransientExternalError(str(e), provider="coingecko") from e

        url = f"{self.BASE_URL}{endpoint}"
        session = await self._get_session()
        try:
            async with session.get(url, params=params) as response:
                if response.status == 200:
                    return await response.json()

                error_text = await response.text()
                if response.status == 429 or response.status >= 500:
                    raise TransientExternalError(
                        f"CoinGecko {response.status} on {endpoint}: {error_text[:200]}",
                        provider="coingecko",
                    )
                raise ValidationError(f"CoinGecko {response.status} on {endpoint}: {error_text[:200]}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientExternalError(f"CoinGecko request failed: {e}", provider="coingecko") from e

    # =========================================================================
    # PARSING
    # =========================================================================

    def _to_snapshot(self, item: Dict[str, Any]) -> CoinSnapshot:
        symbol = (item.get("symbol") or "").upper()
        if item.get("id"):
            self._symbol_ids.setdefault(symbol, item["id"])
        return CoinSnapshot(
            symbol=symbol,
            name=item.get("name") or symbol,
            market_cap_rank=item.get("market_cap_rank") or 0,
            market_cap=float(item.get("market_cap") or 0),
            current_price=float(item.get("current_price") or 0),
            volume_24h=float(item.get("total_volume") or 0),
            price_change_24h=float(item.get("price_change_percentage_24h_in_currency") or item.get("price_change_percentage_24h") or 0),
            price_change_7d=float(item.get("price_change_percentage_7d_in_currency") or 0),
        )

    async def _markets(self, per_page: int, **extra: Any) -> List[Dict[str, Any]]:
        params = {
            "vs_currency": "usd",
            "order": "market_cap_desc",
            "per_page": per_page,
            "page": 1,
            "price_change_percentage": "24h,7d",
            **extra,
        }
        data = await self._make_request("/coins/markets", params)
        return data if isinstance(data, list) else []

    # =========================================================================
    # MarketDataProvider
    # =========================================================================

    async def get_universe(self, universe: CoinUniverse) -> List[CoinSnapshot]:
        items = await self._markets(per_page=universe.size)
        return [self._to_snapshot(item) for item in items]

    async def get_quote(self, symbol: str) -> CoinSnapshot:
        symbol = symbol.upper()
        coin_id = self._symbol_ids.get(symbol)
        if coin_id:
            items = await self._markets(per_page=1, ids=coin_id)
        else:
            items = await self._markets(per_page=5, symbols=symbol.lower())

        if not items:
            raise ValidationError(f"Unknown symbol {symbol}", symbol=symbol)
        return self._to_snapshot(items[0])

    async def get_market_signals(self) -> MarketSignals:
        global_data = (await self._make_request("/global")) or {}
        data = global_data.get("data", {})
        items = await self._markets(per_page=self.SIGNAL_SAMPLE)

        ranges = []
        movers = []
        for item in items:
            high, low = item.get("high_24h"), item.get("low_24h")
            if high and low and low > 0:
                ranges.append((high - low) / low * 100)
            change = item.get("price_change_percentage_24h") or 0
            if abs(change) > self.MOVER_THRESHOLD_PCT:
                movers.append((abs(change), (item.get("symbol") or "").upper()))

        total_volume = sum(float(item.get("total_volume") or 0) for item in items)
        volume_change = 0.0
        if self._last_total_volume:
            volume_change = (total_volume - self._last_total_volume) / self._last_total_volume * 100
        self._last_total_volume = total_volume

        movers.sort(reverse=True)
        return MarketSignals(
            avg_daily_range_pct=mean(ranges) if ranges else 0.0,
            volume_change_pct=volume_change,
            price_movement_pct=len(movers) / len(items) * 100 if items else 0.0,
            news_rate_per_hour=0.0,
            btc_dominance_pct=float(data.get("market_cap_percentage", {}).get("btc", 0.0)),
            trend_pct=float(data.get("market_cap_change_percentage_24h_usd", 0.0)),
            top_movers=[symbol for _, symbol in movers[:5]],
        )
