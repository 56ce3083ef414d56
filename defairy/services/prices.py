#!/usr/bin/env python3
"""
Historical Price Lookup
CoinGecko ``market_chart`` client used for the 24h price-deviation check.
"""
import logging
import math
import threading
import time
from typing import Dict, Optional, Tuple

import requests

from defairy.config import COINGECKO_API, COINGECKO_API_KEY, PRICE_CACHE_TTL_SECONDS

logger = logging.getLogger("defairy.prices")

COINGECKO_IDS = {
    'SOL': 'solana',
    'USDC': 'usd-coin',
    'USDT': 'tether',
    'ETH': 'ethereum',
    'BTC': 'bitcoin',
    'WBTC': 'wrapped-bitcoin',
    'JUP': 'jupiter-exchange-solana',
    'BONK': 'bonk',
    'RAY': 'raydium',
    'ORCA': 'orca',
    'MSOL': 'msol',
    'JITOSOL': 'jito-staked-sol',
}


class CoinGeckoPriceHistory:
    """Returns the USD price of a symbol ``hours_back`` hours ago, or 0 when unavailable."""

    def __init__(
        self,
        api_base: str = COINGECKO_API,
        api_key: str = COINGECKO_API_KEY,
        session: Optional[requests.Session] = None,
        cache_ttl: int = PRICE_CACHE_TTL_SECONDS,
        timeout: int = 10,
        clock=time.time,
    ):
        self.api_base = api_base.rstrip('/')
        self.api_key = api_key
        self.cache_ttl = cache_ttl
        self.timeout = timeout
        self._session = session or requests.Session()
        self._clock = clock
        self._cache: Dict[Tuple[str, int], Tuple[float, float]] = {}
        self._lock = threading.Lock()

    def get_historical_price(self, symbol: str, hours_back: int) -> float:
        coin_id = COINGECKO_IDS.get((symbol or '').upper())
        if not coin_id:
            logger.debug(f"[Prices] No CoinGecko id for {symbol}")
            return 0.0

        now = self._clock()
        cache_key = (coin_id, hours_back)
        with self._lock:
            cached = self._cache.get(cache_key)
            if cached and now - cached[1] < self.cache_ttl:
                return cached[0]

        price = self._fetch(coin_id, hours_back, now)
        if price > 0:
            with self._lock:
                self._cache[cache_key] = (price, now)
        return price

    def _fetch(self, coin_id: str, hours_back: int, now: float) -> float:
        url = f"{self.api_base}/coins/{coin_id}/market_chart"
        params = {'vs_currency': 'usd', 'days': max(1, math.ceil(hours_back / 24))}
        headers = {'x-cg-demo-api-key': self.api_key} if self.api_key else {}

        try:
            response = self._session.get(url, params=params, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            prices = response.json().get('prices') or []
        except (requests.RequestException, ValueError, AttributeError) as e:
            logger.warning(f"[Prices] CoinGecko history failed for {coin_id}: {e}")
            return 0.0

        if not prices:
            return 0.0

        # Points are [timestamp_ms, price]; take the one closest to the target time
        target_ms = (now - hours_back * 3600) * 1000
        closest = min(prices, key=lambda p: abs(p[0] - target_ms))
        return float(closest[1])
