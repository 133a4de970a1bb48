"""
Rate aggregator for TON pricing.

Queries CoinGecko and Binance concurrently, averages whatever answered and
caches the result for RATE_CACHE_TTL_SECONDS. The STARS -> TON rate is
derived from Telegram's fixed Stars valuation:

    STARS/TON = STARS_USD_RATE / TON_USD
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

import aiohttp

from config import Config
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import RateUnavailable, ValidationError

logger = logging.getLogger(__name__)

COINGECKO_IDS = {"TON": "the-open-network"}
# Binance has no fiat USD pairs; USDT stands in for USD
BINANCE_QUOTES = {"USD": "USDT"}


@dataclass(frozen=True)
class AggregatedRate:
    base: str
    quote: str
    average_rate: Decimal
    best_rate: Decimal
    timestamp: datetime
    sources: List[str] = field(default_factory=list)


class RateAggregatorService:
    """Aggregated market rates with a short TTL cache"""

    SOURCES = ("coingecko", "binance")

    def __init__(
        self,
        cache_ttl_seconds: int = Config.RATE_CACHE_TTL_SECONDS,
        timeout_seconds: int = Config.RATE_REQUEST_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cache_ttl_seconds = cache_ttl_seconds
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._clock = clock
        self._cache: Dict[Tuple[str, str], Tuple[AggregatedRate, float]] = {}

    async def get_aggregated_rate(self, base: str, quote: str) -> AggregatedRate:
        base, quote = base.upper(), quote.upper()
        cached = self._cache.get((base, quote))
        if cached is not None and self._clock() - cached[1] < self.cache_ttl_seconds:
            return cached[0]

        results = await asyncio.gather(
            *(getattr(self, f"_fetch_{name}")(base, quote) for name in self.SOURCES),
            return_exceptions=True,
        )

        prices: List[Decimal] = []
        sources: List[str] = []
        for name, result in zip(self.SOURCES, results):
            if isinstance(result, Exception):
                logger.warning(f"Rate source {name} failed for {base}/{quote}: {result}")
                continue
            if result is None or result <= 0:
                continue
            prices.append(result)
            sources.append(name)

        if not prices:
            if cached is not None:
                logger.warning(f"⚠️ All rate sources failed for {base}/{quote}, serving stale rate")
                return cached[0]
            raise RateUnavailable(f"No rate available for {base}/{quote}")

        average = sum(prices) / Decimal(len(prices))
        rate = AggregatedRate(
            base=base,
            quote=quote,
            average_rate=MonetaryDecimal.quantize_rate(average),
            best_rate=MonetaryDecimal.quantize_rate(max(prices)),
            timestamp=get_naive_utc_now(),
            sources=sources,
        )
        self._cache[(base, quote)] = (rate, self._clock())
        logger.info(f"📈 {base}/{quote} = {rate.average_rate} from {', '.join(sources)}")
        return rate

    async def get_conversion_rate(self, source_currency: str, target_currency: str) -> Decimal:
        """Target units per one source unit"""
        source, target = source_currency.upper(), target_currency.upper()
        if source == "STARS" and target == "TON":
            ton_usd = await self.get_aggregated_rate("TON", "USD")
            return MonetaryDecimal.quantize_rate(Config.STARS_USD_RATE / ton_usd.average_rate)
        if source == target:
            return Decimal("1")
        raise ValidationError(f"Unsupported conversion pair {source}/{target}")

    def clear_cache(self) -> None:
        self._cache.clear()

    async def _fetch_coingecko(self, base: str, quote: str) -> Optional[Decimal]:
        coin_id = COINGECKO_IDS.get(base)
        if coin_id is None:
            return None
        vs = quote.lower()
        url = f"{Config.COINGECKO_API_URL}/simple/price"
        params = {"ids": coin_id, "vs_currencies": vs}
        async with aiohttp.ClientSession() as session:
            async with session.get(url, params=params, timeout=self.timeout) as response:
                if response.status != 200:
                    logger.warning(f"CoinGecko returned HTTP {response.status}")
                    return None
                data = await response.json()
        value = data.get(coin_id, {}).get(vs)
        return Decimal(str(value)) if value is not None else None

    async def _fetch_binance(self, base: str, quote: str) -> Optional[Decimal]:
        symbol = f"{base}{BINANCE_QUOTES.get(quote, quote)}"
        url = f"{Config.BINANCE_API_URL}/ticker/price"
        async with aiohttp.ClientSession() as session:
            async with session.get(url, params={"symbol": symbol}, timeout=self.timeout) as response:
                if response.status != 200:
                    logger.warning(f"Binance returned HTTP {response.status} for {symbol}")
                    return None
                data = await response.json()
        value = data.get("price")
        return Decimal(str(value)) if value is not None else None
