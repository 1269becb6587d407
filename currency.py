# currency.py
"""SOL -> USD display conversion. Cached for USD_RATE_CACHE_SECONDS; stale or fixed fallback on error."""

from __future__ import annotations
import asyncio
import time
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import aiohttp
from loguru import logger

from config import settings, Settings

CENTS = Decimal("0.01")


class UsdRates:
    def __init__(self, cfg: Settings = settings):
        self.cfg = cfg
        self.rate: Optional[Decimal] = None
        self.updated_at: Optional[float] = None
        self.source = "fallback"

    def _fresh(self) -> bool:
        return (
            self.rate is not None
            and self.updated_at is not None
            and time.time() - self.updated_at < self.cfg.USD_RATE_CACHE_SECONDS
        )

    async def _fetch(self) -> Decimal:
        timeout = aiohttp.ClientTimeout(total=5)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(self.cfg.USD_RATE_URL) as response:
                if response.status != 200:
                    raise ValueError(f"HTTP {response.status}")
                data = await response.json(content_type=None)
        usd = (data.get("solana") or {}).get("usd")
        if usd is None:
            raise ValueError("Invalid response from CoinGecko API")
        return Decimal(str(usd))

    async def get_rate(self) -> Decimal:
        if self._fresh():
            return self.rate
        try:
            self.rate = await self._fetch()
            self.updated_at = time.time()
            self.source = "CoinGecko"
            logger.info(f"[currency] SOL/USD rate updated: ${self.rate}")
            return self.rate
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, ArithmeticError) as e:
            logger.error(f"[currency] error fetching SOL/USD rate: {e}")
        if self.rate is not None:
            logger.warning("[currency] using cached exchange rate due to API error")
            return self.rate
        logger.warning(f"[currency] using fallback exchange rate: ${self.cfg.USD_FALLBACK_RATE}")
        return Decimal(self.cfg.USD_FALLBACK_RATE)

    async def to_usd(self, sol: Decimal) -> Decimal:
        rate = await self.get_rate()
        return (Decimal(sol) * rate).quantize(CENTS, rounding=ROUND_HALF_UP)


def format_usd(amount: Decimal) -> str:
    return f"${Decimal(amount).quantize(CENTS, rounding=ROUND_HALF_UP):,}"

