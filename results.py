# results.py
"""
Results Ingestion: stores winning numbers per draw date and hands them to
the prize engine for the round that was drawn.

Sources:
  manual  POST /powerball/manual (admin)
  feed    RESULTS_FEED_URL, a JSON document polled by the daily check.
          Accepted shapes: [{"drawDate": ..., "numbers": [...]}, ...] or
          {"results": [...]}. Empty URL = manual entry only.
"""

from __future__ import annotations
import asyncio
from datetime import datetime
from typing import List, Optional

import aiohttp
from loguru import logger

from config import settings, Settings
from db import Ledger, Result, utcnow
from draws import resolve_draw_date, validate_numbers
from errors import InvalidRequestError, LotteryError
from prizes import DrawOutcome, PrizeEngine
from rounds import RoundManager


class ResultsService:
    def __init__(self, ledger: Ledger, engine: PrizeEngine, rounds: RoundManager, cfg: Settings = settings):
        self.ledger = ledger
        self.engine = engine
        self.rounds = rounds
        self.cfg = cfg
        self.last_checked_at: Optional[datetime] = None

    async def latest(self, limit: int = 10) -> List[Result]:
        return await self.ledger.find_latest_results(max(1, min(int(limit), 100)))

    async def submit_result(self, draw_date, numbers, source: str = "manual") -> dict:
        """
        Store a result and finalize the open round drawn on or before that date.
        Returns {"result": Result, "round": DrawOutcome | None}.
        """
        when = resolve_draw_date(draw_date, self.cfg)
        winning = validate_numbers(numbers, self.cfg, label="Winning numbers")

        result = await self.ledger.insert_result(when, winning, source)
        if result.numbers != winning:
            raise InvalidRequestError(
                f"A different result is already stored for {result.draw_date.date().isoformat()}"
            )
        if result.processed:
            logger.info(f"[results] result for {when.isoformat()} already processed")
            return {"result": result, "round": None}

        rnd = await self.ledger.find_open_round_due(when)
        if rnd is None:
            logger.info(f"[results] no open round drawn by {when.isoformat()}; result stored only")
            return {"result": result, "round": None}

        outcome: DrawOutcome = await self.engine.finalize_round(rnd.round_id, winning)
        await self.ledger.mark_result_processed(result.id, rnd.round_id)
        result = await self.ledger.get_result(when)
        logger.info(f"[results] {source} result {winning} finalized round {rnd.round_id}")
        return {"result": result, "round": outcome}

    # ---------------- feed ----------------
    async def fetch_results(self) -> List[dict]:
        """Latest results from the feed, newest first. [] when disabled or unreachable."""
        url = self.cfg.RESULTS_FEED_URL
        if not url:
            logger.debug("[results] feed disabled; manual entry only")
            return []
        try:
            timeout = aiohttp.ClientTimeout(total=10)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        logger.warning(f"[results] feed answered HTTP {response.status}")
                        return []
                    data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"[results] feed fetch failed: {e}")
            return []

        items = data.get("results", []) if isinstance(data, dict) else data
        out = []
        for item in items or []:
            if isinstance(item, dict) and item.get("drawDate") and item.get("numbers"):
                out.append({"drawDate": item["drawDate"], "numbers": item["numbers"]})
        out.sort(key=lambda r: str(r["drawDate"]), reverse=True)
        return out

    async def check_results(self) -> Optional[dict]:
        """Scheduled cycle: lock due rounds, then apply the newest feed result."""
        self.last_checked_at = utcnow()
        await self.rounds.lock_due_rounds()
        results = await self.fetch_results()
        if not results:
            logger.info("[results] no new results found")
            return None
        latest = results[0]
        try:
            return await self.submit_result(latest["drawDate"], latest["numbers"], source="feed")
        except LotteryError as e:
            logger.error(f"[results] feed result {latest} rejected: {e.message}")
            return None
