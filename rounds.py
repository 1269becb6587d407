# rounds.py
"""
Round Manager: owns the round lifecycle.

    open ──(drawDate passes)──> locked ──(winning numbers)──> drawn ──> finalized

Exactly one round has is_finalized = 0 at a time. Creation is a
check-then-create inside the ledger's writer lock, backed by a partial
unique index, so concurrent callers converge on the same round.
"""

from __future__ import annotations
from datetime import datetime
from typing import Callable, Optional

from loguru import logger

from config import settings, Settings
from db import Ledger, Round, ROUND_OPEN, utcnow
from draws import next_draw_date


class RoundManager:
    def __init__(self, ledger: Ledger, cfg: Settings = settings, clock: Callable[[], datetime] = utcnow):
        self.ledger = ledger
        self.cfg = cfg
        self.clock = clock

    async def get_or_open_current_round(self) -> Round:
        """
        The unique non-finalized round; opens round max+1 (draw at the next
        scheduled slot, seeded with the last finalized round's rollover) when
        none exists.
        """
        rnd = await self.ledger.find_open_round()
        if rnd:
            return rnd
        now = self.clock()
        return await self.ledger.open_round_if_none(start_time=now, draw_date=next_draw_date(now, self.cfg))

    async def current_round(self) -> Optional[Round]:
        return await self.ledger.find_open_round()

    async def attach_bet(self, round_id: int, count: int = 1) -> None:
        """Atomic totalBets increment; never rejected because of round state."""
        await self.ledger.increment_round_bets(round_id, by=count)

    async def is_accepting_bets(self) -> bool:
        rnd = await self.ledger.find_open_round()
        if rnd is None:
            # a round opens lazily on the next bet
            return True
        return rnd.status == ROUND_OPEN and rnd.draw_date > self.clock()

    async def lock_due_rounds(self) -> int:
        n = await self.ledger.lock_rounds_due(self.clock())
        if n:
            logger.info(f"[rounds] locked {n} round(s) past their draw date")
        return n

    async def open_next_round(self, previous: Round) -> Round:
        """Called after finalization; the new round is seeded with previous.rollover_amount."""
        rnd = await self.get_or_open_current_round()
        if rnd.round_id != previous.round_id + 1:
            logger.warning(
                f"[rounds] expected round {previous.round_id + 1} after {previous.round_id}, current is {rnd.round_id}"
            )
        return rnd
