# prizes.py
"""
Draw & Prize Engine.

Prize policy: the single highest tier wins. All paid bets are matched
against the winning numbers; the bets with the greatest match count split
the prize pool evenly. If nobody matched a single number the whole prize
pool plus the rollover portion carries to the next round.

Pool split (percent of the round's new bets):
    house fee   HOUSE_FEE_PCT
    rollover    ROLLOVER_PCT            -> next round's accumulatedAmount
    winners     the rest (WINNER_PCT)   + this round's accumulatedAmount

Every amount is truncated to AMOUNT_DECIMALS places. The winner portion is
what remains after fee and rollover, so the three always add up to the new
bets. A per-winner share is truncated too and the division remainder joins
the next round's rollover.
"""

from __future__ import annotations
import asyncio
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from typing import Dict, List, Optional

from loguru import logger

from config import settings, Settings
from db import (
    Bet, Ledger, Round, PAID,
    ROUND_DRAWN, ROUND_LOCKED, ROUND_OPEN, utcnow,
)
from draws import count_matches, validate_numbers
from errors import InvalidRequestError, NotFoundError, PayoutError, RoundStateError
from rounds import RoundManager


def quantize_down(amount: Decimal, quantum: Decimal) -> Decimal:
    return Decimal(amount).quantize(quantum, rounding=ROUND_DOWN)


@dataclass
class PoolSplit:
    new_bets_pool: Decimal
    accumulated: Decimal
    house_fee: Decimal
    rollover_portion: Decimal
    winner_portion: Decimal

    @property
    def prize_pool(self) -> Decimal:
        return self.winner_portion + self.accumulated

    @property
    def total_pool(self) -> Decimal:
        return self.new_bets_pool + self.accumulated

    def as_dict(self) -> dict:
        return {
            "newBetsPool": str(self.new_bets_pool),
            "accumulatedAmount": str(self.accumulated),
            "totalPool": str(self.total_pool),
            "houseFee": str(self.house_fee),
            "rolloverPortion": str(self.rollover_portion),
            "prizePool": str(self.prize_pool),
        }


def split_pool(new_bets_pool: Decimal, accumulated: Decimal, cfg: Settings = settings) -> PoolSplit:
    q = cfg.amount_quantum
    new_bets_pool = quantize_down(new_bets_pool, q)
    accumulated = quantize_down(accumulated, q)
    house_fee = quantize_down(new_bets_pool * cfg.HOUSE_FEE_PCT / 100, q)
    rollover = quantize_down(new_bets_pool * cfg.ROLLOVER_PCT / 100, q)
    return PoolSplit(
        new_bets_pool=new_bets_pool,
        accumulated=accumulated,
        house_fee=house_fee,
        rollover_portion=rollover,
        winner_portion=new_bets_pool - house_fee - rollover,
    )


def tier_counts(matches: List[int], cfg: Settings = settings) -> Dict[str, int]:
    """Bets per tier for the top four tiers (N, N-1, N-2, N-3 matches)."""
    n = cfg.NUMBERS_COUNT
    tiers = [t for t in range(n, n - 4, -1) if t > 0]
    return {str(t): sum(1 for m in matches if m == t) for t in tiers}


@dataclass
class DrawOutcome:
    round_id: int
    winning_numbers: List[int]
    split: PoolSplit
    max_matches: int
    winners: List[Bet]
    share: Decimal
    rollover_amount: Decimal
    tiers: Dict[str, int]
    next_round_id: Optional[int] = None
    payouts: Dict[str, str] = field(default_factory=dict)
    payout_errors: Dict[str, str] = field(default_factory=dict)

    @property
    def distributed(self) -> Decimal:
        return self.share * len(self.winners)

    def as_dict(self) -> dict:
        return {
            "roundId": self.round_id,
            "winningNumbers": self.winning_numbers,
            "pool": self.split.as_dict(),
            "maxMatches": self.max_matches,
            "winnerCount": len(self.winners),
            "prizePerWinner": str(self.share),
            "rolloverAmount": str(self.rollover_amount),
            "winners": self.tiers,
            "nextRoundId": self.next_round_id,
            "payouts": self.payouts,
            "payoutErrors": self.payout_errors,
        }


class PrizeEngine:
    def __init__(self, ledger: Ledger, gateway, rounds: RoundManager, cfg: Settings = settings):
        self.ledger = ledger
        self.gateway = gateway
        self.rounds = rounds
        self.cfg = cfg
        self.payout_lock = asyncio.Lock()

    # ---------------- computation ----------------
    def compute(self, rnd: Round, bets: List[Bet], winning_numbers: List[int]) -> DrawOutcome:
        """Pure draw computation over the round's paid bets; sets bet.matches / bet.prize_amount."""
        for bet in bets:
            bet.matches = count_matches(bet.numbers, winning_numbers)
        new_bets_pool = sum((b.transaction_value or Decimal("0") for b in bets), Decimal("0"))
        split = split_pool(new_bets_pool, rnd.accumulated_amount, self.cfg)
        max_matches = max((b.matches for b in bets), default=0)

        if max_matches == 0:
            winners: List[Bet] = []
            share = Decimal("0")
            rollover = split.prize_pool + split.rollover_portion
        else:
            winners = [b for b in bets if b.matches == max_matches]
            share = quantize_down(split.prize_pool / len(winners), self.cfg.amount_quantum)
            remainder = split.prize_pool - share * len(winners)
            rollover = split.rollover_portion + remainder
            for bet in winners:
                bet.prize_amount = share

        return DrawOutcome(
            round_id=rnd.round_id,
            winning_numbers=sorted(winning_numbers),
            split=split,
            max_matches=max_matches,
            winners=winners,
            share=share,
            rollover_amount=rollover,
            tiers=tier_counts([b.matches for b in bets], self.cfg),
        )

    # ---------------- finalize ----------------
    async def finalize_round(self, round_id: int, winning_numbers) -> DrawOutcome:
        """
        Apply winning numbers to a round exactly once, open the next round and
        pay the winners. A finalized round or one already being drawn raises
        RoundStateError, so a second call never re-pays.
        """
        numbers = validate_numbers(winning_numbers, self.cfg, label="Winning numbers")
        rnd = await self.ledger.get_round(round_id)
        if rnd is None:
            raise NotFoundError(f"Round {round_id} not found")
        if rnd.is_finalized:
            raise RoundStateError(f"Round {round_id} is already finalized")
        if not await self.ledger.set_round_status(round_id, ROUND_DRAWN, (ROUND_OPEN, ROUND_LOCKED)):
            raise RoundStateError(f"Round {round_id} is already being drawn")

        try:
            bets = await self.ledger.find_bets_by_round_and_status(round_id, PAID)
            outcome = self.compute(rnd, bets, numbers)
            logger.info(
                f"[draw] round {round_id}: {len(bets)} paid bet(s), new={outcome.split.new_bets_pool} "
                f"accumulated={outcome.split.accumulated} fee={outcome.split.house_fee} "
                f"prize_pool={outcome.split.prize_pool} max_matches={outcome.max_matches}"
            )
            ok = await self.ledger.finalize_round_record(
                round_id,
                winning_numbers=numbers,
                matches={b.id: b.matches for b in bets},
                prizes={b.id: b.prize_amount for b in outcome.winners},
                total_prize_pool=outcome.split.total_pool,
                rollover_amount=outcome.rollover_amount,
                house_fee=outcome.split.house_fee,
                winners=outcome.tiers,
                finalized_at=utcnow(),
            )
            if not ok:
                raise RoundStateError(f"Round {round_id} left the drawn state before finalization")
        except Exception:
            # hand the round back so the draw can be retried
            await self.ledger.set_round_status(round_id, ROUND_LOCKED, (ROUND_DRAWN,))
            raise

        if outcome.max_matches == 0:
            logger.info(f"[draw] round {round_id}: no winners, {outcome.rollover_amount} SOL rolls over")
        else:
            logger.info(
                f"[draw] round {round_id}: {len(outcome.winners)} winner(s) with {outcome.max_matches} matches, "
                f"{outcome.share} SOL each, rollover {outcome.rollover_amount}"
            )

        finalized = await self.ledger.get_round(round_id)
        nxt = await self.rounds.open_next_round(finalized)
        outcome.next_round_id = nxt.round_id

        for bet in outcome.winners:
            sig = await self._pay(bet)
            if sig:
                outcome.payouts[bet.id] = sig
            else:
                outcome.payout_errors[bet.id] = bet.payout_error or "payout failed"
        return outcome

    async def _pay(self, bet: Bet) -> Optional[str]:
        """One payout attempt; failures are recorded on the bet and never raised."""
        if bet.prize_amount <= 0:
            return None
        try:
            if not bet.from_address:
                raise PayoutError("bet has no sender address")
            async with self.payout_lock:
                # a manual payout may have settled this bet since finalization
                current = await self.ledger.get_bet(bet.id)
                if current is not None and current.is_paid:
                    logger.info(f"[draw] bet {bet.id} already paid by {current.payment_tx_id}, skipping")
                    bet.is_paid = True
                    bet.payment_tx_id = current.payment_tx_id
                    return current.payment_tx_id
                sig = await self.gateway.send_payment(bet.from_address, bet.prize_amount)
                await self.ledger.record_payout(bet.id, sig)
            bet.is_paid = True
            bet.payment_tx_id = sig
            return sig
        except Exception as e:
            bet.payout_error = str(e) or e.__class__.__name__
            logger.error(f"[draw] payout of {bet.prize_amount} SOL to {bet.from_address} for bet {bet.id} failed: {e}")
            await self.ledger.record_payout_error(bet.id, bet.payout_error)
            return None

    # ---------------- manual payouts ----------------
    async def manual_payout(self, bet_id: str) -> dict:
        async with self.payout_lock:
            bet = await self.ledger.get_bet(bet_id)
            if bet is None:
                raise NotFoundError("Bet not found")
            if bet.is_paid:
                raise InvalidRequestError("Prize already paid")
            if bet.prize_amount <= 0:
                raise InvalidRequestError("No prize to pay")
            if not bet.from_address:
                raise InvalidRequestError("Bet has no sender address")
            try:
                sig = await self.gateway.send_payment(bet.from_address, bet.prize_amount)
            except Exception as e:
                await self.ledger.record_payout_error(bet.id, str(e))
                logger.error(f"[payout] manual payout for bet {bet.id} failed: {e}")
                if isinstance(e, PayoutError):
                    raise
                raise PayoutError(str(e)) from e
            await self.ledger.record_payout(bet.id, sig)
        logger.info(f"[payout] bet {bet.id} paid {bet.prize_amount} SOL: {sig}")
        return {"transactionId": sig, "to": bet.from_address, "amount": str(bet.prize_amount), "betId": bet.id}

    async def unpaid_winners(self) -> List[Bet]:
        return await self.ledger.find_unpaid_winners()
