# reconciler.py
"""
Payment Reconciler: matches pending bets to inbound transfers.

Per bet:  pending ──> paid | failed   (both terminal)

A transfer matches a bet when its value is within PAYMENT_TOLERANCE of
BET_AMOUNT, it happened at or after the bet was placed, and no other bet or
payment session has claimed it. Claiming goes through the unique index on
bets.transaction_id, and passes are serialized by `self.lock`, so one
transfer never pays for two bets.
"""

from __future__ import annotations
import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Set

from loguru import logger

from chain import ChainTransaction
from config import settings, Settings
from db import Bet, Ledger, Round, PAID, FAILED, PENDING, rfc3339, utcnow
from errors import NotFoundError

LATE_PAYMENT_ERROR = "Transaction must be made before the draw date"


def find_matching_transaction(
    transactions: Iterable[ChainTransaction],
    expected_amount: Decimal,
    tolerance: Decimal,
    since: datetime,
    claimed: Set[str],
) -> Optional[ChainTransaction]:
    """First unclaimed transfer with the expected value made at or after `since`."""
    for tx in transactions:
        if tx.hash in claimed:
            continue
        if abs(tx.value - expected_amount) > tolerance:
            continue
        if tx.timestamp < since:
            continue
        return tx
    return None


class PaymentReconciler:
    def __init__(self, ledger: Ledger, gateway, cfg: Settings = settings, clock: Callable[[], datetime] = utcnow):
        self.ledger = ledger
        self.gateway = gateway
        self.cfg = cfg
        self.clock = clock
        self.lock = asyncio.Lock()
        self.is_running = False
        self.last_run_at: Optional[datetime] = None
        self.last_matched = 0
        self.last_error: Optional[str] = None

    # ---------------- matching ----------------
    async def _claim(self, bet: Bet, tx: ChainTransaction, rounds: Dict[int, Optional[Round]]) -> bool:
        if bet.round_id not in rounds:
            rounds[bet.round_id] = await self.ledger.get_round(bet.round_id)
        rnd = rounds[bet.round_id]
        late = rnd is not None and tx.timestamp > rnd.draw_date
        ok = await self.ledger.claim_payment(
            bet.id,
            transaction_id=tx.hash,
            from_address=tx.from_address,
            value=tx.value,
            timestamp=tx.timestamp,
            status=FAILED if late else PAID,
            validation_error=LATE_PAYMENT_ERROR if late else None,
        )
        if ok and late:
            logger.warning(f"[reconciler] bet {bet.id} paid by {tx.hash} after draw date, marked failed")
        elif ok:
            logger.info(f"[reconciler] bet {bet.id} validated by {tx.hash} ({tx.value} SOL from {tx.from_address})")
        return ok

    async def _reconcile_bet(
        self,
        bet: Bet,
        transactions: List[ChainTransaction],
        claimed: Set[str],
        rounds: Dict[int, Optional[Round]],
    ) -> bool:
        """True when the bet got a transaction; otherwise one attempt is recorded."""
        while True:
            tx = find_matching_transaction(
                transactions, self.cfg.BET_AMOUNT, self.cfg.PAYMENT_TOLERANCE, bet.created_at, claimed
            )
            if tx is None:
                break
            claimed.add(tx.hash)
            if await self._claim(bet, tx, rounds):
                return True
            # lost the claim: the transfer went to another bet or the bet left pending
            current = await self.ledger.get_bet(bet.id)
            if current is None or current.payment_status != PENDING:
                return False
        updated = await self.ledger.record_check_attempt(bet.id, self.cfg.MAX_CHECK_ATTEMPTS)
        if updated is not None and updated.payment_status == FAILED:
            logger.info(f"[reconciler] bet {bet.id} exceeded {self.cfg.MAX_CHECK_ATTEMPTS} checks, marked failed")
        return False

    # ---------------- passes ----------------
    async def poll_once(self) -> int:
        """
        One reconciliation pass over pending bets. Returns the number of bets
        that got a transaction. No pending bets means no RPC call and no write.
        """
        async with self.lock:
            pending = await self.ledger.find_pending_bets(self.cfg.MAX_CHECK_ATTEMPTS, self.cfg.PENDING_BATCH_LIMIT)
            self.last_run_at = self.clock()
            if not pending:
                self.last_matched = 0
                return 0

            logger.info(f"[reconciler] checking {len(pending)} pending bet(s)")
            try:
                transactions = await self.gateway.list_inbound_transactions(self.cfg.RECENT_TX_LIMIT)
            except Exception as e:
                # transient gateway fault: every bet in the batch still spends an attempt
                self.last_error = str(e)
                logger.error(f"[reconciler] could not list transactions: {e}")
                transactions = []

            claimed = await self.ledger.claimed_transaction_ids(tx.hash for tx in transactions)
            rounds: Dict[int, Optional[Round]] = {}
            matched = 0
            for bet in pending:
                try:
                    if await self._reconcile_bet(bet, transactions, claimed, rounds):
                        matched += 1
                except Exception as e:
                    self.last_error = f"bet {bet.id}: {e}"
                    logger.exception(f"[reconciler] error checking bet {bet.id}")
                    try:
                        await self.ledger.record_check_attempt(bet.id, self.cfg.MAX_CHECK_ATTEMPTS)
                    except Exception:
                        logger.exception(f"[reconciler] could not record attempt for bet {bet.id}")
            self.last_matched = matched
            return matched

    async def check_bet(self, bet_id: str) -> dict:
        """On-demand check of one bet (admin retry)."""
        async with self.lock:
            bet = await self.ledger.get_bet(bet_id)
            if bet is None:
                raise NotFoundError("Bet not found")
            if bet.payment_status != PENDING:
                return {
                    "success": False,
                    "message": f"Bet payment status is already: {bet.payment_status}",
                    "bet": bet,
                }
            transactions = await self.gateway.list_inbound_transactions(self.cfg.RECENT_TX_LIMIT)
            claimed = await self.ledger.claimed_transaction_ids(tx.hash for tx in transactions)
            found = await self._reconcile_bet(bet, transactions, claimed, {})
            bet = await self.ledger.get_bet(bet_id)
            if found:
                return {"success": True, "message": "Payment found and validated", "bet": bet}
            return {"success": False, "message": "Payment not yet detected", "bet": bet}

    # ---------------- loop ----------------
    async def run_forever(self) -> None:
        """Background loop; a failing pass is logged and the loop keeps going."""
        self.is_running = True
        logger.info(f"[reconciler] started (every {self.cfg.POLL_INTERVAL_SECONDS}s)")
        try:
            while True:
                try:
                    await self.poll_once()
                    await self.ledger.purge_expired_sessions(self.clock())
                except Exception as e:
                    self.last_error = str(e)
                    logger.exception("[reconciler] pass failed")
                await asyncio.sleep(self.cfg.POLL_INTERVAL_SECONDS)
        finally:
            self.is_running = False
            logger.info("[reconciler] stopped")

    def status(self) -> dict:
        return {
            "isRunning": self.is_running,
            "pollInterval": self.cfg.POLL_INTERVAL_SECONDS,
            "maxAttempts": self.cfg.MAX_CHECK_ATTEMPTS,
            "lastRunAt": rfc3339(self.last_run_at),
            "lastMatched": self.last_matched,
            "lastError": self.last_error,
        }
