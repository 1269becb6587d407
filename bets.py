# bets.py
"""
Bet placement.

A bet is registered pending and later matched to a transfer by the
reconciler. When the bettor already has a transaction id it is validated on
the spot: a valid transfer makes the bet paid at creation, a transfer that
fails validation still registers the bet pending with the reason recorded.
"""

from __future__ import annotations
import sqlite3
from typing import List, Optional, Tuple

from loguru import logger

from chain import ChainTransaction
from config import settings, Settings
from db import Bet, Ledger, Round, PAID, FAILED
from draws import validate_numbers
from errors import (
    GatewayError, InvalidRequestError, TransactionAlreadyUsedError, TransactionValidationError,
)
from reconciler import LATE_PAYMENT_ERROR
from rounds import RoundManager

TX_USED_ERROR = "This transaction ID has already been used"


def clean_nickname(nickname: Optional[str]) -> Optional[str]:
    nickname = (nickname or "").strip()
    if len(nickname) > 50:
        raise InvalidRequestError("Nickname must be at most 50 characters")
    return nickname or None


class BetService:
    def __init__(self, ledger: Ledger, gateway, rounds: RoundManager, cfg: Settings = settings):
        self.ledger = ledger
        self.gateway = gateway
        self.rounds = rounds
        self.cfg = cfg

    async def ensure_unused(self, transaction_id: str, allow_session: Optional[str] = None) -> None:
        used = await self.ledger.claimed_transaction_ids([transaction_id])
        if transaction_id in used:
            if allow_session:
                sess = await self.ledger.get_session(allow_session)
                if sess and sess.transaction_id == transaction_id and not await self.ledger.find_bet_by_transaction(transaction_id):
                    return
            raise TransactionAlreadyUsedError(TX_USED_ERROR)

    async def register_paid_bet(
        self,
        rnd: Round,
        numbers: List[int],
        nickname: Optional[str],
        tx: ChainTransaction,
        session_id: Optional[str] = None,
    ) -> Bet:
        """Store a bet carrying its payment; a transfer made after the draw date marks it failed."""
        late = tx.timestamp > rnd.draw_date
        try:
            bet = await self.ledger.insert_paid_bet(
                rnd.round_id,
                numbers,
                nickname,
                transaction_id=tx.hash,
                from_address=tx.from_address,
                value=tx.value,
                timestamp=tx.timestamp,
                status=FAILED if late else PAID,
                validation_error=LATE_PAYMENT_ERROR if late else None,
                session_id=session_id,
            )
        except sqlite3.IntegrityError:
            raise TransactionAlreadyUsedError(TX_USED_ERROR)
        await self.rounds.attach_bet(rnd.round_id)
        if late:
            logger.warning(f"[bets] bet {bet.id} paid by {tx.hash} after draw date, marked failed")
        else:
            logger.info(f"[bets] bet {bet.id} placed on round {rnd.round_id}, paid by {tx.hash}")
        return bet

    async def place_bet(
        self,
        numbers,
        nickname: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> Tuple[Bet, Round]:
        numbers = validate_numbers(numbers, self.cfg)
        nickname = clean_nickname(nickname)
        transaction_id = (transaction_id or "").strip() or None
        if transaction_id:
            await self.ensure_unused(transaction_id)

        rnd = await self.rounds.get_or_open_current_round()
        if transaction_id:
            try:
                tx = await self.gateway.get_transaction(transaction_id)
            except (TransactionValidationError, GatewayError) as e:
                logger.warning(f"[bets] transaction {transaction_id} failed validation: {e.message}")
                bet = await self.ledger.insert_bet(rnd.round_id, numbers, nickname, validation_error=e.message)
                await self.rounds.attach_bet(rnd.round_id)
                return bet, rnd
            return await self.register_paid_bet(rnd, numbers, nickname, tx), rnd

        bet = await self.ledger.insert_bet(rnd.round_id, numbers, nickname)
        await self.rounds.attach_bet(rnd.round_id)
        logger.info(f"[bets] bet {bet.id} placed on round {rnd.round_id}, awaiting payment")
        return bet, rnd

    async def place_multiple(self, entries: List[dict], nickname: Optional[str] = None) -> Tuple[List[Bet], Round]:
        """All entries are validated before anything is stored."""
        if not entries:
            raise InvalidRequestError("Must provide at least one bet")
        if len(entries) > self.cfg.MAX_BETS_PER_REQUEST:
            raise InvalidRequestError(f"Maximum {self.cfg.MAX_BETS_PER_REQUEST} bets per request")
        nickname = clean_nickname(nickname)
        number_sets = [
            validate_numbers((entry or {}).get("numbers"), self.cfg, label=f"Bet {i + 1}: numbers")
            for i, entry in enumerate(entries)
        ]

        rnd = await self.rounds.get_or_open_current_round()
        bets = await self.ledger.insert_bets(rnd.round_id, number_sets, nickname)
        await self.rounds.attach_bet(rnd.round_id, count=len(bets))
        logger.info(f"[bets] {len(bets)} bet(s) placed on round {rnd.round_id}")
        return bets, rnd
