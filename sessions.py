# sessions.py
"""
Payment sessions: pay first, register after.

  init_session      numbers + expected amount, valid for SESSION_TTL_SECONDS
  check_payment     look for an unclaimed transfer made since the session opened
  complete_session  validate the transfer and create the paid bet

Sessions are rows in the ledger's `sessions` table; an expired row reads as
missing and is purged by the reconciler loop.
"""

from __future__ import annotations
from datetime import datetime, timedelta
from typing import Callable, Optional

from loguru import logger

from bets import BetService, clean_nickname
from config import settings, Settings
from db import Ledger, PaymentSession, utcnow
from draws import validate_numbers
from errors import InvalidRequestError, SessionExpiredError, TransactionValidationError
from reconciler import find_matching_transaction

SESSION_EXPIRED = "Session not found or expired"


class SessionService:
    def __init__(
        self,
        ledger: Ledger,
        gateway,
        bets: BetService,
        cfg: Settings = settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ledger = ledger
        self.gateway = gateway
        self.bets = bets
        self.cfg = cfg
        self.clock = clock

    async def _live(self, session_id: str) -> PaymentSession:
        sess = await self.ledger.get_session(session_id, self.clock())
        if sess is None:
            raise SessionExpiredError(SESSION_EXPIRED)
        return sess

    async def init_session(self, numbers, nickname: Optional[str] = None) -> dict:
        numbers = validate_numbers(numbers, self.cfg)
        nickname = clean_nickname(nickname)
        now = self.clock()
        sess = await self.ledger.insert_session(
            numbers,
            nickname,
            expected_amount=self.cfg.BET_AMOUNT,
            created_at=now,
            expires_at=now + timedelta(seconds=self.cfg.SESSION_TTL_SECONDS),
        )
        logger.info(f"[sessions] opened {sess.id} expecting {sess.expected_amount} SOL")
        data = sess.as_dict()
        data["receivingWallet"] = self.cfg.RECEIVING_WALLET
        return data

    async def check_payment(self, session_id: str) -> dict:
        sess = await self._live(session_id)
        if sess.transaction_id:
            return {"found": True, "transactionId": sess.transaction_id, "session": sess.as_dict()}

        transactions = await self.gateway.list_inbound_transactions(self.cfg.RECENT_TX_LIMIT)
        claimed = await self.ledger.claimed_transaction_ids(tx.hash for tx in transactions)
        while True:
            tx = find_matching_transaction(
                transactions, sess.expected_amount, self.cfg.PAYMENT_TOLERANCE, sess.created_at, claimed
            )
            if tx is None:
                return {"found": False, "transactionId": None, "session": sess.as_dict()}
            claimed.add(tx.hash)
            if await self.ledger.set_session_transaction(sess.id, tx.hash):
                logger.info(f"[sessions] {sess.id} matched transaction {tx.hash}")
                sess.transaction_id = tx.hash
                return {"found": True, "transactionId": tx.hash, "session": sess.as_dict()}
            # a concurrent check may have matched this session first
            sess = await self._live(session_id)
            if sess.transaction_id:
                return {"found": True, "transactionId": sess.transaction_id, "session": sess.as_dict()}

    async def complete_session(self, session_id: str, transaction_id: Optional[str] = None) -> dict:
        sess = await self._live(session_id)
        tx_hash = (transaction_id or "").strip() or sess.transaction_id
        if not tx_hash:
            raise InvalidRequestError("Payment not detected yet")
        await self.bets.ensure_unused(tx_hash, allow_session=sess.id)

        tx = await self.gateway.get_transaction(tx_hash)
        if abs(tx.value - sess.expected_amount) > self.cfg.PAYMENT_TOLERANCE:
            raise TransactionValidationError(
                f"Transaction value {tx.value} SOL does not match the expected {sess.expected_amount} SOL"
            )
        if tx.timestamp < sess.created_at:
            raise TransactionValidationError("Transaction was made before the payment session started")

        rnd = await self.bets.rounds.get_or_open_current_round()
        bet = await self.bets.register_paid_bet(rnd, sess.numbers, sess.nickname, tx, session_id=sess.id)
        logger.info(f"[sessions] {sess.id} completed as bet {bet.id}")
        return {"bet": bet, "round": rnd}
