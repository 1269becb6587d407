# db.py

"""
Numbers lottery: db.py
Canonical schema, async (aiosqlite) connection and the Ledger: every read is a
typed query, every multi-statement write runs under one writer lock.
"""

from __future__ import annotations
from typing import Optional, List, Dict, Iterable, Any
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from contextlib import asynccontextmanager
import asyncio
import json
import os
import secrets
import sqlite3

import aiosqlite
from loguru import logger

# =========================================================
# Canonical Schema
# =========================================================
SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS kv (
  k TEXT PRIMARY KEY,
  v TEXT
);

CREATE TABLE IF NOT EXISTS rounds (
  round_id           INTEGER PRIMARY KEY,
  status             TEXT NOT NULL DEFAULT 'open',   -- open | locked | drawn | finalized
  is_finalized       INTEGER NOT NULL DEFAULT 0,
  start_time         TEXT NOT NULL,
  draw_date          TEXT NOT NULL,
  finalized_at       TEXT,
  winning_numbers    TEXT NOT NULL DEFAULT '[]',
  total_bets         INTEGER NOT NULL DEFAULT 0,
  total_prize_pool   TEXT NOT NULL DEFAULT '0',
  accumulated_amount TEXT NOT NULL DEFAULT '0',
  rollover_amount    TEXT NOT NULL DEFAULT '0',
  house_fee          TEXT NOT NULL DEFAULT '0',
  winners            TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS bets (
  id                     TEXT PRIMARY KEY,
  round_id               INTEGER NOT NULL,
  numbers                TEXT NOT NULL,
  nickname               TEXT,
  payment_status         TEXT NOT NULL DEFAULT 'pending',  -- pending | paid | failed
  validation_error       TEXT,
  from_address           TEXT,
  transaction_id         TEXT UNIQUE,
  transaction_value      TEXT,
  transaction_timestamp  TEXT,
  payment_check_attempts INTEGER NOT NULL DEFAULT 0,
  last_payment_check     TEXT,
  matches                INTEGER,
  prize_amount           TEXT NOT NULL DEFAULT '0',
  is_paid                INTEGER NOT NULL DEFAULT 0,
  payment_tx_id          TEXT,
  payment_date           TEXT,
  payout_error           TEXT,
  created_at             TEXT NOT NULL,
  FOREIGN KEY(round_id) REFERENCES rounds(round_id)
);

CREATE TABLE IF NOT EXISTS results (
  id         INTEGER PRIMARY KEY AUTOINCREMENT,
  draw_date  TEXT NOT NULL UNIQUE,
  numbers    TEXT NOT NULL,
  source     TEXT NOT NULL DEFAULT 'manual',
  processed  INTEGER NOT NULL DEFAULT 0,
  round_id   INTEGER,
  created_at TEXT NOT NULL
);

-- Payment sessions: TTL rows, purged once expires_at has passed
CREATE TABLE IF NOT EXISTS sessions (
  id              TEXT PRIMARY KEY,
  numbers         TEXT NOT NULL,
  nickname        TEXT,
  expected_amount TEXT NOT NULL,
  created_at      TEXT NOT NULL,
  expires_at      TEXT NOT NULL,
  transaction_id  TEXT
);

-- at most one round with is_finalized = 0
CREATE UNIQUE INDEX IF NOT EXISTS idx_rounds_single_open ON rounds(is_finalized) WHERE is_finalized = 0;
CREATE INDEX IF NOT EXISTS idx_rounds_draw_date  ON rounds(draw_date);
CREATE INDEX IF NOT EXISTS idx_bets_round_status ON bets(round_id, payment_status);
CREATE INDEX IF NOT EXISTS idx_bets_pending      ON bets(payment_status, payment_check_attempts);
CREATE INDEX IF NOT EXISTS idx_bets_created      ON bets(created_at);
CREATE INDEX IF NOT EXISTS idx_sessions_expiry   ON sessions(expires_at);
CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_txid ON sessions(transaction_id);
""".strip()

CURRENT_ROUND_KEY = "current_round_id"

PENDING = "pending"
PAID = "paid"
FAILED = "failed"

ROUND_OPEN = "open"
ROUND_LOCKED = "locked"
ROUND_DRAWN = "drawn"
ROUND_FINALIZED = "finalized"


# =========================================================
# Timestamp helpers
# =========================================================
def rfc3339(dt: Optional[datetime]) -> Optional[str]:
    """
    Return an RFC3339-style UTC timestamp ending with 'Z'.
    Accepts naive (treated as UTC) or aware datetimes.
    All stored timestamps use this shape so they compare lexicographically.
    """
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.replace(microsecond=0).isoformat() + "Z"


def parse_iso_z(s: Optional[str]) -> Optional[datetime]:
    """Parse an RFC3339-ish string into an aware UTC datetime."""
    if not s:
        return None
    s2 = str(s).strip()
    if s2.endswith("Z"):
        s2 = s2[:-1] + "+00:00"
    dt = datetime.fromisoformat(s2)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dec(v: Any) -> Decimal:
    return Decimal(str(v if v not in (None, "") else "0"))


# =========================================================
# Records
# =========================================================
@dataclass
class Bet:
    id: str
    round_id: int
    numbers: List[int]
    created_at: datetime
    nickname: Optional[str] = None
    payment_status: str = PENDING
    validation_error: Optional[str] = None
    from_address: Optional[str] = None
    transaction_id: Optional[str] = None
    transaction_value: Optional[Decimal] = None
    transaction_timestamp: Optional[datetime] = None
    payment_check_attempts: int = 0
    last_payment_check: Optional[datetime] = None
    matches: Optional[int] = None
    prize_amount: Decimal = Decimal("0")
    is_paid: bool = False
    payment_tx_id: Optional[str] = None
    payment_date: Optional[datetime] = None
    payout_error: Optional[str] = None

    @classmethod
    def from_row(cls, r) -> "Bet":
        return cls(
            id=r["id"],
            round_id=int(r["round_id"]),
            numbers=json.loads(r["numbers"]),
            created_at=parse_iso_z(r["created_at"]),
            nickname=r["nickname"],
            payment_status=r["payment_status"],
            validation_error=r["validation_error"],
            from_address=r["from_address"],
            transaction_id=r["transaction_id"],
            transaction_value=_dec(r["transaction_value"]) if r["transaction_value"] is not None else None,
            transaction_timestamp=parse_iso_z(r["transaction_timestamp"]),
            payment_check_attempts=int(r["payment_check_attempts"] or 0),
            last_payment_check=parse_iso_z(r["last_payment_check"]),
            matches=r["matches"],
            prize_amount=_dec(r["prize_amount"]),
            is_paid=bool(r["is_paid"]),
            payment_tx_id=r["payment_tx_id"],
            payment_date=parse_iso_z(r["payment_date"]),
            payout_error=r["payout_error"],
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "roundId": self.round_id,
            "numbers": self.numbers,
            "nickname": self.nickname,
            "paymentStatus": self.payment_status,
            "isValidated": self.payment_status == PAID,
            "validationError": self.validation_error,
            "fromAddress": self.from_address,
            "transactionId": self.transaction_id,
            "transactionValue": str(self.transaction_value) if self.transaction_value is not None else None,
            "transactionTimestamp": rfc3339(self.transaction_timestamp),
            "paymentCheckAttempts": self.payment_check_attempts,
            "lastPaymentCheck": rfc3339(self.last_payment_check),
            "matches": self.matches,
            "prizeAmount": str(self.prize_amount),
            "isPaid": self.is_paid,
            "paymentTxId": self.payment_tx_id,
            "paymentDate": rfc3339(self.payment_date),
            "payoutError": self.payout_error,
            "betPlacedAt": rfc3339(self.created_at),
        }


@dataclass
class Round:
    round_id: int
    start_time: datetime
    draw_date: datetime
    status: str = ROUND_OPEN
    is_finalized: bool = False
    finalized_at: Optional[datetime] = None
    winning_numbers: List[int] = field(default_factory=list)
    total_bets: int = 0
    total_prize_pool: Decimal = Decimal("0")
    accumulated_amount: Decimal = Decimal("0")
    rollover_amount: Decimal = Decimal("0")
    house_fee: Decimal = Decimal("0")
    winners: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_row(cls, r) -> "Round":
        return cls(
            round_id=int(r["round_id"]),
            start_time=parse_iso_z(r["start_time"]),
            draw_date=parse_iso_z(r["draw_date"]),
            status=r["status"],
            is_finalized=bool(r["is_finalized"]),
            finalized_at=parse_iso_z(r["finalized_at"]),
            winning_numbers=json.loads(r["winning_numbers"] or "[]"),
            total_bets=int(r["total_bets"] or 0),
            total_prize_pool=_dec(r["total_prize_pool"]),
            accumulated_amount=_dec(r["accumulated_amount"]),
            rollover_amount=_dec(r["rollover_amount"]),
            house_fee=_dec(r["house_fee"]),
            winners=json.loads(r["winners"] or "{}"),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "roundId": self.round_id,
            "status": self.status,
            "startTime": rfc3339(self.start_time),
            "drawDate": rfc3339(self.draw_date),
            "isFinalized": self.is_finalized,
            "finalizedAt": rfc3339(self.finalized_at),
            "winningNumbers": self.winning_numbers,
            "totalBets": self.total_bets,
            "totalPrizePool": str(self.total_prize_pool),
            "accumulatedAmount": str(self.accumulated_amount),
            "rolloverAmount": str(self.rollover_amount),
            "houseFee": str(self.house_fee),
            "winners": self.winners,
        }


@dataclass
class Result:
    id: int
    draw_date: datetime
    numbers: List[int]
    source: str
    processed: bool
    round_id: Optional[int]
    created_at: datetime

    @classmethod
    def from_row(cls, r) -> "Result":
        return cls(
            id=int(r["id"]),
            draw_date=parse_iso_z(r["draw_date"]),
            numbers=json.loads(r["numbers"]),
            source=r["source"],
            processed=bool(r["processed"]),
            round_id=r["round_id"],
            created_at=parse_iso_z(r["created_at"]),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "drawDate": rfc3339(self.draw_date),
            "numbers": self.numbers,
            "source": self.source,
            "processed": self.processed,
            "roundId": self.round_id,
            "createdAt": rfc3339(self.created_at),
        }


@dataclass
class PaymentSession:
    id: str
    numbers: List[int]
    nickname: Optional[str]
    expected_amount: Decimal
    created_at: datetime
    expires_at: datetime
    transaction_id: Optional[str] = None

    @classmethod
    def from_row(cls, r) -> "PaymentSession":
        return cls(
            id=r["id"],
            numbers=json.loads(r["numbers"]),
            nickname=r["nickname"],
            expected_amount=_dec(r["expected_amount"]),
            created_at=parse_iso_z(r["created_at"]),
            expires_at=parse_iso_z(r["expires_at"]),
            transaction_id=r["transaction_id"],
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.id,
            "numbers": self.numbers,
            "nickname": self.nickname,
            "expectedAmount": str(self.expected_amount),
            "createdAt": rfc3339(self.created_at),
            "expiresAt": rfc3339(self.expires_at),
            "transactionId": self.transaction_id,
        }


# =========================================================
# Connection
# =========================================================
DB_PATH = os.getenv("DB_PATH", "data/lottery.db")


async def connect(db_path: str = DB_PATH) -> aiosqlite.Connection:
    """
    Async connection for FastAPI handlers and background loops; ensures schema and sets PRAGMAs.
    """
    parent = os.path.dirname(db_path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    # explicit BEGIN/COMMIT only; Ledger.transaction() owns transaction boundaries
    conn = await aiosqlite.connect(db_path, isolation_level=None)

    # Per-connection PRAGMAs to reduce locking and keep WAL fast
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA synchronous=NORMAL")
    await conn.execute("PRAGMA temp_store=MEMORY")
    await conn.execute("PRAGMA wal_autocheckpoint=1000")
    await conn.execute("PRAGMA busy_timeout=5000")

    conn.row_factory = aiosqlite.Row

    await conn.executescript(SCHEMA)
    await conn.commit()
    return conn


# =========================================================
# KV Helpers (async)
# =========================================================
async def kv_set(conn: aiosqlite.Connection, k: str, v: str, commit: bool = True) -> None:
    """
    Upsert a key/value pair in the KV table.
    """
    await conn.execute(
        "INSERT INTO kv(k, v) VALUES(?, ?) "
        "ON CONFLICT(k) DO UPDATE SET v=excluded.v",
        (k, v),
    )
    if commit:
        await conn.commit()


async def kv_get(conn: aiosqlite.Connection, k: str) -> Optional[str]:
    """
    Read a value from KV; return None if missing.
    """
    async with conn.execute("SELECT v FROM kv WHERE k=?", (k,)) as cur:
        row = await cur.fetchone()
        return row[0] if row else None


# =========================================================
# Ledger
# =========================================================
class Ledger:
    """
    Key-indexed record store for bets, rounds, results and payment sessions.

    One aiosqlite connection is shared by request handlers and background
    loops. Any write runs under `write_lock` so a multi-statement transaction
    is never interleaved with another coroutine's statements.
    """

    def __init__(self, conn: aiosqlite.Connection):
        self.conn = conn
        self.write_lock = asyncio.Lock()

    @classmethod
    async def open(cls, db_path: str = DB_PATH) -> "Ledger":
        return cls(await connect(db_path))

    async def close(self) -> None:
        await self.conn.close()

    # ---------- plumbing ----------
    @asynccontextmanager
    async def transaction(self):
        """
        Serialized write transaction.
        Usage:
            async with ledger.transaction() as c:
                await c.execute(...)
        """
        async with self.write_lock:
            await self.conn.execute("BEGIN")
            try:
                yield self.conn
            except BaseException:
                await self.conn.rollback()
                raise
            await self.conn.commit()

    async def _write(self, sql: str, params: Iterable = ()) -> int:
        async with self.transaction() as c:
            cur = await c.execute(sql, tuple(params))
            return cur.rowcount

    async def _fetchone(self, sql: str, params: Iterable = ()):
        async with self.conn.execute(sql, tuple(params)) as cur:
            return await cur.fetchone()

    async def _fetchall(self, sql: str, params: Iterable = ()):
        async with self.conn.execute(sql, tuple(params)) as cur:
            return await cur.fetchall()

    async def kv_get(self, k: str) -> Optional[str]:
        return await kv_get(self.conn, k)

    # =====================================================
    # Bets: reads
    # =====================================================
    async def get_bet(self, bet_id: str) -> Optional[Bet]:
        row = await self._fetchone("SELECT * FROM bets WHERE id=?", (bet_id,))
        return Bet.from_row(row) if row else None

    async def find_bet_by_transaction(self, transaction_id: str) -> Optional[Bet]:
        row = await self._fetchone("SELECT * FROM bets WHERE transaction_id=?", (transaction_id,))
        return Bet.from_row(row) if row else None

    async def find_recent_bets(self, limit: int) -> List[Bet]:
        rows = await self._fetchall(
            "SELECT * FROM bets ORDER BY created_at DESC, rowid DESC LIMIT ?", (int(limit),)
        )
        return [Bet.from_row(r) for r in rows]

    async def find_bets_by_round(self, round_id: int, limit: int = 1000) -> List[Bet]:
        rows = await self._fetchall(
            "SELECT * FROM bets WHERE round_id=? ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (int(round_id), int(limit)),
        )
        return [Bet.from_row(r) for r in rows]

    async def find_bets_by_round_and_status(self, round_id: int, status: str) -> List[Bet]:
        rows = await self._fetchall(
            "SELECT * FROM bets WHERE round_id=? AND payment_status=? ORDER BY created_at ASC, rowid ASC",
            (int(round_id), status),
        )
        return [Bet.from_row(r) for r in rows]

    async def find_pending_bets(self, max_attempts: int, limit: int) -> List[Bet]:
        rows = await self._fetchall(
            "SELECT * FROM bets WHERE payment_status=? AND payment_check_attempts < ? "
            "ORDER BY created_at ASC, rowid ASC LIMIT ?",
            (PENDING, int(max_attempts), int(limit)),
        )
        return [Bet.from_row(r) for r in rows]

    async def count_pending_bets(self) -> int:
        row = await self._fetchone("SELECT COUNT(1) FROM bets WHERE payment_status=?", (PENDING,))
        return int(row[0] or 0)

    async def find_round_winners(self, round_id: int) -> List[Bet]:
        rows = await self._fetchall(
            "SELECT * FROM bets WHERE round_id=? AND CAST(prize_amount AS REAL) > 0 "
            "ORDER BY matches DESC, created_at ASC",
            (int(round_id),),
        )
        return [Bet.from_row(r) for r in rows]

    async def find_unpaid_winners(self) -> List[Bet]:
        rows = await self._fetchall(
            "SELECT * FROM bets WHERE is_paid=0 AND CAST(prize_amount AS REAL) > 0 "
            "ORDER BY matches DESC, created_at ASC"
        )
        return [Bet.from_row(r) for r in rows]

    async def claimed_transaction_ids(self, hashes: Iterable[str]) -> set:
        hashes = [h for h in hashes if h]
        if not hashes:
            return set()
        marks = ",".join("?" for _ in hashes)
        rows = await self._fetchall(
            f"SELECT transaction_id FROM bets WHERE transaction_id IN ({marks})", hashes
        )
        used = {r[0] for r in rows}
        rows = await self._fetchall(
            f"SELECT transaction_id FROM sessions WHERE transaction_id IN ({marks})", hashes
        )
        return used | {r[0] for r in rows}

    async def sum_paid_value(self, round_id: int) -> Decimal:
        # summed in Python: values are decimal strings
        rows = await self._fetchall(
            "SELECT transaction_value FROM bets WHERE round_id=? AND payment_status=?",
            (int(round_id), PAID),
        )
        return sum((_dec(r[0]) for r in rows), Decimal("0"))

    # =====================================================
    # Bets: writes
    # =====================================================
    async def insert_bet(
        self,
        round_id: int,
        numbers: List[int],
        nickname: Optional[str] = None,
        created_at: Optional[datetime] = None,
        validation_error: Optional[str] = None,
    ) -> Bet:
        """Insert a pending bet (the round counter is bumped by RoundManager.attach_bet)."""
        bets = await self.insert_bets(round_id, [numbers], nickname, created_at, validation_error)
        return bets[0]

    async def insert_bets(
        self,
        round_id: int,
        number_sets: List[List[int]],
        nickname: Optional[str] = None,
        created_at: Optional[datetime] = None,
        validation_error: Optional[str] = None,
    ) -> List[Bet]:
        """Insert several pending bets in one transaction; all or none are stored."""
        ts = (created_at or utcnow()).replace(microsecond=0)
        bets = [
            Bet(
                id=secrets.token_hex(8),
                round_id=int(round_id),
                numbers=sorted(int(n) for n in numbers),
                nickname=nickname,
                created_at=ts,
                validation_error=validation_error,
            )
            for numbers in number_sets
        ]
        async with self.transaction() as c:
            await c.executemany(
                "INSERT INTO bets(id, round_id, numbers, nickname, payment_status, validation_error, created_at) "
                "VALUES(?,?,?,?,?,?,?)",
                [
                    (b.id, b.round_id, json.dumps(b.numbers), nickname, PENDING, validation_error, rfc3339(ts))
                    for b in bets
                ],
            )
        return bets

    async def claim_payment(
        self,
        bet_id: str,
        transaction_id: str,
        from_address: str,
        value: Decimal,
        timestamp: datetime,
        status: str = PAID,
        validation_error: Optional[str] = None,
    ) -> bool:
        """
        Attach a transaction to a still-pending bet.
        Returns False if the transaction is already claimed by another bet
        (unique constraint) or reserved by a payment session, or if the bet is
        no longer pending.
        """
        now = rfc3339(utcnow())
        try:
            n = await self._write(
                "UPDATE bets SET payment_status=?, transaction_id=?, from_address=?, transaction_value=?, "
                "transaction_timestamp=?, validation_error=?, last_payment_check=?, "
                "payment_check_attempts = payment_check_attempts + 1 "
                "WHERE id=? AND payment_status=? "
                "AND NOT EXISTS (SELECT 1 FROM sessions WHERE transaction_id=?)",
                (status, transaction_id, from_address, str(value), rfc3339(timestamp),
                 validation_error, now, bet_id, PENDING, transaction_id),
            )
        except sqlite3.IntegrityError:
            logger.info(f"[ledger] transaction {transaction_id} already claimed, not attached to bet {bet_id}")
            return False
        return n == 1

    async def record_check_attempt(self, bet_id: str, max_attempts: int, error: Optional[str] = None) -> Optional[Bet]:
        """
        Count one unsuccessful payment check; a bet reaching `max_attempts`
        becomes failed. Returns the updated bet.
        """
        now = rfc3339(utcnow())
        async with self.transaction() as c:
            await c.execute(
                "UPDATE bets SET payment_check_attempts = payment_check_attempts + 1, last_payment_check=?, "
                "validation_error = COALESCE(?, validation_error) WHERE id=? AND payment_status=?",
                (now, error, bet_id, PENDING),
            )
            await c.execute(
                "UPDATE bets SET payment_status=?, validation_error=? "
                "WHERE id=? AND payment_status=? AND payment_check_attempts >= ?",
                (FAILED, "Payment not detected within time limit", bet_id, PENDING, int(max_attempts)),
            )
        return await self.get_bet(bet_id)

    async def record_payout(self, bet_id: str, payment_tx_id: str, paid_at: Optional[datetime] = None) -> bool:
        n = await self._write(
            "UPDATE bets SET is_paid=1, payment_tx_id=?, payment_date=?, payout_error=NULL "
            "WHERE id=? AND is_paid=0",
            (payment_tx_id, rfc3339(paid_at or utcnow()), bet_id),
        )
        return n == 1

    async def record_payout_error(self, bet_id: str, error: str) -> None:
        await self._write("UPDATE bets SET payout_error=? WHERE id=? AND is_paid=0", (error[:500], bet_id))

    # =====================================================
    # Rounds: reads
    # =====================================================
    async def get_round(self, round_id: int) -> Optional[Round]:
        row = await self._fetchone("SELECT * FROM rounds WHERE round_id=?", (int(round_id),))
        return Round.from_row(row) if row else None

    async def find_open_round(self) -> Optional[Round]:
        row = await self._fetchone("SELECT * FROM rounds WHERE is_finalized=0")
        return Round.from_row(row) if row else None


    async def find_open_round_due(self, draw_date: datetime) -> Optional[Round]:
        row = await self._fetchone(
            "SELECT * FROM rounds WHERE is_finalized=0 AND draw_date <= ? ORDER BY round_id ASC LIMIT 1",
            (rfc3339(draw_date),),
        )
        return Round.from_row(row) if row else None

    async def count_open_rounds(self) -> int:
        row = await self._fetchone("SELECT COUNT(1) FROM rounds WHERE is_finalized=0")
        return int(row[0] or 0)

    # =====================================================
    # Rounds: writes
    # =====================================================
    async def open_round_if_none(
        self,
        start_time: datetime,
        draw_date: datetime,
    ) -> Round:
        """
        Check-then-create under the writer lock: returns the open round, or
        creates round max+1 seeded with the last finalized round's rollover.
        The partial unique index rejects a second open round regardless.
        """
        async with self.transaction() as c:
            async with c.execute("SELECT * FROM rounds WHERE is_finalized=0") as cur:
                row = await cur.fetchone()
            if row:
                return Round.from_row(row)

            async with c.execute(
                "SELECT round_id, rollover_amount FROM rounds WHERE is_finalized=1 ORDER BY round_id DESC LIMIT 1"
            ) as cur:
                last = await cur.fetchone()
            async with c.execute("SELECT COALESCE(MAX(round_id), 0) FROM rounds") as cur:
                max_id = int((await cur.fetchone())[0] or 0)

            accumulated = _dec(last["rollover_amount"]) if last else Decimal("0")
            rnd = Round(
                round_id=max_id + 1,
                start_time=start_time.replace(microsecond=0),
                draw_date=draw_date.replace(microsecond=0),
                accumulated_amount=accumulated,
            )
            await c.execute(
                "INSERT INTO rounds(round_id, status, is_finalized, start_time, draw_date, accumulated_amount) "
                "VALUES(?,?,0,?,?,?)",
                (rnd.round_id, ROUND_OPEN, rfc3339(rnd.start_time), rfc3339(rnd.draw_date), str(accumulated)),
            )
            await kv_set(c, CURRENT_ROUND_KEY, str(rnd.round_id), commit=False)
        logger.info(
            f"[ledger] opened round {rnd.round_id} draw={rfc3339(rnd.draw_date)} accumulated={accumulated}"
        )
        return rnd

    async def increment_round_bets(self, round_id: int, by: int = 1) -> None:
        await self._write(
            "UPDATE rounds SET total_bets = total_bets + ? WHERE round_id=?", (int(by), int(round_id))
        )

    async def set_round_status(self, round_id: int, new_status: str, expected: Iterable[str]) -> bool:
        """Compare-and-set on round status; False when the round was not in an expected state."""
        expected = list(expected)
        marks = ",".join("?" for _ in expected)
        n = await self._write(
            f"UPDATE rounds SET status=? WHERE round_id=? AND is_finalized=0 AND status IN ({marks})",
            (new_status, int(round_id), *expected),
        )
        return n == 1

    async def lock_rounds_due(self, now: datetime) -> int:
        return await self._write(
            "UPDATE rounds SET status=? WHERE is_finalized=0 AND status=? AND draw_date <= ?",
            (ROUND_LOCKED, ROUND_OPEN, rfc3339(now)),
        )

    async def finalize_round_record(
        self,
        round_id: int,
        winning_numbers: List[int],
        matches: Dict[str, int],
        prizes: Dict[str, Decimal],
        total_prize_pool: Decimal,
        rollover_amount: Decimal,
        house_fee: Decimal,
        winners: Dict[str, int],
        finalized_at: Optional[datetime] = None,
    ) -> bool:
        """
        Persist a draw in one transaction: bet matches and prizes, then the
        round's outcome with is_finalized=1. Only a drawn round is finalized.
        """
        async with self.transaction() as c:
            cur = await c.execute(
                "UPDATE rounds SET status=?, is_finalized=1, finalized_at=?, winning_numbers=?, "
                "total_prize_pool=?, rollover_amount=?, house_fee=?, winners=? "
                "WHERE round_id=? AND is_finalized=0 AND status=?",
                (
                    ROUND_FINALIZED,
                    rfc3339(finalized_at or utcnow()),
                    json.dumps(sorted(winning_numbers)),
                    str(total_prize_pool),
                    str(rollover_amount),
                    str(house_fee),
                    json.dumps(winners),
                    int(round_id),
                    ROUND_DRAWN,
                ),
            )
            if cur.rowcount != 1:
                return False
            await c.executemany(
                "UPDATE bets SET matches=? WHERE id=?",
                [(int(m), bid) for bid, m in matches.items()],
            )
            await c.executemany(
                "UPDATE bets SET prize_amount=? WHERE id=?",
                [(str(p), bid) for bid, p in prizes.items()],
            )
            await c.execute("DELETE FROM kv WHERE k=? AND v=?", (CURRENT_ROUND_KEY, str(int(round_id))))
        return True

    # =====================================================
    # Results
    # =====================================================
    async def get_result(self, draw_date: datetime) -> Optional[Result]:
        row = await self._fetchone("SELECT * FROM results WHERE draw_date=?", (rfc3339(draw_date),))
        return Result.from_row(row) if row else None

    async def find_latest_results(self, limit: int) -> List[Result]:
        rows = await self._fetchall(
            "SELECT * FROM results ORDER BY draw_date DESC LIMIT ?", (int(limit),)
        )
        return [Result.from_row(r) for r in rows]

    async def insert_result(self, draw_date: datetime, numbers: List[int], source: str) -> Result:
        """Insert a result keyed by draw date; an existing row for that date is returned unchanged."""
        async with self.transaction() as c:
            await c.execute(
                "INSERT INTO results(draw_date, numbers, source, processed, created_at) VALUES(?,?,?,0,?) "
                "ON CONFLICT(draw_date) DO NOTHING",
                (rfc3339(draw_date), json.dumps(sorted(numbers)), source, rfc3339(utcnow())),
            )
        return await self.get_result(draw_date)

    async def mark_result_processed(self, result_id: int, round_id: Optional[int]) -> None:
        await self._write(
            "UPDATE results SET processed=1, round_id=? WHERE id=?", (round_id, int(result_id))
        )

    # =====================================================
    # Payment sessions (TTL rows)
    # =====================================================
    async def insert_session(self, numbers: List[int], nickname: Optional[str], expected_amount: Decimal,
                             created_at: datetime, expires_at: datetime) -> PaymentSession:
        sess = PaymentSession(
            id=secrets.token_urlsafe(12),
            numbers=sorted(int(n) for n in numbers),
            nickname=nickname,
            expected_amount=expected_amount,
            created_at=created_at.replace(microsecond=0),
            expires_at=expires_at.replace(microsecond=0),
        )
        await self._write(
            "INSERT INTO sessions(id, numbers, nickname, expected_amount, created_at, expires_at) VALUES(?,?,?,?,?,?)",
            (sess.id, json.dumps(sess.numbers), nickname, str(expected_amount),
             rfc3339(sess.created_at), rfc3339(sess.expires_at)),
        )
        return sess

    async def get_session(self, session_id: str, now: Optional[datetime] = None) -> Optional[PaymentSession]:
        """Live sessions only: an expired row reads as missing."""
        row = await self._fetchone(
            "SELECT * FROM sessions WHERE id=? AND expires_at > ?", (session_id, rfc3339(now or utcnow()))
        )
        return PaymentSession.from_row(row) if row else None

    async def set_session_transaction(self, session_id: str, transaction_id: str) -> bool:
        try:
            n = await self._write(
                "UPDATE sessions SET transaction_id=? WHERE id=? AND transaction_id IS NULL "
                "AND NOT EXISTS (SELECT 1 FROM bets WHERE transaction_id=?)",
                (transaction_id, session_id, transaction_id),
            )
        except sqlite3.IntegrityError:
            return False
        return n == 1

    async def delete_session(self, session_id: str) -> None:
        await self._write("DELETE FROM sessions WHERE id=?", (session_id,))

    async def purge_expired_sessions(self, now: Optional[datetime] = None) -> int:
        return await self._write("DELETE FROM sessions WHERE expires_at <= ?", (rfc3339(now or utcnow()),))

    # =====================================================
    # Paid-at-creation bets (session completion / POST /bets with a valid tx)
    # =====================================================
    async def insert_paid_bet(
        self,
        round_id: int,
        numbers: List[int],
        nickname: Optional[str],
        transaction_id: str,
        from_address: str,
        value: Decimal,
        timestamp: datetime,
        status: str = PAID,
        validation_error: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Bet:
        """
        Create a bet that already carries its payment. The unique constraint on
        transaction_id makes a reused transaction raise sqlite3.IntegrityError, as
        does a transaction reserved by a payment session other than `session_id`.
        """
        bet = Bet(
            id=secrets.token_hex(8),
            round_id=int(round_id),
            numbers=sorted(int(n) for n in numbers),
            nickname=nickname,
            created_at=utcnow().replace(microsecond=0),
            payment_status=status,
            validation_error=validation_error,
            from_address=from_address,
            transaction_id=transaction_id,
            transaction_value=value,
            transaction_timestamp=timestamp,
        )
        async with self.transaction() as c:
            async with c.execute(
                "SELECT id FROM sessions WHERE transaction_id=? AND id IS NOT ?", (transaction_id, session_id)
            ) as cur:
                if await cur.fetchone():
                    raise sqlite3.IntegrityError(f"transaction {transaction_id} is reserved by a payment session")
            await c.execute(
                "INSERT INTO bets(id, round_id, numbers, nickname, payment_status, validation_error, from_address, "
                "transaction_id, transaction_value, transaction_timestamp, created_at) VALUES(?,?,?,?,?,?,?,?,?,?,?)",
                (bet.id, bet.round_id, json.dumps(bet.numbers), nickname, status, validation_error, from_address,
                 transaction_id, str(value), rfc3339(timestamp), rfc3339(bet.created_at)),
            )
            if session_id:
                await c.execute("DELETE FROM sessions WHERE id=?", (session_id,))
        return bet
