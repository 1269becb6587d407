import asyncio
import os
import sys
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

import pytest

# Ensure repository root is on sys.path so the flat modules import during tests
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from chain import ChainTransaction  # noqa: E402
from config import Settings  # noqa: E402
from db import Ledger, utcnow  # noqa: E402
from errors import GatewayError, PayoutError, TransactionValidationError  # noqa: E402
from prizes import PrizeEngine  # noqa: E402
from reconciler import PaymentReconciler  # noqa: E402
from rounds import RoundManager  # noqa: E402

RECEIVING = "RecvWa11et1111111111111111111111111111111111"
ADMIN_TOKEN = "test-admin-token"


def make_cfg(tmp_path, **overrides) -> Settings:
    values = dict(
        DB_PATH=str(tmp_path / "lottery.db"),
        ADMIN_TOKEN=ADMIN_TOKEN,
        DEBUG=False,
        ENABLE_BACKGROUND_JOBS=False,
        RECEIVING_WALLET=RECEIVING,
        RESULTS_FEED_URL="",
        POOL_FROM_WALLET_BALANCE=False,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


class Clock:
    """Settable clock for RoundManager / SessionService."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeGateway:
    """In-memory Chain Gateway: inbound transfers are added by the test, payouts are recorded."""

    def __init__(self):
        self.transactions: List[ChainTransaction] = []
        self.sent = []
        self.failing_recipients = set()
        self.list_error: Optional[Exception] = None
        self.list_calls = 0
        self.balance = Decimal("0")

    def add_transfer(self, tx_hash: str, value="0.1", sender="Sender1", when: Optional[datetime] = None):
        tx = ChainTransaction(
            hash=tx_hash,
            from_address=sender,
            to_address=RECEIVING,
            value=Decimal(str(value)),
            timestamp=when or utcnow(),
        )
        # newest first, like getSignaturesForAddress
        self.transactions.insert(0, tx)
        return tx

    async def list_inbound_transactions(self, limit: int = 50):
        self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        return list(self.transactions[:limit])

    async def get_transaction(self, tx_hash: str):
        for tx in self.transactions:
            if tx.hash == tx_hash:
                return tx
        raise TransactionValidationError("Transaction not found on blockchain")

    async def send_payment(self, to_address: str, amount: Decimal) -> str:
        if to_address in self.failing_recipients:
            raise PayoutError("Insufficient balance for payout")
        sig = f"payout-{len(self.sent) + 1}"
        self.sent.append((to_address, Decimal(amount), sig))
        return sig

    async def get_balance(self, address: Optional[str] = None) -> Decimal:
        return self.balance

    async def get_slot(self) -> int:
        if self.list_error is not None:
            raise GatewayError("rpc down")
        return 1234


class FakeRates:
    async def get_rate(self):
        return Decimal("100")

    async def to_usd(self, sol):
        return (Decimal(sol) * 100).quantize(Decimal("0.01"))


@pytest.fixture
def cfg(tmp_path):
    return make_cfg(tmp_path)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
async def ledger(cfg):
    led = await Ledger.open(cfg.DB_PATH)
    yield led
    await led.close()


@pytest.fixture
def rounds(ledger, cfg):
    return RoundManager(ledger, cfg)


@pytest.fixture
def engine(ledger, gateway, rounds, cfg):
    return PrizeEngine(ledger, gateway, rounds, cfg)


@pytest.fixture
def reconciler(ledger, gateway, cfg):
    return PaymentReconciler(ledger, gateway, cfg)


async def add_paid_bet(ledger, rounds, numbers, tx_hash, sender="Sender1", value="0.1"):
    """Store a bet that is already paid, attached to the current round."""
    rnd = await rounds.get_or_open_current_round()
    bet = await ledger.insert_paid_bet(
        rnd.round_id,
        numbers,
        None,
        transaction_id=tx_hash,
        from_address=sender,
        value=Decimal(value),
        timestamp=utcnow(),
    )
    await rounds.attach_bet(rnd.round_id)
    return bet


class TimedOutSession:
    """Stands in for aiohttp.ClientSession when every request hits the client timeout."""

    def __init__(self, *args, **kwargs):
        self.requested = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def get(self, url, **kwargs):
        self.requested.append(url)
        raise asyncio.TimeoutError()
