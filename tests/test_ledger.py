import asyncio
import sqlite3
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import Clock
from db import CURRENT_ROUND_KEY, FAILED, PAID, PENDING, utcnow
from rounds import RoundManager


async def test_first_round_is_one_and_pointer_is_set(ledger, rounds):
    rnd = await rounds.get_or_open_current_round()
    assert rnd.round_id == 1
    assert rnd.accumulated_amount == 0
    assert rnd.draw_date > utcnow()
    assert await ledger.kv_get(CURRENT_ROUND_KEY) == "1"


async def test_concurrent_round_creation_yields_one_open_round(ledger, rounds):
    opened = await asyncio.gather(*[rounds.get_or_open_current_round() for _ in range(25)])
    assert {r.round_id for r in opened} == {1}
    assert await ledger.count_open_rounds() == 1


async def test_storage_rejects_a_second_open_round(ledger, rounds):
    await rounds.get_or_open_current_round()
    with pytest.raises(sqlite3.IntegrityError):
        async with ledger.transaction() as c:
            await c.execute(
                "INSERT INTO rounds(round_id, status, is_finalized, start_time, draw_date) "
                "VALUES(99, 'open', 0, '2026-01-01T00:00:00Z', '2026-01-02T00:00:00Z')"
            )
    assert await ledger.count_open_rounds() == 1


async def test_total_bets_increment_is_atomic(ledger, rounds):
    rnd = await rounds.get_or_open_current_round()
    await asyncio.gather(*[rounds.attach_bet(rnd.round_id) for _ in range(50)])
    assert (await ledger.get_round(rnd.round_id)).total_bets == 50


async def test_transaction_claims_only_one_bet(ledger, rounds):
    rnd = await rounds.get_or_open_current_round()
    first = await ledger.insert_bet(rnd.round_id, [1, 2, 3, 4, 5, 6])
    second = await ledger.insert_bet(rnd.round_id, [7, 8, 9, 10, 11, 12])
    now = utcnow()

    assert await ledger.claim_payment(first.id, "sig-1", "Sender", Decimal("0.1"), now)
    assert not await ledger.claim_payment(second.id, "sig-1", "Sender", Decimal("0.1"), now)

    assert (await ledger.get_bet(first.id)).payment_status == PAID
    assert (await ledger.get_bet(second.id)).payment_status == PENDING
    assert await ledger.claimed_transaction_ids(["sig-1", "sig-2"]) == {"sig-1"}


async def test_paid_bet_cannot_reuse_a_transaction(ledger, rounds):
    rnd = await rounds.get_or_open_current_round()
    await ledger.insert_paid_bet(rnd.round_id, [1, 2, 3, 4, 5, 6], None, "sig-1", "S", Decimal("0.1"), utcnow())
    with pytest.raises(sqlite3.IntegrityError):
        await ledger.insert_paid_bet(rnd.round_id, [1, 2, 3, 4, 5, 7], None, "sig-1", "S", Decimal("0.1"), utcnow())
    assert len(await ledger.find_bets_by_round(rnd.round_id)) == 1


async def test_check_attempts_end_in_failed(ledger, rounds):
    rnd = await rounds.get_or_open_current_round()
    bet = await ledger.insert_bet(rnd.round_id, [1, 2, 3, 4, 5, 6])
    assert (await ledger.record_check_attempt(bet.id, 2)).payment_status == PENDING
    updated = await ledger.record_check_attempt(bet.id, 2)
    assert updated.payment_status == FAILED
    assert updated.payment_check_attempts == 2
    assert updated.validation_error == "Payment not detected within time limit"
    # terminal: a later claim is refused
    assert not await ledger.claim_payment(bet.id, "sig-late", "S", Decimal("0.1"), utcnow())


async def test_bets_stored_with_sorted_numbers(ledger, rounds):
    rnd = await rounds.get_or_open_current_round()
    bet = await ledger.insert_bet(rnd.round_id, [56, 5, 45, 12, 34, 23], nickname="lucky")
    stored = await ledger.get_bet(bet.id)
    assert stored.numbers == [5, 12, 23, 34, 45, 56]
    assert stored.as_dict()["nickname"] == "lucky"
    assert stored.as_dict()["isValidated"] is False


async def test_lock_due_rounds_stops_accepting(ledger, cfg):
    clock = Clock()
    manager = RoundManager(ledger, cfg, clock=clock)
    rnd = await manager.get_or_open_current_round()
    assert await manager.is_accepting_bets()

    clock.now = rnd.draw_date + timedelta(minutes=1)
    assert not await manager.is_accepting_bets()
    assert await manager.lock_due_rounds() == 1
    assert (await ledger.get_round(rnd.round_id)).status == "locked"
    assert await manager.lock_due_rounds() == 0


async def test_round_status_compare_and_set(ledger, rounds):
    rnd = await rounds.get_or_open_current_round()
    assert await ledger.set_round_status(rnd.round_id, "drawn", ["open", "locked"])
    assert not await ledger.set_round_status(rnd.round_id, "drawn", ["open", "locked"])


async def test_sessions_expire(ledger):
    now = utcnow()
    sess = await ledger.insert_session([1, 2, 3, 4, 5, 6], None, Decimal("0.1"), now, now + timedelta(seconds=60))
    assert (await ledger.get_session(sess.id, now)).id == sess.id
    assert await ledger.get_session(sess.id, now + timedelta(seconds=61)) is None
    assert await ledger.purge_expired_sessions(now + timedelta(seconds=61)) == 1


async def test_session_reservation_and_bet_claim_exclude_each_other(ledger, rounds):
    rnd = await rounds.get_or_open_current_round()
    bet = await ledger.insert_bet(rnd.round_id, [1, 2, 3, 4, 5, 6])
    now = utcnow()
    sess = await ledger.insert_session([7, 8, 9, 10, 11, 12], None, Decimal("0.1"), now, now + timedelta(minutes=30))
    other = await ledger.insert_session([2, 3, 4, 5, 6, 7], None, Decimal("0.1"), now, now + timedelta(minutes=30))

    # reserved by a session: no bet may claim it
    assert await ledger.set_session_transaction(sess.id, "sig-x")
    assert not await ledger.claim_payment(bet.id, "sig-x", "Sender", Decimal("0.1"), now)
    assert (await ledger.get_bet(bet.id)).payment_status == PENDING
    with pytest.raises(sqlite3.IntegrityError):
        await ledger.insert_paid_bet(rnd.round_id, [1, 2, 3, 4, 5, 9], None, "sig-x", "S", Decimal("0.1"), now)

    # claimed by a bet: no session may reserve it
    assert await ledger.claim_payment(bet.id, "sig-y", "Sender", Decimal("0.1"), now)
    assert not await ledger.set_session_transaction(other.id, "sig-y")
    assert (await ledger.get_session(other.id)).transaction_id is None

    # the reserving session itself turns into the bet
    paid = await ledger.insert_paid_bet(
        rnd.round_id, sess.numbers, None, "sig-x", "S", Decimal("0.1"), now, session_id=sess.id
    )
    assert (await ledger.find_bet_by_transaction("sig-x")).id == paid.id
    assert await ledger.get_session(sess.id) is None


async def test_round_status_is_stored_lowercase(ledger, rounds):
    rnd = await rounds.get_or_open_current_round()
    async with ledger.conn.execute("SELECT status FROM rounds WHERE round_id=?", (rnd.round_id,)) as cur:
        (stored,) = await cur.fetchone()
    assert stored == "open"
    assert rnd.as_dict()["status"] == stored

    await ledger.lock_rounds_due(rnd.draw_date)
    assert (await ledger.get_round(rnd.round_id)).as_dict()["status"] == "locked"
