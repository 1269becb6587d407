from datetime import datetime

import aiohttp
import pytest
import pytz

from conftest import Clock, TimedOutSession, add_paid_bet, make_cfg
from errors import InvalidNumbersError, InvalidRequestError
from prizes import PrizeEngine
from results import ResultsService
from rounds import RoundManager

NY = pytz.timezone("America/New_York")
WINNING = [12, 23, 34, 45, 56, 60]


@pytest.fixture
def saturday_rounds(ledger, cfg):
    # rounds opened on Saturday 2026-10-17 morning draw that evening at 22:59 New York
    return RoundManager(ledger, cfg, clock=Clock(NY.localize(datetime(2026, 10, 17, 9, 0))))


@pytest.fixture
def service(ledger, gateway, saturday_rounds, cfg):
    engine = PrizeEngine(ledger, gateway, saturday_rounds, cfg)
    return ResultsService(ledger, engine, saturday_rounds, cfg)


async def test_result_finalizes_the_round_it_covers(ledger, saturday_rounds, service, gateway):
    bet = await add_paid_bet(ledger, saturday_rounds, [5, 12, 23, 34, 45, 56], "tx-a", sender="Alice")

    out = await service.submit_result("2026-10-17", WINNING)

    assert out["round"] is not None and out["round"].round_id == 1
    assert out["result"].processed and out["result"].round_id == 1
    assert out["result"].source == "manual"
    assert (await ledger.get_bet(bet.id)).matches == 5
    assert gateway.sent[0][0] == "Alice"
    assert (await ledger.get_round(1)).is_finalized
    assert (await saturday_rounds.current_round()).round_id == 2


async def test_resubmitting_a_processed_date_is_a_no_op(ledger, saturday_rounds, service, gateway):
    await add_paid_bet(ledger, saturday_rounds, WINNING, "tx-a", sender="Alice")
    await service.submit_result("2026-10-17", WINNING)

    again = await service.submit_result("2026-10-17", list(reversed(WINNING)))

    assert again["round"] is None
    assert len(gateway.sent) == 1
    assert not (await ledger.get_round(2)).is_finalized


async def test_conflicting_numbers_for_a_stored_date_are_rejected(saturday_rounds, service):
    await saturday_rounds.get_or_open_current_round()
    await service.submit_result("2026-10-17", WINNING)
    with pytest.raises(InvalidRequestError, match="different result"):
        await service.submit_result("2026-10-17", [1, 2, 3, 4, 5, 6])


async def test_result_before_the_round_draw_is_stored_only(ledger, saturday_rounds, service):
    await saturday_rounds.get_or_open_current_round()

    out = await service.submit_result("2026-10-14", WINNING)

    assert out["round"] is None
    assert not out["result"].processed
    assert not (await ledger.get_round(1)).is_finalized
    assert [r.draw_date.date().isoformat() for r in await service.latest()] == ["2026-10-15"]


async def test_invalid_numbers_are_not_stored(service):
    with pytest.raises(InvalidNumbersError):
        await service.submit_result("2026-10-17", [1, 2, 3, 4, 5, 99])
    assert await service.latest() == []


async def test_feed_disabled_means_manual_only(ledger, saturday_rounds, service):
    rnd = await saturday_rounds.get_or_open_current_round()
    saturday_rounds.clock.now = rnd.draw_date
    assert await service.fetch_results() == []
    assert await service.check_results() is None
    # the check still locks rounds whose draw has passed
    assert (await ledger.get_round(rnd.round_id)).status == "locked"


async def test_check_applies_newest_feed_result(ledger, saturday_rounds, service, monkeypatch):
    await add_paid_bet(ledger, saturday_rounds, WINNING, "tx-a", sender="Alice")

    async def feed():
        return [
            {"drawDate": "2026-10-17", "numbers": WINNING},
            {"drawDate": "2026-10-14", "numbers": [1, 2, 3, 4, 5, 6]},
        ]

    monkeypatch.setattr(service, "fetch_results", feed)
    out = await service.check_results()

    assert out["result"].source == "feed"
    assert out["round"].max_matches == 6


async def test_feed_timeout_yields_no_results(ledger, saturday_rounds, tmp_path, monkeypatch):
    cfg = make_cfg(tmp_path, RESULTS_FEED_URL="http://feed.invalid/results")
    engine = PrizeEngine(ledger, None, saturday_rounds, cfg)
    service = ResultsService(ledger, engine, saturday_rounds, cfg)
    monkeypatch.setattr(aiohttp, "ClientSession", TimedOutSession)

    assert await service.fetch_results() == []
    assert await service.check_results() is None
