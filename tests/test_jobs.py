import asyncio
from decimal import Decimal

import aiohttp

import init_db
from conftest import TimedOutSession
from currency import UsdRates, format_usd
from results import ResultsService
from scheduler import BackgroundJobs


async def test_init_db_opens_one_round(tmp_path):
    path = str(tmp_path / "fresh" / "lottery.db")
    assert await init_db.main(path) == 1
    assert await init_db.main(path) == 1


async def test_background_jobs_start_and_stop(ledger, engine, rounds, reconciler, cfg):
    jobs = BackgroundJobs(reconciler, ResultsService(ledger, engine, rounds, cfg), cfg)
    jobs.start()
    await asyncio.sleep(0)

    status = jobs.status()
    assert status["schedulerRunning"] is True
    assert status["reconcilerRunning"] is True
    assert status["nextResultsCheck"] is not None
    assert status["lastResultsCheck"] is None

    await jobs.stop()
    assert jobs.status()["schedulerRunning"] is False
    assert reconciler.is_running is False


async def test_failing_results_check_is_contained(ledger, engine, rounds, reconciler, cfg, monkeypatch):
    results = ResultsService(ledger, engine, rounds, cfg)

    async def broken():
        raise RuntimeError("feed exploded")

    monkeypatch.setattr(results, "check_results", broken)
    await BackgroundJobs(reconciler, results, cfg).run_results_check()


async def test_usd_rate_falls_back(cfg, monkeypatch):
    rates = UsdRates(cfg)

    async def down():
        raise aiohttp.ClientError("offline")

    async def up():
        return Decimal("200")

    monkeypatch.setattr(rates, "_fetch", down)
    assert await rates.get_rate() == Decimal("150")
    assert await rates.to_usd(Decimal("0.1")) == Decimal("15.00")

    monkeypatch.setattr(rates, "_fetch", up)
    assert await rates.get_rate() == Decimal("200")
    assert rates.source == "CoinGecko"

    # expired cache + outage: the last good rate is used
    rates.updated_at = 0
    monkeypatch.setattr(rates, "_fetch", down)
    assert await rates.get_rate() == Decimal("200")


def test_format_usd():
    assert format_usd(Decimal("1234.5")) == "$1,234.50"


async def test_usd_rate_timeout_uses_fallback(cfg, monkeypatch):
    rates = UsdRates(cfg)
    monkeypatch.setattr(aiohttp, "ClientSession", TimedOutSession)
    assert await rates.get_rate() == Decimal("150")
    assert rates.source == "fallback"
