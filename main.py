# main.py
# =========================================================
# Numbers Lottery Backend (FastAPI)
# =========================================================
from __future__ import annotations

import os
import sys
import time
from decimal import Decimal
from typing import Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from bets import BetService
from chain import SolanaGateway
from config import settings, Settings
from currency import UsdRates, format_usd
from db import Ledger, PENDING, rfc3339
from draws import next_draw_info
from errors import GatewayError, LotteryError, NotFoundError, InvalidRequestError
from prizes import PrizeEngine, split_pool
from reconciler import PaymentReconciler
from results import ResultsService
from rounds import RoundManager
from scheduler import BackgroundJobs
from schemas import CompleteSession, InitSession, ManualResult, MultipleBets, NewBet
from sessions import SessionService

SERVICE = "numbers-lottery"
VERSION = "0.1.0"


def configure_logging(cfg: Settings = settings) -> None:
    logger.remove()
    logger.add(sys.stderr, level=cfg.LOG_LEVEL.upper(), backtrace=cfg.DEBUG, diagnose=cfg.DEBUG)


def ok(data=None, **extra) -> dict:
    return {"success": True, "data": data, **extra}


def fail(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


# =========================================================
# Admin guard
# =========================================================
_auth_scheme = HTTPBearer(auto_error=False)


def admin_guard(request: Request, creds: HTTPAuthorizationCredentials = Depends(_auth_scheme)):
    cfg: Settings = request.app.state.cfg
    if not cfg.ADMIN_TOKEN:
        # allow only if explicitly running in debug/dev
        if cfg.DEBUG:
            return True
        raise HTTPException(401, "ADMIN_TOKEN required in production")
    if not creds or creds.credentials != cfg.ADMIN_TOKEN:
        raise HTTPException(401, "Unauthorized")
    return True


# =========================================================
# Error envelopes
# =========================================================
def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    missing = [str(e["loc"][-1]) for e in errors if e.get("type") == "missing" and e.get("loc")]
    if missing:
        return "Missing required fields: " + ", ".join(missing)
    if not errors:
        return "Invalid request"
    first = errors[0]
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    return f"{field}: {first.get('msg')}" if field else str(first.get("msg"))


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(LotteryError)
    async def lottery_error_handler(request: Request, exc: LotteryError):
        if exc.status_code >= 500:
            logger.error(f"[api] {request.method} {request.url.path}: {exc.message}")
        return fail(exc.status_code, exc.message)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        detail = exc.detail if isinstance(exc.detail, str) else "Request error"
        return fail(exc.status_code, detail)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return fail(400, _validation_message(exc))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(f"[api] unhandled error on {request.method} {request.url.path}")
        return fail(500, str(exc) or "Internal server error")


# =========================================================
# Routes
# =========================================================
router = APIRouter()


def _round_summary(rnd) -> Optional[dict]:
    if rnd is None:
        return None
    return {
        "roundId": rnd.round_id,
        "drawDate": rfc3339(rnd.draw_date),
        "isFinalized": rnd.is_finalized,
        "winningNumbers": rnd.winning_numbers,
    }


def _limit(value: int, cap: int = 100) -> int:
    return max(1, min(int(value), cap))


@router.get("/health")
async def health():
    return {"ok": True, "ts": time.time(), "service": SERVICE, "version": VERSION}


@router.get("/health/full")
async def health_full(request: Request):
    st = request.app.state
    try:
        slot = await st.gateway.get_slot()
        ok_rpc = True
    except Exception:
        slot = None
        ok_rpc = False
    current = await st.rounds.current_round()
    return {
        "ok": True,
        "service": SERVICE,
        "rpc_ok": ok_rpc,
        "slot": slot,
        "currentRoundId": current.round_id if current else None,
        "pendingBets": await st.ledger.count_pending_bets(),
        "reconciler": st.reconciler.status(),
        "jobs": st.jobs.status() if st.jobs else None,
        "ts": time.time(),
        "version": VERSION,
    }


# ---------------- bets ----------------
@router.post("/bets")
async def create_bet(body: NewBet, request: Request):
    st = request.app.state
    bet, rnd = await st.bets.place_bet(body.numbers, body.nickname, body.transactionId)
    if bet.payment_status == PENDING and bet.validation_error:
        message = "Bet registered, pending validation"
    elif bet.payment_status == PENDING:
        message = "Bet registered, awaiting payment"
    else:
        message = "Bet placed successfully" if bet.validation_error is None else "Bet registered, payment invalid"
    return ok(
        {
            "betId": bet.id,
            "roundId": rnd.round_id,
            "drawDate": rfc3339(rnd.draw_date),
            "paymentStatus": bet.payment_status,
            "isValidated": bet.as_dict()["isValidated"],
            "validationError": bet.validation_error,
            "amount": str(st.cfg.BET_AMOUNT),
            "receivingWallet": st.cfg.RECEIVING_WALLET,
        },
        message=message,
    )


@router.post("/bets/multiple")
async def create_multiple_bets(body: MultipleBets, request: Request):
    st = request.app.state
    bets, rnd = await st.bets.place_multiple([b.model_dump() for b in body.bets], body.nickname)
    amount = st.cfg.BET_AMOUNT
    return ok(
        {
            "bets": [b.as_dict() for b in bets],
            "count": len(bets),
            "roundId": rnd.round_id,
            "drawDate": rfc3339(rnd.draw_date),
            "amountPerBet": str(amount),
            "totalAmount": str(amount * len(bets)),
            "receivingWallet": st.cfg.RECEIVING_WALLET,
        },
        message=f"{len(bets)} bets registered, awaiting payment",
    )


@router.get("/bets/recent")
async def recent_bets(request: Request, limit: int = Query(20)):
    bets = await request.app.state.ledger.find_recent_bets(_limit(limit))
    return ok([b.as_dict() for b in bets], count=len(bets))


@router.get("/bets/current-round")
async def current_round(request: Request):
    st = request.app.state
    cfg: Settings = st.cfg
    rnd = await st.rounds.current_round()
    if rnd is None:
        return ok(None, message="No active round")

    new_bets = await st.ledger.sum_paid_value(rnd.round_id)
    pool_source = "bets"
    if cfg.POOL_FROM_WALLET_BALANCE:
        try:
            balance = await st.gateway.get_balance()
            new_bets = max(balance - rnd.accumulated_amount, Decimal("0"))
            pool_source = "wallet"
        except GatewayError as e:
            logger.warning(f"[api] wallet balance unavailable, using summed bets: {e.message}")
    split = split_pool(new_bets, rnd.accumulated_amount, cfg)

    rate = await st.rates.get_rate()
    total_usd = await st.rates.to_usd(split.total_pool)
    prize_usd = await st.rates.to_usd(split.prize_pool)
    accumulated_usd = await st.rates.to_usd(split.accumulated)

    data = rnd.as_dict()
    data.update(split.as_dict())
    data.update(
        {
            "poolSource": pool_source,
            "isAcceptingBets": await st.rounds.is_accepting_bets(),
            "betAmount": str(cfg.BET_AMOUNT),
            "receivingWallet": cfg.RECEIVING_WALLET,
            "totalPoolUsd": str(total_usd),
            "totalPoolUsdFormatted": format_usd(total_usd),
            "prizePoolUsd": str(prize_usd),
            "prizePoolUsdFormatted": format_usd(prize_usd),
            "accumulatedUsd": str(accumulated_usd),
            "accumulatedUsdFormatted": format_usd(accumulated_usd),
            "exchangeRate": str(rate),
        }
    )
    return ok(data)


@router.get("/bets/round/{round_id}")
async def bets_by_round(round_id: int, request: Request):
    bets = await request.app.state.ledger.find_bets_by_round(round_id)
    return ok([b.as_dict() for b in bets], count=len(bets))


@router.get("/bets/check/{transaction_id}")
async def check_bet_by_transaction(transaction_id: str, request: Request):
    ledger: Ledger = request.app.state.ledger
    bet = await ledger.find_bet_by_transaction(transaction_id)
    if bet is None:
        raise NotFoundError("Bet not found")
    rnd = await ledger.get_round(bet.round_id)
    return ok({"bet": bet.as_dict(), "round": _round_summary(rnd)})


@router.get("/bets/winners/{round_id}")
async def round_winners(round_id: int, request: Request):
    ledger: Ledger = request.app.state.ledger
    rnd = await ledger.get_round(round_id)
    if rnd is None:
        raise NotFoundError("Round not found")
    if not rnd.is_finalized:
        raise InvalidRequestError("Round not finalized yet")
    winners = await ledger.find_round_winners(round_id)
    return ok({"round": rnd.as_dict(), "winners": [b.as_dict() for b in winners]})


# ---------------- payment sessions ----------------
@router.post("/bets/init-session")
async def init_session(body: InitSession, request: Request):
    data = await request.app.state.sessions.init_session(body.numbers, body.nickname)
    return ok(data, message="Send the payment, then complete the session")


@router.get("/bets/check-payment/{session_id}")
async def check_payment(session_id: str, request: Request):
    data = await request.app.state.sessions.check_payment(session_id)
    return ok(data, message="Payment found" if data["found"] else "Payment not detected yet")


@router.post("/bets/complete-session")
async def complete_session(body: CompleteSession, request: Request):
    out = await request.app.state.sessions.complete_session(body.sessionId, body.transactionId)
    bet, rnd = out["bet"], out["round"]
    return ok(
        {"bet": bet.as_dict(), "roundId": rnd.round_id, "drawDate": rfc3339(rnd.draw_date)},
        message="Bet placed successfully",
    )


# ---------------- admin ----------------
@router.get("/bets/admin/pending")
async def admin_pending(request: Request, limit: int = Query(100), auth: bool = Depends(admin_guard)):
    st = request.app.state
    bets = await st.ledger.find_pending_bets(st.cfg.MAX_CHECK_ATTEMPTS, _limit(limit, 1000))
    return ok([b.as_dict() for b in bets], count=len(bets), total=await st.ledger.count_pending_bets())


@router.get("/bets/admin/payment-monitor-status")
async def admin_monitor_status(request: Request, auth: bool = Depends(admin_guard)):
    return ok(request.app.state.reconciler.status())


@router.post("/bets/admin/check-bet-payment/{bet_id}")
async def admin_check_bet_payment(bet_id: str, request: Request, auth: bool = Depends(admin_guard)):
    out = await request.app.state.reconciler.check_bet(bet_id)
    return {"success": out["success"], "message": out["message"], "data": out["bet"].as_dict()}


@router.get("/bets/admin/unpaid-winners")
async def admin_unpaid_winners(request: Request, auth: bool = Depends(admin_guard)):
    bets = await request.app.state.engine.unpaid_winners()
    return ok([b.as_dict() for b in bets], count=len(bets))


@router.post("/bets/admin/payout/{bet_id}")
async def admin_payout(bet_id: str, request: Request, auth: bool = Depends(admin_guard)):
    data = await request.app.state.engine.manual_payout(bet_id)
    return ok(data, message="Prize paid")


@router.get("/bets/{bet_id}")
async def get_bet(bet_id: str, request: Request):
    bet = await request.app.state.ledger.get_bet(bet_id)
    if bet is None:
        raise NotFoundError("Bet not found")
    return ok(bet.as_dict())


# ---------------- results ----------------
@router.get("/powerball/latest")
async def latest_results(request: Request, limit: int = Query(10)):
    results = await request.app.state.results.latest(limit)
    return ok([r.as_dict() for r in results], count=len(results))


@router.post("/powerball/check")
async def check_results(request: Request, auth: bool = Depends(admin_guard)):
    out = await request.app.state.results.check_results()
    if not out:
        return ok(None, message="No new results found")
    return ok(_result_payload(out), message="Results checked and processed")


@router.post("/powerball/manual")
async def manual_results(body: ManualResult, request: Request, auth: bool = Depends(admin_guard)):
    out = await request.app.state.results.submit_result(body.drawDate, body.numbers, source="manual")
    message = "Results processed successfully" if out["round"] else "Result stored; no open round for this draw"
    return ok(_result_payload(out), message=message)


@router.get("/powerball/next-draw")
async def next_draw(request: Request):
    info = next_draw_info(cfg=request.app.state.cfg)
    info["nextDrawDate"] = rfc3339(info["nextDrawDate"])
    return ok(info)


def _result_payload(out: dict) -> dict:
    outcome = out.get("round")
    return {"result": out["result"].as_dict(), "round": outcome.as_dict() if outcome else None}


# =========================================================
# App Init
# =========================================================
def create_app(cfg: Settings = settings, gateway=None, start_background: Optional[bool] = None) -> FastAPI:
    app = FastAPI(title="Numbers Lottery Backend", version=VERSION)
    app.state.cfg = cfg
    app.state.jobs = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)
    app.include_router(router, prefix=cfg.API_PREFIX if cfg.API_PREFIX != "/" else "")

    run_jobs = cfg.ENABLE_BACKGROUND_JOBS if start_background is None else start_background

    @app.on_event("startup")
    async def on_startup():
        st = app.state
        st.ledger = await Ledger.open(cfg.DB_PATH)
        st.gateway = gateway or SolanaGateway(
            rpc_url=cfg.RPC_URL,
            receiving_wallet=cfg.RECEIVING_WALLET,
            payout_secret_b58=cfg.PAYOUT_WALLET_PK,
            min_amount=cfg.BET_AMOUNT - cfg.PAYMENT_TOLERANCE,
        )
        st.rounds = RoundManager(st.ledger, cfg)
        st.engine = PrizeEngine(st.ledger, st.gateway, st.rounds, cfg)
        st.reconciler = PaymentReconciler(st.ledger, st.gateway, cfg)
        st.results = ResultsService(st.ledger, st.engine, st.rounds, cfg)
        st.bets = BetService(st.ledger, st.gateway, st.rounds, cfg)
        st.sessions = SessionService(st.ledger, st.gateway, st.bets, cfg)
        st.rates = UsdRates(cfg)

        rnd = await st.rounds.get_or_open_current_round()
        logger.info(f"[startup] current round {rnd.round_id}, draw at {rfc3339(rnd.draw_date)}")

        if run_jobs:
            st.jobs = BackgroundJobs(st.reconciler, st.results, cfg)
            st.jobs.start()

    @app.on_event("shutdown")
    async def on_shutdown():
        st = app.state
        if st.jobs is not None:
            await st.jobs.stop()
            st.jobs = None
        await st.ledger.close()

    return app


configure_logging()
app = create_app()


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")), reload=settings.DEBUG)
