from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from conftest import ADMIN_TOKEN, FakeGateway, FakeRates
from main import create_app

WINNING = [12, 23, 34, 45, 56, 60]
ADMIN = {"Authorization": f"Bearer {ADMIN_TOKEN}"}


@pytest.fixture
def chain():
    return FakeGateway()


@pytest.fixture
def client(cfg, chain):
    app = create_app(cfg, gateway=chain, start_background=False)
    with TestClient(app) as c:
        c.app.state.rates = FakeRates()
        yield c


def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True


def test_health_full_reports_current_round(client):
    body = client.get("/api/health/full").json()
    assert body["rpc_ok"] is True
    assert body["currentRoundId"] == 1
    assert body["pendingBets"] == 0


def test_duplicate_numbers_rejected_and_nothing_stored(client):
    r = client.post("/api/bets", json={"numbers": [1, 1, 2, 3, 4, 5]})
    assert r.status_code == 400
    assert r.json() == {"success": False, "error": "Numbers must be unique"}
    assert client.get("/api/bets/recent").json()["data"] == []


def test_out_of_range_numbers_rejected(client):
    r = client.post("/api/bets", json={"numbers": [0, 1, 2, 3, 4, 5]})
    assert r.status_code == 400
    assert "between" in r.json()["error"]


def test_missing_numbers_field(client):
    r = client.post("/api/bets", json={"nickname": "x"})
    assert r.status_code == 400
    assert r.json()["error"] == "Missing required fields: numbers"


def test_bet_without_transaction_is_pending(client):
    r = client.post("/api/bets", json={"numbers": [6, 5, 4, 3, 2, 1], "nickname": "lucky"})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["paymentStatus"] == "pending"
    assert data["roundId"] == 1
    assert data["amount"] == "0.1"

    bet = client.get(f"/api/bets/{data['betId']}").json()["data"]
    assert bet["numbers"] == [1, 2, 3, 4, 5, 6]
    assert bet["nickname"] == "lucky"

    r = client.get("/api/bets/does-not-exist")
    assert r.status_code == 404
    assert r.json()["error"] == "Bet not found"


def test_bet_with_valid_transaction_is_paid_once(client, chain):
    chain.add_transfer("sig-1", sender="Alice")
    r = client.post("/api/bets", json={"numbers": [1, 2, 3, 4, 5, 6], "transactionId": "sig-1"})
    assert r.status_code == 200
    assert r.json()["data"]["paymentStatus"] == "paid"

    found = client.get("/api/bets/check/sig-1").json()["data"]
    assert found["bet"]["fromAddress"] == "Alice"
    assert found["round"]["roundId"] == 1

    again = client.post("/api/bets", json={"numbers": [7, 8, 9, 10, 11, 12], "transactionId": "sig-1"})
    assert again.status_code == 400
    assert "already been used" in again.json()["error"]


def test_bet_with_unknown_transaction_keeps_validation_error(client):
    r = client.post("/api/bets", json={"numbers": [1, 2, 3, 4, 5, 6], "transactionId": "nope"})
    data = r.json()["data"]
    assert data["paymentStatus"] == "pending"
    assert data["validationError"] == "Transaction not found on blockchain"


def test_multiple_bets(client):
    r = client.post("/api/bets/multiple", json={"bets": [{"numbers": [1, 2, 3, 4, 5, 6]}, {"numbers": [2, 3, 4, 5, 6, 7]}]})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["count"] == 2
    assert data["totalAmount"] == "0.2"
    assert client.get("/api/bets/round/1").json()["count"] == 2

    too_many = {"bets": [{"numbers": [1, 2, 3, 4, 5, 6]}] * 101}
    r = client.post("/api/bets/multiple", json=too_many)
    assert r.status_code == 400
    assert r.json()["error"] == "Maximum 100 bets per request"


def test_current_round_pool_figures(client, chain):
    chain.add_transfer("sig-1")
    client.post("/api/bets", json={"numbers": [1, 2, 3, 4, 5, 6], "transactionId": "sig-1"})

    data = client.get("/api/bets/current-round").json()["data"]
    assert data["roundId"] == 1
    assert data["status"] == "open"
    assert data["totalBets"] == 1
    assert Decimal(data["newBetsPool"]) == Decimal("0.1")
    assert Decimal(data["houseFee"]) == Decimal("0.005")
    assert Decimal(data["prizePool"]) == Decimal("0.08")
    assert data["isAcceptingBets"] is True
    assert data["exchangeRate"] == "100"
    assert data["totalPoolUsd"] == "10.00"


def test_admin_routes_require_the_token(client):
    assert client.get("/api/bets/admin/pending").status_code == 401
    r = client.get("/api/bets/admin/pending", headers={"Authorization": "Bearer wrong"})
    assert r.status_code == 401
    assert r.json()["success"] is False

    r = client.get("/api/bets/admin/pending", headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["total"] == 0
    assert client.get("/api/bets/admin/payment-monitor-status", headers=ADMIN).status_code == 200
    assert client.get("/api/bets/admin/unpaid-winners", headers=ADMIN).json()["data"] == []


def test_admin_check_bet_payment(client, chain):
    bet_id = client.post("/api/bets", json={"numbers": [1, 2, 3, 4, 5, 6]}).json()["data"]["betId"]
    chain.add_transfer("sig-1")
    body = client.post(f"/api/bets/admin/check-bet-payment/{bet_id}", headers=ADMIN).json()
    assert body["success"] is True
    assert body["data"]["paymentStatus"] == "paid"

    assert client.post("/api/bets/admin/check-bet-payment/missing", headers=ADMIN).status_code == 404


def test_manual_result_finalizes_round_and_lists_winners(client, chain):
    chain.add_transfer("sig-1", sender="Alice")
    client.post("/api/bets", json={"numbers": WINNING, "transactionId": "sig-1"})
    draw_date = client.get("/api/bets/current-round").json()["data"]["drawDate"]

    r = client.post("/api/powerball/manual", json={"drawDate": draw_date, "numbers": WINNING}, headers=ADMIN)
    assert r.status_code == 200
    outcome = r.json()["data"]["round"]
    assert outcome["roundId"] == 1 and outcome["maxMatches"] == 6

    winners = client.get("/api/bets/winners/1").json()["data"]
    assert winners["round"]["isFinalized"] is True
    assert [w["fromAddress"] for w in winners["winners"]] == ["Alice"]
    assert winners["winners"][0]["isPaid"] is True
    assert chain.sent[0][0] == "Alice"

    assert client.get("/api/bets/current-round").json()["data"]["roundId"] == 2
    latest = client.get("/api/powerball/latest").json()["data"]
    assert latest[0]["processed"] is True


def test_manual_result_requires_admin(client):
    r = client.post("/api/powerball/manual", json={"drawDate": "2026-10-17", "numbers": WINNING})
    assert r.status_code == 401


def test_winners_of_open_or_unknown_round(client):
    r = client.get("/api/bets/winners/1")
    assert r.status_code == 400
    assert r.json()["error"] == "Round not finalized yet"
    r = client.get("/api/bets/winners/99")
    assert r.status_code == 404


def test_session_endpoints(client, chain):
    opened = client.post("/api/bets/init-session", json={"numbers": [1, 2, 3, 4, 5, 6]}).json()["data"]
    assert opened["receivingWallet"]
    sid = opened["sessionId"]

    assert client.get(f"/api/bets/check-payment/{sid}").json()["data"]["found"] is False
    r = client.post("/api/bets/complete-session", json={"sessionId": sid})
    assert r.status_code == 400

    assert client.get("/api/bets/check-payment/unknown").status_code == 400


def test_next_draw(client):
    data = client.get("/api/powerball/next-draw").json()["data"]
    assert data["nextDrawDate"].endswith("Z")
    assert data["drawSchedule"] == "Mon, Wed, Sat at 22:59 America/New_York"
    assert data["daysUntilDraw"] >= 0
