"""
backend/tests/test_routers.py

Purpose:
    HTTP contract for the bets, accounts, matches and betting routers,
    including token auth and the engine error mapping in app.main.
"""

from __future__ import annotations

from datetime import timedelta

import jwt
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from app.config import settings
from app.main import app
from app.services import odds_ingestion_service
from app.services.auth_service import ALGORITHM, get_admin_user, get_current_user
from app.utils import utcnow


@pytest.fixture
def client(fake_db):
    yield TestClient(app)
    app.dependency_overrides.clear()


def _as_user(account: dict) -> None:
    async def _fake_user():
        return account
    app.dependency_overrides[get_current_user] = _fake_user


def _as_admin(admin_id: str = "admin-7") -> None:
    async def _fake_admin():
        return {"_id": admin_id, "role": "admin"}
    app.dependency_overrides[get_admin_user] = _fake_admin


def _token(sub: str, token_type: str = "access", secret: str | None = None) -> str:
    payload = {"sub": sub, "type": token_type, "exp": utcnow() + timedelta(minutes=5)}
    return jwt.encode(payload, secret or settings.JWT_SECRET, algorithm=ALGORITHM)


# ---------- Auth ----------

def test_bearer_token_resolves_account(client, make_account) -> None:
    account = make_account(balance="75.00")

    response = client.get(
        "/api/accounts/me/balance",
        headers={"Authorization": f"Bearer {_token(str(account['_id']))}"},
    )

    assert response.status_code == 200
    assert response.json()["balance"] == "75.00"


def test_cookie_token_and_rotated_secret(client, make_account, monkeypatch) -> None:
    account = make_account()
    monkeypatch.setattr(settings, "JWT_SECRET_OLD", "previous-secret")
    client.cookies.set("access_token", _token(str(account["_id"]), secret="previous-secret"))

    response = client.get("/api/accounts/me/balance")

    assert response.status_code == 200


@pytest.mark.parametrize(
    "headers, detail",
    [
        ({}, "Not authenticated"),
        ({"Authorization": "Bearer not-a-jwt"}, "Invalid token"),
        ({"Authorization": f"Bearer {_token(str(ObjectId()), token_type='refresh')}"}, "Invalid token type"),
        ({"Authorization": f"Bearer {_token('not-an-object-id')}"}, "Invalid token"),
        ({"Authorization": f"Bearer {_token(str(ObjectId()))}"}, "Account not found"),
    ],
)
def test_auth_failures_are_401(client, headers, detail) -> None:
    response = client.get("/api/accounts/me/balance", headers=headers)
    assert response.status_code == 401
    assert response.json()["detail"] == detail


def test_admin_routes_reject_regular_accounts(client, make_account) -> None:
    account = make_account(role="user")

    response = client.get(
        f"/api/accounts/{account['_id']}/verify-ledger",
        headers={"Authorization": f"Bearer {_token(str(account['_id']))}"},
    )

    assert response.status_code == 403


# ---------- Bets ----------

def test_place_bet_returns_201_with_balances(client, fake_db, make_account, make_match) -> None:
    account = make_account(balance="500.00")
    match = make_match()
    _as_user(account)

    response = client.post(
        "/api/bets/place",
        json={"amount": "25", "matchId": str(match["_id"]), "selection": "Miami Heat", "odds": "1.95"},
        headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1", "User-Agent": "router-test"},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["balance"] == "475.00"
    assert body["pending_balance"] == "25.00"
    stored = fake_db.bets.docs[0]
    assert stored["ip_address"] == "203.0.113.9"
    assert stored["user_agent"] == "router-test"


def test_rejected_placements_are_400_with_a_reason(client, make_account, make_match) -> None:
    account = make_account(balance="10.00")
    match = make_match()
    _as_user(account)

    broke = client.post(
        "/api/bets/place",
        json={"amount": "50", "matchId": str(match["_id"]), "selection": "Miami Heat"},
    )
    missing = client.post(
        "/api/bets/place",
        json={"amount": "5", "matchId": str(ObjectId()), "selection": "Miami Heat"},
    )

    assert broke.status_code == 400
    assert "Insufficient" in broke.json()["detail"]
    assert missing.status_code == 400
    assert missing.json()["detail"].startswith("Match not found")


def test_suspended_account_placement_is_400(client, make_account, make_match) -> None:
    account = make_account(status="suspended")
    match = make_match()
    _as_user(account)

    response = client.post(
        "/api/bets/place",
        json={"amount": "5", "matchId": str(match["_id"]), "selection": "Miami Heat"},
    )

    assert response.status_code == 400
    assert "suspended" in response.json()["detail"]


def test_request_validation_is_422(client, make_account) -> None:
    _as_user(make_account())

    response = client.post("/api/bets/place", json={"selection": "Miami Heat"})

    assert response.status_code == 422
    assert response.json()["detail"] == "Validation error."


def test_admin_settle_and_my_bets(client, fake_db, make_account, make_match, finish) -> None:
    account = make_account(balance="100.00")
    match = make_match(home_price=2.0)
    _as_user(account)
    _as_admin()
    client.post("/api/bets/place", json={"amount": "10", "matchId": str(match["_id"]), "selection": "Boston Celtics"})
    finish(fake_db, match["_id"], 110, 100)

    settled = client.post("/api/bets/settle", json={"matchId": str(match["_id"])})
    assert settled.status_code == 200
    assert settled.json()["won"] == 1

    mine = client.get("/api/bets/my-bets", params={"status": "won"})
    assert mine.status_code == 200
    assert len(mine.json()) == 1
    assert fake_db.bets.docs[0]["settled_by"] == "admin"


# ---------- Accounts ----------

def test_admin_adjust_balance_and_history(client, fake_db, make_account) -> None:
    account = make_account(balance="100.00")
    _as_admin("admin-42")

    adjusted = client.post(f"/api/accounts/{account['_id']}/adjust-balance", json={"new_balance": "150.00"})
    history = client.get(f"/api/accounts/{account['_id']}/transactions")
    check = client.get(f"/api/accounts/{account['_id']}/verify-ledger")

    assert adjusted.status_code == 200
    assert adjusted.json()["balance"] == "150.00"
    assert [e["type"] for e in history.json()] == ["adjustment"]
    assert fake_db.transactions.docs[0]["actor_id"] == "admin-42"
    assert check.json()["ok"] is True


def test_my_transactions_lists_own_entries(client, make_account) -> None:
    account = make_account()
    _as_user(account)

    response = client.get("/api/accounts/me/transactions", params={"limit": 10})

    assert response.status_code == 200
    assert response.json() == []


# ---------- Matches ----------

def test_list_matches_active_means_live(client, make_match) -> None:
    make_match(status="live")
    make_match(home="Denver Nuggets", away="Utah Jazz")

    live = client.get("/api/matches", params={"status": "active"})
    all_matches = client.get("/api/matches")

    assert [m["home_team"] for m in live.json()] == ["Boston Celtics"]
    assert len(all_matches.json()) == 2
    assert live.json()[0]["bookmaker"] == "FanDuel"


def test_get_match_404s(client, make_match) -> None:
    match = make_match()

    assert client.get(f"/api/matches/{match['_id']}").status_code == 200
    assert client.get(f"/api/matches/{ObjectId()}").status_code == 404
    assert client.get("/api/matches/not-an-id").status_code == 404


def test_public_odds_refresh_is_gated(client, monkeypatch) -> None:
    calls = []

    async def _refresh(force=False, source="cron"):
        calls.append((force, source))
        return {"created": 0, "updated": 3, "settled": 0, "api_calls": 2, "cache": "miss", "fetched_at": None, "errors": []}

    monkeypatch.setattr(odds_ingestion_service, "refresh", _refresh)
    monkeypatch.setattr(settings, "PUBLIC_ODDS_REFRESH_ENABLED", False)
    assert client.post("/api/matches/fetch-odds").status_code == 403
    assert calls == []

    monkeypatch.setattr(settings, "PUBLIC_ODDS_REFRESH_ENABLED", True)
    response = client.post("/api/matches/fetch-odds")
    assert response.status_code == 200
    assert response.json()["updated"] == 3
    assert calls == [(True, "manual")]


# ---------- Betting rules ----------

def test_betting_rules_lists_active_modes(client, fake_db) -> None:
    fake_db.bet_mode_rules.docs.append({"mode": "reverse", "is_active": False})

    response = client.get("/api/betting/rules")

    modes = {r["mode"]: r for r in response.json()}
    assert "reverse" not in modes
    assert modes["parlay"]["max_legs"] == 12
    assert modes["teaser"]["teaser_point_options"]


def test_health_reports_executor_mode(client) -> None:
    body = client.get("/health").json()
    assert body["db"] == "connected"
    assert body["executor"] == "sequential"
