from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.future import select

from conftest import auth_header
from models.app_config import AppConfig
from models.coupon import Coupon, CouponRedemption
from models.daily_claim import DailyClaim
from models.transaction import LedgerTransaction
from models.user import User
from models.wallet import Wallet
from services import economy
from services.economy import claim_daily_reward_service
from services.errors import CooldownActive
from services.ledger import clamp_pagination


async def _balance(session_maker, user_id):
    async with session_maker() as session:
        wallet = await session.get(Wallet, user_id)
        return wallet.balance


async def _transactions(session_maker, user_id):
    async with session_maker() as session:
        result = await session.execute(
            select(LedgerTransaction).where(LedgerTransaction.user_id == user_id).order_by(LedgerTransaction.id)
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_new_user_wallet_is_created_empty(api_client, session_maker):
    response = await api_client.get("/wallet", headers=auth_header("wallet-newcomer"))

    assert response.status_code == 200
    assert response.json() == {"coins": 0, "credits": 0, "total_earned": 0}
    async with session_maker() as session:
        user = (await session.execute(select(User).where(User.auth_uuid == "wallet-newcomer"))).scalar_one()
        wallet = await session.get(Wallet, user.id)
    assert wallet is not None
    assert wallet.balance == 0


@pytest.mark.asyncio
async def test_daily_claim_grants_once_then_cools_down(api_client, session_maker, seed_user):
    user_id = await seed_user("daily-user", balance=5)
    headers = auth_header("daily-user")

    first = await api_client.post("/daily/claim", headers=headers)
    assert first.status_code == 200
    body = first.json()
    assert body["success"] is True
    assert body["amount"] == 10
    assert body["new_balance"] == 15

    second = await api_client.post("/daily/claim", headers=headers)
    assert second.status_code == 429
    cooldown = second.json()
    assert cooldown["error"] == "Daily reward already claimed"
    assert cooldown["hours_remaining"] == 24
    assert cooldown["next_claim_at"]

    assert await _balance(session_maker, user_id) == 15
    entries = await _transactions(session_maker, user_id)
    assert [(entry.type, entry.amount) for entry in entries] == [("daily_claim", 10)]
    async with session_maker() as session:
        wallet = await session.get(Wallet, user_id)
    assert wallet.total_earned == 10


@pytest.mark.asyncio
async def test_daily_claim_uses_configured_policy(api_client, session_maker, seed, seed_user):
    user_id = await seed_user("policy-user")
    earlier = datetime.now(timezone.utc) - timedelta(hours=13)
    await seed(
        AppConfig(key="daily_reward", value={"amount": 25, "cooldown_hours": 12}),
        DailyClaim(user_id=user_id, claim_number=1, amount=25, claimed_at=earlier),
    )

    response = await api_client.post("/daily/claim", headers=auth_header("policy-user"))

    assert response.status_code == 200
    assert response.json()["amount"] == 25
    async with session_maker() as session:
        claims = (
            await session.execute(
                select(DailyClaim).where(DailyClaim.user_id == user_id).order_by(DailyClaim.claim_number)
            )
        ).scalars().all()
    assert [claim.claim_number for claim in claims] == [1, 2]


@pytest.mark.asyncio
async def test_concurrent_daily_claim_collides_on_claim_number(session_maker, seed, seed_user, monkeypatch):
    user_id = await seed_user("claim-racer", balance=5)
    claimed_at = datetime(2026, 10, 1, 8, 0, tzinfo=timezone.utc)
    await seed(DailyClaim(user_id=user_id, claim_number=1, amount=10, claimed_at=claimed_at))

    latest_claim = economy._latest_claim
    lookups = []

    async def _stale_first_lookup(uid, db):
        lookups.append(uid)
        if len(lookups) == 1:
            return None
        return await latest_claim(uid, db)

    # The cooldown check ran before the competing claim was visible.
    monkeypatch.setattr(economy, "_latest_claim", _stale_first_lookup)

    async with session_maker() as session:
        with pytest.raises(CooldownActive) as excinfo:
            await claim_daily_reward_service(user_id, session, now=claimed_at + timedelta(hours=1))

    assert excinfo.value.status_code == 429
    assert excinfo.value.detail["hours_remaining"] == 23
    assert excinfo.value.detail["next_claim_at"] == (claimed_at + timedelta(hours=24)).isoformat()
    assert len(lookups) == 2
    assert await _balance(session_maker, user_id) == 5
    assert await _transactions(session_maker, user_id) == []


@pytest.mark.asyncio
async def test_daily_claim_hours_remaining_rounds_up(session_maker, seed_user):
    user_id = await seed_user("rounding-user")
    claimed_at = datetime(2026, 10, 1, 8, 0, tzinfo=timezone.utc)

    async with session_maker() as session:
        await claim_daily_reward_service(user_id, session, now=claimed_at)

    async with session_maker() as session:
        with pytest.raises(CooldownActive) as excinfo:
            await claim_daily_reward_service(user_id, session, now=claimed_at + timedelta(hours=20, minutes=30))
    assert excinfo.value.status_code == 429
    assert excinfo.value.detail["hours_remaining"] == 4
    assert excinfo.value.detail["next_claim_at"] == (claimed_at + timedelta(hours=24)).isoformat()

    async with session_maker() as session:
        result = await claim_daily_reward_service(user_id, session, now=claimed_at + timedelta(hours=24))
    assert result["new_balance"] == 20


@pytest.mark.asyncio
async def test_coupon_redeems_exactly_once(api_client, session_maker, seed, seed_user):
    user_id = await seed_user("coupon-user", balance=100)
    coupon = await seed(Coupon(code="WELCOME50", amount=50, active=True, used_count=0))
    headers = auth_header("coupon-user")

    first = await api_client.post("/coupon/redeem", json={"code": " welcome50 "}, headers=headers)
    assert first.status_code == 200
    assert first.json() == {"success": True, "code": "WELCOME50", "amount": 50, "new_balance": 150}

    second = await api_client.post("/coupon/redeem", json={"code": "WELCOME50"}, headers=headers)
    assert second.status_code == 409
    assert second.json() == {"error": "You have already used this coupon"}

    assert await _balance(session_maker, user_id) == 150
    entries = await _transactions(session_maker, user_id)
    assert [(entry.type, entry.amount, entry.reference_id) for entry in entries] == [
        ("coupon_redeem", 50, coupon.id)
    ]
    async with session_maker() as session:
        refreshed = await session.get(Coupon, coupon.id)
        redemption = (await session.execute(select(CouponRedemption))).scalar_one()
    assert refreshed.used_count == 1
    assert redemption.transaction_id == entries[0].id


@pytest.mark.asyncio
async def test_coupon_rejections(api_client, seed, seed_user):
    await seed_user("coupon-rejects", balance=0)
    past = datetime.now(timezone.utc) - timedelta(days=1)
    await seed(
        Coupon(code="OLD", amount=10, active=True, expires_at=past, used_count=0),
        Coupon(code="FULL", amount=10, active=True, max_uses=3, used_count=3),
        Coupon(code="OFF", amount=10, active=False, used_count=0),
    )
    headers = auth_header("coupon-rejects")

    empty = await api_client.post("/coupon/redeem", json={"code": "   "}, headers=headers)
    assert empty.status_code == 400
    assert empty.json()["error"] == "Coupon code is required"

    unknown = await api_client.post("/coupon/redeem", json={"code": "NOPE"}, headers=headers)
    assert unknown.status_code == 404

    inactive = await api_client.post("/coupon/redeem", json={"code": "off"}, headers=headers)
    assert inactive.status_code == 404

    expired = await api_client.post("/coupon/redeem", json={"code": "old"}, headers=headers)
    assert expired.status_code == 410
    assert expired.json()["error"] == "This coupon has expired"

    exhausted = await api_client.post("/coupon/redeem", json={"code": "full"}, headers=headers)
    assert exhausted.status_code == 410
    assert exhausted.json()["error"] == "This coupon has reached its maximum uses"


@pytest.mark.asyncio
async def test_coupon_unique_key_blocks_duplicate_when_lookup_misses(
    api_client, session_maker, seed, seed_user, monkeypatch
):
    user_id = await seed_user("coupon-racer", balance=0)
    await seed(Coupon(code="RACE", amount=30, active=True, used_count=0))

    async def _never_found(*_args, **_kwargs):
        return None

    # Simulates two requests that both passed the lookup before either inserted.
    monkeypatch.setattr(economy, "_find_redemption", _never_found)
    headers = auth_header("coupon-racer")

    first = await api_client.post("/coupon/redeem", json={"code": "RACE"}, headers=headers)
    second = await api_client.post("/coupon/redeem", json={"code": "RACE"}, headers=headers)

    assert first.status_code == 200
    assert second.status_code == 409
    assert await _balance(session_maker, user_id) == 30
    assert len(await _transactions(session_maker, user_id)) == 1


@pytest.mark.asyncio
async def test_coupon_max_uses_is_shared_across_users(api_client, seed, seed_user):
    await seed_user("first-come")
    await seed_user("second-come")
    await seed(Coupon(code="ONCE", amount=5, active=True, max_uses=1, used_count=0))

    winner = await api_client.post("/coupon/redeem", json={"code": "ONCE"}, headers=auth_header("first-come"))
    loser = await api_client.post("/coupon/redeem", json={"code": "ONCE"}, headers=auth_header("second-come"))

    assert winner.status_code == 200
    assert loser.status_code == 410


@pytest.mark.asyncio
async def test_transactions_pagination_is_clamped(api_client, seed, seed_user):
    user_id = await seed_user("ledger-user")
    start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    await seed(
        *[
            LedgerTransaction(
                user_id=user_id,
                amount=index + 1,
                type="daily_claim",
                created_at=start + timedelta(minutes=index),
            )
            for index in range(120)
        ]
    )
    headers = auth_header("ledger-user")

    oversized = await api_client.get("/transactions?limit=1000", headers=headers)
    assert oversized.status_code == 200
    payload = oversized.json()
    assert len(payload["transactions"]) == 100
    assert payload["transactions"][0]["amount"] == 120
    assert payload["pagination"] == {
        "page": 1,
        "limit": 100,
        "total": 120,
        "totalPages": 2,
        "hasNext": True,
        "hasPrev": False,
    }

    zero_page = await api_client.get("/transactions?page=0&limit=50", headers=headers)
    assert zero_page.json()["pagination"]["page"] == 1

    last_page = await api_client.get("/transactions?page=3&limit=50", headers=headers)
    last = last_page.json()
    assert len(last["transactions"]) == 20
    assert last["pagination"]["hasNext"] is False
    assert last["pagination"]["hasPrev"] is True


@pytest.mark.asyncio
async def test_transactions_for_new_user_are_empty(api_client):
    response = await api_client.get("/transactions", headers=auth_header("ledger-empty"))

    assert response.status_code == 200
    payload = response.json()
    assert payload["transactions"] == []
    assert payload["pagination"]["total"] == 0
    assert payload["pagination"]["limit"] == 20
    assert payload["pagination"]["hasNext"] is False


def test_clamp_pagination_bounds():
    assert clamp_pagination(None, None) == (1, 20)
    assert clamp_pagination(-4, 0) == (1, 1)
    assert clamp_pagination(2, 500) == (2, 100)
