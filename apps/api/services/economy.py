"""Daily reward and coupon redemption.

Both operations touch only the local store, so each runs as one database
transaction: the guard row (claim or redemption), the wallet credit and the
ledger entry commit together or not at all. Unique keys on the guard rows
close the check-then-insert race between concurrent requests.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.coupon import Coupon, CouponRedemption
from models.daily_claim import DailyClaim
from models.transaction import TransactionType
from services.catalog import get_active_coupon, get_daily_reward_policy
from services.clock import ensure_utc, utcnow
from services.errors import Conflict, CooldownActive, Gone, InvalidInput, NotFound
from services.ledger import append_transaction, apply_balance_delta, get_or_create_wallet

logger = logging.getLogger(__name__)


async def _latest_claim(user_id: int, db: AsyncSession) -> Optional[DailyClaim]:
    result = await db.execute(
        select(DailyClaim)
        .where(DailyClaim.user_id == user_id)
        .order_by(DailyClaim.claim_number.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


def _cooldown_error(last_claimed_at: datetime, cooldown_hours: float, now: datetime) -> CooldownActive:
    next_claim_at = ensure_utc(last_claimed_at) + timedelta(hours=cooldown_hours)
    hours_remaining = math.ceil((next_claim_at - now).total_seconds() / 3600)
    return CooldownActive(
        "Daily reward already claimed",
        next_claim_at=next_claim_at.isoformat(),
        hours_remaining=max(hours_remaining, 1),
    )


async def claim_daily_reward_service(
    user_id: int,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or utcnow()
    policy = await get_daily_reward_policy(db)
    amount = int(policy["amount"])
    cooldown_hours = float(policy["cooldown_hours"])

    last = await _latest_claim(user_id, db)
    if last is not None and now < ensure_utc(last.claimed_at) + timedelta(hours=cooldown_hours):
        raise _cooldown_error(last.claimed_at, cooldown_hours, now)

    await get_or_create_wallet(user_id, db)

    db.add(
        DailyClaim(
            user_id=user_id,
            claim_number=(last.claim_number + 1) if last is not None else 1,
            amount=amount,
            claimed_at=now,
        )
    )
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        winner = await _latest_claim(user_id, db)
        logger.info("Concurrent daily claim rejected for user %s", user_id, extra={"user_id": user_id})
        raise _cooldown_error(winner.claimed_at if winner else now, cooldown_hours, now)

    new_balance = await apply_balance_delta(user_id, db, delta=amount, earned=True)
    await append_transaction(user_id, db, amount=amount, tx_type=TransactionType.DAILY_CLAIM)
    await db.commit()

    logger.info("Daily reward %s granted to user %s", amount, user_id, extra={"user_id": user_id, "amount": amount})
    return {
        "success": True,
        "amount": amount,
        "new_balance": new_balance,
        "next_claim_at": (now + timedelta(hours=cooldown_hours)).isoformat(),
    }


def normalize_coupon_code(raw: Optional[str]) -> str:
    return str(raw or "").strip().upper()


async def _find_redemption(user_id: int, coupon_id: int, db: AsyncSession) -> Optional[CouponRedemption]:
    result = await db.execute(
        select(CouponRedemption).where(
            CouponRedemption.user_id == user_id,
            CouponRedemption.coupon_id == coupon_id,
        )
    )
    return result.scalar_one_or_none()


async def redeem_coupon_service(
    user_id: int,
    raw_code: Optional[str],
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or utcnow()
    code = normalize_coupon_code(raw_code)
    if not code:
        raise InvalidInput("Coupon code is required")

    coupon = await get_active_coupon(code, db)
    if coupon is None:
        raise NotFound("Invalid or expired coupon code")
    if coupon.expires_at is not None and ensure_utc(coupon.expires_at) < now:
        raise Gone("This coupon has expired")
    if coupon.max_uses and (coupon.used_count or 0) >= coupon.max_uses:
        raise Gone("This coupon has reached its maximum uses")
    if await _find_redemption(user_id, coupon.id, db) is not None:
        raise Conflict("You have already used this coupon")

    coupon_id = coupon.id
    coupon_code = coupon.code
    amount = int(coupon.amount)

    await get_or_create_wallet(user_id, db)

    redemption = CouponRedemption(user_id=user_id, coupon_id=coupon_id, redeemed_at=now)
    db.add(redemption)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise Conflict("You have already used this coupon")

    claimed = await db.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            or_(Coupon.max_uses.is_(None), Coupon.max_uses == 0, Coupon.used_count < Coupon.max_uses),
        )
        .values(used_count=Coupon.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        await db.rollback()
        raise Gone("This coupon has reached its maximum uses")

    new_balance = await apply_balance_delta(user_id, db, delta=amount, earned=True)
    entry = await append_transaction(
        user_id,
        db,
        amount=amount,
        tx_type=TransactionType.COUPON_REDEEM,
        reference_id=coupon_id,
    )
    redemption.transaction_id = entry.id
    await db.commit()

    logger.info(
        "Coupon %s redeemed by user %s", coupon_code, user_id,
        extra={"user_id": user_id, "coupon_id": coupon_id, "amount": amount},
    )
    return {
        "success": True,
        "code": coupon_code,
        "amount": amount,
        "new_balance": new_balance,
    }
