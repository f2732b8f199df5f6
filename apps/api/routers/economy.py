"""Wallet, daily reward, coupon and transaction history router."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import get_current_user
from routers.rate_limit import rate_limit
from services.economy import claim_daily_reward_service, redeem_coupon_service
from services.ledger import get_or_create_wallet, list_transactions_service, wallet_summary

router = APIRouter()


class RedeemCouponRequest(BaseModel):
    code: Optional[str] = None


@router.get("/wallet")
async def get_wallet(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    wallet = await get_or_create_wallet(user.id, db)
    return wallet_summary(wallet)


@router.post("/daily/claim")
async def claim_daily_reward(
    _rate_limit: None = Depends(rate_limit("daily_claim", limit=30, window_seconds=3600)),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await claim_daily_reward_service(user.id, db)


@router.post("/coupon/redeem")
async def redeem_coupon(
    request: RedeemCouponRequest,
    _rate_limit: None = Depends(rate_limit("coupon_redeem", limit=30, window_seconds=3600)),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await redeem_coupon_service(user.id, request.code, db)


@router.get("/transactions")
async def list_transactions(
    page: Optional[int] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await list_transactions_service(user.id, db, page=page, limit=limit)
