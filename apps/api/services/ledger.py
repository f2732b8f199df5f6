"""Wallet balances and the append-only transaction ledger."""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.transaction import LedgerTransaction, TransactionType
from models.wallet import Wallet
from services.clock import isoformat, utcnow
from services.errors import InsufficientFunds, InternalPersistenceFailure

logger = logging.getLogger(__name__)


async def get_wallet(user_id: int, db: AsyncSession) -> Optional[Wallet]:
    result = await db.execute(
        select(Wallet).where(Wallet.user_id == user_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_or_create_wallet(user_id: int, db: AsyncSession) -> Wallet:
    """Return the user's wallet, creating an empty one on first access."""
    wallet = await get_wallet(user_id, db)
    if wallet:
        return wallet

    db.add(Wallet(user_id=user_id, balance=0, credits=0, total_earned=0, updated_at=utcnow()))
    try:
        await db.commit()
    except IntegrityError:
        # Another request created it first.
        await db.rollback()

    wallet = await get_wallet(user_id, db)
    if wallet is None:
        raise InternalPersistenceFailure("Wallet not found")
    return wallet


async def get_balance(user_id: int, db: AsyncSession) -> int:
    result = await db.execute(select(Wallet.balance).where(Wallet.user_id == user_id))
    return int(result.scalar() or 0)


async def apply_balance_delta(
    user_id: int,
    db: AsyncSession,
    *,
    delta: int,
    earned: bool = False,
) -> int:
    """Move the balance by a signed delta in one conditional UPDATE and return the new balance.

    Debits only match while the balance covers them, so concurrent debits cannot
    overdraw or overwrite each other. Does not commit.
    """
    amount = int(delta)
    values: Dict[str, Any] = {"balance": Wallet.balance + amount, "updated_at": utcnow()}
    if earned and amount > 0:
        values["total_earned"] = Wallet.total_earned + amount

    stmt = update(Wallet).where(Wallet.user_id == user_id)
    if amount < 0:
        stmt = stmt.where(Wallet.balance >= -amount)
    result = await db.execute(stmt.values(**values).execution_options(synchronize_session=False))

    if result.rowcount != 1:
        current = await get_balance(user_id, db)
        if amount < 0:
            raise InsufficientFunds(required=-amount, current=current)
        raise InternalPersistenceFailure("Failed to update wallet")
    return await get_balance(user_id, db)


async def append_transaction(
    user_id: int,
    db: AsyncSession,
    *,
    amount: int,
    tx_type: TransactionType,
    reference_id: Optional[int] = None,
) -> LedgerTransaction:
    entry = LedgerTransaction(
        user_id=user_id,
        amount=int(amount),
        type=tx_type.value,
        reference_id=reference_id,
        created_at=utcnow(),
    )
    db.add(entry)
    await db.flush()
    return entry


async def refund(user_id: int, db: AsyncSession, *, amount: int, reference_id: Optional[int]) -> int:
    """Credit back a reserved debit and record it. Commits."""
    new_balance = await apply_balance_delta(user_id, db, delta=abs(int(amount)))
    await append_transaction(
        user_id,
        db,
        amount=abs(int(amount)),
        tx_type=TransactionType.REFUND,
        reference_id=reference_id,
    )
    await db.commit()
    logger.warning(
        "Refunded %s to user %s (reference %s)",
        amount,
        user_id,
        reference_id,
        extra={"user_id": user_id, "amount": amount},
    )
    return new_balance


def wallet_summary(wallet: Wallet) -> Dict[str, int]:
    return {
        "coins": int(wallet.balance or 0),
        "credits": int(wallet.credits or 0),
        "total_earned": int(wallet.total_earned or 0),
    }


def clamp_pagination(page: Optional[int], limit: Optional[int]) -> Tuple[int, int]:
    """Floor page at 1 and clamp limit to [1, TRANSACTIONS_MAX_LIMIT]."""
    resolved_page = max(1, int(page if page is not None else 1))
    resolved_limit = int(limit if limit is not None else settings.TRANSACTIONS_DEFAULT_LIMIT)
    resolved_limit = min(max(int(settings.TRANSACTIONS_MAX_LIMIT), 1), max(1, resolved_limit))
    return resolved_page, resolved_limit


async def list_transactions_service(
    user_id: int,
    db: AsyncSession,
    *,
    page: Optional[int] = None,
    limit: Optional[int] = None,
) -> Dict[str, Any]:
    page, limit = clamp_pagination(page, limit)
    offset = (page - 1) * limit

    count_result = await db.execute(
        select(func.count(LedgerTransaction.id)).where(LedgerTransaction.user_id == user_id)
    )
    total = int(count_result.scalar() or 0)

    result = await db.execute(
        select(LedgerTransaction)
        .where(LedgerTransaction.user_id == user_id)
        .order_by(LedgerTransaction.created_at.desc(), LedgerTransaction.id.desc())
        .offset(offset)
        .limit(limit)
    )
    entries = result.scalars().all()
    total_pages = math.ceil(total / limit)

    return {
        "transactions": [
            {
                "id": entry.id,
                "amount": entry.amount,
                "type": entry.type,
                "reference_id": entry.reference_id,
                "created_at": isoformat(entry.created_at),
            }
            for entry in entries
        ],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": total_pages,
            "hasNext": page < total_pages,
            "hasPrev": page > 1,
        },
    }
