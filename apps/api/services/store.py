"""Store purchases.

Boosts follow reserve -> apply -> finalize/compensate: the price is debited and
a pending purchase recorded before the panel is touched, and credited back if
the panel rejects the change. A boost can therefore never be applied without
being paid for, and a failed purchase leaves the balance where it started.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from models.catalog import StoreItem
from models.server import Server
from models.store_purchase import StorePurchase
from models.transaction import TransactionType
from services.catalog import get_active_store_item
from services.errors import (
    Conflict,
    InsufficientFunds,
    InvalidInput,
    NotFound,
    ServiceError,
    UpstreamFailure,
)
from services.ledger import append_transaction, apply_balance_delta, get_or_create_wallet, refund
from services.panel_gateway import PanelGateway, ServerLimits
from services.server_state import get_owned_server, is_provisioned

logger = logging.getLogger(__name__)

# item type -> (panel limit field, config key holding the delta)
BOOST_FIELDS = {
    "ram_boost": ("memory", "ram_add"),
    "cpu_boost": ("cpu", "cpu_add"),
    "disk_boost": ("disk", "disk_add"),
}

PENDING = "pending"
COMPLETED = "completed"
REFUNDED = "refunded"


def is_server_bound(item: StoreItem) -> bool:
    return item.type in BOOST_FIELDS


def boost_limits(item: StoreItem, current: ServerLimits) -> Dict[str, int]:
    """New absolute limit for the boosted field: current value plus the configured delta."""
    field, config_key = BOOST_FIELDS[item.type]
    delta = int((item.config or {}).get(config_key) or 0)
    if delta <= 0:
        return {}
    return {field: int(getattr(current, field)) + delta}


async def _prepare_boost(
    user_id: int,
    item: StoreItem,
    server_id: Optional[int],
    db: AsyncSession,
    gateway: PanelGateway,
) -> Tuple[Server, Dict[str, int], int]:
    if not server_id:
        raise InvalidInput("serverId is required for this item type")

    server = await get_owned_server(user_id, server_id, db)
    if server is None:
        raise NotFound("Server not found or does not belong to you")
    if not is_provisioned(server):
        raise Conflict("Server is still being provisioned")

    details = await gateway.get_server_details(server.remote_identifier)
    if not details.ok:
        raise UpstreamFailure("Failed to fetch server details from panel")

    allocation = details.data.default_allocation
    if allocation is None:
        raise UpstreamFailure("Could not determine server allocation")

    limits = boost_limits(item, details.data.limits)
    if not limits:
        raise ServiceError("Store item has no boost configured")
    return server, limits, allocation.id


async def purchase_item_service(
    user_id: int,
    item_id: Optional[int],
    server_id: Optional[int],
    db: AsyncSession,
    gateway: PanelGateway,
) -> Dict[str, Any]:
    if not item_id:
        raise InvalidInput("itemId is required")

    item = await get_active_store_item(item_id, db)
    if item is None:
        raise NotFound("Store item not found or inactive")

    wallet = await get_or_create_wallet(user_id, db)
    if wallet.balance < item.price:
        raise InsufficientFunds(required=item.price, current=wallet.balance)

    boost: Optional[Tuple[Server, Dict[str, int], int]] = None
    if is_server_bound(item):
        boost = await _prepare_boost(user_id, item, server_id, db, gateway)

    item_summary = {"id": item.id, "name": item.name, "type": item.type}
    price = int(item.price)
    bound_server_id = boost[0].id if boost else None
    remote_server_id = boost[0].remote_id if boost else None

    # Reserve: debit, pending purchase and ledger entry commit together.
    new_balance = await apply_balance_delta(user_id, db, delta=-price)
    purchase = StorePurchase(
        user_id=user_id,
        item_id=item.id,
        server_id=bound_server_id,
        price=price,
        status=PENDING if boost else COMPLETED,
    )
    db.add(purchase)
    await append_transaction(
        user_id,
        db,
        amount=-price,
        tx_type=TransactionType.STORE_PURCHASE,
        reference_id=item.id,
    )
    await db.commit()
    purchase_id = purchase.id

    if boost:
        _, limits, allocation_id = boost
        applied = await gateway.update_server_build(remote_server_id, limits, allocation_id)
        if not applied.ok:
            logger.warning(
                "Boost %s failed on server %s (%s); refunding", item_summary["id"], bound_server_id, applied.reason,
                extra={"user_id": user_id, "server_id": bound_server_id, "reason": applied.reason},
            )
            await _compensate(user_id, purchase_id, price, item_summary["id"], db)
            raise UpstreamFailure("Failed to apply boost to server")

        try:
            purchase.status = COMPLETED
            await db.commit()
        except SQLAlchemyError:
            # Paid and applied; only the audit status is stale.
            await db.rollback()
            logger.exception("Could not mark purchase %s completed", purchase_id, extra={"user_id": user_id})

    logger.info(
        "User %s bought store item %s for %s", user_id, item_summary["id"], price,
        extra={"user_id": user_id, "item_id": item_summary["id"], "amount": price},
    )
    return {
        "success": True,
        "item": item_summary,
        "new_balance": new_balance,
    }


async def _compensate(user_id: int, purchase_id: int, price: int, item_id: int, db: AsyncSession) -> None:
    try:
        purchase = await db.get(StorePurchase, purchase_id, populate_existing=True)
        if purchase is not None:
            purchase.status = REFUNDED
        await refund(user_id, db, amount=price, reference_id=item_id)
    except SQLAlchemyError:
        await db.rollback()
        logger.exception(
            "Refund failed for purchase %s; user %s is owed %s", purchase_id, user_id, price,
            extra={"user_id": user_id, "amount": price},
        )
        raise
