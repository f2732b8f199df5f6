"""Storefront router."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import get_current_user
from routers.rate_limit import rate_limit
from services.catalog import list_store_items_service
from services.panel_gateway import PanelGateway, get_panel_gateway
from services.store import purchase_item_service

router = APIRouter()


class PurchaseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    item_id: Optional[int] = Field(default=None, alias="itemId")
    server_id: Optional[int] = Field(default=None, alias="serverId")


@router.get("/items")
async def list_store_items(db: AsyncSession = Depends(get_db)):
    """Active store items, cheapest first. Public."""
    return await list_store_items_service(db)


@router.post("/purchase")
async def purchase_item(
    request: PurchaseRequest,
    _rate_limit: None = Depends(rate_limit("store_purchase", limit=30, window_seconds=3600)),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: PanelGateway = Depends(get_panel_gateway),
):
    return await purchase_item_service(user.id, request.item_id, request.server_id, db, gateway)
