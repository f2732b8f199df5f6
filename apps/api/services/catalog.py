"""Read-only catalog and policy lookups."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.app_config import AppConfig
from models.catalog import Plan, Software, StoreItem
from models.coupon import Coupon


async def get_active_plan(plan_id: int, db: AsyncSession) -> Optional[Plan]:
    result = await db.execute(select(Plan).where(Plan.id == plan_id, Plan.active.is_(True)))
    return result.scalar_one_or_none()


async def get_software(software_id: int, db: AsyncSession) -> Optional[Software]:
    result = await db.execute(select(Software).where(Software.id == software_id, Software.active.is_(True)))
    return result.scalar_one_or_none()


async def get_active_store_item(item_id: int, db: AsyncSession) -> Optional[StoreItem]:
    result = await db.execute(select(StoreItem).where(StoreItem.id == item_id, StoreItem.active.is_(True)))
    return result.scalar_one_or_none()


async def get_active_coupon(code: str, db: AsyncSession) -> Optional[Coupon]:
    result = await db.execute(select(Coupon).where(Coupon.code == code, Coupon.active.is_(True)))
    return result.scalar_one_or_none()


async def get_config_value(key: str, db: AsyncSession, default: Any = None) -> Any:
    result = await db.execute(select(AppConfig.value).where(AppConfig.key == key))
    value = result.scalar_one_or_none()
    return default if value is None else value


async def get_daily_reward_policy(db: AsyncSession) -> Dict[str, float]:
    """Daily reward amount and cooldown, falling back to settings for absent or falsy fields."""
    value = await get_config_value("daily_reward", db, default={})
    if not isinstance(value, dict):
        value = {}
    amount = int(value.get("amount") or settings.DAILY_REWARD_AMOUNT)
    cooldown_hours = float(value.get("cooldown_hours") or settings.DAILY_REWARD_COOLDOWN_HOURS)
    return {"amount": amount, "cooldown_hours": cooldown_hours}


def plan_payload(plan: Plan) -> Dict[str, Any]:
    return {
        "id": plan.id,
        "software_id": plan.software_id,
        "name": plan.name,
        "ram": plan.ram,
        "cpu": plan.cpu,
        "disk": plan.disk,
        "price": plan.price,
        "active": bool(plan.active),
    }


async def list_store_items_service(db: AsyncSession) -> Dict[str, List[Dict[str, Any]]]:
    result = await db.execute(
        select(StoreItem).where(StoreItem.active.is_(True)).order_by(StoreItem.price.asc(), StoreItem.id.asc())
    )
    return {
        "items": [
            {
                "id": item.id,
                "name": item.name,
                "type": item.type,
                "price": item.price,
                "config": item.config or {},
            }
            for item in result.scalars().all()
        ]
    }


async def list_plans_service(db: AsyncSession) -> Dict[str, List[Dict[str, Any]]]:
    result = await db.execute(
        select(Plan).where(Plan.active.is_(True)).order_by(Plan.price.asc(), Plan.id.asc())
    )
    return {"plans": [plan_payload(plan) for plan in result.scalars().all()]}


async def list_softwares_service(db: AsyncSession) -> Dict[str, List[Dict[str, Any]]]:
    result = await db.execute(
        select(Software).where(Software.active.is_(True)).order_by(Software.name.asc())
    )
    return {
        "softwares": [
            {"id": software.id, "name": software.name, "slug": software.slug}
            for software in result.scalars().all()
        ]
    }
