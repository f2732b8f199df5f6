"""Public plan and software catalog router."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services.catalog import list_plans_service, list_softwares_service

router = APIRouter()


@router.get("/plans")
async def list_plans(db: AsyncSession = Depends(get_db)):
    return await list_plans_service(db)


@router.get("/softwares")
async def list_softwares(db: AsyncSession = Depends(get_db)):
    return await list_softwares_service(db)
