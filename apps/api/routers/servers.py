"""Server provisioning and lifecycle router."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import get_current_user
from routers.rate_limit import rate_limit
from services.panel_gateway import PanelGateway, get_panel_gateway
from services.servers import (
    delete_server_service,
    deploy_server_service,
    get_server_detail_service,
    list_servers_service,
    renew_server_service,
    send_power_action_service,
)

router = APIRouter()


class DeployServerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_id: Optional[int] = Field(default=None, alias="planId")
    name: Optional[str] = None
    software_id: Optional[int] = Field(default=None, alias="softwareId")
    location_id: Optional[int] = Field(default=None, alias="locationId")


class PowerActionRequest(BaseModel):
    action: Optional[str] = None


class DeleteServerRequest(BaseModel):
    reason: Optional[str] = None


@router.get("")
async def list_servers(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await list_servers_service(user.id, db)


@router.post("/deploy", status_code=201)
async def deploy_server(
    request: DeployServerRequest,
    _rate_limit: None = Depends(rate_limit("server_deploy", limit=10, window_seconds=3600)),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: PanelGateway = Depends(get_panel_gateway),
):
    result = await deploy_server_service(
        user,
        plan_id=request.plan_id,
        name=request.name,
        software_id=request.software_id,
        location_id=request.location_id,
        db=db,
        gateway=gateway,
    )
    return JSONResponse(status_code=201, content=result)


@router.get("/{server_id}")
async def get_server(
    server_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: PanelGateway = Depends(get_panel_gateway),
):
    return await get_server_detail_service(user.id, server_id, db, gateway)


@router.post("/{server_id}/power")
async def power_server(
    server_id: int,
    request: PowerActionRequest,
    _rate_limit: None = Depends(rate_limit("server_power", limit=120, window_seconds=3600)),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: PanelGateway = Depends(get_panel_gateway),
):
    return await send_power_action_service(user.id, server_id, request.action, db, gateway)


@router.post("/{server_id}/renew")
async def renew_server(
    server_id: int,
    _rate_limit: None = Depends(rate_limit("server_renew", limit=30, window_seconds=3600)),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await renew_server_service(user.id, server_id, db)


@router.delete("/{server_id}")
async def delete_server(
    server_id: int,
    request: Optional[DeleteServerRequest] = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: PanelGateway = Depends(get_panel_gateway),
):
    reason = request.reason if request else None
    return await delete_server_service(user.id, server_id, reason, db, gateway)
