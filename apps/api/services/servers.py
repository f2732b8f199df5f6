"""Server provisioning, renewal, teardown and power control."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.catalog import Software
from models.server import Server
from models.transaction import TransactionType
from models.user import User
from services.catalog import get_active_plan, get_software, plan_payload
from services.clock import isoformat, utcnow
from services.errors import (
    Conflict,
    Forbidden,
    InsufficientFunds,
    InternalPersistenceFailure,
    InvalidInput,
    NotFound,
    UpstreamFailure,
)
from services.identity import panel_username
from services.ledger import append_transaction, apply_balance_delta, get_or_create_wallet, refund
from services.panel_gateway import CreatedServer, CreateServerRequest, PanelGateway, POWER_SIGNALS
from services.server_state import (
    INSTALLING,
    PROVISIONING,
    apply_power_status,
    extend_expiry,
    get_owned_server,
    initial_expiry,
    is_expired,
    is_provisioned,
    list_owned_servers,
    mark_deleted,
    mark_failed,
    server_summary,
    sync_remote_state,
)

logger = logging.getLogger(__name__)


async def list_servers_service(user_id: int, db: AsyncSession) -> Dict[str, Any]:
    servers = await list_owned_servers(user_id, db)
    return {"servers": [server_summary(server) for server in servers]}


async def get_server_detail_service(
    user_id: int,
    server_id: int,
    db: AsyncSession,
    gateway: PanelGateway,
) -> Dict[str, Any]:
    """Local server row merged with live panel details and resource usage."""
    server = await get_owned_server(user_id, server_id, db, with_plan=True)
    if server is None:
        raise NotFound("Server not found")

    payload = server_summary(server)
    payload["plan"] = plan_payload(server.plan) if server.plan else None
    payload["ip"] = None
    payload["port"] = None
    payload["resources"] = None

    if not is_provisioned(server):
        return {"server": payload}

    details, resources = await asyncio.gather(
        gateway.get_server_details(server.remote_identifier),
        gateway.get_server_resources(server.remote_identifier),
    )
    if details.ok and details.data.default_allocation:
        payload["ip"] = details.data.default_allocation.ip
        payload["port"] = details.data.default_allocation.port
    if resources.ok:
        usage = resources.data
        payload["resources"] = {
            "memory_bytes": usage.memory_bytes,
            "cpu_absolute": usage.cpu_absolute,
            "disk_bytes": usage.disk_bytes,
            "uptime": usage.uptime,
            "current_state": usage.current_state,
        }
        if sync_remote_state(server, usage.current_state):
            await db.commit()
            payload["status"] = server.status

    return {"server": payload}


async def _resolve_panel_user(user: User, gateway: PanelGateway) -> int:
    existing = await gateway.find_user_by_email(user.email)
    if existing.ok and existing.data:
        return existing.data
    if not existing.ok:
        raise UpstreamFailure("Failed to look up panel user", status_code=500)

    username = panel_username(user.email, user.id)
    created = await gateway.create_user(user.email, username, username.rsplit("_", 1)[0], "User")
    if not created.ok:
        raise UpstreamFailure("Failed to create panel user", status_code=500)
    return created.data


def _create_request(
    name: str,
    panel_user_id: int,
    software: Software,
    location_id: int,
    ram: int,
    cpu: int,
    disk: int,
) -> CreateServerRequest:
    return CreateServerRequest(
        name=name,
        user_id=panel_user_id,
        egg_id=int(software.egg_id or settings.PTERODACTYL_DEFAULT_EGG_ID),
        location_id=int(location_id),
        ram=int(ram),
        cpu=int(cpu),
        disk=int(disk),
        docker_image=software.docker_image,
        startup=software.startup,
        environment=dict(software.environment or {}),
    )


async def deploy_server_service(
    user: User,
    *,
    plan_id: Optional[int],
    name: Optional[str],
    software_id: Optional[int],
    location_id: Optional[int],
    db: AsyncSession,
    gateway: PanelGateway,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Provision a server: reserve the price, create it on the panel, then finalize or refund."""
    name = (name or "").strip()
    if not plan_id or not name or not software_id or not location_id:
        raise InvalidInput("Missing required fields: planId, name, softwareId, locationId")

    plan = await get_active_plan(plan_id, db)
    if plan is None:
        raise NotFound("Plan not found or inactive")
    software = await get_software(software_id, db)
    if software is None:
        raise NotFound("Software not found")

    user_id = user.id
    price = int(plan.price)
    wallet = await get_or_create_wallet(user_id, db)
    if wallet.balance < price:
        raise InsufficientFunds(required=price, current=wallet.balance)

    panel_user_id = await _resolve_panel_user(user, gateway)
    create_request = _create_request(name, panel_user_id, software, location_id, plan.ram, plan.cpu, plan.disk)

    # Reserve: debit, provisioning row and ledger entry commit together.
    new_balance = await apply_balance_delta(user_id, db, delta=-price)
    server = Server(
        user_id=user_id,
        plan_id=plan.id,
        software_id=software.id,
        name=name,
        status=PROVISIONING,
        expires_at=initial_expiry(now),
        created_at=now or utcnow(),
    )
    db.add(server)
    await db.flush()
    server_id = server.id
    await append_transaction(user_id, db, amount=-price, tx_type=TransactionType.SERVER_DEPLOY, reference_id=server_id)
    await db.commit()

    created = await gateway.create_server(create_request)
    if not created.ok:
        logger.warning(
            "Panel rejected server %s for user %s (%s); refunding", server_id, user_id, created.reason,
            extra={"user_id": user_id, "server_id": server_id, "reason": created.reason},
        )
        await _abandon_deploy(user_id, server_id, price, db)
        raise UpstreamFailure("Failed to create server on panel", status_code=500)

    try:
        await _record_panel_server(server, created.data, db)
    except SQLAlchemyError:
        await db.rollback()
        logger.exception(
            "Could not record panel server %s for local server %s; tearing down", created.data.id, server_id,
            extra={"user_id": user_id, "server_id": server_id},
        )
        teardown = await gateway.delete_server(created.data.id)
        if not teardown.ok:
            logger.error(
                "Orphaned panel server %s after failed deploy (%s)", created.data.id, teardown.reason,
                extra={"server_id": server_id, "reason": teardown.reason},
            )
        await _abandon_deploy(user_id, server_id, price, db)
        raise InternalPersistenceFailure("Failed to create server record")

    logger.info(
        "Deployed server %s (panel %s) for user %s", server_id, created.data.id, user_id,
        extra={"user_id": user_id, "server_id": server_id, "amount": price},
    )
    return {
        "success": True,
        "server": server_summary(server),
        "wallet": {"balance": new_balance},
    }


async def _record_panel_server(server: Server, created: CreatedServer, db: AsyncSession) -> None:
    server.remote_id = created.id
    server.remote_uuid = created.uuid
    server.remote_identifier = created.identifier
    server.status = INSTALLING
    await db.commit()


async def _abandon_deploy(user_id: int, server_id: int, price: int, db: AsyncSession) -> None:
    """Compensate a reserved deploy: soft-delete the provisioning row and refund the price."""
    try:
        server = await db.get(Server, server_id, populate_existing=True)
        if server is not None:
            mark_failed(server)
        await refund(user_id, db, amount=price, reference_id=server_id)
    except SQLAlchemyError:
        await db.rollback()
        logger.exception(
            "Refund failed for abandoned deploy %s; user %s is owed %s", server_id, user_id, price,
            extra={"user_id": user_id, "server_id": server_id, "amount": price},
        )
        raise


async def renew_server_service(
    user_id: int,
    server_id: int,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Extend a server by one term. Debit, expiry and ledger entry commit as one unit."""
    server = await get_owned_server(user_id, server_id, db, with_plan=True)
    if server is None:
        raise NotFound("Server not found")
    plan = server.plan
    if plan is None:
        raise NotFound("Plan not found for this server")

    price = int(plan.price)
    wallet = await get_or_create_wallet(user_id, db)
    if wallet.balance < price:
        raise InsufficientFunds(required=price, current=wallet.balance)

    try:
        new_balance = await apply_balance_delta(user_id, db, delta=-price)
        new_expiry = await extend_expiry(server, db, now)
        await append_transaction(
            user_id, db, amount=-price, tx_type=TransactionType.SERVER_RENEW, reference_id=server_id
        )
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception(
            "Renewal of server %s failed; debit rolled back", server_id,
            extra={"user_id": user_id, "server_id": server_id},
        )
        raise InternalPersistenceFailure("Failed to update server expiry", refunded=True)

    logger.info(
        "Renewed server %s for user %s", server_id, user_id,
        extra={"user_id": user_id, "server_id": server_id, "amount": price},
    )
    return {
        "success": True,
        "server": {"id": server_id, "expires_at": isoformat(new_expiry)},
        "wallet": {"balance": new_balance},
        "cost": price,
    }


async def delete_server_service(
    user_id: int,
    server_id: int,
    reason: Optional[str],
    db: AsyncSession,
    gateway: PanelGateway,
) -> Dict[str, Any]:
    """Tear down on the panel (best effort), then soft-delete locally.

    A deploy still waiting on the panel owns its row until it records the
    panel server or abandons the row, so provisioning servers are refused.
    """
    server = await get_owned_server(user_id, server_id, db)
    if server is None:
        raise NotFound("Server not found")
    if server.status == PROVISIONING:
        raise Conflict("Server is still being provisioned")

    if server.remote_id is not None:
        teardown = await gateway.delete_server(server.remote_id)
        if not teardown.ok:
            logger.warning(
                "Panel teardown of server %s failed (%s); soft-deleting anyway", server_id, teardown.reason,
                extra={"user_id": user_id, "server_id": server_id, "reason": teardown.reason},
            )
    else:
        logger.warning("Server %s has no panel id; soft-deleting locally only", server_id, extra={"server_id": server_id})

    try:
        mark_deleted(server)
        await append_transaction(user_id, db, amount=0, tx_type=TransactionType.SERVER_DELETED, reference_id=server_id)
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Soft delete of server %s failed", server_id, extra={"server_id": server_id})
        raise InternalPersistenceFailure("Failed to delete server")

    return {
        "success": True,
        "message": "Server deleted successfully",
        "reason": reason,
    }


async def send_power_action_service(
    user_id: int,
    server_id: int,
    action: Optional[str],
    db: AsyncSession,
    gateway: PanelGateway,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    if not action or action not in POWER_SIGNALS:
        raise InvalidInput("Invalid action. Must be one of: start, stop, restart, kill")

    server = await get_owned_server(user_id, server_id, db)
    if server is None:
        raise NotFound("Server not found")
    if is_expired(server, now):
        raise Forbidden("Server has expired. Please renew to continue using it.")
    if not is_provisioned(server):
        raise Conflict("Server is still being provisioned")

    sent = await gateway.send_power_action(server.remote_identifier, action)
    if not sent.ok:
        raise UpstreamFailure("Failed to send power action")

    # Optimistic: the panel accepted the signal, the state change is not confirmed.
    apply_power_status(server, action)
    await db.commit()

    logger.info(
        "Power action %s sent to server %s", action, server_id,
        extra={"user_id": user_id, "server_id": server_id, "action": action},
    )
    return {
        "success": True,
        "action": action,
        "message": f"Power action '{action}' sent successfully",
    }
