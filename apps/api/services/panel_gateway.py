"""
Pterodactyl panel client.

Administrative calls go to the application API (``/api/application``) and
operational calls to the client API (``/api/client``). Every method returns a
``GatewayResult`` instead of raising, so callers can tell a missing server
from a timeout or a malformed response. Reads are retried once on transient
failures; writes are never retried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

import httpx

from config import panel_client_api_key, settings

logger = logging.getLogger(__name__)

T = TypeVar("T")
U = TypeVar("U")

NOT_FOUND = "not_found"
TIMEOUT = "timeout"
TRANSPORT = "transport"
REJECTED = "rejected"
MALFORMED = "malformed"

APPLICATION = "application"
CLIENT = "client"

POWER_SIGNALS = ("start", "stop", "restart", "kill")


@dataclass(frozen=True)
class GatewayResult(Generic[T]):
    ok: bool
    data: Optional[T] = None
    reason: Optional[str] = None
    status_code: Optional[int] = None
    message: str = ""

    @classmethod
    def success(cls, data: T) -> "GatewayResult[T]":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, reason: str, message: str = "", status_code: Optional[int] = None) -> "GatewayResult[T]":
        return cls(ok=False, reason=reason, message=message, status_code=status_code)

    def map(self, parse: Callable[[T], U]) -> "GatewayResult[U]":
        """Apply a parser to successful data; a parse error becomes a malformed failure."""
        if not self.ok:
            return GatewayResult(ok=False, reason=self.reason, message=self.message, status_code=self.status_code)
        try:
            return GatewayResult.success(parse(self.data))
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.warning("Unexpected panel response shape: %s", exc, extra={"reason": MALFORMED})
            return GatewayResult.failure(MALFORMED, f"Unexpected response shape: {exc}")


@dataclass
class ServerLimits:
    memory: int
    swap: int
    disk: int
    io: int
    cpu: int

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ServerLimits":
        return cls(
            memory=int(payload["memory"]),
            swap=int(payload.get("swap") or 0),
            disk=int(payload["disk"]),
            io=int(payload.get("io") or 500),
            cpu=int(payload["cpu"]),
        )


@dataclass
class Allocation:
    id: int
    ip: str
    port: int
    is_default: bool


@dataclass
class ServerDetails:
    identifier: str
    uuid: str
    name: str
    status: Optional[str]
    is_suspended: bool
    limits: ServerLimits
    allocations: List[Allocation] = field(default_factory=list)

    @property
    def default_allocation(self) -> Optional[Allocation]:
        for allocation in self.allocations:
            if allocation.is_default:
                return allocation
        return None


@dataclass
class ResourceUsage:
    current_state: str
    is_suspended: bool
    memory_bytes: int
    cpu_absolute: float
    disk_bytes: int
    network_rx_bytes: int
    network_tx_bytes: int
    uptime: int


@dataclass
class CreatedServer:
    id: int
    identifier: str
    uuid: str


@dataclass
class CreateServerRequest:
    name: str
    user_id: int
    egg_id: int
    location_id: int
    ram: int
    cpu: int
    disk: int
    docker_image: Optional[str] = None
    startup: Optional[str] = None
    environment: Dict[str, str] = field(default_factory=dict)


def _parse_server_details(payload: Dict[str, Any]) -> ServerDetails:
    attributes = payload["attributes"]
    allocation_rows = ((attributes.get("relationships") or {}).get("allocations") or {}).get("data") or []
    allocations = [
        Allocation(
            id=int(row["attributes"]["id"]),
            ip=str(row["attributes"].get("ip_alias") or row["attributes"]["ip"]),
            port=int(row["attributes"]["port"]),
            is_default=bool(row["attributes"].get("is_default")),
        )
        for row in allocation_rows
    ]
    return ServerDetails(
        identifier=str(attributes["identifier"]),
        uuid=str(attributes["uuid"]),
        name=str(attributes.get("name") or ""),
        status=attributes.get("status"),
        is_suspended=bool(attributes.get("is_suspended")),
        limits=ServerLimits.from_payload(attributes["limits"]),
        allocations=allocations,
    )


def _parse_resource_usage(payload: Dict[str, Any]) -> ResourceUsage:
    attributes = payload["attributes"]
    resources = attributes["resources"]
    return ResourceUsage(
        current_state=str(attributes["current_state"]),
        is_suspended=bool(attributes.get("is_suspended")),
        memory_bytes=int(resources.get("memory_bytes") or 0),
        cpu_absolute=float(resources.get("cpu_absolute") or 0.0),
        disk_bytes=int(resources.get("disk_bytes") or 0),
        network_rx_bytes=int(resources.get("network_rx_bytes") or 0),
        network_tx_bytes=int(resources.get("network_tx_bytes") or 0),
        uptime=int(resources.get("uptime") or 0),
    )


def _parse_created_server(payload: Dict[str, Any]) -> CreatedServer:
    attributes = payload["attributes"]
    return CreatedServer(
        id=int(attributes["id"]),
        identifier=str(attributes["identifier"]),
        uuid=str(attributes["uuid"]),
    )


def _parse_first_user_id(payload: Dict[str, Any]) -> Optional[int]:
    rows = payload.get("data") or []
    if not rows:
        return None
    return int(rows[0]["attributes"]["id"])


class PanelGateway:
    """Async client for the hosting panel's application and client APIs."""

    def __init__(
        self,
        base_url: str,
        application_key: str,
        client_key: Optional[str] = None,
        *,
        timeout_seconds: float = 10.0,
        read_retries: int = 1,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = (base_url or "").rstrip("/")
        self._keys = {
            APPLICATION: application_key or "",
            CLIENT: client_key or application_key or "",
        }
        self._timeout = httpx.Timeout(timeout_seconds)
        self._read_retries = max(int(read_retries), 0)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazy initialization of the httpx client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
                headers={"Accept": "application/json", "Content-Type": "application/json"},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        surface: str,
        idempotent: bool,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> GatewayResult[Dict[str, Any]]:
        attempts = 1 + (self._read_retries if idempotent else 0)
        headers = {"Authorization": f"Bearer {self._keys[surface]}"}
        last: GatewayResult[Dict[str, Any]] = GatewayResult.failure(TRANSPORT, "No attempt made")

        for attempt in range(1, attempts + 1):
            try:
                response = await self.client.request(method, path, json=json, params=params, headers=headers)
            except httpx.TimeoutException as exc:
                last = GatewayResult.failure(TIMEOUT, f"Timed out: {exc}")
                logger.warning(
                    "Panel %s %s timed out (attempt %s/%s)", method, path, attempt, attempts,
                    extra={"panel_path": path, "reason": TIMEOUT},
                )
                continue
            except httpx.HTTPError as exc:
                last = GatewayResult.failure(TRANSPORT, str(exc))
                logger.warning(
                    "Panel %s %s transport error (attempt %s/%s): %s", method, path, attempt, attempts, exc,
                    extra={"panel_path": path, "reason": TRANSPORT},
                )
                continue

            if response.status_code == 404:
                logger.warning(
                    "Panel %s %s returned 404", method, path,
                    extra={"panel_path": path, "status_code": 404, "reason": NOT_FOUND},
                )
                return GatewayResult.failure(NOT_FOUND, response.text, status_code=404)

            if response.status_code >= 400:
                last = GatewayResult.failure(REJECTED, response.text, status_code=response.status_code)
                logger.warning(
                    "Panel %s %s failed with %s: %s", method, path, response.status_code, response.text,
                    extra={"panel_path": path, "status_code": response.status_code, "reason": REJECTED},
                )
                if response.status_code >= 500:
                    continue
                return last

            if response.status_code == 204 or not response.content:
                return GatewayResult.success({})
            try:
                payload = response.json()
            except ValueError:
                logger.warning(
                    "Panel %s %s returned non-JSON body", method, path,
                    extra={"panel_path": path, "reason": MALFORMED},
                )
                return GatewayResult.failure(MALFORMED, "Response body is not JSON", status_code=response.status_code)
            if not isinstance(payload, dict):
                return GatewayResult.failure(MALFORMED, "Response body is not an object", status_code=response.status_code)
            return GatewayResult.success(payload)

        return last

    # Client API

    async def get_server_details(self, identifier: str) -> GatewayResult[ServerDetails]:
        result = await self._request("GET", f"/api/client/servers/{identifier}", surface=CLIENT, idempotent=True)
        return result.map(_parse_server_details)

    async def get_server_resources(self, identifier: str) -> GatewayResult[ResourceUsage]:
        result = await self._request(
            "GET", f"/api/client/servers/{identifier}/resources", surface=CLIENT, idempotent=True
        )
        return result.map(_parse_resource_usage)

    async def send_power_action(self, identifier: str, signal: str) -> GatewayResult[None]:
        if signal not in POWER_SIGNALS:
            return GatewayResult.failure(REJECTED, f"Unsupported power signal: {signal}")
        result = await self._request(
            "POST",
            f"/api/client/servers/{identifier}/power",
            surface=CLIENT,
            idempotent=False,
            json={"signal": signal},
        )
        return result.map(lambda _payload: None)

    # Application API

    async def create_server(self, request: CreateServerRequest) -> GatewayResult[CreatedServer]:
        body: Dict[str, Any] = {
            "name": request.name,
            "user": request.user_id,
            "egg": request.egg_id,
            "limits": {
                "memory": request.ram,
                "swap": 0,
                "disk": request.disk,
                "io": 500,
                "cpu": request.cpu,
            },
            "feature_limits": {
                "databases": 0,
                "allocations": 1,
                "backups": 0,
            },
            "deploy": {
                "locations": [request.location_id],
                "dedicated_ip": False,
                "port_range": [],
            },
            "start_on_completion": False,
        }
        if request.docker_image:
            body["docker_image"] = request.docker_image
        if request.startup:
            body["startup"] = request.startup
        if request.environment:
            body["environment"] = dict(request.environment)

        result = await self._request(
            "POST", "/api/application/servers", surface=APPLICATION, idempotent=False, json=body
        )
        return result.map(_parse_created_server)

    async def delete_server(self, server_id: int) -> GatewayResult[None]:
        result = await self._request(
            "DELETE", f"/api/application/servers/{int(server_id)}", surface=APPLICATION, idempotent=False
        )
        return result.map(lambda _payload: None)

    async def find_user_by_email(self, email: str) -> GatewayResult[Optional[int]]:
        result = await self._request(
            "GET",
            "/api/application/users",
            surface=APPLICATION,
            idempotent=True,
            params={"filter[email]": email},
        )
        return result.map(_parse_first_user_id)

    async def create_user(self, email: str, username: str, first_name: str, last_name: str) -> GatewayResult[int]:
        result = await self._request(
            "POST",
            "/api/application/users",
            surface=APPLICATION,
            idempotent=False,
            json={
                "email": email,
                "username": username,
                "first_name": first_name,
                "last_name": last_name,
            },
        )
        return result.map(lambda payload: int(payload["attributes"]["id"]))

    async def update_server_build(
        self,
        server_id: int,
        limits: Dict[str, int],
        allocation_id: int,
    ) -> GatewayResult[None]:
        """Patch build limits, keeping current values for fields not supplied.

        This is a read-then-patch against the panel with no locking; two
        concurrent boosts on one server can lose an update.
        """
        current = await self._request(
            "GET", f"/api/application/servers/{int(server_id)}", surface=APPLICATION, idempotent=True
        )
        if not current.ok:
            return GatewayResult(ok=False, reason=current.reason, message=current.message, status_code=current.status_code)

        try:
            attributes = current.data["attributes"]
            current_limits = ServerLimits.from_payload(attributes["limits"])
            feature_limits = attributes.get("feature_limits") or {}
        except (KeyError, TypeError, ValueError) as exc:
            return GatewayResult.failure(MALFORMED, f"Unexpected response shape: {exc}")

        body = {
            "allocation": int(allocation_id),
            "memory": limits.get("memory", current_limits.memory),
            "swap": current_limits.swap,
            "disk": limits.get("disk", current_limits.disk),
            "io": current_limits.io,
            "cpu": limits.get("cpu", current_limits.cpu),
            "feature_limits": feature_limits,
        }
        result = await self._request(
            "PATCH",
            f"/api/application/servers/{int(server_id)}/build",
            surface=APPLICATION,
            idempotent=False,
            json=body,
        )
        return result.map(lambda _payload: None)


_gateway: Optional[PanelGateway] = None


def get_panel_gateway() -> PanelGateway:
    """FastAPI dependency returning the process-wide panel client."""
    global _gateway
    if _gateway is None:
        _gateway = PanelGateway(
            settings.PTERODACTYL_URL,
            settings.PTERODACTYL_API_KEY,
            panel_client_api_key(),
            timeout_seconds=float(settings.PTERODACTYL_TIMEOUT_SECONDS),
            read_retries=int(settings.PTERODACTYL_READ_RETRIES),
        )
    return _gateway


async def close_panel_gateway() -> None:
    global _gateway
    if _gateway is not None:
        await _gateway.aclose()
        _gateway = None
