import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from models.user import User
from models.wallet import Wallet
from routers import rate_limit
from services.panel_gateway import (
    TRANSPORT,
    Allocation,
    CreatedServer,
    GatewayResult,
    ResourceUsage,
    ServerDetails,
    ServerLimits,
    get_panel_gateway,
)
from services.session_token import create_access_token


def auth_header(subject: str, email: str | None = None) -> dict:
    return {"Authorization": f"Bearer {create_access_token(subject, email=email)['token']}"}


class FakePanelGateway:
    """In-memory panel that records every call and fails on request."""

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.limits = ServerLimits(memory=2048, swap=0, disk=10240, io=500, cpu=100)
        self.current_state = "running"
        self.panel_user_id = None
        self.next_server_id = 101

    def fail(self, method: str, reason: str = TRANSPORT) -> None:
        self.failures[method] = reason

    def calls_to(self, method: str) -> list:
        return [args for name, args in self.calls if name == method]

    def _result(self, method, args, data):
        self.calls.append((method, args))
        reason = self.failures.get(method)
        if reason:
            return GatewayResult.failure(reason, f"{method} failed")
        return GatewayResult.success(data)

    async def get_server_details(self, identifier):
        details = ServerDetails(
            identifier=identifier,
            uuid=f"uuid-{identifier}",
            name="panel-server",
            status=None,
            is_suspended=False,
            limits=self.limits,
            allocations=[
                Allocation(id=54, ip="10.0.0.4", port=25566, is_default=False),
                Allocation(id=55, ip="10.0.0.5", port=25565, is_default=True),
            ],
        )
        return self._result("get_server_details", (identifier,), details)

    async def get_server_resources(self, identifier):
        usage = ResourceUsage(
            current_state=self.current_state,
            is_suspended=False,
            memory_bytes=512 * 1024 * 1024,
            cpu_absolute=12.5,
            disk_bytes=2048,
            network_rx_bytes=10,
            network_tx_bytes=20,
            uptime=3600,
        )
        return self._result("get_server_resources", (identifier,), usage)

    async def send_power_action(self, identifier, signal):
        return self._result("send_power_action", (identifier, signal), None)

    async def create_server(self, request):
        server_id = self.next_server_id
        self.next_server_id += 1
        created = CreatedServer(id=server_id, identifier=f"abc{server_id}", uuid=f"uuid-{server_id}")
        return self._result("create_server", (request,), created)

    async def delete_server(self, server_id):
        return self._result("delete_server", (server_id,), None)

    async def find_user_by_email(self, email):
        return self._result("find_user_by_email", (email,), self.panel_user_id)

    async def create_user(self, email, username, first_name, last_name):
        return self._result("create_user", (email, username, first_name, last_name), 42)

    async def update_server_build(self, server_id, limits, allocation_id):
        return self._result("update_server_build", (server_id, limits, allocation_id), None)


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "coinhost.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest.fixture
def fake_gateway():
    return FakePanelGateway()


@pytest_asyncio.fixture
async def api_client(session_maker, fake_gateway):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_panel_gateway] = lambda: fake_gateway
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_panel_gateway, None)


@pytest.fixture
def seed(session_maker):
    """Insert rows and return them with their generated keys loaded."""

    async def _seed(*rows):
        async with session_maker() as session:
            session.add_all(rows)
            await session.commit()
        return rows[0] if len(rows) == 1 else rows

    return _seed


@pytest.fixture
def seed_user(session_maker):
    """Create a user with a funded wallet; the subject matches auth_header(subject)."""

    async def _seed_user(subject: str, balance: int = 0, email: str | None = None) -> int:
        async with session_maker() as session:
            user = User(auth_uuid=subject, email=email or f"{subject}@example.com", role="user")
            session.add(user)
            await session.flush()
            session.add(Wallet(user_id=user.id, balance=balance, credits=0, total_earned=0))
            await session.commit()
            return user.id

    return _seed_user
