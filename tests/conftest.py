import os

import pytest
from fastapi import FastAPI, Request
from httpx import AsyncClient, ASGITransport

TEST_DATABASE_URL = "sqlite+aiosqlite:///./test_passgate.db"
os.environ["DEFAULT_DATABASE_URI"] = TEST_DATABASE_URL
os.environ["SECRET_KEY"] = "test-secret"
os.environ["PASSKEY_ALLOWED_HOSTS"] = '["example.com", "shop.example.com"]'
os.environ["DATABASE_POOL_PRE_PING"] = "false"

from passgate import init_app
from passgate.core.database import Base, db_manager, engine
from passgate.core.hooks import hook_manager
from passgate.core.relying_party import RelyingParty
from passgate.integrations import passgate_service, identity_store, set_rp_resolver
from passgate.manager.asynchronous import PassGateAsync

from softauthn import SoftwareAuthenticator

ORIGIN = "https://example.com"
USER_AGENT = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) " \
             "Version/17.0 Safari/605.1.15"


@pytest.fixture(autouse=True)
def reset_globals():
    """Hooks and the cached resolver are process-wide; every test starts clean."""
    hook_manager.clear()
    set_rp_resolver(None)
    yield
    hook_manager.clear()
    set_rp_resolver(None)


@pytest.fixture
async def tables():
    """Fresh tables for every test, and no pooled connection outlives the test's event loop."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    db_manager._initialized = True
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def service(tables) -> PassGateAsync:
    return passgate_service


@pytest.fixture
def rp() -> RelyingParty:
    return RelyingParty(id="example.com", name="Example Site")


@pytest.fixture
def authenticator() -> SoftwareAuthenticator:
    return SoftwareAuthenticator()


@pytest.fixture
async def user(service):
    return await service.users.create(username="alice", email="alice@example.com", display_name="Alice")


@pytest.fixture
async def other_user(service):
    return await service.users.create(username="bob", email="bob@example.com")


@pytest.fixture
def app() -> FastAPI:
    app = FastAPI()
    init_app(app)

    # Stand-in for the host application's primary login.
    @app.post("/test-login/{user_id}")
    async def test_login(user_id: str, request: Request):
        identity_store.log_in(request, await passgate_service.users.require(user_id))
        return {"ok": True}

    return app


@pytest.fixture
async def client(app, tables):
    async with AsyncClient(
            transport=ASGITransport(app=app), base_url=ORIGIN, headers={"user-agent": USER_AGENT}
    ) as ac:
        yield ac


@pytest.fixture
async def logged_in_client(client, user):
    response = await client.post(f"/test-login/{user.id}")
    assert response.status_code == 200
    return client
