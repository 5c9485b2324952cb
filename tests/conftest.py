"""Shared test fixtures for syncvault."""

import time
from pathlib import Path

import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from syncvault.config.settings import Settings
from syncvault.main import create_app
from syncvault.storage.database import Database
from syncvault.sync.cloud import SyncCloudClient
from syncvault.sync.engine import SyncEngine
from syncvault.sync.pending import PendingOperationGuard
from syncvault.sync.secrets import ServerSecretChain

PASSWORD = "correct horse battery"
SERVER_SECRET = "0f" * 32


@pytest.fixture
def config(tmp_path: Path) -> Settings:
    """Settings isolated from the environment, with fast key derivation."""
    return Settings(
        _env_file=None,
        db_type="sqlite",
        data_dir=tmp_path / "server",
        client_dir=tmp_path / "client",
        server_secret=SERVER_SECRET,
        pbkdf2_iterations=100_000,
        sync_request_retries=0,
        sync_retry_delay=0.0,
        sync_cooldown_seconds=1.0,
        sync_interval_seconds=0.01,
        pending_removal_grace_seconds=0.05,
    )


@pytest.fixture
def database(config: Settings):
    db = Database(config)
    db.init()
    yield db
    db.close()


@pytest.fixture
def secrets(config: Settings) -> ServerSecretChain:
    return ServerSecretChain.from_settings(config)


@pytest.fixture
def client(config: Settings, database: Database, secrets: ServerSecretChain):
    """TestClient with the lifespan running against the sqlite database."""
    app = create_app(config, database=database, secrets=secrets)
    with TestClient(app) as test_client:
        yield test_client


@pytest_asyncio.fixture
async def make_engine(config: Settings, client: TestClient, tmp_path: Path):
    """Factory for client engines, one client directory per simulated device.

    Engines talk to the in-process Sync Service through ASGITransport.
    """
    engines: list[SyncEngine] = []

    def factory(
        device: str = "device-a",
        transport=None,
        cloud=None,
        guard=None,
        notifier=None,
        clock=time.monotonic,
        **overrides,
    ) -> SyncEngine:
        device_config = config.model_copy(update={"client_dir": tmp_path / device, **overrides})
        device_config.client_path.mkdir(parents=True, exist_ok=True)
        if cloud is None:
            cloud = SyncCloudClient(
                "http://testserver",
                config=device_config,
                transport=transport or httpx.ASGITransport(app=client.app),
            )
        engine = SyncEngine(
            cloud=cloud,
            guard=guard or PendingOperationGuard(),
            config=device_config,
            notifier=notifier,
            clock=clock,
        )
        engine.vault.restore_session()
        engines.append(engine)
        return engine

    yield factory

    for engine in engines:
        await engine.aclose()
