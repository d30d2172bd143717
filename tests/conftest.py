"""
Pytest fixtures for engine testing.
Provides settings, an in-memory store seeded with an issuer and an achievement,
and a fully wired credential service.
"""

import base64
import os

import pytest
import pytest_asyncio

from badge_engine.core.config import Settings, get_settings
from badge_engine.core.encryption import KeyMaterialEncryptor
from badge_engine.modules.credentials.repository import InMemoryCredentialStore
from badge_engine.modules.credentials.schemas import AchievementRecord, IssuerRecord
from badge_engine.modules.credentials.service import CredentialService

PUBLIC_BASE_URL = "https://badges.example.org"


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    get_settings.cache_clear()


@pytest.fixture
def master_key() -> str:
    return base64.b64encode(os.urandom(32)).decode()


@pytest.fixture
def settings(master_key: str) -> Settings:
    return Settings(
        environment="development",
        public_base_url=PUBLIC_BASE_URL,
        encryption_master_key=master_key,
    )


@pytest.fixture
def encryptor(settings: Settings) -> KeyMaterialEncryptor:
    return KeyMaterialEncryptor.from_settings(settings)


@pytest.fixture
def store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest_asyncio.fixture
async def issuer(store: InMemoryCredentialStore) -> IssuerRecord:
    return await store.add_issuer(
        IssuerRecord(
            name="Example University",
            url="https://example.edu",
            email="badges@example.edu",
            description="Issues course completion badges",
        )
    )


@pytest_asyncio.fixture
async def other_issuer(store: InMemoryCredentialStore) -> IssuerRecord:
    return await store.add_issuer(
        IssuerRecord(name="Other Academy", url="https://other.example.com")
    )


@pytest_asyncio.fixture
async def achievement(store: InMemoryCredentialStore, issuer: IssuerRecord) -> AchievementRecord:
    return await store.add_achievement(
        AchievementRecord(
            issuer_id=issuer.id,
            name="Python Fundamentals",
            description="Completed the Python Fundamentals course",
            criteria="Pass all six graded assignments.",
            criteria_url="https://example.edu/courses/python/criteria",
            image="https://example.edu/badges/python.png",
            tags=["python", "programming"],
        )
    )


@pytest.fixture
def service(
    store: InMemoryCredentialStore, encryptor: KeyMaterialEncryptor, settings: Settings
) -> CredentialService:
    return CredentialService(store, encryptor, settings)


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests that require a PostgreSQL database.",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_integration = bool(
        config.getoption("--run-integration") or os.getenv("RUN_INTEGRATION") == "1"
    )
    if not run_integration:
        skip_integration = pytest.mark.skip(
            reason="integration tests require --run-integration or RUN_INTEGRATION=1"
        )
        for item in items:
            if "integration" in item.keywords:
                item.add_marker(skip_integration)
