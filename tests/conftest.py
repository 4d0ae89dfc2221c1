"""Shared test fixtures."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "development")

from datetime import timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from m365_assessment.api.services.secret_custody import SecretCustodyManager
from m365_assessment.api.services.store import SqlAlchemyStore
from m365_assessment.core.config import Settings
from m365_assessment.core.database import create_db_engine, init_db
from tests.fixtures.fakes import FAST_POLICY, Clock, FakeDirectory, FakeVault


@pytest.fixture
def settings():
    """Settings with a configured automation identity and no vault."""
    return Settings(
        azure_tenant_id="11111111-1111-1111-1111-111111111111",
        azure_client_id="22222222-2222-2222-2222-222222222222",
        azure_client_secret="platform-secret",
        key_vault_url=None,
        database_url="sqlite://",
    )


@pytest.fixture
def unconfigured_settings():
    """Settings without automation credentials."""
    return Settings(
        azure_tenant_id=None,
        azure_client_id=None,
        azure_client_secret=None,
        database_url="sqlite://",
    )


@pytest.fixture
def session_factory():
    """Fresh in-memory SQLite database per test."""
    engine = create_db_engine("sqlite://")
    init_db(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return SqlAlchemyStore(session_factory)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
def vault():
    return FakeVault()


@pytest.fixture
def custody(vault):
    return SecretCustodyManager(vault, validity=timedelta(days=730), policy=FAST_POLICY)


@pytest.fixture
def inline_custody():
    return SecretCustodyManager(None, validity=timedelta(days=730), policy=FAST_POLICY)


@pytest.fixture
def components(settings, session_factory, directory, vault):
    """Component graph backed by in-memory fakes."""
    from m365_assessment.api.dependencies import build_components
    from tests.fixtures.fakes import FakeSource

    sources = {
        "license": FakeSource("license", {"utilizationPercentage": 85.0, "totalLicenses": 100}),
        "secure-score": FakeSource("secure-score", {"percentage": 64.0}),
    }
    built = build_components(settings, session_factory, vault=vault, sources=sources)
    built.directory = directory
    built.provisioning.directory = directory
    return built


@pytest.fixture
def client(components, session_factory):
    """Test client with the component graph and database overridden."""
    from fastapi.testclient import TestClient

    from m365_assessment.api.dependencies import get_components
    from m365_assessment.core.database import get_db
    from m365_assessment.main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_components] = lambda: components

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
