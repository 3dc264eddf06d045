"""
Shared test fixtures and configuration for SkillSync backend tests.
"""
import os
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

# Set test environment before importing app modules
os.environ["ENVIRONMENT"] = "development"
os.environ["DEBUG"] = "true"
os.environ["SECRET_KEY"] = "test-secret-key-for-testing-only-min-32-chars"
os.environ.pop("INTERNAL_API_TOKEN", None)


@pytest.fixture
def mock_settings(monkeypatch):
    """Mock settings for testing."""
    monkeypatch.setenv("ENVIRONMENT", "development")
    monkeypatch.setenv("DEBUG", "true")
    monkeypatch.setenv("SECRET_KEY", "test-secret-key-for-testing-only-min-32-chars")
    monkeypatch.setenv("POSTGRES_PASSWORD", "testpassword")
    monkeypatch.setenv("POSTGRES_USER", "testuser")
    monkeypatch.setenv("POSTGRES_DB", "testdb")


@pytest.fixture
def connection_store():
    from skillsync.stores.memory import InMemoryConnectionStore
    return InMemoryConnectionStore()


@pytest.fixture
def skill_store():
    from skillsync.stores.memory import InMemorySkillStore
    return InMemorySkillStore()


@pytest.fixture
def webhook_log():
    from skillsync.stores.memory import InMemoryWebhookLog
    return InMemoryWebhookLog()


@pytest.fixture
def lease_store():
    from skillsync.stores.memory import InMemoryLeaseStore
    return InMemoryLeaseStore()


@pytest.fixture
def scripted_adapter():
    from tests.utils.fakes import ScriptedAdapter
    return ScriptedAdapter()


@pytest.fixture
def registry(connection_store, scripted_adapter):
    from skillsync.schemas.integration import Provider
    from skillsync.services.integrations.registry import ConnectionRegistry
    return ConnectionRegistry(
        connection_store,
        {Provider.GITHUB: scripted_adapter},
        refresh_margin_seconds=300,
        auth_failure_threshold=3,
    )


@pytest.fixture
def engine(skill_store):
    from skillsync.services.skills.engine import SkillInferenceEngine
    from tests.utils.fakes import NOW
    return SkillInferenceEngine(skill_store, clock=lambda: NOW)


@pytest.fixture
def orchestrator(registry, engine, lease_store):
    from skillsync.services.integrations.orchestrator import SyncOrchestrator
    return SyncOrchestrator(registry, engine, lease_store, lease_ttl_seconds=60, worker_id="test-worker")


@pytest.fixture
def credential():
    from skillsync.schemas.integration import Credential
    return Credential(
        access_token="access-1",
        refresh_token="refresh-1",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=2),
    )


@pytest_asyncio.fixture
async def connection(registry, credential):
    """An active GitHub connection for owner emp-1, account acct-1."""
    from skillsync.schemas.integration import Provider
    return await registry.connect("emp-1", Provider.GITHUB, credential, external_account_id="acct-1")
