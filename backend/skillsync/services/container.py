"""
Service wiring.

One ServiceContainer per process holds the stores, the adapters and the
services built on top of them. The API reads it from ``app.state``.
"""

from dataclasses import dataclass
from typing import Dict, Optional

from skillsync.connectors import AdapterRegistry, ProviderAdapter
from skillsync.schemas.integration import Provider
from skillsync.services.integrations import (
    ConnectionRegistry,
    SyncOrchestrator,
    WebhookDispatcher,
    WebhookGateway,
)
from skillsync.services.skills.engine import SkillInferenceEngine
from skillsync.stores.base import ConnectionStore, LeaseStore, SkillStore, WebhookLog


@dataclass
class ServiceContainer:
    connections: ConnectionStore
    skills: SkillStore
    webhook_log: WebhookLog
    leases: LeaseStore
    adapters: Dict[Provider, ProviderAdapter]
    registry: ConnectionRegistry
    engine: SkillInferenceEngine
    orchestrator: SyncOrchestrator
    dispatcher: WebhookDispatcher
    gateway: WebhookGateway

    async def close(self) -> None:
        await self.dispatcher.stop()
        for store in (self.connections, self.skills, self.webhook_log, self.leases):
            await store.close()


def build_container(
    connections: ConnectionStore,
    skills: SkillStore,
    webhook_log: WebhookLog,
    leases: LeaseStore,
    adapters: Optional[Dict[Provider, ProviderAdapter]] = None,
    dispatcher: Optional[WebhookDispatcher] = None,
) -> ServiceContainer:
    adapters = adapters if adapters is not None else AdapterRegistry.create_all()
    registry = ConnectionRegistry(connections, adapters)
    engine = SkillInferenceEngine(skills)
    orchestrator = SyncOrchestrator(registry, engine, leases)
    dispatcher = dispatcher or WebhookDispatcher()
    gateway = WebhookGateway(registry, orchestrator, webhook_log, dispatcher)
    return ServiceContainer(
        connections=connections,
        skills=skills,
        webhook_log=webhook_log,
        leases=leases,
        adapters=adapters,
        registry=registry,
        engine=engine,
        orchestrator=orchestrator,
        dispatcher=dispatcher,
        gateway=gateway,
    )


def build_memory_container(adapters: Optional[Dict[Provider, ProviderAdapter]] = None) -> ServiceContainer:
    """Single-process container; nothing survives a restart."""
    from skillsync.stores.memory import (
        InMemoryConnectionStore,
        InMemoryLeaseStore,
        InMemorySkillStore,
        InMemoryWebhookLog,
    )

    return build_container(
        InMemoryConnectionStore(),
        InMemorySkillStore(),
        InMemoryWebhookLog(),
        InMemoryLeaseStore(),
        adapters,
    )


def build_sql_container(session_factory=None, adapters: Optional[Dict[Provider, ProviderAdapter]] = None) -> ServiceContainer:
    from skillsync.stores.sql import SQLConnectionStore, SQLLeaseStore, SQLSkillStore, SQLWebhookLog

    if session_factory is None:
        from skillsync.db.session import AsyncSessionLocal
        session_factory = AsyncSessionLocal

    return build_container(
        SQLConnectionStore(session_factory),
        SQLSkillStore(session_factory),
        SQLWebhookLog(session_factory),
        SQLLeaseStore(session_factory),
        adapters,
    )
