# Connection lifecycle, sync passes and webhook ingestion
from skillsync.services.integrations.dispatcher import WebhookDispatcher
from skillsync.services.integrations.orchestrator import SyncOrchestrator
from skillsync.services.integrations.registry import ConnectionRegistry
from skillsync.services.integrations.webhook_gateway import WebhookGateway, WebhookResult

__all__ = [
    "ConnectionRegistry",
    "SyncOrchestrator",
    "WebhookDispatcher",
    "WebhookGateway",
    "WebhookResult",
]
