"""
Integrations API

Admin surface for provider connections: OAuth connect flow, listing,
manual sync, health checks, disconnect and the webhook retry sweep.
Every endpoint except the OAuth callback requires X-Internal-Token.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from skillsync.api.deps import get_container, parse_provider, require_internal_token
from skillsync.core.errors import ValidationError
from skillsync.schemas.integration import Connection, OwnerType, SyncSummary
from skillsync.services.container import ServiceContainer

logger = logging.getLogger(__name__)
router = APIRouter()
admin = [Depends(require_internal_token)]


# =============================================================================
# Pydantic Schemas
# =============================================================================


class ProviderInfo(BaseModel):
    """Registered provider and its configuration state"""

    provider: str
    display_name: str
    category: str
    description: str
    required_scopes: List[str]
    oauth_configured: bool
    webhooks_configured: bool


class ProviderListResponse(BaseModel):
    providers: List[ProviderInfo]
    total: int


class AuthorizeResponse(BaseModel):
    """Consent URL to send the user to"""

    authorization_url: str
    state: str


class ConnectionResponse(BaseModel):
    """Connection details (credentials are never returned)"""

    connection_id: str
    owner_id: str
    owner_type: str
    provider: str
    external_account_id: str
    status: str
    status_reason: Optional[str]
    last_sync_at: Optional[datetime]
    has_cursor: bool
    token_expires_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class SyncSummaryResponse(BaseModel):
    connection_id: Optional[str]
    provider: str
    mode: str
    status: str
    activities_processed: int
    skills_touched: int
    pages_committed: int
    error_count: int
    item_errors: List[str]
    error: Optional[str]
    last_cursor: Optional[str]
    started_at: datetime
    completed_at: Optional[datetime]
    duration_seconds: float


class ConnectionTestResponse(BaseModel):
    """Connection test result"""

    success: bool
    message: str
    latency_ms: Optional[float]
    errors: List[str]
    tested_at: datetime


class RetryResponse(BaseModel):
    retried: int
    succeeded: int
    failed: int
    ignored: int


# =============================================================================
# Utility Functions
# =============================================================================


def connection_response(connection: Connection) -> ConnectionResponse:
    return ConnectionResponse(
        connection_id=connection.id,
        owner_id=connection.owner_id,
        owner_type=connection.owner_type.value,
        provider=connection.provider.value,
        external_account_id=connection.external_account_id,
        status=connection.status.value,
        status_reason=connection.status_reason,
        last_sync_at=connection.last_sync_at,
        has_cursor=connection.last_sync_cursor is not None,
        token_expires_at=connection.credential.expires_at,
        created_at=connection.created_at,
        updated_at=connection.updated_at,
    )


def summary_response(summary: SyncSummary) -> SyncSummaryResponse:
    data: Dict[str, Any] = summary.to_dict()
    return SyncSummaryResponse(**{k: v for k, v in data.items() if k in SyncSummaryResponse.model_fields})


# =============================================================================
# Endpoints
# =============================================================================


@router.get("/providers", response_model=ProviderListResponse, dependencies=admin)
async def list_providers(container: ServiceContainer = Depends(get_container)):
    """List the provider adapters this deployment has enabled."""
    providers = [
        ProviderInfo(**adapter.describe())
        for _, adapter in sorted(container.adapters.items(), key=lambda item: item[0].value)
    ]
    return ProviderListResponse(providers=providers, total=len(providers))


@router.get("/oauth/{provider}/authorize", response_model=AuthorizeResponse, dependencies=admin)
async def authorize(
    provider: str,
    owner_id: str = Query(..., min_length=1),
    owner_type: str = Query(OwnerType.EMPLOYEE.value),
    container: ServiceContainer = Depends(get_container),
):
    """Start the OAuth flow for an owner. The state token is signed and expires."""
    try:
        kind = OwnerType(owner_type)
    except ValueError:
        raise ValidationError(f"Unknown owner type '{owner_type}'")
    url, state = container.registry.authorization_url(owner_id, parse_provider(provider), kind)
    return AuthorizeResponse(authorization_url=url, state=state)


@router.get("/oauth/{provider}/callback", response_model=ConnectionResponse)
async def oauth_callback(
    provider: str,
    code: str = Query(..., min_length=1),
    state: str = Query(..., min_length=1),
    container: ServiceContainer = Depends(get_container),
):
    """
    OAuth redirect target.

    Not guarded by the internal token: the provider redirects the user's
    browser here, and the signed state carries the owner.
    """
    connection = await container.registry.complete_oauth(state, code, parse_provider(provider))
    logger.info(f"OAuth completed: {connection.provider.value} connection {connection.id}")
    return connection_response(connection)


@router.post("/webhooks/retry", response_model=RetryResponse, dependencies=admin)
async def retry_webhooks(
    limit: int = Query(100, ge=1, le=1000),
    container: ServiceContainer = Depends(get_container),
):
    """Re-dispatch webhook events that failed and are still under the attempt limit."""
    counts = await container.gateway.retry_failed(limit)
    return RetryResponse(**counts)


@router.get("/{owner_id}", response_model=List[ConnectionResponse], dependencies=admin)
async def list_connections(
    owner_id: str,
    container: ServiceContainer = Depends(get_container),
):
    """All connections of an owner, including revoked and errored ones."""
    connections = await container.registry.list_connections(owner_id)
    return [connection_response(c) for c in connections]


@router.post("/{owner_id}/{provider}/sync", response_model=SyncSummaryResponse, dependencies=admin)
async def trigger_sync(
    owner_id: str,
    provider: str,
    full: bool = Query(False, description="Ignore the stored cursor and page from the beginning"),
    container: ServiceContainer = Depends(get_container),
):
    """
    Manual sync trigger.

    404 if the owner has no active connection, 409 if a sync is already
    running for it. A failed pass still answers 200 with its summary.
    """
    kind = parse_provider(provider)
    if full:
        connection = await container.registry.require_active(owner_id, kind)
        summary = await container.orchestrator.full_sync(connection)
    else:
        summary = await container.orchestrator.trigger_sync(owner_id, kind)
    return summary_response(summary)


@router.post("/{owner_id}/{provider}/health", response_model=ConnectionTestResponse, dependencies=admin)
async def connection_health(
    owner_id: str,
    provider: str,
    container: ServiceContainer = Depends(get_container),
):
    """Probe the provider with the connection's credential."""
    connection = await container.registry.require_active(owner_id, parse_provider(provider))
    result = await container.registry.health_check(connection)
    return ConnectionTestResponse(
        success=result.success,
        message=result.message,
        latency_ms=result.latency_ms,
        errors=result.errors,
        tested_at=result.tested_at,
    )


@router.delete("/{owner_id}/{provider}", response_model=ConnectionResponse, dependencies=admin)
async def disconnect(
    owner_id: str,
    provider: str,
    container: ServiceContainer = Depends(get_container),
):
    """Revoke the active connection. Skill records and webhook history are kept."""
    connection = await container.registry.require_active(owner_id, parse_provider(provider))
    connection = await container.registry.disconnect(connection.id)
    return connection_response(connection)
