from sqlalchemy import Boolean, Column, DateTime, Index, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.sql import func

from skillsync.core.encryption import EncryptedString
from skillsync.db.base_class import Base


class IntegrationConnection(Base):
    __tablename__ = "integration_connections"  # type: ignore[assignment]

    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False)
    owner_type = Column(String, nullable=False, default="employee")  # 'employee', 'company'
    provider = Column(String, nullable=False)  # 'github', 'gitlab', 'jira', 'slack'
    external_account_id = Column(String, nullable=False)
    status = Column(String, nullable=False, default="active")  # 'active', 'revoked', 'error'
    status_reason = Column(Text, nullable=True)

    # Credential bundle (tokens encrypted at rest)
    access_token = Column(EncryptedString(2048), nullable=False)
    refresh_token = Column(EncryptedString(2048), nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    token_scope = Column(String, nullable=True)
    token_type = Column(String, nullable=False, default="bearer")

    # Sync state
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_cursor = Column(Text, nullable=True)
    auth_failure_count = Column(Integer, nullable=False, default=0)

    # Provider-specific details (e.g. Jira cloud id, Slack team id)
    connection_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


# At most one active connection per (owner, provider); revoked/error rows are kept for audit
Index(
    "uq_integration_connections_active_owner_provider",
    IntegrationConnection.owner_id,
    IntegrationConnection.provider,
    unique=True,
    postgresql_where=IntegrationConnection.status == "active",
    sqlite_where=IntegrationConnection.status == "active",
)
Index("idx_integration_connections_external_account", IntegrationConnection.provider, IntegrationConnection.external_account_id)


class WebhookEventLog(Base):
    __tablename__ = "webhook_events"  # type: ignore[assignment]

    id = Column(String, primary_key=True)
    provider = Column(String, nullable=False)
    delivery_id = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    action = Column(String, nullable=True)
    raw_payload = Column(JSON, nullable=True)
    subject_identifier = Column(String, nullable=True)
    owner_id = Column(String, nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=False)
    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    retryable = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("provider", "delivery_id", name="uq_webhook_events_provider_delivery"),
    )


Index("idx_webhook_events_pending", WebhookEventLog.processed, WebhookEventLog.received_at)


class SyncLease(Base):
    __tablename__ = "sync_leases"  # type: ignore[assignment]

    key = Column(String, primary_key=True)
    holder = Column(String, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
