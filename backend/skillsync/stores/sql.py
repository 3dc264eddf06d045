"""
SQLAlchemy (async) implementations of the stores.

Uniqueness invariants are enforced by the database constraints declared in
skillsync.models; the store turns constraint violations back into the
domain errors the pipeline expects.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from skillsync.core.clock import ensure_aware, utcnow
from skillsync.core.errors import DuplicateConnectionError, DuplicateDeliveryError
from skillsync.models.integration import IntegrationConnection, SyncLease, WebhookEventLog
from skillsync.models.skills import SkillContribution, SkillRecordRow
from skillsync.schemas.integration import (
    Connection,
    ConnectionStatus,
    Credential,
    OwnerType,
    Provider,
    WebhookEvent,
)
from skillsync.schemas.skills import EvidenceContribution, SkillCategory, SkillLevel, SkillRecord
from skillsync.stores.base import ConnectionStore, LeaseStore, SkillFold, SkillStore, WebhookLog

logger = logging.getLogger("skillsync.stores")

SessionFactory = Callable[[], AsyncSession]


# ---------------------------------------------------------------------------
# Row <-> domain mapping
# ---------------------------------------------------------------------------

def connection_from_row(row: IntegrationConnection) -> Connection:
    return Connection(
        id=row.id,
        owner_id=row.owner_id,
        owner_type=OwnerType(row.owner_type),
        provider=Provider(row.provider),
        external_account_id=row.external_account_id,
        credential=Credential(
            access_token=row.access_token,
            refresh_token=row.refresh_token,
            expires_at=ensure_aware(row.token_expires_at),
            scope=row.token_scope,
            token_type=row.token_type or "bearer",
        ),
        status=ConnectionStatus(row.status),
        status_reason=row.status_reason,
        last_sync_at=ensure_aware(row.last_sync_at),
        last_sync_cursor=row.last_sync_cursor,
        auth_failure_count=row.auth_failure_count or 0,
        metadata=dict(row.connection_metadata or {}),
        created_at=ensure_aware(row.created_at) or utcnow(),
        updated_at=ensure_aware(row.updated_at) or utcnow(),
    )


def apply_connection(row: IntegrationConnection, connection: Connection) -> IntegrationConnection:
    row.owner_id = connection.owner_id
    row.owner_type = connection.owner_type.value
    row.provider = connection.provider.value
    row.external_account_id = connection.external_account_id
    row.status = connection.status.value
    row.status_reason = connection.status_reason
    row.access_token = connection.credential.access_token
    row.refresh_token = connection.credential.refresh_token
    row.token_expires_at = connection.credential.expires_at
    row.token_scope = connection.credential.scope
    row.token_type = connection.credential.token_type
    row.last_sync_at = connection.last_sync_at
    row.last_sync_cursor = connection.last_sync_cursor
    row.auth_failure_count = connection.auth_failure_count
    row.connection_metadata = dict(connection.metadata)
    row.updated_at = utcnow()
    return row


def event_from_row(row: WebhookEventLog) -> WebhookEvent:
    return WebhookEvent(
        id=row.id,
        provider=Provider(row.provider),
        delivery_id=row.delivery_id,
        event_type=row.event_type,
        action=row.action,
        raw_payload=row.raw_payload or {},
        subject_identifier=row.subject_identifier,
        owner_id=row.owner_id,
        received_at=ensure_aware(row.received_at),
        processed=bool(row.processed),
        processed_at=ensure_aware(row.processed_at),
        error_message=row.error_message,
        attempts=row.attempts or 0,
        retryable=bool(row.retryable),
    )


def record_from_row(row: SkillRecordRow) -> SkillRecord:
    return SkillRecord(
        id=row.id,
        owner_id=row.owner_id,
        skill_name=row.skill_name,
        category=SkillCategory(row.category),
        level=SkillLevel(row.level),
        confidence=row.confidence,
        source=row.source,
        evidence_count=row.evidence_count,
        evidence_weight=row.evidence_weight,
        last_observed_at=ensure_aware(row.last_observed_at),
        last_updated_at=ensure_aware(row.last_updated_at),
    )


def contribution_from_row(row: SkillContribution) -> EvidenceContribution:
    return EvidenceContribution(
        owner_id=row.owner_id,
        skill_name=row.skill_name,
        category=SkillCategory(row.category),
        provider=row.provider,
        evidence_id=row.evidence_id,
        occurred_at=ensure_aware(row.occurred_at),
        weight=row.weight,
    )


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class SQLConnectionStore(ConnectionStore):

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def save(self, connection: Connection) -> Connection:
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    row = await session.get(IntegrationConnection, connection.id, with_for_update=True)
                    if row is None:
                        row = IntegrationConnection(id=connection.id, created_at=connection.created_at)
                        session.add(row)
                    apply_connection(row, connection)
            except IntegrityError as e:
                raise DuplicateConnectionError(
                    f"Owner {connection.owner_id} already has an active {connection.provider.value} connection",
                    provider=connection.provider.value,
                ) from e
            return connection_from_row(row)

    async def get(self, connection_id: str) -> Optional[Connection]:
        async with self._session_factory() as session:
            row = await session.get(IntegrationConnection, connection_id)
            return connection_from_row(row) if row else None

    async def find_active(self, owner_id: str, provider: Provider) -> Optional[Connection]:
        query = select(IntegrationConnection).where(
            IntegrationConnection.owner_id == owner_id,
            IntegrationConnection.provider == provider.value,
            IntegrationConnection.status == ConnectionStatus.ACTIVE.value,
        )
        async with self._session_factory() as session:
            row = (await session.execute(query)).scalars().first()
            return connection_from_row(row) if row else None

    async def find_latest(self, owner_id: str, provider: Provider) -> Optional[Connection]:
        query = (
            select(IntegrationConnection)
            .where(
                IntegrationConnection.owner_id == owner_id,
                IntegrationConnection.provider == provider.value,
            )
            .order_by(IntegrationConnection.updated_at.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            row = (await session.execute(query)).scalars().first()
            return connection_from_row(row) if row else None

    async def find_by_external_account(self, provider: Provider, external_account_id: str) -> List[Connection]:
        query = select(IntegrationConnection).where(
            IntegrationConnection.provider == provider.value,
            IntegrationConnection.external_account_id == external_account_id,
            IntegrationConnection.status == ConnectionStatus.ACTIVE.value,
        )
        async with self._session_factory() as session:
            rows = (await session.execute(query)).scalars().all()
            return [connection_from_row(r) for r in rows]

    async def list_for_owner(self, owner_id: str) -> List[Connection]:
        query = (
            select(IntegrationConnection)
            .where(IntegrationConnection.owner_id == owner_id)
            .order_by(IntegrationConnection.created_at)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(query)).scalars().all()
            return [connection_from_row(r) for r in rows]

    async def mark_error(self, connection_id: str, reason: str) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(IntegrationConnection)
                    .where(IntegrationConnection.id == connection_id)
                    .values(status=ConnectionStatus.ERROR.value, status_reason=reason, updated_at=utcnow())
                )


class SQLSkillStore(SkillStore):
    """
    Skill records and their evidence ledger.

    recompute() runs in one transaction holding a transaction-scoped advisory
    lock on (owner, skill), so workers in different processes rebuild a
    record one at a time and each sees the ledger rows of the ones before.
    """

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def upsert(self, record: SkillRecord) -> SkillRecord:
        async with self._session_factory() as session:
            async with session.begin():
                await self._write_record(session, record)
            return record

    async def get(self, owner_id: str, skill_name: str, source: str) -> Optional[SkillRecord]:
        query = select(SkillRecordRow).where(
            SkillRecordRow.owner_id == owner_id,
            SkillRecordRow.skill_name == skill_name,
            SkillRecordRow.source == source,
        )
        async with self._session_factory() as session:
            row = (await session.execute(query)).scalars().first()
            return record_from_row(row) if row else None

    async def find_by_owner(self, owner_id: str, source: Optional[str] = None) -> List[SkillRecord]:
        query = select(SkillRecordRow).where(SkillRecordRow.owner_id == owner_id)
        if source is not None:
            query = query.where(SkillRecordRow.source == source)
        query = query.order_by(SkillRecordRow.skill_name, SkillRecordRow.source)
        async with self._session_factory() as session:
            rows = (await session.execute(query)).scalars().all()
            return [record_from_row(r) for r in rows]

    async def add_contributions(self, contributions: Sequence[EvidenceContribution]) -> int:
        if not contributions:
            return 0
        async with self._session_factory() as session:
            async with session.begin():
                return await self._merge_contributions(session, contributions)

    async def contributions_for(self, owner_id: str, skill_name: str) -> List[EvidenceContribution]:
        async with self._session_factory() as session:
            return await self._ledger(session, owner_id, skill_name)

    async def recompute(
        self,
        owner_id: str,
        skill_name: str,
        contributions: Sequence[EvidenceContribution],
        fold: SkillFold,
    ) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                await self._lock_skill(session, owner_id, skill_name)
                if contributions:
                    await self._merge_contributions(session, contributions)
                ledger = await self._ledger(session, owner_id, skill_name)
                rows = (await session.execute(
                    select(SkillRecordRow)
                    .where(SkillRecordRow.owner_id == owner_id, SkillRecordRow.skill_name == skill_name)
                    .with_for_update()
                )).scalars().all()
                changed = fold(ledger, {r.source: record_from_row(r) for r in rows})
                for record in changed:
                    await self._write_record(session, record)
            return len(changed)

    # ------------------------------------------------------------------
    # Session-level helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _lock_skill(session: AsyncSession, owner_id: str, skill_name: str) -> None:
        # Row locks cannot cover a record that does not exist yet
        if session.bind.dialect.name == "postgresql":
            await session.execute(
                select(func.pg_advisory_xact_lock(func.hashtext(f"skill:{owner_id}:{skill_name}")))
            )

    @staticmethod
    async def _ledger(session: AsyncSession, owner_id: str, skill_name: str) -> List[EvidenceContribution]:
        query = select(SkillContribution).where(
            SkillContribution.owner_id == owner_id,
            SkillContribution.skill_name == skill_name,
        )
        rows = (await session.execute(query)).scalars().all()
        return [contribution_from_row(r) for r in rows]

    @staticmethod
    async def _write_record(session: AsyncSession, record: SkillRecord) -> None:
        query = (
            select(SkillRecordRow)
            .where(
                SkillRecordRow.owner_id == record.owner_id,
                SkillRecordRow.skill_name == record.skill_name,
                SkillRecordRow.source == record.source,
            )
            .with_for_update()
        )
        row = (await session.execute(query)).scalars().first()
        if row is None:
            row = SkillRecordRow(
                id=record.id,
                owner_id=record.owner_id,
                skill_name=record.skill_name,
                source=record.source,
            )
            session.add(row)
        else:
            record.id = row.id
        row.category = record.category.value
        row.level = record.level.value
        row.confidence = record.confidence
        row.evidence_count = record.evidence_count
        row.evidence_weight = record.evidence_weight
        row.last_observed_at = record.last_observed_at
        row.last_updated_at = record.last_updated_at

    @staticmethod
    async def _merge_contributions(session: AsyncSession, contributions: Sequence[EvidenceContribution]) -> int:
        unique = {c.key: c for c in contributions}
        key_filter = or_(*[
            and_(
                SkillContribution.owner_id == owner_id,
                SkillContribution.skill_name == skill_name,
                SkillContribution.provider == provider,
                SkillContribution.evidence_id == evidence_id,
            )
            for owner_id, skill_name, provider, evidence_id in unique
        ])
        existing = {
            (r.owner_id, r.skill_name, r.provider, r.evidence_id): r
            for r in (await session.execute(select(SkillContribution).where(key_filter).with_for_update())).scalars().all()
        }
        for key, contribution in unique.items():
            row = existing.get(key)
            if row is None:
                session.add(SkillContribution(
                    owner_id=contribution.owner_id,
                    skill_name=contribution.skill_name,
                    category=contribution.category.value,
                    provider=contribution.provider,
                    evidence_id=contribution.evidence_id,
                    occurred_at=contribution.occurred_at,
                    weight=contribution.weight,
                ))
            else:
                row.category = contribution.category.value
                row.occurred_at = contribution.occurred_at
                row.weight = contribution.weight
        await session.flush()
        return len(unique) - len(existing)


class SQLWebhookLog(WebhookLog):

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def exists(self, provider: Provider, delivery_id: str) -> bool:
        query = select(WebhookEventLog.id).where(
            WebhookEventLog.provider == provider.value,
            WebhookEventLog.delivery_id == delivery_id,
        )
        async with self._session_factory() as session:
            return (await session.execute(query)).first() is not None

    async def append(self, event: WebhookEvent) -> WebhookEvent:
        row = WebhookEventLog(
            id=event.id,
            provider=event.provider.value,
            delivery_id=event.delivery_id,
            event_type=event.event_type,
            action=event.action,
            raw_payload=event.raw_payload,
            subject_identifier=event.subject_identifier,
            owner_id=event.owner_id,
            received_at=event.received_at,
            processed=event.processed,
            processed_at=event.processed_at,
            error_message=event.error_message,
            attempts=event.attempts,
            retryable=event.retryable,
        )
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    session.add(row)
            except IntegrityError as e:
                raise DuplicateDeliveryError(
                    f"Delivery {event.delivery_id} already logged",
                    provider=event.provider.value,
                    delivery_id=event.delivery_id,
                ) from e
        return event

    async def get(self, event_id: str) -> Optional[WebhookEvent]:
        async with self._session_factory() as session:
            row = await session.get(WebhookEventLog, event_id)
            return event_from_row(row) if row else None

    async def mark_processed(self, event_id: str, error: Optional[str] = None, retryable: bool = True) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                row = await session.get(WebhookEventLog, event_id, with_for_update=True)
                if row is None:
                    logger.warning(f"mark_processed: unknown webhook event {event_id}")
                    return
                row.attempts = (row.attempts or 0) + 1
                if error is None:
                    row.processed = True
                    row.processed_at = utcnow()
                    row.error_message = None
                else:
                    row.error_message = error
                    row.retryable = bool(row.retryable) and retryable

    async def list_unprocessed(self, max_attempts: int, limit: int = 100) -> List[WebhookEvent]:
        query = (
            select(WebhookEventLog)
            .where(
                WebhookEventLog.processed.is_(False),
                WebhookEventLog.retryable.is_(True),
                WebhookEventLog.attempts < max_attempts,
            )
            .order_by(WebhookEventLog.received_at)
            .limit(limit)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(query)).scalars().all()
            return [event_from_row(r) for r in rows]


class SQLLeaseStore(LeaseStore):

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def acquire(self, key: str, holder: str, ttl_seconds: float) -> bool:
        now = utcnow()
        expires_at = now + timedelta(seconds=ttl_seconds)
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    row = await session.get(SyncLease, key, with_for_update=True)
                    if row is None:
                        session.add(SyncLease(key=key, holder=holder, expires_at=expires_at))
                        return True
                    if row.holder != holder and ensure_aware(row.expires_at) > now:
                        return False
                    row.holder = holder
                    row.expires_at = expires_at
                    return True
            except IntegrityError:
                # Another worker inserted the lease between our read and write
                return False

    async def release(self, key: str, holder: str) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    delete(SyncLease).where(SyncLease.key == key, SyncLease.holder == holder)
                )

    async def holder(self, key: str) -> Optional[Tuple[str, datetime]]:
        async with self._session_factory() as session:
            row = await session.get(SyncLease, key)
            if row is None or ensure_aware(row.expires_at) <= utcnow():
                return None
            return row.holder, ensure_aware(row.expires_at)
