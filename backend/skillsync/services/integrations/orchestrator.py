"""
Sync Orchestrator

Runs full and incremental sync passes for one connection and applies
self-contained webhook activities directly.

A pass is strictly sequential within its connection:

    fetch page N -> infer -> commit cursor N -> fetch page N+1 ...

The cursor is committed only after the page's evidence is stored, so a pass
that dies between pages resumes from the last committed cursor and at most
re-reads one page (which the evidence ledger absorbs).

Only one pass per connection runs at a time. The guard is a lease record
with an expiry rather than a process-wide flag, so a crashed worker's lease
lapses and the next pass can take over.
"""

import asyncio
import uuid
from typing import Optional

from skillsync.core.config import settings
from skillsync.core.errors import AuthError, ConnectionExpiredError, IntegrationError, SyncInProgressError
from skillsync.core.logging_config import get_logger
from skillsync.schemas.integration import (
    Activity,
    Connection,
    Provider,
    SyncMode,
    SyncStatus,
    SyncSummary,
)
from skillsync.services.integrations.registry import ConnectionRegistry
from skillsync.services.skills.engine import InferenceResult, SkillInferenceEngine
from skillsync.stores.base import LeaseStore

logger = get_logger("skillsync.sync")


class SyncOrchestrator:
    """Coordinates sync passes and webhook fast-path application."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        engine: SkillInferenceEngine,
        leases: LeaseStore,
        *,
        lease_ttl_seconds: Optional[float] = None,
        worker_id: Optional[str] = None,
    ):
        self.registry = registry
        self.engine = engine
        self.leases = leases
        self.lease_ttl_seconds = lease_ttl_seconds or settings.SYNC_LEASE_TTL_SECONDS
        self.worker_id = worker_id or uuid.uuid4().hex[:12]

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def full_sync(
        self,
        connection: Connection,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncSummary:
        """Page through everything from the beginning, ignoring the stored cursor."""
        return await self._run(connection, None, SyncMode.FULL, cancel_event)

    async def incremental_sync(
        self,
        connection: Connection,
        since_cursor: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncSummary:
        """Resume from ``since_cursor``, or from the connection's stored cursor."""
        cursor = since_cursor if since_cursor is not None else connection.last_sync_cursor
        return await self._run(connection, cursor, SyncMode.INCREMENTAL, cancel_event)

    async def trigger_sync(
        self,
        owner_id: str,
        provider: Provider,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncSummary:
        """
        Manual trigger. A connection that never synced gets a full pass.

        Raises:
            ConnectionNotFoundError: If the owner has no active connection
            SyncInProgressError: If a pass is already running for it
        """
        connection = await self.registry.require_active(owner_id, provider)
        if connection.last_sync_cursor is None:
            return await self.full_sync(connection, cancel_event)
        return await self.incremental_sync(connection, cancel_event=cancel_event)

    async def handle_webhook_activity(
        self,
        owner_id: str,
        activity: Activity,
        connection: Optional[Connection] = None,
    ) -> SyncSummary:
        """
        Apply one self-contained webhook activity without a pagination pass.

        Does not touch the connection's cursor, so it needs no lease; skill
        writes are serialized by the engine.
        """
        summary = SyncSummary(
            connection_id=connection.id if connection else None,
            provider=activity.provider,
            mode=SyncMode.WEBHOOK,
        )
        result = await self.engine.apply([activity.with_owner(owner_id)])
        self._absorb(summary, result, set())
        status = SyncStatus.PARTIAL if summary.item_errors else SyncStatus.COMPLETED
        return summary.finish(status)

    # ------------------------------------------------------------------
    # Pass loop
    # ------------------------------------------------------------------

    async def _run(
        self,
        connection: Connection,
        cursor: Optional[str],
        mode: SyncMode,
        cancel_event: Optional[asyncio.Event],
    ) -> SyncSummary:
        holder = f"{self.worker_id}:{uuid.uuid4().hex[:8]}"
        if not await self.leases.acquire(connection.lease_key, holder, self.lease_ttl_seconds):
            raise SyncInProgressError(
                f"A sync is already running for connection {connection.id}",
                provider=connection.provider.value,
                connection_id=connection.id,
            )

        log = logger.bind(connection_id=connection.id, provider=connection.provider.value, mode=mode.value)
        summary = SyncSummary(connection_id=connection.id, provider=connection.provider, mode=mode)
        summary.last_cursor = cursor
        log.info(f"Sync started from cursor {cursor!r}")
        try:
            return await self._paginate(connection, cursor, summary, holder, cancel_event, log)
        finally:
            await self.leases.release(connection.lease_key, holder)

    async def _paginate(self, connection, cursor, summary, holder, cancel_event, log) -> SyncSummary:
        adapter = self.registry.adapter_for(connection.provider)
        try:
            client = await adapter.authenticate(connection, self.registry)
        except AuthError as e:
            return await self._fail_auth(connection, summary, e, log)
        except IntegrationError as e:
            log.error(f"Sync could not start: {type(e).__name__}: {e.message}")
            return summary.finish(SyncStatus.FAILED, e.message)

        touched: set = set()
        async with client:
            connection = client.connection
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    log.info(f"Sync cancelled after {summary.pages_committed} page(s)")
                    return summary.finish(SyncStatus.CANCELLED, "cancelled")

                try:
                    page = await adapter.list_activity_since(client, cursor)
                except AuthError as e:
                    return await self._fail_auth(connection, summary, e, log)
                except IntegrationError as e:
                    log.error(
                        f"Sync aborted: {type(e).__name__}: {e.message}; last good cursor {summary.last_cursor!r}"
                    )
                    return summary.finish(SyncStatus.FAILED, e.message)

                # A page fetched after cancellation is dropped, never half-committed
                if cancel_event is not None and cancel_event.is_set():
                    log.info(f"Sync cancelled after {summary.pages_committed} page(s)")
                    return summary.finish(SyncStatus.CANCELLED, "cancelled")

                result = await self.engine.apply([a.with_owner(connection.owner_id) for a in page.activities])
                self._absorb(summary, result, touched)

                cursor = page.next_cursor
                connection = await self.registry.commit_checkpoint(connection, cursor)
                summary.pages_committed += 1
                summary.last_cursor = cursor
                log.info(
                    f"Page {summary.pages_committed} committed: {len(page.activities)} activities",
                    extra={"cursor": cursor},
                )
                # Keep the lease alive for long passes
                await self.leases.acquire(connection.lease_key, holder, self.lease_ttl_seconds)

                if not page.has_more:
                    break

        await self.registry.record_auth_success(connection)
        await self.registry.mark_synced(connection)
        status = SyncStatus.PARTIAL if summary.item_errors else SyncStatus.COMPLETED
        summary.finish(status)
        log.info(
            f"Sync {status.value}: {summary.activities_processed} activities, "
            f"{summary.skills_touched} skills, {len(summary.item_errors)} item errors "
            f"in {summary.duration_seconds:.2f}s"
        )
        return summary

    async def _fail_auth(self, connection: Connection, summary: SyncSummary, error: AuthError, log) -> SyncSummary:
        # A failed refresh has already moved the connection to error
        if not isinstance(error, ConnectionExpiredError):
            await self.registry.record_auth_failure(connection, error.message)
        log.warning(f"Sync aborted on auth failure: {error.message}")
        return summary.finish(SyncStatus.FAILED, error.message)

    @staticmethod
    def _absorb(summary: SyncSummary, result: InferenceResult, touched: set) -> None:
        touched.update(result.touched)
        summary.activities_processed += result.activities_processed
        summary.skills_touched = len(touched)
        summary.item_errors.extend(f"{e.activity_id}: {e.message}" for e in result.errors)
