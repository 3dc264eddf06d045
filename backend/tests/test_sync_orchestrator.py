"""
Tests for the Sync Orchestrator: paging, checkpoints, resume after failure,
single-flight leases and cancellation.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from skillsync.schemas.integration import ConnectionStatus, Credential, Provider, SyncMode, SyncStatus
from skillsync.schemas.skills import AGGREGATE_SOURCE
from tests.utils.fakes import NOW, broken_activity, build_pages, commit_activity


def _record_checkpoints(registry):
    """Wrap commit_checkpoint to capture every committed cursor."""
    committed = []
    original = registry.commit_checkpoint

    async def commit_checkpoint(connection, cursor):
        committed.append(cursor)
        return await original(connection, cursor)

    registry.commit_checkpoint = commit_checkpoint
    return committed


# =============================================================================
# Paging and checkpoints
# =============================================================================

class TestFullSync:

    @pytest.mark.asyncio
    async def test_three_pages_three_checkpoints(self, orchestrator, registry, connection, scripted_adapter, skill_store):
        """50 + 50 + 10 activities: every page is applied and checkpointed once."""
        scripted_adapter.pages = build_pages(50, 50, 10)
        committed = _record_checkpoints(registry)

        summary = await orchestrator.full_sync(connection)

        assert summary.status == SyncStatus.COMPLETED
        assert summary.mode == SyncMode.FULL
        assert summary.activities_processed == 110
        assert summary.pages_committed == 3
        assert [json.loads(c) for c in committed] == [{"page": 1}, {"page": 2}, {"since": NOW.isoformat()}]

        stored = await registry.require_active("emp-1", Provider.GITHUB)
        assert stored.last_sync_cursor == committed[-1]
        assert stored.last_sync_at is not None

        record = await skill_store.get("emp-1", "Python", AGGREGATE_SOURCE)
        assert record.evidence_count == 110

    @pytest.mark.asyncio
    async def test_full_sync_ignores_stored_cursor(self, orchestrator, registry, connection, scripted_adapter):
        scripted_adapter.pages = build_pages(2, 2)
        await registry.commit_checkpoint(connection, json.dumps({"page": 1}))

        await orchestrator.full_sync(connection)

        assert scripted_adapter.fetched == [0, 1]

    @pytest.mark.asyncio
    async def test_empty_provider(self, orchestrator, connection, scripted_adapter):
        summary = await orchestrator.full_sync(connection)

        assert summary.status == SyncStatus.COMPLETED
        assert summary.activities_processed == 0
        assert summary.pages_committed == 1

    @pytest.mark.asyncio
    async def test_item_errors_make_pass_partial(self, orchestrator, registry, connection, scripted_adapter):
        scripted_adapter.pages = [[commit_activity("c1"), broken_activity()]]

        summary = await orchestrator.full_sync(connection)

        assert summary.status == SyncStatus.PARTIAL
        assert summary.success is True
        assert summary.activities_processed == 1
        assert len(summary.item_errors) == 1
        assert summary.to_dict()["error_count"] == 1
        assert (await registry.require_active("emp-1", Provider.GITHUB)).last_sync_cursor is not None


# =============================================================================
# Failure and resume
# =============================================================================

class TestResume:

    @pytest.mark.asyncio
    async def test_rate_limit_mid_pass_then_resume(self, orchestrator, registry, connection, scripted_adapter, skill_store):
        """Escalated rate limit on page 2 of 3: the pass stops, the next one resumes at page 2."""
        from skillsync.core.errors import RateLimitError

        scripted_adapter.pages = build_pages(50, 50, 10)
        scripted_adapter.failures = {1: RateLimitError("slow down", retry_after=30)}

        failed = await orchestrator.full_sync(connection)

        assert failed.status == SyncStatus.FAILED
        assert failed.pages_committed == 1
        assert json.loads((await registry.require_active("emp-1", Provider.GITHUB)).last_sync_cursor) == {"page": 1}

        resumed = await orchestrator.trigger_sync("emp-1", Provider.GITHUB)

        assert resumed.status == SyncStatus.COMPLETED
        assert resumed.mode == SyncMode.INCREMENTAL
        assert resumed.activities_processed == 60
        assert scripted_adapter.fetched == [0, 1, 2]
        record = await skill_store.get("emp-1", "Python", "github")
        assert record.evidence_count == 110

    @pytest.mark.asyncio
    async def test_crash_between_pages_resumes_from_committed_cursor(
        self, orchestrator, registry, engine, lease_store, connection, scripted_adapter, skill_store
    ):
        from skillsync.services.integrations.orchestrator import SyncOrchestrator

        scripted_adapter.pages = build_pages(50, 50, 10)
        scripted_adapter.failures = {2: RuntimeError("worker died")}

        with pytest.raises(RuntimeError):
            await orchestrator.full_sync(connection)

        stored = await registry.require_active("emp-1", Provider.GITHUB)
        assert json.loads(stored.last_sync_cursor) == {"page": 2}

        other_worker = SyncOrchestrator(registry, engine, lease_store, lease_ttl_seconds=60, worker_id="worker-2")
        summary = await other_worker.incremental_sync(stored)

        assert summary.activities_processed == 10
        assert scripted_adapter.fetched == [0, 1, 2]
        assert (await skill_store.get("emp-1", "Python", AGGREGATE_SOURCE)).evidence_count == 110

    @pytest.mark.asyncio
    async def test_refetched_page_is_absorbed(self, orchestrator, registry, connection, scripted_adapter, skill_store):
        """Re-reading an already applied page leaves skill records as they were."""
        scripted_adapter.pages = build_pages(5, 5)
        await orchestrator.full_sync(connection)
        before = await skill_store.find_by_owner("emp-1")

        summary = await orchestrator.incremental_sync(connection, since_cursor=json.dumps({"page": 1}))

        assert summary.skills_touched == 0
        assert await skill_store.find_by_owner("emp-1") == before

    @pytest.mark.asyncio
    async def test_provider_rate_limit_retried_inside_page(self, engine, lease_store, connection_store):
        """A 429 on page 2 is waited out and the same page is requested again."""
        from skillsync.connectors.github import GitHubAdapter
        from skillsync.core.retry import ExponentialBackoff
        from skillsync.services.integrations.orchestrator import SyncOrchestrator
        from skillsync.services.integrations.registry import ConnectionRegistry
        from tests.utils.fakes import fake_config

        requested_pages = []
        sleeps = []
        throttled = {"done": False}

        def handler(request):
            path = request.url.path.removeprefix("/api")
            if path == "/user/repos":
                page = int(request.url.params["page"])
                requested_pages.append(page)
                if page == 2 and not throttled["done"]:
                    throttled["done"] = True
                    return httpx.Response(429, headers={"Retry-After": "2"})
                headers = {"Link": '<https://provider.test/api/user/repos>; rel="next"'} if page < 3 else {}
                return httpx.Response(200, json=[{"full_name": f"acme/r{page}"}], headers=headers)
            if path.endswith("/languages"):
                return httpx.Response(200, json={"Python": 100})
            return httpx.Response(200, json=[])

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        adapter = GitHubAdapter(
            fake_config(),
            transport=httpx.MockTransport(handler),
            sleep=fake_sleep,
            backoff=ExponentialBackoff(max_retries=3, jitter=False),
        )
        github_registry = ConnectionRegistry(connection_store, {Provider.GITHUB: adapter})
        connection = await github_registry.connect(
            "emp-1",
            Provider.GITHUB,
            Credential(access_token="gho"),
            external_account_id="42",
            metadata={"login": "octo"},
        )

        summary = await SyncOrchestrator(github_registry, engine, lease_store).full_sync(connection)

        assert summary.status == SyncStatus.COMPLETED
        assert summary.pages_committed == 3
        assert summary.activities_processed == 3
        assert requested_pages == [1, 2, 2, 3]
        assert sleeps == [2.0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body, expected", [
        ("<html>maintenance</html>", "non-JSON"),
        ('[{"private": true}]', "full_name"),
    ])
    async def test_unusable_provider_response_fails_pass(self, engine, lease_store, connection_store, body, expected):
        """A maintenance page or a repository without a name ends the pass with a FAILED summary."""
        from skillsync.connectors.github import GitHubAdapter
        from skillsync.core.retry import ExponentialBackoff
        from skillsync.services.integrations.orchestrator import SyncOrchestrator
        from skillsync.services.integrations.registry import ConnectionRegistry
        from tests.utils.fakes import fake_config

        def handler(request):
            return httpx.Response(200, text=body)

        adapter = GitHubAdapter(
            fake_config(),
            transport=httpx.MockTransport(handler),
            backoff=ExponentialBackoff(max_retries=0, jitter=False),
        )
        github_registry = ConnectionRegistry(connection_store, {Provider.GITHUB: adapter})
        connection = await github_registry.connect(
            "emp-1",
            Provider.GITHUB,
            Credential(access_token="gho"),
            external_account_id="42",
            metadata={"login": "octo"},
        )

        summary = await SyncOrchestrator(github_registry, engine, lease_store).full_sync(connection)

        assert summary.status == SyncStatus.FAILED
        assert expected in summary.error
        assert summary.pages_committed == 0
        stored = await github_registry.require_active("emp-1", Provider.GITHUB)
        assert stored.last_sync_cursor is None


# =============================================================================
# Single flight
# =============================================================================

class TestLeases:

    @pytest.mark.asyncio
    async def test_second_pass_rejected_while_first_runs(self, orchestrator, connection, scripted_adapter):
        from skillsync.core.errors import SyncInProgressError

        scripted_adapter.pages = build_pages(1, 1)
        entered = asyncio.Event()
        release = asyncio.Event()

        async def before_fetch(index):
            if index == 1:
                entered.set()
                await release.wait()

        scripted_adapter.before_fetch = before_fetch
        first = asyncio.create_task(orchestrator.full_sync(connection))
        await entered.wait()

        with pytest.raises(SyncInProgressError):
            await orchestrator.trigger_sync("emp-1", Provider.GITHUB)

        release.set()
        assert (await first).status == SyncStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_lease_held_elsewhere(self, orchestrator, connection, lease_store):
        from skillsync.core.errors import SyncInProgressError

        await lease_store.acquire(connection.lease_key, "other-worker", 60)

        with pytest.raises(SyncInProgressError):
            await orchestrator.full_sync(connection)

    @pytest.mark.asyncio
    async def test_expired_lease_taken_over(self, orchestrator, connection, lease_store):
        """A crashed worker's lease lapses and the next pass proceeds."""
        await lease_store.acquire(connection.lease_key, "crashed-worker", 0.05)
        await asyncio.sleep(0.1)

        summary = await orchestrator.full_sync(connection)

        assert summary.status == SyncStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_lease_released_after_pass(self, orchestrator, connection, lease_store):
        await orchestrator.full_sync(connection)

        assert await lease_store.holder(connection.lease_key) is None


# =============================================================================
# Cancellation, auth and lifecycle
# =============================================================================

class TestPassOutcomes:

    @pytest.mark.asyncio
    async def test_cancel_drops_in_flight_page(self, orchestrator, registry, connection, scripted_adapter):
        scripted_adapter.pages = build_pages(3, 3, 3)
        cancel = asyncio.Event()

        async def before_fetch(index):
            if index == 1:
                cancel.set()

        scripted_adapter.before_fetch = before_fetch

        summary = await orchestrator.full_sync(connection, cancel_event=cancel)

        assert summary.status == SyncStatus.CANCELLED
        assert summary.pages_committed == 1
        assert summary.activities_processed == 3
        stored = await registry.require_active("emp-1", Provider.GITHUB)
        assert json.loads(stored.last_sync_cursor) == {"page": 1}

    @pytest.mark.asyncio
    async def test_upstream_auth_failure_counted(self, orchestrator, registry, connection, scripted_adapter):
        from skillsync.core.errors import AuthError

        scripted_adapter.failures = {0: AuthError("401 from provider")}

        summary = await orchestrator.full_sync(connection)

        assert summary.status == SyncStatus.FAILED
        assert (await registry.require_active("emp-1", Provider.GITHUB)).auth_failure_count == 1

    @pytest.mark.asyncio
    async def test_failed_refresh_fails_pass_and_parks_connection(
        self, orchestrator, registry, connection_store, scripted_adapter
    ):
        from skillsync.core.errors import AuthError

        scripted_adapter.refresh_error = AuthError("invalid_grant")
        connection = await registry.connect(
            "emp-1",
            Provider.GITHUB,
            Credential(
                access_token="old",
                refresh_token="r",
                expires_at=datetime.now(timezone.utc) + timedelta(seconds=10),
            ),
            external_account_id="acct-1",
        )

        summary = await orchestrator.full_sync(connection)

        assert summary.status == SyncStatus.FAILED
        stored = await connection_store.get(connection.id)
        assert stored.status == ConnectionStatus.ERROR
        assert stored.auth_failure_count == 0
        assert scripted_adapter.fetched == []

    @pytest.mark.asyncio
    async def test_trigger_without_connection(self, orchestrator):
        from skillsync.core.errors import ConnectionNotFoundError

        with pytest.raises(ConnectionNotFoundError):
            await orchestrator.trigger_sync("nobody", Provider.GITHUB)

    @pytest.mark.asyncio
    async def test_trigger_picks_full_then_incremental(self, orchestrator, connection, scripted_adapter):
        scripted_adapter.pages = build_pages(1)

        first = await orchestrator.trigger_sync("emp-1", Provider.GITHUB)
        second = await orchestrator.trigger_sync("emp-1", Provider.GITHUB)

        assert first.mode == SyncMode.FULL
        assert second.mode == SyncMode.INCREMENTAL

    @pytest.mark.asyncio
    async def test_disconnect_keeps_inferred_skills(self, orchestrator, registry, connection, scripted_adapter, skill_store):
        from skillsync.core.errors import ConnectionNotFoundError

        scripted_adapter.pages = build_pages(3)
        await orchestrator.full_sync(connection)

        await registry.disconnect(connection.id)

        assert len(await skill_store.find_by_owner("emp-1")) == 2
        with pytest.raises(ConnectionNotFoundError):
            await orchestrator.trigger_sync("emp-1", Provider.GITHUB)

    @pytest.mark.asyncio
    async def test_webhook_activity_applied_without_cursor(self, orchestrator, registry, connection, skill_store):
        summary = await orchestrator.handle_webhook_activity("emp-1", commit_activity("w1"), connection)

        assert summary.mode == SyncMode.WEBHOOK
        assert summary.status == SyncStatus.COMPLETED
        assert summary.skills_touched == 1
        assert (await registry.require_active("emp-1", Provider.GITHUB)).last_sync_cursor is None
        assert await skill_store.get("emp-1", "Python", "github") is not None
