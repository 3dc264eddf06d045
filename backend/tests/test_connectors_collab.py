"""
Tests for the Jira and Slack adapters and the shared OAuth plumbing.
"""

import json
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from skillsync.connectors.base import AuthenticatedClient, hmac_sha256_hex
from skillsync.schemas.integration import ActivityKind, Connection, Credential, Provider
from tests.utils.fakes import WEBHOOK_SECRET, fake_config


def _client(adapter, provider, account="acct-1", metadata=None):
    connection = Connection(
        owner_id="emp-1",
        provider=provider,
        external_account_id=account,
        credential=Credential(access_token="tok"),
        metadata=metadata or {},
    )
    return AuthenticatedClient(connection=connection, http=adapter.http_client("tok"))


def _issue(key, labels=(), resolved=False, updated="2026-02-01T10:00:00.000+0000"):
    fields = {
        "labels": list(labels),
        "components": [{"name": "Payments"}],
        "issuetype": {"name": "Story"},
        "project": {"key": key.split("-")[0]},
        "status": {"name": "Done" if resolved else "In Progress"},
        "resolution": {"name": "Fixed"} if resolved else None,
        "updated": updated,
    }
    return {"key": key, "fields": fields}


# =============================================================================
# Jira
# =============================================================================

class TestJiraAdapter:

    def _adapter(self, handler=None, **kwargs):
        from skillsync.connectors.jira import JiraAdapter
        transport = httpx.MockTransport(handler) if handler else None
        return JiraAdapter(fake_config(), transport=transport, **kwargs)

    def test_jql_bounded_by_pass_start(self):
        adapter = self._adapter()

        full = adapter.build_jql(None, "2026-03-01T12:00:00+00:00")
        incremental = adapter.build_jql("2026-02-01T08:30:00+00:00", "2026-03-01T12:00:00+00:00")

        assert full == (
            '(assignee = currentUser() OR reporter = currentUser()) '
            'AND updated <= "2026-03-01 12:00" ORDER BY updated ASC, key ASC'
        )
        assert 'updated >= "2026-01-31"' in incremental
        assert 'updated <= "2026-03-01 12:00"' in incremental

    def test_jql_lower_bound_covers_profile_timezones(self):
        adapter = self._adapter()

        # 00:30 UTC is still the previous evening for users west of UTC
        jql = adapter.build_jql("2026-03-02T00:30:00+00:00", "2026-03-02T06:00:00+00:00")

        assert 'updated >= "2026-03-01"' in jql

    @pytest.mark.asyncio
    async def test_search_pages_by_offset(self):
        requests = []

        def handler(request):
            params = dict(request.url.params)
            requests.append(params)
            start = int(params["startAt"])
            issues = [_issue("PAY-1", ["backend"]), _issue("PAY-2", resolved=True)] if start == 0 else [_issue("PAY-3")]
            return httpx.Response(200, json={"startAt": start, "total": 3, "issues": issues})

        adapter = self._adapter(handler, page_size=2)

        async with _client(adapter, Provider.JIRA) as client:
            first = await adapter.list_activity_since(client, None)
            second = await adapter.list_activity_since(client, first.next_cursor)

        assert first.has_more is True
        assert [a.activity_id for a in first.activities] == ["jira:issue:PAY-1", "jira:issue:PAY-2"]
        assert first.activities[1].attributes["resolved"] is True
        assert first.activities[0].attributes["components"] == ["Payments"]
        assert second.has_more is False
        assert requests[1]["startAt"] == "2"
        # The upper bound does not move while the pass pages through
        assert requests[0]["jql"] == requests[1]["jql"]

    def test_api_base_url_requires_cloud_id(self):
        from skillsync.core.errors import ValidationError

        adapter = self._adapter()
        connection = Connection(owner_id="emp-1", provider=Provider.JIRA, external_account_id="a", credential=Credential("t"))

        with pytest.raises(ValidationError):
            adapter.api_base_url(connection)

        connection.metadata["cloud_id"] = "cloud-9"
        assert adapter.api_base_url(connection) == "https://provider.test/api/cloud-9"

    def test_signature(self):
        adapter = self._adapter()
        raw = b'{"webhookEvent": "jira:issue_updated"}'

        good = {"x-hub-signature": "sha256=" + hmac_sha256_hex(WEBHOOK_SECRET, raw)}

        assert adapter.verify_webhook_signature(raw, good, WEBHOOK_SECRET) is True
        assert adapter.verify_webhook_signature(raw, {"x-hub-signature": "sha256=00"}, WEBHOOK_SECRET) is False

    def test_issue_updated_uses_assignee(self):
        adapter = self._adapter()
        issue = _issue("PAY-7", ["react"])
        issue["fields"]["assignee"] = {"accountId": "jira-acct"}
        payload = {"webhookEvent": "jira:issue_updated", "issue": issue, "user": {"accountId": "someone-else"}}

        activity = adapter.normalize_webhook_payload(payload, adapter.extract_event_type({}, payload))

        assert activity.kind == ActivityKind.ISSUE
        assert activity.external_account_id == "jira-acct"
        assert activity.subject_identifier == "PAY"
        assert activity.attributes["labels"] == ["react"]

    def test_comment_keeps_no_body(self):
        adapter = self._adapter()
        payload = {
            "webhookEvent": "comment_created",
            "issue": {"key": "PAY-7"},
            "comment": {"id": "10001", "body": "secret plans", "author": {"accountId": "jira-acct"}},
        }

        activity = adapter.normalize_webhook_payload(payload, "comment_created")

        assert activity.activity_id == "jira:comment:10001"
        assert activity.kind == ActivityKind.MESSAGE
        assert "secret plans" not in json.dumps(dict(activity.attributes))

    def test_issue_event_without_issue_is_malformed(self):
        from skillsync.core.errors import ValidationError

        with pytest.raises(ValidationError):
            self._adapter().normalize_webhook_payload({"webhookEvent": "jira:issue_created"}, "jira:issue_created")

    def test_other_events_ignored(self):
        assert self._adapter().normalize_webhook_payload({}, "jira:issue_deleted") is None

    def test_authorization_url_asks_for_consent(self):
        url = self._adapter().authorization_url("state-1")
        query = parse_qs(urlparse(url).query)

        assert query["audience"] == ["api.atlassian.com"]
        assert query["scope"] == ["read:jira-work read:jira-user offline_access"]
        assert query["state"] == ["state-1"]

    @pytest.mark.asyncio
    async def test_exchange_code_posts_json_and_finds_site(self):
        bodies = []

        def handler(request):
            url = str(request.url)
            if url == "https://provider.test/oauth/token":
                bodies.append(json.loads(request.content))
                return httpx.Response(200, json={"access_token": "at", "refresh_token": "rt", "expires_in": 3600})
            if url == "https://api.atlassian.com/oauth/token/accessible-resources":
                return httpx.Response(200, json=[{"id": "cloud-9", "url": "https://acme.atlassian.net"}])
            if url == "https://provider.test/api/cloud-9/rest/api/3/myself":
                return httpx.Response(200, json={"accountId": "jira-acct", "displayName": "Dev"})
            return httpx.Response(404)

        grant = await self._adapter(handler).exchange_code("code-1")

        assert bodies[0]["grant_type"] == "authorization_code"
        assert bodies[0]["code"] == "code-1"
        assert grant.external_account_id == "jira-acct"
        assert grant.metadata["cloud_id"] == "cloud-9"
        assert grant.credential.expires_at is not None


# =============================================================================
# Slack
# =============================================================================

class TestSlackAdapter:

    NOW = 1772366400

    def _adapter(self, handler=None, **kwargs):
        from skillsync.connectors.slack import SlackAdapter
        transport = httpx.MockTransport(handler) if handler else None
        return SlackAdapter(fake_config(), transport=transport, clock=lambda: self.NOW, **kwargs)

    def _signed(self, raw, timestamp):
        signature = "v0=" + hmac_sha256_hex(WEBHOOK_SECRET, f"v0:{timestamp}:".encode() + raw)
        return {"x-slack-request-timestamp": str(timestamp), "x-slack-signature": signature}

    def test_v0_signature(self):
        raw = b'{"type": "event_callback"}'

        assert self._adapter().verify_webhook_signature(raw, self._signed(raw, self.NOW - 10), WEBHOOK_SECRET) is True

    def test_stale_timestamp_rejected(self):
        """A correctly signed but old request is a replay."""
        raw = b'{"type": "event_callback"}'

        assert self._adapter().verify_webhook_signature(raw, self._signed(raw, self.NOW - 600), WEBHOOK_SECRET) is False

    def test_missing_timestamp_rejected(self):
        assert self._adapter().verify_webhook_signature(b"{}", {"x-slack-signature": "v0=ab"}, WEBHOOK_SECRET) is False

    def test_url_verification_handshake(self):
        payload = {"type": "url_verification", "challenge": "3eZbrw1aBm2rZgRNFdxV2595E9CY3gmdALWMmHkvFXO7tYXAYM8P"}

        adapter = self._adapter()

        assert adapter.handshake_response(payload, adapter.extract_event_type({}, payload)) == {
            "challenge": payload["challenge"]
        }

    def test_message_event_normalized(self):
        payload = {
            "type": "event_callback",
            "event_id": "Ev1",
            "event": {"type": "message", "user": "U1", "channel": "C1", "ts": "1772366000.000200", "text": "hi"},
        }
        adapter = self._adapter()

        activity = adapter.normalize_webhook_payload(payload, adapter.extract_event_type({}, payload))

        assert activity.activity_id == "slack:message:C1:1772366000.000200"
        assert activity.kind == ActivityKind.MESSAGE
        assert "text" not in activity.attributes
        assert adapter.extract_delivery_id({}, payload, b"") == "Ev1"

    @pytest.mark.parametrize("event", [
        {"type": "message", "subtype": "message_changed", "channel": "C1", "ts": "1"},
        {"type": "message", "bot_id": "B1", "channel": "C1", "ts": "1"},
    ])
    def test_edits_and_bots_ignored(self, event):
        payload = {"type": "event_callback", "event": event}

        assert self._adapter().normalize_webhook_payload(payload, "message") is None

    def test_message_without_user_is_malformed(self):
        from skillsync.core.errors import ValidationError

        payload = {"type": "event_callback", "event": {"type": "message", "channel": "C1", "ts": "1"}}

        with pytest.raises(ValidationError):
            self._adapter().normalize_webhook_payload(payload, "message")

    def test_search_query_window(self):
        adapter = self._adapter()

        assert adapter.build_query("U1", None) == "from:<@U1>"
        assert adapter.build_query("U1", "2026-02-10T05:00:00+00:00") == "from:<@U1> after:2026-02-09"

    @pytest.mark.asyncio
    async def test_search_pages(self):
        def handler(request):
            page = int(request.url.params["page"])
            matches = [{"ts": f"17723660{page}0.000100", "channel": {"id": "C1"}, "user": "U1"}]
            return httpx.Response(200, json={
                "ok": True,
                "messages": {"matches": matches, "paging": {"page": page, "pages": 2}},
            })

        adapter = self._adapter(handler)

        async with _client(adapter, Provider.SLACK, account="U1") as client:
            first = await adapter.list_activity_since(client, None)
            second = await adapter.list_activity_since(client, first.next_cursor)

        assert first.has_more is True
        assert second.has_more is False
        assert first.activities[0].subject_identifier == "C1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error, expected", [
        ("invalid_auth", "AuthError"),
        ("token_revoked", "AuthError"),
        ("channel_not_found", "ProviderRequestError"),
    ])
    async def test_ok_false_mapped_to_errors(self, error, expected):
        from skillsync.core import errors

        adapter = self._adapter(lambda request: httpx.Response(200, json={"ok": False, "error": error}))

        async with _client(adapter, Provider.SLACK, account="U1") as client:
            with pytest.raises(getattr(errors, expected)):
                await adapter.list_activity_since(client, None)

    @pytest.mark.asyncio
    async def test_ratelimited_reply_waits_and_refetches_same_page(self):
        from skillsync.core.retry import ExponentialBackoff

        sleeps, pages = [], []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        def handler(request):
            pages.append(request.url.params["page"])
            if len(pages) == 1:
                return httpx.Response(200, headers={"Retry-After": "3"}, json={"ok": False, "error": "ratelimited"})
            matches = [{"ts": "1772366400.000100", "channel": {"id": "C1"}, "user": "U1"}]
            return httpx.Response(200, json={"ok": True, "messages": {"matches": matches, "paging": {"page": 1, "pages": 1}}})

        adapter = self._adapter(handler, sleep=fake_sleep, backoff=ExponentialBackoff(max_retries=3, jitter=False))

        async with _client(adapter, Provider.SLACK, account="U1") as client:
            page = await adapter.list_activity_since(client, None)

        assert sleeps == [3.0]
        assert pages == ["1", "1"]
        assert len(page.activities) == 1

    @pytest.mark.asyncio
    async def test_ratelimited_reply_escalates_after_retries(self):
        from skillsync.core.errors import RateLimitError
        from skillsync.core.retry import ExponentialBackoff

        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        adapter = self._adapter(
            lambda request: httpx.Response(200, json={"ok": False, "error": "ratelimited"}),
            sleep=fake_sleep,
            backoff=ExponentialBackoff(max_retries=2, base_delay=1.0, jitter=False),
        )

        async with _client(adapter, Provider.SLACK, account="U1") as client:
            with pytest.raises(RateLimitError):
                await adapter.list_activity_since(client, None)

        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_user_token_taken_from_authed_user(self):
        def handler(request):
            if request.url.path.endswith("/oauth/token"):
                return httpx.Response(200, json={
                    "ok": True,
                    "access_token": "xoxb-bot",
                    "authed_user": {"id": "U1", "access_token": "xoxp-user", "scope": "search:read"},
                })
            return httpx.Response(200, json={"ok": True, "user_id": "U1", "team_id": "T1", "user": "dev"})

        grant = await self._adapter(handler).exchange_code("code-1")

        assert grant.credential.access_token == "xoxp-user"
        assert grant.external_account_id == "U1"
        assert grant.metadata["team_id"] == "T1"

    def test_authorization_url_uses_user_scope(self):
        query = parse_qs(urlparse(self._adapter().authorization_url("s")).query)

        assert query["user_scope"] == ["search:read"]
        assert "scope" not in query


# =============================================================================
# Shared OAuth plumbing
# =============================================================================

class TestTokenRefresh:

    def _adapter(self, handler):
        from skillsync.connectors.gitlab import GitLabAdapter
        return GitLabAdapter(fake_config(), transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_refresh_keeps_refresh_token_when_not_rotated(self):
        forms = []

        def handler(request):
            forms.append(parse_qs(request.content.decode()))
            return httpx.Response(200, json={"access_token": "new-at", "expires_in": 7200})

        previous = Credential(
            access_token="old-at",
            refresh_token="rt",
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=1),
        )

        refreshed = await self._adapter(handler).refresh_credential(previous)

        assert forms[0]["grant_type"] == ["refresh_token"]
        assert forms[0]["refresh_token"] == ["rt"]
        assert refreshed.access_token == "new-at"
        assert refreshed.refresh_token == "rt"

    @pytest.mark.asyncio
    async def test_rejected_refresh_raises_auth_error(self):
        from skillsync.core.errors import AuthError

        adapter = self._adapter(lambda request: httpx.Response(400, json={"error": "invalid_grant"}))
        previous = Credential(access_token="a", refresh_token="rt", expires_at=datetime.now(timezone.utc))

        with pytest.raises(AuthError):
            await adapter.refresh_credential(previous)

    @pytest.mark.asyncio
    async def test_non_expiring_token_left_alone(self):
        from tests.utils.fakes import _unreachable

        credential = Credential(access_token="a")

        assert await self._adapter(_unreachable).refresh_credential(credential) is credential

    def test_unconfigured_provider_has_no_authorize_url(self):
        from skillsync.connectors.gitlab import GitLabAdapter
        from skillsync.core.errors import ValidationError

        config = fake_config()
        config.client_id = None

        with pytest.raises(ValidationError):
            GitLabAdapter(config).authorization_url("state")
