"""
Jira Cloud Adapter (issue tracker)

Pull sync runs one JQL search over issues the user is assigned to or
reported, ordered by (updated, key) and bounded above by the moment the pass
started, so offsets stay stable while the pass pages through.

Required Scopes:
- read:jira-work - Read issues
- read:jira-user - Identify the account
- offline_access - Refresh tokens

API requests go through the Atlassian gateway:
    https://api.atlassian.com/ex/jira/{cloud_id}/rest/api/3/...
"""

import hmac
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from skillsync.core.clock import parse_timestamp, utcnow
from skillsync.core.config import settings
from skillsync.core.errors import AuthError, ValidationError
from skillsync.connectors.base import (
    AdapterRegistry,
    AuthenticatedClient,
    ProviderAdapter,
    close_window,
    encode_cursor,
    hmac_sha256_hex,
    open_window,
)
from skillsync.schemas.integration import (
    Activity,
    ActivityKind,
    ActivityPage,
    Connection,
    Credential,
    Provider,
    ProviderCategory,
)

logger = logging.getLogger(__name__)

ISSUE_FIELDS = "summary,labels,components,issuetype,project,status,resolution,resolutiondate,updated,assignee,reporter"


def _jql_time(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M")


@AdapterRegistry.register
class JiraAdapter(ProviderAdapter):
    """Assigned and reported issues from Jira Cloud."""

    PROVIDER = Provider.JIRA
    DISPLAY_NAME = "Jira"
    CATEGORY = ProviderCategory.ISSUE_TRACKER
    DESCRIPTION = "Labels, components and delivery history from Jira issues"
    REQUIRED_SCOPES = ["read:jira-work", "read:jira-user", "offline_access"]
    TOKEN_REQUEST_JSON = True

    def extra_authorize_params(self) -> Dict[str, str]:
        return {"audience": "api.atlassian.com", "prompt": "consent"}

    def api_base_url(self, connection: Optional[Connection] = None) -> str:
        cloud_id = (connection.metadata.get("cloud_id") if connection else None)
        if not cloud_id:
            raise ValidationError(
                "Jira connection has no cloud_id; reconnect the integration",
                provider=self.PROVIDER.value,
                connection_id=connection.id if connection else None,
            )
        return f"{self.config.api_base_url}/{cloud_id}"

    # ------------------------------------------------------------------
    # Pull sync
    # ------------------------------------------------------------------

    def build_jql(self, since: Optional[str], started: str) -> str:
        clauses = ["(assignee = currentUser() OR reporter = currentUser())"]
        since_at = parse_timestamp(since)
        if since_at:
            # JQL dates are read in the user's profile timezone; the ledger absorbs the overlap
            lower = since_at - timedelta(days=1)
            clauses.append(f'updated >= "{lower.strftime("%Y-%m-%d")}"')
        clauses.append(f'updated <= "{_jql_time(parse_timestamp(started))}"')
        return " AND ".join(clauses) + " ORDER BY updated ASC, key ASC"

    async def list_activity_since(self, client: AuthenticatedClient, cursor: Optional[str]) -> ActivityPage:
        state = open_window(cursor)
        start_at = int(state.get("start_at") or 0)

        body = await client.http.get_json(
            "/rest/api/3/search",
            params={
                "jql": self.build_jql(state.get("since"), state["started"]),
                "startAt": start_at,
                "maxResults": self.page_size,
                "fields": ISSUE_FIELDS,
            },
        )
        issues = body.get("issues") or []
        activities = [
            self._issue_activity(issue, client.connection.external_account_id)
            for issue in issues
        ]

        fetched = start_at + len(issues)
        if issues and fetched < int(body.get("total") or 0):
            next_cursor = encode_cursor({"start_at": fetched, "since": state["since"], "started": state["started"]})
            return ActivityPage(activities=activities, next_cursor=next_cursor, has_more=True)
        return ActivityPage(activities=activities, next_cursor=close_window(state), has_more=False)

    def _issue_activity(self, issue: Dict[str, Any], account_id: Optional[str]) -> Activity:
        fields = issue.get("fields") or {}
        key = issue.get("key")
        if not key:
            raise ValidationError("Jira issue without a key", provider=self.PROVIDER.value)
        project = (fields.get("project") or {}).get("key") or key.split("-")[0]
        status = fields.get("status") or {}
        resolved = bool(fields.get("resolution")) or (status.get("statusCategory") or {}).get("key") == "done"
        occurred_at = (
            parse_timestamp(fields.get("resolutiondate"))
            or parse_timestamp(fields.get("updated"))
            or utcnow()
        )
        return Activity(
            activity_id=f"jira:issue:{key}",
            provider=Provider.JIRA,
            kind=ActivityKind.ISSUE,
            occurred_at=occurred_at,
            subject_identifier=project,
            external_account_id=account_id,
            attributes={
                "key": key,
                "labels": list(fields.get("labels") or []),
                "components": [c.get("name") for c in fields.get("components") or [] if c.get("name")],
                "issue_type": (fields.get("issuetype") or {}).get("name"),
                "project": project,
                "status": status.get("name"),
                "resolved": resolved,
            },
        )

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook_signature(self, raw_body: bytes, headers: Mapping[str, str], secret: Optional[str]) -> bool:
        if not secret:
            logger.warning("JIRA_WEBHOOK_SECRET is not configured; rejecting webhook")
            return False
        signature = headers.get("x-hub-signature", "")
        if not signature.startswith("sha256="):
            return False
        expected = "sha256=" + hmac_sha256_hex(secret, raw_body)
        return hmac.compare_digest(signature, expected)

    def extract_event_type(self, headers: Mapping[str, str], payload: Dict[str, Any]) -> Optional[str]:
        return payload.get("webhookEvent")

    def delivery_id_from(self, headers: Mapping[str, str], payload: Dict[str, Any]) -> Optional[str]:
        return headers.get("x-atlassian-webhook-identifier")

    def extract_action(self, payload: Dict[str, Any]) -> Optional[str]:
        return payload.get("issue_event_type_name")

    def subject_for(self, payload: Dict[str, Any]) -> Optional[str]:
        issue = payload.get("issue") or {}
        project = ((issue.get("fields") or {}).get("project") or {}).get("key")
        if project:
            return project
        key = issue.get("key")
        return key.split("-")[0] if key else None

    def normalize_webhook_payload(self, payload: Dict[str, Any], event_type: str) -> Optional[Activity]:
        if event_type in ("jira:issue_created", "jira:issue_updated"):
            issue = payload.get("issue")
            if not issue or not issue.get("key"):
                raise ValidationError(f"{event_type} payload has no issue", provider=self.PROVIDER.value)
            assignee = (issue.get("fields") or {}).get("assignee") or {}
            actor = payload.get("user") or {}
            account_id = assignee.get("accountId") or actor.get("accountId")
            if not account_id:
                raise ValidationError(f"{event_type} payload names no user", provider=self.PROVIDER.value)
            return self._issue_activity(issue, account_id)

        if event_type == "comment_created":
            comment = payload.get("comment") or {}
            issue = payload.get("issue") or {}
            author = (comment.get("author") or {}).get("accountId")
            if not comment.get("id") or not author:
                raise ValidationError("comment_created payload is missing comment or author", provider=self.PROVIDER.value)
            subject = self.subject_for(payload) or "unknown"
            return Activity(
                activity_id=f"jira:comment:{comment['id']}",
                provider=Provider.JIRA,
                kind=ActivityKind.MESSAGE,
                occurred_at=parse_timestamp(comment.get("created")) or utcnow(),
                subject_identifier=subject,
                external_account_id=author,
                # Comment bodies are never kept
                attributes={"issue": issue.get("key")},
            )

        # jira:issue_deleted, worklog_*, sprint_*: nothing to learn from
        return None

    # ------------------------------------------------------------------
    # OAuth / health
    # ------------------------------------------------------------------

    async def fetch_account(self, credential: Credential) -> tuple[str, Dict[str, Any]]:
        async with self.http_client(credential.access_token, base_url="") as http:
            resources = await http.get_json(settings.JIRA_RESOURCES_URL)
            if not resources:
                raise AuthError("Token grants access to no Jira site", provider=self.PROVIDER.value)
            site = resources[0]
            me = await http.get_json(f"{self.config.api_base_url}/{site['id']}/rest/api/3/myself")
        return me["accountId"], {
            "cloud_id": site["id"],
            "site_url": site.get("url"),
            "display_name": me.get("displayName"),
        }

    async def probe(self, client: AuthenticatedClient) -> str:
        me = await client.http.get_json("/rest/api/3/myself")
        return f"Authenticated as {me.get('displayName', 'unknown')}"
