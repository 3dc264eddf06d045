"""
GitLab Adapter (generic OAuth provider)

Projects the user is a member of are walked with keyset pagination
(order_by=id, id_after=<last id>), so resuming never skips or repeats a
project even if new ones are created mid-sync.

Webhooks authenticate with a shared static token (X-Gitlab-Token).
"""

import hmac
import logging
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

from skillsync.core.clock import parse_timestamp, utcnow
from skillsync.core.config import settings
from skillsync.core.errors import ValidationError
from skillsync.connectors.base import (
    AdapterRegistry,
    AuthenticatedClient,
    ProviderAdapter,
    close_window,
    encode_cursor,
    open_window,
    require,
    require_list,
)
from skillsync.schemas.integration import (
    Activity,
    ActivityKind,
    ActivityPage,
    Credential,
    Provider,
    ProviderCategory,
)

logger = logging.getLogger(__name__)


@AdapterRegistry.register
class GitLabAdapter(ProviderAdapter):
    """Projects, languages and authored commits from GitLab."""

    PROVIDER = Provider.GITLAB
    DISPLAY_NAME = "GitLab"
    CATEGORY = ProviderCategory.SOURCE_HOSTING
    DESCRIPTION = "Project languages and authored commits from GitLab"
    REQUIRED_SCOPES = ["read_user", "read_api", "read_repository"]

    PROJECTS_PER_PAGE = 10

    def __init__(self, *args, max_commits_per_project: Optional[int] = None, projects_per_page: Optional[int] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.max_commits_per_project = max_commits_per_project or settings.MAX_COMMITS_PER_REPOSITORY
        self.projects_per_page = projects_per_page or self.PROJECTS_PER_PAGE

    async def list_activity_since(self, client: AuthenticatedClient, cursor: Optional[str]) -> ActivityPage:
        state = open_window(cursor)
        id_after = state.get("id_after")

        params: Dict[str, Any] = {
            "membership": "true",
            "archived": "false",
            "pagination": "keyset",
            "order_by": "id",
            "sort": "asc",
            "per_page": self.projects_per_page,
        }
        if id_after:
            params["id_after"] = id_after
        response = await client.http.get("/projects", params=params)
        projects = require_list(client.http.parse_json(response), self.PROVIDER, "project list")

        activities: List[Activity] = []
        for project in projects:
            activities.extend(await self._project_activities(client, project, state.get("since")))

        if projects and response.links.get("next"):
            next_cursor = encode_cursor({
                "id_after": projects[-1]["id"],
                "since": state["since"],
                "started": state["started"],
            })
            return ActivityPage(activities=activities, next_cursor=next_cursor, has_more=True)
        return ActivityPage(activities=activities, next_cursor=close_window(state), has_more=False)

    async def _project_activities(
        self,
        client: AuthenticatedClient,
        project: Dict[str, Any],
        since: Optional[str],
    ) -> List[Activity]:
        project_id = require(project, "id", self.PROVIDER, "project")
        path = project.get("path_with_namespace") or str(project_id)
        account_id = client.connection.external_account_id
        activities: List[Activity] = []

        # Percentages, e.g. {"Python": 81.2, "Shell": 18.8}
        languages = await client.http.get_json(f"/projects/{project_id}/languages")
        if languages:
            activities.append(Activity(
                activity_id=f"gitlab:languages:{path}",
                provider=Provider.GITLAB,
                kind=ActivityKind.LANGUAGE_USAGE,
                occurred_at=parse_timestamp(project.get("last_activity_at")) or utcnow(),
                subject_identifier=path,
                external_account_id=account_id,
                attributes={"languages": languages, "repository": path},
            ))

        author = client.connection.metadata.get("email") or client.connection.metadata.get("username")
        if not author:
            return activities

        params: Dict[str, Any] = {"author": author, "per_page": self.max_commits_per_project, "with_stats": "true"}
        if since:
            params["since"] = since
        commits = require_list(
            await client.http.get_json(f"/projects/{project_id}/repository/commits", params=params),
            self.PROVIDER,
            f"{path} commit list",
        )

        for commit in commits[: self.max_commits_per_project]:
            sha = require(commit, "id", self.PROVIDER, f"{path} commit")
            diffs = require_list(
                await client.http.get_json(f"/projects/{project_id}/repository/commits/{quote(sha, safe='')}/diff"),
                self.PROVIDER,
                f"{path} commit {sha} diff",
            )
            occurred_at = parse_timestamp(commit.get("authored_date") or commit.get("created_at")) or utcnow()
            stats = commit.get("stats") or {}
            activities.append(Activity(
                activity_id=f"gitlab:commit:{sha}",
                provider=Provider.GITLAB,
                kind=ActivityKind.CODE_CHANGE,
                occurred_at=occurred_at,
                subject_identifier=path,
                external_account_id=account_id,
                attributes={
                    "sha": sha,
                    "timestamp": occurred_at.isoformat(),
                    "files": [d.get("new_path") for d in diffs if not d.get("deleted_file")],
                    "additions": stats.get("additions", 0),
                    "deletions": stats.get("deletions", 0),
                },
            ))
        return activities

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook_signature(self, raw_body: bytes, headers: Mapping[str, str], secret: Optional[str]) -> bool:
        if not secret:
            logger.warning("GITLAB_WEBHOOK_TOKEN is not configured; rejecting webhook")
            return False
        token = headers.get("x-gitlab-token", "")
        return hmac.compare_digest(token.encode(), secret.encode())

    def extract_event_type(self, headers: Mapping[str, str], payload: Dict[str, Any]) -> Optional[str]:
        return headers.get("x-gitlab-event") or payload.get("object_kind")

    def delivery_id_from(self, headers: Mapping[str, str], payload: Dict[str, Any]) -> Optional[str]:
        return headers.get("x-gitlab-event-uuid")

    def extract_action(self, payload: Dict[str, Any]) -> Optional[str]:
        return (payload.get("object_attributes") or {}).get("action")

    def subject_for(self, payload: Dict[str, Any]) -> Optional[str]:
        return (payload.get("project") or {}).get("path_with_namespace")

    def normalize_webhook_payload(self, payload: Dict[str, Any], event_type: str) -> Optional[Activity]:
        if event_type in ("Push Hook", "push"):
            return self._normalize_push(payload)
        if event_type in ("Merge Request Hook", "merge_request"):
            return self._normalize_merge_request(payload)
        return None

    def _normalize_push(self, payload: Dict[str, Any]) -> Optional[Activity]:
        project = payload.get("project") or {}
        if not project.get("path_with_namespace") or payload.get("user_id") is None:
            raise ValidationError("Push Hook payload is missing project or user", provider=self.PROVIDER.value)

        # Commit authors carry only name and email; keep the ones matching the pusher
        email = payload.get("user_email")
        name = payload.get("user_name")
        commits = []
        for commit in payload.get("commits") or []:
            author = commit.get("author") or {}
            if not _same_author(author.get("email"), email) and not _same_author(author.get("name"), name):
                continue
            if not commit.get("id"):
                raise ValidationError("Push Hook commit is missing its id", provider=self.PROVIDER.value)
            commits.append({
                "sha": commit["id"],
                "timestamp": commit.get("timestamp"),
                "files": list(commit.get("added") or []) + list(commit.get("modified") or []),
            })
        if not commits:
            return None

        return Activity(
            activity_id=f"gitlab:push:{payload.get('checkout_sha') or payload.get('after') or commits[-1]['sha']}",
            provider=Provider.GITLAB,
            kind=ActivityKind.CODE_CHANGE,
            occurred_at=parse_timestamp(commits[-1]["timestamp"]) or utcnow(),
            subject_identifier=project["path_with_namespace"],
            external_account_id=str(payload["user_id"]),
            attributes={"ref": payload.get("ref"), "commits": commits},
        )

    def _normalize_merge_request(self, payload: Dict[str, Any]) -> Optional[Activity]:
        attrs = payload.get("object_attributes") or {}
        if attrs.get("action") != "merge":
            return None
        project = payload.get("project") or {}
        author_id = attrs.get("author_id")
        if not project.get("path_with_namespace") or author_id is None:
            raise ValidationError("Merge Request Hook payload is missing project or author", provider=self.PROVIDER.value)

        language = (payload.get("repository") or {}).get("language") or project.get("language")
        return Activity(
            activity_id=f"gitlab:merge:{project['path_with_namespace']}!{attrs.get('iid')}",
            provider=Provider.GITLAB,
            kind=ActivityKind.CODE_CHANGE,
            occurred_at=parse_timestamp(attrs.get("updated_at")) or utcnow(),
            subject_identifier=project["path_with_namespace"],
            external_account_id=str(author_id),
            attributes={
                "commits": [{
                    "sha": attrs.get("merge_commit_sha") or f"mr-{attrs.get('iid')}",
                    "timestamp": attrs.get("updated_at"),
                    "languages": [language] if language else [],
                }],
                "merge_request": attrs.get("iid"),
            },
        )

    # ------------------------------------------------------------------
    # OAuth / health
    # ------------------------------------------------------------------

    async def fetch_account(self, credential: Credential) -> tuple[str, Dict[str, Any]]:
        async with self.http_client(credential.access_token) as http:
            user = await http.get_json("/user")
        return str(require(user, "id", self.PROVIDER, "user")), {"username": user.get("username"), "email": user.get("email")}

    async def probe(self, client: AuthenticatedClient) -> str:
        user = await client.http.get_json("/user")
        return f"Authenticated as {user.get('username', 'unknown')}"


def _same_author(value: Optional[str], expected: Optional[str]) -> bool:
    return bool(value) and bool(expected) and value.lower() == expected.lower()
