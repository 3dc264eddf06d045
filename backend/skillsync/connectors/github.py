"""
GitHub Adapter (source hosting)

Pull sync walks the authenticated user's repositories in a stable order
(full_name). Each repository yields:
- one language-usage activity (bytes per language)
- one code-change activity per commit authored by the user in the window

Required Scopes:
- read:user - Identify the account
- repo - Read private repositories the user can access

Webhooks are verified with HMAC-SHA256 (X-Hub-Signature-256).
"""

import hmac
import logging
from typing import Any, Dict, List, Mapping, Optional

from skillsync.core.clock import parse_timestamp, utcnow
from skillsync.core.config import settings
from skillsync.core.errors import ProviderRequestError, ValidationError
from skillsync.connectors.base import (
    AdapterRegistry,
    AuthenticatedClient,
    ProviderAdapter,
    close_window,
    encode_cursor,
    hmac_sha256_hex,
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
class GitHubAdapter(ProviderAdapter):
    """Repositories, languages and authored commits from GitHub."""

    PROVIDER = Provider.GITHUB
    DISPLAY_NAME = "GitHub"
    CATEGORY = ProviderCategory.SOURCE_HOSTING
    DESCRIPTION = "Repository languages and authored commits from GitHub"
    REQUIRED_SCOPES = ["read:user", "repo"]

    # Repositories per page; every repository costs 2 + commit-count requests
    REPOS_PER_PAGE = 10

    def __init__(self, *args, max_commits_per_repo: Optional[int] = None, repos_per_page: Optional[int] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.max_commits_per_repo = max_commits_per_repo or settings.MAX_COMMITS_PER_REPOSITORY
        self.repos_per_page = repos_per_page or self.REPOS_PER_PAGE

    def auth_headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    # ------------------------------------------------------------------
    # Pull sync
    # ------------------------------------------------------------------

    async def list_activity_since(self, client: AuthenticatedClient, cursor: Optional[str]) -> ActivityPage:
        state = open_window(cursor)
        page = int(state.get("page") or 1)
        login = client.connection.metadata.get("login")

        response = await client.http.get(
            "/user/repos",
            params={
                "sort": "full_name",
                "direction": "asc",
                "per_page": self.repos_per_page,
                "page": page,
                "affiliation": "owner,collaborator,organization_member",
            },
        )
        repos = require_list(client.http.parse_json(response), self.PROVIDER, "repository list")

        activities: List[Activity] = []
        for repo in repos:
            if repo.get("archived") or repo.get("disabled"):
                continue
            activities.extend(await self._repository_activities(client, repo, login, state.get("since")))

        if response.links.get("next"):
            next_cursor = encode_cursor({"page": page + 1, "since": state["since"], "started": state["started"]})
            return ActivityPage(activities=activities, next_cursor=next_cursor, has_more=True)
        return ActivityPage(activities=activities, next_cursor=close_window(state), has_more=False)

    async def _repository_activities(
        self,
        client: AuthenticatedClient,
        repo: Dict[str, Any],
        login: Optional[str],
        since: Optional[str],
    ) -> List[Activity]:
        full_name = require(repo, "full_name", self.PROVIDER, "repository")
        account_id = client.connection.external_account_id
        activities: List[Activity] = []

        languages = await client.http.get_json(f"/repos/{full_name}/languages")
        if languages:
            activities.append(Activity(
                activity_id=f"github:languages:{full_name}",
                provider=Provider.GITHUB,
                kind=ActivityKind.LANGUAGE_USAGE,
                occurred_at=parse_timestamp(repo.get("pushed_at")) or utcnow(),
                subject_identifier=full_name,
                external_account_id=account_id,
                attributes={"languages": languages, "repository": full_name},
            ))

        if not login:
            return activities

        params: Dict[str, Any] = {"author": login, "per_page": self.max_commits_per_repo}
        if since:
            params["since"] = since
        try:
            commits = require_list(
                await client.http.get_json(f"/repos/{full_name}/commits", params=params),
                self.PROVIDER,
                f"{full_name} commit list",
            )
        except ProviderRequestError as e:
            # 409 = empty repository
            if e.status_code == 409:
                return activities
            raise

        for summary in commits[: self.max_commits_per_repo]:
            sha = require(summary, "sha", self.PROVIDER, f"{full_name} commit")
            detail = await client.http.get_json(f"/repos/{full_name}/commits/{sha}")
            activities.append(self._commit_activity(full_name, detail, account_id))
        return activities

    def _commit_activity(self, full_name: str, commit: Dict[str, Any], account_id: str) -> Activity:
        sha = require(commit, "sha", self.PROVIDER, f"{full_name} commit")
        files = [
            {
                "path": f.get("filename"),
                "additions": f.get("additions", 0),
                "deletions": f.get("deletions", 0),
            }
            for f in commit.get("files") or []
            # Push webhooks only list added/modified paths; stay consistent with them
            if f.get("status") != "removed"
        ]
        committed = (commit.get("commit") or {}).get("author") or {}
        occurred_at = parse_timestamp(committed.get("date")) or utcnow()
        stats = commit.get("stats") or {}
        return Activity(
            activity_id=f"github:commit:{sha}",
            provider=Provider.GITHUB,
            kind=ActivityKind.CODE_CHANGE,
            occurred_at=occurred_at,
            subject_identifier=full_name,
            external_account_id=account_id,
            attributes={
                "sha": sha,
                "timestamp": occurred_at.isoformat(),
                "files": files,
                "additions": stats.get("additions", 0),
                "deletions": stats.get("deletions", 0),
            },
        )

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook_signature(self, raw_body: bytes, headers: Mapping[str, str], secret: Optional[str]) -> bool:
        if not secret:
            logger.warning("GITHUB_WEBHOOK_SECRET is not configured; rejecting webhook")
            return False
        signature = headers.get("x-hub-signature-256", "")
        if not signature.startswith("sha256="):
            return False
        expected = "sha256=" + hmac_sha256_hex(secret, raw_body)
        return hmac.compare_digest(signature, expected)

    def extract_event_type(self, headers: Mapping[str, str], payload: Dict[str, Any]) -> Optional[str]:
        return headers.get("x-github-event")

    def delivery_id_from(self, headers: Mapping[str, str], payload: Dict[str, Any]) -> Optional[str]:
        return headers.get("x-github-delivery")

    def subject_for(self, payload: Dict[str, Any]) -> Optional[str]:
        return (payload.get("repository") or {}).get("full_name")

    def normalize_webhook_payload(self, payload: Dict[str, Any], event_type: str) -> Optional[Activity]:
        if event_type == "push":
            return self._normalize_push(payload)
        if event_type == "pull_request":
            return self._normalize_pull_request(payload)
        # ping, installation, member, repository, ...: logged, not evidence
        return None

    def _normalize_push(self, payload: Dict[str, Any]) -> Optional[Activity]:
        repository = payload.get("repository") or {}
        sender = payload.get("sender") or {}
        if not repository.get("full_name") or sender.get("id") is None:
            raise ValidationError("push payload is missing repository or sender", provider=self.PROVIDER.value)

        # Only commits the sender wrote; teammates' commits reach their own records
        login = sender.get("login")
        email = (payload.get("pusher") or {}).get("email")
        commits = []
        for commit in payload.get("commits") or []:
            if not commit.get("distinct", True):
                continue
            author = commit.get("author") or {}
            if not _same_author(author.get("username"), login) and not _same_author(author.get("email"), email):
                continue
            if not commit.get("id"):
                raise ValidationError("push commit is missing its id", provider=self.PROVIDER.value)
            commits.append({
                "sha": commit["id"],
                "timestamp": commit.get("timestamp"),
                "files": list(commit.get("added") or []) + list(commit.get("modified") or []),
            })
        if not commits:
            # Branch/tag creation or deletion, or nothing the sender authored
            return None

        occurred_at = parse_timestamp(commits[-1]["timestamp"]) or utcnow()
        return Activity(
            activity_id=f"github:push:{payload.get('after') or commits[-1]['sha']}",
            provider=Provider.GITHUB,
            kind=ActivityKind.CODE_CHANGE,
            occurred_at=occurred_at,
            subject_identifier=repository["full_name"],
            external_account_id=str(sender["id"]),
            attributes={"ref": payload.get("ref"), "commits": commits},
        )

    def _normalize_pull_request(self, payload: Dict[str, Any]) -> Optional[Activity]:
        pull_request = payload.get("pull_request") or {}
        if payload.get("action") != "closed" or not pull_request.get("merged"):
            return None
        repository = payload.get("repository") or {}
        author = pull_request.get("user") or {}
        if not repository.get("full_name") or author.get("id") is None:
            raise ValidationError("pull_request payload is missing repository or author", provider=self.PROVIDER.value)

        language = repository.get("language")
        sha = pull_request.get("merge_commit_sha") or f"pr-{pull_request.get('number')}"
        return Activity(
            activity_id=f"github:pull:{repository['full_name']}#{pull_request.get('number')}",
            provider=Provider.GITHUB,
            kind=ActivityKind.CODE_CHANGE,
            occurred_at=parse_timestamp(pull_request.get("merged_at")) or utcnow(),
            subject_identifier=repository["full_name"],
            external_account_id=str(author["id"]),
            attributes={
                "commits": [{
                    "sha": sha,
                    "timestamp": pull_request.get("merged_at"),
                    "languages": [language] if language else [],
                }],
                "pull_request": pull_request.get("number"),
            },
        )

    # ------------------------------------------------------------------
    # OAuth / health
    # ------------------------------------------------------------------

    async def fetch_account(self, credential: Credential) -> tuple[str, Dict[str, Any]]:
        async with self.http_client(credential.access_token) as http:
            user = await http.get_json("/user")
        return str(require(user, "id", self.PROVIDER, "user")), {"login": user.get("login")}

    async def probe(self, client: AuthenticatedClient) -> str:
        user = await client.http.get_json("/user")
        return f"Authenticated as {user.get('login', 'unknown')}"


def _same_author(value: Optional[str], expected: Optional[str]) -> bool:
    return bool(value) and bool(expected) and value.lower() == expected.lower()
