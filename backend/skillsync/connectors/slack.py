"""
Slack Adapter (team messaging)

Only message metadata is collected: who posted, where and when. Message text
is never stored; a posted message is evidence of collaboration, nothing more.

Required Scopes (user token):
- search:read - Find the user's own messages

Slack Web API methods answer HTTP 200 with {"ok": false, "error": ...} on
failure, so every call goes through _call() which maps those errors.
"ratelimited" is caught earlier by rate_limit_check, so the shared client
waits and retries the same request like any other rate limit.
"""

import hmac
import logging
import time
from datetime import timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx

from skillsync.core.clock import parse_timestamp, utcnow
from skillsync.core.config import settings
from skillsync.core.errors import AuthError, ProviderRequestError, ValidationError
from skillsync.connectors.base import (
    AdapterRegistry,
    AuthenticatedClient,
    ProviderAdapter,
    close_window,
    encode_cursor,
    hmac_sha256_hex,
    open_window,
)
from skillsync.connectors.http import RateLimitedClient, parse_retry_after
from skillsync.schemas.integration import (
    Activity,
    ActivityKind,
    ActivityPage,
    Credential,
    Provider,
    ProviderCategory,
)

logger = logging.getLogger(__name__)

AUTH_ERRORS = {"invalid_auth", "not_authed", "token_revoked", "token_expired", "account_inactive"}


@AdapterRegistry.register
class SlackAdapter(ProviderAdapter):
    """Message activity from Slack."""

    PROVIDER = Provider.SLACK
    DISPLAY_NAME = "Slack"
    CATEGORY = ProviderCategory.MESSAGING
    DESCRIPTION = "Collaboration signal from Slack message activity"
    REQUIRED_SCOPES = ["search:read"]
    SCOPE_SEPARATOR = ","
    SCOPE_PARAM = "user_scope"

    def __init__(self, *args, clock: Optional[Callable[[], float]] = None, max_signature_age: Optional[int] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._clock = clock or time.time
        self.max_signature_age = max_signature_age or settings.SLACK_SIGNATURE_MAX_AGE_SECONDS

    def rate_limit_check(self, response: httpx.Response) -> tuple[bool, Optional[float]]:
        limited, delay = super().rate_limit_check(response)
        if limited or response.status_code != 200:
            return limited, delay
        # ratelimited also arrives as a 200 with {"ok": false}
        try:
            body = response.json()
        except ValueError:
            return False, None
        if isinstance(body, dict) and body.get("ok") is False and body.get("error") == "ratelimited":
            return True, parse_retry_after(response.headers.get("retry-after"))
        return False, None

    async def _call(self, http: RateLimitedClient, method: str, **params) -> Dict[str, Any]:
        body = await http.get_json(f"/{method}", params=params)
        if body.get("ok"):
            return body
        error = body.get("error", "unknown_error")
        if error in AUTH_ERRORS:
            raise AuthError(f"Slack rejected the credential: {error}", provider=self.PROVIDER.value)
        raise ProviderRequestError(f"Slack {method} failed: {error}", provider=self.PROVIDER.value)

    # ------------------------------------------------------------------
    # Pull sync
    # ------------------------------------------------------------------

    def build_query(self, user_id: str, since: Optional[str]) -> str:
        query = f"from:<@{user_id}>"
        since_at = parse_timestamp(since)
        if since_at:
            # after: is exclusive and day-granular; the ledger absorbs the overlap
            query += f" after:{(since_at - timedelta(days=1)).strftime('%Y-%m-%d')}"
        return query

    async def list_activity_since(self, client: AuthenticatedClient, cursor: Optional[str]) -> ActivityPage:
        state = open_window(cursor)
        page = int(state.get("page") or 1)
        user_id = client.connection.external_account_id

        body = await self._call(
            client.http,
            "search.messages",
            query=self.build_query(user_id, state.get("since")),
            sort="timestamp",
            sort_dir="asc",
            count=self.page_size,
            page=page,
        )
        messages = body.get("messages") or {}
        activities: List[Activity] = []
        for match in messages.get("matches") or []:
            channel = match.get("channel") or {}
            if not match.get("ts") or not channel.get("id"):
                continue
            activities.append(self._message_activity(channel["id"], match["ts"], match.get("user") or user_id))

        paging = messages.get("paging") or {}
        if page < int(paging.get("pages") or 0):
            next_cursor = encode_cursor({"page": page + 1, "since": state["since"], "started": state["started"]})
            return ActivityPage(activities=activities, next_cursor=next_cursor, has_more=True)
        return ActivityPage(activities=activities, next_cursor=close_window(state), has_more=False)

    def _message_activity(self, channel: str, ts: str, user_id: str) -> Activity:
        return Activity(
            activity_id=f"slack:message:{channel}:{ts}",
            provider=Provider.SLACK,
            kind=ActivityKind.MESSAGE,
            occurred_at=parse_timestamp(ts) or utcnow(),
            subject_identifier=channel,
            external_account_id=user_id,
            attributes={"channel": channel},
        )

    # ------------------------------------------------------------------
    # Webhooks (Events API)
    # ------------------------------------------------------------------

    def verify_webhook_signature(self, raw_body: bytes, headers: Mapping[str, str], secret: Optional[str]) -> bool:
        if not secret:
            logger.warning("SLACK_SIGNING_SECRET is not configured; rejecting webhook")
            return False
        timestamp = headers.get("x-slack-request-timestamp", "")
        signature = headers.get("x-slack-signature", "")
        try:
            sent_at = int(timestamp)
        except ValueError:
            return False
        # Replayed requests carry an old timestamp
        if abs(self._clock() - sent_at) > self.max_signature_age:
            return False
        expected = "v0=" + hmac_sha256_hex(secret, f"v0:{timestamp}:".encode() + raw_body)
        return hmac.compare_digest(signature, expected)

    def extract_event_type(self, headers: Mapping[str, str], payload: Dict[str, Any]) -> Optional[str]:
        if payload.get("type") == "event_callback":
            return (payload.get("event") or {}).get("type")
        return payload.get("type")

    def delivery_id_from(self, headers: Mapping[str, str], payload: Dict[str, Any]) -> Optional[str]:
        return payload.get("event_id")

    def extract_action(self, payload: Dict[str, Any]) -> Optional[str]:
        return (payload.get("event") or {}).get("subtype")

    def handshake_response(self, payload: Dict[str, Any], event_type: Optional[str]) -> Optional[Dict[str, Any]]:
        if payload.get("type") == "url_verification":
            return {"challenge": payload.get("challenge")}
        return None

    def subject_for(self, payload: Dict[str, Any]) -> Optional[str]:
        return (payload.get("event") or {}).get("channel")

    def normalize_webhook_payload(self, payload: Dict[str, Any], event_type: str) -> Optional[Activity]:
        if event_type not in ("message", "app_mention"):
            return None
        event = payload.get("event") or {}
        # Edits, joins, bot posts and other subtypes say nothing about the user
        if event.get("subtype") or event.get("bot_id"):
            return None
        if not event.get("user") or not event.get("channel") or not event.get("ts"):
            raise ValidationError("message event is missing user, channel or ts", provider=self.PROVIDER.value)
        return self._message_activity(event["channel"], event["ts"], event["user"])

    # ------------------------------------------------------------------
    # OAuth / health
    # ------------------------------------------------------------------

    def credential_from_token_response(self, body: Dict[str, Any], previous: Optional[Credential] = None) -> Credential:
        # oauth.v2.access nests the user token under authed_user; refreshes return it flat
        authed_user = body.get("authed_user") or {}
        if authed_user.get("access_token"):
            body = authed_user
        return super().credential_from_token_response(body, previous)

    async def fetch_account(self, credential: Credential) -> tuple[str, Dict[str, Any]]:
        async with self.http_client(credential.access_token) as http:
            identity = await self._call(http, "auth.test")
        return identity["user_id"], {
            "team_id": identity.get("team_id"),
            "team": identity.get("team"),
            "user": identity.get("user"),
        }

    async def probe(self, client: AuthenticatedClient) -> str:
        identity = await self._call(client.http, "auth.test")
        return f"Authenticated as {identity.get('user', 'unknown')} in {identity.get('team', 'unknown')}"
