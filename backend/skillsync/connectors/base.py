"""
Base Provider Adapter Interface

Every provider (source hosting, issue tracker, messaging, generic OAuth)
implements the same capability set:

- authenticate(connection, registry) -> AuthenticatedClient
- list_activity_since(client, cursor) -> ActivityPage
- verify_webhook_signature(raw_body, headers, secret) -> bool
- normalize_webhook_payload(payload, event_type) -> Activity | None

plus the OAuth hooks used by the connection registry.
"""

import hashlib
import hmac
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Type
from urllib.parse import urlencode

import httpx

from skillsync.core.clock import utcnow
from skillsync.core.config import settings
from skillsync.core.errors import AuthError, IntegrationError, ValidationError
from skillsync.core.retry import ExponentialBackoff
from skillsync.connectors.http import RateLimitedClient, Sleep, rate_limit_delay
from skillsync.schemas.integration import (
    Activity,
    ActivityPage,
    Connection,
    ConnectionTestResult,
    Credential,
    OAuthGrant,
    Provider,
    ProviderCategory,
)

if TYPE_CHECKING:
    from skillsync.services.integrations.registry import ConnectionRegistry

logger = logging.getLogger(__name__)


@dataclass
class ProviderConfig:
    """Environment-level configuration for one provider (consumed, not owned)."""
    api_base_url: str
    authorize_url: str
    token_url: str
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_uri: Optional[str] = None
    webhook_secret: Optional[str] = None

    @classmethod
    def from_settings(cls, provider: Provider) -> "ProviderConfig":
        prefix = provider.value.upper()
        secret_field = {
            Provider.GITHUB: "GITHUB_WEBHOOK_SECRET",
            Provider.GITLAB: "GITLAB_WEBHOOK_TOKEN",
            Provider.JIRA: "JIRA_WEBHOOK_SECRET",
            Provider.SLACK: "SLACK_SIGNING_SECRET",
        }[provider]
        return cls(
            api_base_url=getattr(settings, f"{prefix}_API_BASE_URL"),
            authorize_url=getattr(settings, f"{prefix}_OAUTH_AUTHORIZE_URL"),
            token_url=getattr(settings, f"{prefix}_OAUTH_TOKEN_URL"),
            client_id=getattr(settings, f"{prefix}_CLIENT_ID"),
            client_secret=getattr(settings, f"{prefix}_CLIENT_SECRET"),
            redirect_uri=getattr(settings, f"{prefix}_REDIRECT_URI"),
            webhook_secret=getattr(settings, secret_field),
        )


@dataclass
class AuthenticatedClient:
    """A connection paired with an HTTP client carrying its current token."""
    connection: Connection
    http: RateLimitedClient

    async def aclose(self) -> None:
        await self.http.aclose()

    async def __aenter__(self) -> "AuthenticatedClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def lower_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {k.lower(): v for k, v in headers.items()}


def require(data: Any, key: str, provider: Provider, what: str) -> Any:
    """``data[key]`` from a provider response, or ValidationError when it is absent."""
    value = data.get(key) if isinstance(data, dict) else None
    if value is None or value == "":
        raise ValidationError(f"{what} is missing '{key}'", provider=provider.value)
    return value


def require_list(data: Any, provider: Provider, what: str) -> List[Any]:
    if not isinstance(data, list):
        raise ValidationError(f"{what} is not a list", provider=provider.value)
    return data


def encode_cursor(state: Dict[str, Any]) -> str:
    return json.dumps(state, separators=(",", ":"), sort_keys=True)


def open_window(cursor: Optional[str]) -> Dict[str, Any]:
    """
    Decode a pagination cursor into its state dict.

    Every cursor carries ``since`` (lower bound of the window, None for a full
    pass) and ``started`` (when the pass began). A cursor without ``started``
    opens a new pass now.
    """
    state: Dict[str, Any] = {}
    if cursor:
        try:
            state = json.loads(cursor)
        except ValueError as e:
            raise ValidationError(f"Unreadable sync cursor: {cursor!r}") from e
        if not isinstance(state, dict):
            raise ValidationError(f"Unreadable sync cursor: {cursor!r}")
    if not state.get("started"):
        state["started"] = utcnow().isoformat()
    state.setdefault("since", None)
    return state


def close_window(state: Dict[str, Any]) -> str:
    """Cursor handed back after the last page: the next pass starts where this one began."""
    return encode_cursor({"since": state["started"]})


class ProviderAdapter(ABC):
    """
    Abstract base class for all provider adapters.

    Adapters are stateless with respect to connections: everything
    connection-specific travels in the AuthenticatedClient, so one adapter
    instance serves every connection of its provider.
    """

    PROVIDER: Provider
    DISPLAY_NAME: str = "Base Provider"
    CATEGORY: ProviderCategory = ProviderCategory.SOURCE_HOSTING
    DESCRIPTION: str = "Base provider adapter"
    REQUIRED_SCOPES: List[str] = []
    SCOPE_SEPARATOR: str = " "
    # Slack asks for user-token scopes under "user_scope"
    SCOPE_PARAM: str = "scope"
    # Atlassian expects a JSON body on the token endpoint, everyone else form data
    TOKEN_REQUEST_JSON: bool = False

    def __init__(
        self,
        config: Optional[ProviderConfig] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Sleep] = None,
        backoff: Optional[ExponentialBackoff] = None,
        page_size: Optional[int] = None,
    ):
        self.config = config or ProviderConfig.from_settings(self.PROVIDER)
        self._transport = transport
        self._sleep = sleep
        self._backoff = backoff
        self.page_size = page_size or settings.SYNC_PAGE_SIZE

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def auth_headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }

    def api_base_url(self, connection: Optional[Connection] = None) -> str:
        return self.config.api_base_url

    def rate_limit_check(self, response: httpx.Response) -> tuple[bool, Optional[float]]:
        """(is_rate_limited, seconds_to_wait) for a response; see rate_limit_delay."""
        return rate_limit_delay(response)

    def http_client(self, access_token: Optional[str] = None, base_url: Optional[str] = None) -> RateLimitedClient:
        headers = self.auth_headers(access_token) if access_token else {"Accept": "application/json"}
        return RateLimitedClient(
            self.PROVIDER.value,
            base_url=base_url if base_url is not None else self.config.api_base_url,
            headers=headers,
            backoff=self._backoff,
            transport=self._transport,
            sleep=self._sleep,
            rate_limit_check=self.rate_limit_check,
        )

    # ------------------------------------------------------------------
    # Capability set
    # ------------------------------------------------------------------

    async def authenticate(self, connection: Connection, registry: "ConnectionRegistry") -> AuthenticatedClient:
        """
        Return a client for ``connection``, refreshing its token first when it
        is close to expiry. The refreshed credential is persisted by the
        registry before the client is built.

        Raises:
            AuthError: If the connection is not active
            ConnectionExpiredError: If the token could not be refreshed
        """
        connection = await registry.refresh_if_needed(connection)
        if not connection.is_active:
            raise AuthError(
                f"Connection is {connection.status.value}",
                provider=self.PROVIDER.value,
                connection_id=connection.id,
            )
        http = self.http_client(connection.credential.access_token, self.api_base_url(connection))
        return AuthenticatedClient(connection=connection, http=http)

    @abstractmethod
    async def list_activity_since(self, client: AuthenticatedClient, cursor: Optional[str]) -> ActivityPage:
        """
        Fetch one page of activity.

        ``cursor=None`` starts from the beginning. Passing back a previously
        returned ``next_cursor`` resumes exactly after that page.
        """
        pass

    @abstractmethod
    def verify_webhook_signature(self, raw_body: bytes, headers: Mapping[str, str], secret: Optional[str]) -> bool:
        """Check the provider's signature or shared token. Headers are lower-cased."""
        pass

    @abstractmethod
    def normalize_webhook_payload(self, payload: Dict[str, Any], event_type: str) -> Optional[Activity]:
        """
        Map a webhook payload to an Activity, or None for events that are not skill evidence.

        Raises:
            ValidationError: If the payload is missing fields the event type requires
        """
        pass

    @abstractmethod
    def extract_event_type(self, headers: Mapping[str, str], payload: Dict[str, Any]) -> Optional[str]:
        pass

    def delivery_id_from(self, headers: Mapping[str, str], payload: Dict[str, Any]) -> Optional[str]:
        """Provider-assigned delivery identifier, if the provider sends one."""
        return None

    def extract_delivery_id(self, headers: Mapping[str, str], payload: Dict[str, Any], raw_body: bytes) -> str:
        delivery_id = self.delivery_id_from(headers, payload)
        if delivery_id:
            return str(delivery_id)
        # Redeliveries of the same body still dedupe
        return f"sha256:{hashlib.sha256(raw_body).hexdigest()}"

    def extract_action(self, payload: Dict[str, Any]) -> Optional[str]:
        action = payload.get("action")
        return str(action) if action is not None else None

    def handshake_response(self, payload: Dict[str, Any], event_type: Optional[str]) -> Optional[Dict[str, Any]]:
        """Body to answer a provider's endpoint-verification request, if this is one."""
        return None

    def subject_for(self, payload: Dict[str, Any]) -> Optional[str]:
        """Subject (repository, project, channel) used to order events before normalization."""
        return None

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def authorization_url(self, state: str) -> str:
        if not self.config.client_id:
            raise ValidationError(f"{self.DISPLAY_NAME} OAuth is not configured", provider=self.PROVIDER.value)
        params = {
            "client_id": self.config.client_id,
            "response_type": "code",
            "state": state,
            self.SCOPE_PARAM: self.SCOPE_SEPARATOR.join(self.REQUIRED_SCOPES),
        }
        if self.config.redirect_uri:
            params["redirect_uri"] = self.config.redirect_uri
        params.update(self.extra_authorize_params())
        return f"{self.config.authorize_url}?{urlencode(params)}"

    def extra_authorize_params(self) -> Dict[str, str]:
        return {}

    async def _token_request(self, data: Dict[str, Any]) -> Dict[str, Any]:
        payload = {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            **data,
        }
        async with self.http_client(base_url="") as http:
            try:
                if self.TOKEN_REQUEST_JSON:
                    response = await http.post(self.config.token_url, json=payload)
                else:
                    response = await http.post(self.config.token_url, data=payload)
            except IntegrationError as e:
                if isinstance(e, AuthError) or getattr(e, "status_code", None) == 400:
                    raise AuthError(
                        f"{self.DISPLAY_NAME} token endpoint rejected the request: {e.message}",
                        provider=self.PROVIDER.value,
                    ) from e
                raise
            body = http.parse_json(response)

        if "error" in body and "access_token" not in body:
            raise AuthError(
                f"{self.DISPLAY_NAME} token endpoint error: {body.get('error_description') or body['error']}",
                provider=self.PROVIDER.value,
            )
        return body

    def credential_from_token_response(self, body: Dict[str, Any], previous: Optional[Credential] = None) -> Credential:
        access_token = body.get("access_token")
        if not access_token:
            raise AuthError(f"{self.DISPLAY_NAME} token response has no access_token", provider=self.PROVIDER.value)
        expires_at = None
        if body.get("expires_in"):
            expires_at = utcnow() + timedelta(seconds=int(body["expires_in"]))
        return Credential(
            access_token=access_token,
            # Providers that do not rotate refresh tokens omit them on refresh
            refresh_token=body.get("refresh_token") or (previous.refresh_token if previous else None),
            expires_at=expires_at,
            scope=body.get("scope") or (previous.scope if previous else None),
            token_type=(body.get("token_type") or "bearer").lower(),
        )

    async def exchange_code(self, code: str) -> OAuthGrant:
        """Trade an authorization code for a credential and identify the account."""
        data = {"grant_type": "authorization_code", "code": code}
        if self.config.redirect_uri:
            data["redirect_uri"] = self.config.redirect_uri
        body = await self._token_request(data)
        credential = self.credential_from_token_response(body)
        external_account_id, metadata = await self.fetch_account(credential)
        return OAuthGrant(credential=credential, external_account_id=external_account_id, metadata=metadata)

    async def refresh_credential(self, credential: Credential) -> Credential:
        """
        Standard OAuth2 refresh grant.

        Raises:
            AuthError: If there is no refresh token or the provider refuses it
        """
        if credential.expires_at is None:
            # Non-expiring tokens (GitHub OAuth apps) have nothing to refresh
            return credential
        if not credential.refresh_token:
            raise AuthError(f"{self.DISPLAY_NAME} credential has no refresh token", provider=self.PROVIDER.value)
        body = await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
        })
        return self.credential_from_token_response(body, previous=credential)

    @abstractmethod
    async def fetch_account(self, credential: Credential) -> tuple[str, Dict[str, Any]]:
        """Return (external_account_id, metadata) for a fresh credential."""
        pass

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    @abstractmethod
    async def probe(self, client: AuthenticatedClient) -> str:
        """Cheap authenticated call; returns a human readable description."""
        pass

    async def test_connection(self, client: AuthenticatedClient) -> ConnectionTestResult:
        started = time.perf_counter()
        try:
            message = await self.probe(client)
        except AuthError:
            raise
        except IntegrationError as e:
            return ConnectionTestResult(
                success=False,
                message=f"{self.DISPLAY_NAME} connection test failed",
                latency_ms=(time.perf_counter() - started) * 1000,
                errors=[e.message],
            )
        return ConnectionTestResult(
            success=True,
            message=message,
            latency_ms=(time.perf_counter() - started) * 1000,
        )

    def describe(self) -> Dict[str, Any]:
        return {
            "provider": self.PROVIDER.value,
            "display_name": self.DISPLAY_NAME,
            "category": self.CATEGORY.value,
            "description": self.DESCRIPTION,
            "required_scopes": list(self.REQUIRED_SCOPES),
            "oauth_configured": bool(self.config.client_id and self.config.client_secret),
            "webhooks_configured": bool(self.config.webhook_secret),
        }


class AdapterRegistry:
    """
    Registry of available provider adapter implementations.

    Use this to discover and instantiate adapters dynamically.
    """

    _adapters: Dict[Provider, Type[ProviderAdapter]] = {}

    @classmethod
    def register(cls, adapter_class: Type[ProviderAdapter]) -> Type[ProviderAdapter]:
        """
        Register an adapter class.

        Can be used as a decorator:
            @AdapterRegistry.register
            class MyAdapter(ProviderAdapter):
                ...
        """
        cls._adapters[adapter_class.PROVIDER] = adapter_class
        logger.debug(f"Registered adapter: {adapter_class.PROVIDER.value}")
        return adapter_class

    @classmethod
    def get(cls, provider: Provider) -> Optional[Type[ProviderAdapter]]:
        return cls._adapters.get(provider)

    @classmethod
    def list_all(cls) -> List[Provider]:
        return list(cls._adapters.keys())

    @classmethod
    def create(cls, provider: Provider, **kwargs) -> ProviderAdapter:
        adapter_class = cls.get(provider)
        if adapter_class is None:
            raise ValidationError(f"Unknown provider: {provider}")
        return adapter_class(**kwargs)

    @classmethod
    def create_all(cls, **kwargs) -> Dict[Provider, ProviderAdapter]:
        return {provider: adapter_class(**kwargs) for provider, adapter_class in cls._adapters.items()}
