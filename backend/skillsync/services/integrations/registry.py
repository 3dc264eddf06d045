"""
Connection Registry

Owns the lifecycle of an owner's link to a provider:

    (OAuth callback) -> active -> revoked      (explicit disconnect)
                          |
                          +-----> error        (refresh failed / repeated auth failures)

Connections are never deleted. Reconnecting reuses the latest row for the
(owner, provider) pair so its history stays in one place.
"""

from typing import Dict, List, Optional, Tuple

from skillsync.core.clock import utcnow
from skillsync.core.config import settings
from skillsync.core.errors import (
    AuthError,
    ConnectionExpiredError,
    ConnectionNotFoundError,
    DuplicateConnectionError,
    ValidationError,
)
from skillsync.core.locks import KeyedLock
from skillsync.core.logging_config import get_logger
from skillsync.core.security import create_oauth_state, verify_oauth_state
from skillsync.connectors.base import ProviderAdapter
from skillsync.schemas.integration import (
    Connection,
    ConnectionStatus,
    ConnectionTestResult,
    Credential,
    OwnerType,
    Provider,
)
from skillsync.stores.base import ConnectionStore

logger = get_logger("skillsync.registry")


class ConnectionRegistry:
    """Connection lifecycle, token refresh and health checks."""

    def __init__(
        self,
        store: ConnectionStore,
        adapters: Dict[Provider, ProviderAdapter],
        *,
        refresh_margin_seconds: Optional[float] = None,
        auth_failure_threshold: Optional[int] = None,
    ):
        self.store = store
        self.adapters = adapters
        self.refresh_margin_seconds = (
            refresh_margin_seconds if refresh_margin_seconds is not None else settings.TOKEN_REFRESH_MARGIN_SECONDS
        )
        self.auth_failure_threshold = auth_failure_threshold or settings.AUTH_FAILURE_THRESHOLD
        self._refresh_locks = KeyedLock()

    def adapter_for(self, provider: Provider) -> ProviderAdapter:
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise ValidationError(f"Provider {provider.value} is not enabled", provider=provider.value)
        return adapter

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(
        self,
        owner_id: str,
        provider: Provider,
        credential: Credential,
        *,
        external_account_id: str = "",
        owner_type: OwnerType = OwnerType.EMPLOYEE,
        metadata: Optional[dict] = None,
    ) -> Connection:
        """
        Create (or re-activate) the connection for ``owner_id`` and ``provider``.

        Raises:
            DuplicateConnectionError: If an active connection already exists
        """
        active = await self.store.find_active(owner_id, provider)
        if active is not None:
            raise DuplicateConnectionError(
                f"Owner {owner_id} already has an active {provider.value} connection",
                provider=provider.value,
                connection_id=active.id,
            )

        connection = await self.store.find_latest(owner_id, provider)
        if connection is None:
            connection = Connection(
                owner_id=owner_id,
                provider=provider,
                external_account_id=external_account_id,
                credential=credential,
                owner_type=owner_type,
                metadata=dict(metadata or {}),
            )
        else:
            if connection.external_account_id != external_account_id:
                # A different provider account: the old cursor means nothing for it
                connection.last_sync_cursor = None
                connection.last_sync_at = None
            connection.external_account_id = external_account_id
            connection.credential = credential
            connection.owner_type = owner_type
            connection.metadata = dict(metadata or {})
            connection.status = ConnectionStatus.ACTIVE
            connection.status_reason = None
            connection.auth_failure_count = 0

        connection = await self.store.save(connection)
        logger.info(
            f"Connected {provider.value} for owner {owner_id}",
            extra={"connection_id": connection.id, "provider": provider.value},
        )
        return connection

    async def disconnect(self, connection_id: str) -> Connection:
        """Revoke a connection. Skill records and webhook history are left alone."""
        connection = await self.store.get(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found", connection_id=connection_id)
        if connection.status == ConnectionStatus.REVOKED:
            return connection
        connection.status = ConnectionStatus.REVOKED
        connection.status_reason = "disconnected"
        connection = await self.store.save(connection)
        logger.info(
            f"Disconnected {connection.provider.value} for owner {connection.owner_id}",
            extra={"connection_id": connection.id, "provider": connection.provider.value},
        )
        return connection

    async def get_active(self, owner_id: str, provider: Provider) -> Optional[Connection]:
        return await self.store.find_active(owner_id, provider)

    async def require_active(self, owner_id: str, provider: Provider) -> Connection:
        connection = await self.store.find_active(owner_id, provider)
        if connection is None:
            raise ConnectionNotFoundError(
                f"No active {provider.value} connection for owner {owner_id}",
                provider=provider.value,
            )
        return connection

    async def list_connections(self, owner_id: str) -> List[Connection]:
        return await self.store.list_for_owner(owner_id)

    async def find_owner(self, provider: Provider, external_account_id: Optional[str]) -> Optional[Connection]:
        """Resolve a provider-side account to the active connection that owns it."""
        if not external_account_id:
            return None
        matches = await self.store.find_by_external_account(provider, str(external_account_id))
        if not matches:
            return None
        # An employee's own link wins over a company-level link to the same account
        for connection in matches:
            if connection.owner_type == OwnerType.EMPLOYEE:
                return connection
        return matches[0]

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def refresh_if_needed(self, connection: Connection) -> Connection:
        """
        Refresh the credential if it expires within the safety margin.

        Concurrent callers for the same connection wait for one refresh and
        reuse its result.

        Raises:
            ConnectionExpiredError: If the provider refused the refresh; the
                connection is moved to the error state first
        """
        if not connection.is_active or not connection.credential.expires_within(self.refresh_margin_seconds):
            return connection

        async with self._refresh_locks.hold(connection.id):
            current = await self.store.get(connection.id) or connection
            if not current.is_active or not current.credential.expires_within(self.refresh_margin_seconds):
                return current

            adapter = self.adapter_for(current.provider)
            try:
                credential = await adapter.refresh_credential(current.credential)
            except AuthError as e:
                reason = f"Token refresh failed: {e.message}"
                await self.store.mark_error(current.id, reason)
                logger.warning(
                    f"Connection {current.id} moved to error: {reason}",
                    extra={"connection_id": current.id, "provider": current.provider.value},
                )
                raise ConnectionExpiredError(
                    reason,
                    provider=current.provider.value,
                    connection_id=current.id,
                ) from e

            current.credential = credential
            current = await self.store.save(current)
            logger.info(
                f"Refreshed {current.provider.value} credential",
                extra={"connection_id": current.id, "provider": current.provider.value},
            )
            return current

    async def record_auth_failure(self, connection: Connection, reason: str) -> Connection:
        """Count an upstream auth failure; past the threshold the connection goes to error."""
        current = await self.store.get(connection.id) or connection
        if not current.is_active:
            return current
        current.auth_failure_count += 1
        if current.auth_failure_count >= self.auth_failure_threshold:
            current.status = ConnectionStatus.ERROR
            current.status_reason = f"repeated upstream auth failure: {reason}"
            logger.warning(
                f"Connection {current.id} moved to error after {current.auth_failure_count} auth failures",
                extra={"connection_id": current.id, "provider": current.provider.value},
            )
        return await self.store.save(current)

    async def record_auth_success(self, connection: Connection) -> Connection:
        current = await self.store.get(connection.id) or connection
        if current.auth_failure_count == 0:
            return current
        current.auth_failure_count = 0
        return await self.store.save(current)

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    async def commit_checkpoint(self, connection: Connection, cursor: Optional[str]) -> Connection:
        current = await self.store.get(connection.id) or connection
        current.last_sync_cursor = cursor
        return await self.store.save(current)

    async def mark_synced(self, connection: Connection) -> Connection:
        current = await self.store.get(connection.id) or connection
        current.last_sync_at = utcnow()
        return await self.store.save(current)

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def authorization_url(
        self,
        owner_id: str,
        provider: Provider,
        owner_type: OwnerType = OwnerType.EMPLOYEE,
    ) -> Tuple[str, str]:
        """Return (consent URL, signed state) for starting the OAuth flow."""
        adapter = self.adapter_for(provider)
        state = create_oauth_state(owner_id, provider.value, owner_type.value)
        return adapter.authorization_url(state), state

    async def complete_oauth(self, state: str, code: str, provider: Optional[Provider] = None) -> Connection:
        """
        Finish the OAuth flow: check the state, trade the code, connect.

        Raises:
            ValidationError: If the state is tampered with or expired
            AuthError: If the provider rejects the code
            DuplicateConnectionError: If the owner is already connected
        """
        payload = verify_oauth_state(state, provider.value if provider else None)
        try:
            provider = Provider(payload["provider"])
            owner_type = OwnerType(payload.get("owner_type", OwnerType.EMPLOYEE.value))
        except ValueError as e:
            raise ValidationError(f"OAuth state names an unknown provider or owner type: {e}") from e

        grant = await self.adapter_for(provider).exchange_code(code)
        return await self.connect(
            payload["owner_id"],
            provider,
            grant.credential,
            external_account_id=grant.external_account_id,
            owner_type=owner_type,
            metadata=grant.metadata,
        )

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health_check(self, connection: Connection) -> ConnectionTestResult:
        adapter = self.adapter_for(connection.provider)
        try:
            async with await adapter.authenticate(connection, self) as client:
                result = await adapter.test_connection(client)
        except AuthError as e:
            if not isinstance(e, ConnectionExpiredError):
                await self.record_auth_failure(connection, e.message)
            return ConnectionTestResult(
                success=False,
                message=f"{adapter.DISPLAY_NAME} rejected the credential",
                errors=[e.message],
            )
        if result.success:
            await self.record_auth_success(connection)
        return result
