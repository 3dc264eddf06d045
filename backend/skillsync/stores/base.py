"""
Persistence interfaces consumed by the pipeline.

Any storage engine may back these as long as it keeps the invariants:
- at most one active connection per (owner_id, provider); rows are never deleted
- (provider, delivery_id) is unique in the webhook log
- at most one skill record per (owner_id, skill_name, source)
- at most one ledger entry per (owner_id, skill_name, provider, evidence_id)
"""

from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from skillsync.schemas.integration import Connection, Provider, WebhookEvent
from skillsync.schemas.skills import EvidenceContribution, SkillRecord

# (full ledger for one owner+skill, current records by source) -> records to write
SkillFold = Callable[[List[EvidenceContribution], Dict[str, SkillRecord]], List[SkillRecord]]


class ConnectionStore:
    """Base class for connection stores."""

    async def save(self, connection: Connection) -> Connection:
        """Insert or update by id. Raises DuplicateConnectionError if it would create a second active link."""
        raise NotImplementedError

    async def get(self, connection_id: str) -> Optional[Connection]:
        raise NotImplementedError

    async def find_active(self, owner_id: str, provider: Provider) -> Optional[Connection]:
        raise NotImplementedError

    async def find_latest(self, owner_id: str, provider: Provider) -> Optional[Connection]:
        """Most recently updated connection for the pair, whatever its status."""
        raise NotImplementedError

    async def find_by_external_account(self, provider: Provider, external_account_id: str) -> List[Connection]:
        """Active connections linked to a provider-side account."""
        raise NotImplementedError

    async def list_for_owner(self, owner_id: str) -> List[Connection]:
        raise NotImplementedError

    async def mark_error(self, connection_id: str, reason: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class SkillStore:
    """Base class for skill record stores and the evidence ledger behind them."""

    async def upsert(self, record: SkillRecord) -> SkillRecord:
        raise NotImplementedError

    async def get(self, owner_id: str, skill_name: str, source: str) -> Optional[SkillRecord]:
        raise NotImplementedError

    async def find_by_owner(self, owner_id: str, source: Optional[str] = None) -> List[SkillRecord]:
        raise NotImplementedError

    async def add_contributions(self, contributions: Sequence[EvidenceContribution]) -> int:
        """Store ledger entries, replacing same-key entries. Returns how many keys were new."""
        raise NotImplementedError

    async def contributions_for(self, owner_id: str, skill_name: str) -> List[EvidenceContribution]:
        raise NotImplementedError

    async def recompute(
        self,
        owner_id: str,
        skill_name: str,
        contributions: Sequence[EvidenceContribution],
        fold: SkillFold,
    ) -> int:
        """
        Add ``contributions`` to the ledger, then rebuild the (owner, skill)
        records with ``fold`` and write whatever it returns.

        The whole sequence is atomic per (owner, skill) across every writer
        sharing the store, not just within one engine. Returns the number of
        records written.
        """
        raise NotImplementedError

    async def close(self) -> None:
        pass


class WebhookLog:
    """Base class for the append-only webhook log."""

    async def exists(self, provider: Provider, delivery_id: str) -> bool:
        raise NotImplementedError

    async def append(self, event: WebhookEvent) -> WebhookEvent:
        """Raises DuplicateDeliveryError if (provider, delivery_id) is already logged."""
        raise NotImplementedError

    async def get(self, event_id: str) -> Optional[WebhookEvent]:
        raise NotImplementedError

    async def mark_processed(self, event_id: str, error: Optional[str] = None, retryable: bool = True) -> None:
        """
        Record the outcome of one processing attempt.

        Every call counts as one attempt. No error: processed=True. With an
        error the event stays unprocessed; ``retryable=False`` takes it out of
        the retry sweep for good.
        """
        raise NotImplementedError

    async def list_unprocessed(self, max_attempts: int, limit: int = 100) -> List[WebhookEvent]:
        """Unprocessed events with attempts below ``max_attempts``, oldest first."""
        raise NotImplementedError

    async def close(self) -> None:
        pass


class LeaseStore:
    """Base class for per-key leases (one in-flight sync per connection)."""

    async def acquire(self, key: str, holder: str, ttl_seconds: float) -> bool:
        """Take the lease if free or expired. Returns False if someone else holds it."""
        raise NotImplementedError

    async def release(self, key: str, holder: str) -> None:
        """Release the lease if ``holder`` still owns it."""
        raise NotImplementedError

    async def holder(self, key: str) -> Optional[tuple[str, datetime]]:
        raise NotImplementedError

    async def close(self) -> None:
        pass
