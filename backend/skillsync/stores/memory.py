"""
In-memory stores for single-process deployments and tests.
Not suitable for multi-instance deployments: nothing is shared or persisted.

Objects are copied on the way in and out so callers never mutate stored state
behind the store's back, which is how a database-backed store behaves too.
"""

import asyncio
import copy
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from skillsync.core.clock import utcnow
from skillsync.core.errors import DuplicateConnectionError, DuplicateDeliveryError
from skillsync.core.locks import KeyedLock
from skillsync.schemas.integration import Connection, ConnectionStatus, Provider, WebhookEvent
from skillsync.schemas.skills import EvidenceContribution, SkillRecord
from skillsync.stores.base import ConnectionStore, LeaseStore, SkillFold, SkillStore, WebhookLog


class InMemoryConnectionStore(ConnectionStore):

    def __init__(self):
        self._rows: Dict[str, Connection] = {}
        self._lock = asyncio.Lock()

    async def save(self, connection: Connection) -> Connection:
        async with self._lock:
            if connection.is_active:
                for other in self._rows.values():
                    if (
                        other.id != connection.id
                        and other.is_active
                        and other.owner_id == connection.owner_id
                        and other.provider == connection.provider
                    ):
                        raise DuplicateConnectionError(
                            f"Owner {connection.owner_id} already has an active {connection.provider.value} connection",
                            provider=connection.provider.value,
                            connection_id=other.id,
                        )
            connection.updated_at = utcnow()
            self._rows[connection.id] = copy.deepcopy(connection)
            return copy.deepcopy(connection)

    async def get(self, connection_id: str) -> Optional[Connection]:
        row = self._rows.get(connection_id)
        return copy.deepcopy(row) if row else None

    async def find_active(self, owner_id: str, provider: Provider) -> Optional[Connection]:
        for row in self._rows.values():
            if row.owner_id == owner_id and row.provider == provider and row.is_active:
                return copy.deepcopy(row)
        return None

    async def find_latest(self, owner_id: str, provider: Provider) -> Optional[Connection]:
        rows = [r for r in self._rows.values() if r.owner_id == owner_id and r.provider == provider]
        if not rows:
            return None
        return copy.deepcopy(max(rows, key=lambda r: r.updated_at))

    async def find_by_external_account(self, provider: Provider, external_account_id: str) -> List[Connection]:
        return [
            copy.deepcopy(r)
            for r in self._rows.values()
            if r.provider == provider and r.external_account_id == external_account_id and r.is_active
        ]

    async def list_for_owner(self, owner_id: str) -> List[Connection]:
        rows = [r for r in self._rows.values() if r.owner_id == owner_id]
        return [copy.deepcopy(r) for r in sorted(rows, key=lambda r: r.created_at)]

    async def mark_error(self, connection_id: str, reason: str) -> None:
        async with self._lock:
            row = self._rows.get(connection_id)
            if row is None:
                return
            row.status = ConnectionStatus.ERROR
            row.status_reason = reason
            row.updated_at = utcnow()


class InMemorySkillStore(SkillStore):

    def __init__(self):
        self._records: Dict[Tuple[str, str, str], SkillRecord] = {}
        self._ledger: Dict[tuple, EvidenceContribution] = {}
        self._lock = asyncio.Lock()
        self._skill_locks = KeyedLock()

    async def upsert(self, record: SkillRecord) -> SkillRecord:
        async with self._lock:
            current = self._records.get(record.key)
            if current is not None:
                record.id = current.id
            self._records[record.key] = copy.deepcopy(record)
            return copy.deepcopy(record)

    async def get(self, owner_id: str, skill_name: str, source: str) -> Optional[SkillRecord]:
        record = self._records.get((owner_id, skill_name, source))
        return copy.deepcopy(record) if record else None

    async def find_by_owner(self, owner_id: str, source: Optional[str] = None) -> List[SkillRecord]:
        records = [
            r for r in self._records.values()
            if r.owner_id == owner_id and (source is None or r.source == source)
        ]
        return [copy.deepcopy(r) for r in sorted(records, key=lambda r: (r.skill_name, r.source))]

    async def add_contributions(self, contributions: Sequence[EvidenceContribution]) -> int:
        async with self._lock:
            new_keys = 0
            for contribution in contributions:
                if contribution.key not in self._ledger:
                    new_keys += 1
                self._ledger[contribution.key] = contribution
            return new_keys

    async def contributions_for(self, owner_id: str, skill_name: str) -> List[EvidenceContribution]:
        return [
            c for key, c in self._ledger.items()
            if key[0] == owner_id and key[1] == skill_name
        ]

    async def recompute(
        self,
        owner_id: str,
        skill_name: str,
        contributions: Sequence[EvidenceContribution],
        fold: SkillFold,
    ) -> int:
        async with self._skill_locks.hold((owner_id, skill_name)):
            await self.add_contributions(contributions)
            ledger = await self.contributions_for(owner_id, skill_name)
            current = {
                source: copy.deepcopy(record)
                for (owner, skill, source), record in self._records.items()
                if owner == owner_id and skill == skill_name
            }
            changed = fold(ledger, current)
            for record in changed:
                await self.upsert(record)
            return len(changed)


class InMemoryWebhookLog(WebhookLog):

    def __init__(self):
        self._events: Dict[str, WebhookEvent] = {}
        self._index: Dict[Tuple[Provider, str], str] = {}
        self._lock = asyncio.Lock()

    async def exists(self, provider: Provider, delivery_id: str) -> bool:
        return (provider, delivery_id) in self._index

    async def append(self, event: WebhookEvent) -> WebhookEvent:
        async with self._lock:
            key = (event.provider, event.delivery_id)
            if key in self._index:
                raise DuplicateDeliveryError(
                    f"Delivery {event.delivery_id} already logged",
                    provider=event.provider.value,
                    delivery_id=event.delivery_id,
                )
            self._index[key] = event.id
            self._events[event.id] = copy.deepcopy(event)
            return copy.deepcopy(event)

    async def get(self, event_id: str) -> Optional[WebhookEvent]:
        event = self._events.get(event_id)
        return copy.deepcopy(event) if event else None

    async def mark_processed(self, event_id: str, error: Optional[str] = None, retryable: bool = True) -> None:
        async with self._lock:
            event = self._events.get(event_id)
            if event is None:
                return
            event.attempts += 1
            if error is None:
                event.processed = True
                event.processed_at = utcnow()
                event.error_message = None
            else:
                event.error_message = error
                event.retryable = event.retryable and retryable

    async def list_unprocessed(self, max_attempts: int, limit: int = 100) -> List[WebhookEvent]:
        pending = [
            e for e in self._events.values()
            if not e.processed and e.retryable and e.attempts < max_attempts
        ]
        pending.sort(key=lambda e: e.received_at)
        return [copy.deepcopy(e) for e in pending[:limit]]


class InMemoryLeaseStore(LeaseStore):

    def __init__(self):
        self._leases: Dict[str, Tuple[str, datetime]] = {}
        self._lock = asyncio.Lock()

    async def acquire(self, key: str, holder: str, ttl_seconds: float) -> bool:
        async with self._lock:
            now = utcnow()
            current = self._leases.get(key)
            if current is not None and current[0] != holder and current[1] > now:
                return False
            self._leases[key] = (holder, now + timedelta(seconds=ttl_seconds))
            return True

    async def release(self, key: str, holder: str) -> None:
        async with self._lock:
            current = self._leases.get(key)
            if current is not None and current[0] == holder:
                del self._leases[key]

    async def holder(self, key: str) -> Optional[Tuple[str, datetime]]:
        current = self._leases.get(key)
        if current is None or current[1] <= utcnow():
            return None
        return current
