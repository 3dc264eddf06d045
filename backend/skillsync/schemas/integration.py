"""
Domain types shared by the adapters, the connection registry, the webhook
gateway and the sync orchestrator.
"""

import dataclasses
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from skillsync.core.clock import utcnow


def new_id() -> str:
    return str(uuid.uuid4())


class Provider(str, Enum):
    """External services supplying activity data"""
    GITHUB = "github"
    GITLAB = "gitlab"
    JIRA = "jira"
    SLACK = "slack"


class ProviderCategory(str, Enum):
    SOURCE_HOSTING = "source_hosting"
    ISSUE_TRACKER = "issue_tracker"
    MESSAGING = "messaging"


class OwnerType(str, Enum):
    EMPLOYEE = "employee"
    COMPANY = "company"


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    ERROR = "error"


class ActivityKind(str, Enum):
    CODE_CHANGE = "code-change"
    ISSUE = "issue"
    MESSAGE = "message"
    LANGUAGE_USAGE = "language-usage"


class SyncMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    WEBHOOK = "webhook"


class SyncStatus(str, Enum):
    """Status of sync operations"""
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class Credential:
    """Opaque token bundle for one connection. Tokens are excluded from repr."""
    access_token: str = field(repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    token_type: str = "bearer"

    def expires_within(self, margin_seconds: float, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or utcnow()
        return self.expires_at - now <= timedelta(seconds=margin_seconds)

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token)


@dataclass
class Connection:
    """An authorized link between one internal identity and one provider.

    ``owner_id`` is an identifier only; the owning employee or company lives
    in another system.
    """
    owner_id: str
    provider: Provider
    external_account_id: str
    credential: Credential
    id: str = field(default_factory=new_id)
    owner_type: OwnerType = OwnerType.EMPLOYEE
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    status_reason: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    last_sync_cursor: Optional[str] = None
    auth_failure_count: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE

    @property
    def lease_key(self) -> str:
        return f"sync:{self.id}"


@dataclass
class WebhookEvent:
    """One received provider notification (append-only audit log entry)."""
    provider: Provider
    delivery_id: str
    event_type: str
    raw_payload: Dict[str, Any]
    action: Optional[str] = None
    id: str = field(default_factory=new_id)
    received_at: datetime = field(default_factory=utcnow)
    processed: bool = False
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    attempts: int = 0
    # False once an error is known to be permanent; the retry sweep skips it
    retryable: bool = True
    subject_identifier: Optional[str] = None
    owner_id: Optional[str] = None


@dataclass(frozen=True)
class Activity:
    """A normalized unit of provider evidence.

    ``activity_id`` is stable for the same underlying record, so the same commit
    seen via a push webhook and via a pull sync maps to the same identity.
    """
    activity_id: str
    provider: Provider
    kind: ActivityKind
    occurred_at: datetime
    subject_identifier: str
    external_account_id: Optional[str] = None
    owner_id: Optional[str] = None
    attributes: Mapping[str, Any] = field(default_factory=dict, compare=False)

    def with_owner(self, owner_id: str) -> "Activity":
        return dataclasses.replace(self, owner_id=owner_id)


@dataclass
class ActivityPage:
    activities: List[Activity]
    next_cursor: Optional[str]
    has_more: bool


@dataclass
class OAuthGrant:
    """What a successful authorization-code exchange yields."""
    credential: Credential
    external_account_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ConnectionTestResult:
    """Result of testing a connection"""
    success: bool
    message: str
    latency_ms: Optional[float] = None
    errors: List[str] = field(default_factory=list)
    tested_at: datetime = field(default_factory=utcnow)


@dataclass
class SyncSummary:
    """Result of one sync pass (or one webhook fast-path application)."""
    connection_id: Optional[str]
    provider: Provider
    mode: SyncMode
    status: SyncStatus = SyncStatus.IN_PROGRESS
    activities_processed: int = 0
    skills_touched: int = 0
    pages_committed: int = 0
    item_errors: List[str] = field(default_factory=list)
    error: Optional[str] = None
    last_cursor: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0

    @property
    def success(self) -> bool:
        return self.status in (SyncStatus.COMPLETED, SyncStatus.PARTIAL)

    def finish(self, status: SyncStatus, error: Optional[str] = None) -> "SyncSummary":
        self.status = status
        self.error = error
        self.completed_at = utcnow()
        self.duration_seconds = (self.completed_at - self.started_at).total_seconds()
        return self

    def to_dict(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        data["provider"] = self.provider.value
        data["mode"] = self.mode.value
        data["status"] = self.status.value
        data["error_count"] = len(self.item_errors) + (1 if self.error else 0)
        return data
