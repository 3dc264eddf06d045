from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from skillsync.core.clock import utcnow
from skillsync.schemas.integration import new_id

AGGREGATE_SOURCE = "aggregate"


class SkillLevel(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"
    EXPERT = "expert"


class SkillCategory(str, Enum):
    PROGRAMMING_LANGUAGE = "programming_language"
    FRAMEWORK = "framework"
    INFRASTRUCTURE = "infrastructure"
    DATA = "data"
    SOFT_SKILL = "soft_skill"
    DOMAIN = "domain"


@dataclass(frozen=True)
class EvidenceContribution:
    """One activity's support for one skill.

    Keyed by (owner_id, skill_name, provider, evidence_id) in the ledger;
    storing the same key twice replaces rather than adds.
    """
    owner_id: str
    skill_name: str
    category: SkillCategory
    provider: str
    evidence_id: str
    occurred_at: datetime
    weight: float

    @property
    def key(self) -> tuple:
        return (self.owner_id, self.skill_name, self.provider, self.evidence_id)


@dataclass
class SkillEvidence:
    """Per-provider aggregation of contributions for one skill."""
    owner_id: str
    skill_name: str
    provider: str
    occurrence_count: int
    last_observed_at: datetime
    weight: float
    category: SkillCategory = SkillCategory.DOMAIN


@dataclass
class SkillRecord:
    owner_id: str
    skill_name: str
    category: SkillCategory
    level: SkillLevel
    confidence: float
    source: str
    evidence_count: int
    evidence_weight: float
    last_observed_at: Optional[datetime]
    last_updated_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    @property
    def key(self) -> tuple:
        return (self.owner_id, self.skill_name, self.source)

    def same_evidence_as(self, other: "SkillRecord") -> bool:
        return (
            self.evidence_count == other.evidence_count
            and abs(self.evidence_weight - other.evidence_weight) < 1e-9
            and self.last_observed_at == other.last_observed_at
            and self.category == other.category
        )
