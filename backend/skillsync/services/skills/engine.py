"""
Skill Inference Engine: the only writer of SkillRecords.

Each batch of activities is turned into ledger contributions. Every
(owner, skill) the batch touches is then recomputed from its FULL ledger, so
applying the same activities twice leaves every record as it was.

The store runs each (owner, skill) rebuild atomically, so concurrent engines
(in this process or another) never overwrite each other with stale records.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Sequence, Set, Tuple

from skillsync.core.clock import utcnow
from skillsync.core.errors import InferenceItemError
from skillsync.core.logging_config import get_logger
from skillsync.schemas.integration import Activity
from skillsync.schemas.skills import AGGREGATE_SOURCE, EvidenceContribution, SkillRecord
from skillsync.services.skills.inference import (
    DEFAULT_POLICY,
    ScoringPolicy,
    combine,
    contributions_for,
    evidence_from_contributions,
)
from skillsync.stores.base import SkillStore

logger = get_logger("skillsync.inference")


@dataclass
class InferenceResult:
    activities_processed: int = 0
    records_written: int = 0
    # (owner_id, skill_name) pairs whose records changed
    touched: Set[Tuple[str, str]] = field(default_factory=set)
    errors: List[InferenceItemError] = field(default_factory=list)

    @property
    def skills_touched(self) -> int:
        return len(self.touched)


class SkillInferenceEngine:

    def __init__(
        self,
        store: SkillStore,
        policy: ScoringPolicy = DEFAULT_POLICY,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.policy = policy
        self._clock = clock

    async def apply(self, activities: Sequence[Activity]) -> InferenceResult:
        """
        Fold a batch of owner-resolved activities into the skill records.

        Activities that cannot be mapped are reported in ``errors`` and
        skipped. Store failures propagate.
        """
        result = InferenceResult()
        grouped: Dict[Tuple[str, str], List[EvidenceContribution]] = defaultdict(list)

        for activity in activities:
            try:
                contributions = contributions_for(activity, self.policy)
            except InferenceItemError as e:
                logger.warning(
                    f"Skipping activity {activity.activity_id}: {e.message}",
                    extra={"provider": activity.provider.value, "activity_id": activity.activity_id},
                )
                result.errors.append(e)
                continue
            result.activities_processed += 1
            for contribution in contributions:
                grouped[(contribution.owner_id, contribution.skill_name)].append(contribution)

        for (owner_id, skill_name), contributions in sorted(grouped.items()):
            written = await self._recompute(owner_id, skill_name, contributions)
            if written:
                result.touched.add((owner_id, skill_name))
                result.records_written += written
        return result

    async def _recompute(self, owner_id: str, skill_name: str, contributions: List[EvidenceContribution]) -> int:
        now = self._clock()

        def fold(ledger: List[EvidenceContribution], current: Dict[str, SkillRecord]) -> List[SkillRecord]:
            evidence = evidence_from_contributions(ledger)
            if not evidence:
                return []
            changed = []
            for item in evidence:
                existing = current.get(item.provider)
                record = combine([item], existing, now, source=item.provider, policy=self.policy)
                if record is not existing:
                    changed.append(record)
            existing = current.get(AGGREGATE_SOURCE)
            record = combine(evidence, existing, now, source=AGGREGATE_SOURCE, policy=self.policy)
            if record is not existing:
                changed.append(record)
            return changed

        return await self.store.recompute(owner_id, skill_name, contributions, fold)

    async def skills_for(self, owner_id: str, source=None) -> List[SkillRecord]:
        return await self.store.find_by_owner(owner_id, source)
