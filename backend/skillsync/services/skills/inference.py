"""
Skill inference: Activity -> EvidenceContribution -> SkillEvidence -> SkillRecord.

Everything in this module is pure. Scores depend only on the evidence passed
in and on ``now``, so recomputing from the full evidence ledger is idempotent.

Confidence for one provider:

    saturation = 1 - exp(-weight / SATURATION_WEIGHT)
    recency    = 1                                  if age <= STALENESS_DAYS
               = linear 1 -> RECENCY_FLOOR over DECAY_DAYS after that
    confidence = clamp(saturation * recency, 0, 1)

Across providers the aggregate is ``1 - prod(1 - c_p)``, which is never
below the strongest single provider.
"""

import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from skillsync.core.clock import parse_timestamp
from skillsync.core.errors import InferenceItemError
from skillsync.schemas.integration import Activity, ActivityKind
from skillsync.schemas.skills import (
    AGGREGATE_SOURCE,
    EvidenceContribution,
    SkillCategory,
    SkillEvidence,
    SkillLevel,
    SkillRecord,
)
from skillsync.services.skills import catalog


@dataclass(frozen=True)
class ScoringPolicy:
    """Fixed scoring constants. Never tuned per call."""

    # Weighted evidence at which single-provider confidence reaches ~63%
    saturation_weight: float = 5.0
    staleness_days: float = 90.0
    decay_days: float = 365.0
    recency_floor: float = 0.2

    expert_threshold: float = 0.85
    advanced_threshold: float = 0.65
    intermediate_threshold: float = 0.40

    # Weight of one piece of evidence by kind
    language_usage_weight: float = 2.0
    code_change_weight: float = 1.0
    issue_tag_weight: float = 0.5
    issue_delivery_weight: float = 0.5
    resolved_issue_bonus: float = 0.5
    message_weight: float = 0.2

    # Languages below this share of a repository are noise (vendored files, configs)
    min_language_share: float = 0.02


DEFAULT_POLICY = ScoringPolicy()


def level_for(confidence: float, policy: ScoringPolicy = DEFAULT_POLICY) -> SkillLevel:
    if confidence >= policy.expert_threshold:
        return SkillLevel.EXPERT
    if confidence >= policy.advanced_threshold:
        return SkillLevel.ADVANCED
    if confidence >= policy.intermediate_threshold:
        return SkillLevel.INTERMEDIATE
    return SkillLevel.BEGINNER


def recency_factor(
    last_observed_at: Optional[datetime],
    now: datetime,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> float:
    if last_observed_at is None:
        return policy.recency_floor
    age_days = max(0.0, (now - last_observed_at).total_seconds() / 86400)
    if age_days <= policy.staleness_days:
        return 1.0
    overdue = min(1.0, (age_days - policy.staleness_days) / policy.decay_days)
    return 1.0 - overdue * (1.0 - policy.recency_floor)


def confidence_for(
    weight: float,
    last_observed_at: Optional[datetime],
    now: datetime,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> float:
    if weight <= 0:
        return 0.0
    saturation = 1.0 - math.exp(-weight / policy.saturation_weight)
    return _clamp(saturation * recency_factor(last_observed_at, now, policy))


def aggregate_confidence(confidences: Iterable[float]) -> float:
    remaining = 1.0
    for value in confidences:
        remaining *= 1.0 - _clamp(value)
    return _clamp(1.0 - remaining)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


# ---------------------------------------------------------------------------
# Activity -> contributions
# ---------------------------------------------------------------------------

def contributions_for(
    activity: Activity,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> List[EvidenceContribution]:
    """
    Map one activity to the skills it evidences.

    Raises:
        InferenceItemError: If the activity has no owner or malformed attributes
    """
    if not activity.owner_id:
        raise InferenceItemError("Activity has no owner", activity_id=activity.activity_id)

    try:
        if activity.kind == ActivityKind.LANGUAGE_USAGE:
            pairs = _language_usage(activity, policy)
        elif activity.kind == ActivityKind.CODE_CHANGE:
            pairs = _code_change(activity, policy)
        elif activity.kind == ActivityKind.ISSUE:
            pairs = _issue(activity, policy)
        elif activity.kind == ActivityKind.MESSAGE:
            pairs = [(
                catalog.COLLABORATION_SKILL,
                SkillCategory.SOFT_SKILL,
                f"message:{activity.activity_id}",
                activity.occurred_at,
                policy.message_weight,
            )]
        else:
            raise InferenceItemError(f"Unsupported activity kind {activity.kind}", activity_id=activity.activity_id)
    except (TypeError, ValueError, AttributeError, KeyError) as e:
        raise InferenceItemError(
            f"Malformed {activity.kind.value} attributes: {e}",
            provider=activity.provider.value,
            activity_id=activity.activity_id,
        ) from e

    provider = activity.provider.value
    return [
        EvidenceContribution(
            owner_id=activity.owner_id,
            skill_name=skill,
            category=category,
            provider=provider,
            evidence_id=evidence_id,
            occurred_at=occurred_at,
            weight=weight,
        )
        for skill, category, evidence_id, occurred_at, weight in pairs
    ]


def _language_usage(activity: Activity, policy: ScoringPolicy):
    languages: Mapping[str, float] = activity.attributes["languages"]
    total = float(sum(float(v) for v in languages.values()))
    if total <= 0:
        return []
    weights: Dict[str, float] = defaultdict(float)
    for language, amount in languages.items():
        amount = float(amount)
        if amount < 0:
            raise ValueError(f"negative usage for {language}")
        share = amount / total
        skill = catalog.skill_for_language(language)
        if skill and share >= policy.min_language_share:
            weights[skill] += share * policy.language_usage_weight
    # One evidence id per (subject, skill): a re-sync of the same repository
    # replaces its language shares instead of adding to them.
    return [
        (skill, catalog.category_for(skill), f"languages:{activity.subject_identifier}", activity.occurred_at, weight)
        for skill, weight in sorted(weights.items())
    ]


def _code_change(activity: Activity, policy: ScoringPolicy):
    commits = activity.attributes.get("commits")
    if commits is None:
        commits = [activity.attributes]
    pairs = []
    for commit in commits:
        sha = commit.get("sha") or commit.get("id")
        if not sha:
            raise ValueError("commit without sha")
        occurred_at = parse_timestamp(commit.get("timestamp")) or activity.occurred_at
        skills = set()
        for path in commit.get("files") or []:
            if isinstance(path, Mapping):
                path = path.get("path") or path.get("filename") or ""
            skill = catalog.skill_for_path(str(path))
            if skill:
                skills.add(skill)
        for language in commit.get("languages") or []:
            skill = catalog.skill_for_language(language)
            if skill:
                skills.add(skill)
        # Keyed by commit, so a push webhook and a pull sync of the same
        # commit land on the same ledger entry.
        for skill in sorted(skills):
            pairs.append((skill, catalog.category_for(skill), f"commit:{sha}", occurred_at, policy.code_change_weight))
    return pairs


def _issue(activity: Activity, policy: ScoringPolicy):
    attrs = activity.attributes
    issue_key = attrs.get("key") or activity.activity_id
    evidence_id = f"issue:{issue_key}"
    seen: Dict[str, SkillCategory] = {}
    for tag in list(attrs.get("labels") or []) + list(attrs.get("components") or []):
        resolved = catalog.skill_for_tag(str(tag))
        if resolved:
            seen.setdefault(resolved[0], resolved[1])
    pairs = [
        (skill, category, evidence_id, activity.occurred_at, policy.issue_tag_weight)
        for skill, category in sorted(seen.items())
    ]
    delivery_weight = policy.issue_delivery_weight
    if attrs.get("resolved"):
        delivery_weight += policy.resolved_issue_bonus
    pairs.append((catalog.PROJECT_DELIVERY_SKILL, SkillCategory.SOFT_SKILL, evidence_id, activity.occurred_at, delivery_weight))
    return pairs


def infer_evidence(
    activities: Sequence[Activity],
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> Tuple[List[SkillEvidence], List[InferenceItemError]]:
    """
    Group activities into per-(owner, skill, provider) evidence.

    Activities that fail to map are returned as item errors; they never abort
    the batch.
    """
    contributions: List[EvidenceContribution] = []
    errors: List[InferenceItemError] = []
    for activity in activities:
        try:
            contributions.extend(contributions_for(activity, policy))
        except InferenceItemError as e:
            errors.append(e)
    return evidence_from_contributions(contributions), errors


def evidence_from_contributions(contributions: Iterable[EvidenceContribution]) -> List[SkillEvidence]:
    """Collapse contributions into SkillEvidence; duplicate keys count once (last one wins)."""
    unique: Dict[tuple, EvidenceContribution] = {}
    for contribution in contributions:
        unique[contribution.key] = contribution

    grouped: Dict[tuple, List[EvidenceContribution]] = defaultdict(list)
    for contribution in unique.values():
        grouped[(contribution.owner_id, contribution.skill_name, contribution.provider)].append(contribution)

    evidence = []
    for (owner_id, skill_name, provider), items in sorted(grouped.items()):
        evidence.append(SkillEvidence(
            owner_id=owner_id,
            skill_name=skill_name,
            provider=provider,
            occurrence_count=len(items),
            last_observed_at=max(item.occurred_at for item in items),
            weight=sum(item.weight for item in items),
            category=items[0].category,
        ))
    return evidence


# ---------------------------------------------------------------------------
# Evidence -> records
# ---------------------------------------------------------------------------

def combine(
    evidence: Sequence[SkillEvidence],
    existing: Optional[SkillRecord],
    now: datetime,
    source: Optional[str] = None,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> SkillRecord:
    """
    Build the record for one (owner, skill, source) from its full evidence.

    With a single provider's evidence (or ``source`` set to a provider) the
    record scores that provider alone. With ``source=AGGREGATE_SOURCE`` each
    provider is scored separately and merged with ``1 - prod(1 - c_p)``.

    If the evidence is unchanged from ``existing`` the existing record is
    returned as is, so replaying the same activities never rewrites it.
    """
    if not evidence:
        raise ValueError("combine() needs at least one piece of evidence")
    owner_id = evidence[0].owner_id
    skill_name = evidence[0].skill_name
    if any(e.owner_id != owner_id or e.skill_name != skill_name for e in evidence):
        raise ValueError("combine() evidence must share owner and skill")

    source = source or (evidence[0].provider if len(evidence) == 1 else AGGREGATE_SOURCE)
    per_provider = [confidence_for(e.weight, e.last_observed_at, now, policy) for e in evidence]
    if source == AGGREGATE_SOURCE:
        confidence = aggregate_confidence(per_provider)
    else:
        confidence = confidence_for(
            sum(e.weight for e in evidence),
            max(e.last_observed_at for e in evidence),
            now,
            policy,
        )

    category = _pick_category(evidence)
    candidate = SkillRecord(
        owner_id=owner_id,
        skill_name=skill_name,
        category=category,
        level=level_for(confidence, policy),
        confidence=round(confidence, 6),
        source=source,
        evidence_count=sum(e.occurrence_count for e in evidence),
        evidence_weight=round(sum(e.weight for e in evidence), 6),
        last_observed_at=max(e.last_observed_at for e in evidence),
        last_updated_at=now,
    )

    if existing is None:
        return candidate
    if existing.same_evidence_as(candidate):
        return existing
    candidate.id = existing.id
    return candidate


def _pick_category(evidence: Sequence[SkillEvidence]) -> SkillCategory:
    # A tag-only domain guess loses to any provider that classified the skill
    for item in evidence:
        if item.category != SkillCategory.DOMAIN:
            return item.category
    return SkillCategory.DOMAIN
