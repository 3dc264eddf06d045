import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from skillsync.api.deps import get_container, require_internal_token
from skillsync.schemas.skills import SkillRecord
from skillsync.services.container import ServiceContainer

logger = logging.getLogger(__name__)
router = APIRouter()


class SkillResponse(BaseModel):
    skill_name: str
    category: str
    level: str
    confidence: float
    source: str
    evidence_count: int
    last_observed_at: Optional[datetime]
    last_updated_at: datetime


class OwnerSkillsResponse(BaseModel):
    owner_id: str
    skills: List[SkillResponse]
    total: int


def skill_response(record: SkillRecord) -> SkillResponse:
    return SkillResponse(
        skill_name=record.skill_name,
        category=record.category.value,
        level=record.level.value,
        confidence=round(record.confidence, 4),
        source=record.source,
        evidence_count=record.evidence_count,
        last_observed_at=record.last_observed_at,
        last_updated_at=record.last_updated_at,
    )


@router.get("/{owner_id}", response_model=OwnerSkillsResponse, dependencies=[Depends(require_internal_token)])
async def get_owner_skills(
    owner_id: str,
    source: Optional[str] = Query(None, description="'aggregate' or a provider name; all sources when omitted"),
    container: ServiceContainer = Depends(get_container),
):
    """Inferred skills for an owner, highest confidence first."""
    records = await container.engine.skills_for(owner_id, source)
    records = sorted(records, key=lambda r: (-r.confidence, r.skill_name, r.source))
    return OwnerSkillsResponse(
        owner_id=owner_id,
        skills=[skill_response(r) for r in records],
        total=len(records),
    )
