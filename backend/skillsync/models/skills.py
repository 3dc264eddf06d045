from sqlalchemy import Column, DateTime, Float, Index, Integer, String, UniqueConstraint

from skillsync.db.base_class import Base


class SkillRecordRow(Base):
    __tablename__ = "skill_records"  # type: ignore[assignment]

    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False)
    skill_name = Column(String, nullable=False)
    category = Column(String, nullable=False)
    level = Column(String, nullable=False)  # 'beginner', 'intermediate', 'advanced', 'expert'
    confidence = Column(Float, nullable=False)
    source = Column(String, nullable=False)  # provider name or 'aggregate'
    evidence_count = Column(Integer, nullable=False, default=0)
    evidence_weight = Column(Float, nullable=False, default=0.0)
    last_observed_at = Column(DateTime(timezone=True), nullable=True)
    last_updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("owner_id", "skill_name", "source", name="uq_skill_records_owner_skill_source"),
    )


Index("idx_skill_records_owner", SkillRecordRow.owner_id)


class SkillContribution(Base):
    """Evidence ledger: one row per (owner, skill, provider, evidence id)."""
    __tablename__ = "skill_contributions"  # type: ignore[assignment]

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String, nullable=False)
    skill_name = Column(String, nullable=False)
    category = Column(String, nullable=False)
    provider = Column(String, nullable=False)
    evidence_id = Column(String, nullable=False)
    occurred_at = Column(DateTime(timezone=True), nullable=False)
    weight = Column(Float, nullable=False)

    __table_args__ = (
        UniqueConstraint("owner_id", "skill_name", "provider", "evidence_id", name="uq_skill_contributions_key"),
    )


Index("idx_skill_contributions_owner_skill", SkillContribution.owner_id, SkillContribution.skill_name)
