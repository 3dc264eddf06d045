# Import all the models, so that Base has them before metadata.create_all()
from skillsync.db.base_class import Base  # noqa

from skillsync.models.integration import (  # noqa
    IntegrationConnection, WebhookEventLog, SyncLease
)
from skillsync.models.skills import SkillRecordRow, SkillContribution  # noqa
