from app.models.activity_log import ActivityLog
from app.crm.models import (
	Company,
	Contact,
	Interaction,
	Lead,
	LeadTag,
	Opportunity,
	Pipeline,
	PipelineStage,
	Tag,
	Task,
	Tenant,
	User,
)

__all__ = [
	"ActivityLog",
	"Company",
	"Contact",
	"Interaction",
	"Lead",
	"LeadTag",
	"Opportunity",
	"Pipeline",
	"PipelineStage",
	"Tag",
	"Task",
	"Tenant",
	"User",
]
