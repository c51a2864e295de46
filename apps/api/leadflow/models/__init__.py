from leadflow.authz.models import RoleCapabilityOverride
from leadflow.crm.models import (
    Company,
    FollowUp,
    FollowUpDeletionRequest,
    Notification,
    Task,
    Ticket,
    User,
)
from leadflow.models.security_event import SecurityEvent

__all__ = [
    "Company",
    "FollowUp",
    "FollowUpDeletionRequest",
    "Notification",
    "RoleCapabilityOverride",
    "SecurityEvent",
    "Task",
    "Ticket",
    "User",
]
