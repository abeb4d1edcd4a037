"""
Escalation Infrastructure Layer
================================

Infrastructure implementations for the escalation module.

Contains:
- Models: SQLAlchemy ORM models
- Repositories: Concrete repository and gateway implementations
- External: WhatsApp delivery, notification dispatcher, policy hot-reload
"""

from escalation_desk.escalations.infrastructure.models import (
    MatterModel,
    MatterMemberModel,
    MatterStudentModel,
    StepModel,
    DayCloseOverrideModel,
)
from escalation_desk.escalations.infrastructure.repositories import (
    SQLAlchemyTransaction,
    SQLAlchemyMatterRepository,
    SQLAlchemyStepRepository,
    SQLAlchemyOverrideRepository,
    SQLAlchemyDirectoryGateway,
    SQLAlchemyTicketGateway,
    SQLAlchemyNotificationStore,
)
from escalation_desk.escalations.infrastructure.external import (
    CircuitBreaker,
    WhatsAppClient,
    WhatsAppMessage,
    NotificationDispatcher,
    PolicyConfigManager,
    policy_config_manager,
    whatsapp_client,
)

__all__ = [
    # Models
    "MatterModel",
    "MatterMemberModel",
    "MatterStudentModel",
    "StepModel",
    "DayCloseOverrideModel",
    # Repositories
    "SQLAlchemyTransaction",
    "SQLAlchemyMatterRepository",
    "SQLAlchemyStepRepository",
    "SQLAlchemyOverrideRepository",
    "SQLAlchemyDirectoryGateway",
    "SQLAlchemyTicketGateway",
    "SQLAlchemyNotificationStore",
    # External
    "CircuitBreaker",
    "WhatsAppClient",
    "WhatsAppMessage",
    "NotificationDispatcher",
    "PolicyConfigManager",
    "policy_config_manager",
    "whatsapp_client",
]
