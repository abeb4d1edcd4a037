"""
Portal collaborator tables shared with the rest of the operations portal.
"""

from escalation_desk.infrastructure.portal.models import (
    UserModel,
    StudentModel,
    TicketModel,
    TicketActivityModel,
    NotificationModel,
)

__all__ = [
    "UserModel",
    "StudentModel",
    "TicketModel",
    "TicketActivityModel",
    "NotificationModel",
]
