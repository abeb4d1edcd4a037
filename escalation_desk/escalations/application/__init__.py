"""
Escalation Application Layer
=============================

Application layer for the escalation module.

Contains:
- Services: MatterLifecycleService, DayCloseGateService, TicketMirror,
  NotificationService
- Interfaces: repository and gateway contracts implemented by infrastructure
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from escalation_desk.escalations.application.dto import (
    MatterCreateRequest,
    RaiseFromTicketRequest,
    EscalateRequest,
    NoteRequest,
    RemindRequest,
    OverrideGrantRequest,
    OverrideRevokeRequest,
    MatterResponse,
    DeliveryResponse,
    TransitionResponse,
    RemindResponse,
    MatterListResponse,
    CountsResponse,
    MatterDetailResponse,
    PauseStatusResponse,
    OverrideResponse,
    OverrideListResponse,
    RevokeResponse,
    ErrorResponse,
)
from escalation_desk.escalations.application.services import (
    MatterLifecycleService,
    DayCloseGateService,
    TicketMirror,
    NotificationService,
    ITransaction,
    IMatterRepository,
    IStepRepository,
    IOverrideRepository,
    IDirectoryGateway,
    INotificationDispatcher,
    ITicketGateway,
    IPolicyConfigProvider,
    resolve_actor,
)

__all__ = [
    # DTOs
    "MatterCreateRequest",
    "RaiseFromTicketRequest",
    "EscalateRequest",
    "NoteRequest",
    "RemindRequest",
    "OverrideGrantRequest",
    "OverrideRevokeRequest",
    "MatterResponse",
    "DeliveryResponse",
    "TransitionResponse",
    "RemindResponse",
    "MatterListResponse",
    "CountsResponse",
    "MatterDetailResponse",
    "PauseStatusResponse",
    "OverrideResponse",
    "OverrideListResponse",
    "RevokeResponse",
    "ErrorResponse",
    # Services
    "MatterLifecycleService",
    "DayCloseGateService",
    "TicketMirror",
    "NotificationService",
    "resolve_actor",
    # Interfaces
    "ITransaction",
    "IMatterRepository",
    "IStepRepository",
    "IOverrideRepository",
    "IDirectoryGateway",
    "INotificationDispatcher",
    "ITicketGateway",
    "IPolicyConfigProvider",
]
