"""
Escalation Domain Layer
=======================

Domain layer for the escalation matter lifecycle.

Contains:
- Entities: Matter, Step, DayCloseOverride and collaborator records
- Value Objects: MatterState, Actor, PolicyConfig
- Domain Services: MatterStateMachine, EscalationPolicy

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from escalation_desk.escalations.domain.value_objects import (
    MatterState,
    MatterStateMachine,
    Actor,
    PolicyConfig,
    EscalationPolicy,
    hold_note,
    withdraw_note,
    has_prefix,
)
from escalation_desk.escalations.domain.entities import (
    Matter,
    Step,
    DayCloseOverride,
    PauseStatus,
    UserRecord,
    StudentRecord,
    TicketSnapshot,
    DeliveryResult,
    Notice,
    TransitionOutcome,
)

__all__ = [
    # Entities
    "Matter",
    "Step",
    "DayCloseOverride",
    "PauseStatus",
    "UserRecord",
    "StudentRecord",
    "TicketSnapshot",
    "DeliveryResult",
    "Notice",
    "TransitionOutcome",
    # Value Objects & Services
    "MatterState",
    "MatterStateMachine",
    "Actor",
    "PolicyConfig",
    "EscalationPolicy",
    "hold_note",
    "withdraw_note",
    "has_prefix",
]
