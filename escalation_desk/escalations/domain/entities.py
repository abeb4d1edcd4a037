"""
Escalation Domain Entities
===========================

Pure Python domain entities for the escalation matter lifecycle.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from escalation_desk.config import (
    MatterStatus, StepAction, DeliveryStatus, MATTER_LEVELS
)
from escalation_desk.escalations.domain.value_objects import MatterState


@dataclass
class Matter:
    """
    Escalation case.

    The matter row is the root aggregate: steps, members and students are
    owned by it. Status, level and assignee change only through
    ``apply_state`` with a state produced by the state machine.
    """

    id: Optional[int]
    title: str
    created_by_id: int
    status: MatterStatus = MatterStatus.OPEN
    level: int = 1
    description: Optional[str] = None
    current_assignee_id: Optional[int] = None
    suggested_level2_id: Optional[int] = None
    ticket_id: Optional[int] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        """Validate matter invariants on initialization."""
        if self.level not in MATTER_LEVELS:
            raise ValueError(f"level must be one of {MATTER_LEVELS}")
        if self.status == MatterStatus.CLOSED and self.current_assignee_id is not None:
            raise ValueError("a closed matter cannot have an assignee")

    @property
    def state(self) -> MatterState:
        return MatterState(
            status=self.status,
            level=self.level,
            current_assignee_id=self.current_assignee_id,
        )

    @property
    def is_closed(self) -> bool:
        return self.status == MatterStatus.CLOSED

    def apply_state(self, state: MatterState, timestamp: Optional[datetime] = None) -> None:
        """Adopt a state computed by the state machine."""
        self.status = state.status
        self.level = state.level
        self.current_assignee_id = state.current_assignee_id
        self.updated_at = timestamp or datetime.now(timezone.utc)


@dataclass(frozen=True)
class Step:
    """Immutable audit entry for a matter."""

    id: Optional[int]
    matter_id: int
    level: int
    action: StepAction
    from_user_id: int
    to_user_id: Optional[int] = None
    note: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class DayCloseOverride:
    """
    Admin-granted exemption from the day-close gate.

    Created active; deactivated by stamping ``ended_at``. Never deleted.
    """

    id: Optional[int]
    user_id: int
    created_by: int
    matter_id: Optional[int] = None
    reason: Optional[str] = None
    active: bool = True
    created_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    ended_by: Optional[int] = None

    def deactivate(self, ended_by: int, timestamp: Optional[datetime] = None) -> None:
        if not self.active:
            return
        self.active = False
        self.ended_at = timestamp or datetime.now(timezone.utc)
        self.ended_by = ended_by


@dataclass(frozen=True)
class PauseStatus:
    """Answer of the day-close gate for one user."""

    user_id: int
    paused: bool
    open_count: int
    override_active: bool


@dataclass(frozen=True)
class UserRecord:
    """User as resolved through the directory gateway."""

    id: int
    name: str
    role: str
    whatsapp_number: Optional[str] = None
    whatsapp_enabled: bool = True


@dataclass(frozen=True)
class StudentRecord:
    """Student as resolved through the directory gateway."""

    id: int
    name: str
    class_name: Optional[str] = None


@dataclass(frozen=True)
class TicketSnapshot:
    """The ticket fields the mirror needs to read."""

    id: int
    title: str
    status: str
    escalated: bool
    ticket_number: Optional[str] = None
    description: Optional[str] = None
    created_by_id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class DeliveryResult:
    """Outcome of notifying one recipient."""

    recipient_id: int
    status: DeliveryStatus
    error: Optional[str] = None

    @property
    def sent(self) -> bool:
        return self.status == DeliveryStatus.SENT


@dataclass
class Notice:
    """A notification the engine wants delivered after commit."""

    recipient_id: int
    subject: str
    body: str
    meta: dict = field(default_factory=dict)


@dataclass
class TransitionOutcome:
    """Everything an accepted lifecycle intent produced."""

    matter: Matter
    step_ids: List[int] = field(default_factory=list)
    deliveries: List[DeliveryResult] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
