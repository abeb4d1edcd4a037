"""
Escalation Application DTOs
============================

Data Transfer Objects for the escalation API layer.

These Pydantic models handle serialization/deserialization for API requests
and responses. Business validation (title length, note presence, assignee
roles) lives in the services so every caller gets the same error kinds.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from escalation_desk.escalations.domain import (
    Matter, Step, DayCloseOverride, PauseStatus, DeliveryResult
)


# ========== Type Aliases for Literals ==========
MatterStatusStr = Literal["OPEN", "ESCALATED", "ON_HOLD", "CLOSED"]
StepActionStr = Literal["CREATED", "ESCALATE", "PROGRESS", "CLOSE"]
DeliveryStatusStr = Literal["sent", "failed"]
MatterSectionStr = Literal["forYou", "raisedByMe", "allOpen", "allClosed"]


# ========== Request DTOs ==========

class MatterCreateRequest(BaseModel):
    """Request model for raising a new matter."""
    title: str = Field(default="", description="Short name for the matter (3-200 chars)")
    description: Optional[str] = Field(None, description="What happened and the expected outcome")
    l1_assignee_id: Optional[int] = Field(None, description="Level-1 responder")
    suggested_level2_id: Optional[int] = Field(None, description="Hint for a later escalation")
    involved_user_ids: List[int] = Field(default_factory=list, description="Staff involved")
    involved_student_ids: List[int] = Field(default_factory=list, description="Students referenced")


class RaiseFromTicketRequest(BaseModel):
    """Request model for escalating a ticket into a new matter."""
    to_user_id: Optional[int] = Field(None, description="Responder who takes the matter")
    note: Optional[str] = Field(None, description="Why the ticket is being escalated")


class EscalateRequest(BaseModel):
    """Request model for moving a matter to level 2."""
    l2_assignee_id: Optional[int] = Field(None, description="Level-2 responder")
    note: Optional[str] = None


class NoteRequest(BaseModel):
    """Request body shared by hold, withdraw, close and progress."""
    note: Optional[str] = None


class RemindRequest(BaseModel):
    """Request model for reminding matter members."""
    member_ids: List[int] = Field(default_factory=list, description="Members to remind")
    note: Optional[str] = Field(None, description="Reminder text; a default is used when empty")


class OverrideGrantRequest(BaseModel):
    """Request model for granting a day-close override."""
    user_id: Optional[int] = None
    matter_id: Optional[int] = Field(None, description="Limit the override to one matter")
    reason: Optional[str] = None


class OverrideRevokeRequest(BaseModel):
    """Request model for revoking day-close overrides."""
    user_id: Optional[int] = None
    matter_id: Optional[int] = Field(None, description="Revoke only overrides for this matter")


# ========== Response DTOs ==========

class MatterResponse(BaseModel):
    """Canonical matter state."""
    id: int
    title: str
    description: Optional[str] = None
    status: MatterStatusStr
    level: int
    created_by_id: int
    current_assignee_id: Optional[int] = None
    suggested_level2_id: Optional[int] = None
    ticket_id: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, matter: Matter) -> "MatterResponse":
        return cls(
            id=matter.id,
            title=matter.title,
            description=matter.description,
            status=matter.status.value,
            level=matter.level,
            created_by_id=matter.created_by_id,
            current_assignee_id=matter.current_assignee_id,
            suggested_level2_id=matter.suggested_level2_id,
            ticket_id=matter.ticket_id,
            created_at=matter.created_at,
            updated_at=matter.updated_at,
        )


class DeliveryResponse(BaseModel):
    """Outcome of one notification attempt."""
    recipient_id: int
    status: DeliveryStatusStr
    error: Optional[str] = None

    @classmethod
    def from_domain(cls, result: DeliveryResult) -> "DeliveryResponse":
        return cls(
            recipient_id=result.recipient_id,
            status=result.status.value,
            error=result.error,
        )


class TransitionResponse(BaseModel):
    """Response for every accepted lifecycle intent."""
    matter: MatterResponse
    step_ids: List[int] = Field(default_factory=list)
    deliveries: List[DeliveryResponse] = Field(
        default_factory=list,
        description="Per-recipient notification outcomes"
    )
    warnings: List[str] = Field(
        default_factory=list,
        description="Non-fatal problems, e.g. ticket mirror failures"
    )


class RemindResponse(BaseModel):
    """Response for a bulk reminder."""
    matter_id: int
    sent_count: int
    failed_count: int
    results: List[DeliveryResponse]
    step_ids: List[int] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class MatterListResponse(BaseModel):
    matters: List[MatterResponse]


class CountsResponse(BaseModel):
    for_you_count: int
    raised_by_me_count: int
    open_total_count: int
    closed_total_count: int


class MemberResponse(BaseModel):
    user_id: int
    name: Optional[str] = None


class StudentResponse(BaseModel):
    student_id: int
    name: Optional[str] = None
    class_name: Optional[str] = None


class StepResponse(BaseModel):
    """One audit entry with resolved user names."""
    id: int
    level: int
    action: StepActionStr
    from_user_id: int
    from_user_name: Optional[str] = None
    to_user_id: Optional[int] = None
    to_user_name: Optional[str] = None
    note: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, step: Step, names: dict) -> "StepResponse":
        return cls(
            id=step.id,
            level=step.level,
            action=step.action.value,
            from_user_id=step.from_user_id,
            from_user_name=names.get(step.from_user_id),
            to_user_id=step.to_user_id,
            to_user_name=names.get(step.to_user_id) if step.to_user_id else None,
            note=step.note,
            created_at=step.created_at,
        )


class MatterDetailResponse(BaseModel):
    """Matter with members, students and its ordered timeline."""
    matter: MatterResponse
    members: List[MemberResponse]
    students: List[StudentResponse]
    steps: List[StepResponse]
    replayed_status: Optional[MatterStatusStr] = Field(
        None,
        description="Status reconstructed from the step history"
    )
    replayed_level: Optional[int] = None


class PauseStatusResponse(BaseModel):
    user_id: int
    paused: bool
    open_count: int
    override_active: bool

    @classmethod
    def from_domain(cls, status: PauseStatus) -> "PauseStatusResponse":
        return cls(
            user_id=status.user_id,
            paused=status.paused,
            open_count=status.open_count,
            override_active=status.override_active,
        )


class OverrideResponse(BaseModel):
    id: int
    user_id: int
    matter_id: Optional[int] = None
    reason: Optional[str] = None
    active: bool
    created_by: int
    created_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    ended_by: Optional[int] = None

    @classmethod
    def from_domain(cls, override: DayCloseOverride) -> "OverrideResponse":
        return cls(
            id=override.id,
            user_id=override.user_id,
            matter_id=override.matter_id,
            reason=override.reason,
            active=override.active,
            created_by=override.created_by,
            created_at=override.created_at,
            ended_at=override.ended_at,
            ended_by=override.ended_by,
        )


class OverrideListResponse(BaseModel):
    overrides: List[OverrideResponse]


class RevokeResponse(BaseModel):
    user_id: int
    revoked: int
    status: PauseStatusResponse


class ErrorResponse(BaseModel):
    """Body returned for every rejected operation."""
    error: str = Field(..., description="Stable error kind")
    detail: str = Field(..., description="Human-readable reason")
    correlation_id: Optional[str] = None
