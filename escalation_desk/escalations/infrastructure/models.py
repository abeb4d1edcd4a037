"""
Escalation Infrastructure Models
=================================

SQLAlchemy ORM models for the escalation module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Index
)
from sqlalchemy.orm import Mapped, mapped_column

from escalation_desk.infrastructure.database import Base
from escalation_desk.config import MatterStatus, StepAction


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MatterModel(Base):
    """
    Database model for Matter entity.

    Maps to the 'matters' table.
    """
    __tablename__ = "matters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Lifecycle
    status: Mapped[MatterStatus] = mapped_column(String(20), nullable=False, default=MatterStatus.OPEN.value, index=True)
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # People
    created_by_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    current_assignee_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    suggested_level2_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True)

    # Originating ticket, when raised from one
    ticket_id: Mapped[Optional[int]] = mapped_column(ForeignKey("tickets.id"), nullable=True, index=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class MatterMemberModel(Base):
    """
    Users involved in a matter.

    Maps to the 'matter_members' table.
    """
    __tablename__ = "matter_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    matter_id: Mapped[int] = mapped_column(ForeignKey("matters.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("matter_id", "user_id", name="uq_matter_members_matter_user"),
    )


class MatterStudentModel(Base):
    """
    Students referenced by a matter.

    Maps to the 'matter_students' table.
    """
    __tablename__ = "matter_students"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    matter_id: Mapped[int] = mapped_column(ForeignKey("matters.id", ondelete="CASCADE"), nullable=False, index=True)
    student_id: Mapped[int] = mapped_column(ForeignKey("students.id"), nullable=False)

    __table_args__ = (
        UniqueConstraint("matter_id", "student_id", name="uq_matter_students_matter_student"),
    )


class StepModel(Base):
    """
    Append-only audit entry for a matter.

    Maps to the 'matter_steps' table. Rows are inserted, never updated.
    """
    __tablename__ = "matter_steps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    matter_id: Mapped[int] = mapped_column(ForeignKey("matters.id", ondelete="CASCADE"), nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[StepAction] = mapped_column(String(20), nullable=False)
    from_user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    to_user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("ix_matter_steps_matter_created", "matter_id", "created_at", "id"),
    )


class DayCloseOverrideModel(Base):
    """
    Admin exemption from the day-close gate.

    Maps to the 'day_close_overrides' table.
    """
    __tablename__ = "day_close_overrides"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    matter_id: Mapped[Optional[int]] = mapped_column(ForeignKey("matters.id"), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_by: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_by: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True)
