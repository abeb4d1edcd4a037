"""
Escalation Infrastructure Repositories
=======================================

Concrete implementations of repository and gateway interfaces using SQLAlchemy.

This layer contains the data access logic - how we store and retrieve
entities from the database. Every class here works on the request's
``AsyncSession``; commit boundaries belong to ``SQLAlchemyTransaction``.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, update, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from escalation_desk.config import MatterStatus, StepAction, TicketStatus
from escalation_desk.core import RepositoryException
from escalation_desk.escalations.application.services import (
    ITransaction, IMatterRepository, IStepRepository, IOverrideRepository,
    IDirectoryGateway, ITicketGateway,
)
from escalation_desk.escalations.domain import (
    Matter, MatterState, Step, DayCloseOverride,
    UserRecord, StudentRecord, TicketSnapshot,
)
from escalation_desk.escalations.infrastructure.models import (
    MatterModel, MatterMemberModel, MatterStudentModel, StepModel,
    DayCloseOverrideModel,
)
from escalation_desk.infrastructure.portal.models import (
    UserModel, StudentModel, TicketModel, TicketActivityModel, NotificationModel,
)


class SQLAlchemyTransaction(ITransaction):
    """Commit boundary over one AsyncSession."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()


def _to_matter(model: MatterModel) -> Matter:
    return Matter(
        id=model.id,
        title=model.title,
        description=model.description,
        created_by_id=model.created_by_id,
        status=MatterStatus(model.status),
        level=model.level,
        current_assignee_id=model.current_assignee_id,
        suggested_level2_id=model.suggested_level2_id,
        ticket_id=model.ticket_id,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _assignee_condition(assignee_id: Optional[int]):
    if assignee_id is None:
        return MatterModel.current_assignee_id.is_(None)
    return MatterModel.current_assignee_id == assignee_id


class SQLAlchemyMatterRepository(IMatterRepository):
    """
    SQLAlchemy implementation of matter repository.

    State changes go through ``apply_transition``, a conditional UPDATE
    keyed on the snapshot the caller validated against.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, matter_id: int) -> Optional[Matter]:
        """Get matter by ID."""
        stmt = (
            select(MatterModel)
            .where(MatterModel.id == matter_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return _to_matter(model) if model else None

    async def add(self, matter: Matter) -> Matter:
        """Insert matter and assign its generated ID."""
        model = MatterModel(
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
        self._session.add(model)
        await self._session.flush()

        matter.id = model.id
        return matter

    async def add_members(self, matter_id: int, user_ids: Iterable[int]) -> None:
        existing = set(await self.list_member_ids(matter_id))
        for user_id in user_ids:
            if user_id not in existing:
                self._session.add(MatterMemberModel(matter_id=matter_id, user_id=user_id))
                existing.add(user_id)
        await self._session.flush()

    async def add_students(self, matter_id: int, student_ids: Iterable[int]) -> None:
        existing = set(await self.list_student_ids(matter_id))
        for student_id in student_ids:
            if student_id not in existing:
                self._session.add(MatterStudentModel(matter_id=matter_id, student_id=student_id))
                existing.add(student_id)
        await self._session.flush()

    async def list_member_ids(self, matter_id: int) -> List[int]:
        stmt = (
            select(MatterMemberModel.user_id)
            .where(MatterMemberModel.matter_id == matter_id)
            .order_by(MatterMemberModel.id.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_student_ids(self, matter_id: int) -> List[int]:
        stmt = (
            select(MatterStudentModel.student_id)
            .where(MatterStudentModel.matter_id == matter_id)
            .order_by(MatterStudentModel.id.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def apply_transition(
        self,
        matter_id: int,
        expected: MatterState,
        new_state: MatterState,
        timestamp: datetime
    ) -> bool:
        """Compare-and-set on (status, level, assignee)."""
        stmt = (
            update(MatterModel)
            .where(
                MatterModel.id == matter_id,
                MatterModel.status == expected.status.value,
                MatterModel.level == expected.level,
                _assignee_condition(expected.current_assignee_id),
            )
            .values(
                status=new_state.status.value,
                level=new_state.level,
                current_assignee_id=new_state.current_assignee_id,
                updated_at=timestamp,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount > 1:
            raise RepositoryException(f"Transition touched {result.rowcount} matters for id {matter_id}")
        return result.rowcount == 1

    async def touch(self, matter_id: int, timestamp: datetime) -> None:
        stmt = (
            update(MatterModel)
            .where(MatterModel.id == matter_id)
            .values(updated_at=timestamp)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    def _conditions(self, filters: dict) -> list:
        conditions = []
        if "assignee_id" in filters:
            conditions.append(MatterModel.current_assignee_id == filters["assignee_id"])
        if "created_by_id" in filters:
            conditions.append(MatterModel.created_by_id == filters["created_by_id"])
        if "closed" in filters:
            if filters["closed"]:
                conditions.append(MatterModel.status == MatterStatus.CLOSED.value)
            else:
                conditions.append(MatterModel.status != MatterStatus.CLOSED.value)
        if "ticket_id" in filters:
            conditions.append(MatterModel.ticket_id == filters["ticket_id"])
        return conditions

    async def list(self, filters: dict, limit: int = 200, offset: int = 0) -> List[Matter]:
        """List matters with filters, newest first."""
        stmt = select(MatterModel).execution_options(populate_existing=True)

        conditions = self._conditions(filters)
        if conditions:
            stmt = stmt.where(and_(*conditions))

        stmt = stmt.order_by(MatterModel.created_at.desc(), MatterModel.id.desc())
        stmt = stmt.limit(limit).offset(offset)

        result = await self._session.execute(stmt)
        return [_to_matter(model) for model in result.scalars().all()]

    async def count(self, filters: dict) -> int:
        stmt = select(func.count(MatterModel.id))

        conditions = self._conditions(filters)
        if conditions:
            stmt = stmt.where(and_(*conditions))

        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def count_open_involving(self, user_id: int) -> int:
        member_of = select(MatterMemberModel.matter_id).where(MatterMemberModel.user_id == user_id)
        stmt = select(func.count(MatterModel.id)).where(
            MatterModel.status != MatterStatus.CLOSED.value,
            or_(
                MatterModel.current_assignee_id == user_id,
                MatterModel.created_by_id == user_id,
                MatterModel.id.in_(member_of),
            ),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one()


class SQLAlchemyStepRepository(IStepRepository):
    """
    SQLAlchemy implementation of the audit log writer.

    Only inserts and reads; there is no update or delete path.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def append(
        self,
        matter_id: int,
        level: int,
        action: StepAction,
        from_user_id: int,
        to_user_id: Optional[int] = None,
        note: Optional[str] = None
    ) -> int:
        model = StepModel(
            matter_id=matter_id,
            level=level,
            action=action.value,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            note=note,
        )
        self._session.add(model)
        await self._session.flush()
        return model.id

    async def list_for_matter(self, matter_id: int) -> List[Step]:
        stmt = (
            select(StepModel)
            .where(StepModel.matter_id == matter_id)
            .order_by(StepModel.created_at.asc(), StepModel.id.asc())
        )
        result = await self._session.execute(stmt)
        return [
            Step(
                id=model.id,
                matter_id=model.matter_id,
                level=model.level,
                action=StepAction(model.action),
                from_user_id=model.from_user_id,
                to_user_id=model.to_user_id,
                note=model.note,
                created_at=model.created_at,
            )
            for model in result.scalars().all()
        ]


def _to_override(model: DayCloseOverrideModel) -> DayCloseOverride:
    return DayCloseOverride(
        id=model.id,
        user_id=model.user_id,
        matter_id=model.matter_id,
        reason=model.reason,
        active=model.active,
        created_by=model.created_by,
        created_at=model.created_at,
        ended_at=model.ended_at,
        ended_by=model.ended_by,
    )


class SQLAlchemyOverrideRepository(IOverrideRepository):
    """SQLAlchemy implementation of day-close override repository."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, override: DayCloseOverride) -> DayCloseOverride:
        model = DayCloseOverrideModel(
            user_id=override.user_id,
            matter_id=override.matter_id,
            reason=override.reason,
            active=True,
            created_by=override.created_by,
        )
        if override.created_at is not None:
            model.created_at = override.created_at
        self._session.add(model)
        await self._session.flush()
        return _to_override(model)

    async def deactivate_active(
        self,
        user_id: int,
        ended_by: int,
        timestamp: datetime,
        matter_id: Optional[int] = None
    ) -> int:
        stmt = select(DayCloseOverrideModel).where(
            DayCloseOverrideModel.user_id == user_id,
            DayCloseOverrideModel.active.is_(True),
        )
        if matter_id is not None:
            stmt = stmt.where(DayCloseOverrideModel.matter_id == matter_id)

        result = await self._session.execute(stmt)
        models = result.scalars().all()
        for model in models:
            model.active = False
            model.ended_at = timestamp
            model.ended_by = ended_by

        await self._session.flush()
        return len(models)

    async def has_active(self, user_id: int) -> bool:
        stmt = select(DayCloseOverrideModel.id).where(
            DayCloseOverrideModel.user_id == user_id,
            DayCloseOverrideModel.active.is_(True),
        ).limit(1)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def list_for_user(self, user_id: int) -> List[DayCloseOverride]:
        stmt = (
            select(DayCloseOverrideModel)
            .where(DayCloseOverrideModel.user_id == user_id)
            .order_by(DayCloseOverrideModel.created_at.desc(), DayCloseOverrideModel.id.desc())
        )
        result = await self._session.execute(stmt)
        return [_to_override(model) for model in result.scalars().all()]


class SQLAlchemyDirectoryGateway(IDirectoryGateway):
    """Reads users and students from the portal tables."""

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _to_user(model: UserModel) -> UserRecord:
        return UserRecord(
            id=model.id,
            name=model.name,
            role=model.role,
            whatsapp_number=model.whatsapp_number,
            whatsapp_enabled=model.whatsapp_enabled,
        )

    async def resolve_user(self, user_id: int) -> Optional[UserRecord]:
        model = await self._session.get(UserModel, user_id)
        return self._to_user(model) if model else None

    async def resolve_users(self, user_ids: Iterable[int]) -> Dict[int, UserRecord]:
        ids = list(set(user_ids))
        if not ids:
            return {}
        result = await self._session.execute(select(UserModel).where(UserModel.id.in_(ids)))
        return {model.id: self._to_user(model) for model in result.scalars().all()}

    async def resolve_student(self, student_id: int) -> Optional[StudentRecord]:
        model = await self._session.get(StudentModel, student_id)
        if model is None:
            return None
        return StudentRecord(id=model.id, name=model.name, class_name=model.class_name)

    async def resolve_students(self, student_ids: Iterable[int]) -> Dict[int, StudentRecord]:
        ids = list(set(student_ids))
        if not ids:
            return {}
        result = await self._session.execute(select(StudentModel).where(StudentModel.id.in_(ids)))
        return {
            model.id: StudentRecord(id=model.id, name=model.name, class_name=model.class_name)
            for model in result.scalars().all()
        }


class SQLAlchemyTicketGateway(ITicketGateway):
    """Reads and patches the portal ticket linked to a matter."""

    _PATCHABLE = frozenset({
        "status", "escalated", "updated_at", "last_activity_at", "resolved_at", "assigned_to_id",
    })

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_ticket(self, ticket_id: int) -> Optional[TicketSnapshot]:
        model = await self._session.get(TicketModel, ticket_id, populate_existing=True)
        if model is None:
            return None
        return TicketSnapshot(
            id=model.id,
            title=model.title,
            status=model.status,
            escalated=model.escalated,
            ticket_number=model.ticket_number,
            description=model.description,
            created_by_id=model.created_by_id,
            created_at=model.created_at,
        )

    async def update_ticket(self, ticket_id: int, patch: dict) -> None:
        unknown = set(patch) - self._PATCHABLE
        if unknown:
            raise RepositoryException(f"Ticket fields not patchable: {sorted(unknown)}")

        stmt = (
            update(TicketModel)
            .where(TicketModel.id == ticket_id)
            .values(**patch)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            raise RepositoryException(f"Ticket {ticket_id} not found")

    async def claim_for_escalation(self, ticket_id: int, timestamp: datetime) -> bool:
        stmt = (
            update(TicketModel)
            .where(TicketModel.id == ticket_id, TicketModel.escalated.is_(False))
            .values(status=TicketStatus.ESCALATED.value, escalated=True, updated_at=timestamp)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def append_ticket_activity(self, ticket_id: int, entry: dict) -> None:
        self._session.add(TicketActivityModel(
            ticket_id=ticket_id,
            author_id=entry.get("author_id"),
            type=entry.get("type", "comment"),
            message=entry.get("message"),
            from_status=entry.get("from_status"),
            to_status=entry.get("to_status"),
            meta=entry.get("metadata") or {},
        ))
        await self._session.flush()


class SQLAlchemyNotificationStore:
    """Writes in-app notification rows."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def record(self, user_id: int, payload: dict) -> None:
        self._session.add(NotificationModel(
            user_id=user_id,
            type=payload.get("type", "escalation_update"),
            title=payload.get("title"),
            body=payload.get("body"),
            entity_kind=payload.get("entity_kind"),
            entity_id=payload.get("entity_id"),
            meta=payload.get("meta") or {},
            delivery_status=payload.get("delivery_status"),
            delivery_error=payload.get("delivery_error"),
        ))
        await self._session.flush()
