"""Tests for raising matters from tickets and mirroring transitions back."""

import dataclasses

import pytest
from sqlalchemy import func, select

from escalation_desk.config import MatterStatus, StepAction
from escalation_desk.core import InvalidStateException, ResourceNotFoundException
from escalation_desk.escalations.application import (
    ITicketGateway,
    MatterLifecycleService,
    NotificationService,
    TicketMirror,
)
from escalation_desk.escalations.infrastructure import (
    NotificationDispatcher,
    MatterModel,
    SQLAlchemyDirectoryGateway,
    SQLAlchemyMatterRepository,
    SQLAlchemyNotificationStore,
    SQLAlchemyStepRepository,
    SQLAlchemyTicketGateway,
    SQLAlchemyTransaction,
)
from escalation_desk.infrastructure.portal.models import TicketActivityModel, TicketModel

from conftest import LEAD, MANAGER, MEMBER, PRINCIPAL, TICKET_ID


class BrokenTicketGateway(ITicketGateway):
    """Reads work, writes fail."""

    def __init__(self, inner: ITicketGateway):
        self._inner = inner

    async def get_ticket(self, ticket_id):
        return await self._inner.get_ticket(ticket_id)

    async def update_ticket(self, ticket_id, patch):
        raise RuntimeError("ticket store unavailable")

    async def append_ticket_activity(self, ticket_id, entry):
        raise RuntimeError("ticket store unavailable")

    async def claim_for_escalation(self, ticket_id, timestamp):
        return await self._inner.claim_for_escalation(ticket_id, timestamp)


class StaleTicketGateway(SQLAlchemyTicketGateway):
    """Reports every ticket as not yet escalated, like a read taken before a concurrent raise."""

    async def get_ticket(self, ticket_id):
        ticket = await super().get_ticket(ticket_id)
        return dataclasses.replace(ticket, escalated=False) if ticket else None


async def _ticket(session) -> TicketModel:
    return await session.get(TicketModel, TICKET_ID, populate_existing=True)


async def _activities(session):
    result = await session.execute(
        select(TicketActivityModel)
        .where(TicketActivityModel.ticket_id == TICKET_ID)
        .order_by(TicketActivityModel.id)
    )
    return result.scalars().all()


async def test_raise_from_ticket_links_and_escalates_ticket(lifecycle, actor, session, steps):
    outcome = await lifecycle.raise_from_ticket(await actor(PRINCIPAL), TICKET_ID, MANAGER, "Lab exams on Friday")
    matter = outcome.matter

    assert matter.ticket_id == TICKET_ID
    assert matter.status == MatterStatus.OPEN
    assert matter.level == 1
    assert matter.title.startswith("[TCK-2025-0001]")
    assert outcome.warnings == []

    ticket = await _ticket(session)
    assert ticket.status == "escalated"
    assert ticket.escalated is True

    activity = (await _activities(session))[-1]
    assert activity.type == "status_change"
    assert activity.from_status == "open"
    assert activity.to_status == "escalated"
    assert activity.meta["escalation_id"] == matter.id

    detail = await lifecycle.get_detail(matter.id)
    assert {m.user_id for m in detail.members} == {MEMBER, PRINCIPAL}
    assert (await steps(matter.id))[0].action == StepAction.CREATED
    assert {d.recipient_id for d in outcome.deliveries} == {MANAGER, MEMBER}


async def test_ticket_cannot_be_escalated_twice(lifecycle, actor):
    await lifecycle.raise_from_ticket(await actor(PRINCIPAL), TICKET_ID, MANAGER)
    with pytest.raises(InvalidStateException):
        await lifecycle.raise_from_ticket(await actor(PRINCIPAL), TICKET_ID, LEAD)


async def test_unknown_ticket_is_not_found(lifecycle, actor):
    with pytest.raises(ResourceNotFoundException):
        await lifecycle.raise_from_ticket(await actor(PRINCIPAL), 404, MANAGER)


async def test_close_resolves_linked_ticket(lifecycle, actor, session):
    matter = (await lifecycle.raise_from_ticket(await actor(PRINCIPAL), TICKET_ID, MANAGER)).matter
    await lifecycle.close(await actor(MANAGER), matter.id, "Projector lamp replaced")

    ticket = await _ticket(session)
    assert ticket.status == "resolved"
    assert ticket.escalated is False
    assert ticket.resolved_at is not None
    assert (await _activities(session))[-1].message == "Projector lamp replaced"


async def test_progress_is_copied_as_ticket_comment(lifecycle, actor, session):
    matter = (await lifecycle.raise_from_ticket(await actor(PRINCIPAL), TICKET_ID, MANAGER)).matter
    await lifecycle.progress(await actor(MANAGER), matter.id, "Ordered a new lamp")

    activity = (await _activities(session))[-1]
    assert activity.type == "comment"
    assert activity.message == "Ordered a new lamp"


async def test_hold_is_copied_as_ticket_comment(lifecycle, actor, session):
    matter = (await lifecycle.raise_from_ticket(await actor(PRINCIPAL), TICKET_ID, MANAGER)).matter
    await lifecycle.hold(await actor(MANAGER), matter.id, "Waiting for the vendor")

    ticket = await _ticket(session)
    assert ticket.status == "escalated"
    assert ticket.last_activity_at is not None

    activity = (await _activities(session))[-1]
    assert activity.type == "comment"
    assert activity.message == "Waiting for the vendor"
    assert activity.meta["escalation_id"] == matter.id


async def test_withdraw_resolves_linked_ticket(lifecycle, actor, session):
    matter = (await lifecycle.raise_from_ticket(await actor(PRINCIPAL), TICKET_ID, MANAGER)).matter
    await lifecycle.withdraw(await actor(PRINCIPAL), matter.id, "Sorted out in class")

    ticket = await _ticket(session)
    assert ticket.status == "resolved"
    assert ticket.escalated is False
    assert ticket.resolved_at is not None

    activity = (await _activities(session))[-1]
    assert activity.type == "status_change"
    assert activity.from_status == "escalated"
    assert activity.to_status == "resolved"
    assert activity.message == "Sorted out in class"


async def test_resolved_ticket_can_be_raised_again(lifecycle, actor):
    first = (await lifecycle.raise_from_ticket(await actor(PRINCIPAL), TICKET_ID, MANAGER)).matter
    await lifecycle.close(await actor(MANAGER), first.id, "Projector lamp replaced")

    second = (await lifecycle.raise_from_ticket(await actor(PRINCIPAL), TICKET_ID, LEAD)).matter
    assert second.id != first.id
    assert second.ticket_id == TICKET_ID


def _lifecycle_with(session, whatsapp, policy, gateway: ITicketGateway) -> MatterLifecycleService:
    transaction = SQLAlchemyTransaction(session)
    directory = SQLAlchemyDirectoryGateway(session)
    return MatterLifecycleService(
        matter_repository=SQLAlchemyMatterRepository(session),
        step_repository=SQLAlchemyStepRepository(session),
        transaction=transaction,
        directory=directory,
        notifications=NotificationService(
            directory,
            NotificationDispatcher(whatsapp, SQLAlchemyNotificationStore(session)),
            transaction,
        ),
        ticket_mirror=TicketMirror(gateway, transaction),
        config_provider=policy,
    )


async def test_mirror_failure_is_a_warning(lifecycle, actor, session, whatsapp, policy, steps):
    matter = (await lifecycle.raise_from_ticket(await actor(PRINCIPAL), TICKET_ID, MANAGER)).matter
    broken = _lifecycle_with(session, whatsapp, policy, BrokenTicketGateway(SQLAlchemyTicketGateway(session)))

    outcome = await broken.escalate(await actor(MANAGER), matter.id, LEAD)

    assert outcome.matter.status == MatterStatus.ESCALATED
    assert len(outcome.warnings) == 1
    assert "ticket" in outcome.warnings[0]
    assert [s.action for s in await steps(matter.id)][-1] == StepAction.ESCALATE

    reloaded = await SQLAlchemyMatterRepository(session).get(matter.id)
    assert reloaded.status == MatterStatus.ESCALATED
    assert reloaded.level == 2


async def test_stale_ticket_read_cannot_open_a_second_matter(lifecycle, actor, session, whatsapp, policy):
    await lifecycle.raise_from_ticket(await actor(PRINCIPAL), TICKET_ID, MANAGER)
    stale = _lifecycle_with(session, whatsapp, policy, StaleTicketGateway(session))

    with pytest.raises(InvalidStateException):
        await stale.raise_from_ticket(await actor(PRINCIPAL), TICKET_ID, LEAD)

    count = await session.execute(select(func.count(MatterModel.id)).where(MatterModel.ticket_id == TICKET_ID))
    assert count.scalar_one() == 1
