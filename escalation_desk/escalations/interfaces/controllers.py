"""
Escalation Controllers (API Routes)
====================================

FastAPI routes for escalation matters and the day-close gate.

Controllers are thin - they authenticate the caller, build services and
delegate. Every rejection is raised as an ApplicationException and mapped
to ``{"error", "detail", "correlation_id"}`` by the shared handler.
"""

from typing import Literal, Optional

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.ext.asyncio import AsyncSession

from escalation_desk.core import AuthenticationException
from escalation_desk.infrastructure.database import get_session
from escalation_desk.escalations.application import (
    DayCloseGateService,
    MatterLifecycleService,
    NotificationService,
    TicketMirror,
    IDirectoryGateway,
    IPolicyConfigProvider,
    resolve_actor,
    MatterCreateRequest, RaiseFromTicketRequest, EscalateRequest,
    NoteRequest, RemindRequest, OverrideGrantRequest, OverrideRevokeRequest,
    MatterResponse, DeliveryResponse, TransitionResponse, RemindResponse,
    MatterListResponse, CountsResponse, MatterDetailResponse,
    PauseStatusResponse, OverrideResponse, OverrideListResponse, RevokeResponse,
    ErrorResponse,
)
from escalation_desk.escalations.domain import Actor, TransitionOutcome
from escalation_desk.escalations.infrastructure import (
    SQLAlchemyTransaction,
    SQLAlchemyMatterRepository,
    SQLAlchemyStepRepository,
    SQLAlchemyOverrideRepository,
    SQLAlchemyDirectoryGateway,
    SQLAlchemyTicketGateway,
    SQLAlchemyNotificationStore,
    NotificationDispatcher,
    WhatsAppClient,
    policy_config_manager,
    whatsapp_client,
)
from escalation_desk.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(
    prefix="/escalations",
    tags=["Escalations"],
    responses={
        401: {"model": ErrorResponse, "description": "Missing or unknown X-User-ID"},
        403: {"model": ErrorResponse, "description": "Caller lacks the capability"},
        422: {"model": ErrorResponse, "description": "Validation failed or invalid target"},
    },
)

MatterSection = Literal["forYou", "raisedByMe", "allOpen", "allClosed"]

TRANSITION_RESPONSES = {
    404: {"model": ErrorResponse, "description": "Matter not found"},
    409: {"model": ErrorResponse, "description": "Matter closed or in the wrong state"},
}


# ========== Dependencies ==========

def get_policy_provider() -> IPolicyConfigProvider:
    """Process-wide hot-reloaded policy."""
    return policy_config_manager


def get_whatsapp_client() -> WhatsAppClient:
    return whatsapp_client


async def get_directory(
    session: AsyncSession = Depends(get_session)
) -> IDirectoryGateway:
    return SQLAlchemyDirectoryGateway(session)


async def get_actor(
    x_user_id: Optional[str] = Header(None, alias="X-User-ID"),
    directory: IDirectoryGateway = Depends(get_directory),
    policy_provider: IPolicyConfigProvider = Depends(get_policy_provider)
) -> Actor:
    """Resolve the authenticated caller from the X-User-ID header."""
    if not x_user_id or not x_user_id.strip().isdigit():
        raise AuthenticationException("X-User-ID header with a numeric user id is required")
    return await resolve_actor(directory, policy_provider, int(x_user_id))


async def get_lifecycle_service(
    session: AsyncSession = Depends(get_session),
    client: WhatsAppClient = Depends(get_whatsapp_client),
    policy_provider: IPolicyConfigProvider = Depends(get_policy_provider)
) -> MatterLifecycleService:
    """Get lifecycle service instance bound to the request session."""
    transaction = SQLAlchemyTransaction(session)
    directory = SQLAlchemyDirectoryGateway(session)
    dispatcher = NotificationDispatcher(client, SQLAlchemyNotificationStore(session))
    return MatterLifecycleService(
        matter_repository=SQLAlchemyMatterRepository(session),
        step_repository=SQLAlchemyStepRepository(session),
        transaction=transaction,
        directory=directory,
        notifications=NotificationService(directory, dispatcher, transaction),
        ticket_mirror=TicketMirror(SQLAlchemyTicketGateway(session), transaction),
        config_provider=policy_provider,
    )


async def get_day_close_service(
    session: AsyncSession = Depends(get_session),
    policy_provider: IPolicyConfigProvider = Depends(get_policy_provider)
) -> DayCloseGateService:
    """Get day-close gate service instance bound to the request session."""
    return DayCloseGateService(
        matter_repository=SQLAlchemyMatterRepository(session),
        override_repository=SQLAlchemyOverrideRepository(session),
        transaction=SQLAlchemyTransaction(session),
        directory=SQLAlchemyDirectoryGateway(session),
        config_provider=policy_provider,
    )


def _transition_response(outcome: TransitionOutcome) -> TransitionResponse:
    return TransitionResponse(
        matter=MatterResponse.from_domain(outcome.matter),
        step_ids=outcome.step_ids,
        deliveries=[DeliveryResponse.from_domain(d) for d in outcome.deliveries],
        warnings=outcome.warnings,
    )


# ========== Matter Lifecycle ==========

@router.post(
    "/matters",
    response_model=TransitionResponse,
    status_code=201,
    summary="Raise an escalation matter",
    description="""
    Raise a new matter at level 1 with status `OPEN`.

    - `title`: 3-200 characters
    - `l1_assignee_id`: must hold the respond capability (admin, team manager)
    - `suggested_level2_id`: optional, same rule as the level-1 assignee
    - `involved_user_ids` / `involved_student_ids`: must exist in the directory

    The level-1 assignee is notified over WhatsApp; per-recipient outcomes are
    returned in `deliveries`.
    """
)
async def create_matter(
    request: MatterCreateRequest,
    actor: Actor = Depends(get_actor),
    service: MatterLifecycleService = Depends(get_lifecycle_service)
):
    outcome = await service.create_matter(actor, request)
    return _transition_response(outcome)


@router.post(
    "/tickets/{ticket_id}/raise",
    response_model=TransitionResponse,
    status_code=201,
    summary="Escalate a ticket",
    description="""
    Create a matter linked to the ticket. The ticket moves to `escalated`,
    its creator and the caller become matter members, and a status-change
    activity is appended to the ticket.
    """,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}}
)
async def raise_from_ticket(
    ticket_id: int,
    request: RaiseFromTicketRequest,
    actor: Actor = Depends(get_actor),
    service: MatterLifecycleService = Depends(get_lifecycle_service)
):
    outcome = await service.raise_from_ticket(actor, ticket_id, request.to_user_id, request.note)
    return _transition_response(outcome)


@router.post(
    "/matters/{matter_id}/escalate",
    response_model=TransitionResponse,
    summary="Escalate to level 2",
    responses=TRANSITION_RESPONSES
)
async def escalate_matter(
    matter_id: int,
    request: EscalateRequest,
    actor: Actor = Depends(get_actor),
    service: MatterLifecycleService = Depends(get_lifecycle_service)
):
    outcome = await service.escalate(actor, matter_id, request.l2_assignee_id, request.note)
    return _transition_response(outcome)


@router.post(
    "/matters/{matter_id}/hold",
    response_model=TransitionResponse,
    summary="Put a matter on hold",
    responses=TRANSITION_RESPONSES
)
async def hold_matter(
    matter_id: int,
    request: NoteRequest,
    actor: Actor = Depends(get_actor),
    service: MatterLifecycleService = Depends(get_lifecycle_service)
):
    outcome = await service.hold(actor, matter_id, request.note)
    return _transition_response(outcome)


@router.post(
    "/matters/{matter_id}/withdraw",
    response_model=TransitionResponse,
    summary="Withdraw a matter (creator only)",
    responses=TRANSITION_RESPONSES
)
async def withdraw_matter(
    matter_id: int,
    request: NoteRequest,
    actor: Actor = Depends(get_actor),
    service: MatterLifecycleService = Depends(get_lifecycle_service)
):
    outcome = await service.withdraw(actor, matter_id, request.note)
    return _transition_response(outcome)


@router.post(
    "/matters/{matter_id}/close",
    response_model=TransitionResponse,
    summary="Close a matter",
    description="Requires a non-empty `note`. Clears the assignee.",
    responses=TRANSITION_RESPONSES
)
async def close_matter(
    matter_id: int,
    request: NoteRequest,
    actor: Actor = Depends(get_actor),
    service: MatterLifecycleService = Depends(get_lifecycle_service)
):
    outcome = await service.close(actor, matter_id, request.note)
    return _transition_response(outcome)


@router.post(
    "/matters/{matter_id}/progress",
    response_model=TransitionResponse,
    summary="Log progress",
    description="Appends a PROGRESS step. Status, level and assignee are unchanged.",
    responses={404: {"model": ErrorResponse}}
)
async def log_progress(
    matter_id: int,
    request: NoteRequest,
    actor: Actor = Depends(get_actor),
    service: MatterLifecycleService = Depends(get_lifecycle_service)
):
    outcome = await service.progress(actor, matter_id, request.note)
    return _transition_response(outcome)


@router.post(
    "/matters/{matter_id}/remind",
    response_model=RemindResponse,
    summary="Remind matter members",
    description="""
    Records one PROGRESS step per recipient, then sends a WhatsApp reminder
    to each. Failures are reported per recipient and never roll back the
    recorded steps.
    """,
    responses={404: {"model": ErrorResponse}}
)
async def remind_members(
    matter_id: int,
    request: RemindRequest,
    actor: Actor = Depends(get_actor),
    service: MatterLifecycleService = Depends(get_lifecycle_service)
):
    outcome = await service.remind_members(actor, matter_id, request.member_ids, request.note)
    sent = sum(1 for d in outcome.deliveries if d.sent)
    return RemindResponse(
        matter_id=outcome.matter.id,
        sent_count=sent,
        failed_count=len(outcome.deliveries) - sent,
        results=[DeliveryResponse.from_domain(d) for d in outcome.deliveries],
        step_ids=outcome.step_ids,
        warnings=outcome.warnings,
    )


# ========== Matter Queries ==========

@router.get(
    "/matters",
    response_model=MatterListResponse,
    summary="List matters by section"
)
async def list_matters(
    section: MatterSection = Query("forYou", description="forYou, raisedByMe, allOpen or allClosed"),
    actor: Actor = Depends(get_actor),
    service: MatterLifecycleService = Depends(get_lifecycle_service)
):
    matters = await service.list_section(actor, section)
    return MatterListResponse(matters=[MatterResponse.from_domain(m) for m in matters])


@router.get(
    "/counts",
    response_model=CountsResponse,
    summary="Section counts for the caller"
)
async def get_counts(
    actor: Actor = Depends(get_actor),
    service: MatterLifecycleService = Depends(get_lifecycle_service)
):
    return await service.counts(actor)


@router.get(
    "/matters/{matter_id}",
    response_model=MatterDetailResponse,
    summary="Matter detail with timeline",
    responses={404: {"model": ErrorResponse}}
)
async def get_matter(
    matter_id: int,
    actor: Actor = Depends(get_actor),
    service: MatterLifecycleService = Depends(get_lifecycle_service)
):
    return await service.get_detail(matter_id)


# ========== Day-Close Gate ==========

@router.get(
    "/day-close/paused",
    response_model=PauseStatusResponse,
    summary="Is the user's day close paused?",
    description="Defaults to the caller when `user_id` is omitted."
)
async def get_pause_status(
    user_id: Optional[int] = Query(None),
    actor: Actor = Depends(get_actor),
    service: DayCloseGateService = Depends(get_day_close_service)
):
    status = await service.is_paused(user_id or actor.user_id)
    return PauseStatusResponse.from_domain(status)


@router.post(
    "/day-close/overrides",
    response_model=OverrideResponse,
    status_code=201,
    summary="Grant a day-close override (admin)"
)
async def grant_override(
    request: OverrideGrantRequest,
    actor: Actor = Depends(get_actor),
    service: DayCloseGateService = Depends(get_day_close_service)
):
    override = await service.grant(actor, request.user_id, request.matter_id, request.reason)
    return OverrideResponse.from_domain(override)


@router.post(
    "/day-close/overrides/revoke",
    response_model=RevokeResponse,
    summary="Revoke day-close overrides (admin)"
)
async def revoke_override(
    request: OverrideRevokeRequest,
    actor: Actor = Depends(get_actor),
    service: DayCloseGateService = Depends(get_day_close_service)
):
    revoked = await service.revoke(actor, request.user_id, request.matter_id)
    status = await service.is_paused(request.user_id)
    return RevokeResponse(
        user_id=request.user_id,
        revoked=revoked,
        status=PauseStatusResponse.from_domain(status),
    )


@router.get(
    "/day-close/overrides",
    response_model=OverrideListResponse,
    summary="Override history for a user"
)
async def list_overrides(
    user_id: Optional[int] = Query(None),
    actor: Actor = Depends(get_actor),
    service: DayCloseGateService = Depends(get_day_close_service)
):
    overrides = await service.list_overrides(user_id or actor.user_id)
    return OverrideListResponse(overrides=[OverrideResponse.from_domain(o) for o in overrides])


# Export router
escalation_router = router
