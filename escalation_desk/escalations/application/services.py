"""
Escalation Application Services
=================================

Application services orchestrate the matter lifecycle and coordinate between
domain rules, repositories and collaborator gateways.

Every mutating intent follows the same shape:
1. validate input, load the matter, check transition legality and actor
2. commit the matter update and its audit step as one unit
3. mirror the transition onto a linked ticket (own transaction, best effort)
4. dispatch notifications (after commit, outcomes returned to the caller)
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, Iterable, List, Optional

from escalation_desk.config import (
    MatterIntent, StepAction, TicketStatus, DeliveryStatus,
    MIN_TITLE_LENGTH, MAX_TITLE_LENGTH, MAX_NOTE_LENGTH,
    RESERVED_NOTE_PREFIXES, REMINDER_NOTE_PREFIX,
)
from escalation_desk.core import (
    AuthenticationException,
    InvalidStateException,
    InvalidTargetException,
    ResourceNotFoundException,
    ValidationException,
)
from escalation_desk.escalations.domain import (
    Actor, DayCloseOverride, DeliveryResult, EscalationPolicy, Matter,
    MatterState, MatterStateMachine, Notice, PauseStatus, PolicyConfig, Step,
    StudentRecord, TicketSnapshot, TransitionOutcome, UserRecord,
    has_prefix, hold_note, withdraw_note,
)
from escalation_desk.escalations.domain.value_objects import STATE_PRESERVING_INTENTS
from escalation_desk.escalations.application.dto import (
    CountsResponse, MatterCreateRequest, MatterDetailResponse, MatterResponse,
    MemberResponse, StepResponse, StudentResponse,
)
from escalation_desk.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


# ========== Repository & Gateway Interfaces (Dependency Inversion) ==========

class ITransaction(ABC):
    """Commit boundary shared by the repositories of one request."""

    @abstractmethod
    async def commit(self) -> None:
        """Commit pending writes."""

    @abstractmethod
    async def rollback(self) -> None:
        """Discard pending writes."""


class IMatterRepository(ABC):
    """Interface for matter data access."""

    @abstractmethod
    async def get(self, matter_id: int) -> Optional[Matter]:
        """Get matter by ID."""

    @abstractmethod
    async def add(self, matter: Matter) -> Matter:
        """Insert a new matter and return it with its ID."""

    @abstractmethod
    async def add_members(self, matter_id: int, user_ids: Iterable[int]) -> None:
        """Link users to a matter, ignoring existing links."""

    @abstractmethod
    async def add_students(self, matter_id: int, student_ids: Iterable[int]) -> None:
        """Link students to a matter, ignoring existing links."""

    @abstractmethod
    async def list_member_ids(self, matter_id: int) -> List[int]:
        """User IDs listed as members of a matter."""

    @abstractmethod
    async def list_student_ids(self, matter_id: int) -> List[int]:
        """Student IDs referenced by a matter."""

    @abstractmethod
    async def apply_transition(
        self,
        matter_id: int,
        expected: MatterState,
        new_state: MatterState,
        timestamp: datetime
    ) -> bool:
        """Compare-and-set the matter state. False when ``expected`` is stale."""

    @abstractmethod
    async def touch(self, matter_id: int, timestamp: datetime) -> None:
        """Bump ``updated_at`` without changing state."""

    @abstractmethod
    async def list(self, filters: dict, limit: int = 200, offset: int = 0) -> List[Matter]:
        """List matters, newest first."""

    @abstractmethod
    async def count(self, filters: dict) -> int:
        """Count matters matching filters."""

    @abstractmethod
    async def count_open_involving(self, user_id: int) -> int:
        """Non-closed matters where the user is assignee, creator or member."""


class IStepRepository(ABC):
    """Append-only audit log. No update or delete is exposed."""

    @abstractmethod
    async def append(
        self,
        matter_id: int,
        level: int,
        action: StepAction,
        from_user_id: int,
        to_user_id: Optional[int] = None,
        note: Optional[str] = None
    ) -> int:
        """Append a step and return its ID."""

    @abstractmethod
    async def list_for_matter(self, matter_id: int) -> List[Step]:
        """Steps in creation order, insertion sequence breaking ties."""


class IOverrideRepository(ABC):
    """Interface for day-close override data access."""

    @abstractmethod
    async def create(self, override: DayCloseOverride) -> DayCloseOverride:
        """Insert an active override."""

    @abstractmethod
    async def deactivate_active(
        self,
        user_id: int,
        ended_by: int,
        timestamp: datetime,
        matter_id: Optional[int] = None
    ) -> int:
        """Deactivate a user's active overrides; returns how many changed."""

    @abstractmethod
    async def has_active(self, user_id: int) -> bool:
        """Whether any override (general or matter-specific) is active."""

    @abstractmethod
    async def list_for_user(self, user_id: int) -> List[DayCloseOverride]:
        """Override history, newest first."""


class IDirectoryGateway(ABC):
    """Read-only user and student directory."""

    @abstractmethod
    async def resolve_user(self, user_id: int) -> Optional[UserRecord]:
        """Resolve one user."""

    @abstractmethod
    async def resolve_users(self, user_ids: Iterable[int]) -> Dict[int, UserRecord]:
        """Resolve many users; unknown IDs are absent from the result."""

    @abstractmethod
    async def resolve_student(self, student_id: int) -> Optional[StudentRecord]:
        """Resolve one student."""

    @abstractmethod
    async def resolve_students(self, student_ids: Iterable[int]) -> Dict[int, StudentRecord]:
        """Resolve many students; unknown IDs are absent from the result."""


class INotificationDispatcher(ABC):
    """Outbound delivery plus in-app record, one recipient at a time."""

    @abstractmethod
    async def send(
        self,
        recipient: UserRecord,
        subject: str,
        body: str,
        meta: dict
    ) -> DeliveryResult:
        """Attempt outbound delivery. Never raises for delivery failures."""

    @abstractmethod
    async def record_in_app(self, recipient: UserRecord, payload: dict) -> None:
        """Record an in-app notification."""


class ITicketGateway(ABC):
    """The linked ticket record, as far as the mirror needs it."""

    @abstractmethod
    async def get_ticket(self, ticket_id: int) -> Optional[TicketSnapshot]:
        """Read the ticket."""

    @abstractmethod
    async def update_ticket(self, ticket_id: int, patch: dict) -> None:
        """Patch ticket columns."""

    @abstractmethod
    async def append_ticket_activity(self, ticket_id: int, entry: dict) -> None:
        """Append a ticket activity entry."""

    @abstractmethod
    async def claim_for_escalation(self, ticket_id: int, timestamp: datetime) -> bool:
        """Mark the ticket escalated if it is not. Returns False when it already was."""


class IPolicyConfigProvider(ABC):
    """Interface for escalation policy configuration access."""

    @abstractmethod
    def get_config(self) -> PolicyConfig:
        """Get current policy configuration."""


# ========== Helpers ==========

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@asynccontextmanager
async def atomic(transaction: ITransaction) -> AsyncIterator[None]:
    """Commit on success, roll back and re-raise on any failure."""
    try:
        yield
        await transaction.commit()
    except Exception:
        await transaction.rollback()
        raise


def normalize_title(raw: Optional[str]) -> str:
    title = (raw or "").strip()
    if len(title) < MIN_TITLE_LENGTH:
        raise ValidationException(
            f"Title must be at least {MIN_TITLE_LENGTH} characters",
            {"field": "title"}
        )
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationException(
            f"Title must be at most {MAX_TITLE_LENGTH} characters",
            {"field": "title"}
        )
    return title


def clean_note(raw: Optional[str], required: bool = False) -> Optional[str]:
    note = (raw or "").strip()
    if not note:
        if required:
            raise ValidationException("A note is required", {"field": "note"})
        return None
    if len(note) > MAX_NOTE_LENGTH:
        raise ValidationException(
            f"Note must be at most {MAX_NOTE_LENGTH} characters",
            {"field": "note"}
        )
    return note


def unique_ids(ids: Optional[Iterable[int]]) -> List[int]:
    """De-duplicate while keeping caller order; drops falsy IDs."""
    seen: Dict[int, None] = {}
    for value in ids or []:
        if value:
            seen.setdefault(int(value), None)
    return list(seen)


async def resolve_actor(
    directory: IDirectoryGateway,
    config_provider: IPolicyConfigProvider,
    user_id: Optional[int]
) -> Actor:
    """Turn an authenticated user ID into an Actor with capabilities."""
    if not user_id:
        raise AuthenticationException("Caller identity required")
    user = await directory.resolve_user(user_id)
    if user is None:
        raise AuthenticationException(f"Unknown user {user_id}", {"user_id": user_id})
    return EscalationPolicy(config_provider.get_config()).actor_for(user)


# ========== Ticket Mirror ==========

class TicketMirror:
    """
    Keeps a linked ticket consistent with matter transitions.

    Runs after the matter has committed. Any failure is rolled back locally,
    logged, and handed back as a warning; the matter transition stands.
    """

    def __init__(self, gateway: ITicketGateway, transaction: ITransaction):
        self._gateway = gateway
        self._transaction = transaction

    async def load(self, ticket_id: int) -> TicketSnapshot:
        ticket = await self._gateway.get_ticket(ticket_id)
        if ticket is None:
            raise ResourceNotFoundException("Ticket", str(ticket_id))
        return ticket

    async def claim(self, ticket_id: int) -> None:
        """Mark the ticket escalated inside the caller's transaction."""
        if not await self._gateway.claim_for_escalation(ticket_id, utcnow()):
            raise InvalidStateException("Ticket already escalated", {"ticket_id": ticket_id})

    async def sync(
        self,
        matter: Matter,
        intent: MatterIntent,
        actor_id: int,
        note: Optional[str] = None,
        from_status: Optional[str] = None
    ) -> Optional[str]:
        """
        Mirror one transition.

        Args:
            from_status: Ticket status before the transition, when the
                ticket was already claimed in the core transaction

        Returns:
            A warning string when mirroring failed, otherwise None
        """
        if matter.ticket_id is None:
            return None

        try:
            async with atomic(self._transaction):
                ticket = await self._gateway.get_ticket(matter.ticket_id)
                if ticket is None:
                    raise ResourceNotFoundException("Ticket", str(matter.ticket_id))
                await self._apply(ticket, matter, intent, actor_id, note, from_status)
        except Exception as e:
            logger.warning(
                "Ticket mirror failed",
                extra={
                    "matter_id": matter.id,
                    "ticket_id": matter.ticket_id,
                    "intent": intent.value,
                    "error": str(e)
                }
            )
            return f"ticket {matter.ticket_id} not updated: {e}"

        return None

    async def _apply(
        self,
        ticket: TicketSnapshot,
        matter: Matter,
        intent: MatterIntent,
        actor_id: int,
        note: Optional[str],
        from_status: Optional[str] = None
    ) -> None:
        now = utcnow()
        metadata = {"escalation_id": matter.id, "level": matter.level}

        if intent in (MatterIntent.CREATE, MatterIntent.ESCALATE):
            await self._gateway.update_ticket(ticket.id, {
                "status": TicketStatus.ESCALATED.value,
                "escalated": True,
                "updated_at": now,
                "last_activity_at": now,
            })
            await self._gateway.append_ticket_activity(ticket.id, {
                "author_id": actor_id,
                "type": "status_change",
                "message": f"Escalation #{matter.id} at level {matter.level}",
                "from_status": from_status or ticket.status,
                "to_status": TicketStatus.ESCALATED.value,
                "metadata": {**metadata, "to_user_id": matter.current_assignee_id},
            })
        elif intent in (MatterIntent.CLOSE, MatterIntent.WITHDRAW):
            await self._gateway.update_ticket(ticket.id, {
                "status": TicketStatus.RESOLVED.value,
                "escalated": False,
                "resolved_at": now,
                "updated_at": now,
                "last_activity_at": now,
            })
            await self._gateway.append_ticket_activity(ticket.id, {
                "author_id": actor_id,
                "type": "status_change",
                "message": note or f"Escalation #{matter.id} closed",
                "from_status": ticket.status,
                "to_status": TicketStatus.RESOLVED.value,
                "metadata": metadata,
            })
        elif intent == MatterIntent.HOLD:
            await self._gateway.update_ticket(ticket.id, {"last_activity_at": now})
            await self._gateway.append_ticket_activity(ticket.id, {
                "author_id": actor_id,
                "type": "comment",
                "message": note,
                "metadata": metadata,
            })
        elif intent == MatterIntent.PROGRESS:
            await self._gateway.append_ticket_activity(ticket.id, {
                "author_id": actor_id,
                "type": "comment",
                "message": note,
                "metadata": metadata,
            })


# ========== Notifications ==========

class NotificationService:
    """
    Fans notices out through the dispatcher after the core commit.

    Each recipient succeeds or fails on its own; nothing here raises back
    into the lifecycle operation.
    """

    def __init__(
        self,
        directory: IDirectoryGateway,
        dispatcher: INotificationDispatcher,
        transaction: ITransaction
    ):
        self._directory = directory
        self._dispatcher = dispatcher
        self._transaction = transaction

    async def deliver(
        self,
        notices: List[Notice],
        skip_user_id: Optional[int] = None
    ) -> List[DeliveryResult]:
        pending: Dict[int, Notice] = {}
        for notice in notices:
            if notice.recipient_id and notice.recipient_id != skip_user_id:
                pending.setdefault(notice.recipient_id, notice)
        if not pending:
            return []

        recipients = await self._directory.resolve_users(pending.keys())
        results: List[DeliveryResult] = []

        for recipient_id, notice in pending.items():
            recipient = recipients.get(recipient_id)
            if recipient is None:
                results.append(DeliveryResult(recipient_id, DeliveryStatus.FAILED, "unknown_recipient"))
                continue

            try:
                result = await self._dispatcher.send(recipient, notice.subject, notice.body, notice.meta)
            except Exception as e:
                logger.error(
                    "Notification dispatch raised",
                    extra={"recipient_id": recipient_id, "error": str(e)}
                )
                result = DeliveryResult(recipient_id, DeliveryStatus.FAILED, "whatsapp_send_failed")
            results.append(result)

            try:
                await self._dispatcher.record_in_app(recipient, {
                    "type": "escalation_update",
                    "title": notice.subject,
                    "body": notice.body,
                    "entity_kind": "escalation",
                    "entity_id": notice.meta.get("matter_id"),
                    "meta": notice.meta,
                    "delivery_status": result.status.value,
                    "delivery_error": result.error,
                })
            except Exception as e:
                logger.error(
                    "In-app notification not recorded",
                    extra={"recipient_id": recipient_id, "error": str(e)}
                )

        try:
            await self._transaction.commit()
        except Exception as e:
            await self._transaction.rollback()
            logger.error("In-app notifications not committed", extra={"error": str(e)})

        failed = [r for r in results if not r.sent]
        if failed:
            logger.warning(
                "Notification delivery failures",
                extra={
                    "failed_recipients": [r.recipient_id for r in failed],
                    "reasons": [r.error for r in failed]
                }
            )
        return results


# ========== Application Services ==========

class MatterLifecycleService:
    """
    Owns the escalation state machine.

    Validates authorization and transition legality for every mutating
    intent and commits matter + step atomically.
    """

    def __init__(
        self,
        matter_repository: IMatterRepository,
        step_repository: IStepRepository,
        transaction: ITransaction,
        directory: IDirectoryGateway,
        notifications: NotificationService,
        ticket_mirror: TicketMirror,
        config_provider: IPolicyConfigProvider
    ):
        self._matters = matter_repository
        self._steps = step_repository
        self._transaction = transaction
        self._directory = directory
        self._notifications = notifications
        self._ticket_mirror = ticket_mirror
        self._config_provider = config_provider

    def _policy(self) -> EscalationPolicy:
        return EscalationPolicy(self._config_provider.get_config())

    async def _load(self, matter_id: Optional[int]) -> Matter:
        if not matter_id:
            raise ValidationException("Matter id required", {"field": "matter_id"})
        matter = await self._matters.get(matter_id)
        if matter is None:
            raise ResourceNotFoundException("Matter", str(matter_id))
        return matter

    async def _require_responder(
        self,
        policy: EscalationPolicy,
        user_id: int,
        label: str
    ) -> UserRecord:
        user = await self._directory.resolve_user(user_id)
        if user is None or not policy.is_responder(user):
            raise InvalidTargetException(
                f"{label} must be an admin or team manager",
                {"user_id": user_id}
            )
        return user

    async def _require_users(self, user_ids: Iterable[int]) -> List[int]:
        ids = unique_ids(user_ids)
        if not ids:
            return ids
        found = await self._directory.resolve_users(ids)
        missing = [i for i in ids if i not in found]
        if missing:
            raise ValidationException(f"Unknown users: {missing}", {"user_ids": missing})
        return ids

    async def _require_students(self, student_ids: Iterable[int]) -> List[int]:
        ids = unique_ids(student_ids)
        if not ids:
            return ids
        found = await self._directory.resolve_students(ids)
        missing = [i for i in ids if i not in found]
        if missing:
            raise ValidationException(f"Unknown students: {missing}", {"student_ids": missing})
        return ids

    async def _open_matter(
        self,
        actor: Actor,
        matter: Matter,
        member_ids: List[int],
        student_ids: List[int],
        note: Optional[str] = None
    ) -> TransitionOutcome:
        state = MatterStateMachine.initial(matter.current_assignee_id)
        matter.apply_state(state)

        async with atomic(self._transaction):
            if matter.ticket_id is not None:
                await self._ticket_mirror.claim(matter.ticket_id)
            matter = await self._matters.add(matter)
            await self._matters.add_members(matter.id, member_ids)
            await self._matters.add_students(matter.id, student_ids)
            step_id = await self._steps.append(
                matter.id, state.level, StepAction.CREATED,
                actor.user_id, state.current_assignee_id, note
            )

        logger.info(
            "Escalation matter created",
            extra={
                "matter_id": matter.id,
                "created_by_id": actor.user_id,
                "assignee_id": matter.current_assignee_id,
                "ticket_id": matter.ticket_id,
                "members": len(member_ids),
                "students": len(student_ids)
            }
        )
        return TransitionOutcome(matter=matter, step_ids=[step_id])

    async def _transition(
        self,
        actor: Actor,
        matter: Matter,
        intent: MatterIntent,
        note: Optional[str],
        to_user_id: Optional[int] = None,
        assignee_id: Optional[int] = None
    ) -> TransitionOutcome:
        current = matter.state
        new_state = MatterStateMachine.next_state(current, intent, assignee_id, matter.id)
        now = utcnow()

        async with atomic(self._transaction):
            if intent in STATE_PRESERVING_INTENTS:
                await self._matters.touch(matter.id, now)
            elif not await self._matters.apply_transition(matter.id, current, new_state, now):
                raise InvalidStateException(
                    "Matter changed while this request was in flight; reload and retry",
                    {"matter_id": matter.id, "expected_status": current.status.value}
                )
            step_id = await self._steps.append(
                matter.id, new_state.level, MatterStateMachine.audit_action(intent),
                actor.user_id, to_user_id, note
            )

        matter.apply_state(new_state, now)
        logger.info(
            "Escalation matter transition",
            extra={
                "matter_id": matter.id,
                "intent": intent.value,
                "actor_id": actor.user_id,
                "from_status": current.status.value,
                "to_status": new_state.status.value,
                "level": new_state.level
            }
        )

        outcome = TransitionOutcome(matter=matter, step_ids=[step_id])
        warning = await self._ticket_mirror.sync(matter, intent, actor.user_id, note)
        if warning:
            outcome.warnings.append(warning)
        return outcome

    def _notice(self, matter: Matter, recipient_id: Optional[int], subject: str, body: str, action: str) -> Notice:
        return Notice(
            recipient_id=recipient_id,
            subject=subject,
            body=body,
            meta={"matter_id": matter.id, "action": action, "level": matter.level},
        )

    # ---------- Commands ----------

    async def create_matter(self, actor: Actor, request: MatterCreateRequest) -> TransitionOutcome:
        """Raise a new matter at level 1, status OPEN."""
        policy = self._policy()
        policy.ensure_can_raise(actor)

        title = normalize_title(request.title)
        description = clean_note(request.description)
        if not request.l1_assignee_id:
            raise ValidationException("l1_assignee_id is required", {"field": "l1_assignee_id"})

        assignee = await self._require_responder(policy, request.l1_assignee_id, "L1 assignee")
        if request.suggested_level2_id:
            await self._require_responder(policy, request.suggested_level2_id, "Suggested L2 assignee")
        member_ids = await self._require_users(request.involved_user_ids)
        student_ids = await self._require_students(request.involved_student_ids)

        matter = Matter(
            id=None,
            title=title,
            description=description,
            created_by_id=actor.user_id,
            current_assignee_id=assignee.id,
            suggested_level2_id=request.suggested_level2_id,
        )
        outcome = await self._open_matter(actor, matter, member_ids, student_ids)

        matter = outcome.matter
        outcome.deliveries = await self._notifications.deliver([
            self._notice(
                matter, assignee.id,
                f"Escalation #{matter.id} assigned to you",
                f'"{matter.title}" was raised by {actor.name or f"User #{actor.user_id}"} '
                f"and is now with you at level 1.",
                "created",
            ),
        ], skip_user_id=actor.user_id)
        return outcome

    async def raise_from_ticket(
        self,
        actor: Actor,
        ticket_id: int,
        to_user_id: Optional[int],
        note: Optional[str] = None
    ) -> TransitionOutcome:
        """Escalate a ticket into a new matter linked to it."""
        policy = self._policy()
        policy.ensure_can_raise(actor)
        if not to_user_id:
            raise ValidationException("Escalation target required", {"field": "to_user_id"})
        note = clean_note(note)

        ticket = await self._ticket_mirror.load(ticket_id)
        if ticket.escalated:
            raise InvalidStateException("Ticket already escalated", {"ticket_id": ticket_id})
        target = await self._require_responder(policy, to_user_id, "Escalation target")

        ticket_number = ticket.ticket_number or format_ticket_number(ticket.id, ticket.created_at)
        member_ids = unique_ids([ticket.created_by_id, actor.user_id])
        matter = Matter(
            id=None,
            title=f"[{ticket_number}] {ticket.title}"[:MAX_TITLE_LENGTH],
            description=note or ticket.description,
            created_by_id=actor.user_id,
            current_assignee_id=target.id,
            ticket_id=ticket.id,
        )
        outcome = await self._open_matter(actor, matter, member_ids, [], note)

        matter = outcome.matter
        warning = await self._ticket_mirror.sync(
            matter, MatterIntent.CREATE, actor.user_id, note, from_status=ticket.status
        )
        if warning:
            outcome.warnings.append(warning)

        outcome.deliveries = await self._notifications.deliver([
            self._notice(
                matter, target.id,
                f"Ticket {ticket_number} escalated to you",
                f'"{ticket.title}" is now escalation #{matter.id} and assigned to you.',
                "created",
            ),
            self._notice(
                matter, ticket.created_by_id,
                f"Ticket {ticket_number} escalated",
                f"Your ticket has been escalated to {target.name}.",
                "created",
            ),
        ], skip_user_id=actor.user_id)
        return outcome

    async def escalate(
        self,
        actor: Actor,
        matter_id: int,
        l2_assignee_id: Optional[int],
        note: Optional[str] = None
    ) -> TransitionOutcome:
        """Move a level-1 matter to level 2 under a new assignee."""
        if not l2_assignee_id:
            raise ValidationException("l2_assignee_id is required", {"field": "l2_assignee_id"})
        note = clean_note(note)
        policy = self._policy()

        matter = await self._load(matter_id)
        MatterStateMachine.next_state(matter.state, MatterIntent.ESCALATE, l2_assignee_id, matter.id)
        policy.ensure_can_route(actor, matter, MatterIntent.ESCALATE)
        target = await self._require_responder(policy, l2_assignee_id, "L2 assignee")

        outcome = await self._transition(
            actor, matter, MatterIntent.ESCALATE, note,
            to_user_id=target.id, assignee_id=target.id
        )
        outcome.deliveries = await self._notifications.deliver([
            self._notice(
                matter, target.id,
                f"Escalation #{matter.id} escalated to you",
                f'"{matter.title}" has been escalated to level 2 and is now with you.',
                "escalated",
            ),
            self._notice(
                matter, matter.created_by_id,
                f"Escalation #{matter.id} moved to level 2",
                f'"{matter.title}" is now with {target.name}.',
                "escalated",
            ),
        ], skip_user_id=actor.user_id)
        return outcome

    async def hold(self, actor: Actor, matter_id: int, note: Optional[str] = None) -> TransitionOutcome:
        """Put a matter on hold. The step is recorded as PROGRESS."""
        note = clean_note(note)
        matter = await self._load(matter_id)
        MatterStateMachine.next_state(matter.state, MatterIntent.HOLD, matter_id=matter.id)
        self._policy().ensure_can_route(actor, matter, MatterIntent.HOLD)

        outcome = await self._transition(
            actor, matter, MatterIntent.HOLD, hold_note(note),
            to_user_id=matter.current_assignee_id
        )
        outcome.deliveries = await self._notifications.deliver([
            self._notice(
                matter, matter.created_by_id,
                f"Escalation #{matter.id} on hold",
                note or f'"{matter.title}" has been placed on hold.',
                "hold",
            ),
        ], skip_user_id=actor.user_id)
        return outcome

    async def withdraw(self, actor: Actor, matter_id: int, note: Optional[str]) -> TransitionOutcome:
        """Creator withdraws a matter. The step is recorded as CLOSE."""
        note = clean_note(note, required=True)
        matter = await self._load(matter_id)
        MatterStateMachine.next_state(matter.state, MatterIntent.WITHDRAW, matter_id=matter.id)
        self._policy().ensure_can_withdraw(actor, matter)

        former_assignee_id = matter.current_assignee_id
        outcome = await self._transition(
            actor, matter, MatterIntent.WITHDRAW, withdraw_note(note),
            to_user_id=former_assignee_id
        )
        outcome.deliveries = await self._notifications.deliver([
            self._notice(
                matter, former_assignee_id,
                f"Escalation #{matter.id} withdrawn",
                note,
                "withdrawn",
            ),
        ], skip_user_id=actor.user_id)
        return outcome

    async def close(self, actor: Actor, matter_id: int, note: Optional[str]) -> TransitionOutcome:
        """Close a matter with a required closing note."""
        note = clean_note(note, required=True)
        matter = await self._load(matter_id)
        MatterStateMachine.next_state(matter.state, MatterIntent.CLOSE, matter_id=matter.id)
        self._policy().ensure_can_route(actor, matter, MatterIntent.CLOSE)

        former_assignee_id = matter.current_assignee_id
        outcome = await self._transition(
            actor, matter, MatterIntent.CLOSE, note,
            to_user_id=former_assignee_id
        )
        outcome.deliveries = await self._notifications.deliver([
            self._notice(
                matter, matter.created_by_id,
                f"Escalation #{matter.id} closed",
                note,
                "closed",
            ),
        ], skip_user_id=actor.user_id)
        return outcome

    async def progress(self, actor: Actor, matter_id: int, note: Optional[str]) -> TransitionOutcome:
        """Log a progress note without changing state."""
        note = clean_note(note, required=True)
        for prefix in RESERVED_NOTE_PREFIXES:
            if has_prefix(note, prefix):
                raise ValidationException(
                    f"Progress notes cannot start with '{prefix}'",
                    {"field": "note"}
                )

        matter = await self._load(matter_id)
        member_ids = await self._matters.list_member_ids(matter.id)
        self._policy().ensure_can_progress(actor, matter, member_ids)

        outcome = await self._transition(
            actor, matter, MatterIntent.PROGRESS, note,
            to_user_id=matter.current_assignee_id
        )
        outcome.deliveries = await self._notifications.deliver([
            self._notice(matter, matter.current_assignee_id, f"Update on escalation #{matter.id}", note, "progress"),
            self._notice(matter, matter.created_by_id, f"Update on escalation #{matter.id}", note, "progress"),
        ], skip_user_id=actor.user_id)
        return outcome

    async def remind_members(
        self,
        actor: Actor,
        matter_id: int,
        member_ids: Iterable[int],
        note: Optional[str] = None
    ) -> TransitionOutcome:
        """
        Send a reminder to listed members.

        One PROGRESS step is appended per recipient before any delivery is
        attempted, so the audit trail does not depend on delivery outcome.
        """
        self._policy().ensure_can_remind(actor)
        recipients = unique_ids(member_ids)
        if not recipients:
            raise ValidationException("member_ids must not be empty", {"field": "member_ids"})
        note = clean_note(note)

        matter = await self._load(matter_id)
        listed = set(await self._matters.list_member_ids(matter.id))
        strangers = [r for r in recipients if r not in listed]
        if strangers:
            raise ValidationException(
                f"Users {strangers} are not members of matter {matter.id}",
                {"user_ids": strangers}
            )

        users = await self._directory.resolve_users(recipients)
        names = ", ".join(users[r].name if r in users else f"User #{r}" for r in recipients)
        message = note or (
            f"Dear {names}, an escalation has been raised ({matter.title}). "
            "Please meet the Immediate Supervisor and Director during the "
            "escalation window today to resolve the issue."
        )

        now = utcnow()
        step_ids: List[int] = []
        async with atomic(self._transaction):
            await self._matters.touch(matter.id, now)
            for recipient_id in recipients:
                step_ids.append(await self._steps.append(
                    matter.id, matter.level, MatterStateMachine.audit_action(MatterIntent.REMIND),
                    actor.user_id, recipient_id, f"{REMINDER_NOTE_PREFIX}: {message}"
                ))
        matter.updated_at = now

        deliveries = await self._notifications.deliver([
            self._notice(matter, r, f"Reminder: escalation #{matter.id}", message, "reminder")
            for r in recipients
        ])
        sent = sum(1 for d in deliveries if d.sent)
        logger.info(
            "Escalation reminders sent",
            extra={
                "matter_id": matter.id,
                "actor_id": actor.user_id,
                "sent": sent,
                "failed": len(deliveries) - sent
            }
        )
        return TransitionOutcome(matter=matter, step_ids=step_ids, deliveries=deliveries)

    # ---------- Queries ----------

    async def list_for_you(self, actor: Actor) -> List[Matter]:
        return await self._matters.list({"assignee_id": actor.user_id})

    async def list_raised_by_me(self, actor: Actor) -> List[Matter]:
        return await self._matters.list({"created_by_id": actor.user_id})

    async def list_all_open(self) -> List[Matter]:
        return await self._matters.list({"closed": False})

    async def list_all_closed(self) -> List[Matter]:
        return await self._matters.list({"closed": True})

    async def list_section(self, actor: Actor, section: str) -> List[Matter]:
        if section == "forYou":
            return await self.list_for_you(actor)
        if section == "raisedByMe":
            return await self.list_raised_by_me(actor)
        if section == "allOpen":
            return await self.list_all_open()
        if section == "allClosed":
            return await self.list_all_closed()
        raise ValidationException(f"Invalid section '{section}'", {"field": "section"})

    async def counts(self, actor: Actor) -> CountsResponse:
        return CountsResponse(
            for_you_count=await self._matters.count({"assignee_id": actor.user_id}),
            raised_by_me_count=await self._matters.count({"created_by_id": actor.user_id}),
            open_total_count=await self._matters.count({"closed": False}),
            closed_total_count=await self._matters.count({"closed": True}),
        )

    async def get_detail(self, matter_id: int) -> MatterDetailResponse:
        matter = await self._load(matter_id)
        member_ids = await self._matters.list_member_ids(matter.id)
        student_ids = await self._matters.list_student_ids(matter.id)
        steps = await self._steps.list_for_matter(matter.id)

        user_ids = set(member_ids)
        for step in steps:
            user_ids.add(step.from_user_id)
            if step.to_user_id:
                user_ids.add(step.to_user_id)
        users = await self._directory.resolve_users(user_ids)
        names = {uid: user.name for uid, user in users.items()}
        students = await self._directory.resolve_students(student_ids)

        replayed = MatterStateMachine.replay(steps)
        return MatterDetailResponse(
            matter=MatterResponse.from_domain(matter),
            members=[MemberResponse(user_id=uid, name=names.get(uid)) for uid in member_ids],
            students=[
                StudentResponse(
                    student_id=sid,
                    name=students[sid].name if sid in students else None,
                    class_name=students[sid].class_name if sid in students else None,
                )
                for sid in student_ids
            ],
            steps=[StepResponse.from_domain(step, names) for step in steps],
            replayed_status=replayed.status.value if replayed else None,
            replayed_level=replayed.level if replayed else None,
        )


class DayCloseGateService:
    """
    Answers whether a user may close their day, and manages overrides.

    ``is_paused`` is a pure read; overrides change only through
    ``grant``/``revoke``, which deactivate rather than delete.
    """

    def __init__(
        self,
        matter_repository: IMatterRepository,
        override_repository: IOverrideRepository,
        transaction: ITransaction,
        directory: IDirectoryGateway,
        config_provider: IPolicyConfigProvider
    ):
        self._matters = matter_repository
        self._overrides = override_repository
        self._transaction = transaction
        self._directory = directory
        self._config_provider = config_provider

    def _policy(self) -> EscalationPolicy:
        return EscalationPolicy(self._config_provider.get_config())

    async def is_paused(self, user_id: int) -> PauseStatus:
        open_count = await self._matters.count_open_involving(user_id)
        override_active = await self._overrides.has_active(user_id)
        return PauseStatus(
            user_id=user_id,
            paused=open_count > 0 and not override_active,
            open_count=open_count,
            override_active=override_active,
        )

    async def _validate_target(self, user_id: Optional[int], matter_id: Optional[int]) -> None:
        if not user_id:
            raise ValidationException("user_id is required", {"field": "user_id"})
        if await self._directory.resolve_user(user_id) is None:
            raise ValidationException(f"Unknown user {user_id}", {"field": "user_id"})
        if matter_id is not None and await self._matters.get(matter_id) is None:
            raise ValidationException(f"Unknown matter {matter_id}", {"field": "matter_id"})

    async def grant(
        self,
        actor: Actor,
        user_id: Optional[int],
        matter_id: Optional[int] = None,
        reason: Optional[str] = None
    ) -> DayCloseOverride:
        """Supersede the user's active overrides with a new active one."""
        self._policy().ensure_can_manage_day_close(actor)
        await self._validate_target(user_id, matter_id)
        reason = clean_note(reason)
        now = utcnow()

        async with atomic(self._transaction):
            superseded = await self._overrides.deactivate_active(user_id, actor.user_id, now)
            override = await self._overrides.create(DayCloseOverride(
                id=None,
                user_id=user_id,
                matter_id=matter_id,
                reason=reason,
                created_by=actor.user_id,
                created_at=now,
            ))

        logger.info(
            "Day-close override granted",
            extra={
                "user_id": user_id,
                "matter_id": matter_id,
                "granted_by": actor.user_id,
                "superseded": superseded
            }
        )
        return override

    async def revoke(
        self,
        actor: Actor,
        user_id: Optional[int],
        matter_id: Optional[int] = None
    ) -> int:
        """Deactivate the user's active overrides (one matter's only, when given)."""
        self._policy().ensure_can_manage_day_close(actor)
        await self._validate_target(user_id, matter_id)
        now = utcnow()

        async with atomic(self._transaction):
            revoked = await self._overrides.deactivate_active(
                user_id, actor.user_id, now, matter_id=matter_id
            )

        logger.info(
            "Day-close override revoked",
            extra={
                "user_id": user_id,
                "matter_id": matter_id,
                "revoked_by": actor.user_id,
                "revoked": revoked
            }
        )
        return revoked

    async def list_overrides(self, user_id: int) -> List[DayCloseOverride]:
        return await self._overrides.list_for_user(user_id)


def format_ticket_number(ticket_id: int, created_at: Optional[datetime] = None) -> str:
    """Portal ticket number, e.g. TCK-2025-0042."""
    year = (created_at or utcnow()).year
    return f"TCK-{year}-{ticket_id:04d}"
