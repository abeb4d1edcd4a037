"""
Escalation Value Objects
=========================

Immutable value objects and stateless domain services for escalations.

- MatterState / MatterStateMachine: the transition table and step replay
- Actor / PolicyConfig / EscalationPolicy: capability-based authorization
"""

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Dict, FrozenSet, Iterable, List, Optional

from pydantic import BaseModel, Field, field_validator

from escalation_desk.config import (
    Capability, MatterIntent, MatterStatus, StepAction,
    DEFAULT_ROLE_CAPABILITIES, HOLD_NOTE_PREFIX, WITHDRAW_NOTE_PREFIX,
)
from escalation_desk.core import (
    AlreadyClosedException,
    ForbiddenException,
    InvalidStateException,
    ValidationException,
)

if TYPE_CHECKING:
    from escalation_desk.escalations.domain.entities import Matter, Step, UserRecord


@dataclass(frozen=True)
class MatterState:
    """The (status, level, assignee) snapshot every transition is checked against."""

    status: MatterStatus
    level: int
    current_assignee_id: Optional[int]

    @property
    def is_closed(self) -> bool:
        return self.status == MatterStatus.CLOSED


# Hold and withdraw share the coarser audit vocabulary; the note prefix
# tells them apart on replay.
AUDIT_ACTIONS: Dict[MatterIntent, StepAction] = {
    MatterIntent.CREATE: StepAction.CREATED,
    MatterIntent.ESCALATE: StepAction.ESCALATE,
    MatterIntent.HOLD: StepAction.PROGRESS,
    MatterIntent.PROGRESS: StepAction.PROGRESS,
    MatterIntent.REMIND: StepAction.PROGRESS,
    MatterIntent.WITHDRAW: StepAction.CLOSE,
    MatterIntent.CLOSE: StepAction.CLOSE,
}

STATE_PRESERVING_INTENTS = frozenset({MatterIntent.PROGRESS, MatterIntent.REMIND})


def prefixed_note(prefix: str, note: Optional[str]) -> str:
    """Render an audit note carrying an intent prefix."""
    return f"{prefix}: {note}" if note else prefix


def has_prefix(note: Optional[str], prefix: str) -> bool:
    return bool(note) and note.lower().startswith(prefix.lower())


class MatterStateMachine:
    """
    Pure transition rules for escalation matters.

    Stateless: every method maps a state (plus intent) to a new state or
    raises the domain error that explains why the intent is illegal.
    """

    @staticmethod
    def initial(assignee_id: int) -> MatterState:
        """State of a freshly created matter."""
        return MatterState(
            status=MatterStatus.OPEN,
            level=1,
            current_assignee_id=assignee_id,
        )

    @staticmethod
    def next_state(
        current: MatterState,
        intent: MatterIntent,
        assignee_id: Optional[int] = None,
        matter_id: Optional[int] = None,
    ) -> MatterState:
        """
        Compute the state after ``intent``.

        Args:
            current: Validated snapshot of the matter
            intent: Caller intent (anything except CREATE)
            assignee_id: New assignee, required for ESCALATE
            matter_id: Used only in error messages

        Raises:
            InvalidStateException: ESCALATE on a closed or level-2 matter
            AlreadyClosedException: HOLD/WITHDRAW/CLOSE on a closed matter
        """
        if intent in STATE_PRESERVING_INTENTS:
            return current

        if intent == MatterIntent.ESCALATE:
            if current.is_closed:
                raise InvalidStateException(
                    "A closed matter cannot be escalated",
                    {"matter_id": matter_id, "status": current.status.value}
                )
            if current.level != 1:
                raise InvalidStateException(
                    "Can only escalate at level 1",
                    {"matter_id": matter_id, "level": current.level}
                )
            if assignee_id is None:
                raise ValidationException("Escalation target required")
            return MatterState(
                status=MatterStatus.ESCALATED,
                level=2,
                current_assignee_id=assignee_id,
            )

        if intent in (MatterIntent.HOLD, MatterIntent.WITHDRAW, MatterIntent.CLOSE):
            if current.is_closed:
                raise AlreadyClosedException(matter_id)
            if intent == MatterIntent.HOLD:
                return replace(current, status=MatterStatus.ON_HOLD)
            return MatterState(
                status=MatterStatus.CLOSED,
                level=current.level,
                current_assignee_id=None,
            )

        raise InvalidStateException(f"Intent '{intent.value}' is not a transition")

    @staticmethod
    def audit_action(intent: MatterIntent) -> StepAction:
        return AUDIT_ACTIONS[intent]

    @staticmethod
    def replay(steps: Iterable["Step"]) -> Optional[MatterState]:
        """
        Rebuild a matter's state from its ordered steps.

        Returns None for an empty history.
        """
        state: Optional[MatterState] = None
        for step in steps:
            if step.action == StepAction.CREATED:
                state = MatterStateMachine.initial(step.to_user_id)
                continue
            if state is None:
                raise InvalidStateException(
                    "Step history does not start with CREATED",
                    {"step_id": step.id}
                )
            if step.action == StepAction.ESCALATE:
                state = MatterState(MatterStatus.ESCALATED, step.level, step.to_user_id)
            elif step.action == StepAction.CLOSE:
                state = MatterState(MatterStatus.CLOSED, state.level, None)
            elif has_prefix(step.note, HOLD_NOTE_PREFIX):
                state = replace(state, status=MatterStatus.ON_HOLD)
        return state


def hold_note(note: Optional[str]) -> str:
    return prefixed_note(HOLD_NOTE_PREFIX, note)


def withdraw_note(note: Optional[str]) -> str:
    return prefixed_note(WITHDRAW_NOTE_PREFIX, note)


# ========== Authorization ==========

@dataclass(frozen=True)
class Actor:
    """Authenticated caller with the capabilities of their role."""

    user_id: int
    role: str
    capabilities: FrozenSet[Capability]
    name: Optional[str] = None

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities

    @property
    def is_manager(self) -> bool:
        return self.can(Capability.MANAGE_ESCALATIONS)


class PolicyConfig(BaseModel):
    """
    Role to capability mapping loaded from YAML.

    This is a value object - immutable and defined by its attributes.
    """
    role_capabilities: Dict[str, List[Capability]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_ROLE_CAPABILITIES.items()},
        description="Capabilities granted to each portal role"
    )

    @field_validator("role_capabilities")
    @classmethod
    def validate_roles(cls, v: Dict[str, List[Capability]]) -> Dict[str, List[Capability]]:
        """Normalise role names and require at least one day-close manager role."""
        normalised = {role.strip().lower(): caps for role, caps in v.items()}
        if not any(Capability.MANAGE_DAY_CLOSE in caps for caps in normalised.values()):
            raise ValueError("at least one role must hold manage_day_close")
        return normalised

    def capabilities_for(self, role: Optional[str]) -> FrozenSet[Capability]:
        if not role:
            return frozenset()
        return frozenset(self.role_capabilities.get(role.strip().lower(), []))


class EscalationPolicy:
    """
    Capability checks evaluated once per operation.

    Who may act is decided here and nowhere else; callers never compare
    role strings.
    """

    def __init__(self, config: PolicyConfig):
        self._config = config

    def actor_for(self, user: "UserRecord") -> Actor:
        return Actor(
            user_id=user.id,
            role=user.role,
            capabilities=self._config.capabilities_for(user.role),
            name=user.name,
        )

    def is_responder(self, user: "UserRecord") -> bool:
        return Capability.RESPOND_ESCALATIONS in self._config.capabilities_for(user.role)

    def ensure_can_raise(self, actor: Actor) -> None:
        if not actor.can(Capability.RAISE_ESCALATIONS):
            raise ForbiddenException(
                "Your role cannot raise escalations",
                {"user_id": actor.user_id, "role": actor.role}
            )

    def ensure_can_route(self, actor: Actor, matter: "Matter", intent: MatterIntent) -> None:
        """ESCALATE, HOLD and CLOSE: current assignee or a manager."""
        if actor.is_manager or matter.current_assignee_id == actor.user_id:
            return
        raise ForbiddenException(
            f"Only the current assignee can {intent.value} this matter",
            {"matter_id": matter.id, "user_id": actor.user_id}
        )

    def ensure_can_withdraw(self, actor: Actor, matter: "Matter") -> None:
        if actor.is_manager or matter.created_by_id == actor.user_id:
            return
        raise ForbiddenException(
            "Only the creator can withdraw this matter",
            {"matter_id": matter.id, "user_id": actor.user_id}
        )

    def ensure_can_progress(self, actor: Actor, matter: "Matter", member_ids: Iterable[int]) -> None:
        if (
            actor.is_manager
            or matter.current_assignee_id == actor.user_id
            or matter.created_by_id == actor.user_id
            or actor.user_id in set(member_ids)
        ):
            return
        raise ForbiddenException(
            "Only people involved in this matter can log progress",
            {"matter_id": matter.id, "user_id": actor.user_id}
        )

    def ensure_can_remind(self, actor: Actor) -> None:
        if not actor.can(Capability.RAISE_ESCALATIONS):
            raise ForbiddenException(
                "Your role cannot send escalation reminders",
                {"user_id": actor.user_id, "role": actor.role}
            )

    def ensure_can_manage_day_close(self, actor: Actor) -> None:
        if not actor.can(Capability.MANAGE_DAY_CLOSE):
            raise ForbiddenException(
                "Only admins can change day-close overrides",
                {"user_id": actor.user_id, "role": actor.role}
            )
