"""Tests for the matter state machine, step replay and capability policy - Unit tests only."""

import pytest
from pydantic import ValidationError

from escalation_desk.config import Capability, MatterIntent, MatterStatus, StepAction
from escalation_desk.core import (
    AlreadyClosedException,
    ForbiddenException,
    InvalidStateException,
)
from escalation_desk.escalations.domain import (
    Actor,
    EscalationPolicy,
    Matter,
    MatterState,
    MatterStateMachine,
    PolicyConfig,
    Step,
    UserRecord,
    hold_note,
    withdraw_note,
)


def _step(step_id, action, level=1, to_user_id=None, note=None):
    return Step(
        id=step_id,
        matter_id=1,
        level=level,
        action=action,
        from_user_id=99,
        to_user_id=to_user_id,
        note=note,
    )


# =============================================================================
# Transitions
# =============================================================================

def test_initial_state_is_open_level_one():
    state = MatterStateMachine.initial(2)
    assert state == MatterState(MatterStatus.OPEN, 1, 2)


def test_escalate_moves_to_level_two_with_new_assignee():
    state = MatterStateMachine.next_state(MatterStateMachine.initial(2), MatterIntent.ESCALATE, 3)
    assert state == MatterState(MatterStatus.ESCALATED, 2, 3)


def test_escalate_from_on_hold_level_one_is_allowed():
    on_hold = MatterState(MatterStatus.ON_HOLD, 1, 2)
    state = MatterStateMachine.next_state(on_hold, MatterIntent.ESCALATE, 3)
    assert state.status == MatterStatus.ESCALATED
    assert state.level == 2


def test_escalate_at_level_two_is_invalid_state():
    escalated = MatterState(MatterStatus.ESCALATED, 2, 3)
    with pytest.raises(InvalidStateException, match="level 1"):
        MatterStateMachine.next_state(escalated, MatterIntent.ESCALATE, 1)


def test_escalate_closed_is_invalid_state_not_already_closed():
    closed = MatterState(MatterStatus.CLOSED, 1, None)
    with pytest.raises(InvalidStateException) as exc_info:
        MatterStateMachine.next_state(closed, MatterIntent.ESCALATE, 3)
    assert not isinstance(exc_info.value, AlreadyClosedException)


@pytest.mark.parametrize("intent", [MatterIntent.HOLD, MatterIntent.WITHDRAW, MatterIntent.CLOSE])
def test_closed_matter_rejects_mutations(intent):
    closed = MatterState(MatterStatus.CLOSED, 2, None)
    with pytest.raises(AlreadyClosedException):
        MatterStateMachine.next_state(closed, intent, matter_id=7)


def test_close_clears_assignee_and_keeps_level():
    escalated = MatterState(MatterStatus.ESCALATED, 2, 3)
    state = MatterStateMachine.next_state(escalated, MatterIntent.CLOSE)
    assert state == MatterState(MatterStatus.CLOSED, 2, None)


def test_hold_keeps_level_and_assignee():
    escalated = MatterState(MatterStatus.ESCALATED, 2, 3)
    state = MatterStateMachine.next_state(escalated, MatterIntent.HOLD)
    assert state == MatterState(MatterStatus.ON_HOLD, 2, 3)


def test_hold_is_idempotent():
    on_hold = MatterState(MatterStatus.ON_HOLD, 1, 2)
    assert MatterStateMachine.next_state(on_hold, MatterIntent.HOLD) == on_hold


@pytest.mark.parametrize("intent", [MatterIntent.PROGRESS, MatterIntent.REMIND])
def test_progress_and_remind_preserve_state_even_when_closed(intent):
    closed = MatterState(MatterStatus.CLOSED, 1, None)
    assert MatterStateMachine.next_state(closed, intent) == closed


def test_audit_vocabulary():
    assert MatterStateMachine.audit_action(MatterIntent.CREATE) == StepAction.CREATED
    assert MatterStateMachine.audit_action(MatterIntent.HOLD) == StepAction.PROGRESS
    assert MatterStateMachine.audit_action(MatterIntent.REMIND) == StepAction.PROGRESS
    assert MatterStateMachine.audit_action(MatterIntent.WITHDRAW) == StepAction.CLOSE


def test_notes_carry_intent_prefix():
    assert hold_note("waiting for parents") == "On hold: waiting for parents"
    assert hold_note(None) == "On hold"
    assert withdraw_note(None) == "Withdrawn by creator"


def test_matter_rejects_closed_with_assignee():
    with pytest.raises(ValueError):
        Matter(id=1, title="Broken AC", created_by_id=1, status=MatterStatus.CLOSED, current_assignee_id=2)


def test_matter_rejects_unknown_level():
    with pytest.raises(ValueError):
        Matter(id=1, title="Broken AC", created_by_id=1, level=3)


# =============================================================================
# Replay
# =============================================================================

def test_replay_empty_history_is_none():
    assert MatterStateMachine.replay([]) is None


def test_replay_full_lifecycle():
    history = [
        _step(1, StepAction.CREATED, to_user_id=2),
        _step(2, StepAction.PROGRESS, note="Technician called"),
        _step(3, StepAction.ESCALATE, level=2, to_user_id=3),
        _step(4, StepAction.PROGRESS, level=2, to_user_id=3, note=hold_note("vendor visit")),
        _step(5, StepAction.CLOSE, level=2, to_user_id=3, note="Replaced compressor"),
    ]
    assert MatterStateMachine.replay(history) == MatterState(MatterStatus.CLOSED, 2, None)


def test_replay_on_hold():
    history = [
        _step(1, StepAction.CREATED, to_user_id=2),
        _step(2, StepAction.PROGRESS, to_user_id=2, note="On hold"),
    ]
    assert MatterStateMachine.replay(history) == MatterState(MatterStatus.ON_HOLD, 1, 2)


def test_replay_requires_created_first():
    with pytest.raises(InvalidStateException):
        MatterStateMachine.replay([_step(1, StepAction.PROGRESS, note="orphan")])


# =============================================================================
# Policy
# =============================================================================

def _user(user_id, role):
    return UserRecord(id=user_id, name=f"User {user_id}", role=role)


def test_default_capabilities():
    policy = EscalationPolicy(PolicyConfig())
    admin = policy.actor_for(_user(1, "admin"))
    manager = policy.actor_for(_user(2, "team_manager"))
    member = policy.actor_for(_user(4, "member"))

    assert admin.can(Capability.MANAGE_DAY_CLOSE)
    assert admin.is_manager
    assert manager.can(Capability.RESPOND_ESCALATIONS)
    assert not manager.is_manager
    assert member.capabilities == frozenset()


def test_roles_are_case_insensitive():
    config = PolicyConfig(role_capabilities={"Admin": ["manage_day_close"]})
    assert config.capabilities_for("ADMIN") == frozenset({Capability.MANAGE_DAY_CLOSE})


def test_policy_requires_a_day_close_manager():
    with pytest.raises(ValidationError):
        PolicyConfig(role_capabilities={"admin": ["raise_escalations"]})


def test_unknown_role_has_no_capabilities():
    assert PolicyConfig().capabilities_for("janitor") == frozenset()


def test_route_requires_assignee_or_manager():
    policy = EscalationPolicy(PolicyConfig())
    matter = Matter(id=1, title="Broken AC", created_by_id=7, current_assignee_id=2)
    creator = Actor(user_id=7, role="principal", capabilities=frozenset({Capability.RAISE_ESCALATIONS}))

    with pytest.raises(ForbiddenException):
        policy.ensure_can_route(creator, matter, MatterIntent.CLOSE)

    assignee = Actor(user_id=2, role="team_manager", capabilities=frozenset())
    policy.ensure_can_route(assignee, matter, MatterIntent.CLOSE)


def test_withdraw_requires_creator():
    policy = EscalationPolicy(PolicyConfig())
    matter = Matter(id=1, title="Broken AC", created_by_id=7, current_assignee_id=2)
    assignee = Actor(user_id=2, role="team_manager", capabilities=frozenset({Capability.RESPOND_ESCALATIONS}))

    with pytest.raises(ForbiddenException):
        policy.ensure_can_withdraw(assignee, matter)


def test_progress_allows_members():
    policy = EscalationPolicy(PolicyConfig())
    matter = Matter(id=1, title="Broken AC", created_by_id=7, current_assignee_id=2)
    member = Actor(user_id=4, role="member", capabilities=frozenset())

    policy.ensure_can_progress(member, matter, [4, 5])
    with pytest.raises(ForbiddenException):
        policy.ensure_can_progress(member, matter, [5])
