from __future__ import annotations

import pytest

from ptw.domain.errors import InvalidTransitionError
from ptw.domain.state_machine import (
    PERMIT_TRANSITIONS,
    TERMINAL_STATES,
    PermitStatus,
    PermitTrigger,
    available_triggers,
    can_fire,
    next_state,
)

EXPECTED_TRANSITIONS: dict[tuple[PermitStatus, PermitTrigger], PermitStatus] = {
    (PermitStatus.DRAFT, PermitTrigger.SUBMIT): PermitStatus.PENDING_APPROVAL,
    (PermitStatus.DRAFT, PermitTrigger.CANCEL): PermitStatus.CANCELLED,
    (PermitStatus.PENDING_APPROVAL, PermitTrigger.APPROVE): PermitStatus.ACTIVE,
    (PermitStatus.PENDING_APPROVAL, PermitTrigger.REJECT): PermitStatus.REJECTED,
    (PermitStatus.PENDING_APPROVAL, PermitTrigger.CANCEL): PermitStatus.CANCELLED,
    (PermitStatus.ACTIVE, PermitTrigger.REQUEST_EXTENSION): PermitStatus.EXTENSION_REQUESTED,
    (PermitStatus.ACTIVE, PermitTrigger.SUSPEND): PermitStatus.SUSPENDED,
    (PermitStatus.ACTIVE, PermitTrigger.CLOSE): PermitStatus.CLOSED,
    (PermitStatus.ACTIVE, PermitTrigger.CANCEL): PermitStatus.CANCELLED,
    (PermitStatus.EXTENSION_REQUESTED, PermitTrigger.APPROVE_EXTENSION): PermitStatus.ACTIVE,
    (PermitStatus.EXTENSION_REQUESTED, PermitTrigger.REJECT_EXTENSION): PermitStatus.ACTIVE,
    (PermitStatus.SUSPENDED, PermitTrigger.RESUME): PermitStatus.ACTIVE,
    (PermitStatus.SUSPENDED, PermitTrigger.CLOSE): PermitStatus.CLOSED,
    (PermitStatus.SUSPENDED, PermitTrigger.CANCEL): PermitStatus.CANCELLED,
}


def test_every_status_has_a_transition_row() -> None:
    assert set(PERMIT_TRANSITIONS) == set(PermitStatus)


@pytest.mark.parametrize("source", list(PermitStatus))
@pytest.mark.parametrize("trigger", list(PermitTrigger))
def test_transition_table_is_closed(source: PermitStatus, trigger: PermitTrigger) -> None:
    expected = EXPECTED_TRANSITIONS.get((source, trigger))
    if expected is None:
        assert not can_fire(source, trigger)
        with pytest.raises(InvalidTransitionError) as exc_info:
            next_state(source, trigger)
        assert exc_info.value.current_state == source
        assert exc_info.value.trigger == trigger
    else:
        assert can_fire(source, trigger)
        assert next_state(source, trigger) == expected


def test_terminal_states_accept_no_trigger() -> None:
    assert TERMINAL_STATES == {PermitStatus.CLOSED, PermitStatus.CANCELLED, PermitStatus.REJECTED}
    for state in TERMINAL_STATES:
        assert available_triggers(state) == []


def test_invalid_transition_message_names_state_and_trigger() -> None:
    with pytest.raises(InvalidTransitionError) as exc_info:
        next_state(PermitStatus.DRAFT, PermitTrigger.APPROVE)
    assert "approve" in exc_info.value.message
    assert "Draft" in exc_info.value.message
    assert exc_info.value.status_code == 409
