from __future__ import annotations

from enum import StrEnum

from ptw.domain.errors import InvalidTransitionError


class PermitStatus(StrEnum):
    DRAFT = "Draft"
    PENDING_APPROVAL = "Pending_Approval"
    ACTIVE = "Active"
    EXTENSION_REQUESTED = "Extension_Requested"
    SUSPENDED = "Suspended"
    CLOSED = "Closed"
    CANCELLED = "Cancelled"
    REJECTED = "Rejected"


class PermitTrigger(StrEnum):
    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_EXTENSION = "request_extension"
    APPROVE_EXTENSION = "approve_extension"
    REJECT_EXTENSION = "reject_extension"
    SUSPEND = "suspend"
    RESUME = "resume"
    CLOSE = "close"
    CANCEL = "cancel"


TERMINAL_STATES: frozenset[PermitStatus] = frozenset(
    {PermitStatus.CLOSED, PermitStatus.CANCELLED, PermitStatus.REJECTED}
)

# APPROVE targets ACTIVE only once every required role has signed off;
# a partial approval keeps the permit in PENDING_APPROVAL.
PERMIT_TRANSITIONS: dict[PermitStatus, dict[PermitTrigger, PermitStatus]] = {
    PermitStatus.DRAFT: {
        PermitTrigger.SUBMIT: PermitStatus.PENDING_APPROVAL,
        PermitTrigger.CANCEL: PermitStatus.CANCELLED,
    },
    PermitStatus.PENDING_APPROVAL: {
        PermitTrigger.APPROVE: PermitStatus.ACTIVE,
        PermitTrigger.REJECT: PermitStatus.REJECTED,
        PermitTrigger.CANCEL: PermitStatus.CANCELLED,
    },
    PermitStatus.ACTIVE: {
        PermitTrigger.REQUEST_EXTENSION: PermitStatus.EXTENSION_REQUESTED,
        PermitTrigger.SUSPEND: PermitStatus.SUSPENDED,
        PermitTrigger.CLOSE: PermitStatus.CLOSED,
        PermitTrigger.CANCEL: PermitStatus.CANCELLED,
    },
    PermitStatus.EXTENSION_REQUESTED: {
        PermitTrigger.APPROVE_EXTENSION: PermitStatus.ACTIVE,
        PermitTrigger.REJECT_EXTENSION: PermitStatus.ACTIVE,
    },
    PermitStatus.SUSPENDED: {
        PermitTrigger.RESUME: PermitStatus.ACTIVE,
        PermitTrigger.CLOSE: PermitStatus.CLOSED,
        PermitTrigger.CANCEL: PermitStatus.CANCELLED,
    },
    PermitStatus.CLOSED: {},
    PermitStatus.CANCELLED: {},
    PermitStatus.REJECTED: {},
}


def can_fire(source: PermitStatus, trigger: PermitTrigger) -> bool:
    return trigger in PERMIT_TRANSITIONS.get(source, {})


def next_state(source: PermitStatus, trigger: PermitTrigger) -> PermitStatus:
    target = PERMIT_TRANSITIONS.get(source, {}).get(trigger)
    if target is None:
        raise InvalidTransitionError(source, trigger)
    return target


def available_triggers(source: PermitStatus) -> list[PermitTrigger]:
    return list(PERMIT_TRANSITIONS.get(source, {}))
