from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class UserRole(StrEnum):
    ADMIN = "Admin"
    REQUESTER = "Requester"
    APPROVER_AREA_MANAGER = "Approver_AreaManager"
    APPROVER_SAFETY = "Approver_Safety"
    APPROVER_SITE_LEADER = "Approver_SiteLeader"
    WORKER = "Worker"
    SUPERVISOR = "Supervisor"


class ApproverRole(StrEnum):
    AREA_MANAGER = "Area_Manager"
    SAFETY_OFFICER = "Safety_Officer"
    SITE_LEAD = "Site_Lead"


APPROVER_ROLE_BY_USER_ROLE: dict[UserRole, ApproverRole] = {
    UserRole.APPROVER_AREA_MANAGER: ApproverRole.AREA_MANAGER,
    UserRole.APPROVER_SAFETY: ApproverRole.SAFETY_OFFICER,
    UserRole.APPROVER_SITE_LEADER: ApproverRole.SITE_LEAD,
}

PERM_WILDCARD = "*"
PERM_PERMIT_READ = "permit.read"
PERM_PERMIT_WRITE = "permit.write"
PERM_PERMIT_APPROVE = "permit.approve"
PERM_EVIDENCE_WRITE = "evidence.write"
PERM_IDENTITY_READ = "identity.read"
PERM_IDENTITY_WRITE = "identity.write"
PERM_REFERENCE_WRITE = "reference.write"

_APPROVER_PERMISSIONS = frozenset({PERM_PERMIT_READ, PERM_PERMIT_APPROVE, PERM_EVIDENCE_WRITE})

ROLE_PERMISSIONS: dict[UserRole, frozenset[str]] = {
    UserRole.ADMIN: frozenset({PERM_WILDCARD}),
    UserRole.REQUESTER: frozenset({PERM_PERMIT_READ, PERM_PERMIT_WRITE, PERM_EVIDENCE_WRITE}),
    UserRole.SUPERVISOR: frozenset({PERM_PERMIT_READ, PERM_PERMIT_WRITE, PERM_EVIDENCE_WRITE}),
    UserRole.APPROVER_AREA_MANAGER: _APPROVER_PERMISSIONS,
    UserRole.APPROVER_SAFETY: _APPROVER_PERMISSIONS,
    UserRole.APPROVER_SITE_LEADER: _APPROVER_PERMISSIONS,
    UserRole.WORKER: frozenset({PERM_PERMIT_READ, PERM_EVIDENCE_WRITE}),
}


def parse_role(value: Any) -> UserRole | None:
    try:
        return UserRole(value)
    except ValueError:
        return None


def permissions_for_role(role: UserRole | str | None) -> frozenset[str]:
    parsed = parse_role(role)
    if parsed is None:
        return frozenset()
    return ROLE_PERMISSIONS[parsed]


def has_permission(claims: dict[str, Any], permission: str) -> bool:
    granted = permissions_for_role(claims.get("role"))
    return permission in granted or PERM_WILDCARD in granted


def approver_role_for(role: UserRole | str | None) -> ApproverRole | None:
    parsed = parse_role(role)
    if parsed is None:
        return None
    return APPROVER_ROLE_BY_USER_ROLE.get(parsed)


def is_admin(role: UserRole | str | None) -> bool:
    return parse_role(role) == UserRole.ADMIN


def is_approver(role: UserRole | str | None) -> bool:
    return approver_role_for(role) is not None


@dataclass(frozen=True)
class Actor:
    """The authenticated caller, as carried in the bearer token."""

    user_id: int
    role: UserRole | None

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> Actor:
        return cls(user_id=int(claims["id"]), role=parse_role(claims.get("role")))

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def approver_role(self) -> ApproverRole | None:
        return approver_role_for(self.role)

    @property
    def is_approver(self) -> bool:
        return self.approver_role is not None
