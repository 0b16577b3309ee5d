from __future__ import annotations

from typing import Any

from sqlalchemy import func, update
from sqlmodel import Session, col, select

from ptw.domain.errors import ConflictError, NotFoundError
from ptw.domain.models import (
    ApprovalPolicy,
    ApprovalStatus,
    Evidence,
    Permit,
    PermitApproval,
    PermitClosure,
    PermitExtension,
    PermitTeamMember,
    PermitType,
    Site,
    TeamMemberCreate,
    Vendor,
    now_utc,
)
from ptw.domain.permissions import ApproverRole
from ptw.domain.state_machine import PermitStatus

SERIAL_PREFIX = "PTW"


class PermitRepository:
    """Row access for a permit and the child rows it owns.

    Bound to one session; callers own the transaction boundary.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    @property
    def session(self) -> Session:
        return self._session

    def get(self, permit_id: int) -> Permit | None:
        return self._session.get(Permit, permit_id)

    def require(self, permit_id: int) -> Permit:
        permit = self.get(permit_id)
        if permit is None:
            raise NotFoundError("Permit not found", permit_id=permit_id)
        return permit

    def require_site(self, site_id: int) -> Site:
        site = self._session.get(Site, site_id)
        if site is None:
            raise NotFoundError("Site not found", site_id=site_id)
        return site

    def require_vendor(self, vendor_id: int) -> Vendor:
        vendor = self._session.get(Vendor, vendor_id)
        if vendor is None:
            raise NotFoundError("Vendor not found", vendor_id=vendor_id)
        return vendor

    def list(
        self,
        *,
        status: PermitStatus | None = None,
        site_id: int | None = None,
        created_by: int | None = None,
    ) -> list[Permit]:
        statement = select(Permit)
        if status is not None:
            statement = statement.where(Permit.status == status)
        if site_id is not None:
            statement = statement.where(Permit.site_id == site_id)
        if created_by is not None:
            statement = statement.where(Permit.created_by == created_by)
        statement = statement.order_by(col(Permit.created_at).desc(), col(Permit.id).desc())
        return list(self._session.exec(statement).all())

    def count_by_status(
        self,
        *,
        site_id: int | None = None,
        created_by: int | None = None,
    ) -> dict[PermitStatus, int]:
        statement = select(Permit.status, func.count())
        if site_id is not None:
            statement = statement.where(Permit.site_id == site_id)
        if created_by is not None:
            statement = statement.where(Permit.created_by == created_by)
        rows = self._session.exec(statement.group_by(Permit.status)).all()
        return {PermitStatus(status): count for status, count in rows}

    def count_by_site(
        self,
        *,
        site_id: int | None = None,
        created_by: int | None = None,
    ) -> list[tuple[int, str, int]]:
        statement = select(Site.id, Site.name, func.count(col(Permit.id))).join(Permit, Permit.site_id == Site.id)
        if site_id is not None:
            statement = statement.where(Permit.site_id == site_id)
        if created_by is not None:
            statement = statement.where(Permit.created_by == created_by)
        statement = statement.group_by(Site.id, Site.name).order_by(col(Site.name), col(Site.id))
        return [(site, name, count) for site, name, count in self._session.exec(statement).all()]

    def next_serial(self) -> str:
        last = self._session.exec(
            select(Permit.permit_serial).order_by(col(Permit.id).desc()).limit(1)
        ).first()
        number = 1
        if last:
            try:
                number = int(last.split("-")[1]) + 1
            except (IndexError, ValueError):
                number = (self._session.exec(select(func.count()).select_from(Permit)).one() or 0) + 1
        return f"{SERIAL_PREFIX}-{number:04d}"

    def add(self, permit: Permit) -> Permit:
        self._session.add(permit)
        self._session.flush()
        return permit

    def compare_and_set_status(
        self,
        permit: Permit,
        *,
        expected: PermitStatus,
        target: PermitStatus,
        **values: Any,
    ) -> Permit:
        """Write ``target`` only if the row still holds ``expected`` at the
        version this session read; bumps ``version``."""
        self._session.flush()
        table = Permit.__table__
        statement = (
            update(table)
            .where(table.c.id == permit.id)
            .where(table.c.status == expected)
            .where(table.c.version == permit.version)
            .values(status=target, version=permit.version + 1, updated_at=now_utc(), **values)
        )
        result = self._session.connection().execute(statement)
        if result.rowcount != 1:
            raise ConflictError(
                "permit was modified concurrently",
                permit_id=permit.id,
                expected_state=str(expected),
            )
        self._session.refresh(permit)
        return permit

    def touch(self, permit: Permit, **values: Any) -> Permit:
        """Version-checked write that leaves the status unchanged."""
        return self.compare_and_set_status(permit, expected=permit.status, target=permit.status, **values)

    def team_members(self, permit_id: int) -> list[PermitTeamMember]:
        statement = (
            select(PermitTeamMember)
            .where(PermitTeamMember.permit_id == permit_id)
            .order_by(col(PermitTeamMember.id))
        )
        return list(self._session.exec(statement).all())

    def replace_team_members(self, permit_id: int, members: list[TeamMemberCreate]) -> None:
        for existing in self.team_members(permit_id):
            self._session.delete(existing)
        for member in members:
            self._session.add(PermitTeamMember(permit_id=permit_id, **member.model_dump()))

    def approvals(self, permit_id: int) -> list[PermitApproval]:
        statement = (
            select(PermitApproval)
            .where(PermitApproval.permit_id == permit_id)
            .order_by(col(PermitApproval.id))
        )
        return list(self._session.exec(statement).all())

    def pending_approvals(self, permit_id: int) -> list[PermitApproval]:
        return [item for item in self.approvals(permit_id) if item.status == ApprovalStatus.PENDING]

    def add_approval(self, permit_id: int, role: ApproverRole, approver_id: int | None) -> PermitApproval:
        if any(item.role == role for item in self.pending_approvals(permit_id)):
            raise ConflictError("an approval for this role is already pending", role=str(role))
        approval = PermitApproval(permit_id=permit_id, role=role, approver_id=approver_id)
        self._session.add(approval)
        return approval

    def decide_approval(
        self,
        approval: PermitApproval,
        *,
        status: ApprovalStatus,
        decided_by: int,
        comments: str | None = None,
        signature: str | None = None,
    ) -> PermitApproval:
        self._session.flush()
        table = PermitApproval.__table__
        statement = (
            update(table)
            .where(table.c.id == approval.id)
            .where(table.c.status == ApprovalStatus.PENDING)
            .values(
                status=status,
                decided_by=decided_by,
                comments=comments,
                signature=signature,
                decided_at=now_utc(),
            )
        )
        result = self._session.connection().execute(statement)
        if result.rowcount != 1:
            raise ConflictError("approval was already decided", approval_id=approval.id)
        self._session.refresh(approval)
        return approval

    def supersede_pending(self, permit_id: int) -> int:
        """Close out approval rows nobody will decide once the permit left Pending_Approval."""
        self._session.flush()
        table = PermitApproval.__table__
        statement = (
            update(table)
            .where(table.c.permit_id == permit_id)
            .where(table.c.status == ApprovalStatus.PENDING)
            .values(status=ApprovalStatus.SUPERSEDED, decided_at=now_utc())
        )
        result = self._session.connection().execute(statement)
        for approval in self.approvals(permit_id):
            self._session.refresh(approval)
        return result.rowcount

    def extensions(self, permit_id: int) -> list[PermitExtension]:
        statement = (
            select(PermitExtension)
            .where(PermitExtension.permit_id == permit_id)
            .order_by(col(PermitExtension.id))
        )
        return list(self._session.exec(statement).all())

    def pending_extension(self, permit_id: int) -> PermitExtension | None:
        statement = (
            select(PermitExtension)
            .where(PermitExtension.permit_id == permit_id)
            .where(PermitExtension.status == ApprovalStatus.PENDING)
            .order_by(col(PermitExtension.id).desc())
        )
        return self._session.exec(statement).first()

    def closure(self, permit_id: int) -> PermitClosure | None:
        return self._session.exec(select(PermitClosure).where(PermitClosure.permit_id == permit_id)).first()

    def evidence_references(self, permit_id: int) -> list[str]:
        return list(self._session.exec(select(Evidence.file_path).where(Evidence.permit_id == permit_id)).all())

    def policy_for(self, site_id: int | None, permit_type: PermitType | None) -> ApprovalPolicy | None:
        """Exact match on (site_id, permit_type); ``None`` matches only NULL."""
        statement = select(ApprovalPolicy)
        if site_id is None:
            statement = statement.where(col(ApprovalPolicy.site_id).is_(None))
        else:
            statement = statement.where(ApprovalPolicy.site_id == site_id)
        if permit_type is None:
            statement = statement.where(col(ApprovalPolicy.permit_type).is_(None))
        else:
            statement = statement.where(ApprovalPolicy.permit_type == permit_type)
        return self._session.exec(statement.order_by(col(ApprovalPolicy.id))).first()

    def find_policy(self, site_id: int, permit_type: PermitType) -> ApprovalPolicy | None:
        for candidate_site, candidate_type in ((site_id, permit_type), (site_id, None), (None, permit_type)):
            policy = self.policy_for(candidate_site, candidate_type)
            if policy is not None:
                return policy
        return None

    def delete_cascade(self, permit: Permit) -> list[str]:
        """Delete the permit with every row it owns; returns the evidence
        file references that were linked to it."""
        permit_id = permit.id
        assert permit_id is not None
        references = self.evidence_references(permit_id)
        children: list[Any] = [
            *self._session.exec(select(Evidence).where(Evidence.permit_id == permit_id)).all(),
            *self.approvals(permit_id),
            *self.extensions(permit_id),
            *self.team_members(permit_id),
        ]
        for child in children:
            self._session.delete(child)
        self._session.flush()
        closure = self.closure(permit_id)
        if closure is not None:
            self._session.delete(closure)
            self._session.flush()
        self._session.delete(permit)
        return references
