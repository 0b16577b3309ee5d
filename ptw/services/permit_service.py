from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session

from ptw.domain.errors import (
    ConflictError,
    InvalidTransitionError,
    PermissionDeniedError,
    PersistenceError,
    PtwError,
    ValidationError,
)
from ptw.domain.models import (
    HIGH_RISK_PERMIT_TYPES,
    ApprovalRead,
    ApprovalStatus,
    ClosureRead,
    ClosureResultRead,
    Evidence,
    EvidenceRead,
    EvidenceType,
    ExtensionRead,
    ExtensionRequest,
    Permit,
    PermitApproval,
    PermitApproveRequest,
    PermitClosure,
    PermitCloseRequest,
    PermitCreate,
    PermitDetailRead,
    PermitExtension,
    PermitRead,
    PermitRejectRequest,
    PermitType,
    PermitUpdate,
    TeamMemberRead,
    ensure_utc,
    now_utc,
)
from ptw.domain.permissions import Actor, ApproverRole
from ptw.domain.state_machine import (
    PermitStatus,
    PermitTrigger,
    available_triggers,
    can_fire,
    next_state,
)
from ptw.infra.db import open_session
from ptw.infra.events import EventBus
from ptw.services.evidence_service import EvidenceService, IncomingFile, prepare_batch
from ptw.services.permit_repository import PermitRepository

DEFAULT_APPROVAL_ROLES: tuple[ApproverRole, ...] = (ApproverRole.AREA_MANAGER, ApproverRole.SAFETY_OFFICER)
DELETABLE_STATES = frozenset({PermitStatus.DRAFT, PermitStatus.CANCELLED})

logger = structlog.get_logger(__name__)


def _is_blank(value: str | None) -> bool:
    return value is None or not value.strip()


def resolve_required_roles(policy_roles: list[str] | None, permit_type: PermitType) -> list[ApproverRole]:
    """Policy roles win over the defaults when a policy matched. High-risk
    work always needs Site_Lead on top of either."""
    if policy_roles:
        roles = [ApproverRole(item) for item in policy_roles]
    else:
        roles = list(DEFAULT_APPROVAL_ROLES)
    if permit_type in HIGH_RISK_PERMIT_TYPES:
        roles.append(ApproverRole.SITE_LEAD)
    ordered: list[ApproverRole] = []
    for role in roles:
        if role not in ordered:
            ordered.append(role)
    return ordered


def _normalize_window(values: dict[str, Any]) -> dict[str, Any]:
    for key in ("start_time", "end_time"):
        if values.get(key) is not None:
            values[key] = ensure_utc(values[key])
    return values


def _assigned_approver(permit: Permit, role: ApproverRole) -> int | None:
    if role == ApproverRole.AREA_MANAGER:
        return permit.area_manager_id
    if role == ApproverRole.SAFETY_OFFICER:
        return permit.safety_officer_id
    return permit.site_leader_id


class PermitService:
    def __init__(
        self,
        engine: Engine,
        evidence_service: EvidenceService,
        event_bus: EventBus | None = None,
    ) -> None:
        self._engine = engine
        self._evidence = evidence_service
        self._event_bus = event_bus

    def _session(self) -> Session:
        return open_session(self._engine)

    @contextmanager
    def _transaction(self) -> Iterator[PermitRepository]:
        with self._session() as session:
            try:
                yield PermitRepository(session)
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("permit write conflicts with existing data") from exc
            except SQLAlchemyError as exc:
                session.rollback()
                raise PersistenceError("failed to persist permit changes") from exc
            except Exception:
                session.rollback()
                raise

    def _emit(self, event_type: str, permit: Permit, actor: Actor, **payload: Any) -> None:
        if self._event_bus is None:
            return
        body: dict[str, Any] = {
            "permit_serial": permit.permit_serial,
            "status": str(permit.status),
        }
        body.update(payload)
        self._event_bus.publish_dict(event_type, body, actor_id=actor.user_id, permit_id=permit.id)

    def _fire(
        self,
        repo: PermitRepository,
        permit: Permit,
        trigger: PermitTrigger,
        actor: Actor,
        **values: Any,
    ) -> Permit:
        source = permit.status
        target = next_state(source, trigger)
        repo.compare_and_set_status(permit, expected=source, target=target, **values)
        logger.info(
            "permit_transition",
            permit_id=permit.id,
            trigger=str(trigger),
            from_state=str(source),
            to_state=str(target),
            actor_id=actor.user_id,
        )
        return permit

    def _ensure_can_fire(self, permit: Permit, trigger: PermitTrigger) -> None:
        if not can_fire(permit.status, trigger):
            raise InvalidTransitionError(permit.status, trigger)

    def _ensure_owner(self, permit: Permit, actor: Actor) -> None:
        if actor.is_admin or permit.created_by == actor.user_id:
            return
        raise PermissionDeniedError("only the permit creator or an admin can do this", permit_id=permit.id)

    def _ensure_owner_or_approver(self, permit: Permit, actor: Actor) -> None:
        if actor.is_admin or actor.is_approver or permit.created_by == actor.user_id:
            return
        raise PermissionDeniedError(
            "only the permit creator, an approver or an admin can do this",
            permit_id=permit.id,
        )

    def _ensure_approver(self, actor: Actor) -> None:
        if actor.is_admin or actor.is_approver:
            return
        raise PermissionDeniedError("only an approver or an admin can do this")

    def _validate_window(self, start_time: datetime, end_time: datetime) -> None:
        if ensure_utc(end_time) <= ensure_utc(start_time):
            raise ValidationError("end_time must be after start_time")

    def create_permit(self, actor: Actor, payload: PermitCreate) -> Permit:
        self._validate_window(payload.start_time, payload.end_time)
        with self._transaction() as repo:
            repo.require_site(payload.site_id)
            if payload.vendor_id is not None:
                repo.require_vendor(payload.vendor_id)
            permit = Permit(
                permit_serial=repo.next_serial(),
                created_by=actor.user_id,
                status=PermitStatus.DRAFT,
                **_normalize_window(payload.model_dump(exclude={"team_members"})),
            )
            repo.add(permit)
            assert permit.id is not None
            repo.replace_team_members(permit.id, payload.team_members)

        logger.info("permit_created", permit_id=permit.id, permit_serial=permit.permit_serial, actor_id=actor.user_id)
        self._emit("permit.created", permit, actor, permit_type=str(permit.permit_type), site_id=permit.site_id)
        return permit

    def list_permits(
        self,
        *,
        status: PermitStatus | None = None,
        site_id: int | None = None,
        created_by: int | None = None,
    ) -> list[Permit]:
        with self._session() as session:
            return PermitRepository(session).list(status=status, site_id=site_id, created_by=created_by)

    def get_permit(self, permit_id: int) -> Permit:
        with self._session() as session:
            return PermitRepository(session).require(permit_id)

    def get_permit_detail(self, permit_id: int) -> PermitDetailRead:
        with self._session() as session:
            repo = PermitRepository(session)
            permit = repo.require(permit_id)
            closure = repo.closure(permit_id)
            return PermitDetailRead(
                permit=PermitRead.model_validate(permit),
                team_members=[TeamMemberRead.model_validate(item) for item in repo.team_members(permit_id)],
                approvals=[ApprovalRead.model_validate(item) for item in repo.approvals(permit_id)],
                extensions=[ExtensionRead.model_validate(item) for item in repo.extensions(permit_id)],
                closure=ClosureRead.model_validate(closure) if closure is not None else None,
                available_actions=available_triggers(permit.status),
            )

    def update_permit(self, permit_id: int, actor: Actor, payload: PermitUpdate) -> Permit:
        changes = _normalize_window(payload.model_dump(exclude_unset=True, exclude={"team_members"}))
        with self._transaction() as repo:
            permit = repo.require(permit_id)
            self._ensure_owner(permit, actor)
            if permit.status != PermitStatus.DRAFT:
                raise ConflictError("permit can only be edited in Draft state", status=str(permit.status))
            if changes.get("site_id") is not None:
                repo.require_site(changes["site_id"])
            if changes.get("vendor_id") is not None:
                repo.require_vendor(changes["vendor_id"])
            for required in ("site_id", "permit_type", "work_location", "work_description", "start_time", "end_time"):
                if required in changes and changes[required] is None:
                    changes.pop(required)
            self._validate_window(
                changes.get("start_time", permit.start_time),
                changes.get("end_time", permit.end_time),
            )
            if payload.team_members is not None:
                repo.replace_team_members(permit_id, payload.team_members)
            repo.touch(permit, **changes)

        logger.info("permit_updated", permit_id=permit_id, fields=sorted(changes), actor_id=actor.user_id)
        return permit

    def delete_permit(self, permit_id: int, actor: Actor) -> None:
        with self._transaction() as repo:
            permit = repo.require(permit_id)
            self._ensure_owner(permit, actor)
            if permit.status not in DELETABLE_STATES:
                raise ConflictError(
                    "permit can only be deleted in Draft or Cancelled state",
                    status=str(permit.status),
                )
            references = repo.delete_cascade(permit)

        for reference in references:
            self._evidence.discard_file(reference)
        logger.info("permit_deleted", permit_id=permit_id, files=len(references), actor_id=actor.user_id)

    def submit(self, permit_id: int, actor: Actor) -> Permit:
        with self._transaction() as repo:
            permit = repo.require(permit_id)
            self._ensure_owner(permit, actor)
            self._ensure_can_fire(permit, PermitTrigger.SUBMIT)
            missing = [
                name
                for name, value in (
                    ("work_location", permit.work_location),
                    ("work_description", permit.work_description),
                    ("receiver_name", permit.receiver_name),
                )
                if _is_blank(value)
            ]
            if missing:
                raise ValidationError(f"permit is incomplete: missing {', '.join(missing)}", fields=missing)
            self._validate_window(permit.start_time, permit.end_time)
            assert permit.id is not None
            policy = repo.find_policy(permit.site_id, permit.permit_type)
            roles = resolve_required_roles(policy.required_roles if policy else None, permit.permit_type)
            for role in roles:
                repo.add_approval(permit.id, role, _assigned_approver(permit, role))
            self._fire(repo, permit, PermitTrigger.SUBMIT, actor, submitted_at=now_utc(), rejection_reason=None)

        self._emit("permit.submitted", permit, actor, required_roles=[str(item) for item in roles])
        return permit

    def _resolve_approval(
        self,
        repo: PermitRepository,
        permit: Permit,
        actor: Actor,
        requested: ApproverRole | None,
    ) -> PermitApproval:
        assert permit.id is not None
        pending = repo.pending_approvals(permit.id)
        if actor.is_admin:
            if requested is None:
                if len(pending) != 1:
                    raise ValidationError("role is required when more than one approval is pending")
                role = pending[0].role
            else:
                role = requested
        else:
            role = actor.approver_role
            if role is None:
                raise PermissionDeniedError("user role cannot approve permits")
            if requested is not None and requested != role:
                raise PermissionDeniedError(f"user cannot act for approval role {requested}")
        approval = next((item for item in pending if item.role == role), None)
        if approval is None:
            raise ConflictError(f"no pending approval for role {role}", role=str(role))
        if approval.approver_id is not None and approval.approver_id != actor.user_id and not actor.is_admin:
            raise PermissionDeniedError("approval is assigned to another user", role=str(role))
        return approval

    def approve(self, permit_id: int, actor: Actor, payload: PermitApproveRequest) -> Permit:
        with self._transaction() as repo:
            permit = repo.require(permit_id)
            self._ensure_can_fire(permit, PermitTrigger.APPROVE)
            approval = self._resolve_approval(repo, permit, actor, payload.role)
            repo.decide_approval(
                approval,
                status=ApprovalStatus.APPROVED,
                decided_by=actor.user_id,
                comments=payload.comments,
                signature=payload.signature,
            )
            activated = not repo.pending_approvals(permit_id)
            if activated:
                self._fire(repo, permit, PermitTrigger.APPROVE, actor, activated_at=now_utc())
            else:
                # Version bump so a concurrent final approval cannot also activate.
                repo.touch(permit)

        self._emit("permit.approval_recorded", permit, actor, role=str(approval.role))
        if activated:
            self._emit("permit.approved", permit, actor)
        return permit

    def reject(self, permit_id: int, actor: Actor, payload: PermitRejectRequest) -> Permit:
        with self._transaction() as repo:
            permit = repo.require(permit_id)
            self._ensure_can_fire(permit, PermitTrigger.REJECT)
            if _is_blank(payload.reason):
                raise ValidationError("rejection reason is required")
            reason = payload.reason.strip()
            approval = self._resolve_approval(repo, permit, actor, payload.role)
            repo.decide_approval(
                approval,
                status=ApprovalStatus.REJECTED,
                decided_by=actor.user_id,
                comments=reason,
            )
            repo.supersede_pending(permit_id)
            self._fire(repo, permit, PermitTrigger.REJECT, actor, rejection_reason=reason)

        self._emit("permit.rejected", permit, actor, role=str(approval.role), reason=reason)
        return permit

    def request_extension(self, permit_id: int, actor: Actor, payload: ExtensionRequest) -> PermitExtension:
        with self._transaction() as repo:
            permit = repo.require(permit_id)
            self._ensure_owner(permit, actor)
            self._ensure_can_fire(permit, PermitTrigger.REQUEST_EXTENSION)
            if _is_blank(payload.reason):
                raise ValidationError("extension reason is required")
            if ensure_utc(payload.new_end_time) <= ensure_utc(permit.end_time):
                raise ValidationError("new_end_time must be after the current end_time")
            assert permit.id is not None
            extension = PermitExtension(
                permit_id=permit.id,
                requested_by=actor.user_id,
                original_end_time=permit.end_time,
                new_end_time=ensure_utc(payload.new_end_time),
                reason=payload.reason.strip(),
            )
            repo.session.add(extension)
            self._fire(repo, permit, PermitTrigger.REQUEST_EXTENSION, actor)
            repo.session.refresh(extension)

        self._emit(
            "permit.extension_requested",
            permit,
            actor,
            extension_id=extension.id,
            new_end_time=ensure_utc(extension.new_end_time).isoformat(),
        )
        return extension

    def _decide_extension(
        self,
        permit_id: int,
        actor: Actor,
        trigger: PermitTrigger,
        comments: str | None,
    ) -> Permit:
        approved = trigger == PermitTrigger.APPROVE_EXTENSION
        with self._transaction() as repo:
            permit = repo.require(permit_id)
            self._ensure_approver(actor)
            self._ensure_can_fire(permit, trigger)
            extension = repo.pending_extension(permit_id)
            if extension is None:
                raise ConflictError("no pending extension request", permit_id=permit_id)
            extension.status = ApprovalStatus.APPROVED if approved else ApprovalStatus.REJECTED
            extension.decided_by = actor.user_id
            extension.decided_at = now_utc()
            extension.comments = comments
            repo.session.add(extension)
            values: dict[str, Any] = {"end_time": extension.new_end_time} if approved else {}
            self._fire(repo, permit, trigger, actor, **values)

        event_type = "permit.extension_approved" if approved else "permit.extension_rejected"
        self._emit(event_type, permit, actor, extension_id=extension.id)
        return permit

    def approve_extension(self, permit_id: int, actor: Actor, comments: str | None = None) -> Permit:
        return self._decide_extension(permit_id, actor, PermitTrigger.APPROVE_EXTENSION, comments)

    def reject_extension(self, permit_id: int, actor: Actor, comments: str | None = None) -> Permit:
        return self._decide_extension(permit_id, actor, PermitTrigger.REJECT_EXTENSION, comments)

    def suspend(self, permit_id: int, actor: Actor, reason: str | None = None) -> Permit:
        with self._transaction() as repo:
            permit = repo.require(permit_id)
            self._ensure_owner_or_approver(permit, actor)
            self._fire(repo, permit, PermitTrigger.SUSPEND, actor)

        self._emit("permit.suspended", permit, actor, reason=reason)
        return permit

    def resume(self, permit_id: int, actor: Actor, reason: str | None = None) -> Permit:
        with self._transaction() as repo:
            permit = repo.require(permit_id)
            self._ensure_owner_or_approver(permit, actor)
            self._fire(repo, permit, PermitTrigger.RESUME, actor)

        self._emit("permit.resumed", permit, actor, reason=reason)
        return permit

    def cancel(self, permit_id: int, actor: Actor, reason: str | None = None) -> Permit:
        with self._transaction() as repo:
            permit = repo.require(permit_id)
            self._ensure_owner(permit, actor)
            self._fire(repo, permit, PermitTrigger.CANCEL, actor)
            repo.supersede_pending(permit_id)

        self._emit("permit.cancelled", permit, actor, reason=reason)
        return permit

    def close(
        self,
        permit_id: int,
        actor: Actor,
        checklist: PermitCloseRequest,
        files: list[IncomingFile] | None = None,
        metadata_json: str | None = None,
    ) -> ClosureResultRead:
        files = files or []
        evidences: list[Evidence] = []
        try:
            with self._transaction() as repo:
                permit = repo.require(permit_id)
                self._ensure_owner(permit, actor)
                self._ensure_can_fire(permit, PermitTrigger.CLOSE)
                if repo.closure(permit_id) is not None:
                    raise ConflictError("permit already has a closure record", permit_id=permit_id)
                unmet = checklist.unmet_items()
                if unmet:
                    raise ValidationError(f"closure checklist incomplete: {', '.join(unmet)}", unmet=unmet)
                entries = prepare_batch(files, metadata_json, EvidenceType.CLOSURE) if files else []

                closed_at = now_utc()
                closure = PermitClosure(
                    permit_id=permit_id,
                    closed_by=actor.user_id,
                    closed_at=closed_at,
                    **checklist.model_dump(),
                )
                repo.session.add(closure)
                repo.session.flush()
                self._fire(repo, permit, PermitTrigger.CLOSE, actor, closed_at=closed_at)
                if files:
                    evidences = self._evidence.record_files(
                        repo.session,
                        permit_id=permit_id,
                        files=files,
                        entries=entries,
                        evidence_type=EvidenceType.CLOSURE,
                        actor_id=actor.user_id,
                        closure_id=closure.id,
                    )
        except PtwError:
            if evidences:
                logger.warning(
                    "evidence_files_orphaned",
                    reason="closure_rolled_back",
                    references=[item.file_path for item in evidences],
                )
            raise

        self._emit("permit.closed", permit, actor, closure_id=closure.id, evidence_count=len(evidences))
        return ClosureResultRead(
            permit=PermitRead.model_validate(permit),
            closure=ClosureRead.model_validate(closure),
            evidences=[EvidenceRead.model_validate(item) for item in evidences],
        )
