from __future__ import annotations

import structlog
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, func, select

from ptw.domain.errors import NotFoundError
from ptw.domain.models import (
    ApprovalStatus,
    EventEnvelope,
    Notification,
    Permit,
    PermitApproval,
    User,
)
from ptw.domain.permissions import APPROVER_ROLE_BY_USER_ROLE, ApproverRole
from ptw.infra.db import open_session
from ptw.infra.events import EventBus

logger = structlog.get_logger(__name__)

CREATOR = "creator"
APPROVERS = "approvers"

# event type -> (recipient group, title, message template)
NOTIFICATION_RULES: dict[str, tuple[str, str, str]] = {
    "permit.submitted": (APPROVERS, "Approval required", "Permit {serial} is waiting for your approval"),
    "permit.approval_recorded": (CREATOR, "Approval recorded", "An approval was recorded on permit {serial}"),
    "permit.approved": (CREATOR, "Permit approved", "Permit {serial} is approved and now active"),
    "permit.rejected": (CREATOR, "Permit rejected", "Permit {serial} was rejected"),
    "permit.extension_requested": (
        APPROVERS,
        "Extension requested",
        "An extension was requested for permit {serial}",
    ),
    "permit.extension_approved": (CREATOR, "Extension approved", "The extension of permit {serial} was approved"),
    "permit.extension_rejected": (CREATOR, "Extension rejected", "The extension of permit {serial} was rejected"),
    "permit.suspended": (CREATOR, "Permit suspended", "Permit {serial} was suspended"),
    "permit.resumed": (CREATOR, "Permit resumed", "Permit {serial} was resumed"),
    "permit.closed": (CREATOR, "Permit closed", "Permit {serial} was closed"),
    "permit.cancelled": (CREATOR, "Permit cancelled", "Permit {serial} was cancelled"),
}


class InAppNotificationDispatcher:
    """Turns permit events into notification rows for the affected users."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def subscribe(self, event_bus: EventBus) -> None:
        for event_type in NOTIFICATION_RULES:
            event_bus.subscribe(event_type, self.dispatch)

    def _approver_ids(self, session: Session, permit: Permit) -> set[int]:
        assert permit.id is not None
        pending = session.exec(
            select(PermitApproval)
            .where(PermitApproval.permit_id == permit.id)
            .where(PermitApproval.status == ApprovalStatus.PENDING)
        ).all()
        assigned = {item.approver_id for item in pending if item.approver_id is not None}
        open_roles = {item.role for item in pending if item.approver_id is None}
        if not pending:
            assigned = {
                item
                for item in (permit.area_manager_id, permit.safety_officer_id, permit.site_leader_id)
                if item is not None
            }
            if not assigned:
                open_roles = set(ApproverRole)
        if open_roles:
            user_roles = [user_role for user_role, role in APPROVER_ROLE_BY_USER_ROLE.items() if role in open_roles]
            users = session.exec(
                select(User).where(col(User.role).in_(user_roles)).where(User.is_active == True)  # noqa: E712
            ).all()
            assigned.update(item.id for item in users if item.id is not None)
        return assigned

    def dispatch(self, event: EventEnvelope) -> None:
        rule = NOTIFICATION_RULES.get(event.event_type)
        if rule is None or event.permit_id is None:
            return
        group, title, template = rule
        with open_session(self._engine) as session:
            permit = session.get(Permit, event.permit_id)
            if permit is None:
                return
            recipients = {permit.created_by} if group == CREATOR else self._approver_ids(session, permit)
            recipients.discard(event.actor_id)
            message = template.format(serial=permit.permit_serial)
            for user_id in sorted(recipients):
                session.add(
                    Notification(
                        user_id=user_id,
                        permit_id=permit.id,
                        notification_type=event.event_type,
                        title=title,
                        message=message,
                    )
                )
            session.commit()
        logger.info(
            "notifications_dispatched",
            event_type=event.event_type,
            permit_id=event.permit_id,
            recipients=len(recipients),
        )


class NotificationService:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def _session(self) -> Session:
        return open_session(self._engine)

    def list_notifications(self, user_id: int, unread_only: bool = False) -> list[Notification]:
        with self._session() as session:
            statement = select(Notification).where(Notification.user_id == user_id)
            if unread_only:
                statement = statement.where(Notification.is_read == False)  # noqa: E712
            statement = statement.order_by(col(Notification.created_at).desc(), col(Notification.id).desc())
            return list(session.exec(statement).all())

    def unread_count(self, user_id: int) -> int:
        with self._session() as session:
            count = session.exec(
                select(func.count())
                .select_from(Notification)
                .where(Notification.user_id == user_id)
                .where(Notification.is_read == False)  # noqa: E712
            ).one()
            return int(count or 0)

    def mark_read(self, user_id: int, notification_id: int) -> Notification:
        with self._session() as session:
            notification = session.get(Notification, notification_id)
            if notification is None or notification.user_id != user_id:
                raise NotFoundError("Notification not found", notification_id=notification_id)
            notification.is_read = True
            session.add(notification)
            session.commit()
            session.refresh(notification)
            return notification

    def mark_all_read(self, user_id: int) -> int:
        with self._session() as session:
            unread = session.exec(
                select(Notification)
                .where(Notification.user_id == user_id)
                .where(Notification.is_read == False)  # noqa: E712
            ).all()
            for item in unread:
                item.is_read = True
                session.add(item)
            session.commit()
            return len(unread)
