"""init permit-to-work tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610190001"
down_revision = None
branch_labels = None
depends_on = None

# Enum columns store member names, matching SQLModel's default mapping.
user_role = sa.Enum(
    "ADMIN",
    "REQUESTER",
    "APPROVER_AREA_MANAGER",
    "APPROVER_SAFETY",
    "APPROVER_SITE_LEADER",
    "WORKER",
    "SUPERVISOR",
    name="userrole",
)
permit_type = sa.Enum("GENERAL", "HEIGHT", "HOT_WORK", "ELECTRICAL", "CONFINED_SPACE", name="permittype")
permit_status = sa.Enum(
    "DRAFT",
    "PENDING_APPROVAL",
    "ACTIVE",
    "EXTENSION_REQUESTED",
    "SUSPENDED",
    "CLOSED",
    "CANCELLED",
    "REJECTED",
    name="permitstatus",
)
approval_status = sa.Enum("PENDING", "APPROVED", "REJECTED", "SUPERSEDED", name="approvalstatus")
approver_role = sa.Enum("AREA_MANAGER", "SAFETY_OFFICER", "SITE_LEAD", name="approverrole")
evidence_type = sa.Enum("WORKING", "CLOSURE", name="evidencetype")


def upgrade() -> None:
    op.create_table(
        "events",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("ts", sa.DateTime(), nullable=False),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("permit_id", sa.Integer(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("ix_events_event_type", "events", ["event_type"])
    op.create_index("ix_events_ts", "events", ["ts"])
    op.create_index("ix_events_actor_id", "events", ["actor_id"])
    op.create_index("ix_events_permit_id", "events", ["permit_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("resource", sa.String(), nullable=False),
        sa.Column("method", sa.String(), nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=False),
        sa.Column("ts", sa.DateTime(), nullable=False),
        sa.Column("detail", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_actor_id", "audit_logs", ["actor_id"])
    op.create_index("ix_audit_logs_request_id", "audit_logs", ["request_id"])
    op.create_index("ix_audit_logs_ts", "audit_logs", ["ts"])

    op.create_table(
        "sites",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("site_code", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("location", sa.String(), nullable=True),
        sa.Column("address", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sites_site_code", "sites", ["site_code"], unique=True)
    op.create_index("ix_sites_name", "sites", ["name"])
    op.create_index("ix_sites_created_at", "sites", ["created_at"])

    op.create_table(
        "vendors",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("company_name", sa.String(), nullable=False),
        sa.Column("contact_person", sa.String(), nullable=True),
        sa.Column("contact_email", sa.String(), nullable=True),
        sa.Column("contact_phone", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_vendors_company_name", "vendors", ["company_name"], unique=True)
    op.create_index("ix_vendors_created_at", "vendors", ["created_at"])

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("login_id", sa.String(), nullable=False),
        sa.Column("full_name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("role", user_role, nullable=False),
        sa.Column("department", sa.String(), nullable=True),
        sa.Column("site_id", sa.Integer(), nullable=True),
        sa.Column("signature", sa.String(), nullable=True),
        sa.Column("password_hash", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["site_id"], ["sites.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_login_id", "users", ["login_id"], unique=True)
    op.create_index("ix_users_email", "users", ["email"])
    op.create_index("ix_users_role", "users", ["role"])
    op.create_index("ix_users_site_id", "users", ["site_id"])
    op.create_index("ix_users_created_at", "users", ["created_at"])

    op.create_table(
        "permits",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("permit_serial", sa.String(), nullable=False),
        sa.Column("site_id", sa.Integer(), nullable=False),
        sa.Column("created_by", sa.Integer(), nullable=False),
        sa.Column("vendor_id", sa.Integer(), nullable=True),
        sa.Column("permit_type", permit_type, nullable=False),
        sa.Column("work_location", sa.String(), nullable=False),
        sa.Column("work_description", sa.String(), nullable=False),
        sa.Column("start_time", sa.DateTime(), nullable=False),
        sa.Column("end_time", sa.DateTime(), nullable=False),
        sa.Column("receiver_name", sa.String(), nullable=True),
        sa.Column("receiver_signature", sa.String(), nullable=True),
        sa.Column("receiver_contact", sa.String(), nullable=True),
        sa.Column("control_measures", sa.String(), nullable=True),
        sa.Column("swms_file_url", sa.String(), nullable=True),
        sa.Column("area_manager_id", sa.Integer(), nullable=True),
        sa.Column("safety_officer_id", sa.Integer(), nullable=True),
        sa.Column("site_leader_id", sa.Integer(), nullable=True),
        sa.Column("status", permit_status, nullable=False),
        sa.Column("rejection_reason", sa.String(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("submitted_at", sa.DateTime(), nullable=True),
        sa.Column("activated_at", sa.DateTime(), nullable=True),
        sa.Column("closed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["site_id"], ["sites.id"]),
        sa.ForeignKeyConstraint(["vendor_id"], ["vendors.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_permits_permit_serial", "permits", ["permit_serial"], unique=True)
    op.create_index("ix_permits_site_id", "permits", ["site_id"])
    op.create_index("ix_permits_created_by", "permits", ["created_by"])
    op.create_index("ix_permits_vendor_id", "permits", ["vendor_id"])
    op.create_index("ix_permits_area_manager_id", "permits", ["area_manager_id"])
    op.create_index("ix_permits_safety_officer_id", "permits", ["safety_officer_id"])
    op.create_index("ix_permits_site_leader_id", "permits", ["site_leader_id"])
    op.create_index("ix_permits_status", "permits", ["status"])
    op.create_index("ix_permits_created_at", "permits", ["created_at"])
    op.create_index("ix_permits_updated_at", "permits", ["updated_at"])
    op.create_index("ix_permits_site_status", "permits", ["site_id", "status"])
    op.create_index("ix_permits_creator_status", "permits", ["created_by", "status"])

    op.create_table(
        "permit_team_members",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("permit_id", sa.Integer(), nullable=False),
        sa.Column("worker_name", sa.String(), nullable=False),
        sa.Column("worker_role", sa.String(), nullable=True),
        sa.Column("company_name", sa.String(), nullable=True),
        sa.Column("badge_id", sa.String(), nullable=True),
        sa.Column("contact_number", sa.String(), nullable=True),
        sa.Column("is_qualified", sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(["permit_id"], ["permits.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_permit_team_members_permit_id", "permit_team_members", ["permit_id"])

    op.create_table(
        "permit_closures",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("permit_id", sa.Integer(), nullable=False),
        sa.Column("closed_by", sa.Integer(), nullable=False),
        sa.Column("closed_at", sa.DateTime(), nullable=False),
        sa.Column("housekeeping_done", sa.Boolean(), nullable=False),
        sa.Column("tools_removed", sa.Boolean(), nullable=False),
        sa.Column("locks_removed", sa.Boolean(), nullable=False),
        sa.Column("area_restored", sa.Boolean(), nullable=False),
        sa.Column("remarks", sa.String(), nullable=True),
        sa.ForeignKeyConstraint(["permit_id"], ["permits.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("permit_id", name="uq_permit_closures_permit_id"),
    )
    op.create_index("ix_permit_closures_permit_id", "permit_closures", ["permit_id"])

    op.create_table(
        "permit_evidences",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("permit_id", sa.Integer(), nullable=False),
        sa.Column("closure_id", sa.Integer(), nullable=True),
        sa.Column("evidence_type", evidence_type, nullable=False),
        sa.Column("file_path", sa.String(), nullable=False),
        sa.Column("file_name", sa.String(), nullable=False),
        sa.Column("content_type", sa.String(), nullable=False),
        sa.Column("size_bytes", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=False),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("uploaded_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["permit_id"], ["permits.id"]),
        sa.ForeignKeyConstraint(["closure_id"], ["permit_closures.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("file_path"),
    )
    op.create_index("ix_permit_evidences_permit_id", "permit_evidences", ["permit_id"])
    op.create_index("ix_permit_evidences_closure_id", "permit_evidences", ["closure_id"])
    op.create_index("ix_permit_evidences_evidence_type", "permit_evidences", ["evidence_type"])
    op.create_index("ix_permit_evidences_category", "permit_evidences", ["category"])
    op.create_index("ix_permit_evidences_uploaded_by", "permit_evidences", ["uploaded_by"])
    op.create_index("ix_permit_evidences_created_at", "permit_evidences", ["created_at"])
    op.create_index("ix_permit_evidences_permit_ts", "permit_evidences", ["permit_id", "timestamp"])

    op.create_table(
        "permit_approvals",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("permit_id", sa.Integer(), nullable=False),
        sa.Column("role", approver_role, nullable=False),
        sa.Column("approver_id", sa.Integer(), nullable=True),
        sa.Column("decided_by", sa.Integer(), nullable=True),
        sa.Column("status", approval_status, nullable=False),
        sa.Column("comments", sa.String(), nullable=True),
        sa.Column("signature", sa.String(), nullable=True),
        sa.Column("decided_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["permit_id"], ["permits.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_permit_approvals_permit_id", "permit_approvals", ["permit_id"])
    op.create_index("ix_permit_approvals_approver_id", "permit_approvals", ["approver_id"])
    op.create_index("ix_permit_approvals_status", "permit_approvals", ["status"])
    op.create_index("ix_permit_approvals_created_at", "permit_approvals", ["created_at"])
    op.create_index("ix_permit_approvals_permit_role", "permit_approvals", ["permit_id", "role"])

    op.create_table(
        "permit_extensions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("permit_id", sa.Integer(), nullable=False),
        sa.Column("requested_by", sa.Integer(), nullable=False),
        sa.Column("original_end_time", sa.DateTime(), nullable=False),
        sa.Column("new_end_time", sa.DateTime(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("status", approval_status, nullable=False),
        sa.Column("decided_by", sa.Integer(), nullable=True),
        sa.Column("decided_at", sa.DateTime(), nullable=True),
        sa.Column("comments", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["permit_id"], ["permits.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_permit_extensions_permit_id", "permit_extensions", ["permit_id"])
    op.create_index("ix_permit_extensions_status", "permit_extensions", ["status"])
    op.create_index("ix_permit_extensions_created_at", "permit_extensions", ["created_at"])

    op.create_table(
        "approval_policies",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("site_id", sa.Integer(), nullable=True),
        sa.Column("permit_type", permit_type, nullable=True),
        sa.Column("required_roles", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["site_id"], ["sites.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("site_id", "permit_type", name="uq_approval_policies_site_type"),
    )
    op.create_index("ix_approval_policies_site_id", "approval_policies", ["site_id"])
    op.create_index("ix_approval_policies_permit_type", "approval_policies", ["permit_type"])
    op.create_index("ix_approval_policies_created_at", "approval_policies", ["created_at"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("permit_id", sa.Integer(), nullable=True),
        sa.Column("notification_type", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("message", sa.String(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])
    op.create_index("ix_notifications_permit_id", "notifications", ["permit_id"])
    op.create_index("ix_notifications_notification_type", "notifications", ["notification_type"])
    op.create_index("ix_notifications_is_read", "notifications", ["is_read"])
    op.create_index("ix_notifications_created_at", "notifications", ["created_at"])


def downgrade() -> None:
    op.drop_table("notifications")
    op.drop_table("approval_policies")
    op.drop_table("permit_extensions")
    op.drop_table("permit_approvals")
    op.drop_table("permit_evidences")
    op.drop_table("permit_closures")
    op.drop_table("permit_team_members")
    op.drop_table("permits")
    op.drop_table("users")
    op.drop_table("vendors")
    op.drop_table("sites")
    op.drop_table("audit_logs")
    op.drop_table("events")
    bind = op.get_bind()
    for enum in (evidence_type, approver_role, approval_status, permit_status, permit_type, user_role):
        enum.drop(bind, checkfirst=True)
