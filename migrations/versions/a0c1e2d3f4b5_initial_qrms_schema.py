"""Initial QRMS schema: users, audit, items/history, change requests, QC approvals, notifications.

Revision ID: a0c1e2d3f4b5
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a0c1e2d3f4b5"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("username", sa.String(150), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column("role", sa.String(16), nullable=False, server_default="VIEWER"),
        sa.Column("is_qc", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_pm", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("signature_path", sa.String(512), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("username"),
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("request_id", sa.String(64), nullable=True),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        sa.Column("actor_name", sa.String(255), nullable=True),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("entity_type", sa.String(128), nullable=True),
        sa.Column("entity_id", sa.String(128), nullable=True),
        sa.Column("reason", sa.String(512), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("request_id", "id", name="uq_audit_request_id_id"),
    )

    op.create_table(
        "projects",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code_prefix", sa.String(64), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("requires_quality_review", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("code_prefix"),
    )

    op.create_table(
        "items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.Integer(), nullable=False),
        sa.Column("parent_id", sa.Integer(), nullable=True),
        sa.Column("code", sa.String(128), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("attachments_json", sa.Text(), nullable=True),
        sa.Column("current_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.Column("published_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["parent_id"], ["items.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("code"),
    )
    op.create_index("idx_items_project", "items", ["project_id"])
    op.create_index("idx_items_parent", "items", ["parent_id"])

    op.create_table(
        "item_relations",
        sa.Column("source_id", sa.Integer(), nullable=False),
        sa.Column("target_id", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(512), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["source_id"], ["items.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["target_id"], ["items.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("source_id", "target_id"),
    )

    op.create_table(
        "change_requests",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="PENDING"),
        sa.Column("project_id", sa.Integer(), nullable=True),
        sa.Column("item_id", sa.Integer(), nullable=True),
        sa.Column("parent_item_id", sa.Integer(), nullable=True),
        sa.Column("target_label", sa.String(255), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("submit_reason", sa.Text(), nullable=True),
        sa.Column("submitted_by_id", sa.Integer(), nullable=True),
        sa.Column("submitter_name", sa.String(255), nullable=True),
        sa.Column("submitted_at", sa.DateTime(), nullable=False),
        sa.Column("reviewed_by_id", sa.Integer(), nullable=True),
        sa.Column("reviewer_name", sa.String(255), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(), nullable=True),
        sa.Column("review_note", sa.Text(), nullable=True),
        sa.Column("previous_request_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["item_id"], ["items.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["parent_item_id"], ["items.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["submitted_by_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["reviewed_by_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["previous_request_id"], ["change_requests.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("previous_request_id"),
    )
    op.create_index("idx_change_requests_status", "change_requests", ["status"])
    op.create_index("idx_change_requests_submitted_by", "change_requests", ["submitted_by_id"])
    op.create_index("idx_change_requests_item", "change_requests", ["item_id"])

    op.create_table(
        "item_histories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("item_id", sa.Integer(), nullable=True),
        sa.Column("project_id", sa.Integer(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("change_type", sa.String(16), nullable=False),
        sa.Column("snapshot_json", sa.Text(), nullable=False),
        sa.Column("diff_json", sa.Text(), nullable=True),
        sa.Column("item_code", sa.String(128), nullable=False),
        sa.Column("item_title", sa.String(255), nullable=False),
        sa.Column("submitted_by_id", sa.Integer(), nullable=True),
        sa.Column("submitted_by_name", sa.String(255), nullable=True),
        sa.Column("reviewed_by_id", sa.Integer(), nullable=True),
        sa.Column("reviewed_by_name", sa.String(255), nullable=True),
        sa.Column("change_request_id", sa.Integer(), nullable=True),
        sa.Column("document_path", sa.String(512), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["item_id"], ["items.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["submitted_by_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["reviewed_by_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["change_request_id"], ["change_requests.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("item_id", "version", name="uq_item_history_version"),
        sa.UniqueConstraint("change_request_id"),
    )
    op.create_index("idx_item_histories_project", "item_histories", ["project_id"])
    op.create_index("idx_item_histories_item_code", "item_histories", ["item_code"])
    op.create_index("idx_item_histories_created_at", "item_histories", ["created_at"])

    op.create_table(
        "qc_document_approvals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("item_history_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="PENDING_QC"),
        sa.Column("submitted_by_id", sa.Integer(), nullable=True),
        sa.Column("submitter_name", sa.String(255), nullable=True),
        sa.Column("qc_approver_id", sa.Integer(), nullable=True),
        sa.Column("qc_approver_name", sa.String(255), nullable=True),
        sa.Column("qc_approved_at", sa.DateTime(), nullable=True),
        sa.Column("qc_note", sa.Text(), nullable=True),
        sa.Column("pm_approver_id", sa.Integer(), nullable=True),
        sa.Column("pm_approver_name", sa.String(255), nullable=True),
        sa.Column("pm_approved_at", sa.DateTime(), nullable=True),
        sa.Column("pm_note", sa.Text(), nullable=True),
        sa.Column("rejected_by_id", sa.Integer(), nullable=True),
        sa.Column("rejected_by_name", sa.String(255), nullable=True),
        sa.Column("rejected_at", sa.DateTime(), nullable=True),
        sa.Column("rejection_note", sa.Text(), nullable=True),
        sa.Column("revision_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["item_history_id"], ["item_histories.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["submitted_by_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["qc_approver_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["pm_approver_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["rejected_by_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("item_history_id"),
    )
    op.create_index("idx_qc_approvals_status", "qc_document_approvals", ["status"])

    op.create_table(
        "qc_revision_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("approval_id", sa.Integer(), nullable=False),
        sa.Column("revision_number", sa.Integer(), nullable=False),
        sa.Column("stage", sa.String(8), nullable=False),
        sa.Column("requested_by_id", sa.Integer(), nullable=True),
        sa.Column("requested_by_name", sa.String(255), nullable=True),
        sa.Column("request_note", sa.Text(), nullable=False),
        sa.Column("requested_at", sa.DateTime(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("resolved_by_id", sa.Integer(), nullable=True),
        sa.Column("resolved_by_name", sa.String(255), nullable=True),
        sa.ForeignKeyConstraint(["approval_id"], ["qc_document_approvals.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["requested_by_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["resolved_by_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("approval_id", "revision_number", name="uq_qc_revision_number"),
    )
    op.create_index("ix_qc_revision_items_approval_id", "qc_revision_items", ["approval_id"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("link", sa.String(512), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("read_at", sa.DateTime(), nullable=True),
        sa.Column("change_request_id", sa.Integer(), nullable=True),
        sa.Column("qc_approval_id", sa.Integer(), nullable=True),
        sa.Column("item_history_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["change_request_id"], ["change_requests.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["qc_approval_id"], ["qc_document_approvals.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["item_history_id"], ["item_histories.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_notifications_user_read", "notifications", ["user_id", "is_read"])
    op.create_index("idx_notifications_created_at", "notifications", ["created_at"])


def downgrade() -> None:
    op.drop_index("idx_notifications_created_at", table_name="notifications")
    op.drop_index("idx_notifications_user_read", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_qc_revision_items_approval_id", table_name="qc_revision_items")
    op.drop_table("qc_revision_items")
    op.drop_index("idx_qc_approvals_status", table_name="qc_document_approvals")
    op.drop_table("qc_document_approvals")
    op.drop_index("idx_item_histories_created_at", table_name="item_histories")
    op.drop_index("idx_item_histories_item_code", table_name="item_histories")
    op.drop_index("idx_item_histories_project", table_name="item_histories")
    op.drop_table("item_histories")
    op.drop_index("idx_change_requests_item", table_name="change_requests")
    op.drop_index("idx_change_requests_submitted_by", table_name="change_requests")
    op.drop_index("idx_change_requests_status", table_name="change_requests")
    op.drop_table("change_requests")
    op.drop_table("item_relations")
    op.drop_index("idx_items_parent", table_name="items")
    op.drop_index("idx_items_project", table_name="items")
    op.drop_table("items")
    op.drop_table("projects")
    op.drop_table("audit_events")
    op.drop_table("users")
