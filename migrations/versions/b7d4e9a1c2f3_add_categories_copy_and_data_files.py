"""add project categories and the data file register

Revision ID: b7d4e9a1c2f3
Revises: a0c1e2d3f4b5
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = "b7d4e9a1c2f3"
down_revision: Union[str, Sequence[str], None] = "a0c1e2d3f4b5"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    insp = inspect(bind)
    tables = set(insp.get_table_names())

    if "project_categories" not in tables:
        op.create_table(
            "project_categories",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("name"),
        )

    if "data_files" not in tables:
        op.create_table(
            "data_files",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("data_year", sa.Integer(), nullable=False),
            sa.Column("data_name", sa.String(255), nullable=False),
            sa.Column("data_code", sa.String(128), nullable=False),
            sa.Column("author", sa.String(255), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("file_name", sa.String(255), nullable=False),
            sa.Column("file_path", sa.String(512), nullable=False),
            sa.Column("file_size", sa.Integer(), nullable=True),
            sa.Column("mime_type", sa.String(128), nullable=True),
            sa.Column("current_version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("deleted_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("data_code"),
        )
        op.create_index("idx_data_files_year", "data_files", ["data_year"])

    if "data_file_histories" not in tables:
        op.create_table(
            "data_file_histories",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("file_id", sa.Integer(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("change_type", sa.String(16), nullable=False),
            sa.Column("snapshot_json", sa.Text(), nullable=False),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("data_code", sa.String(128), nullable=False),
            sa.Column("data_name", sa.String(255), nullable=False),
            sa.Column("data_year", sa.Integer(), nullable=False),
            sa.Column("submitted_by_id", sa.Integer(), nullable=True),
            sa.Column("submitted_by_name", sa.String(255), nullable=True),
            sa.Column("reviewed_by_id", sa.Integer(), nullable=True),
            sa.Column("reviewed_by_name", sa.String(255), nullable=True),
            sa.Column("change_request_id", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["file_id"], ["data_files.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["submitted_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["reviewed_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["change_request_id"], ["change_requests.id"], ondelete="SET NULL"),
            sa.UniqueConstraint("file_id", "version", name="uq_data_file_history_version"),
            sa.UniqueConstraint("change_request_id"),
        )
        op.create_index("idx_data_file_histories_data_code", "data_file_histories", ["data_code"])

    project_cols = {c["name"] for c in insp.get_columns("projects")}
    if "category_id" not in project_cols:
        with op.batch_alter_table("projects") as batch_op:
            batch_op.add_column(sa.Column("category_id", sa.Integer(), nullable=True))
            batch_op.create_foreign_key(
                "fk_projects_category_id",
                "project_categories",
                ["category_id"],
                ["id"],
                ondelete="SET NULL",
            )

    cr_cols = {c["name"] for c in insp.get_columns("change_requests")}
    if "data_file_id" not in cr_cols:
        with op.batch_alter_table("change_requests") as batch_op:
            batch_op.add_column(sa.Column("data_file_id", sa.Integer(), nullable=True))
            batch_op.create_foreign_key(
                "fk_change_requests_data_file_id",
                "data_files",
                ["data_file_id"],
                ["id"],
                ondelete="SET NULL",
            )

    # index (idempotent)
    idx_names = {ix.get("name") for ix in insp.get_indexes("change_requests")}
    if "idx_change_requests_data_file" not in idx_names:
        op.create_index("idx_change_requests_data_file", "change_requests", ["data_file_id"])


def downgrade() -> None:
    op.drop_index("idx_change_requests_data_file", table_name="change_requests")
    with op.batch_alter_table("change_requests") as batch_op:
        batch_op.drop_constraint("fk_change_requests_data_file_id", type_="foreignkey")
        batch_op.drop_column("data_file_id")
    with op.batch_alter_table("projects") as batch_op:
        batch_op.drop_constraint("fk_projects_category_id", type_="foreignkey")
        batch_op.drop_column("category_id")
    op.drop_index("idx_data_file_histories_data_code", table_name="data_file_histories")
    op.drop_table("data_file_histories")
    op.drop_index("idx_data_files_year", table_name="data_files")
    op.drop_table("data_files")
    op.drop_table("project_categories")
