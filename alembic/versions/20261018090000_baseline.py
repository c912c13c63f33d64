"""baseline: users, workflows, form submissions, permissions

Revision ID: 20261018090000
Revises:
Create Date: 2026-10-18T09:00:00Z
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect

# revision identifiers, used by Alembic.
revision = "20261018090000"
down_revision = None
branch_labels = None
depends_on = None

_ROLES = ("super_admin", "admin", "manager", "staff", "user")
_STATUSES = ("draft", "submitted", "in_review", "approved", "rejected")


def upgrade() -> None:
    bind = op.get_bind()
    tables = set(inspect(bind).get_table_names())

    if "users" not in tables:
        op.create_table(
            "users",
            sa.Column("id", sa.String(length=64), primary_key=True),
            sa.Column("email", sa.String(length=255), nullable=False, server_default=""),
            sa.Column("role", sa.Enum(*[r.upper() for r in _ROLES], name="role"), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("permissions_json", sa.Text(), nullable=False),
        )
        op.create_index("ix_users_email", "users", ["email"])
        op.create_index("ix_users_role", "users", ["role"])

    if "workflows" not in tables:
        op.create_table(
            "workflows",
            sa.Column("id", sa.String(length=64), primary_key=True),
            sa.Column("application_id", sa.String(length=64), nullable=False),
            sa.Column("form_id", sa.String(length=64), nullable=True),
            sa.Column("created_by", sa.String(length=64), nullable=True),
            sa.Column("name", sa.String(length=200), nullable=False, server_default=""),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("stages_json", sa.Text(), nullable=False),
            sa.Column("transitions_json", sa.Text(), nullable=False),
            sa.Column("settings_json", sa.Text(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        )
        for name, cols in [
            ("ix_workflows_application_id", ["application_id"]),
            ("ix_workflows_form_id", ["form_id"]),
            ("ix_workflows_created_by", ["created_by"]),
            ("ix_workflows_created_at", ["created_at"]),
        ]:
            op.create_index(name, "workflows", cols)

    if "form_submissions" not in tables:
        op.create_table(
            "form_submissions",
            sa.Column("id", sa.String(length=64), primary_key=True),
            sa.Column("form_id", sa.String(length=64), nullable=True),
            sa.Column("application_id", sa.String(length=64), nullable=True),
            sa.Column("submitted_by", sa.String(length=64), sa.ForeignKey("users.id"), nullable=True),
            sa.Column("status", sa.Enum(*[s.upper() for s in _STATUSES], name="submissionstatus"), nullable=False),
            sa.Column("data_json", sa.Text(), nullable=False),
            sa.Column("workflow_state_json", sa.Text(), nullable=True),
            sa.Column("revision", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        )
        for name, cols in [
            ("ix_form_submissions_form_id", ["form_id"]),
            ("ix_form_submissions_application_id", ["application_id"]),
            ("ix_form_submissions_submitted_by", ["submitted_by"]),
            ("ix_form_submissions_status", ["status"]),
        ]:
            op.create_index(name, "form_submissions", cols)

    if "permissions" not in tables:
        op.create_table(
            "permissions",
            sa.Column("pk", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("id", sa.String(length=64), nullable=False, unique=True),
            sa.Column("user_id", sa.String(length=64), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("resource", sa.String(length=120), nullable=False),
            sa.Column("resource_id", sa.String(length=120), nullable=True),
            sa.Column("application_id", sa.String(length=64), nullable=True),
            sa.Column("permissions_json", sa.Text(), nullable=False),
            sa.Column("field_permissions_json", sa.Text(), nullable=True),
        )
        for name, cols in [
            ("ix_permissions_user_id", ["user_id"]),
            ("ix_permissions_resource", ["resource"]),
            ("ix_permissions_resource_id", ["resource_id"]),
            ("ix_permissions_application_id", ["application_id"]),
        ]:
            op.create_index(name, "permissions", cols)


def downgrade() -> None:
    bind = op.get_bind()
    tables = set(inspect(bind).get_table_names())
    for table in ("permissions", "form_submissions", "workflows", "users"):
        if table in tables:
            op.drop_table(table)
