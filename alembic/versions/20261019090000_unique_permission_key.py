"""unique (user_id, resource, resource_id) on permissions

Revision ID: 20261019090000
Revises: 20261018090000
Create Date: 2026-10-19T09:00:00Z
"""

from alembic import op
from sqlalchemy import inspect

# revision identifiers, used by Alembic.
revision = "20261019090000"
down_revision = "20261018090000"
branch_labels = None
depends_on = None

_INDEX = "uq_permissions_user_resource"


def _index_exists(table_name: str, index_name: str) -> bool:
    return any(i.get("name") == index_name for i in inspect(op.get_bind()).get_indexes(table_name))


def upgrade() -> None:
    # NULL resource_id rows are never equal to each other, so resource-wide grants are not covered
    if not _index_exists("permissions", _INDEX):
        op.create_index(_INDEX, "permissions", ["user_id", "resource", "resource_id"], unique=True)


def downgrade() -> None:
    if _index_exists("permissions", _INDEX):
        op.drop_index(_INDEX, table_name="permissions")
