"""Add conversation and reply signature settings to bridge_policies.

Revision ID: 002
Revises: 001
Create Date: 2026-10-17

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Existing policies keep opening new conversations as pending, unsigned."""
    op.add_column(
        "bridge_policies", sa.Column("reopen_conversation", sa.Boolean(), nullable=False, server_default="0")
    )
    op.add_column(
        "bridge_policies", sa.Column("conversation_pending", sa.Boolean(), nullable=False, server_default="1")
    )
    op.add_column("bridge_policies", sa.Column("sign_messages", sa.Boolean(), nullable=False, server_default="0"))
    op.add_column("bridge_policies", sa.Column("sign_delimiter", sa.String(255), nullable=True))


def downgrade() -> None:
    for column in ("sign_delimiter", "sign_messages", "conversation_pending", "reopen_conversation"):
        op.drop_column("bridge_policies", column)
