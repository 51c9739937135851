"""Create import_keys and manual_adjustments tables

Revision ID: 0f3c2a71b9d4
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0f3c2a71b9d4"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Persistent dedup index and manual adjustment audit trail."""
    op.create_table(
        "import_keys",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("kind", sa.String(30), nullable=False),
        sa.Column("key", sa.String(512), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("kind", "key", name="uq_import_keys_kind_key"),
    )

    op.create_table(
        "manual_adjustments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant", sa.String(100), nullable=False),
        sa.Column("user_id", sa.String(200), nullable=False),
        sa.Column("delta_xp", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("delta_level", sa.Integer(), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.String(128), nullable=True),
        sa.Column("actor_id", sa.String(100), nullable=True),
        sa.Column("source", sa.String(30), nullable=False, server_default="manual"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_manual_adjustments_tenant_user", "manual_adjustments", ["tenant", "user_id"]
    )


def downgrade() -> None:
    op.drop_index("ix_manual_adjustments_tenant_user", table_name="manual_adjustments")
    op.drop_table("manual_adjustments")
    op.drop_table("import_keys")
