"""owner email from override

Revision ID: 20261018_02
Revises: 20261018_01
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261018_02"
down_revision = "20261018_01"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("owner_plans", sa.Column("email_from", sa.String(length=255), nullable=True))


def downgrade() -> None:
    op.drop_column("owner_plans", "email_from")
