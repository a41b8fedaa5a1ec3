"""add users.password_hash

Revision ID: 9b7e3d51c0a4
Revises: 4f1c2a9d7e31
Create Date: 2026-10-19 14:00:00.000000

"""

from alembic import op
import sqlalchemy as sa

revision = "9b7e3d51c0a4"
down_revision = "4f1c2a9d7e31"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("users", sa.Column("password_hash", sa.String(length=255)))


def downgrade() -> None:
    op.drop_column("users", "password_hash")
