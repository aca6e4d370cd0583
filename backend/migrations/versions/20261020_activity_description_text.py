"""Widen document_activity_logs.description to Text

Revision ID: 20261020_activity_desc_text
Revises: 20261019_initial
Create Date: 2026-10-20

Field edits on note/reason (Text columns) quote both values in the
description, which can exceed 512 characters.
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261020_activity_desc_text"
down_revision = "20261019_initial"
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table("document_activity_logs", schema=None) as batch_op:
        batch_op.alter_column(
            "description",
            existing_type=sa.String(length=512),
            type_=sa.Text(),
            existing_nullable=False,
        )


def downgrade():
    with op.batch_alter_table("document_activity_logs", schema=None) as batch_op:
        batch_op.alter_column(
            "description",
            existing_type=sa.Text(),
            type_=sa.String(length=512),
            existing_nullable=False,
        )
