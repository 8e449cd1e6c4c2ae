"""Track every detected deposit balance.

Revision ID: 002_detected_assets
Revises: 001_initial
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '002_detected_assets'
down_revision: Union[str, None] = '001_initial'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        'offramp_transactions', sa.Column('detected_assets', sa.JSON(), nullable=True)
    )


def downgrade() -> None:
    with op.batch_alter_table('offramp_transactions') as batch_op:
        batch_op.drop_column('detected_assets')
