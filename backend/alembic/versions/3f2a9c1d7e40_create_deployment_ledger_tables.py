"""create deployment ledger tables

Revision ID: 3f2a9c1d7e40
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3f2a9c1d7e40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table('deployments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('deployment_id', sa.String(length=64), nullable=False),
        sa.Column('clickup_task_id', sa.String(length=64), nullable=True),
        sa.Column('requested_steps', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=True),
        sa.Column('duration_seconds', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('deployments', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_deployments_deployment_id'), ['deployment_id'], unique=True)

    op.create_table('deployment_steps',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('deployment_id', sa.String(length=64), nullable=False),
        sa.Column('step_key', sa.String(length=64), nullable=False),
        sa.Column('step_name', sa.String(length=128), nullable=False),
        sa.Column('step_status', sa.String(length=32), nullable=False),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=True),
        sa.Column('duration_seconds', sa.Integer(), nullable=True),
        sa.Column('output_log', sa.Text(), nullable=True),
        sa.Column('error_log', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['deployment_id'], ['deployments.deployment_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('deployment_steps', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_deployment_steps_deployment_id'), ['deployment_id'], unique=False)


def downgrade() -> None:
    with op.batch_alter_table('deployment_steps', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_deployment_steps_deployment_id'))
    op.drop_table('deployment_steps')

    with op.batch_alter_table('deployments', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_deployments_deployment_id'))
    op.drop_table('deployments')
