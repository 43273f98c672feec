"""Audit event log.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'audit_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('sequence_number', sa.Integer(), unique=True, nullable=False),
        sa.Column('timestamp', sa.DateTime(), default=sa.func.now(), nullable=False, index=True),
        sa.Column('event_type', sa.Enum(
            'WORKFLOW_CREATED', 'WORKFLOW_STATE_CHANGED', 'WORKFLOW_OPERATION_FAILED',
            'WORKFLOW_ABANDONED', 'FUNDING_SUBMITTED', 'FUNDING_CONFIRMED',
            'SPEND_DRAFTED', 'SIGNATURE_ADDED', 'SPEND_FINALIZED', 'SPEND_BROADCAST',
            'SPEND_CONFIRMED', 'CONTINUATION_CREATED',
            name='auditeventtype'
        ), nullable=False, index=True),
        sa.Column('actor_id', sa.String(255), nullable=True, index=True),
        sa.Column('actor_type', sa.String(50), default='OPERATOR'),
        sa.Column('entity_type', sa.String(50), nullable=True),
        sa.Column('entity_id', sa.String(36), nullable=True, index=True),
        sa.Column('entity_refs', sa.JSON(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('correlation_id', sa.String(255), nullable=False, index=True),
        sa.Column('prev_hash', sa.String(64), nullable=True),
        sa.Column('hash', sa.String(64), nullable=False, index=True),
    )
    op.create_index('ix_audit_events_entity', 'audit_events', ['entity_type', 'entity_id'])
    op.create_index('ix_audit_events_timestamp_type', 'audit_events', ['timestamp', 'event_type'])


def downgrade() -> None:
    op.drop_index('ix_audit_events_timestamp_type', table_name='audit_events')
    op.drop_index('ix_audit_events_entity', table_name='audit_events')
    op.drop_table('audit_events')
    op.execute("DROP TYPE IF EXISTS auditeventtype")
