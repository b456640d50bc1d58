"""create_ab_tables

Revision ID: 3f9c2a7d1b04
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '3f9c2a7d1b04'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Enum columns store member names
experiment_status = sa.Enum(
    'DRAFT', 'RUNNING', 'PAUSED', 'COMPLETED', 'CANCELLED', name='ab_experiment_status'
)
primary_metric = sa.Enum('CONVERSION_RATE', 'REVENUE_PER_VISITOR', name='ab_primary_metric')
value_kind = sa.Enum('PERCENT', 'AMOUNT', name='ab_value_kind')
identifier_type = sa.Enum('SESSION', 'CUSTOMER', name='ab_identifier_type')
event_type = sa.Enum('EXPOSURE', 'CLICK', 'CONVERSION', name='ab_event_type')

money = sa.Numeric(18, 4)


def upgrade() -> None:
    """Create experiment, variant, assignment and event tables."""
    op.create_table(
        'ab_experiments',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('shop_id', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('experiment_type', sa.String(100), nullable=False),
        sa.Column('status', experiment_status, nullable=False),
        sa.Column('traffic_allocation', sa.Float(), nullable=False),
        sa.Column('primary_metric', primary_metric, nullable=False),
        sa.Column('confidence_level', sa.Float(), nullable=False),
        sa.Column('min_sample_size', sa.Integer(), nullable=False),
        sa.Column('attribution_window_hours', sa.Integer(), nullable=True),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('winning_variant_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            'traffic_allocation > 0 AND traffic_allocation <= 1',
            name='ck_ab_experiments_traffic_allocation',
        ),
        sa.CheckConstraint(
            'confidence_level > 0 AND confidence_level < 1',
            name='ck_ab_experiments_confidence_level',
        ),
    )
    op.create_index('ix_ab_experiments_shop_status', 'ab_experiments', ['shop_id', 'status'])

    op.create_table(
        'ab_variants',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'experiment_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('ab_experiments.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_control', sa.Boolean(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('traffic_pct', sa.Float(), nullable=False),
        sa.Column('value_kind', value_kind, nullable=False),
        sa.Column('value_percent', sa.Float(), nullable=True),
        sa.Column('value_amount_minor', sa.BigInteger(), nullable=True),
        sa.Column('total_visitors', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('total_conversions', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('total_revenue', money, server_default='0', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint('traffic_pct > 0 AND traffic_pct <= 1', name='ck_ab_variants_traffic_pct'),
        sa.CheckConstraint(
            "(value_kind = 'PERCENT' AND value_percent IS NOT NULL AND value_amount_minor IS NULL)"
            " OR (value_kind = 'AMOUNT' AND value_amount_minor IS NOT NULL AND value_percent IS NULL)",
            name='ck_ab_variants_value_union',
        ),
    )
    op.create_index(
        'ix_ab_variants_experiment_position', 'ab_variants', ['experiment_id', 'position'], unique=True
    )

    op.create_table(
        'ab_assignments',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'experiment_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('ab_experiments.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column(
            'variant_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('ab_variants.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('visitor_identifier', sa.String(255), nullable=False),
        sa.Column('identifier_type', identifier_type, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(
        'ux_ab_assignments_experiment_visitor',
        'ab_assignments',
        ['experiment_id', 'visitor_identifier'],
        unique=True,
    )
    op.create_index('ix_ab_assignments_variant', 'ab_assignments', ['variant_id'])

    op.create_table(
        'ab_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'experiment_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('ab_experiments.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column(
            'variant_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('ab_variants.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column(
            'assignment_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('ab_assignments.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('event_type', event_type, nullable=False),
        sa.Column('visitor_identifier', sa.String(255), nullable=False),
        sa.Column('event_value', money, nullable=True),
        sa.Column('event_data', postgresql.JSONB(), nullable=True),
        sa.Column('attributed', sa.Boolean(), server_default='true', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_ab_events_experiment_created', 'ab_events', ['experiment_id', 'created_at'])
    op.create_index('ix_ab_events_variant_type', 'ab_events', ['variant_id', 'event_type'])
    op.create_index('ix_ab_events_assignment', 'ab_events', ['assignment_id'])


def downgrade() -> None:
    """Drop experiment tables and enum types."""
    op.drop_table('ab_events')
    op.drop_table('ab_assignments')
    op.drop_table('ab_variants')
    op.drop_table('ab_experiments')

    bind = op.get_bind()
    for enum_type in (event_type, identifier_type, value_kind, primary_metric, experiment_status):
        enum_type.drop(bind, checkfirst=True)
