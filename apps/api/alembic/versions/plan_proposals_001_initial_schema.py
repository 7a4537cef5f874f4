"""Initial schema: athletes, plan drafts, proposals, policy tuning, audit

Revision ID: plan_proposals_001
Revises:
Create Date: 2026-10-18

Portable column types (generic Uuid, JSON with a JSONB variant) so the same
migration runs on PostgreSQL and on the sqlite database used in tests.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = 'plan_proposals_001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


JSONType = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')
SequenceId = sa.BigInteger().with_variant(sa.Integer(), 'sqlite')


def upgrade() -> None:
    op.create_table(
        'athlete',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('email', sa.Text(), nullable=True, unique=True),
        sa.Column('role', sa.Text(), nullable=False, server_default='athlete'),
        sa.Column('display_name', sa.Text(), nullable=True),
        sa.Column('coach_id', sa.Uuid(), sa.ForeignKey('athlete.id'), nullable=True),
    )
    op.create_index('ix_athlete_coach_id', 'athlete', ['coach_id'])

    op.create_table(
        'plan_draft',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('athlete_id', sa.Uuid(), sa.ForeignKey('athlete.id'), nullable=False),
        sa.Column('coach_id', sa.Uuid(), sa.ForeignKey('athlete.id'), nullable=False),
        sa.Column('status', sa.Text(), nullable=False, server_default='draft'),
        sa.Column('policy_profile_id', sa.Text(), nullable=False, server_default='default'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_published_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("status IN ('draft', 'published')", name='ck_plan_draft_status'),
    )
    op.create_index('ix_plan_draft_athlete_id', 'plan_draft', ['athlete_id'])
    op.create_index('ix_plan_draft_coach_id', 'plan_draft', ['coach_id'])

    op.create_table(
        'plan_draft_week',
        sa.Column('draft_id', sa.Uuid(), sa.ForeignKey('plan_draft.id'), primary_key=True),
        sa.Column('week_index', sa.Integer(), primary_key=True),
        sa.Column('locked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('sessions_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_minutes', sa.Integer(), nullable=False, server_default='0'),
    )

    op.create_table(
        'plan_draft_session',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('draft_id', sa.Uuid(), sa.ForeignKey('plan_draft.id'), nullable=False),
        sa.Column('week_index', sa.Integer(), nullable=False),
        sa.Column('ordinal', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('day_of_week', sa.Integer(), nullable=True),
        sa.Column('session_type', sa.Text(), nullable=False),
        sa.Column('duration_minutes', sa.Integer(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('locked', sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index('ix_plan_draft_session_draft_id', 'plan_draft_session', ['draft_id'])
    op.create_index('ix_plan_draft_session_draft_week', 'plan_draft_session', ['draft_id', 'week_index'])

    op.create_table(
        'plan_proposal',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('draft_id', sa.Uuid(), sa.ForeignKey('plan_draft.id'), nullable=False),
        sa.Column('athlete_id', sa.Uuid(), sa.ForeignKey('athlete.id'), nullable=False),
        sa.Column('coach_id', sa.Uuid(), sa.ForeignKey('athlete.id'), nullable=False),
        sa.Column('kind', sa.Text(), nullable=False, server_default='forward'),
        sa.Column('undoes_proposal_id', sa.Uuid(), sa.ForeignKey('plan_proposal.id'), nullable=True),
        sa.Column('status', sa.Text(), nullable=False, server_default='pending'),
        sa.Column('diff_json', JSONType, nullable=False),
        sa.Column('inverse_diff_json', JSONType, nullable=True),
        sa.Column('impact_json', JSONType, nullable=True),
        sa.Column('rationale', sa.Text(), nullable=True),
        sa.Column('created_by_id', sa.Uuid(), sa.ForeignKey('athlete.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('decided_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('applied_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('undone_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("kind IN ('forward', 'undo')", name='ck_plan_proposal_kind'),
        sa.CheckConstraint(
            "status IN ('pending', 'applied', 'rejected', 'undo_pending', 'undone')",
            name='ck_plan_proposal_status',
        ),
    )
    op.create_index('ix_plan_proposal_draft_id', 'plan_proposal', ['draft_id'])
    op.create_index('ix_plan_proposal_athlete_id', 'plan_proposal', ['athlete_id'])
    op.create_index('ix_plan_proposal_status', 'plan_proposal', ['status'])
    op.create_index('ix_plan_proposal_created_at', 'plan_proposal', ['created_at'])
    op.create_index('ix_plan_proposal_undoes_proposal_id', 'plan_proposal', ['undoes_proposal_id'])
    op.create_index('ix_plan_proposal_draft_status', 'plan_proposal', ['draft_id', 'status'])

    op.create_table(
        'policy_tuning',
        sa.Column('profile_id', sa.Text(), primary_key=True),
        sa.Column('profile_version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('override_json', JSONType, nullable=False),
        sa.Column('updated_by_id', sa.Uuid(), sa.ForeignKey('athlete.id'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        'plan_audit_event',
        sa.Column('id', SequenceId, primary_key=True, autoincrement=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('actor_id', sa.Uuid(), sa.ForeignKey('athlete.id'), nullable=False),
        sa.Column('actor_role', sa.Text(), nullable=True),
        sa.Column('action', sa.Text(), nullable=False),
        sa.Column('target_type', sa.Text(), nullable=False),
        sa.Column('target_id', sa.Text(), nullable=False),
        sa.Column('draft_id', sa.Uuid(), nullable=True),
        sa.Column('profile_id', sa.Text(), nullable=True),
        sa.Column('before', JSONType, nullable=True),
        sa.Column('after', JSONType, nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('ip_address', sa.Text(), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('payload', JSONType, nullable=False),
    )
    op.create_index('ix_plan_audit_event_created_at', 'plan_audit_event', ['created_at'])
    op.create_index('ix_plan_audit_event_actor_id', 'plan_audit_event', ['actor_id'])
    op.create_index('ix_plan_audit_event_action', 'plan_audit_event', ['action'])
    op.create_index('ix_plan_audit_event_draft_id', 'plan_audit_event', ['draft_id'])
    op.create_index('ix_plan_audit_event_profile_id', 'plan_audit_event', ['profile_id'])


def downgrade() -> None:
    op.drop_table('plan_audit_event')
    op.drop_table('policy_tuning')
    op.drop_table('plan_proposal')
    op.drop_table('plan_draft_session')
    op.drop_table('plan_draft_week')
    op.drop_table('plan_draft')
    op.drop_table('athlete')
