"""Change lifecycle schema: changes, approval/automation/completion ledgers, audit.

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

CHANGE_STATUSES = ('draft', 'pending', 'approved', 'in_progress', 'completed', 'failed', 'cancelled')


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('organization_id', sa.Uuid, nullable=False),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('full_name', sa.String(200)),
        sa.Column('role', sa.Enum('owner', 'admin', 'manager', 'member', 'viewer', name='memberrole'), nullable=False, server_default='member'),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('ix_users_organization_id', 'users', ['organization_id'])

    op.create_table(
        'changes',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('organization_id', sa.Uuid, nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('status', sa.Enum(*CHANGE_STATUSES, name='changestatus'), nullable=False, server_default='draft'),
        sa.Column('scheduled_for', sa.DateTime),
        sa.Column('estimated_end_time', sa.DateTime),
        sa.Column('requested_by', sa.Uuid, sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('assigned_to', sa.Uuid, sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('completed_at', sa.DateTime),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime, nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('ix_changes_organization_id', 'changes', ['organization_id'])
    op.create_index('ix_changes_status', 'changes', ['status'])
    op.create_index('ix_changes_requested_by', 'changes', ['requested_by'])
    op.create_index('ix_changes_assigned_to', 'changes', ['assigned_to'])

    op.create_table(
        'change_approvals',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('organization_id', sa.Uuid, nullable=False),
        sa.Column('change_id', sa.Uuid, sa.ForeignKey('changes.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('status', sa.Enum('pending', 'approved', 'rejected', name='approvalstatus'), nullable=False, server_default='pending'),
        sa.Column('requested_by', sa.Uuid, sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('approved_by', sa.Uuid, sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('comments', sa.Text),
        sa.Column('requested_at', sa.DateTime, nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('responded_at', sa.DateTime),
    )
    op.create_index('ix_change_approvals_organization_id', 'change_approvals', ['organization_id'])

    op.create_table(
        'change_automations',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('organization_id', sa.Uuid, nullable=False),
        sa.Column('change_id', sa.Uuid, sa.ForeignKey('changes.id', ondelete='CASCADE'), nullable=False),
        sa.Column('automation_type', sa.Enum('auto_start', 'completion_prompt', name='automationtype'), nullable=False),
        sa.Column('scheduled_for', sa.DateTime, nullable=False),
        sa.Column('executed', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('executed_at', sa.DateTime),
        sa.Column('error_message', sa.Text),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('ix_change_automations_organization_id', 'change_automations', ['organization_id'])
    op.create_index('ix_change_automations_change_id', 'change_automations', ['change_id'])
    # Sweep query: WHERE executed = false AND scheduled_for <= now
    op.create_index('ix_change_automations_due', 'change_automations', ['executed', 'scheduled_for'])

    op.create_table(
        'change_completion_responses',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('organization_id', sa.Uuid, nullable=False),
        sa.Column('change_id', sa.Uuid, sa.ForeignKey('changes.id', ondelete='CASCADE'), nullable=False),
        sa.Column('responded_by', sa.Uuid, sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('outcome', sa.Enum('completed', 'failed', name='completionoutcome'), nullable=False),
        sa.Column('notes', sa.Text),
        sa.Column('responded_at', sa.DateTime, nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('ix_change_completion_responses_organization_id', 'change_completion_responses', ['organization_id'])
    op.create_index('ix_change_completion_responses_change_id', 'change_completion_responses', ['change_id'])

    op.create_table(
        'change_status_history',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('change_id', sa.Uuid, sa.ForeignKey('changes.id', ondelete='CASCADE'), nullable=False),
        # Reuse the changestatus type created with the changes table
        sa.Column('from_status', postgresql.ENUM(*CHANGE_STATUSES, name='changestatus', create_type=False)),
        sa.Column('to_status', postgresql.ENUM(*CHANGE_STATUSES, name='changestatus', create_type=False), nullable=False),
        sa.Column('changed_by', sa.Uuid, sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('changed_by_system', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('reason', sa.Text),
        sa.Column('changed_at', sa.DateTime, nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('ix_change_status_history_change_id', 'change_status_history', ['change_id'])

    op.create_table(
        'notifications',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('organization_id', sa.Uuid, nullable=False),
        sa.Column('user_id', sa.Uuid, sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('change_id', sa.Uuid, sa.ForeignKey('changes.id', ondelete='CASCADE')),
        sa.Column('type', sa.Enum(
            'change_approval_request', 'change_approved', 'change_rejected', 'change_auto_started',
            'change_completion_prompt', 'change_completed', 'change_failed', 'change_automation_cancelled',
            name='notificationtype'), nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('message', sa.Text, nullable=False),
        sa.Column('data', sa.JSON().with_variant(postgresql.JSONB, 'postgresql')),
        sa.Column('read', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('ix_notifications_organization_id', 'notifications', ['organization_id'])
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])
    op.create_index('ix_notifications_change_id', 'notifications', ['change_id'])

    op.create_table(
        'comments',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('organization_id', sa.Uuid, nullable=False),
        sa.Column('change_id', sa.Uuid, sa.ForeignKey('changes.id', ondelete='CASCADE'), nullable=False),
        sa.Column('author_id', sa.Uuid, sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('is_system', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('content', sa.Text, nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('ix_comments_organization_id', 'comments', ['organization_id'])
    op.create_index('ix_comments_change_id', 'comments', ['change_id'])


def downgrade() -> None:
    op.drop_table('comments')
    op.drop_table('notifications')
    op.drop_table('change_status_history')
    op.drop_table('change_completion_responses')
    op.drop_table('change_automations')
    op.drop_table('change_approvals')
    op.drop_table('changes')
    op.drop_table('users')

    # Drop enums
    op.execute('DROP TYPE IF EXISTS notificationtype')
    op.execute('DROP TYPE IF EXISTS completionoutcome')
    op.execute('DROP TYPE IF EXISTS automationtype')
    op.execute('DROP TYPE IF EXISTS approvalstatus')
    op.execute('DROP TYPE IF EXISTS changestatus')
    op.execute('DROP TYPE IF EXISTS memberrole')
