"""Subtasks: per-task checklist items and their history actions

Revision ID: c4e8a2d6f1b3
Revises: a1f3c5e7b9d2
Create Date: 2026-10-18 12:00:00.000000

Tables:
- subtasks (ordered within the parent task, own version column)

Enums:
- historyaction gains SUBTASK_ADDED, SUBTASK_UPDATED, SUBTASK_COMPLETED, SUBTASK_DELETED
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = 'c4e8a2d6f1b3'
down_revision = 'a1f3c5e7b9d2'
branch_labels = None
depends_on = None

NEW_HISTORY_ACTIONS = ('SUBTASK_ADDED', 'SUBTASK_UPDATED', 'SUBTASK_COMPLETED', 'SUBTASK_DELETED')

subtask_status = sa.Enum('TODO', 'IN_PROGRESS', 'DONE', name='subtaskstatus')
# Created by the initial revision
task_priority = postgresql.ENUM('LOW', 'MEDIUM', 'HIGH', 'CRITICAL', name='taskpriority', create_type=False)


def upgrade() -> None:
    if op.get_bind().dialect.name == 'postgresql':
        # ALTER TYPE ... ADD VALUE cannot share a transaction with its first use
        with op.get_context().autocommit_block():
            for value in NEW_HISTORY_ACTIONS:
                op.execute(f"ALTER TYPE historyaction ADD VALUE IF NOT EXISTS '{value}'")

    op.create_table(
        'subtasks',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('parent_task_id', sa.String(), sa.ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', subtask_status, nullable=False),
        sa.Column('priority', task_priority, nullable=False),
        sa.Column('assigned_to', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('estimated_hours', sa.Float(), nullable=True),
        sa.Column('actual_hours', sa.Float(), nullable=True),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_by', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('tags', sa.JSON(), nullable=False),
        sa.Column('order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_subtasks_parent_task_id', 'subtasks', ['parent_task_id'])
    op.create_index('ix_subtasks_status', 'subtasks', ['status'])
    op.create_index('ix_subtasks_assigned_to', 'subtasks', ['assigned_to'])
    op.create_index('idx_subtask_parent_order', 'subtasks', ['parent_task_id', 'order'])


def downgrade() -> None:
    op.drop_table('subtasks')
    subtask_status.drop(op.get_bind(), checkfirst=True)
    # PostgreSQL cannot drop enum values; the extra historyaction labels stay
