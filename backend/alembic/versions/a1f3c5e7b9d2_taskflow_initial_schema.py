"""TaskFlow initial schema: organisations, teams, projects, tasks, history

Revision ID: a1f3c5e7b9d2
Revises:
Create Date: 2026-10-18 00:00:00.000000

Tables:
- organizations, organization_admins
- users (pending users carry an invitation token and no password)
- teams, team_members
- projects, project_members (columns stored as ordered JSON list)
- tasks, task_assignees (integer version column for compare-and-swap)
- task_history (append-only)
"""
from alembic import op
import sqlalchemy as sa

revision = 'a1f3c5e7b9d2'
down_revision = None
branch_labels = None
depends_on = None

# Enum columns store member names, matching the ORM's SQLEnum(PyEnum) mapping
user_role = sa.Enum('SUPER_ADMIN', 'ORG_ADMIN', 'TEAM_LEAD', 'MEMBER', 'VIEWER', name='userrole')
user_status = sa.Enum('ACTIVE', 'INACTIVE', 'PENDING', 'SUSPENDED', name='userstatus')
team_role = sa.Enum('LEAD', 'MEMBER', 'VIEWER', name='teamrole')
project_role = sa.Enum('ADMIN', 'MEMBER', 'VIEWER', name='projectrole')
project_visibility = sa.Enum('PRIVATE', 'TEAM', 'ORGANIZATION', 'PUBLIC', name='projectvisibility')
task_priority = sa.Enum('LOW', 'MEDIUM', 'HIGH', 'CRITICAL', name='taskpriority')
history_action = sa.Enum(
    'CREATED', 'UPDATED', 'STATUS_CHANGED', 'PRIORITY_CHANGED', 'ASSIGNED', 'UNASSIGNED',
    'DUE_DATE_CHANGED', 'START_DATE_CHANGED', 'TAG_ADDED', 'TAG_REMOVED',
    'DESCRIPTION_UPDATED', 'TITLE_UPDATED', 'DELETED',
    name='historyaction',
)


def upgrade() -> None:
    # ---- organizations ----
    op.create_table(
        'organizations',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('slug', sa.String(), nullable=False),
        sa.Column('owner_id', sa.String(), nullable=False),
        sa.Column('settings', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), default=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_organizations_name', 'organizations', ['name'])
    op.create_index('ix_organizations_slug', 'organizations', ['slug'], unique=True)
    op.create_index('ix_organizations_owner_id', 'organizations', ['owner_id'])
    op.create_index('ix_organizations_is_active', 'organizations', ['is_active'])

    # ---- users ----
    op.create_table(
        'users',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('display_name', sa.String(), nullable=False),
        sa.Column('password_hash', sa.String(), nullable=True),
        sa.Column('role', user_role, nullable=False),
        sa.Column('status', user_status, nullable=False),
        sa.Column('organization_id', sa.String(), sa.ForeignKey('organizations.id'), nullable=True),
        sa.Column('invitation_token', sa.String(), nullable=True),
        sa.Column('invited_by', sa.String(), nullable=True),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('invitation_token'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_role', 'users', ['role'])
    op.create_index('ix_users_status', 'users', ['status'])
    op.create_index('ix_users_organization_id', 'users', ['organization_id'])
    op.create_index('ix_users_created_at', 'users', ['created_at'])

    # ---- organization_admins ----
    op.create_table(
        'organization_admins',
        sa.Column('organization_id', sa.String(), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.PrimaryKeyConstraint('organization_id', 'user_id'),
    )

    # ---- teams ----
    op.create_table(
        'teams',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('organization_id', sa.String(), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('lead_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_by', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('is_active', sa.Boolean(), default=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('organization_id', 'name', name='uq_team_org_name'),
    )
    op.create_index('ix_teams_organization_id', 'teams', ['organization_id'])
    op.create_index('ix_teams_lead_id', 'teams', ['lead_id'])
    op.create_index('ix_teams_is_active', 'teams', ['is_active'])

    # ---- team_members ----
    op.create_table(
        'team_members',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('team_id', sa.String(), sa.ForeignKey('teams.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role', team_role, nullable=False),
        sa.Column('joined_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('team_id', 'user_id', name='uq_team_member'),
    )
    op.create_index('ix_team_members_team_id', 'team_members', ['team_id'])
    op.create_index('ix_team_members_user_id', 'team_members', ['user_id'])

    # ---- projects ----
    op.create_table(
        'projects',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('organization_id', sa.String(), sa.ForeignKey('organizations.id'), nullable=True),
        sa.Column('team_id', sa.String(), sa.ForeignKey('teams.id'), nullable=True),
        sa.Column('visibility', project_visibility, nullable=False),
        sa.Column('created_by', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('columns', sa.JSON(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('is_active', sa.Boolean(), default=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_projects_organization_id', 'projects', ['organization_id'])
    op.create_index('ix_projects_team_id', 'projects', ['team_id'])
    op.create_index('ix_projects_created_by', 'projects', ['created_by'])
    op.create_index('ix_projects_is_active', 'projects', ['is_active'])

    # ---- project_members ----
    op.create_table(
        'project_members',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('project_id', sa.String(), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role', project_role, nullable=False),
        sa.Column('added_at', sa.DateTime(timezone=True)),
        sa.Column('added_by', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('project_id', 'user_id', name='uq_project_member'),
    )
    op.create_index('ix_project_members_project_id', 'project_members', ['project_id'])
    op.create_index('ix_project_members_user_id', 'project_members', ['user_id'])

    # ---- tasks ----
    op.create_table(
        'tasks',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='todo'),
        sa.Column('priority', task_priority, nullable=False),
        sa.Column('project_id', sa.String(), sa.ForeignKey('projects.id'), nullable=True),
        sa.Column('created_by', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('tags', sa.JSON(), nullable=False),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('is_active', sa.Boolean(), default=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tasks_status', 'tasks', ['status'])
    op.create_index('ix_tasks_project_id', 'tasks', ['project_id'])
    op.create_index('ix_tasks_created_by', 'tasks', ['created_by'])
    op.create_index('ix_tasks_is_active', 'tasks', ['is_active'])
    op.create_index('ix_tasks_created_at', 'tasks', ['created_at'])
    op.create_index('idx_task_project_status', 'tasks', ['project_id', 'status'])

    # ---- task_assignees ----
    op.create_table(
        'task_assignees',
        sa.Column('task_id', sa.String(), sa.ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.PrimaryKeyConstraint('task_id', 'user_id'),
    )

    # ---- task_history ----
    op.create_table(
        'task_history',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('task_id', sa.String(), sa.ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False),
        sa.Column('action', history_action, nullable=False),
        sa.Column('field_name', sa.String(), nullable=True),
        sa.Column('old_value', sa.JSON(), nullable=True),
        sa.Column('new_value', sa.JSON(), nullable=True),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('user_name', sa.String(), nullable=True),
        sa.Column('extra_data', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_task_history_task_id', 'task_history', ['task_id'])
    op.create_index('ix_task_history_action', 'task_history', ['action'])
    op.create_index('ix_task_history_user_id', 'task_history', ['user_id'])
    op.create_index('ix_task_history_created_at', 'task_history', ['created_at'])
    op.create_index('idx_task_history_task_created', 'task_history', ['task_id', 'created_at'])


def downgrade() -> None:
    op.drop_table('task_history')
    op.drop_table('task_assignees')
    op.drop_table('tasks')
    op.drop_table('project_members')
    op.drop_table('projects')
    op.drop_table('team_members')
    op.drop_table('teams')
    op.drop_table('organization_admins')
    op.drop_table('users')
    op.drop_table('organizations')
    for enum in (history_action, task_priority, project_visibility, project_role,
                 team_role, user_status, user_role):
        enum.drop(op.get_bind(), checkfirst=True)
