"""Workspaces, members, invitations, boards and the activity trail

Revision ID: a1f4c7d2e9b3
Revises:
Create Date: 2026-10-17T09:12:44.518203
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision: str = 'a1f4c7d2e9b3'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

workspace_role = postgresql.ENUM(
    'OWNER', 'ADMIN', 'MEMBER', 'VIEWER', name='workspacerole', create_type=False,
)
invitation_status = postgresql.ENUM(
    'PENDING', 'CONSUMED', 'EXPIRED', 'CANCELLED', name='invitationstatus', create_type=False,
)
board_visibility = postgresql.ENUM(
    'PUBLIC', 'WORKSPACE', 'PRIVATE', name='boardvisibility', create_type=False,
)
activity_type = postgresql.ENUM(
    'WORKSPACE_CREATED', 'WORKSPACE_UPDATED', 'WORKSPACE_DELETED',
    'BOARD_CREATED', 'BOARD_UPDATED', 'BOARD_DELETED',
    'BOARD_MEMBER_ADDED', 'BOARD_MEMBER_REMOVED',
    'INVITATION_SENT', 'INVITATION_REFRESHED', 'INVITATION_CANCELED',
    'MEMBER_ADDED', 'MEMBER_REMOVED',
    name='activitytype', create_type=False,
)


def upgrade() -> None:
    bind = op.get_bind()
    for enum in (workspace_role, invitation_status, board_visibility, activity_type):
        enum.create(bind, checkfirst=True)

    # --- users ---
    op.create_table(
        'users',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('username', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_username', 'users', ['username'], unique=True)

    # --- workspaces ---
    op.create_table(
        'workspaces',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('slug', sa.String(), nullable=False),
        sa.Column('description', sa.String(length=250), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_workspaces_name', 'workspaces', ['name'])
    op.create_index('ix_workspaces_slug', 'workspaces', ['slug'], unique=True)

    # --- workspace_members ---
    op.create_table(
        'workspace_members',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('workspace_id', sa.String(), sa.ForeignKey('workspaces.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role', workspace_role, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('workspace_id', 'user_id', name='uq_workspace_member'),
    )
    op.create_index('ix_workspace_members_workspace_id', 'workspace_members', ['workspace_id'])
    op.create_index('ix_workspace_members_user_id', 'workspace_members', ['user_id'])
    op.create_index('idx_member_user_role', 'workspace_members', ['user_id', 'role'])

    # --- workspace_invitations ---
    op.create_table(
        'workspace_invitations',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('workspace_id', sa.String(), sa.ForeignKey('workspaces.id', ondelete='CASCADE'), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('role', workspace_role, nullable=False),
        sa.Column('token', sa.String(length=64), nullable=False),
        sa.Column('status', invitation_status, nullable=False),
        sa.Column('invited_by_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_workspace_invitations_workspace_id', 'workspace_invitations', ['workspace_id'])
    op.create_index('ix_workspace_invitations_email', 'workspace_invitations', ['email'])
    op.create_index('ix_workspace_invitations_token', 'workspace_invitations', ['token'], unique=True)
    op.create_index('ix_workspace_invitations_status', 'workspace_invitations', ['status'])
    op.create_index('idx_invitation_ws_status', 'workspace_invitations', ['workspace_id', 'status'])
    # One live invitation per (workspace, email); CANCELLED history is unrestricted
    op.create_index(
        'uq_invitation_active_email', 'workspace_invitations', ['workspace_id', 'email'],
        unique=True,
        postgresql_where=sa.text("status <> 'CANCELLED'"),
    )

    # --- boards ---
    op.create_table(
        'boards',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('workspace_id', sa.String(), sa.ForeignKey('workspaces.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('description', sa.String(length=250), nullable=True),
        sa.Column('color', sa.String(length=7), nullable=True),
        sa.Column('visibility', board_visibility, nullable=False, server_default='WORKSPACE'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_boards_workspace_id', 'boards', ['workspace_id'])

    # --- board_members ---
    op.create_table(
        'board_members',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('board_id', sa.String(), sa.ForeignKey('boards.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('board_id', 'user_id', name='uq_board_member'),
    )
    op.create_index('ix_board_members_board_id', 'board_members', ['board_id'])
    op.create_index('ix_board_members_user_id', 'board_members', ['user_id'])

    # --- activities (append-only, no FK to workspace/board) ---
    op.create_table(
        'activities',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('action', activity_type, nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('workspace_id', sa.String(), nullable=True),
        sa.Column('board_id', sa.String(), nullable=True),
        sa.Column('card_id', sa.String(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_activities_action', 'activities', ['action'])
    op.create_index('ix_activities_user_id', 'activities', ['user_id'])
    op.create_index('ix_activities_workspace_id', 'activities', ['workspace_id'])
    op.create_index('ix_activities_board_id', 'activities', ['board_id'])
    op.create_index('ix_activities_created_at', 'activities', ['created_at'])
    op.create_index('idx_activity_ws_created', 'activities', ['workspace_id', 'created_at'])


def downgrade() -> None:
    op.drop_table('activities')
    op.drop_table('board_members')
    op.drop_table('boards')
    op.drop_table('workspace_invitations')
    op.drop_table('workspace_members')
    op.drop_table('workspaces')
    op.drop_table('users')
    op.execute("DROP TYPE IF EXISTS activitytype")
    op.execute("DROP TYPE IF EXISTS boardvisibility")
    op.execute("DROP TYPE IF EXISTS invitationstatus")
    op.execute("DROP TYPE IF EXISTS workspacerole")
