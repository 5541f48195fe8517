# models.py - Database models for Kanbanly workspaces
# - UUID string primary keys everywhere
# - Workspace owns its members, invitations and boards (cascading delete)
# - Invitation lifecycle: PENDING -> CONSUMED / EXPIRED / CANCELLED
# - Append-only activity trail (no FK to workspace/board so it outlives them)

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    Column, String, DateTime, JSON, Enum as SQLEnum, ForeignKey, Text, Index,
    UniqueConstraint, text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# ============================================================
# ENUMS
# ============================================================

class WorkspaceRole(str, PyEnum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"
    VIEWER = "VIEWER"


class InvitationStatus(str, PyEnum):
    PENDING = "PENDING"
    CONSUMED = "CONSUMED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class BoardVisibility(str, PyEnum):
    PUBLIC = "PUBLIC"
    WORKSPACE = "WORKSPACE"
    PRIVATE = "PRIVATE"


class ActivityType(str, PyEnum):
    # Workspace events
    WORKSPACE_CREATED = "WORKSPACE_CREATED"
    WORKSPACE_UPDATED = "WORKSPACE_UPDATED"
    WORKSPACE_DELETED = "WORKSPACE_DELETED"
    # Board events
    BOARD_CREATED = "BOARD_CREATED"
    BOARD_UPDATED = "BOARD_UPDATED"
    BOARD_DELETED = "BOARD_DELETED"
    BOARD_MEMBER_ADDED = "BOARD_MEMBER_ADDED"
    BOARD_MEMBER_REMOVED = "BOARD_MEMBER_REMOVED"
    # Membership events
    INVITATION_SENT = "INVITATION_SENT"
    INVITATION_REFRESHED = "INVITATION_REFRESHED"
    INVITATION_CANCELED = "INVITATION_CANCELED"
    MEMBER_ADDED = "MEMBER_ADDED"
    MEMBER_REMOVED = "MEMBER_REMOVED"


# ============================================================
# USERS
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    username = Column(String, unique=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    memberships = relationship("WorkspaceMember", back_populates="user")


# ============================================================
# WORKSPACES
# ============================================================

class Workspace(Base):
    __tablename__ = "workspaces"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String(100), nullable=False, index=True)
    slug = Column(String, unique=True, nullable=False, index=True)
    description = Column(String(250), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    members = relationship(
        "WorkspaceMember", back_populates="workspace", cascade="all, delete-orphan",
    )
    invitations = relationship(
        "WorkspaceInvitation", back_populates="workspace", cascade="all, delete-orphan",
    )
    boards = relationship("Board", back_populates="workspace", cascade="all, delete-orphan")


class WorkspaceMember(Base):
    __tablename__ = "workspace_members"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(
        String, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(SQLEnum(WorkspaceRole), nullable=False, default=WorkspaceRole.MEMBER)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    workspace = relationship("Workspace", back_populates="members")
    user = relationship("User", back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("workspace_id", "user_id", name="uq_workspace_member"),
        Index("idx_member_user_role", "user_id", "role"),
    )


class WorkspaceInvitation(Base):
    __tablename__ = "workspace_invitations"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(
        String, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    email = Column(String, nullable=False, index=True)
    role = Column(SQLEnum(WorkspaceRole), nullable=False, default=WorkspaceRole.MEMBER)
    token = Column(String(64), unique=True, nullable=False, index=True)
    status = Column(
        SQLEnum(InvitationStatus), nullable=False, default=InvitationStatus.PENDING, index=True,
    )
    invited_by_id = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    workspace = relationship("Workspace", back_populates="invitations")

    __table_args__ = (
        # Only one live (non-cancelled) invitation per email and workspace;
        # historical CANCELLED rows may pile up.
        Index(
            "uq_invitation_active_email", "workspace_id", "email",
            unique=True,
            postgresql_where=text("status <> 'CANCELLED'"),
            sqlite_where=text("status <> 'CANCELLED'"),
        ),
        Index("idx_invitation_ws_status", "workspace_id", "status"),
    )


# ============================================================
# BOARDS
# ============================================================

class Board(Base):
    __tablename__ = "boards"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(
        String, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    name = Column(String(100), nullable=False)
    description = Column(String(250), nullable=True)
    color = Column(String(7), nullable=True)
    visibility = Column(
        SQLEnum(BoardVisibility), nullable=False, default=BoardVisibility.WORKSPACE,
    )
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    workspace = relationship("Workspace", back_populates="boards")
    members = relationship("BoardMember", back_populates="board", cascade="all, delete-orphan")


class BoardMember(Base):
    __tablename__ = "board_members"

    id = Column(String, primary_key=True, default=new_uuid)
    board_id = Column(String, ForeignKey("boards.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    board = relationship("Board", back_populates="members")

    __table_args__ = (
        UniqueConstraint("board_id", "user_id", name="uq_board_member"),
    )


# ============================================================
# ACTIVITY (append-only)
# ============================================================

class Activity(Base):
    __tablename__ = "activities"

    id = Column(String, primary_key=True, default=new_uuid)
    action = Column(SQLEnum(ActivityType), nullable=False, index=True)
    description = Column(Text, nullable=False)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    workspace_id = Column(String, nullable=True, index=True)
    board_id = Column(String, nullable=True, index=True)
    card_id = Column(String, nullable=True)
    extra_data = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    __table_args__ = (
        Index("idx_activity_ws_created", "workspace_id", "created_at"),
    )
