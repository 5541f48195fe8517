# memberships.py - Workspace and board membership management
# Features:
# - Owned-workspace and per-workspace board quotas
# - Per-user workspace name uniqueness, globally unique slugs
# - PRIVATE board membership
# - Field-level diffs recorded on every update

import os
import re
import logging
import secrets
from typing import List, Optional

from sqlalchemy import and_, exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from access import MANAGERS, OWNERS_ONLY, check_board_access, require_membership, require_role
from activity_log import ActivityLog
from database import atomic
from diff_utils import build_field_diff, snapshot
from errors import ConflictError, FatalError, NotFoundError, QuotaExceededError
from models import (
    ActivityType, Board, BoardMember, BoardVisibility, User, Workspace, WorkspaceMember,
    WorkspaceRole, as_utc,
)
from schemas import (
    BoardCreate, BoardUpdate, WorkspaceDetailOut, WorkspaceMemberOut, WorkspaceSummaryOut,
    WorkspaceUpdate,
)

logger = logging.getLogger("kanbanly.memberships")

# ============================================================
# CONFIGURATION
# ============================================================

MAX_OWNED_WORKSPACES = int(os.getenv("MAX_OWNED_WORKSPACES", "10"))
MAX_BOARDS_PER_WORKSPACE = int(os.getenv("MAX_BOARDS_PER_WORKSPACE", "10"))
SLUG_MAX_ATTEMPTS = int(os.getenv("SLUG_MAX_ATTEMPTS", "5"))

ROLE_PRIORITY = {
    WorkspaceRole.OWNER: 1,
    WorkspaceRole.ADMIN: 2,
    WorkspaceRole.MEMBER: 3,
    WorkspaceRole.VIEWER: 4,
}

# Columns a board update may touch; non-nullable ones ignore explicit nulls.
_BOARD_FIELDS = ("name", "description", "color", "visibility")
_NON_NULLABLE = {"name", "visibility"}


# ============================================================
# SLUGS
# ============================================================

def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug[:80] or "workspace"


async def unique_slug(db: AsyncSession, name: str, workspace_id: Optional[str] = None) -> str:
    """Slug for `name`, suffixed with random hex until free.

    A slug already held by `workspace_id` counts as free. Gives up with
    FatalError after SLUG_MAX_ATTEMPTS suffixed candidates.
    """
    base = slugify(name)
    candidate = base
    for attempt in range(SLUG_MAX_ATTEMPTS + 1):
        result = await db.execute(select(Workspace.id).where(Workspace.slug == candidate))
        holder = result.scalar_one_or_none()
        if holder is None or holder == workspace_id:
            return candidate
        candidate = f"{base}-{secrets.token_hex(2)}"
    logger.error(f"Slug generation exhausted for {base!r}")
    raise FatalError("Could not generate a unique slug.")


# ============================================================
# MEMBERSHIP SERVICE
# ============================================================

class MembershipService:
    """Workspace and board lifecycle, gated by workspace role"""

    # --------------------------------------------------------
    # Workspaces
    # --------------------------------------------------------

    @staticmethod
    async def _name_taken(
        db: AsyncSession, user_id: str, name: str, exclude_id: Optional[str] = None,
    ) -> bool:
        stmt = (
            select(Workspace.id)
            .join(WorkspaceMember, WorkspaceMember.workspace_id == Workspace.id)
            .where(WorkspaceMember.user_id == user_id, Workspace.name == name)
        )
        if exclude_id is not None:
            stmt = stmt.where(Workspace.id != exclude_id)
        result = await db.execute(stmt.limit(1))
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def create_workspace(
        db: AsyncSession, owner: User, name: str, description: Optional[str] = None,
    ) -> Workspace:
        result = await db.execute(
            select(func.count(WorkspaceMember.id)).where(
                WorkspaceMember.user_id == owner.id,
                WorkspaceMember.role == WorkspaceRole.OWNER,
            )
        )
        owned = result.scalar() or 0
        if owned >= MAX_OWNED_WORKSPACES:
            raise QuotaExceededError(
                f"Workspace limit reached (max {MAX_OWNED_WORKSPACES}).", limit=MAX_OWNED_WORKSPACES,
            )

        if await MembershipService._name_taken(db, owner.id, name):
            raise ConflictError("You already have a workspace with this name.")

        slug = await unique_slug(db, name)

        async with atomic(db):
            workspace = Workspace(name=name, slug=slug, description=description)
            db.add(workspace)
            await db.flush()

            db.add(WorkspaceMember(
                workspace_id=workspace.id,
                user_id=owner.id,
                role=WorkspaceRole.OWNER,
            ))
            await db.flush()

            await ActivityLog.append(
                db,
                ActivityType.WORKSPACE_CREATED,
                owner,
                context={"workspace_id": workspace.id, "workspace_name": workspace.name},
                metadata={
                    "workspace_id": workspace.id,
                    "workspace_name": workspace.name,
                    "description": workspace.description,
                },
            )

        logger.info(f"Workspace created: {workspace.slug} by user={owner.id[:8]}")
        return workspace

    @staticmethod
    async def list_workspaces(db: AsyncSession, user: User) -> List[WorkspaceSummaryOut]:
        """Every workspace the user belongs to, owned first, newest first within a role"""
        counts = (
            select(
                WorkspaceMember.workspace_id.label("workspace_id"),
                func.count(WorkspaceMember.id).label("member_count"),
            )
            .group_by(WorkspaceMember.workspace_id)
            .subquery()
        )
        result = await db.execute(
            select(Workspace, WorkspaceMember.role, counts.c.member_count)
            .join(WorkspaceMember, WorkspaceMember.workspace_id == Workspace.id)
            .join(counts, counts.c.workspace_id == Workspace.id)
            .where(WorkspaceMember.user_id == user.id)
        )
        rows = result.all()

        rows = sorted(rows, key=lambda r: as_utc(r[0].created_at), reverse=True)
        rows = sorted(rows, key=lambda r: ROLE_PRIORITY[WorkspaceRole(r[1])])

        return [
            WorkspaceSummaryOut(
                id=ws.id,
                name=ws.name,
                slug=ws.slug,
                description=ws.description,
                created_at=as_utc(ws.created_at),
                updated_at=as_utc(ws.updated_at),
                user_role=role,
                is_owner=role == WorkspaceRole.OWNER,
                member_count=member_count or 0,
            )
            for ws, role, member_count in rows
        ]

    @staticmethod
    async def get_workspace(db: AsyncSession, workspace_id: str, user: User) -> WorkspaceDetailOut:
        await require_membership(db, workspace_id, user.id)

        result = await db.execute(
            select(Workspace)
            .where(Workspace.id == workspace_id)
            .options(selectinload(Workspace.members).selectinload(WorkspaceMember.user))
        )
        workspace = result.scalar_one_or_none()
        if workspace is None:
            raise NotFoundError("Workspace not found.", resource="workspace")

        members = sorted(workspace.members, key=lambda m: ROLE_PRIORITY[WorkspaceRole(m.role)])
        return WorkspaceDetailOut(
            id=workspace.id,
            name=workspace.name,
            slug=workspace.slug,
            description=workspace.description,
            created_at=as_utc(workspace.created_at),
            updated_at=as_utc(workspace.updated_at),
            members=[
                WorkspaceMemberOut(
                    user_id=m.user_id,
                    email=m.user.email,
                    username=m.user.username,
                    role=m.role,
                    joined_at=as_utc(m.created_at),
                )
                for m in members
            ],
        )

    @staticmethod
    async def update_workspace(
        db: AsyncSession, workspace_id: str, user: User, changes: WorkspaceUpdate,
    ) -> Workspace:
        membership = await require_role(db, workspace_id, user.id, MANAGERS, with_workspace=True)
        workspace = membership.workspace

        data = changes.model_dump(exclude_unset=True)
        if data.get("name") is None:
            data.pop("name", None)
        fields = list(data.keys())

        if "name" in data:
            if await MembershipService._name_taken(db, user.id, data["name"], exclude_id=workspace_id):
                raise ConflictError("You already have a workspace with this name.")
            data["slug"] = await unique_slug(db, data["name"], workspace_id)
            fields.append("slug")

        before = snapshot(workspace, fields)

        async with atomic(db):
            for key, value in data.items():
                setattr(workspace, key, value)
            await db.flush()

            diff = build_field_diff(before, snapshot(workspace, fields), fields)
            await ActivityLog.append(
                db,
                ActivityType.WORKSPACE_UPDATED,
                user,
                context={"workspace_id": workspace.id, "workspace_name": workspace.name},
                metadata={"field_changes": diff, "workspace_id": workspace.id},
            )

        logger.info(f"Workspace {workspace_id[:8]} updated: {sorted(diff)}")
        return workspace

    @staticmethod
    async def remove_workspace(db: AsyncSession, workspace_id: str, user: User) -> None:
        membership = await require_role(db, workspace_id, user.id, OWNERS_ONLY, with_workspace=True)
        workspace = membership.workspace

        async with atomic(db):
            await ActivityLog.append(
                db,
                ActivityType.WORKSPACE_DELETED,
                user,
                context={"workspace_id": workspace.id, "workspace_name": workspace.name},
                metadata={
                    "workspace_id": workspace.id,
                    "workspace_name": workspace.name,
                    "workspace_slug": workspace.slug,
                },
            )
            await db.delete(workspace)

        logger.info(f"Workspace deleted: {workspace.slug} by user={user.id[:8]}")

    # --------------------------------------------------------
    # Boards
    # --------------------------------------------------------

    @staticmethod
    async def create_board(db: AsyncSession, user: User, data: BoardCreate) -> Board:
        membership = await require_role(db, data.workspace_id, user.id, MANAGERS, with_workspace=True)

        result = await db.execute(
            select(func.count(Board.id)).where(Board.workspace_id == data.workspace_id)
        )
        if (result.scalar() or 0) >= MAX_BOARDS_PER_WORKSPACE:
            raise QuotaExceededError(
                f"Board limit reached (max {MAX_BOARDS_PER_WORKSPACE}).", limit=MAX_BOARDS_PER_WORKSPACE,
            )

        async with atomic(db):
            board = Board(
                workspace_id=data.workspace_id,
                name=data.name,
                description=data.description,
                color=data.color,
                visibility=data.visibility,
            )
            db.add(board)
            await db.flush()

            if board.visibility == BoardVisibility.PRIVATE:
                db.add(BoardMember(board_id=board.id, user_id=user.id))
                await db.flush()

            await ActivityLog.append(
                db,
                ActivityType.BOARD_CREATED,
                user,
                context={
                    "workspace_id": board.workspace_id,
                    "workspace_name": membership.workspace.name,
                    "board_id": board.id,
                    "board_name": board.name,
                },
                metadata={
                    "id": board.id,
                    "name": board.name,
                    "description": board.description,
                    "color": board.color,
                    "visibility": BoardVisibility(board.visibility).value,
                },
            )

        logger.info(f"Board created: {board.id[:8]} in ws={board.workspace_id[:8]}")
        return board

    @staticmethod
    async def list_boards(db: AsyncSession, workspace_id: str, user: User) -> List[Board]:
        await require_membership(db, workspace_id, user.id)

        is_board_member = exists().where(
            BoardMember.board_id == Board.id,
            BoardMember.user_id == user.id,
        )
        result = await db.execute(
            select(Board)
            .where(
                Board.workspace_id == workspace_id,
                or_(
                    Board.visibility.in_([BoardVisibility.WORKSPACE, BoardVisibility.PUBLIC]),
                    and_(Board.visibility == BoardVisibility.PRIVATE, is_board_member),
                ),
            )
            .order_by(Board.created_at.asc())
        )
        return list(result.scalars().all())

    @staticmethod
    async def get_board(db: AsyncSession, board_id: str, user: User) -> Board:
        return await check_board_access(db, board_id, user.id)

    @staticmethod
    async def update_board(db: AsyncSession, board_id: str, user: User, changes: BoardUpdate) -> Board:
        board = await check_board_access(db, board_id, user.id)
        await require_role(db, board.workspace_id, user.id, MANAGERS)

        data = {
            key: value
            for key, value in changes.model_dump(exclude_unset=True).items()
            if key in _BOARD_FIELDS and not (key in _NON_NULLABLE and value is None)
        }
        fields = list(data.keys())
        before = snapshot(board, fields)

        async with atomic(db):
            for key, value in data.items():
                setattr(board, key, value)
            await db.flush()

            diff = build_field_diff(before, snapshot(board, fields), fields)
            await ActivityLog.append(
                db,
                ActivityType.BOARD_UPDATED,
                user,
                context={
                    "workspace_id": board.workspace_id,
                    "board_id": board.id,
                    "board_name": board.name,
                },
                metadata={
                    "field_changes": diff,
                    "board_id": board.id,
                    "workspace_id": board.workspace_id,
                },
            )

        return board

    @staticmethod
    async def remove_board(db: AsyncSession, board_id: str, user: User) -> None:
        board = await check_board_access(db, board_id, user.id)
        await require_role(db, board.workspace_id, user.id, MANAGERS)

        async with atomic(db):
            await ActivityLog.append(
                db,
                ActivityType.BOARD_DELETED,
                user,
                context={
                    "workspace_id": board.workspace_id,
                    "board_id": board.id,
                    "board_name": board.name,
                },
                metadata={
                    "board_id": board.id,
                    "board_name": board.name,
                    "workspace_id": board.workspace_id,
                },
            )
            await db.delete(board)

        logger.info(f"Board deleted: {board_id[:8]} by user={user.id[:8]}")

    # --------------------------------------------------------
    # Board members
    # --------------------------------------------------------

    @staticmethod
    async def _load_board(db: AsyncSession, board_id: str) -> Board:
        result = await db.execute(select(Board).where(Board.id == board_id))
        board = result.scalar_one_or_none()
        if board is None:
            raise NotFoundError("Board not found.", resource="board")
        return board

    @staticmethod
    async def add_board_member(db: AsyncSession, board_id: str, requester: User, user_id: str) -> BoardMember:
        board = await MembershipService._load_board(db, board_id)
        await require_role(db, board.workspace_id, requester.id, MANAGERS)

        result = await db.execute(
            select(User)
            .join(WorkspaceMember, WorkspaceMember.user_id == User.id)
            .where(WorkspaceMember.workspace_id == board.workspace_id, User.id == user_id)
        )
        target = result.scalar_one_or_none()
        if target is None:
            raise NotFoundError("User is not a member of this workspace.", resource="workspace_member")

        result = await db.execute(
            select(BoardMember.id).where(BoardMember.board_id == board_id, BoardMember.user_id == user_id)
        )
        if result.scalar_one_or_none() is not None:
            raise ConflictError("User is already a member of this board.")

        async with atomic(db):
            member = BoardMember(board_id=board_id, user_id=user_id)
            db.add(member)
            await db.flush()

            await ActivityLog.append(
                db,
                ActivityType.BOARD_MEMBER_ADDED,
                requester,
                context={
                    "workspace_id": board.workspace_id,
                    "board_id": board.id,
                    "board_name": board.name,
                    "target_username": target.username,
                },
                metadata={"board_id": board.id, "target_user_id": target.id},
            )

        return member

    @staticmethod
    async def remove_board_member(db: AsyncSession, board_id: str, requester: User, user_id: str) -> None:
        board = await MembershipService._load_board(db, board_id)
        await require_role(db, board.workspace_id, requester.id, MANAGERS)

        result = await db.execute(
            select(BoardMember, User)
            .join(User, User.id == BoardMember.user_id)
            .where(BoardMember.board_id == board_id, BoardMember.user_id == user_id)
        )
        row = result.first()
        if row is None:
            raise NotFoundError("Board member not found.", resource="board_member")
        member, target = row

        async with atomic(db):
            await db.delete(member)
            await ActivityLog.append(
                db,
                ActivityType.BOARD_MEMBER_REMOVED,
                requester,
                context={
                    "workspace_id": board.workspace_id,
                    "board_id": board.id,
                    "board_name": board.name,
                    "target_username": target.username,
                },
                metadata={"board_id": board.id, "target_user_id": target.id},
            )
