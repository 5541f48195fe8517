# access.py - Workspace membership, role allow-lists and board visibility checks
#
# Roles are matched against an explicit allow-list per operation; there is no
# hierarchy, so OWNER only passes where OWNER is listed.

from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from errors import AccessDeniedError, InsufficientRoleError, NotFoundError, NotMemberError
from models import Board, BoardMember, BoardVisibility, WorkspaceMember, WorkspaceRole

MANAGERS = (WorkspaceRole.OWNER, WorkspaceRole.ADMIN)
OWNERS_ONLY = (WorkspaceRole.OWNER,)
ALL_ROLES = tuple(WorkspaceRole)


async def _find_member(
    db: AsyncSession, workspace_id: str, user_id: str, with_workspace: bool = False,
) -> Optional[WorkspaceMember]:
    stmt = select(WorkspaceMember).where(
        WorkspaceMember.workspace_id == workspace_id,
        WorkspaceMember.user_id == user_id,
    )
    if with_workspace:
        stmt = stmt.options(selectinload(WorkspaceMember.workspace))
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def require_membership(
    db: AsyncSession, workspace_id: str, user_id: str, with_workspace: bool = False,
) -> WorkspaceMember:
    """Return the caller's member row or fail with NotMemberError"""
    member = await _find_member(db, workspace_id, user_id, with_workspace)
    if member is None:
        raise NotMemberError()
    return member


async def require_role(
    db: AsyncSession,
    workspace_id: str,
    user_id: str,
    allowed_roles: Iterable[WorkspaceRole],
    with_workspace: bool = False,
) -> WorkspaceMember:
    """Membership check plus a literal allow-list on the member's role.

    With ``with_workspace`` the member's workspace (id, name, slug) is loaded
    so callers can describe the workspace without another lookup.
    """
    allowed = tuple(allowed_roles)
    member = await require_membership(db, workspace_id, user_id, with_workspace)
    if WorkspaceRole(member.role) not in allowed:
        raise InsufficientRoleError(required_roles=allowed, current_role=member.role)
    return member


async def check_board_access(db: AsyncSession, board_id: str, user_id: str) -> Board:
    """PUBLIC -> anyone; WORKSPACE -> workspace members; PRIVATE -> board members.

    PUBLIC returns before any membership lookup and the board-member row is
    only consulted once workspace membership has been established.
    """
    result = await db.execute(select(Board).where(Board.id == board_id))
    board = result.scalar_one_or_none()
    if board is None:
        raise NotFoundError("Board not found.", resource="board")

    if board.visibility == BoardVisibility.PUBLIC:
        return board

    await require_membership(db, board.workspace_id, user_id)

    if board.visibility == BoardVisibility.WORKSPACE:
        return board

    if board.visibility == BoardVisibility.PRIVATE:
        result = await db.execute(
            select(BoardMember.id).where(
                BoardMember.board_id == board_id,
                BoardMember.user_id == user_id,
            )
        )
        if result.scalar_one_or_none() is not None:
            return board

    raise AccessDeniedError()
