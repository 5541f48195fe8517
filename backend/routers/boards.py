# routers/boards.py - Boards and PRIVATE board membership
from typing import List

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user
from database import get_db_session
from memberships import MembershipService
from models import Board, User, as_utc
from schemas import BoardCreate, BoardMemberAdd, BoardOut, BoardUpdate

router = APIRouter(prefix="/api/v1/boards", tags=["Boards"])


def _board_out(board: Board) -> BoardOut:
    return BoardOut(
        id=board.id,
        workspace_id=board.workspace_id,
        name=board.name,
        description=board.description,
        color=board.color,
        visibility=board.visibility,
        created_at=as_utc(board.created_at),
        updated_at=as_utc(board.updated_at),
    )


@router.post("", response_model=BoardOut, status_code=201)
async def create_board(
    body: BoardCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    board = await MembershipService.create_board(db, user, body)
    return _board_out(board)


@router.get("", response_model=List[BoardOut])
async def list_boards(
    workspace_id: str = Query(..., min_length=1),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Boards of a workspace visible to the caller, oldest first"""
    boards = await MembershipService.list_boards(db, workspace_id, user)
    return [_board_out(b) for b in boards]


@router.get("/{board_id}", response_model=BoardOut)
async def get_board(
    board_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    board = await MembershipService.get_board(db, board_id, user)
    return _board_out(board)


@router.patch("/{board_id}", response_model=BoardOut)
async def update_board(
    board_id: str,
    body: BoardUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    board = await MembershipService.update_board(db, board_id, user, body)
    return _board_out(board)


@router.delete("/{board_id}", status_code=204)
async def delete_board(
    board_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await MembershipService.remove_board(db, board_id, user)
    return Response(status_code=204)


@router.post("/{board_id}/members", status_code=201)
async def add_board_member(
    board_id: str,
    body: BoardMemberAdd,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    member = await MembershipService.add_board_member(db, board_id, user, body.user_id)
    return {"board_id": member.board_id, "user_id": member.user_id}


@router.delete("/{board_id}/members/{user_id}", status_code=204)
async def remove_board_member(
    board_id: str,
    user_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await MembershipService.remove_board_member(db, board_id, user, user_id)
    return Response(status_code=204)
