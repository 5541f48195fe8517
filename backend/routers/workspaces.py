# routers/workspaces.py - Workspaces, their activity feed and member invitations
from typing import List, Literal

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from activity_log import ActivityLog
from auth import get_current_user
from database import get_db_session
from invitations import InvitationService, get_invitation_service
from memberships import MembershipService
from models import User, Workspace, as_utc
from schemas import (
    ActivityOut, InvitationBatchResult, InvitationListEntry, InviteMembersRequest, RemovalResult,
    WorkspaceCreate, WorkspaceDetailOut, WorkspaceOut, WorkspaceSummaryOut, WorkspaceUpdate,
)

router = APIRouter(prefix="/api/v1/workspaces", tags=["Workspaces"])


def _workspace_out(ws: Workspace) -> WorkspaceOut:
    return WorkspaceOut(
        id=ws.id,
        name=ws.name,
        slug=ws.slug,
        description=ws.description,
        created_at=as_utc(ws.created_at),
        updated_at=as_utc(ws.updated_at),
    )


# ============================================================
# WORKSPACES
# ============================================================

@router.post("", response_model=WorkspaceOut, status_code=201)
async def create_workspace(
    body: WorkspaceCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a workspace owned by the caller"""
    workspace = await MembershipService.create_workspace(db, user, body.name, body.description)
    return _workspace_out(workspace)


@router.get("", response_model=List[WorkspaceSummaryOut])
async def list_workspaces(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Workspaces the caller belongs to, owned ones first"""
    return await MembershipService.list_workspaces(db, user)


@router.get("/{workspace_id}", response_model=WorkspaceDetailOut)
async def get_workspace(
    workspace_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    return await MembershipService.get_workspace(db, workspace_id, user)


@router.patch("/{workspace_id}", response_model=WorkspaceOut)
async def update_workspace(
    workspace_id: str,
    body: WorkspaceUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    workspace = await MembershipService.update_workspace(db, workspace_id, user, body)
    return _workspace_out(workspace)


@router.delete("/{workspace_id}", status_code=204)
async def delete_workspace(
    workspace_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a workspace with its members, invitations and boards (owner only)"""
    await MembershipService.remove_workspace(db, workspace_id, user)
    return Response(status_code=204)


@router.get("/{workspace_id}/activities", response_model=List[ActivityOut])
async def list_activities(
    workspace_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    activities = await ActivityLog.list_for_workspace(db, workspace_id, user, limit=limit)
    return [
        ActivityOut(
            id=a.id,
            action=a.action.value,
            description=a.description,
            user_id=a.user_id,
            workspace_id=a.workspace_id,
            board_id=a.board_id,
            metadata=a.extra_data or {},
            created_at=as_utc(a.created_at),
        )
        for a in activities
    ]


# ============================================================
# INVITATIONS
# ============================================================

@router.post("/{workspace_id}/invitations", response_model=InvitationBatchResult, status_code=201)
async def invite_members(
    workspace_id: str,
    body: InviteMembersRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    service: InvitationService = Depends(get_invitation_service),
):
    """Invite up to five emails at once; any conflict rejects the whole batch"""
    return await service.issue_batch(db, workspace_id, user, body.invitations)


@router.get("/{workspace_id}/invitations", response_model=List[InvitationListEntry])
async def list_invitations(
    workspace_id: str,
    sort_by: Literal["status", "asc", "desc", "role"] = Query(default="status"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    service: InvitationService = Depends(get_invitation_service),
):
    return await service.list_all(db, workspace_id, user, sort_by=sort_by)


@router.delete("/{workspace_id}/invitations/{email}", response_model=RemovalResult)
async def remove_member_or_invitation(
    workspace_id: str,
    email: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    service: InvitationService = Depends(get_invitation_service),
):
    """Remove a member by email, or cancel their pending/expired invitation"""
    return await service.cancel_or_remove(db, workspace_id, user, email)
