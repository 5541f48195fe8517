# routers/invitations.py - Token-based invitation endpoints
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user
from database import get_db_session
from invitations import InvitationService, get_invitation_service
from models import User
from schemas import AcceptResult, TokenInfo

router = APIRouter(prefix="/api/v1/invitations", tags=["Invitations"])


@router.get("/validate", response_model=TokenInfo)
async def validate_invitation(
    token: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db_session),
    service: InvitationService = Depends(get_invitation_service),
):
    """Public: describe the invitation behind a token before the visitor signs in"""
    return await service.validate_token(db, token)


@router.patch("/accept/{token}", response_model=AcceptResult)
async def accept_invitation(
    token: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    service: InvitationService = Depends(get_invitation_service),
):
    return await service.accept(db, token, user)
