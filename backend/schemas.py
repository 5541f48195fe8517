# schemas.py - Request / response models shared by services and routers
from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

from models import BoardVisibility, InvitationStatus, WorkspaceRole

MAX_INVITATIONS_PER_REQUEST = 5
WORKSPACE_NAME_PATTERN = r"^[a-zA-Z0-9]+(?: [a-zA-Z0-9]+)*$"
HEX_COLOR_PATTERN = r"^#(?:[0-9a-fA-F]{3}){1,2}$"


# ============================================================
# INVITATIONS
# ============================================================

class InvitationItem(BaseModel):
    email: EmailStr
    role: WorkspaceRole = WorkspaceRole.MEMBER

    @field_validator("email")
    @classmethod
    def normalise_email(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("role")
    @classmethod
    def reject_owner(cls, v: WorkspaceRole) -> WorkspaceRole:
        if v == WorkspaceRole.OWNER:
            raise ValueError("'OWNER' role is not allowed for invitation.")
        return v


class InviteMembersRequest(BaseModel):
    invitations: List[InvitationItem] = Field(..., min_length=1, max_length=MAX_INVITATIONS_PER_REQUEST)

    @model_validator(mode="after")
    def reject_duplicate_emails(self) -> "InviteMembersRequest":
        seen = set()
        dupes = []
        for item in self.invitations:
            if item.email in seen and item.email not in dupes:
                dupes.append(item.email)
            seen.add(item.email)
        if dupes:
            raise ValueError(f"Duplicate emails in request: {', '.join(dupes)}")
        return self


class IssuedInvitation(BaseModel):
    email: str
    token: str


class InvitationBatchResult(BaseModel):
    message: str = "Invitations successfully processed."
    invited: List[IssuedInvitation] = []
    refreshed: List[IssuedInvitation] = []
    failed_emails: List[str] = []


class AcceptResult(BaseModel):
    message: str
    workspace_id: str
    workspace_name: str
    slug: str


class TokenInfo(BaseModel):
    email: str
    workspace_name: str
    role: WorkspaceRole


class RemovalResult(BaseModel):
    message: str
    outcome: Literal["member_removed", "invitation_cancelled"]


class MemberEntry(BaseModel):
    """A current OWNER shown alongside invitations"""
    kind: Literal["member"] = "member"
    id: str
    user_id: str
    email: str
    role: WorkspaceRole = WorkspaceRole.OWNER
    status: InvitationStatus = InvitationStatus.CONSUMED
    created_at: datetime
    updated_at: Optional[datetime] = None
    expires_at: None = None


class InvitationEntry(BaseModel):
    kind: Literal["invitation"] = "invitation"
    id: str
    email: str
    role: WorkspaceRole
    status: InvitationStatus
    created_at: datetime
    updated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


InvitationListEntry = Annotated[Union[MemberEntry, InvitationEntry], Field(discriminator="kind")]


# ============================================================
# WORKSPACES
# ============================================================

class WorkspaceCreate(BaseModel):
    name: str = Field(..., min_length=3, max_length=100, pattern=WORKSPACE_NAME_PATTERN)
    description: Optional[str] = Field(default=None, max_length=250)


class WorkspaceUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=3, max_length=100, pattern=WORKSPACE_NAME_PATTERN)
    description: Optional[str] = Field(default=None, max_length=250)


class WorkspaceOut(BaseModel):
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class WorkspaceSummaryOut(WorkspaceOut):
    user_role: WorkspaceRole
    is_owner: bool
    member_count: int = 0


class WorkspaceMemberOut(BaseModel):
    user_id: str
    email: str
    username: str
    role: WorkspaceRole
    joined_at: Optional[datetime] = None


class WorkspaceDetailOut(WorkspaceOut):
    members: List[WorkspaceMemberOut] = []


# ============================================================
# BOARDS
# ============================================================

class BoardCreate(BaseModel):
    workspace_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=3, max_length=100)
    description: Optional[str] = Field(default=None, max_length=250)
    color: Optional[str] = Field(default=None, pattern=HEX_COLOR_PATTERN)
    visibility: BoardVisibility = BoardVisibility.WORKSPACE


class BoardUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=3, max_length=100)
    description: Optional[str] = Field(default=None, max_length=250)
    color: Optional[str] = Field(default=None, pattern=HEX_COLOR_PATTERN)
    visibility: Optional[BoardVisibility] = None


class BoardOut(BaseModel):
    id: str
    workspace_id: str
    name: str
    description: Optional[str] = None
    color: Optional[str] = None
    visibility: BoardVisibility
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class BoardMemberAdd(BaseModel):
    user_id: str = Field(..., min_length=1)


# ============================================================
# ACTIVITY
# ============================================================

class ActivityOut(BaseModel):
    id: str
    action: str
    description: str
    user_id: str
    workspace_id: Optional[str] = None
    board_id: Optional[str] = None
    metadata: dict = {}
    created_at: Optional[datetime] = None
