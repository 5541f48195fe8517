# invitations.py - Workspace invitation lifecycle
#
#   (none)   --issue-->           PENDING
#   EXPIRED  --re-issue-->        PENDING   (same row, new token + expiry)
#   PENDING  --accept-->          CONSUMED  (member row created)
#   PENDING  --read after expiry->EXPIRED   (lazy, no audit)
#   PENDING/EXPIRED --cancel-->   CANCELLED
#   CONSUMED --member removed-->  CANCELLED
#
# CANCELLED is terminal. There is no timer: expiry is materialised when a list
# is read or when a re-issue touches the row.

import os
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional, Sequence, Union

from fastapi import Depends
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from access import MANAGERS, require_role
from activity_log import ActivityLog
from database import atomic
from email_service import EmailService, get_email_service
from errors import (
    AlreadyUsedError, BatchConflictError, ConflictError, ExpiredError, ForbiddenError, NotFoundError,
)
from models import (
    ActivityType, InvitationStatus, User, Workspace, WorkspaceInvitation, WorkspaceMember,
    WorkspaceRole, as_utc, utcnow,
)
from schemas import (
    AcceptResult, InvitationBatchResult, InvitationEntry, InvitationItem, IssuedInvitation,
    MemberEntry, RemovalResult, TokenInfo,
)

logger = logging.getLogger("kanbanly.invitations")

# ============================================================
# CONFIGURATION
# ============================================================

INVITATION_TTL_DAYS = int(os.getenv("INVITATION_TTL_DAYS", "3"))
TOKEN_BYTES = 32

ALLOWED_TRANSITIONS = {
    InvitationStatus.PENDING: {
        InvitationStatus.CONSUMED, InvitationStatus.EXPIRED, InvitationStatus.CANCELLED,
    },
    InvitationStatus.EXPIRED: {InvitationStatus.PENDING, InvitationStatus.CANCELLED},
    InvitationStatus.CONSUMED: {InvitationStatus.CANCELLED},
    InvitationStatus.CANCELLED: set(),
}

STATUS_ORDER = {
    InvitationStatus.CONSUMED: 0,
    InvitationStatus.PENDING: 1,
    InvitationStatus.EXPIRED: 2,
}
ROLE_ORDER = {
    WorkspaceRole.ADMIN: 1,
    WorkspaceRole.MEMBER: 2,
    WorkspaceRole.VIEWER: 3,
}
SORT_KEYS = ("status", "asc", "desc", "role")


def new_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def transition(invitation: WorkspaceInvitation, target: InvitationStatus) -> None:
    """Move an invitation to `target`, refusing moves the lifecycle does not allow"""
    current = InvitationStatus(invitation.status)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise ConflictError(
            f"Invitation cannot move from {current.value} to {target.value}.",
            status=current.value,
        )
    invitation.status = target
    invitation.updated_at = utcnow()


def is_expired(invitation: WorkspaceInvitation, now=None) -> bool:
    return as_utc(invitation.expires_at) < (now or utcnow())


@dataclass
class _BatchPlan:
    """Outcome of the validation pass, consumed by the execution pass"""
    refreshable: Dict[str, WorkspaceInvitation]


class InvitationService:
    """Issue, accept, cancel and list workspace invitations"""

    def __init__(self, email_service: Optional[EmailService] = None):
        self.email_service = email_service or get_email_service()

    # --------------------------------------------------------
    # Lookups
    # --------------------------------------------------------

    @staticmethod
    async def _member_by_email(db: AsyncSession, workspace_id: str, email: str) -> Optional[WorkspaceMember]:
        result = await db.execute(
            select(WorkspaceMember)
            .join(User, User.id == WorkspaceMember.user_id)
            .where(WorkspaceMember.workspace_id == workspace_id, func.lower(User.email) == email)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _live_invitation(db: AsyncSession, workspace_id: str, email: str) -> Optional[WorkspaceInvitation]:
        result = await db.execute(
            select(WorkspaceInvitation)
            .where(
                WorkspaceInvitation.workspace_id == workspace_id,
                WorkspaceInvitation.email == email,
                WorkspaceInvitation.status != InvitationStatus.CANCELLED,
            )
            .order_by(WorkspaceInvitation.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _by_token(db: AsyncSession, token: str):
        result = await db.execute(
            select(WorkspaceInvitation, Workspace)
            .join(Workspace, Workspace.id == WorkspaceInvitation.workspace_id)
            .where(WorkspaceInvitation.token == token)
        )
        row = result.first()
        if row is None:
            raise NotFoundError("Invitation not found.", resource="invitation")
        return row

    # --------------------------------------------------------
    # Issue
    # --------------------------------------------------------

    async def _validate_batch(
        self, db: AsyncSession, workspace_id: str, items: Sequence[InvitationItem],
    ) -> _BatchPlan:
        """Inspect every email before writing anything; report all conflicts at once"""
        now = utcnow()
        already_member: List[str] = []
        already_invited: List[str] = []
        refreshable: Dict[str, WorkspaceInvitation] = {}

        for item in items:
            if await self._member_by_email(db, workspace_id, item.email) is not None:
                already_member.append(item.email)

            invitation = await self._live_invitation(db, workspace_id, item.email)
            if invitation is None:
                continue
            status = InvitationStatus(invitation.status)
            if status == InvitationStatus.CONSUMED:
                already_invited.append(item.email)
            elif status == InvitationStatus.PENDING and not is_expired(invitation, now):
                already_invited.append(item.email)
            else:
                refreshable[item.email] = invitation

        if already_member or already_invited:
            logger.info(
                f"Invitation batch rejected for ws={workspace_id[:8]}: "
                f"members={already_member} invited={already_invited}"
            )
            raise BatchConflictError(already_member, already_invited)

        return _BatchPlan(refreshable=refreshable)

    async def issue_batch(
        self,
        db: AsyncSession,
        workspace_id: str,
        inviter: User,
        items: Sequence[InvitationItem],
    ) -> InvitationBatchResult:
        """Invite (or re-invite) a batch of emails: validate all, then write all"""
        inviter_membership = await require_role(db, workspace_id, inviter.id, MANAGERS, with_workspace=True)
        workspace = inviter_membership.workspace

        for item in items:
            if item.role == WorkspaceRole.OWNER:
                raise ConflictError("'OWNER' role is not allowed for invitation.", email=item.email)

        plan = await self._validate_batch(db, workspace_id, items)

        result = InvitationBatchResult()
        issued: List[IssuedInvitation] = []
        try:
            async with atomic(db):
                for item in items:
                    token = new_token()
                    expires_at = utcnow() + timedelta(days=INVITATION_TTL_DAYS)
                    cached = plan.refreshable.get(item.email)

                    if cached is not None:
                        if cached.status == InvitationStatus.PENDING:
                            transition(cached, InvitationStatus.EXPIRED)
                        transition(cached, InvitationStatus.PENDING)
                        cached.token = token
                        cached.expires_at = expires_at
                        cached.role = item.role
                        cached.invited_by_id = inviter.id
                        invitation = cached
                        action = ActivityType.INVITATION_REFRESHED
                        result.refreshed.append(IssuedInvitation(email=item.email, token=token))
                    else:
                        invitation = WorkspaceInvitation(
                            workspace_id=workspace_id,
                            email=item.email,
                            role=item.role,
                            token=token,
                            status=InvitationStatus.PENDING,
                            invited_by_id=inviter.id,
                            expires_at=expires_at,
                        )
                        db.add(invitation)
                        action = ActivityType.INVITATION_SENT
                        result.invited.append(IssuedInvitation(email=item.email, token=token))
                    await db.flush()

                    await ActivityLog.append(
                        db,
                        action,
                        inviter,
                        context={
                            "workspace_id": workspace_id,
                            "workspace_name": workspace.name,
                            "target_email": item.email,
                            "target_role": item.role.value,
                        },
                        metadata={
                            "invitation_id": invitation.id,
                            "receiver_email": item.email,
                            "receiver_role": item.role.value,
                            "workspace_id": workspace_id,
                            "workspace_name": workspace.name,
                            "workspace_slug": workspace.slug,
                        },
                    )
                    issued.append(IssuedInvitation(email=item.email, token=token))
        except IntegrityError as e:
            logger.warning(f"Concurrent invitation detected for ws={workspace_id[:8]}: {e.orig}")
            raise ConflictError(
                "Another invitation for one of these emails was issued at the same time.",
                emails=[item.email for item in items],
            ) from e

        logger.info(
            f"Invitations issued for ws={workspace_id[:8]}: "
            f"{len(result.invited)} new, {len(result.refreshed)} refreshed"
        )

        inviter_name = inviter.username or inviter.email
        for sent in issued:
            try:
                await self.email_service.send_workspace_invitation(
                    sent.email, inviter_name, workspace.name, sent.token,
                )
            except Exception as e:
                logger.warning(f"Invitation email to {sent.email} failed: {e}")
                result.failed_emails.append(sent.email)

        return result

    # --------------------------------------------------------
    # Accept / validate
    # --------------------------------------------------------

    async def accept(self, db: AsyncSession, token: str, user: User) -> AcceptResult:
        invitation, workspace = await self._by_token(db, token)

        if is_expired(invitation):
            raise ExpiredError(expires_at=as_utc(invitation.expires_at).isoformat())

        status = InvitationStatus(invitation.status)
        if status == InvitationStatus.CONSUMED:
            raise AlreadyUsedError(status=status.value)
        if status != InvitationStatus.PENDING:
            raise ConflictError("Invitation is no longer valid.", status=status.value)

        if invitation.email != user.email.lower():
            raise ForbiddenError("This invitation is not intended for your account.")

        existing = await db.execute(
            select(WorkspaceMember.id).where(
                WorkspaceMember.workspace_id == invitation.workspace_id,
                WorkspaceMember.user_id == user.id,
            )
        )
        if existing.scalar_one_or_none() is not None:
            raise ConflictError("You are already a member of this workspace.")

        try:
            async with atomic(db):
                db.add(WorkspaceMember(
                    workspace_id=invitation.workspace_id,
                    user_id=user.id,
                    role=invitation.role,
                ))
                transition(invitation, InvitationStatus.CONSUMED)
                await db.flush()

                await ActivityLog.append(
                    db,
                    ActivityType.MEMBER_ADDED,
                    user,
                    context={
                        "workspace_id": workspace.id,
                        "workspace_name": workspace.name,
                        "target_email": user.email,
                    },
                    metadata={
                        "joined_from_invitation": True,
                        "invitation_id": invitation.id,
                        "role": WorkspaceRole(invitation.role).value,
                        "workspace_id": workspace.id,
                        "workspace_name": workspace.name,
                        "workspace_slug": workspace.slug,
                    },
                )
        except IntegrityError as e:
            raise ConflictError("You are already a member of this workspace.") from e

        logger.info(f"User {user.id[:8]} joined ws={workspace.id[:8]} via invitation")
        return AcceptResult(
            message=f'You have successfully joined "{workspace.name}".',
            workspace_id=workspace.id,
            workspace_name=workspace.name,
            slug=workspace.slug,
        )

    async def validate_token(self, db: AsyncSession, token: str) -> TokenInfo:
        """Describe an invitation to an anonymous visitor holding its token"""
        invitation, workspace = await self._by_token(db, token)

        if is_expired(invitation):
            raise ExpiredError("Invitation token expired.", expires_at=as_utc(invitation.expires_at).isoformat())

        status = InvitationStatus(invitation.status)
        if status == InvitationStatus.CONSUMED:
            raise AlreadyUsedError(status=status.value)
        if status == InvitationStatus.CANCELLED:
            raise ConflictError("Invitation is no longer valid.", status=status.value)

        return TokenInfo(email=invitation.email, workspace_name=workspace.name, role=invitation.role)

    # --------------------------------------------------------
    # Cancel / remove
    # --------------------------------------------------------

    async def cancel_or_remove(
        self, db: AsyncSession, workspace_id: str, requester: User, target_email: str,
    ) -> RemovalResult:
        """Remove a non-owner member, or failing that cancel their open invitation"""
        membership = await require_role(db, workspace_id, requester.id, MANAGERS, with_workspace=True)
        workspace = membership.workspace
        email = target_email.strip().lower()

        if email == requester.email.lower():
            raise ConflictError("You cannot remove yourself.")

        result = await db.execute(
            select(WorkspaceMember, User)
            .join(User, User.id == WorkspaceMember.user_id)
            .where(
                WorkspaceMember.workspace_id == workspace_id,
                func.lower(User.email) == email,
                WorkspaceMember.role != WorkspaceRole.OWNER,
            )
        )
        row = result.first()

        if row is not None:
            member, target = row
            consumed = await db.execute(
                select(WorkspaceInvitation).where(
                    WorkspaceInvitation.workspace_id == workspace_id,
                    WorkspaceInvitation.email == email,
                    WorkspaceInvitation.status == InvitationStatus.CONSUMED,
                )
            )
            consumed_invitations = consumed.scalars().all()

            async with atomic(db):
                await db.delete(member)
                for invitation in consumed_invitations:
                    transition(invitation, InvitationStatus.CANCELLED)
                await db.flush()

                await ActivityLog.append(
                    db,
                    ActivityType.MEMBER_REMOVED,
                    requester,
                    context={
                        "workspace_id": workspace_id,
                        "workspace_name": workspace.name,
                        "target_email": target.email,
                    },
                    metadata={
                        "workspace_id": workspace_id,
                        "workspace_name": workspace.name,
                        "target_email": target.email,
                        "target_user_id": target.id,
                        "cancelled_invitations": [i.id for i in consumed_invitations],
                    },
                )

            logger.info(f"Member {target.id[:8]} removed from ws={workspace_id[:8]}")
            return RemovalResult(message="Member removed and invitation status updated.", outcome="member_removed")

        result = await db.execute(
            select(WorkspaceInvitation)
            .where(
                WorkspaceInvitation.workspace_id == workspace_id,
                WorkspaceInvitation.email == email,
                WorkspaceInvitation.status.in_([InvitationStatus.PENDING, InvitationStatus.EXPIRED]),
            )
            .order_by(WorkspaceInvitation.created_at.desc())
            .limit(1)
        )
        invitation = result.scalar_one_or_none()

        if invitation is not None:
            async with atomic(db):
                transition(invitation, InvitationStatus.CANCELLED)
                await db.flush()

                await ActivityLog.append(
                    db,
                    ActivityType.INVITATION_CANCELED,
                    requester,
                    context={
                        "workspace_id": workspace_id,
                        "workspace_name": workspace.name,
                        "target_email": invitation.email,
                    },
                    metadata={
                        "invitation_id": invitation.id,
                        "workspace_id": workspace_id,
                        "workspace_name": workspace.name,
                        "target_email": invitation.email,
                    },
                )

            logger.info(f"Invitation {invitation.id[:8]} cancelled in ws={workspace_id[:8]}")
            return RemovalResult(message="Invitation canceled.", outcome="invitation_cancelled")

        raise NotFoundError("Member or invitation not found.", resource="member_or_invitation")

    # --------------------------------------------------------
    # Listing
    # --------------------------------------------------------

    async def expire_stale(self, db: AsyncSession, workspace_id: Optional[str] = None) -> int:
        """Flip overdue PENDING invitations to EXPIRED; silent bookkeeping"""
        stmt = (
            update(WorkspaceInvitation)
            .where(
                WorkspaceInvitation.status == InvitationStatus.PENDING,
                WorkspaceInvitation.expires_at < utcnow(),
            )
            .values(status=InvitationStatus.EXPIRED)
            .execution_options(synchronize_session="fetch")
        )
        if workspace_id is not None:
            stmt = stmt.where(WorkspaceInvitation.workspace_id == workspace_id)

        async with atomic(db):
            result = await db.execute(stmt)
        count = result.rowcount or 0
        if count:
            logger.debug(f"Expired {count} stale invitation(s)")
        return count

    async def list_all(
        self, db: AsyncSession, workspace_id: str, requester: User, sort_by: str = "status",
    ) -> List[Union[MemberEntry, InvitationEntry]]:
        """Owners first, then live invitations (pending, expired, or consumed by a current member)"""
        await require_role(db, workspace_id, requester.id, MANAGERS)
        await self.expire_stale(db, workspace_id)

        result = await db.execute(
            select(WorkspaceMember, User)
            .join(User, User.id == WorkspaceMember.user_id)
            .where(WorkspaceMember.workspace_id == workspace_id)
            .order_by(WorkspaceMember.created_at.asc())
        )
        members = result.all()
        active_emails = {user.email.lower() for _, user in members}

        owners = [
            MemberEntry(
                id=f"owner-{member.user_id}",
                user_id=member.user_id,
                email=user.email,
                created_at=as_utc(member.created_at),
                updated_at=as_utc(member.updated_at),
            )
            for member, user in members
            if member.role == WorkspaceRole.OWNER
        ]

        result = await db.execute(
            select(WorkspaceInvitation)
            .where(
                WorkspaceInvitation.workspace_id == workspace_id,
                WorkspaceInvitation.status != InvitationStatus.CANCELLED,
            )
            .order_by(WorkspaceInvitation.created_at.asc())
        )
        entries = [
            InvitationEntry(
                id=inv.id,
                email=inv.email,
                role=inv.role,
                status=inv.status,
                created_at=as_utc(inv.created_at),
                updated_at=as_utc(inv.updated_at),
                expires_at=as_utc(inv.expires_at),
            )
            for inv in result.scalars().all()
            if inv.status != InvitationStatus.CONSUMED or inv.email in active_emails
        ]

        if sort_by == "status":
            entries.sort(key=lambda e: STATUS_ORDER.get(e.status, 99))
        elif sort_by == "asc":
            entries.sort(key=lambda e: e.created_at)
        elif sort_by == "desc":
            entries.sort(key=lambda e: e.created_at, reverse=True)
        elif sort_by == "role":
            entries.sort(key=lambda e: ROLE_ORDER.get(e.role, 99))

        return [*owners, *entries]


def get_invitation_service(email_service: EmailService = Depends(get_email_service)) -> InvitationService:
    """Dependency factory (FastAPI Depends)"""
    return InvitationService(email_service)
