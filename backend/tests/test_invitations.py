# tests/test_invitations.py - Invitation lifecycle service tests
from datetime import timedelta

import pytest
from pydantic import ValidationError
from sqlalchemy import func, select

from errors import (
    AlreadyUsedError, BatchConflictError, ConflictError, ExpiredError, ForbiddenError,
    InsufficientRoleError, NotFoundError, NotMemberError,
)
from invitations import ALLOWED_TRANSITIONS, _BatchPlan, transition
from models import (
    Activity, ActivityType, InvitationStatus, WorkspaceInvitation, WorkspaceMember, WorkspaceRole,
    utcnow,
)
from schemas import InvitationEntry, InvitationItem, InviteMembersRequest, MemberEntry
from tests.conftest import expire_invitation, make_user


def _items(*emails, role=WorkspaceRole.MEMBER):
    return [InvitationItem(email=email, role=role) for email in emails]


async def _invitations(db, workspace_id, email):
    result = await db.execute(
        select(WorkspaceInvitation)
        .where(WorkspaceInvitation.workspace_id == workspace_id, WorkspaceInvitation.email == email)
        .order_by(WorkspaceInvitation.created_at)
    )
    return result.scalars().all()


async def _count(db, model, *criteria):
    result = await db.execute(select(func.count(model.id)).where(*criteria))
    return result.scalar()


async def _activity_count(db, action):
    return await _count(db, Activity, Activity.action == action)


# ============================================================
# SCENARIO
# ============================================================

@pytest.mark.asyncio
async def test_invitation_lifecycle_scenario(db_session, invitation_service, owner, workspace, outbox):
    """Issue, conflict, refresh after expiry, accept, then remove"""
    ws_id = workspace.id

    result = await invitation_service.issue_batch(db_session, ws_id, owner, _items("a@x.com", "b@x.com"))
    assert [i.email for i in result.invited] == ["a@x.com", "b@x.com"]
    assert result.refreshed == []
    assert result.failed_emails == []
    assert result.invited[0].token != result.invited[1].token
    assert len(result.invited[0].token) == 64
    assert await _activity_count(db_session, ActivityType.INVITATION_SENT) == 2
    assert [m["to"] for m in outbox.sent] == ["a@x.com", "b@x.com"]

    # Re-inviting before expiry conflicts and writes nothing
    invitations_before = await _count(db_session, WorkspaceInvitation)
    activities_before = await _count(db_session, Activity)
    with pytest.raises(BatchConflictError) as exc:
        await invitation_service.issue_batch(db_session, ws_id, owner, _items("a@x.com"))
    assert exc.value.already_invited == ["a@x.com"]
    assert exc.value.already_member == []
    assert exc.value.status_code == 409
    assert await _count(db_session, WorkspaceInvitation) == invitations_before
    assert await _count(db_session, Activity) == activities_before

    # Once expired, re-inviting refreshes the same row with a new token
    [original] = await _invitations(db_session, ws_id, "a@x.com")
    original_id, old_token = original.id, original.token
    await expire_invitation(db_session, original_id)

    result = await invitation_service.issue_batch(db_session, ws_id, owner, _items("a@x.com"))
    assert result.invited == []
    assert [r.email for r in result.refreshed] == ["a@x.com"]
    [refreshed] = await _invitations(db_session, ws_id, "a@x.com")
    assert refreshed.id == original_id
    assert refreshed.token == result.refreshed[0].token
    assert refreshed.token != old_token
    assert refreshed.status == InvitationStatus.PENDING
    assert await _activity_count(db_session, ActivityType.INVITATION_REFRESHED) == 1
    with pytest.raises(NotFoundError):
        await invitation_service.validate_token(db_session, old_token)

    # The invitee accepts
    anna = await make_user(db_session, "anna", "a@x.com")
    accepted = await invitation_service.accept(db_session, refreshed.token, anna)
    assert accepted.workspace_id == ws_id
    assert accepted.workspace_name == "Acme Team"
    assert accepted.slug == workspace.slug
    assert refreshed.status == InvitationStatus.CONSUMED
    member = (await db_session.execute(
        select(WorkspaceMember).where(WorkspaceMember.workspace_id == ws_id, WorkspaceMember.user_id == anna.id)
    )).scalar_one()
    assert member.role == WorkspaceRole.MEMBER
    assert await _activity_count(db_session, ActivityType.MEMBER_ADDED) == 1

    # The owner removes her again
    removal = await invitation_service.cancel_or_remove(db_session, ws_id, owner, "a@x.com")
    assert removal.outcome == "member_removed"
    assert await db_session.get(WorkspaceMember, member.id) is None
    assert refreshed.status == InvitationStatus.CANCELLED
    assert await _activity_count(db_session, ActivityType.MEMBER_REMOVED) == 1

    # With the old invitation cancelled, the email can be invited afresh
    result = await invitation_service.issue_batch(db_session, ws_id, owner, _items("a@x.com"))
    assert [i.email for i in result.invited] == ["a@x.com"]
    assert result.refreshed == []
    old_row, new_row = await _invitations(db_session, ws_id, "a@x.com")
    assert old_row.id == original_id
    assert old_row.status == InvitationStatus.CANCELLED
    assert new_row.id != original_id
    assert new_row.status == InvitationStatus.PENDING
    assert new_row.token == result.invited[0].token


# ============================================================
# ISSUE
# ============================================================

@pytest.mark.asyncio
async def test_batch_conflict_reports_every_offender(db_session, invitation_service, owner, member_user, workspace):
    """All conflicting emails are reported together and nothing is written"""
    await invitation_service.issue_batch(db_session, workspace.id, owner, _items("x@y.com"))
    before = await _count(db_session, WorkspaceInvitation)

    with pytest.raises(BatchConflictError) as exc:
        await invitation_service.issue_batch(
            db_session, workspace.id, owner, _items(member_user.email, "x@y.com", "fresh@y.com"),
        )

    err = exc.value
    assert err.already_member == [member_user.email]
    assert err.already_invited == ["x@y.com"]
    assert err.emails == [member_user.email, "x@y.com"]
    assert err.detail["error"] == "batch_conflict"
    assert await _count(db_session, WorkspaceInvitation) == before
    assert await _invitations(db_session, workspace.id, "fresh@y.com") == []


@pytest.mark.asyncio
async def test_consumed_invitation_blocks_reinvite_after_expiry(db_session, invitation_service, owner, workspace):
    """A consumed invitation stays active as long as the invitee is a member"""
    result = await invitation_service.issue_batch(db_session, workspace.id, owner, _items("joiner@x.com"))
    joiner = await make_user(db_session, "joiner", "joiner@x.com")
    await invitation_service.accept(db_session, result.invited[0].token, joiner)

    [invitation] = await _invitations(db_session, workspace.id, "joiner@x.com")
    await expire_invitation(db_session, invitation.id)

    with pytest.raises(BatchConflictError) as exc:
        await invitation_service.issue_batch(db_session, workspace.id, owner, _items("joiner@x.com"))
    assert exc.value.already_member == ["joiner@x.com"]
    assert exc.value.already_invited == ["joiner@x.com"]
    assert exc.value.emails == ["joiner@x.com"]


@pytest.mark.asyncio
async def test_admin_can_invite_with_role(db_session, invitation_service, admin_user, workspace):
    result = await invitation_service.issue_batch(
        db_session, workspace.id, admin_user, _items("viewer@x.com", role=WorkspaceRole.VIEWER),
    )
    [invitation] = await _invitations(db_session, workspace.id, "viewer@x.com")
    assert invitation.role == WorkspaceRole.VIEWER
    assert invitation.invited_by_id == admin_user.id
    assert invitation.token == result.invited[0].token


@pytest.mark.asyncio
async def test_member_cannot_invite(db_session, invitation_service, member_user, workspace):
    with pytest.raises(InsufficientRoleError) as exc:
        await invitation_service.issue_batch(db_session, workspace.id, member_user, _items("z@x.com"))
    assert exc.value.current_role == "MEMBER"
    assert exc.value.required_roles == ["OWNER", "ADMIN"]
    assert exc.value.status_code == 403


@pytest.mark.asyncio
async def test_outsider_cannot_see_workspace(db_session, invitation_service, outsider, workspace):
    with pytest.raises(NotMemberError) as exc:
        await invitation_service.issue_batch(db_session, workspace.id, outsider, _items("z@x.com"))
    assert exc.value.status_code == 404


@pytest.mark.asyncio
async def test_owner_role_checked_after_membership(db_session, invitation_service, owner, outsider, workspace):
    """Non-members learn nothing about the workspace, even from an invalid role"""
    owner_item = [InvitationItem.model_construct(email="boss@x.com", role=WorkspaceRole.OWNER)]

    with pytest.raises(NotMemberError):
        await invitation_service.issue_batch(db_session, workspace.id, outsider, owner_item)
    with pytest.raises(ConflictError):
        await invitation_service.issue_batch(db_session, workspace.id, owner, owner_item)
    assert await _invitations(db_session, workspace.id, "boss@x.com") == []


@pytest.mark.asyncio
async def test_mixed_case_account_email(db_session, invitation_service, owner, workspace):
    """Accounts registered with capitals are matched case-insensitively everywhere"""
    ws_id = workspace.id
    result = await invitation_service.issue_batch(db_session, ws_id, owner, _items("Eve@X.com"))
    assert [i.email for i in result.invited] == ["eve@x.com"]

    eve = await make_user(db_session, "eve", "Eve@X.com")
    eve_id = eve.id
    await invitation_service.accept(db_session, result.invited[0].token, eve)

    entries = await invitation_service.list_all(db_session, ws_id, owner)
    listed = {e.email: e.status for e in entries[1:]}
    assert listed == {"eve@x.com": InvitationStatus.CONSUMED}

    with pytest.raises(BatchConflictError) as exc:
        await invitation_service.issue_batch(db_session, ws_id, owner, _items("eve@x.com"))
    assert exc.value.already_member == ["eve@x.com"]
    assert exc.value.already_invited == ["eve@x.com"]

    removal = await invitation_service.cancel_or_remove(db_session, ws_id, owner, "EVE@x.com")
    assert removal.outcome == "member_removed"
    assert await _count(
        db_session, WorkspaceMember,
        WorkspaceMember.workspace_id == ws_id, WorkspaceMember.user_id == eve_id,
    ) == 0
    [cancelled] = await _invitations(db_session, ws_id, "eve@x.com")
    assert cancelled.status == InvitationStatus.CANCELLED

    result = await invitation_service.issue_batch(db_session, ws_id, owner, _items("eve@x.com"))
    assert [i.email for i in result.invited] == ["eve@x.com"]


@pytest.mark.asyncio
async def test_email_failure_does_not_roll_back(db_session, invitation_service, owner, workspace, outbox):
    """Undeliverable invitations are reported but stay persisted"""
    outbox.fail_for.add("b@x.com")

    result = await invitation_service.issue_batch(db_session, workspace.id, owner, _items("a@x.com", "b@x.com"))

    assert result.failed_emails == ["b@x.com"]
    assert [i.email for i in result.invited] == ["a@x.com", "b@x.com"]
    [failed] = await _invitations(db_session, workspace.id, "b@x.com")
    assert failed.status == InvitationStatus.PENDING
    assert await _activity_count(db_session, ActivityType.INVITATION_SENT) == 2


@pytest.mark.asyncio
async def test_concurrent_issue_caught_by_unique_index(db_session, invitation_service, owner, workspace, monkeypatch):
    """If validation is raced, the active-invitation index turns the write into a conflict"""
    ws_id = workspace.id
    owner_id = owner.id
    await invitation_service.issue_batch(db_session, ws_id, owner, _items("race@x.com"))

    async def stale_validation(db, workspace_id, items):
        return _BatchPlan(refreshable={})

    monkeypatch.setattr(invitation_service, "_validate_batch", stale_validation)

    with pytest.raises(ConflictError) as exc:
        await invitation_service.issue_batch(db_session, ws_id, owner, _items("race@x.com"))
    assert exc.value.code == "conflict"
    assert exc.value.extra["emails"] == ["race@x.com"]

    assert await _count(db_session, WorkspaceInvitation, WorkspaceInvitation.email == "race@x.com") == 1
    assert await _count(
        db_session, Activity, Activity.action == ActivityType.INVITATION_SENT, Activity.user_id == owner_id,
    ) == 1


def test_owner_role_rejected_by_schema():
    with pytest.raises(ValidationError):
        InvitationItem(email="boss@x.com", role=WorkspaceRole.OWNER)


def test_request_rejects_duplicates_and_oversized_batches():
    with pytest.raises(ValidationError):
        InviteMembersRequest(invitations=[{"email": "a@x.com"}, {"email": "A@x.com"}])
    with pytest.raises(ValidationError):
        InviteMembersRequest(invitations=[{"email": f"u{i}@x.com"} for i in range(6)])
    with pytest.raises(ValidationError):
        InviteMembersRequest(invitations=[])

    request = InviteMembersRequest(invitations=[{"email": "Mixed@X.com"}])
    assert request.invitations[0].email == "mixed@x.com"
    assert request.invitations[0].role == WorkspaceRole.MEMBER


# ============================================================
# STATE MACHINE
# ============================================================

def test_cancelled_is_terminal():
    assert ALLOWED_TRANSITIONS[InvitationStatus.CANCELLED] == set()
    invitation = WorkspaceInvitation(status=InvitationStatus.CANCELLED)
    for target in InvitationStatus:
        with pytest.raises(ConflictError):
            transition(invitation, target)
    assert invitation.status == InvitationStatus.CANCELLED


def test_consumed_can_only_be_cancelled():
    invitation = WorkspaceInvitation(status=InvitationStatus.CONSUMED)
    with pytest.raises(ConflictError):
        transition(invitation, InvitationStatus.PENDING)
    transition(invitation, InvitationStatus.CANCELLED)
    assert invitation.status == InvitationStatus.CANCELLED


# ============================================================
# ACCEPT / VALIDATE
# ============================================================

@pytest.mark.asyncio
async def test_accept_expired_fails_regardless_of_status(db_session, invitation_service, owner, workspace):
    result = await invitation_service.issue_batch(db_session, workspace.id, owner, _items("late@x.com"))
    token = result.invited[0].token
    late = await make_user(db_session, "late", "late@x.com")
    [invitation] = await _invitations(db_session, workspace.id, "late@x.com")

    await expire_invitation(db_session, invitation.id)
    with pytest.raises(ExpiredError) as exc:
        await invitation_service.accept(db_session, token, late)
    assert exc.value.status_code == 410
    assert "expires_at" in exc.value.detail

    for status in (InvitationStatus.CONSUMED, InvitationStatus.EXPIRED, InvitationStatus.CANCELLED):
        invitation.status = status
        await db_session.commit()
        with pytest.raises(ExpiredError):
            await invitation_service.accept(db_session, token, late)


@pytest.mark.asyncio
async def test_accept_requires_matching_email(db_session, invitation_service, owner, outsider, workspace):
    result = await invitation_service.issue_batch(db_session, workspace.id, owner, _items("someone@x.com"))

    with pytest.raises(ForbiddenError):
        await invitation_service.accept(db_session, result.invited[0].token, outsider)

    [invitation] = await _invitations(db_session, workspace.id, "someone@x.com")
    assert invitation.status == InvitationStatus.PENDING


@pytest.mark.asyncio
async def test_accept_twice_is_already_used(db_session, invitation_service, owner, workspace):
    result = await invitation_service.issue_batch(db_session, workspace.id, owner, _items("twice@x.com"))
    user = await make_user(db_session, "twice", "twice@x.com")
    await invitation_service.accept(db_session, result.invited[0].token, user)

    with pytest.raises(AlreadyUsedError):
        await invitation_service.accept(db_session, result.invited[0].token, user)


@pytest.mark.asyncio
async def test_accept_unknown_and_cancelled_tokens(db_session, invitation_service, owner, workspace):
    with pytest.raises(NotFoundError):
        await invitation_service.accept(db_session, "0" * 64, owner)

    result = await invitation_service.issue_batch(db_session, workspace.id, owner, _items("gone@x.com"))
    await invitation_service.cancel_or_remove(db_session, workspace.id, owner, "gone@x.com")
    gone = await make_user(db_session, "gone", "gone@x.com")

    with pytest.raises(ConflictError) as exc:
        await invitation_service.accept(db_session, result.invited[0].token, gone)
    assert exc.value.code == "conflict"
    assert exc.value.detail["status"] == "CANCELLED"


@pytest.mark.asyncio
async def test_accept_when_already_member(db_session, invitation_service, owner, member_user, workspace):
    """An invitation slipped in for an existing member cannot be accepted"""
    invitation = WorkspaceInvitation(
        workspace_id=workspace.id,
        email=member_user.email,
        role=WorkspaceRole.VIEWER,
        token="f" * 64,
        status=InvitationStatus.PENDING,
        invited_by_id=owner.id,
        expires_at=utcnow() + timedelta(days=1),
    )
    db_session.add(invitation)
    await db_session.commit()

    with pytest.raises(ConflictError) as exc:
        await invitation_service.accept(db_session, "f" * 64, member_user)
    assert exc.value.message == "You are already a member of this workspace."


@pytest.mark.asyncio
async def test_validate_token(db_session, invitation_service, owner, workspace):
    result = await invitation_service.issue_batch(
        db_session, workspace.id, owner, _items("peek@x.com", role=WorkspaceRole.ADMIN),
    )
    token = result.invited[0].token

    info = await invitation_service.validate_token(db_session, token)
    assert info.email == "peek@x.com"
    assert info.workspace_name == "Acme Team"
    assert info.role == WorkspaceRole.ADMIN

    peek = await make_user(db_session, "peek", "peek@x.com")
    await invitation_service.accept(db_session, token, peek)
    with pytest.raises(AlreadyUsedError):
        await invitation_service.validate_token(db_session, token)

    [invitation] = await _invitations(db_session, workspace.id, "peek@x.com")
    await expire_invitation(db_session, invitation.id)
    with pytest.raises(ExpiredError):
        await invitation_service.validate_token(db_session, token)


# ============================================================
# CANCEL / REMOVE
# ============================================================

@pytest.mark.asyncio
async def test_cancel_pending_invitation_then_reinvite(db_session, invitation_service, owner, workspace):
    await invitation_service.issue_batch(db_session, workspace.id, owner, _items("maybe@x.com"))

    removal = await invitation_service.cancel_or_remove(db_session, workspace.id, owner, "Maybe@X.com")
    assert removal.outcome == "invitation_cancelled"
    [cancelled] = await _invitations(db_session, workspace.id, "maybe@x.com")
    assert cancelled.status == InvitationStatus.CANCELLED
    assert await _activity_count(db_session, ActivityType.INVITATION_CANCELED) == 1

    result = await invitation_service.issue_batch(db_session, workspace.id, owner, _items("maybe@x.com"))
    assert [i.email for i in result.invited] == ["maybe@x.com"]
    rows = await _invitations(db_session, workspace.id, "maybe@x.com")
    assert len(rows) == 2
    assert rows[1].id != cancelled.id
    assert rows[1].status == InvitationStatus.PENDING


@pytest.mark.asyncio
async def test_cancel_expired_invitation(db_session, invitation_service, owner, workspace):
    await invitation_service.issue_batch(db_session, workspace.id, owner, _items("old@x.com"))
    [invitation] = await _invitations(db_session, workspace.id, "old@x.com")
    await expire_invitation(db_session, invitation.id)
    await invitation_service.expire_stale(db_session, workspace.id)
    assert invitation.status == InvitationStatus.EXPIRED

    removal = await invitation_service.cancel_or_remove(db_session, workspace.id, owner, "old@x.com")
    assert removal.outcome == "invitation_cancelled"
    assert invitation.status == InvitationStatus.CANCELLED


@pytest.mark.asyncio
async def test_remove_member_without_invitation(db_session, invitation_service, admin_user, member_user, workspace):
    removal = await invitation_service.cancel_or_remove(db_session, workspace.id, admin_user, member_user.email)
    assert removal.outcome == "member_removed"
    assert await _count(
        db_session, WorkspaceMember,
        WorkspaceMember.workspace_id == workspace.id, WorkspaceMember.user_id == member_user.id,
    ) == 0


@pytest.mark.asyncio
async def test_self_removal_rejected(db_session, invitation_service, admin_user, workspace):
    with pytest.raises(ConflictError):
        await invitation_service.cancel_or_remove(db_session, workspace.id, admin_user, admin_user.email.upper())


@pytest.mark.asyncio
async def test_owner_cannot_be_removed(db_session, invitation_service, owner, admin_user, workspace):
    with pytest.raises(NotFoundError):
        await invitation_service.cancel_or_remove(db_session, workspace.id, admin_user, owner.email)
    assert await _count(
        db_session, WorkspaceMember,
        WorkspaceMember.workspace_id == workspace.id, WorkspaceMember.role == WorkspaceRole.OWNER,
    ) == 1


@pytest.mark.asyncio
async def test_member_cannot_remove_others(db_session, invitation_service, member_user, admin_user, workspace):
    with pytest.raises(InsufficientRoleError):
        await invitation_service.cancel_or_remove(db_session, workspace.id, member_user, admin_user.email)


# ============================================================
# LISTING
# ============================================================

@pytest.mark.asyncio
async def test_list_all_filters_and_sweeps(db_session, invitation_service, owner, workspace):
    ws_id = workspace.id
    await invitation_service.issue_batch(
        db_session, ws_id, owner, _items("stale@x.com", "dropped@x.com", "left@x.com", "stays@x.com"),
    )
    [stale] = await _invitations(db_session, ws_id, "stale@x.com")
    await expire_invitation(db_session, stale.id)
    await invitation_service.cancel_or_remove(db_session, ws_id, owner, "dropped@x.com")

    result = await db_session.execute(select(WorkspaceInvitation).where(WorkspaceInvitation.email == "left@x.com"))
    left_token = result.scalar_one().token
    leaver = await make_user(db_session, "leaver", "left@x.com")
    await invitation_service.accept(db_session, left_token, leaver)
    await invitation_service.cancel_or_remove(db_session, ws_id, owner, "left@x.com")

    stayer = await make_user(db_session, "stayer", "stays@x.com")
    [stays] = await _invitations(db_session, ws_id, "stays@x.com")
    await invitation_service.accept(db_session, stays.token, stayer)

    activities_before = await _count(db_session, Activity)
    entries = await invitation_service.list_all(db_session, ws_id, owner)

    assert isinstance(entries[0], MemberEntry)
    assert entries[0].email == owner.email
    assert entries[0].status == InvitationStatus.CONSUMED
    assert entries[0].expires_at is None

    listed = {e.email: e for e in entries[1:]}
    assert set(listed) == {"stale@x.com", "stays@x.com"}
    assert all(isinstance(e, InvitationEntry) for e in entries[1:])
    assert listed["stale@x.com"].status == InvitationStatus.EXPIRED
    assert listed["stays@x.com"].status == InvitationStatus.CONSUMED
    assert "token" not in entries[1].model_dump()

    # The sweep is silent bookkeeping
    assert await _count(db_session, Activity) == activities_before
    assert stale.status == InvitationStatus.EXPIRED


@pytest.mark.asyncio
async def test_list_all_sorting(db_session, invitation_service, owner, workspace):
    ws_id = workspace.id
    await invitation_service.issue_batch(db_session, ws_id, owner, _items("p@x.com", role=WorkspaceRole.VIEWER))
    await invitation_service.issue_batch(db_session, ws_id, owner, _items("e@x.com", role=WorkspaceRole.ADMIN))
    await invitation_service.issue_batch(db_session, ws_id, owner, _items("c@x.com", role=WorkspaceRole.MEMBER))

    [expiring] = await _invitations(db_session, ws_id, "e@x.com")
    await expire_invitation(db_session, expiring.id)
    [consumed] = await _invitations(db_session, ws_id, "c@x.com")
    joiner = await make_user(db_session, "cee", "c@x.com")
    await invitation_service.accept(db_session, consumed.token, joiner)

    by_status = await invitation_service.list_all(db_session, ws_id, owner, sort_by="status")
    assert [e.email for e in by_status] == [owner.email, "c@x.com", "p@x.com", "e@x.com"]

    by_role = await invitation_service.list_all(db_session, ws_id, owner, sort_by="role")
    assert [e.email for e in by_role] == [owner.email, "e@x.com", "c@x.com", "p@x.com"]

    ascending = await invitation_service.list_all(db_session, ws_id, owner, sort_by="asc")
    assert [e.email for e in ascending] == [owner.email, "p@x.com", "e@x.com", "c@x.com"]

    descending = await invitation_service.list_all(db_session, ws_id, owner, sort_by="desc")
    assert [e.email for e in descending] == [owner.email, "c@x.com", "e@x.com", "p@x.com"]


@pytest.mark.asyncio
async def test_list_all_requires_manager(db_session, invitation_service, member_user, workspace):
    with pytest.raises(InsufficientRoleError):
        await invitation_service.list_all(db_session, workspace.id, member_user)
