# activity_log.py - Append-only activity trail
#
# Rows are only ever inserted, and only inside the caller's atomic unit so a
# mutation and its record are committed (or rolled back) together.

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from access import require_membership
from database import in_atomic
from errors import FatalError
from models import Activity, ActivityType, User

logger = logging.getLogger("kanbanly.activity")

_CREATED = {ActivityType.WORKSPACE_CREATED, ActivityType.BOARD_CREATED}
_UPDATED = {ActivityType.WORKSPACE_UPDATED, ActivityType.BOARD_UPDATED}
_DELETED = {ActivityType.WORKSPACE_DELETED, ActivityType.BOARD_DELETED}


class ActivityLog:
    """Activity sink shared by every mutating service"""

    @staticmethod
    def describe(username: str, action: ActivityType, context: Dict[str, Any]) -> str:
        if action in _CREATED | _UPDATED | _DELETED:
            verb = "created" if action in _CREATED else "updated" if action in _UPDATED else "deleted"
            if action.value.startswith("BOARD"):
                return f'{username} {verb} board "{context.get("board_name")}"'
            return f'{username} {verb} workspace "{context.get("workspace_name")}"'

        workspace = context.get("workspace_name")
        target = context.get("target_email") or context.get("target_username")
        if action == ActivityType.INVITATION_SENT:
            return f'{username} invited {target} to "{workspace}" as {context.get("target_role")}'
        if action == ActivityType.INVITATION_REFRESHED:
            return f'{username} re-sent the invitation for {target} to "{workspace}"'
        if action == ActivityType.INVITATION_CANCELED:
            return f'{username} cancelled the invitation for {target} to "{workspace}"'
        if action == ActivityType.MEMBER_ADDED:
            return f'{username} joined "{workspace}"'
        if action == ActivityType.MEMBER_REMOVED:
            return f'{username} removed {target} from "{workspace}"'
        if action == ActivityType.BOARD_MEMBER_ADDED:
            return f'{username} added {target} to board "{context.get("board_name")}"'
        if action == ActivityType.BOARD_MEMBER_REMOVED:
            return f'{username} removed {target} from board "{context.get("board_name")}"'
        return f"{username} performed {action.value}"

    @staticmethod
    async def append(
        db: AsyncSession,
        action: ActivityType,
        user: User,
        context: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Activity:
        """Insert one activity row in the caller's open unit of work"""
        if not in_atomic(db):
            raise FatalError("Activity must be recorded inside a transaction scope.")

        activity = Activity(
            action=action,
            description=ActivityLog.describe(user.username, action, context),
            user_id=user.id,
            workspace_id=context.get("workspace_id"),
            board_id=None if action == ActivityType.BOARD_DELETED else context.get("board_id"),
            card_id=context.get("card_id"),
            extra_data=metadata or {},
        )
        db.add(activity)
        await db.flush()
        logger.debug(f"activity {action.value} by user={user.id[:8]} ws={str(activity.workspace_id)[:8]}")
        return activity

    @staticmethod
    async def list_for_workspace(
        db: AsyncSession, workspace_id: str, user: User, limit: int = 50,
    ) -> List[Activity]:
        """Newest-first activity feed for members of the workspace"""
        await require_membership(db, workspace_id, user.id)
        result = await db.execute(
            select(Activity)
            .where(Activity.workspace_id == workspace_id)
            .order_by(Activity.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
