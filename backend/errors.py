# errors.py - Domain error taxonomy for workspace / invitation operations
#
# Every error is an HTTPException so routers can let them propagate untouched;
# `detail` is always a dict carrying a `message`, a stable `error` code and
# whatever structured fields the caller needs to build a precise message.

from typing import Any, Dict, Iterable, List, Optional, Sequence

from fastapi import HTTPException


class WorkspaceError(HTTPException):
    """Base class for all service-layer failures"""

    status_code: int = 400
    code: str = "error"
    default_message: str = "Request could not be completed."

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.default_message
        self.extra = extra
        detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        detail.update(extra)
        super().__init__(status_code=self.status_code, detail=detail)

    def __str__(self) -> str:
        return self.message


# --- Absent or deliberately hidden -------------------------------------------

class NotFoundError(WorkspaceError):
    status_code = 404
    code = "not_found"
    default_message = "Resource not found."


class NotMemberError(NotFoundError):
    # Same status as NotFound: non-members must not learn whether the workspace exists.
    code = "not_member"
    default_message = "You are not a member of this workspace or it does not exist."


# --- Authenticated but unauthorized ------------------------------------------

class ForbiddenError(WorkspaceError):
    status_code = 403
    code = "forbidden"
    default_message = "You are not allowed to perform this action."


class InsufficientRoleError(ForbiddenError):
    code = "insufficient_role"
    default_message = "You do not have permission to perform this action."

    def __init__(self, required_roles: Iterable[Any], current_role: Any, message: Optional[str] = None):
        self.required_roles = [_enum_value(r) for r in required_roles]
        self.current_role = _enum_value(current_role)
        super().__init__(
            message,
            required_roles=self.required_roles,
            current_role=self.current_role,
        )


class AccessDeniedError(ForbiddenError):
    code = "access_denied"
    default_message = "You do not have access to this board."


class QuotaExceededError(ForbiddenError):
    code = "quota_exceeded"
    default_message = "Limit reached."

    def __init__(self, message: Optional[str] = None, limit: Optional[int] = None):
        self.limit = limit
        super().__init__(message, limit=limit)


# --- State invariant violations ----------------------------------------------

class ConflictError(WorkspaceError):
    status_code = 409
    code = "conflict"
    default_message = "The request conflicts with the current state."


class BatchConflictError(ConflictError):
    """Every offending email of a batch, collected before any write"""

    code = "batch_conflict"
    default_message = "Some emails cannot be invited."

    def __init__(self, already_member: Sequence[str], already_invited: Sequence[str]):
        self.already_member = list(already_member)
        self.already_invited = list(already_invited)
        self.emails: List[str] = []
        for email in [*self.already_member, *self.already_invited]:
            if email not in self.emails:
                self.emails.append(email)
        super().__init__(
            None,
            already_member=self.already_member,
            already_invited=self.already_invited,
            emails=self.emails,
        )


class AlreadyUsedError(ConflictError):
    code = "already_used"
    default_message = "Invitation already used."


class ExpiredError(ConflictError):
    status_code = 410
    code = "expired"
    default_message = "Invitation has expired."


# --- Unrecoverable ------------------------------------------------------------

class FatalError(WorkspaceError):
    status_code = 500
    code = "fatal"
    default_message = "Internal error."


class EmailDeliveryError(Exception):
    """Raised by the email side channel; never escapes a service call"""


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)
