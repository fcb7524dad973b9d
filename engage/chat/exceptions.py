# =============================================================================
# File: engage/chat/exceptions.py
# Description: Chat domain exceptions
# =============================================================================

from typing import Iterable, Optional

from engage.common.exceptions.exceptions import (
    ConflictError,
    DomainError,
    InfrastructureError,
    ResourceNotFoundError,
    ValidationError,
)


class ChatError(DomainError):
    """Base exception for Chat domain"""
    pass


class ChatGroupNotFoundError(ResourceNotFoundError):
    """Chat group not found"""
    def __init__(self, group_id: str, branch_id: Optional[str] = None):
        scope = f" in branch {branch_id}" if branch_id else ""
        super().__init__(f"Chat group not found: {group_id}{scope}")
        self.group_id = group_id
        self.branch_id = branch_id


class ChatUserNotFoundError(ResourceNotFoundError):
    """Employee not found in the directory"""
    def __init__(self, employee_id: str):
        super().__init__(f"Employee not found: {employee_id}")
        self.employee_id = employee_id


class MembershipNotFoundError(ResourceNotFoundError):
    """Employee is not a member of the group"""
    def __init__(self, group_id: str, employee_id: str):
        super().__init__(f"Employee {employee_id} is not a member of group {group_id}")
        self.group_id = group_id
        self.employee_id = employee_id


class CapacityExceededError(ChatError):
    """Adding participants would breach the group's capacity"""
    def __init__(self, group_id: Optional[str], current: int, requested: int, limit: int):
        super().__init__(
            f"Group {group_id or '<new>'} capacity exceeded: "
            f"{current} current + {requested} requested > {limit} allowed"
        )
        self.group_id = group_id
        self.current = current
        self.requested = requested
        self.limit = limit


class NoChangesDetectedError(ValidationError):
    """Update request carries no effective delta"""
    def __init__(self, group_id: str):
        super().__init__(f"No changes detected for group {group_id}")
        self.group_id = group_id


class VendorProvisioningMissingError(ChatError):
    """Every targeted user lacks a vendor identity"""
    def __init__(self, employee_ids: Iterable[str]):
        ids = sorted(employee_ids)
        super().__init__(f"No vendor identity provisioned for: {', '.join(ids)}")
        self.employee_ids = ids


class VendorOperationFailedError(InfrastructureError):
    """Thread provider call failed"""
    def __init__(self, operation: str, detail: str, thread_id: Optional[str] = None):
        target = f" (thread {thread_id})" if thread_id else ""
        super().__init__(f"Vendor operation '{operation}' failed{target}: {detail}")
        self.operation = operation
        self.detail = detail
        self.thread_id = thread_id


class DriftDetectedError(ChatError):
    """Reconciliation found a state it must not resolve on its own"""
    def __init__(self, branch_id: str, reason: str, group_ids: Iterable[str] = ()):
        super().__init__(f"Drift detected in branch {branch_id}: {reason}")
        self.branch_id = branch_id
        self.reason = reason
        self.group_ids = list(group_ids)


class DuplicateMembershipError(ConflictError):
    """(employee_id, group_id) already has a row"""
    def __init__(self, group_id: str, employee_ids: Iterable[str]):
        ids = sorted(employee_ids)
        super().__init__(f"Membership already exists in group {group_id} for: {', '.join(ids)}")
        self.group_id = group_id
        self.employee_ids = ids


class ChatNotEnabledError(ChatError):
    """Chat feature is not provisioned for the branch"""
    def __init__(self, branch_id: str):
        super().__init__(f"Chat is not enabled for branch {branch_id}")
        self.branch_id = branch_id


class IneligibleUserError(ChatError):
    """User's role does not allow the requested chat operation"""
    def __init__(self, employee_id: str, reason: str):
        super().__init__(f"Employee {employee_id} is not eligible: {reason}")
        self.employee_id = employee_id
        self.reason = reason


class BranchNotFoundError(ResourceNotFoundError):
    """Branch not found in the directory"""
    def __init__(self, branch_id: str):
        super().__init__(f"Branch not found: {branch_id}")
        self.branch_id = branch_id
