# =============================================================================
# File: engage/chat/enums.py
# Description: Chat domain enumerations
# =============================================================================

from enum import Enum


class GroupType(str, Enum):
    """Types of chat groups"""
    DIRECT_MESSAGE = "DirectMessage"
    BROADCAST = "Broadcast"


class GroupStatus(str, Enum):
    """Lifecycle status of a chat group"""
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    ARCHIVED = "Archived"


class MembershipStatus(str, Enum):
    """Status of a membership row"""
    ACTIVE = "Active"
    INACTIVE = "Inactive"


class AccessMode(str, Enum):
    """Participant access mode inside a group"""
    ADMIN = "Admin"
    AGENT = "Agent"


class RemovalMode(str, Enum):
    """How a group (and its memberships) is removed"""
    SOFT = "Soft"  # group Archived, memberships Inactive, vendor thread kept
    HARD = "Hard"  # rows deleted, vendor thread deleted


class MessageActivity(str, Enum):
    """Message activity reported by clients"""
    SENT = "MessageSent"
    READ = "MessageRead"


class MessageStatus(str, Enum):
    SENT = "Sent"
    READ = "Read"


class UserLevel(str, Enum):
    """Role band derived from the numeric job level"""
    FIELD_STAFF = "FieldStaff"
    BRANCH_ADMIN = "BranchAdmin"
    CONTROLLED_ADMIN = "ControlledAdmin"
    ADMIN = "Admin"
    SUPER_ADMIN = "SuperAdmin"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class GroupSortField(str, Enum):
    CREATED_AT = "created_at"
    UPDATED_AT = "updated_at"
    NAME = "name"
    LAST_MESSAGE_AT = "last_message_at"
