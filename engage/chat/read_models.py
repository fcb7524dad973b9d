# =============================================================================
# File: engage/chat/read_models.py
# Description: Chat domain read models (PostgreSQL rows, directory records)
# =============================================================================

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, List

from pydantic import BaseModel, Field, ConfigDict

from engage.chat.enums import (
    AccessMode,
    GroupStatus,
    GroupType,
    MembershipStatus,
    MessageStatus,
    UserLevel,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class GroupImage(BaseModel):
    bucket_name: Optional[str] = None
    uri: Optional[str] = None

    model_config = ConfigDict(from_attributes=True, frozen=True)


class AccessControl(BaseModel):
    """Per-group access and availability settings"""
    max_users_allowed: int
    bidirectional: bool = True
    attachments_allowed: bool = True
    rich_text_supported: bool = True
    capture_activities: bool = True
    notifications_paused: bool = False
    notifications_paused_until: Optional[datetime] = None
    chat_open_hour: int = 0
    chat_close_hour: int = 24
    available_on_weekends: bool = True

    model_config = ConfigDict(from_attributes=True, frozen=True)


class GroupMetrics(BaseModel):
    """Derived counters; recomputed from memberships, never hand-edited"""
    active_admin_count: int = 0
    total_user_count: int = 0
    active_user_count: int = 0

    model_config = ConfigDict(from_attributes=True, frozen=True)


class LastMessageActivity(BaseModel):
    message_id: Optional[str] = None
    message: str
    message_status: MessageStatus = MessageStatus.SENT
    timestamp: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class ChatGroup(BaseModel):
    """Read model for a chat group (PostgreSQL table: chat_groups)"""
    group_id: str
    vendor_thread_id: str
    name: str
    group_type: GroupType
    category: Optional[str] = None
    branch_id: str
    intended_for_user_id: Optional[str] = None
    image: Optional[GroupImage] = None
    status: GroupStatus = GroupStatus.ACTIVE
    active_until: Optional[datetime] = None
    access_control: AccessControl
    metrics: GroupMetrics = Field(default_factory=GroupMetrics)
    last_message_activity: Optional[LastMessageActivity] = None
    created_by: str
    created_by_user_id: Optional[str] = None
    updated_by_user_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_active(self) -> bool:
        return self.status == GroupStatus.ACTIVE


class ChatMember(BaseModel):
    """Read model for one membership row (PostgreSQL table: chat_group_members)"""
    employee_id: str
    group_id: str
    vendor_user_id: str
    vendor_thread_id: str
    branch_id: str
    display_name: str
    image: Optional[GroupImage] = None
    access_mode: AccessMode
    status: MembershipStatus = MembershipStatus.ACTIVE
    mute_notifications: bool = False
    mute_until: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_active(self) -> bool:
        return self.status == MembershipStatus.ACTIVE


class GroupQuery(BaseModel):
    """Filter for ChatGroupStore.find_groups"""
    branch_ids: Optional[List[str]] = None
    group_ids: Optional[List[str]] = None
    group_types: Optional[List[GroupType]] = None
    statuses: Optional[List[GroupStatus]] = None
    category: Optional[str] = None
    intended_for_user_id: Optional[str] = None


class GroupChanges(BaseModel):
    """Desired field values for an update; None means 'leave as is'"""
    name: Optional[str] = None
    image: Optional[GroupImage] = None
    status: Optional[GroupStatus] = None
    access_control: Optional[AccessControl] = None


# =============================================================================
# Directory records (read-only master data)
# =============================================================================

class JobInfo(BaseModel):
    job_id: str
    level: int
    title: Optional[str] = None
    category: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class UserRecord(BaseModel):
    """Employee as resolved by the DirectoryService (effective values applied)"""
    employee_id: str
    display_name: str
    job: JobInfo
    user_level: UserLevel
    branch_ids: List[str] = Field(default_factory=list)
    vendor_user_id: Optional[str] = None
    is_active: bool = True
    image: Optional[GroupImage] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    @property
    def has_vendor_identity(self) -> bool:
        return bool(self.vendor_user_id)

    @property
    def is_field_staff(self) -> bool:
        return self.user_level == UserLevel.FIELD_STAFF

    @property
    def is_branch_admin(self) -> bool:
        return self.user_level == UserLevel.BRANCH_ADMIN


class BranchRecord(BaseModel):
    branch_id: str
    name: str
    features: List[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class ContactRecord(BaseModel):
    """A chat-capable colleague returned by branch contact lookups"""
    employee_id: str
    display_name: str
    vendor_user_id: str
    access_mode: AccessMode
    branch_ids: List[str] = Field(default_factory=list)
    job_id: Optional[str] = None
    job_level: Optional[int] = None
    job_title: Optional[str] = None
    image: Optional[GroupImage] = None
    group_id: Optional[str] = None
    group_name: Optional[str] = None


class ReadMarker(BaseModel):
    """Last message an employee read in a group (kept in the cache layer)"""
    group_id: str
    message_id: str
    timestamp: Optional[datetime] = None


class VendorUserView(BaseModel):
    """A vendor thread participant annotated with local presence"""
    vendor_user_id: str
    display_name: str
    employee_id: Optional[str] = None
    is_present_locally: bool = False
