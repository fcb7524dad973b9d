# =============================================================================
# File: engage/chat/membership_rules.py
# Description: Business rules for chat membership (role bands, access mode,
#              naming, default access control)
# =============================================================================

from __future__ import annotations

import secrets
import string
from typing import Iterable, List, Optional, Tuple

from engage.chat.enums import AccessMode, UserLevel
from engage.chat.read_models import AccessControl, UserRecord
from engage.chat.value_objects import VendorParticipant
from engage.config.chat_config import ChatDefaults


GROUP_ID_PREFIX = "CH_GRP"
GROUP_ID_SUFFIX_LENGTH = 8
GROUP_ID_ALPHABET = string.ascii_letters + string.digits

SYSTEM_GROUP_BRANCH_NAME_LIMIT = 30

FIELD_STAFF_LEVELS: Tuple[int, ...] = (1,)
BRANCH_ADMIN_LEVELS: Tuple[int, ...] = (2, 3, 4, 5)


def user_level_for(job_level: int) -> UserLevel:
    """Map a numeric job level (1-9) to its role band."""
    if job_level <= 1:
        return UserLevel.FIELD_STAFF
    if job_level <= 5:
        return UserLevel.BRANCH_ADMIN
    if job_level == 6:
        return UserLevel.CONTROLLED_ADMIN
    if job_level <= 8:
        return UserLevel.ADMIN
    return UserLevel.SUPER_ADMIN


def access_mode_for(user: UserRecord) -> AccessMode:
    """Field staff participate as agents; every admin band participates as admin."""
    if user.user_level == UserLevel.FIELD_STAFF:
        return AccessMode.AGENT
    return AccessMode.ADMIN


def generate_group_id() -> str:
    suffix = "".join(secrets.choice(GROUP_ID_ALPHABET) for _ in range(GROUP_ID_SUFFIX_LENGTH))
    return f"{GROUP_ID_PREFIX}{suffix}"


def system_group_name(group_name: str, branch_name: str) -> str:
    return f"{group_name} ({branch_name[:SYSTEM_GROUP_BRANCH_NAME_LIMIT]})"


def default_access_control(defaults: ChatDefaults, max_users_allowed: Optional[int] = None) -> AccessControl:
    return AccessControl(
        max_users_allowed=min(max_users_allowed or defaults.max_users_allowed, defaults.max_users_ceiling),
        bidirectional=defaults.can_field_staff_reply,
        attachments_allowed=defaults.attachments_allowed,
        rich_text_supported=defaults.rich_text_supported,
        capture_activities=defaults.capture_activities,
        notifications_paused=defaults.notifications_paused,
        chat_open_hour=defaults.chat_open_hour,
        chat_close_hour=defaults.chat_close_hour,
        available_on_weekends=defaults.available_on_weekends,
    )


def effective_capacity(access_control: AccessControl, defaults: ChatDefaults) -> int:
    """Group capacity, never above the absolute ceiling."""
    return min(access_control.max_users_allowed, defaults.max_users_ceiling)


def partition_vendor_eligible(users: Iterable[UserRecord]) -> Tuple[List[UserRecord], List[UserRecord]]:
    """Split users into (has vendor identity, lacks vendor identity), keeping order."""
    eligible: List[UserRecord] = []
    ineligible: List[UserRecord] = []
    for user in users:
        (eligible if user.has_vendor_identity else ineligible).append(user)
    return eligible, ineligible


def to_participants(users: Iterable[UserRecord]) -> List[VendorParticipant]:
    return [
        VendorParticipant(vendor_user_id=user.vendor_user_id, display_name=user.display_name)
        for user in users
        if user.vendor_user_id
    ]


def dedupe_users(users: Iterable[UserRecord]) -> List[UserRecord]:
    seen = set()
    unique = []
    for user in users:
        if user.employee_id in seen:
            continue
        seen.add(user.employee_id)
        unique.append(user)
    return unique


def is_in_branch(user: UserRecord, branch_id: str) -> bool:
    return branch_id in user.branch_ids
