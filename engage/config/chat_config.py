# =============================================================================
# File: engage/config/chat_config.py
# Description: Chat group defaults (capacity, hours, flags, system groups)
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import SettingsConfigDict

from engage.common.base.base_config import BaseConfig, BASE_CONFIG_DICT


class SystemGroupSpec(BaseModel):
    """One branch-wide broadcast group that every branch should carry."""
    group_name: str
    category: str
    job_category: Optional[str] = None


@dataclass(frozen=True)
class SystemGroupDefaults:
    group_name: str
    category: str
    job_category: Optional[str] = None


@dataclass(frozen=True)
class ChatDefaults:
    """
    Immutable chat defaults handed to GroupReconciler and ChatGroupService
    at construction time. Built from ChatConfig.to_defaults(); tests build
    it directly.
    """
    root_user_id: str = "engage-root"
    can_field_staff_reply: bool = True
    attachments_allowed: bool = True
    rich_text_supported: bool = True
    capture_activities: bool = True
    available_on_weekends: bool = True
    notifications_paused: bool = False
    chat_open_hour: int = 0
    chat_close_hour: int = 24

    max_users_allowed: int = 250
    max_users_ceiling: int = 250
    max_admins_per_group: int = 249

    system_groups: Tuple[SystemGroupDefaults, ...] = field(default_factory=tuple)

    member_insert_batch_size: int = 20
    member_page_limit: int = 500
    group_list_limit: int = 100
    branch_user_page_limit: int = 600
    branch_user_ceiling: int = 2000
    participant_page_ceiling: int = 250

    root_token_ttl_seconds: int = 7200
    root_token_refresh_margin_seconds: int = 300
    group_cache_ttl_seconds: int = 60
    read_marker_ttl_seconds: int = 60 * 24 * 60 * 60
    signed_url_ttl_seconds: int = 3600

    confirm_retry_attempts: int = 0
    confirm_retry_delay_ms: int = 500

    chat_feature_key: str = "ChatV2"


class ChatConfig(BaseConfig):
    """
    Chat feature configuration.

    System groups are read from CHAT_SYSTEM_GROUPS as a JSON list, e.g.
    [{"group_name": "Announcements", "category": "Announcements"},
     {"group_name": "Safety", "category": "Safety", "job_category": "Clinical"}]
    """

    model_config = SettingsConfigDict(
        **BASE_CONFIG_DICT,
        env_prefix='CHAT_',
    )

    root_user_id: str = Field(default="engage-root", description="Directory id of the service (root) identity")
    can_field_staff_reply: bool = Field(default=True, description="Bidirectional replies in new groups")
    attachments_allowed: bool = Field(default=True)
    rich_text_supported: bool = Field(default=True)
    capture_activities: bool = Field(default=True)
    available_on_weekends: bool = Field(default=True)
    notifications_paused: bool = Field(default=False)
    chat_open_hour: int = Field(default=0, ge=0, le=24)
    chat_close_hour: int = Field(default=24, ge=0, le=24)

    # Capacity
    max_users_allowed: int = Field(default=250, ge=1, description="Default capacity of a new group")
    max_users_ceiling: int = Field(default=250, ge=1, description="Absolute participant ceiling")
    max_admins_per_group: int = Field(default=249, ge=1)

    system_groups: List[SystemGroupSpec] = Field(default_factory=list)

    # Store / directory paging
    member_insert_batch_size: int = Field(default=20, ge=1)
    member_page_limit: int = Field(default=500, ge=1)
    group_list_limit: int = Field(default=100, ge=1)
    branch_user_page_limit: int = Field(default=600, ge=1)
    branch_user_ceiling: int = Field(default=2000, ge=1)
    participant_page_ceiling: int = Field(default=250, ge=1)

    # Cache TTLs
    root_token_ttl_seconds: int = Field(default=7200, ge=60)
    root_token_refresh_margin_seconds: int = Field(default=300, ge=0)
    group_cache_ttl_seconds: int = Field(default=60, ge=1)
    read_marker_ttl_seconds: int = Field(default=60 * 24 * 60 * 60, ge=1)
    signed_url_ttl_seconds: int = Field(default=3600, ge=60)

    # Re-list confirmation after participant add
    confirm_retry_attempts: int = Field(default=0, ge=0, le=5)
    confirm_retry_delay_ms: int = Field(default=500, ge=0)

    chat_feature_key: str = Field(default="ChatV2")

    @model_validator(mode="after")
    def _check_capacity(self) -> "ChatConfig":
        if self.max_users_allowed > self.max_users_ceiling:
            raise ValueError(
                f"max_users_allowed ({self.max_users_allowed}) exceeds "
                f"max_users_ceiling ({self.max_users_ceiling})"
            )
        if self.chat_open_hour > self.chat_close_hour:
            raise ValueError("chat_open_hour must not be after chat_close_hour")
        return self

    def to_defaults(self) -> ChatDefaults:
        """Freeze the settings into the value object used by the chat domain."""
        values = self.model_dump(exclude={"system_groups"})
        return ChatDefaults(
            **values,
            system_groups=tuple(
                SystemGroupDefaults(
                    group_name=spec.group_name,
                    category=spec.category,
                    job_category=spec.job_category,
                )
                for spec in self.system_groups
            ),
        )


@lru_cache(maxsize=1)
def get_chat_config() -> ChatConfig:
    """Get chat configuration singleton (cached)."""
    return ChatConfig()


def reset_chat_config() -> None:
    """Reset config singleton (for testing)."""
    get_chat_config.cache_clear()
