# =============================================================================
# File: engage/chat/ports/chat_group_store_port.py
# Description: Port interface for the local system-of-record (groups, members)
# Pattern: Hexagonal Architecture / Ports & Adapters
# =============================================================================

from __future__ import annotations

from typing import Protocol, List, Optional, Sequence, Dict, Any, runtime_checkable

from engage.chat.enums import GroupSortField, GroupStatus, GroupType, RemovalMode, SortOrder
from engage.chat.read_models import ChatGroup, ChatMember, GroupMetrics, GroupQuery


@runtime_checkable
class ChatGroupStorePort(Protocol):
    """
    Port: Chat Group Store

    Defined by: Chat Domain
    Implemented by: PgChatGroupStore (engage/infra/read_repos/chat_group_repo.py)

    Invariants:
    - group_id is unique
    - (employee_id, group_id) is unique; duplicate inserts raise
      DuplicateMembershipError instead of overwriting
    - every group mutation invalidates the group's cache entry
    """

    # =========================================================================
    # Groups
    # =========================================================================

    async def find_group_by_id(self, group_id: str, branch_id: Optional[str] = None) -> ChatGroup:
        """Raises ChatGroupNotFoundError."""
        ...

    async def find_groups(
        self,
        query: GroupQuery,
        *,
        skip: int = 0,
        limit: int = 100,
        sort_field: GroupSortField = GroupSortField.CREATED_AT,
        sort_order: SortOrder = SortOrder.DESC,
        search_text: Optional[str] = None,
    ) -> List[ChatGroup]:
        """search_text matches group id or name (case-insensitive substring)."""
        ...

    async def count_groups(self, query: GroupQuery, *, search_text: Optional[str] = None) -> int:
        ...

    async def find_groups_by_branches(
        self,
        branch_ids: Sequence[str],
        group_types: Optional[Sequence[GroupType]] = None,
        *,
        active_only: bool = True,
        skip: int = 0,
        limit: int = 100,
    ) -> List[ChatGroup]:
        ...

    async def find_direct_message_groups(
        self,
        branch_id: str,
        intended_for_user_id: str,
        statuses: Sequence[GroupStatus],
    ) -> List[ChatGroup]:
        """DirectMessage groups for one (branch, user) pair, oldest first."""
        ...

    async def find_broadcast_groups(self, branch_id: str, category: str) -> List[ChatGroup]:
        ...

    async def find_groups_for_member(
        self,
        employee_id: str,
        branch_id: Optional[str] = None,
        *,
        active_only: bool = True,
    ) -> List[ChatGroup]:
        ...

    async def create_group(self, group: ChatGroup) -> ChatGroup:
        """Raises ConflictError when group_id exists."""
        ...

    async def upsert_group(self, group_id: str, changes: Dict[str, Any]) -> ChatGroup:
        """Merge fields into an existing group and bump updated_at. Raises ChatGroupNotFoundError."""
        ...

    async def remove_group(self, group_id: str, mode: RemovalMode) -> None:
        ...

    # =========================================================================
    # Members
    # =========================================================================

    async def find_members(
        self,
        group_id: str,
        branch_id: Optional[str] = None,
        *,
        active_only: bool = True,
        limit: int = 500,
    ) -> List[ChatMember]:
        ...

    async def find_member_groups(
        self,
        employee_id: str,
        branch_id: str,
        *,
        active_only: bool = True,
    ) -> List[ChatMember]:
        """Membership rows of one employee within a branch."""
        ...

    async def insert_members(self, members: Sequence[ChatMember]) -> int:
        """Batched insert; a failure leaves earlier batches in place."""
        ...

    async def update_members(
        self,
        group_id: str,
        employee_ids: Sequence[str],
        changes: Dict[str, Any],
    ) -> int:
        ...

    async def delete_members(self, group_id: str, employee_ids: Sequence[str]) -> int:
        ...

    async def recompute_and_persist_stats(self, group_id: str, branch_id: str) -> GroupMetrics:
        ...
