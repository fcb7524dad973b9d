# =============================================================================
# File: engage/infra/read_repos/chat_group_repo.py
# Description: PostgreSQL ChatGroupStore (chat_groups, chat_group_members)
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import asyncpg
from pydantic import BaseModel

from engage.chat.cache_keys import GROUP_NAMESPACE
from engage.chat.enums import (
    AccessMode,
    GroupSortField,
    GroupStatus,
    GroupType,
    MembershipStatus,
    RemovalMode,
    SortOrder,
)
from engage.chat.exceptions import ChatGroupNotFoundError, DuplicateMembershipError
from engage.chat.ports.capability_ports import KeyValueCachePort
from engage.chat.read_models import ChatGroup, ChatMember, GroupMetrics, GroupQuery, utc_now
from engage.common.exceptions.exceptions import ConflictError
from engage.infra.persistence import pg_client

log = logging.getLogger("engage.infra.read_repos.chat_group_repo")

GROUP_COLUMNS = """
    group_id, vendor_thread_id, name, group_type, category, branch_id,
    intended_for_user_id, image, status, active_until, access_control,
    metrics, last_message_activity, created_by, created_by_user_id,
    updated_by_user_id, created_at, updated_at
"""

MEMBER_COLUMNS = """
    employee_id, group_id, vendor_user_id, vendor_thread_id, branch_id,
    display_name, image, access_mode, status, mute_notifications,
    mute_until, last_seen_at, created_at, updated_at
"""

GROUP_UPDATABLE = frozenset({
    "name", "image", "status", "active_until", "access_control", "metrics",
    "last_message_activity", "updated_by_user_id", "category",
})

MEMBER_UPDATABLE = frozenset({
    "status", "access_mode", "display_name", "image", "vendor_user_id",
    "mute_notifications", "mute_until", "last_seen_at",
})

SORT_COLUMNS = {
    GroupSortField.CREATED_AT: "created_at",
    GroupSortField.UPDATED_AT: "updated_at",
    GroupSortField.NAME: "name",
    GroupSortField.LAST_MESSAGE_AT: "(last_message_activity->>'timestamp')",
}


def _to_db(value: Any) -> Any:
    """Models become JSON-ready dicts for JSONB columns; enums become their values."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    return value


def _row_to_group(row: asyncpg.Record) -> ChatGroup:
    data = dict(row)
    data["metrics"] = data.get("metrics") or {}
    return ChatGroup.model_validate(data)


def _row_to_member(row: asyncpg.Record) -> ChatMember:
    return ChatMember.model_validate(dict(row))


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class PgChatGroupStore:
    """
    ChatGroupStore over PostgreSQL.

    Every group mutation deletes the group's cache entry; the cache is
    never updated in place.
    """

    def __init__(
        self,
        cache: Optional[KeyValueCachePort] = None,
        *,
        insert_batch_size: int = 20,
    ):
        self._cache = cache
        self._insert_batch_size = insert_batch_size

    async def _invalidate(self, group_id: str) -> None:
        if self._cache is not None:
            await self._cache.delete(GROUP_NAMESPACE, group_id)

    # =========================================================================
    # Groups
    # =========================================================================

    async def find_group_by_id(self, group_id: str, branch_id: Optional[str] = None) -> ChatGroup:
        query = f"SELECT {GROUP_COLUMNS} FROM chat_groups WHERE group_id = $1"
        params: List[Any] = [group_id]
        if branch_id:
            query += " AND branch_id = $2"
            params.append(branch_id)

        row = await pg_client.fetchrow(query, *params)
        if row is None:
            raise ChatGroupNotFoundError(group_id, branch_id)
        return _row_to_group(row)

    @staticmethod
    def _build_filters(query: GroupQuery, search_text: Optional[str]) -> Tuple[List[str], List[Any]]:
        conditions: List[str] = []
        params: List[Any] = []

        def add(clause: str, value: Any) -> None:
            params.append(value)
            conditions.append(clause.format(p=f"${len(params)}"))

        if query.branch_ids:
            add("branch_id = ANY({p}::varchar[])", list(query.branch_ids))
        if query.group_ids:
            add("group_id = ANY({p}::varchar[])", list(query.group_ids))
        if query.group_types:
            add("group_type = ANY({p}::varchar[])", [t.value for t in query.group_types])
        if query.statuses:
            add("status = ANY({p}::varchar[])", [s.value for s in query.statuses])
        if query.category:
            add("category = {p}", query.category)
        if query.intended_for_user_id:
            add("intended_for_user_id = {p}", query.intended_for_user_id)
        if search_text:
            add("(group_id ILIKE {p} OR name ILIKE {p})", f"%{_escape_like(search_text)}%")

        return conditions, params

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
        conditions, params = self._build_filters(query, search_text)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        direction = "ASC" if sort_order == SortOrder.ASC else "DESC"

        params.extend([limit, skip])
        rows = await pg_client.fetch(
            f"""
            SELECT {GROUP_COLUMNS} FROM chat_groups
            {where}
            ORDER BY {SORT_COLUMNS[sort_field]} {direction} NULLS LAST, group_id
            LIMIT ${len(params) - 1} OFFSET ${len(params)}
            """,
            *params
        )
        return [_row_to_group(r) for r in rows]

    async def count_groups(self, query: GroupQuery, *, search_text: Optional[str] = None) -> int:
        conditions, params = self._build_filters(query, search_text)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        result = await pg_client.fetchval(f"SELECT COUNT(*) FROM chat_groups {where}", *params)
        return result or 0

    async def find_groups_by_branches(
        self,
        branch_ids: Sequence[str],
        group_types: Optional[Sequence[GroupType]] = None,
        *,
        active_only: bool = True,
        skip: int = 0,
        limit: int = 100,
    ) -> List[ChatGroup]:
        return await self.find_groups(
            GroupQuery(
                branch_ids=list(branch_ids),
                group_types=list(group_types) if group_types else None,
                statuses=[GroupStatus.ACTIVE] if active_only else None,
            ),
            skip=skip,
            limit=limit,
            sort_field=GroupSortField.CREATED_AT,
            sort_order=SortOrder.ASC,
        )

    async def find_direct_message_groups(
        self,
        branch_id: str,
        intended_for_user_id: str,
        statuses: Sequence[GroupStatus],
    ) -> List[ChatGroup]:
        rows = await pg_client.fetch(
            f"""
            SELECT {GROUP_COLUMNS} FROM chat_groups
            WHERE branch_id = $1
              AND intended_for_user_id = $2
              AND group_type = $3
              AND status = ANY($4::varchar[])
            ORDER BY created_at ASC, group_id
            """,
            branch_id, intended_for_user_id, GroupType.DIRECT_MESSAGE.value, [s.value for s in statuses]
        )
        return [_row_to_group(r) for r in rows]

    async def find_broadcast_groups(self, branch_id: str, category: str) -> List[ChatGroup]:
        """Active and Inactive Broadcast groups of a category; Archived ones are history."""
        rows = await pg_client.fetch(
            f"""
            SELECT {GROUP_COLUMNS} FROM chat_groups
            WHERE branch_id = $1
              AND category = $2
              AND group_type = $3
              AND status <> $4
            ORDER BY created_at ASC, group_id
            """,
            branch_id, category, GroupType.BROADCAST.value, GroupStatus.ARCHIVED.value
        )
        return [_row_to_group(r) for r in rows]

    async def find_groups_for_member(
        self,
        employee_id: str,
        branch_id: Optional[str] = None,
        *,
        active_only: bool = True,
    ) -> List[ChatGroup]:
        conditions = ["m.employee_id = $1"]
        params: List[Any] = [employee_id]
        if branch_id:
            params.append(branch_id)
            conditions.append(f"g.branch_id = ${len(params)}")
        if active_only:
            params.extend([MembershipStatus.ACTIVE.value, GroupStatus.ACTIVE.value])
            conditions.append(f"m.status = ${len(params) - 1} AND g.status = ${len(params)}")

        columns = ", ".join(f"g.{c.strip()}" for c in GROUP_COLUMNS.split(","))
        rows = await pg_client.fetch(
            f"""
            SELECT {columns}
            FROM chat_groups g
            JOIN chat_group_members m ON m.group_id = g.group_id
            WHERE {' AND '.join(conditions)}
            ORDER BY g.created_at ASC
            """,
            *params
        )
        return [_row_to_group(r) for r in rows]

    async def create_group(self, group: ChatGroup) -> ChatGroup:
        try:
            row = await pg_client.fetchrow(
                f"""
                INSERT INTO chat_groups (
                    group_id, vendor_thread_id, name, group_type, category, branch_id,
                    intended_for_user_id, image, status, active_until, access_control,
                    metrics, last_message_activity, created_by, created_by_user_id,
                    updated_by_user_id, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18)
                RETURNING {GROUP_COLUMNS}
                """,
                group.group_id, group.vendor_thread_id, group.name, group.group_type.value,
                group.category, group.branch_id, group.intended_for_user_id, _to_db(group.image),
                group.status.value, group.active_until, _to_db(group.access_control),
                _to_db(group.metrics), _to_db(group.last_message_activity), group.created_by,
                group.created_by_user_id, group.updated_by_user_id, group.created_at, group.updated_at,
            )
        except asyncpg.UniqueViolationError as e:
            raise ConflictError(f"Chat group already exists: {group.group_id}") from e

        await self._invalidate(group.group_id)
        return _row_to_group(row)

    async def upsert_group(self, group_id: str, changes: Dict[str, Any]) -> ChatGroup:
        unknown = set(changes) - GROUP_UPDATABLE
        if unknown:
            raise ValueError(f"Unsupported group field(s): {', '.join(sorted(unknown))}")

        updates = []
        params: List[Any] = []
        param_idx = 1

        for column, value in changes.items():
            updates.append(f"{column} = ${param_idx}")
            params.append(_to_db(value))
            param_idx += 1

        updates.append(f"updated_at = ${param_idx}")
        params.append(utc_now())
        param_idx += 1

        params.append(group_id)

        row = await pg_client.fetchrow(
            f"UPDATE chat_groups SET {', '.join(updates)} WHERE group_id = ${param_idx} RETURNING {GROUP_COLUMNS}",
            *params
        )
        if row is None:
            raise ChatGroupNotFoundError(group_id)

        await self._invalidate(group_id)
        return _row_to_group(row)

    async def remove_group(self, group_id: str, mode: RemovalMode) -> None:
        if mode == RemovalMode.HARD:
            # memberships go with the group (ON DELETE CASCADE)
            status = await pg_client.execute("DELETE FROM chat_groups WHERE group_id = $1", group_id)
            if pg_client.affected_rows(status) == 0:
                raise ChatGroupNotFoundError(group_id)
        else:
            now = utc_now()
            async with pg_client.transaction():
                status = await pg_client.execute(
                    "UPDATE chat_groups SET status = $1, updated_at = $2 WHERE group_id = $3",
                    GroupStatus.ARCHIVED.value, now, group_id
                )
                if pg_client.affected_rows(status) == 0:
                    raise ChatGroupNotFoundError(group_id)
                await pg_client.execute(
                    "UPDATE chat_group_members SET status = $1, updated_at = $2 WHERE group_id = $3",
                    MembershipStatus.INACTIVE.value, now, group_id
                )

        await self._invalidate(group_id)
        log.info(f"Chat group {group_id} removed ({mode.value})")

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
        conditions = ["group_id = $1"]
        params: List[Any] = [group_id]
        if branch_id:
            params.append(branch_id)
            conditions.append(f"branch_id = ${len(params)}")
        if active_only:
            params.append(MembershipStatus.ACTIVE.value)
            conditions.append(f"status = ${len(params)}")
        params.append(limit)

        rows = await pg_client.fetch(
            f"""
            SELECT {MEMBER_COLUMNS} FROM chat_group_members
            WHERE {' AND '.join(conditions)}
            ORDER BY created_at ASC, employee_id
            LIMIT ${len(params)}
            """,
            *params
        )
        return [_row_to_member(r) for r in rows]

    async def find_member_groups(
        self,
        employee_id: str,
        branch_id: str,
        *,
        active_only: bool = True,
    ) -> List[ChatMember]:
        query = f"SELECT {MEMBER_COLUMNS} FROM chat_group_members WHERE employee_id = $1 AND branch_id = $2"
        params: List[Any] = [employee_id, branch_id]
        if active_only:
            query += " AND status = $3"
            params.append(MembershipStatus.ACTIVE.value)
        rows = await pg_client.fetch(query + " ORDER BY updated_at DESC", *params)
        return [_row_to_member(r) for r in rows]

    async def _insert_member(self, member: ChatMember) -> None:
        await pg_client.execute(
            """
            INSERT INTO chat_group_members (
                employee_id, group_id, vendor_user_id, vendor_thread_id, branch_id,
                display_name, image, access_mode, status, mute_notifications,
                mute_until, last_seen_at, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
            """,
            member.employee_id, member.group_id, member.vendor_user_id, member.vendor_thread_id,
            member.branch_id, member.display_name, _to_db(member.image), member.access_mode.value,
            member.status.value, member.mute_notifications, member.mute_until, member.last_seen_at,
            member.created_at, member.updated_at,
        )

    async def insert_members(self, members: Sequence[ChatMember]) -> int:
        """
        Insert rows in batches; each batch runs concurrently. A duplicate
        (employee_id, group_id) stops after its batch with DuplicateMembershipError;
        earlier batches stay inserted.
        """
        inserted = 0
        touched = set()
        for start in range(0, len(members), self._insert_batch_size):
            batch = members[start:start + self._insert_batch_size]
            results = await asyncio.gather(*(self._insert_member(m) for m in batch), return_exceptions=True)

            duplicates: List[ChatMember] = []
            for member, result in zip(batch, results):
                if isinstance(result, asyncpg.UniqueViolationError):
                    duplicates.append(member)
                elif isinstance(result, BaseException):
                    raise result
                else:
                    inserted += 1
                    touched.add(member.group_id)

            if duplicates:
                for group_id in touched:
                    await self._invalidate(group_id)
                raise DuplicateMembershipError(duplicates[0].group_id, [m.employee_id for m in duplicates])

        for group_id in touched:
            await self._invalidate(group_id)
        return inserted

    async def update_members(
        self,
        group_id: str,
        employee_ids: Sequence[str],
        changes: Dict[str, Any],
    ) -> int:
        unknown = set(changes) - MEMBER_UPDATABLE
        if unknown:
            raise ValueError(f"Unsupported member field(s): {', '.join(sorted(unknown))}")
        if not employee_ids or not changes:
            return 0

        updates = []
        params: List[Any] = []
        for column, value in changes.items():
            params.append(_to_db(value))
            updates.append(f"{column} = ${len(params)}")
        params.append(utc_now())
        updates.append(f"updated_at = ${len(params)}")
        params.extend([group_id, list(employee_ids)])

        status = await pg_client.execute(
            f"""
            UPDATE chat_group_members SET {', '.join(updates)}
            WHERE group_id = ${len(params) - 1} AND employee_id = ANY(${len(params)}::varchar[])
            """,
            *params
        )
        return pg_client.affected_rows(status)

    async def delete_members(self, group_id: str, employee_ids: Sequence[str]) -> int:
        if not employee_ids:
            return 0
        status = await pg_client.execute(
            "DELETE FROM chat_group_members WHERE group_id = $1 AND employee_id = ANY($2::varchar[])",
            group_id, list(employee_ids)
        )
        await self._invalidate(group_id)
        return pg_client.affected_rows(status)

    async def recompute_and_persist_stats(self, group_id: str, branch_id: str) -> GroupMetrics:
        row = await pg_client.fetchrow(
            """
            SELECT COUNT(*) FILTER (WHERE access_mode <> $3) AS admins,
                   COUNT(*) AS total
            FROM chat_group_members
            WHERE group_id = $1 AND branch_id = $2 AND status = $4
            """,
            group_id, branch_id, AccessMode.AGENT.value, MembershipStatus.ACTIVE.value
        )
        metrics = GroupMetrics(
            active_admin_count=row["admins"],
            total_user_count=row["total"],
            active_user_count=row["total"],
        )
        await self.upsert_group(group_id, {"metrics": metrics})
        return metrics
