# =============================================================================
# File: engage/chat/reconciler.py
# Description: Expected-vs-current membership reconciliation for chat groups
# =============================================================================
"""
GroupReconciler keeps the local store and the vendor threads convergent.

Three scenarios:
- explicit creation with a participant set (create_group_for_users)
- a field-staff member's private DirectMessage group (reconcile_direct_message)
- branch-wide Broadcast groups keyed by category (sync_system_groups)

Every membership mutation follows write-after-vendor-confirm: the local row
is written (or deleted) only for users the vendor thread is seen to contain
(or no longer contain) on a fresh participant listing. Removals always run
before additions.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from engage.chat.credentials import RootCredential
from engage.chat.enums import AccessMode, GroupStatus, GroupType, MembershipStatus, RemovalMode
from engage.chat.exceptions import (
    BranchNotFoundError,
    CapacityExceededError,
    DriftDetectedError,
    VendorOperationFailedError,
    VendorProvisioningMissingError,
)
from engage.chat.membership_diff import (
    MembershipDiff,
    compute_broadcast_diff,
    compute_direct_message_diff,
)
from engage.chat.membership_rules import (
    BRANCH_ADMIN_LEVELS,
    FIELD_STAFF_LEVELS,
    access_mode_for,
    dedupe_users,
    default_access_control,
    effective_capacity,
    generate_group_id,
    is_in_branch,
    partition_vendor_eligible,
    system_group_name,
    to_participants,
)
from engage.chat.ports.chat_group_store_port import ChatGroupStorePort
from engage.chat.ports.directory_port import DirectoryPort
from engage.chat.ports.thread_provider_port import ThreadProviderPort
from engage.chat.read_models import (
    AccessControl,
    ChatGroup,
    ChatMember,
    GroupImage,
    GroupMetrics,
    UserRecord,
)
from engage.chat.sync_results import GroupSyncOutcome, SyncAction
from engage.chat.value_objects import ExpectedMembershipSet, RootToken
from engage.common.exceptions.exceptions import ConflictError, EngageException
from engage.config.chat_config import ChatDefaults, SystemGroupDefaults
from engage.config.logging_config import get_logger
from engage.config.reliability_config import ReliabilityConfigs
from engage.infra.reliability.retry import retry_async

log = get_logger("engage.chat.reconciler")

SYSTEM_CREATOR = "system"
GROUP_ID_ATTEMPTS = 3

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class _ParticipantsNotVisible(Exception):
    """Raised inside the confirmation loop while added users are still missing."""

    def __init__(self, missing: FrozenSet[str]):
        super().__init__(f"{len(missing)} participant(s) not yet visible")
        self.missing = missing


def _seniority_key(user: UserRecord) -> Tuple[datetime, str]:
    return (user.created_at or _EPOCH, user.employee_id)


def intended_metrics(users: Sequence[UserRecord]) -> GroupMetrics:
    """Metrics seeded at creation from the participants the thread was created with."""
    admins = sum(1 for u in users if access_mode_for(u) != AccessMode.AGENT)
    return GroupMetrics(
        active_admin_count=admins,
        total_user_count=len(users),
        active_user_count=len(users),
    )


class GroupReconciler:
    """
    Computes expected membership, compares it to local rows and the vendor
    thread, and applies the minimal remove-then-add delta.
    """

    def __init__(
        self,
        store: ChatGroupStorePort,
        directory: DirectoryPort,
        provider: ThreadProviderPort,
        credential: RootCredential,
        defaults: ChatDefaults,
    ):
        self._store = store
        self._directory = directory
        self._provider = provider
        self._credential = credential
        self._defaults = defaults

    # =========================================================================
    # Directory lookups
    # =========================================================================

    async def fetch_branch_users(
        self,
        branch_id: str,
        job_levels: Sequence[int],
        *,
        ceiling: Optional[int] = None,
    ) -> List[UserRecord]:
        """
        Page through active users of a branch.

        Stops when the directory reports no more pages, returns an empty
        page, or the ceiling is reached, whichever comes first.
        """
        ceiling = ceiling or self._defaults.branch_user_ceiling
        page_limit = self._defaults.branch_user_page_limit

        users: List[UserRecord] = []
        skip = 0
        has_more = True

        while has_more and skip < ceiling:
            page = await self._directory.get_by_branch(
                [branch_id],
                job_levels,
                active_only=True,
                skip=skip,
                limit=min(page_limit, ceiling - skip),
            )
            users.extend(page.users)
            skip += page_limit
            has_more = page.has_more and bool(page.users)

        return dedupe_users(users)

    async def expected_branch_admins(self, branch_id: str) -> List[UserRecord]:
        """Active, vendor-provisioned branch admins, oldest first, capped per group."""
        admins = await self.fetch_branch_users(branch_id, BRANCH_ADMIN_LEVELS)
        eligible = [u for u in admins if u.is_branch_admin and u.has_vendor_identity]
        eligible.sort(key=_seniority_key)
        return eligible[:self._defaults.max_admins_per_group]

    async def expected_system_group_users(
        self,
        branch_id: str,
        spec: SystemGroupDefaults,
    ) -> Tuple[str, List[UserRecord]]:
        """
        Name and members of a branch's system group for one category.

        Raises when the branch is unknown or holds more users than a single
        group can take; both abort the category pass.
        """
        ceiling = self._defaults.max_users_ceiling
        users = await self.fetch_branch_users(
            branch_id,
            FIELD_STAFF_LEVELS + BRANCH_ADMIN_LEVELS,
            ceiling=ceiling + 1,
        )
        if len(users) > ceiling:
            raise CapacityExceededError(None, 0, len(users), ceiling)

        branch = await self._directory.get_branch(branch_id)
        if branch is None:
            raise BranchNotFoundError(branch_id)

        allowed_jobs: Optional[FrozenSet[str]] = None
        if spec.job_category:
            allowed_jobs = frozenset(await self._directory.get_job_ids_for_category(spec.job_category))

        members: List[UserRecord] = []
        for user in users:
            if not user.has_vendor_identity:
                continue
            if user.is_branch_admin:
                members.append(user)
            elif user.is_field_staff and (allowed_jobs is None or user.job.job_id in allowed_jobs):
                members.append(user)

        return system_group_name(spec.group_name, branch.name), members

    # =========================================================================
    # Scenario A: creation with a participant set
    # =========================================================================

    async def create_group_for_users(
        self,
        *,
        branch_id: str,
        name: str,
        group_type: GroupType,
        users: Sequence[UserRecord],
        category: Optional[str] = None,
        intended_for_user_id: Optional[str] = None,
        access_control: Optional[AccessControl] = None,
        image: Optional[GroupImage] = None,
        created_by: str = SYSTEM_CREATOR,
        created_by_user_id: Optional[str] = None,
        transaction_id: str = "-",
    ) -> ChatGroup:
        """
        Create the vendor thread with every eligible user in one call, then
        persist the group and its membership rows.

        Rows are not gated on a re-list: the thread was created with exactly
        this participant set.
        """
        users = dedupe_users(users)
        ceiling = self._defaults.max_users_ceiling
        if len(users) > ceiling:
            raise CapacityExceededError(None, 0, len(users), ceiling)

        eligible, ineligible = partition_vendor_eligible(users)
        if ineligible:
            log.warning(
                f"[{transaction_id}] [RECONCILER] Skipping {len(ineligible)} user(s) without vendor identity "
                f"for new group '{name}': {', '.join(u.employee_id for u in ineligible)}"
            )
        if users and not eligible:
            raise VendorProvisioningMissingError(u.employee_id for u in ineligible)

        access_control = access_control or default_access_control(self._defaults)
        limit = effective_capacity(access_control, self._defaults)
        if len(eligible) > limit:
            raise CapacityExceededError(None, 0, len(eligible), limit)

        root = await self._credential.get_token()
        thread_id = await self._provider.create_thread(root, name, to_participants(eligible))

        try:
            group = await self._persist_new_group(
                ChatGroup(
                    group_id=generate_group_id(),
                    vendor_thread_id=thread_id,
                    name=name,
                    group_type=group_type,
                    category=category,
                    branch_id=branch_id,
                    intended_for_user_id=intended_for_user_id,
                    image=image,
                    access_control=access_control,
                    metrics=intended_metrics(eligible),
                    created_by=created_by,
                    created_by_user_id=created_by_user_id,
                    updated_by_user_id=created_by_user_id,
                )
            )
        except EngageException:
            await self._discard_thread(thread_id, root, transaction_id)
            raise

        await self._store.insert_members([self._member_row(group, user) for user in eligible])

        log.info(
            f"[{transaction_id}] [RECONCILER] Created {group_type.value} group {group.group_id} "
            f"(thread {thread_id}) in branch {branch_id} with {len(eligible)} participant(s)"
        )
        return group

    async def _persist_new_group(self, group: ChatGroup) -> ChatGroup:
        for attempt in range(1, GROUP_ID_ATTEMPTS + 1):
            try:
                return await self._store.create_group(group)
            except ConflictError:
                if attempt == GROUP_ID_ATTEMPTS:
                    raise
                log.warning(f"Group id collision on {group.group_id}, regenerating")
                group = group.model_copy(update={"group_id": generate_group_id()})
        raise RuntimeError("Group id generation loop ended without a result")

    async def _discard_thread(self, thread_id: str, root: RootToken, transaction_id: str) -> None:
        try:
            await self._provider.delete_thread(thread_id, root)
        except VendorOperationFailedError as e:
            log.error(f"[{transaction_id}] [RECONCILER] Could not discard orphaned thread {thread_id}: {e}")

    # =========================================================================
    # Membership mutations (write-after-vendor-confirm)
    # =========================================================================

    async def add_members(
        self,
        group: ChatGroup,
        users: Sequence[UserRecord],
        *,
        transaction_id: str = "-",
    ) -> List[str]:
        """
        Add users to a group's thread and record the ones the vendor confirms.

        Capacity is checked before any vendor call; a breach rejects the whole
        add. Returns the employee ids that now have an active row.
        """
        users = dedupe_users(users)
        if not users:
            return []

        eligible, ineligible = partition_vendor_eligible(users)
        if ineligible:
            log.warning(
                f"[{transaction_id}] [RECONCILER] Group {group.group_id}: skipping user(s) without vendor "
                f"identity: {', '.join(u.employee_id for u in ineligible)}"
            )
        if not eligible:
            raise VendorProvisioningMissingError(u.employee_id for u in ineligible)

        rows = await self._store.find_members(
            group.group_id,
            group.branch_id,
            active_only=False,
            limit=self._defaults.member_page_limit,
        )
        rows_by_id = {m.employee_id: m for m in rows}
        active_ids = {m.employee_id for m in rows if m.is_active}

        incoming = sum(1 for u in eligible if u.employee_id not in active_ids)
        current = max(group.metrics.total_user_count, len(active_ids))
        limit = effective_capacity(group.access_control, self._defaults)
        if current + incoming > limit:
            raise CapacityExceededError(group.group_id, current, incoming, limit)

        root = await self._credential.get_token()
        present = await self._participant_ids(group.vendor_thread_id, root)

        to_call = [u for u in eligible if u.vendor_user_id not in present]
        if to_call:
            try:
                await self._provider.add_participants(group.vendor_thread_id, root, to_participants(to_call))
            except VendorOperationFailedError as e:
                log.error(f"[{transaction_id}] [RECONCILER] Add participants failed for group {group.group_id}: {e}")
            present = await self._confirm_visible(
                group,
                root,
                frozenset(u.vendor_user_id for u in to_call),
                transaction_id,
            )

        confirmed = [u for u in eligible if u.vendor_user_id in present]
        dropped = [u.employee_id for u in eligible if u.vendor_user_id not in present]
        if dropped:
            log.warning(
                f"[{transaction_id}] [RECONCILER] Group {group.group_id}: {len(dropped)} user(s) absent from "
                f"thread after add, not recorded: {', '.join(dropped)}"
            )

        new_rows = [self._member_row(group, u) for u in confirmed if u.employee_id not in rows_by_id]
        revived = [
            u.employee_id for u in confirmed
            if u.employee_id in rows_by_id and not rows_by_id[u.employee_id].is_active
        ]

        if new_rows:
            await self._store.insert_members(new_rows)
        if revived:
            await self._store.update_members(group.group_id, revived, {"status": MembershipStatus.ACTIVE})

        return [u.employee_id for u in confirmed]

    async def remove_members(
        self,
        group: ChatGroup,
        employee_ids: Iterable[str],
        *,
        orphan_vendor_ids: Iterable[str] = (),
        transaction_id: str = "-",
    ) -> List[str]:
        """
        Remove employees (and unmapped vendor participants) from the thread,
        then hard-delete the rows of those confirmed absent.

        Returns the employee ids whose rows were deleted.
        """
        wanted = frozenset(employee_ids)
        orphans = frozenset(orphan_vendor_ids)
        if not wanted and not orphans:
            return []

        rows = await self._store.find_members(
            group.group_id,
            group.branch_id,
            active_only=False,
            limit=self._defaults.member_page_limit,
        )
        targets = [m for m in rows if m.employee_id in wanted]
        target_vendor_ids = frozenset(m.vendor_user_id for m in targets) | orphans

        root = await self._credential.get_token()
        present = await self._participant_ids(group.vendor_thread_id, root)

        to_call = sorted(v for v in target_vendor_ids if v in present)
        if to_call:
            try:
                await self._provider.remove_participants(group.vendor_thread_id, root, to_call)
            except VendorOperationFailedError as e:
                log.error(f"[{transaction_id}] [RECONCILER] Remove participants failed for group {group.group_id}: {e}")
            present = await self._participant_ids(group.vendor_thread_id, root)

        removed = [m.employee_id for m in targets if m.vendor_user_id not in present]
        retained = [m.employee_id for m in targets if m.vendor_user_id in present]
        if retained:
            log.warning(
                f"[{transaction_id}] [RECONCILER] Group {group.group_id}: {len(retained)} user(s) still in "
                f"thread after removal, rows kept: {', '.join(retained)}"
            )
        lingering = sorted(v for v in orphans if v in present)
        if lingering:
            log.warning(
                f"[{transaction_id}] [RECONCILER] Group {group.group_id}: unmapped participant(s) still in "
                f"thread: {', '.join(lingering)}"
            )

        if removed:
            await self._store.delete_members(group.group_id, removed)
        return removed

    async def apply_diff(
        self,
        group: ChatGroup,
        diff: MembershipDiff,
        users_by_id: Dict[str, UserRecord],
        *,
        transaction_id: str = "-",
    ) -> Tuple[List[str], List[str]]:
        """Removals, stats, additions, stats. An empty diff touches nothing."""
        if diff.is_empty:
            return [], []

        log.info(f"[{transaction_id}] [RECONCILER] Group {group.group_id} drift: {diff.summary()}")

        removed: List[str] = []
        if diff.to_remove or diff.orphan_vendor_ids:
            removed = await self.remove_members(
                group,
                diff.to_remove,
                orphan_vendor_ids=diff.orphan_vendor_ids,
                transaction_id=transaction_id,
            )
            metrics = await self._store.recompute_and_persist_stats(group.group_id, group.branch_id)
            group = group.model_copy(update={"metrics": metrics})

        added: List[str] = []
        if diff.to_add:
            users = [users_by_id[e] for e in sorted(diff.to_add) if e in users_by_id]
            added = await self.add_members(group, users, transaction_id=transaction_id)
            await self._store.recompute_and_persist_stats(group.group_id, group.branch_id)

        return added, removed

    # =========================================================================
    # Scenario B: per-field-staff DirectMessage group
    # =========================================================================

    async def reconcile_direct_message(
        self,
        field_staff: UserRecord,
        branch_id: str,
        *,
        transaction_id: str = "-",
    ) -> GroupSyncOutcome:
        """Converge a field-staff member's private group in one branch."""
        if not field_staff.has_vendor_identity:
            log.warning(
                f"[{transaction_id}] [RECONCILER] Field staff {field_staff.employee_id} has no vendor identity, "
                f"direct message group not synced"
            )
            return GroupSyncOutcome(action=SyncAction.SKIPPED, error="vendor identity missing")

        active = await self._store.find_direct_message_groups(
            branch_id, field_staff.employee_id, [GroupStatus.ACTIVE]
        )
        stale_removed: List[str] = []
        for stale in active[1:]:
            await self.delete_group(stale, RemovalMode.HARD, transaction_id=transaction_id)
            stale_removed.append(stale.group_id)
        if stale_removed:
            log.warning(
                f"[{transaction_id}] [RECONCILER] Removed {len(stale_removed)} duplicate direct message "
                f"group(s) for {field_staff.employee_id} in branch {branch_id}: {', '.join(stale_removed)}"
            )

        admins = await self.expected_branch_admins(branch_id)

        action = SyncAction.RECONCILED
        if active:
            group = active[0]
        else:
            inactive = await self._store.find_direct_message_groups(
                branch_id, field_staff.employee_id, [GroupStatus.INACTIVE]
            )
            if not inactive:
                created = await self.create_group_for_users(
                    branch_id=branch_id,
                    name=field_staff.display_name,
                    group_type=GroupType.DIRECT_MESSAGE,
                    users=[field_staff, *admins],
                    intended_for_user_id=field_staff.employee_id,
                    transaction_id=transaction_id,
                )
                return GroupSyncOutcome(
                    action=SyncAction.CREATED,
                    group_id=created.group_id,
                    added=[field_staff.employee_id, *(a.employee_id for a in admins)],
                    stale_removed=stale_removed,
                )
            group = await self._store.upsert_group(inactive[-1].group_id, {"status": GroupStatus.ACTIVE})
            action = SyncAction.REACTIVATED
            log.info(f"[{transaction_id}] [RECONCILER] Reactivated direct message group {group.group_id}")

        expected = ExpectedMembershipSet(
            admin_ids=tuple(a.employee_id for a in admins),
            field_staff_ids=(field_staff.employee_id,),
        )
        users_by_id = {u.employee_id: u for u in [field_staff, *admins]}

        members, vendor_ids, root = await self._current_state(group)
        diff = compute_direct_message_diff(
            expected,
            field_staff.employee_id,
            members,
            vendor_ids,
            expected_vendor_ids={e: u.vendor_user_id for e, u in users_by_id.items()},
            root_vendor_id=root.identity,
        )

        if diff.is_empty:
            log.info(
                f"[{transaction_id}] [RECONCILER] Direct message group {group.group_id} HEALTHY "
                f"for {field_staff.employee_id} in branch {branch_id}"
            )
            return GroupSyncOutcome(
                action=action if action == SyncAction.REACTIVATED else SyncAction.UNCHANGED,
                group_id=group.group_id,
                stale_removed=stale_removed,
            )

        added, removed = await self.apply_diff(group, diff, users_by_id, transaction_id=transaction_id)
        return GroupSyncOutcome(
            action=action,
            group_id=group.group_id,
            added=added,
            removed=removed,
            stale_removed=stale_removed,
        )

    async def sync_branch_admin(
        self,
        admin: UserRecord,
        branch_id: str,
        *,
        transaction_id: str = "-",
    ) -> List[GroupSyncOutcome]:
        """
        Admin self-sync: no private group may be intended for an admin, and
        the admin must sit in every other DirectMessage group of the branch.
        """
        outcomes: List[GroupSyncOutcome] = []

        own = await self._store.find_direct_message_groups(branch_id, admin.employee_id, [GroupStatus.ACTIVE])
        for group in own:
            await self._store.upsert_group(group.group_id, {"status": GroupStatus.INACTIVE})
            outcomes.append(GroupSyncOutcome(action=SyncAction.DEACTIVATED, group_id=group.group_id))
        if own:
            log.info(
                f"[{transaction_id}] [RECONCILER] Deactivated {len(own)} direct message group(s) "
                f"intended for admin {admin.employee_id} in branch {branch_id}"
            )

        if not admin.has_vendor_identity:
            log.warning(f"[{transaction_id}] [RECONCILER] Admin {admin.employee_id} has no vendor identity")
            return outcomes

        branch_groups = await self._store.find_groups_by_branches(
            [branch_id],
            [GroupType.DIRECT_MESSAGE],
            active_only=True,
            limit=self._defaults.branch_user_ceiling,
        )
        memberships = await self._store.find_member_groups(admin.employee_id, branch_id, active_only=True)
        joined = {m.group_id for m in memberships}

        missing = [
            g for g in branch_groups
            if g.group_id not in joined and g.intended_for_user_id != admin.employee_id
        ]
        if not missing:
            return outcomes

        log.warning(
            f"[{transaction_id}] [RECONCILER] Admin {admin.employee_id} missing from {len(missing)} direct "
            f"message group(s) in branch {branch_id}"
        )
        for group in missing:
            try:
                added = await self.add_members(group, [admin], transaction_id=transaction_id)
                await self._store.recompute_and_persist_stats(group.group_id, group.branch_id)
                outcomes.append(GroupSyncOutcome(action=SyncAction.RECONCILED, group_id=group.group_id, added=added))
            except EngageException as e:
                log.error(f"[{transaction_id}] [RECONCILER] Could not add admin to group {group.group_id}: {e}")
                outcomes.append(GroupSyncOutcome(action=SyncAction.FAILED, group_id=group.group_id, error=str(e)))

        return outcomes

    # =========================================================================
    # Scenario C: branch-wide system groups
    # =========================================================================

    async def sync_system_groups(self, branch_id: str, *, transaction_id: str = "-") -> List[GroupSyncOutcome]:
        """
        Reconcile every configured system group category of a branch, one
        after the other. A failing category is recorded and the next one runs.
        """
        outcomes: List[GroupSyncOutcome] = []
        for spec in self._defaults.system_groups:
            try:
                outcome = await self.sync_system_group(branch_id, spec, transaction_id=transaction_id)
            except DriftDetectedError as e:
                log.error(f"[{transaction_id}] [RECONCILER] {e}")
                outcome = GroupSyncOutcome(
                    action=SyncAction.DRIFT,
                    category=spec.category,
                    group_id=e.group_ids[0] if e.group_ids else None,
                    error=e.reason,
                )
            except EngageException as e:
                log.error(
                    f"[{transaction_id}] [RECONCILER] System group '{spec.category}' failed "
                    f"for branch {branch_id}: {e}"
                )
                outcome = GroupSyncOutcome(action=SyncAction.FAILED, category=spec.category, error=str(e))
            outcomes.append(outcome)
        return outcomes

    async def sync_system_group(
        self,
        branch_id: str,
        spec: SystemGroupDefaults,
        *,
        transaction_id: str = "-",
    ) -> GroupSyncOutcome:
        name, users = await self.expected_system_group_users(branch_id, spec)

        current = await self._store.find_broadcast_groups(branch_id, spec.category)
        if len(current) > 1:
            raise DriftDetectedError(
                branch_id,
                f"{len(current)} broadcast groups for category '{spec.category}'",
                [g.group_id for g in current],
            )

        if not current:
            created = await self.create_group_for_users(
                branch_id=branch_id,
                name=name,
                group_type=GroupType.BROADCAST,
                users=users,
                category=spec.category,
                transaction_id=transaction_id,
            )
            return GroupSyncOutcome(
                action=SyncAction.CREATED,
                group_id=created.group_id,
                category=spec.category,
                added=[u.employee_id for u in users],
            )

        group = current[0]
        if not group.is_active:
            raise DriftDetectedError(
                branch_id,
                f"system group {group.group_id} for category '{spec.category}' is {group.status.value}",
                [group.group_id],
            )

        expected = ExpectedMembershipSet(
            admin_ids=tuple(u.employee_id for u in users if u.is_branch_admin),
            field_staff_ids=tuple(u.employee_id for u in users if u.is_field_staff),
        )
        users_by_id = {u.employee_id: u for u in users}

        members, vendor_ids, root = await self._current_state(group)
        diff = compute_broadcast_diff(
            expected,
            members,
            vendor_ids,
            expected_vendor_ids={u.employee_id: u.vendor_user_id for u in users},
            root_vendor_id=root.identity,
        )
        if diff.is_empty:
            log.info(f"[{transaction_id}] [RECONCILER] System group {group.group_id} ({spec.category}) HEALTHY")
            return GroupSyncOutcome(action=SyncAction.UNCHANGED, group_id=group.group_id, category=spec.category)

        added, removed = await self.apply_diff(group, diff, users_by_id, transaction_id=transaction_id)
        return GroupSyncOutcome(
            action=SyncAction.RECONCILED,
            group_id=group.group_id,
            category=spec.category,
            added=added,
            removed=removed,
        )

    # =========================================================================
    # Single-group routing (role change, deactivation)
    # =========================================================================

    async def reconcile_group(self, group: ChatGroup, *, transaction_id: str = "-") -> GroupSyncOutcome:
        """Re-derive one group's expected membership from its type and converge it."""
        if group.group_type == GroupType.DIRECT_MESSAGE:
            owner = None
            if group.intended_for_user_id:
                owner = await self._directory.get_by_id(group.intended_for_user_id)
            if owner is None or not owner.is_active or not owner.is_field_staff or not is_in_branch(owner, group.branch_id):
                if group.is_active:
                    await self._store.upsert_group(group.group_id, {"status": GroupStatus.INACTIVE})
                log.info(
                    f"[{transaction_id}] [RECONCILER] Direct message group {group.group_id} no longer serves "
                    f"a field staff member of branch {group.branch_id}, deactivated"
                )
                return GroupSyncOutcome(action=SyncAction.DEACTIVATED, group_id=group.group_id)
            return await self.reconcile_direct_message(owner, group.branch_id, transaction_id=transaction_id)

        spec = next((s for s in self._defaults.system_groups if s.category == group.category), None)
        if spec is None:
            return GroupSyncOutcome(action=SyncAction.SKIPPED, group_id=group.group_id, category=group.category)
        return await self.sync_system_group(group.branch_id, spec, transaction_id=transaction_id)

    # =========================================================================
    # Removal
    # =========================================================================

    async def delete_group(
        self,
        group: ChatGroup,
        mode: RemovalMode,
        *,
        transaction_id: str = "-",
    ) -> None:
        """Soft: archive group and rows, keep the thread. Hard: delete thread, then rows."""
        if mode == RemovalMode.HARD:
            root = await self._credential.get_token()
            await self._provider.delete_thread(group.vendor_thread_id, root)
        await self._store.remove_group(group.group_id, mode)
        log.info(f"[{transaction_id}] [RECONCILER] Removed group {group.group_id} ({mode.value})")

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _current_state(self, group: ChatGroup) -> Tuple[List[ChatMember], List[str], RootToken]:
        members = await self._store.find_members(
            group.group_id,
            group.branch_id,
            active_only=False,
            limit=self._defaults.member_page_limit,
        )
        root = await self._credential.get_token()
        vendor_ids = sorted(await self._participant_ids(group.vendor_thread_id, root))
        return members, vendor_ids, root

    async def _participant_ids(self, thread_id: str, root: RootToken) -> FrozenSet[str]:
        participants = await self._provider.list_participants(thread_id, root)
        return frozenset(p.vendor_user_id for p in participants)

    async def _confirm_visible(
        self,
        group: ChatGroup,
        root: RootToken,
        wanted: FrozenSet[str],
        transaction_id: str,
    ) -> FrozenSet[str]:
        """Re-list until the wanted ids show up or confirmation retries run out."""
        last_seen: Dict[str, FrozenSet[str]] = {"present": frozenset()}

        async def _list_and_check() -> FrozenSet[str]:
            present = await self._participant_ids(group.vendor_thread_id, root)
            last_seen["present"] = present
            missing = wanted - present
            if missing:
                raise _ParticipantsNotVisible(missing)
            return present

        retry_config = ReliabilityConfigs.vendor_confirm_retry(
            self._defaults.confirm_retry_attempts,
            self._defaults.confirm_retry_delay_ms,
        ).model_copy(update={"retry_condition": lambda e: isinstance(e, _ParticipantsNotVisible)})

        try:
            return await retry_async(
                _list_and_check,
                retry_config=retry_config,
                context=f"[{transaction_id}] confirm participants of {group.group_id}",
            )
        except _ParticipantsNotVisible:
            return last_seen["present"]

    def _member_row(self, group: ChatGroup, user: UserRecord) -> ChatMember:
        return ChatMember(
            employee_id=user.employee_id,
            group_id=group.group_id,
            vendor_user_id=user.vendor_user_id,
            vendor_thread_id=group.vendor_thread_id,
            branch_id=group.branch_id,
            display_name=user.display_name,
            image=user.image,
            access_mode=access_mode_for(user),
        )
