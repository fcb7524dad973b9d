# =============================================================================
# File: engage/chat/service.py
# Description: Public chat group operations built on the reconciler and store
# =============================================================================

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from engage.chat.cache_keys import GROUP_NAMESPACE, READ_MARKER_NAMESPACE
from engage.chat.credentials import RootCredential
from engage.chat.enums import (
    AccessMode,
    GroupSortField,
    GroupStatus,
    GroupType,
    MessageActivity,
    MessageStatus,
    RemovalMode,
    SortOrder,
    UserLevel,
)
from engage.chat.exceptions import (
    CapacityExceededError,
    ChatUserNotFoundError,
    IneligibleUserError,
    MembershipNotFoundError,
    NoChangesDetectedError,
    VendorOperationFailedError,
    VendorProvisioningMissingError,
)
from engage.chat.membership_diff import compare_group_changes, compute_explicit_diff
from engage.chat.membership_rules import (
    BRANCH_ADMIN_LEVELS,
    FIELD_STAFF_LEVELS,
    access_mode_for,
    default_access_control,
    effective_capacity,
)
from engage.chat.ports.capability_ports import BlobStorePort, KeyValueCachePort
from engage.chat.ports.chat_group_store_port import ChatGroupStorePort
from engage.chat.ports.directory_port import DirectoryPort
from engage.chat.ports.thread_provider_port import ThreadProviderPort
from engage.chat.read_models import (
    AccessControl,
    ChatGroup,
    ContactRecord,
    GroupChanges,
    GroupImage,
    GroupMetrics,
    GroupQuery,
    LastMessageActivity,
    ReadMarker,
    UserRecord,
    VendorUserView,
    utc_now,
)
from engage.chat.reconciler import GroupReconciler
from engage.chat.sync_results import BranchSyncReport, GroupSyncOutcome, SyncAction
from engage.chat.value_objects import AttachmentRef, CompletedPart, MultipartUpload, VendorToken
from engage.common.exceptions.exceptions import EngageException, ValidationError
from engage.config.chat_config import ChatDefaults
from engage.config.logging_config import get_logger, log_metrics_table

log = get_logger("engage.chat.service")

ATTACHMENT_PREFIX = "chat_attachments"
CHAT_PROFILE_LEVELS = (UserLevel.FIELD_STAFF, UserLevel.BRANCH_ADMIN)


def new_transaction_id() -> str:
    return uuid.uuid4().hex[:12]


class ChatGroupService:
    """
    Chat group operations: creation, edits, removal, listings, attachments,
    message activity, chat profile provisioning and reconciliation triggers.

    Every public operation logs under a transaction id. Operation-initiating
    calls raise typed errors (not found, capacity, no-op, vendor failure);
    batch reconciliation catches per branch and carries on.
    """

    def __init__(
        self,
        store: ChatGroupStorePort,
        directory: DirectoryPort,
        provider: ThreadProviderPort,
        credential: RootCredential,
        defaults: ChatDefaults,
        *,
        cache: Optional[KeyValueCachePort] = None,
        blob_store: Optional[BlobStorePort] = None,
        reconciler: Optional[GroupReconciler] = None,
    ):
        self._store = store
        self._directory = directory
        self._provider = provider
        self._credential = credential
        self._defaults = defaults
        self._cache = cache
        self._blob_store = blob_store
        self._reconciler = reconciler or GroupReconciler(store, directory, provider, credential, defaults)

    @property
    def reconciler(self) -> GroupReconciler:
        return self._reconciler

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_group(self, group_id: str, branch_id: Optional[str] = None) -> ChatGroup:
        """Group by id, read through the short-TTL cache."""
        if self._cache is not None:
            cached = await self._cache.get(GROUP_NAMESPACE, group_id)
            if cached:
                group = ChatGroup.model_validate(cached)
                if branch_id is None or group.branch_id == branch_id:
                    return group

        group = await self._store.find_group_by_id(group_id, branch_id)

        if self._cache is not None:
            await self._cache.set(
                GROUP_NAMESPACE,
                group_id,
                group.model_dump(mode="json"),
                ttl_seconds=self._defaults.group_cache_ttl_seconds,
            )
        return group

    async def list_groups(
        self,
        query: GroupQuery,
        *,
        skip: int = 0,
        limit: Optional[int] = None,
        sort_field: GroupSortField = GroupSortField.CREATED_AT,
        sort_order: SortOrder = SortOrder.DESC,
        search_text: Optional[str] = None,
    ) -> List[ChatGroup]:
        return await self._store.find_groups(
            query,
            skip=skip,
            limit=limit or self._defaults.group_list_limit,
            sort_field=sort_field,
            sort_order=sort_order,
            search_text=search_text.strip() if search_text else None,
        )

    async def count_groups(self, query: GroupQuery, *, search_text: Optional[str] = None) -> int:
        return await self._store.count_groups(query, search_text=search_text.strip() if search_text else None)

    async def list_groups_for_user(self, employee_id: str, *, transaction_id: Optional[str] = None) -> List[ChatGroup]:
        """
        Groups an employee should see.

        Admins: their branch groups, minus DirectMessage groups intended for
        themselves (deactivated on sight) and groups whose field-staff owner
        is gone or placed in another branch. Field staff: their own
        DirectMessage group, renamed to the branch name, plus the Broadcast
        groups they belong to in their primary branch.
        """
        transaction_id = transaction_id or new_transaction_id()
        user = await self._require_user(employee_id)

        if user.user_level not in CHAT_PROFILE_LEVELS:
            log.warning(f"[{transaction_id}] [CHAT SERVICE] Groups cannot be listed for role {user.user_level.value} of {employee_id}")
            return []

        groups = await self._member_groups(employee_id, user.branch_ids)

        if user.is_field_staff:
            visible = await self._field_staff_view(user, groups, transaction_id)
        else:
            visible = await self._admin_view(user, groups, transaction_id)

        log.info(f"[{transaction_id}] [CHAT SERVICE] {len(visible)} group(s) listed for {employee_id}")
        return visible

    async def _member_groups(self, employee_id: str, branch_ids: Sequence[str]) -> List[ChatGroup]:
        group_ids: List[str] = []
        for branch_id in branch_ids:
            rows = await self._store.find_member_groups(employee_id, branch_id, active_only=True)
            group_ids.extend(r.group_id for r in rows)
        if not group_ids:
            return []
        return await self._store.find_groups(
            GroupQuery(group_ids=group_ids, branch_ids=list(branch_ids), statuses=[GroupStatus.ACTIVE]),
            limit=len(group_ids),
        )

    async def _admin_view(self, admin: UserRecord, groups: List[ChatGroup], transaction_id: str) -> List[ChatGroup]:
        field_staff: Dict[str, UserRecord] = {}
        for branch_id in admin.branch_ids:
            for user in await self._reconciler.fetch_branch_users(branch_id, FIELD_STAFF_LEVELS):
                field_staff[user.employee_id] = user

        visible: List[ChatGroup] = []
        for group in groups:
            if group.group_type == GroupType.DIRECT_MESSAGE and group.intended_for_user_id == admin.employee_id:
                await self._store.upsert_group(group.group_id, {"status": GroupStatus.INACTIVE})
                log.info(f"[{transaction_id}] [CHAT SERVICE] Deactivated direct message group {group.group_id} intended for admin {admin.employee_id}")
                continue

            if group.group_type == GroupType.DIRECT_MESSAGE:
                owner = field_staff.get(group.intended_for_user_id or "")
                if owner is None or not owner.branch_ids or owner.branch_ids[0] != group.branch_id:
                    log.warning(f"[{transaction_id}] [CHAT SERVICE] Hiding misplaced group {group.group_id} from admin {admin.employee_id}")
                    continue

            visible.append(group)
        return visible

    async def _field_staff_view(self, user: UserRecord, groups: List[ChatGroup], transaction_id: str) -> List[ChatGroup]:
        primary_branch = user.branch_ids[0] if user.branch_ids else None
        branch_names: Dict[str, str] = {}

        visible: List[ChatGroup] = []
        for group in groups:
            if group.branch_id != primary_branch:
                continue
            if group.group_type == GroupType.DIRECT_MESSAGE:
                if group.intended_for_user_id != user.employee_id:
                    log.warning(f"[{transaction_id}] [CHAT SERVICE] Field staff {user.employee_id} placed in foreign group {group.group_id}")
                    continue
                if group.branch_id not in branch_names:
                    branch = await self._directory.get_branch(group.branch_id)
                    branch_names[group.branch_id] = branch.name if branch else group.name
                group = group.model_copy(update={"name": branch_names[group.branch_id]})
            visible.append(group)
        return visible

    async def get_branch_contacts(self, branch_ids: Sequence[str], *, transaction_id: Optional[str] = None) -> List[ContactRecord]:
        """
        Chat-capable users of the branches. Field staff appear only with their
        DirectMessage group; admins appear on their own.
        """
        transaction_id = transaction_id or new_transaction_id()

        users: Dict[str, UserRecord] = {}
        direct_groups: Dict[str, ChatGroup] = {}
        for branch_id in branch_ids:
            for user in await self._reconciler.fetch_branch_users(branch_id, FIELD_STAFF_LEVELS + BRANCH_ADMIN_LEVELS):
                users.setdefault(user.employee_id, user)
        groups = await self._store.find_groups_by_branches(
            list(branch_ids),
            [GroupType.DIRECT_MESSAGE],
            active_only=True,
            limit=self._defaults.branch_user_ceiling,
        )
        for group in groups:
            if group.intended_for_user_id:
                direct_groups[group.intended_for_user_id] = group

        contacts: List[ContactRecord] = []
        for user in users.values():
            if not user.has_vendor_identity:
                continue
            mode = access_mode_for(user)
            group = direct_groups.get(user.employee_id)
            if mode == AccessMode.AGENT and group is None:
                log.warning(f"[{transaction_id}] [CHAT SERVICE] Missing direct message group for field staff {user.employee_id}")
                continue
            contacts.append(
                ContactRecord(
                    employee_id=user.employee_id,
                    display_name=user.display_name,
                    vendor_user_id=user.vendor_user_id,
                    access_mode=mode,
                    branch_ids=list(user.branch_ids),
                    job_id=user.job.job_id,
                    job_level=user.job.level,
                    job_title=user.job.title,
                    image=user.image,
                    group_id=group.group_id if group else None,
                    group_name=user.display_name if group else None,
                )
            )
        return contacts

    async def get_group_vendor_users(self, group_id: str, branch_id: Optional[str] = None) -> List[VendorUserView]:
        """Vendor participants of a group's thread, annotated with local presence."""
        group = await self._store.find_group_by_id(group_id, branch_id)
        rows = await self._store.find_members(
            group.group_id,
            group.branch_id,
            active_only=True,
            limit=self._defaults.member_page_limit,
        )
        by_vendor_id = {m.vendor_user_id: m for m in rows}

        root = await self._credential.get_token()
        participants = await self._provider.list_participants(group.vendor_thread_id, root)

        views: List[VendorUserView] = []
        for participant in participants:
            member = by_vendor_id.get(participant.vendor_user_id)
            views.append(
                VendorUserView(
                    vendor_user_id=participant.vendor_user_id,
                    display_name=participant.display_name or (member.display_name if member else ""),
                    employee_id=member.employee_id if member else None,
                    is_present_locally=member is not None,
                )
            )
        return views

    # =========================================================================
    # Group creation
    # =========================================================================

    async def create_group(
        self,
        *,
        branch_id: str,
        name: str,
        group_type: GroupType,
        admin_ids: Sequence[str] = (),
        field_staff_ids: Sequence[str] = (),
        intended_for_user_id: Optional[str] = None,
        category: Optional[str] = None,
        access_control: Optional[AccessControl] = None,
        image: Optional[GroupImage] = None,
        created_by: str = "user",
        created_by_user_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> ChatGroup:
        """
        Full-control creation from explicit admin and field-staff lists (plus
        an optional intended-for user). Users without a vendor identity are
        skipped; if none has one, creation fails.
        """
        transaction_id = transaction_id or new_transaction_id()

        participant_ids = list(dict.fromkeys([*admin_ids, *field_staff_ids]))
        if intended_for_user_id and intended_for_user_id not in participant_ids:
            participant_ids.append(intended_for_user_id)

        ceiling = self._defaults.max_users_ceiling
        if len(participant_ids) > ceiling:
            raise CapacityExceededError(None, 0, len(participant_ids), ceiling)
        if group_type == GroupType.DIRECT_MESSAGE and not intended_for_user_id:
            raise ValidationError("Direct message groups need an intended-for user")
        if access_control is not None and access_control.max_users_allowed > ceiling:
            raise ValidationError(f"max_users_allowed {access_control.max_users_allowed} exceeds ceiling {ceiling}")

        users = await self._directory.get_by_ids(participant_ids, active_only=True)
        unresolved = set(participant_ids) - {u.employee_id for u in users}
        if unresolved:
            log.warning(f"[{transaction_id}] [CHAT SERVICE] Unresolved participant id(s) ignored: {', '.join(sorted(unresolved))}")

        log.info(f"[{transaction_id}] [CHAT SERVICE] Creating {group_type.value} group '{name}' in branch {branch_id}")
        try:
            return await self._reconciler.create_group_for_users(
                branch_id=branch_id,
                name=name,
                group_type=group_type,
                users=users,
                category=category,
                intended_for_user_id=intended_for_user_id,
                access_control=access_control,
                image=image,
                created_by=created_by,
                created_by_user_id=created_by_user_id,
                transaction_id=transaction_id,
            )
        except EngageException as e:
            log.error(f"[{transaction_id}] [CHAT SERVICE] Group creation failed in branch {branch_id}: {e}")
            raise

    async def create_group_for_branch(
        self,
        branch_id: str,
        *,
        name: str,
        group_type: GroupType,
        participant_ids: Sequence[str],
        intended_for_user_id: Optional[str] = None,
        category: Optional[str] = None,
        attachments_allowed: Optional[bool] = None,
        can_field_staff_reply: Optional[bool] = None,
        created_by_user_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> ChatGroup:
        """Convenience creation: participants are split into admins and field staff by role."""
        access_control = default_access_control(self._defaults)
        overrides: Dict[str, Any] = {}
        if attachments_allowed is not None:
            overrides["attachments_allowed"] = attachments_allowed
        if can_field_staff_reply is not None:
            overrides["bidirectional"] = can_field_staff_reply
        if overrides:
            access_control = access_control.model_copy(update=overrides)

        users = await self._directory.get_by_ids(list(participant_ids), active_only=True)
        admins = [u.employee_id for u in users if not u.is_field_staff]
        field_staff = [u.employee_id for u in users if u.is_field_staff]

        return await self.create_group(
            branch_id=branch_id,
            name=name,
            group_type=group_type,
            admin_ids=admins,
            field_staff_ids=field_staff,
            intended_for_user_id=intended_for_user_id,
            category=category,
            access_control=access_control,
            created_by_user_id=created_by_user_id,
            transaction_id=transaction_id,
        )

    # =========================================================================
    # Update / removal
    # =========================================================================

    async def update_group(
        self,
        group_id: str,
        *,
        changes: Optional[GroupChanges] = None,
        add_ids: Iterable[str] = (),
        remove_ids: Iterable[str] = (),
        branch_id: Optional[str] = None,
        updated_by_user_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> ChatGroup:
        """
        Apply field edits and explicit participant adds/removes.

        Raises NoChangesDetectedError when neither the fields nor the
        membership would change, ChatUserNotFoundError when none of the
        requested additions resolve in the directory, and
        CapacityExceededError when the projected member count would not fit
        the group's capacity. All three are raised before any write.
        Removals run before additions; field edits are persisted last.
        """
        transaction_id = transaction_id or new_transaction_id()
        group = await self._store.find_group_by_id(group_id, branch_id)

        field_changes = compare_group_changes(group, changes or GroupChanges())
        members = await self._store.find_members(
            group.group_id,
            group.branch_id,
            active_only=False,
            limit=self._defaults.member_page_limit,
        )
        diff = compute_explicit_diff(add_ids, remove_ids, members)

        if not field_changes and not diff.to_add and not diff.to_remove:
            log.info(f"[{transaction_id}] [CHAT SERVICE] Update of group {group_id} rejected: no changes")
            raise NoChangesDetectedError(group_id)

        access_control = field_changes.get("access_control")
        if access_control is not None and access_control.max_users_allowed > self._defaults.max_users_ceiling:
            raise ValidationError(
                f"max_users_allowed {access_control.max_users_allowed} exceeds ceiling {self._defaults.max_users_ceiling}"
            )

        users_by_id: Dict[str, UserRecord] = {}
        if diff.to_add:
            users = await self._directory.get_by_ids(sorted(diff.to_add), active_only=True)
            users_by_id = {u.employee_id: u for u in users if u.employee_id in diff.to_add}
            unresolved = sorted(diff.to_add - set(users_by_id))
            if not users_by_id:
                raise ChatUserNotFoundError(unresolved[0])
            if unresolved:
                log.warning(
                    f"[{transaction_id}] [CHAT SERVICE] Group {group_id}: skipping unknown or inactive "
                    f"employee(s): {', '.join(unresolved)}"
                )

        active_ids = {m.employee_id for m in members if m.is_active}
        incoming = sum(1 for u in users_by_id.values() if u.has_vendor_identity)
        if access_control is not None or incoming:
            remaining = max(group.metrics.total_user_count, len(active_ids)) - len(diff.to_remove)
            limit = effective_capacity(access_control or group.access_control, self._defaults)
            if remaining + incoming > limit:
                raise CapacityExceededError(group.group_id, remaining, incoming, limit)

        if diff.to_add or diff.to_remove:
            target = group.model_copy(update={"access_control": access_control}) if access_control else group
            added, removed = await self._reconciler.apply_diff(
                target,
                diff,
                users_by_id,
                transaction_id=transaction_id,
            )
            log.info(f"[{transaction_id}] [CHAT SERVICE] Group {group_id} participants: +{len(added)} -{len(removed)}")

        if field_changes:
            field_changes["updated_by_user_id"] = updated_by_user_id
            await self._store.upsert_group(group.group_id, field_changes)
            log.info(f"[{transaction_id}] [CHAT SERVICE] Group {group_id} fields updated: {', '.join(sorted(field_changes))}")

        return await self._store.find_group_by_id(group.group_id)

    async def remove_group(
        self,
        group_id: str,
        mode: RemovalMode = RemovalMode.SOFT,
        *,
        branch_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> None:
        transaction_id = transaction_id or new_transaction_id()
        group = await self._store.find_group_by_id(group_id, branch_id)
        await self._reconciler.delete_group(group, mode, transaction_id=transaction_id)

    async def refresh_group_stats(self, group_id: str, branch_id: Optional[str] = None) -> GroupMetrics:
        group = await self._store.find_group_by_id(group_id, branch_id)
        return await self._store.recompute_and_persist_stats(group.group_id, group.branch_id)

    async def update_member_preferences(
        self,
        group_id: str,
        employee_id: str,
        *,
        mute_notifications: Optional[bool] = None,
        mute_until: Optional[datetime] = None,
        last_seen_at: Optional[datetime] = None,
    ) -> None:
        changes: Dict[str, Any] = {}
        if mute_notifications is not None:
            changes["mute_notifications"] = mute_notifications
            changes["mute_until"] = mute_until if mute_notifications else None
        if last_seen_at is not None:
            changes["last_seen_at"] = last_seen_at
        if not changes:
            raise NoChangesDetectedError(group_id)

        updated = await self._store.update_members(group_id, [employee_id], changes)
        if not updated:
            raise MembershipNotFoundError(group_id, employee_id)

    # =========================================================================
    # Message activity
    # =========================================================================

    async def record_message_activity(
        self,
        group_id: str,
        activity: MessageActivity,
        *,
        employee_id: str,
        message_id: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        """
        Sent: store the group's last message activity. Read: keep the
        employee's last-read marker in the cache layer.
        """
        if activity == MessageActivity.READ:
            if not message_id:
                raise ValidationError("message_id is required for a read marker")
            await self._cache_required().hset(
                READ_MARKER_NAMESPACE,
                group_id,
                employee_id,
                {"message_id": message_id, "timestamp": utc_now().isoformat()},
                ttl_seconds=self._defaults.read_marker_ttl_seconds,
            )
            return

        if message is None:
            raise ValidationError("message is required for a sent activity")
        await self._store.upsert_group(
            group_id,
            {
                "last_message_activity": LastMessageActivity(
                    message_id=message_id,
                    message=message,
                    message_status=MessageStatus.SENT,
                    timestamp=utc_now(),
                )
            },
        )
        log.debug(f"[CHAT SERVICE] Message activity recorded for group {group_id}")

    async def find_read_status(self, group_ids: Sequence[str], employee_id: str) -> List[ReadMarker]:
        cache = self._cache_required()
        markers: List[ReadMarker] = []
        for group_id in group_ids:
            value = await cache.hget(READ_MARKER_NAMESPACE, group_id, employee_id)
            if not value:
                continue
            if isinstance(value, str):
                markers.append(ReadMarker(group_id=group_id, message_id=value))
            else:
                markers.append(ReadMarker(group_id=group_id, **value))
        return markers

    def _cache_required(self) -> KeyValueCachePort:
        if self._cache is None:
            raise ValidationError("Cache layer is not configured")
        return self._cache

    # =========================================================================
    # Attachments
    # =========================================================================

    def _blob_store_required(self) -> BlobStorePort:
        if self._blob_store is None:
            raise ValidationError("Attachment storage is not configured")
        return self._blob_store

    @staticmethod
    def attachment_key(file_name: str) -> str:
        file_name = file_name.strip().lstrip("/")
        if not file_name:
            raise ValidationError("file_name must not be empty")
        return f"{ATTACHMENT_PREFIX}/{file_name}"

    async def upload_attachment(self, file_name: str, body: bytes, content_type: str) -> AttachmentRef:
        """Single-shot upload for small files."""
        key = self.attachment_key(file_name)
        url = await self._blob_store_required().put_object(key, body, content_type)
        return AttachmentRef(file_identifier=key, signed_url=url)

    async def initiate_large_attachment(
        self,
        file_name: str,
        part_count: int,
        content_type: Optional[str] = None,
    ) -> MultipartUpload:
        if part_count < 1:
            raise ValidationError("part_count must be at least 1")
        key = self.attachment_key(file_name)
        upload = await self._blob_store_required().initiate_multipart_upload(key, part_count, content_type)
        log.info(f"[CHAT SERVICE] Multipart upload {upload.upload_id} started for {key} ({part_count} parts)")
        return upload

    async def finalize_large_attachment(
        self,
        file_identifier: str,
        upload_id: str,
        parts: Sequence[CompletedPart],
    ) -> str:
        if not parts:
            raise ValidationError("parts must not be empty")
        ordered = sorted(parts, key=lambda p: p.part_number)
        return await self._blob_store_required().complete_multipart_upload(upload_id, file_identifier, ordered)

    async def get_attachment_url(self, file_identifier: str) -> str:
        return await self._blob_store_required().get_signed_url(
            file_identifier,
            expires_in=self._defaults.signed_url_ttl_seconds,
        )

    # =========================================================================
    # Chat profiles
    # =========================================================================

    async def create_chat_profile(self, employee_id: str, *, transaction_id: Optional[str] = None) -> str:
        """Create and bind a vendor identity; an existing binding is returned as is."""
        transaction_id = transaction_id or new_transaction_id()
        user = await self._require_user(employee_id)
        if user.vendor_user_id:
            return user.vendor_user_id
        return await self._provision(user, transaction_id)

    async def reset_chat_profile(self, employee_id: str, *, transaction_id: Optional[str] = None) -> str:
        """Replace an employee's vendor identity with a fresh one."""
        transaction_id = transaction_id or new_transaction_id()
        user = await self._require_user(employee_id)
        if user.user_level not in CHAT_PROFILE_LEVELS:
            raise IneligibleUserError(employee_id, f"chat profile cannot be reset for {user.user_level.value}")

        if user.vendor_user_id:
            try:
                await self._provider.delete_user_identity(user.vendor_user_id)
            except VendorOperationFailedError as e:
                log.warning(f"[{transaction_id}] [CHAT SERVICE] Old vendor identity of {employee_id} not removed: {e}")

        vendor_user_id = await self._provision(user, transaction_id)
        log.info(f"[{transaction_id}] [CHAT SERVICE] Chat profile reset for {employee_id}")
        return vendor_user_id

    async def _provision(self, user: UserRecord, transaction_id: str) -> str:
        vendor_user_id = await self._provider.create_user_identity()
        await self._directory.bind_vendor_identity(user.employee_id, vendor_user_id)
        log.info(f"[{transaction_id}] [CHAT SERVICE] Vendor identity {vendor_user_id} bound to {user.employee_id}")
        return vendor_user_id

    async def provision_branch_users(self, branch_id: str, *, transaction_id: Optional[str] = None) -> int:
        """Create vendor identities for every active branch user lacking one."""
        transaction_id = transaction_id or new_transaction_id()
        users = await self._reconciler.fetch_branch_users(branch_id, FIELD_STAFF_LEVELS + BRANCH_ADMIN_LEVELS)
        pending = [u for u in users if not u.has_vendor_identity]
        if not pending:
            log.info(f"[{transaction_id}] [CHAT SERVICE] All {len(users)} user(s) of branch {branch_id} are provisioned")
            return 0

        provisioned = 0
        batch_size = self._defaults.member_insert_batch_size
        for start in range(0, len(pending), batch_size):
            batch = pending[start:start + batch_size]
            results = await asyncio.gather(
                *(self._provision(u, transaction_id) for u in batch),
                return_exceptions=True,
            )
            for user, result in zip(batch, results):
                if isinstance(result, BaseException):
                    log.error(f"[{transaction_id}] [CHAT SERVICE] Provisioning failed for {user.employee_id}: {result}")
                else:
                    provisioned += 1
        return provisioned

    async def issue_user_token(self, employee_id: str) -> VendorToken:
        user = await self._require_user(employee_id)
        if not user.vendor_user_id:
            raise VendorProvisioningMissingError([employee_id])
        return await self._provider.issue_user_token(user.vendor_user_id)

    async def is_eligible_for_chat(self, employee_id: str, *, transaction_id: Optional[str] = None) -> bool:
        """Field staff and branch admins whose primary branch has the chat feature."""
        transaction_id = transaction_id or new_transaction_id()
        try:
            user = await self._require_user(employee_id)
            if user.user_level not in CHAT_PROFILE_LEVELS or not user.branch_ids:
                return False
            return await self._directory.is_feature_enabled(user.branch_ids[0], self._defaults.chat_feature_key)
        except EngageException as e:
            log.error(f"[{transaction_id}] [CHAT SERVICE] Eligibility check failed for {employee_id}: {e}")
            return False

    # =========================================================================
    # Reconciliation triggers
    # =========================================================================

    async def sync_user(self, employee_id: str, *, transaction_id: Optional[str] = None) -> List[GroupSyncOutcome]:
        """
        Converge every group an employee belongs to or should belong to.

        A field-staff member gets their DirectMessage group reconciled; an
        admin gets the self-sync. Groups the employee still sits in are
        re-derived so a demoted or deactivated employee is removed.
        """
        transaction_id = transaction_id or new_transaction_id()
        user = await self._directory.get_by_id(employee_id)

        outcomes: List[GroupSyncOutcome] = []
        handled: set = set()

        if user is not None and user.is_active:
            for branch_id in user.branch_ids:
                if user.is_field_staff:
                    outcome = await self._reconciler.reconcile_direct_message(user, branch_id, transaction_id=transaction_id)
                    outcomes.append(outcome)
                    if outcome.group_id:
                        handled.add(outcome.group_id)
                elif user.is_branch_admin:
                    for outcome in await self._reconciler.sync_branch_admin(user, branch_id, transaction_id=transaction_id):
                        outcomes.append(outcome)
                        if outcome.action == SyncAction.DEACTIVATED and outcome.group_id:
                            handled.add(outcome.group_id)

        for group in await self._store.find_groups_for_member(employee_id, active_only=True):
            if group.group_id in handled:
                continue
            handled.add(group.group_id)
            try:
                outcomes.append(await self._reconciler.reconcile_group(group, transaction_id=transaction_id))
            except EngageException as e:
                log.error(f"[{transaction_id}] [CHAT SERVICE] Reconciliation of group {group.group_id} failed: {e}")
                outcomes.append(GroupSyncOutcome(action=SyncAction.FAILED, group_id=group.group_id, error=str(e)))

        return outcomes

    async def on_user_role_changed(self, employee_id: str, *, transaction_id: Optional[str] = None) -> List[GroupSyncOutcome]:
        return await self.sync_user(employee_id, transaction_id=transaction_id)

    async def sync_branch_system_groups(
        self,
        branch_id: str,
        *,
        transaction_id: Optional[str] = None,
    ) -> BranchSyncReport:
        transaction_id = transaction_id or new_transaction_id()
        outcomes = await self._reconciler.sync_system_groups(branch_id, transaction_id=transaction_id)
        return BranchSyncReport(branch_id=branch_id, outcomes=outcomes)

    async def sync_branch(self, branch_id: str, *, transaction_id: Optional[str] = None) -> BranchSyncReport:
        """System groups plus every field-staff DirectMessage group of one branch."""
        transaction_id = transaction_id or new_transaction_id()
        report = await self.sync_branch_system_groups(branch_id, transaction_id=transaction_id)

        field_staff = await self._reconciler.fetch_branch_users(branch_id, FIELD_STAFF_LEVELS)
        for user in field_staff:
            if not user.is_field_staff:
                continue
            try:
                outcome = await self._reconciler.reconcile_direct_message(user, branch_id, transaction_id=transaction_id)
            except EngageException as e:
                log.error(f"[{transaction_id}] [CHAT SERVICE] Direct message sync failed for {user.employee_id}: {e}")
                outcome = GroupSyncOutcome(action=SyncAction.FAILED, error=str(e))
            report.outcomes.append(outcome)
        return report

    async def sync_branches(
        self,
        branch_ids: Sequence[str],
        *,
        system_groups_only: bool = False,
        transaction_id: Optional[str] = None,
    ) -> List[BranchSyncReport]:
        """Batch job: branches run one after the other; one failing branch never stops the rest."""
        transaction_id = transaction_id or new_transaction_id()
        reports: List[BranchSyncReport] = []

        for branch_id in branch_ids:
            try:
                if system_groups_only:
                    report = await self.sync_branch_system_groups(branch_id, transaction_id=transaction_id)
                else:
                    report = await self.sync_branch(branch_id, transaction_id=transaction_id)
            except Exception as e:
                log.exception(f"[{transaction_id}] [CHAT SERVICE] Branch {branch_id} sync aborted: {e}")
                report = BranchSyncReport(branch_id=branch_id, error=str(e))
            reports.append(report)

        totals: Dict[str, Any] = {"branches": len(reports), "branches_failed": sum(1 for r in reports if not r.succeeded)}
        for report in reports:
            for key, value in report.to_metrics().items():
                totals[key] = totals.get(key, 0) + value
        log_metrics_table(log, "Chat Sync Summary", totals)
        return reports

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _require_user(self, employee_id: str) -> UserRecord:
        user = await self._directory.get_by_id(employee_id)
        if user is None:
            raise ChatUserNotFoundError(employee_id)
        return user
