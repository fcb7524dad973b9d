# =============================================================================
# File: tests/test_service_groups.py
# Description: ChatGroupService group creation, edits, removal and listings
# =============================================================================

import pytest

from engage.chat.cache_keys import GROUP_NAMESPACE
from engage.chat.enums import AccessMode, GroupStatus, GroupType, RemovalMode
from engage.chat.exceptions import (
    CapacityExceededError,
    ChatGroupNotFoundError,
    ChatUserNotFoundError,
    NoChangesDetectedError,
)
from engage.chat.read_models import AccessControl, GroupChanges, GroupMetrics, GroupQuery
from engage.chat.sync_results import SyncAction
from engage.common.exceptions.exceptions import ValidationError

from tests.conftest import BRANCH_ID, BRANCH_NAME
from tests.fakes import make_user


# =============================================================================
# Creation
# =============================================================================

async def test_create_group_with_one_unprovisioned_participant(service, directory, store, provider):
    directory.add_users(
        make_user("A1", level=3),
        make_user("A2", level=4),
        make_user("F1"),
        make_user("F2"),
        make_user("F3", vendor_user_id=None),
    )

    group = await service.create_group(
        branch_id=BRANCH_ID,
        name="Ops Huddle",
        group_type=GroupType.BROADCAST,
        admin_ids=["A1", "A2"],
        field_staff_ids=["F1", "F2", "F3"],
        category="Ops",
        created_by_user_id="A1",
    )

    assert len(provider.get_last_call("create_thread").args[2]) == 4
    assert set(store.group_members(group.group_id)) == {"A1", "A2", "F1", "F2"}
    assert group.metrics.total_user_count == 4
    assert group.metrics.active_admin_count == 2
    assert group.created_by_user_id == "A1"
    assert group.group_id.startswith("CH_GRP")


async def test_direct_message_creation_needs_intended_user(service, provider):
    with pytest.raises(ValidationError):
        await service.create_group(branch_id=BRANCH_ID, name="DM", group_type=GroupType.DIRECT_MESSAGE, admin_ids=["A1"])

    assert provider.get_all_calls() == []


async def test_create_rejects_more_than_ceiling(service, directory):
    ids = [f"U{i}" for i in range(251)]

    with pytest.raises(CapacityExceededError):
        await service.create_group(branch_id=BRANCH_ID, name="Big", group_type=GroupType.BROADCAST, field_staff_ids=ids)

    assert not directory.was_called("get_by_ids")


async def test_create_rejects_capacity_above_ceiling(service):
    with pytest.raises(ValidationError):
        await service.create_group(
            branch_id=BRANCH_ID,
            name="Big",
            group_type=GroupType.BROADCAST,
            admin_ids=["A1"],
            access_control=AccessControl(max_users_allowed=300),
        )


async def test_create_group_for_branch_splits_roles_and_applies_flags(service, directory, store):
    directory.add_users(make_user("A1", level=3), make_user("F1"), make_user("F2"))

    group = await service.create_group_for_branch(
        BRANCH_ID,
        name="Night Shift",
        group_type=GroupType.BROADCAST,
        participant_ids=["A1", "F1", "F2"],
        attachments_allowed=False,
        can_field_staff_reply=False,
    )

    assert group.access_control.attachments_allowed is False
    assert group.access_control.bidirectional is False
    modes = {m.employee_id: m.access_mode for m in store.group_members(group.group_id).values()}
    assert modes == {"A1": AccessMode.ADMIN, "F1": AccessMode.AGENT, "F2": AccessMode.AGENT}


# =============================================================================
# Update / removal
# =============================================================================

async def test_identical_update_is_rejected_without_writes(service, store, directory, seed_group):
    a1 = directory.add_user(make_user("A1", level=3))
    group = seed_group([a1], name="Ops")
    store.clear_calls()

    with pytest.raises(NoChangesDetectedError):
        await service.update_group(
            group.group_id,
            changes=GroupChanges(name="Ops", status=GroupStatus.ACTIVE),
            add_ids=[],
            remove_ids=[],
        )

    assert store.mutating_calls() == []


async def test_add_at_capacity_fails_with_no_vendor_calls(service, directory, store, provider, seed_group):
    a1 = directory.add_user(make_user("A1", level=3))
    directory.add_users(make_user("N1"), make_user("N2"))
    group = seed_group([a1], metrics=GroupMetrics(active_admin_count=1, total_user_count=249, active_user_count=249))
    provider.clear_calls()
    store.clear_calls()

    with pytest.raises(CapacityExceededError):
        await service.update_group(group.group_id, add_ids=["N1", "N2"])

    assert provider.get_all_calls() == []
    assert store.mutating_calls() == []
    assert set(store.group_members(group.group_id)) == {"A1"}


async def test_update_fields_only(service, directory, seed_group):
    a1 = directory.add_user(make_user("A1", level=3))
    group = seed_group([a1], name="Ops")

    updated = await service.update_group(group.group_id, changes=GroupChanges(name="Ops Team"), updated_by_user_id="A1")

    assert updated.name == "Ops Team"
    assert updated.updated_by_user_id == "A1"


async def test_update_rejects_capacity_above_ceiling(service, directory, store, seed_group):
    group = seed_group([directory.add_user(make_user("A1", level=3))])
    store.clear_calls()

    with pytest.raises(ValidationError):
        await service.update_group(group.group_id, changes=GroupChanges(access_control=AccessControl(max_users_allowed=300)))

    assert store.mutating_calls() == []


async def test_update_rejects_capacity_below_member_count(service, directory, store, seed_group):
    members = directory.add_users(make_user("A1", level=3), make_user("F1"), make_user("F2"), make_user("F3"))
    group = seed_group(members)
    store.clear_calls()

    with pytest.raises(CapacityExceededError):
        await service.update_group(group.group_id, changes=GroupChanges(access_control=AccessControl(max_users_allowed=2)))

    assert store.mutating_calls() == []
    assert store.groups[group.group_id].access_control.max_users_allowed == 250


async def test_capacity_may_shrink_to_count_left_after_removals(service, directory, store, seed_group):
    members = directory.add_users(make_user("A1", level=3), make_user("F1"), make_user("F2"), make_user("F3"))
    group = seed_group(members)

    updated = await service.update_group(
        group.group_id,
        changes=GroupChanges(access_control=AccessControl(max_users_allowed=2)),
        remove_ids=["F2", "F3"],
    )

    assert set(store.group_members(group.group_id)) == {"A1", "F1"}
    assert updated.access_control.max_users_allowed == 2
    assert updated.metrics.total_user_count <= updated.access_control.max_users_allowed


async def test_rename_with_over_capacity_add_leaves_group_untouched(service, directory, store, provider, seed_group):
    a1, f1 = directory.add_users(make_user("A1", level=3), make_user("F1"))
    directory.add_users(make_user("N1"), make_user("N2"))
    group = seed_group([a1, f1], name="Ops", max_users_allowed=3)
    provider.clear_calls()
    store.clear_calls()

    with pytest.raises(CapacityExceededError):
        await service.update_group(group.group_id, changes=GroupChanges(name="Renamed"), add_ids=["N1", "N2"])

    assert store.mutating_calls() == []
    assert provider.get_all_calls() == []
    assert store.groups[group.group_id].name == "Ops"


async def test_raised_capacity_applies_to_adds_in_same_update(service, directory, store, seed_group):
    a1, f1 = directory.add_users(make_user("A1", level=3), make_user("F1"))
    directory.add_users(make_user("N1"), make_user("N2"))
    group = seed_group([a1, f1], name="Ops", max_users_allowed=2)

    updated = await service.update_group(
        group.group_id,
        changes=GroupChanges(name="Ops Team", access_control=AccessControl(max_users_allowed=4)),
        add_ids=["N1", "N2"],
    )

    assert set(store.group_members(group.group_id)) == {"A1", "F1", "N1", "N2"}
    assert updated.name == "Ops Team"
    assert updated.access_control.max_users_allowed == 4
    assert updated.metrics.total_user_count == 4


async def test_adding_only_unknown_employee_fails(service, directory, store, provider, seed_group):
    group = seed_group([directory.add_user(make_user("A1", level=3))])
    provider.clear_calls()
    store.clear_calls()

    with pytest.raises(ChatUserNotFoundError):
        await service.update_group(group.group_id, add_ids=["GHOST"])

    assert store.mutating_calls() == []
    assert provider.get_all_calls() == []
    assert set(store.group_members(group.group_id)) == {"A1"}


async def test_unknown_employee_is_skipped_when_others_resolve(service, directory, store, seed_group):
    group = seed_group([directory.add_user(make_user("A1", level=3))])
    directory.add_user(make_user("F1"))

    updated = await service.update_group(group.group_id, add_ids=["F1", "GHOST"])

    assert set(store.group_members(group.group_id)) == {"A1", "F1"}
    assert updated.metrics.total_user_count == 2


async def test_update_participants_removes_then_adds(service, directory, store, provider, seed_group):
    a1, f1, f2 = directory.add_users(make_user("A1", level=3), make_user("F1"), make_user("F2"))
    group = seed_group([a1, f1])

    updated = await service.update_group(group.group_id, add_ids=["F2"], remove_ids=["F1"])

    assert provider.mutating_calls() == ["remove_participants", "add_participants"]
    assert set(store.group_members(group.group_id)) == {"A1", "F2"}
    assert provider.participant_ids(group.vendor_thread_id) == {a1.vendor_user_id, f2.vendor_user_id}
    assert updated.metrics.total_user_count == 2


async def test_update_unknown_group(service):
    with pytest.raises(ChatGroupNotFoundError):
        await service.update_group("CH_GRPmissing0", changes=GroupChanges(name="x"))


async def test_remove_group_soft_and_hard(service, directory, store, provider, seed_group):
    a1 = directory.add_user(make_user("A1", level=3))
    soft = seed_group([a1])
    hard = seed_group([a1])

    await service.remove_group(soft.group_id)
    await service.remove_group(hard.group_id, RemovalMode.HARD)

    assert store.groups[soft.group_id].status == GroupStatus.ARCHIVED
    assert soft.vendor_thread_id in provider.threads
    assert hard.group_id not in store.groups
    assert hard.vendor_thread_id not in provider.threads


async def test_refresh_group_stats(service, directory, store, seed_group):
    a1, f1 = directory.add_users(make_user("A1", level=3), make_user("F1"))
    group = seed_group([a1, f1], metrics=GroupMetrics(total_user_count=99))

    metrics = await service.refresh_group_stats(group.group_id)

    assert metrics == GroupMetrics(active_admin_count=1, total_user_count=2, active_user_count=2)
    assert store.groups[group.group_id].metrics == metrics


# =============================================================================
# Reads
# =============================================================================

async def test_get_group_reads_through_cache(service, store, cache, defaults, seed_group):
    group = seed_group([])

    first = await service.get_group(group.group_id)
    second = await service.get_group(group.group_id)

    assert first.group_id == second.group_id == group.group_id
    assert store.get_call_count("find_group_by_id") == 1
    assert cache.ttls[f"{GROUP_NAMESPACE}:{group.group_id}"] == defaults.group_cache_ttl_seconds


async def test_get_group_falls_back_to_store_when_cache_is_down(service, store, cache, seed_group):
    group = seed_group([])
    cache.available = False

    await service.get_group(group.group_id)
    await service.get_group(group.group_id)

    assert store.get_call_count("find_group_by_id") == 2


async def test_update_evicts_cached_group(service, cache, seed_group):
    group = seed_group([], name="Ops")
    await service.get_group(group.group_id)

    await service.update_group(group.group_id, changes=GroupChanges(name="Ops Team"))

    assert f"{GROUP_NAMESPACE}:{group.group_id}" not in cache.values
    assert (await service.get_group(group.group_id)).name == "Ops Team"


async def test_list_and_count_with_search(service, seed_group):
    seed_group([], name="Morning Huddle")
    seed_group([], name="Evening Report")
    query = GroupQuery(branch_ids=[BRANCH_ID])

    groups = await service.list_groups(query, search_text="  huddle ")

    assert [g.name for g in groups] == ["Morning Huddle"]
    assert await service.count_groups(query, search_text="report") == 1
    assert await service.count_groups(query) == 2


@pytest.fixture
def branch_groups(directory, seed_group):
    adm = directory.add_user(make_user("ADM1", level=3))
    fs1 = directory.add_user(make_user("FS1"))
    fs2 = directory.add_user(make_user("FS2", branch_ids=["B2", BRANCH_ID]))
    return {
        "own": seed_group([adm], group_type=GroupType.DIRECT_MESSAGE, intended_for_user_id="ADM1"),
        "fs1": seed_group([fs1, adm], group_type=GroupType.DIRECT_MESSAGE, intended_for_user_id="FS1", name="FS1 private"),
        "fs2": seed_group([fs2, adm], group_type=GroupType.DIRECT_MESSAGE, intended_for_user_id="FS2"),
        "foreign": seed_group([fs1], group_type=GroupType.DIRECT_MESSAGE, intended_for_user_id="FS3"),
        "broadcast": seed_group([adm, fs1], category="Announcements"),
    }


async def test_admin_listing_hides_and_corrects(service, store, branch_groups):
    groups = await service.list_groups_for_user("ADM1")

    assert {g.group_id for g in groups} == {branch_groups["fs1"].group_id, branch_groups["broadcast"].group_id}
    assert store.groups[branch_groups["own"].group_id].status == GroupStatus.INACTIVE


async def test_field_staff_listing_renames_own_group(service, branch_groups):
    groups = await service.list_groups_for_user("FS1")

    by_id = {g.group_id: g for g in groups}
    assert set(by_id) == {branch_groups["fs1"].group_id, branch_groups["broadcast"].group_id}
    assert by_id[branch_groups["fs1"].group_id].name == BRANCH_NAME


async def test_listing_for_other_roles_is_empty(service, directory):
    directory.add_user(make_user("HQ1", level=7))

    assert await service.list_groups_for_user("HQ1") == []


async def test_listing_for_unknown_user(service):
    with pytest.raises(ChatUserNotFoundError):
        await service.list_groups_for_user("NOBODY")


async def test_branch_contacts(service, directory, branch_groups):
    directory.add_user(make_user("FS4"))
    directory.add_user(make_user("NOPROV", level=3, vendor_user_id=None))

    contacts = {c.employee_id: c for c in await service.get_branch_contacts([BRANCH_ID])}

    assert set(contacts) == {"ADM1", "FS1", "FS2"}
    assert contacts["ADM1"].access_mode == AccessMode.ADMIN
    assert contacts["FS1"].group_id == branch_groups["fs1"].group_id
    assert contacts["FS1"].access_mode == AccessMode.AGENT


async def test_group_vendor_users_flag_local_presence(service, directory, provider, seed_group):
    a1 = directory.add_user(make_user("A1", level=3))
    group = seed_group([a1], vendor_only=["8:acs:ghost"])

    views = {v.vendor_user_id: v for v in await service.get_group_vendor_users(group.group_id)}

    assert views[a1.vendor_user_id].is_present_locally
    assert views[a1.vendor_user_id].employee_id == "A1"
    assert not views["8:acs:ghost"].is_present_locally
    assert not views[provider.root_identity].is_present_locally


# =============================================================================
# Reconciliation triggers
# =============================================================================

async def test_deactivated_admin_removed_from_every_direct_message_group(service, directory, store, provider, seed_group):
    gone = directory.add_user(make_user("ADMX", level=3, is_active=False))
    stays = directory.add_user(make_user("ADMY", level=3))
    owners = directory.add_users(make_user("FS1"), make_user("FS2"), make_user("FS3"))
    groups = [
        seed_group([fs, gone, stays], group_type=GroupType.DIRECT_MESSAGE, intended_for_user_id=fs.employee_id)
        for fs in owners
    ]

    outcomes = await service.sync_user("ADMX")

    assert len(outcomes) == 3
    assert all(o.removed == ["ADMX"] for o in outcomes)
    for group, fs in zip(groups, owners):
        assert set(store.group_members(group.group_id)) == {fs.employee_id, "ADMY"}
    removed_vendor_ids = {v for call in provider.get_calls("remove_participants") for v in call.args[1]}
    assert removed_vendor_ids == {gone.vendor_user_id}


async def test_promoted_field_staff_loses_own_direct_message_group(service, directory, store, seed_group):
    adm = directory.add_user(make_user("ADM1", level=3))
    fs = directory.add_user(make_user("FS1"))
    group = seed_group([fs, adm], group_type=GroupType.DIRECT_MESSAGE, intended_for_user_id="FS1")
    directory.add_user(make_user("FS1", level=3))

    outcomes = await service.on_user_role_changed("FS1")

    assert [(o.action, o.group_id) for o in outcomes] == [(SyncAction.DEACTIVATED, group.group_id)]
    assert store.groups[group.group_id].status == GroupStatus.INACTIVE


async def test_sync_user_creates_direct_message_group(service, directory, store):
    directory.add_users(make_user("ADM1", level=3), make_user("FS1"))

    outcomes = await service.sync_user("FS1")

    assert outcomes[0].action == SyncAction.CREATED
    assert set(store.group_members(outcomes[0].group_id)) == {"FS1", "ADM1"}
