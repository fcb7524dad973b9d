# =============================================================================
# File: tests/test_service_profiles.py
# Description: Message activity, member preferences, attachments and chat profiles
# =============================================================================

from datetime import datetime, timedelta, timezone

import pytest

from engage.chat.cache_keys import READ_MARKER_NAMESPACE
from engage.chat.enums import MessageActivity, MessageStatus
from engage.chat.exceptions import (
    ChatUserNotFoundError,
    IneligibleUserError,
    MembershipNotFoundError,
    NoChangesDetectedError,
    VendorProvisioningMissingError,
)
from engage.chat.service import ChatGroupService
from engage.chat.value_objects import CompletedPart
from engage.common.exceptions.exceptions import ValidationError

from tests.conftest import BRANCH_ID
from tests.fakes import make_user


# =============================================================================
# Message activity
# =============================================================================

async def test_sent_activity_updates_group(service, store, seed_group):
    group = seed_group([])

    await service.record_message_activity(
        group.group_id,
        MessageActivity.SENT,
        employee_id="A1",
        message_id="m-1",
        message="Shift starts at 7",
    )

    activity = store.groups[group.group_id].last_message_activity
    assert activity.message == "Shift starts at 7"
    assert activity.message_id == "m-1"
    assert activity.message_status == MessageStatus.SENT


async def test_sent_activity_needs_message(service, store, seed_group):
    group = seed_group([])
    store.clear_calls()

    with pytest.raises(ValidationError):
        await service.record_message_activity(group.group_id, MessageActivity.SENT, employee_id="A1")

    assert store.mutating_calls() == []


async def test_read_marker_kept_in_cache(service, cache, defaults):
    await service.record_message_activity("CH_GRPabc", MessageActivity.READ, employee_id="F1", message_id="m-9")

    key = f"{READ_MARKER_NAMESPACE}:CH_GRPabc"
    assert cache.hashes[key]["F1"]["message_id"] == "m-9"
    assert cache.ttls[key] == defaults.read_marker_ttl_seconds


async def test_read_marker_needs_message_id(service, cache):
    with pytest.raises(ValidationError):
        await service.record_message_activity("CH_GRPabc", MessageActivity.READ, employee_id="F1")

    assert not cache.was_called("hset")


async def test_find_read_status_skips_groups_without_marker(service):
    await service.record_message_activity("CH_GRPone", MessageActivity.READ, employee_id="F1", message_id="m-1")
    await service.record_message_activity("CH_GRPtwo", MessageActivity.READ, employee_id="F2", message_id="m-2")

    markers = await service.find_read_status(["CH_GRPone", "CH_GRPtwo", "CH_GRPnone"], "F1")

    assert [(m.group_id, m.message_id) for m in markers] == [("CH_GRPone", "m-1")]
    assert markers[0].timestamp is not None


async def test_find_read_status_accepts_plain_message_id(service, cache):
    cache.hashes[f"{READ_MARKER_NAMESPACE}:CH_GRPold"] = {"F1": "m-legacy"}

    markers = await service.find_read_status(["CH_GRPold"], "F1")

    assert markers[0].message_id == "m-legacy"
    assert markers[0].timestamp is None


async def test_read_markers_need_cache_layer(store, directory, provider, credential, defaults):
    bare = ChatGroupService(store, directory, provider, credential, defaults)

    with pytest.raises(ValidationError):
        await bare.find_read_status(["CH_GRPone"], "F1")


# =============================================================================
# Member preferences
# =============================================================================

async def test_mute_and_unmute(service, store, directory, seed_group):
    f1 = directory.add_user(make_user("F1"))
    group = seed_group([f1])
    until = datetime(2030, 1, 1, tzinfo=timezone.utc)

    await service.update_member_preferences(group.group_id, "F1", mute_notifications=True, mute_until=until)
    muted = store.group_members(group.group_id)["F1"]
    assert muted.mute_notifications is True
    assert muted.mute_until == until

    await service.update_member_preferences(group.group_id, "F1", mute_notifications=False, mute_until=until)
    unmuted = store.group_members(group.group_id)["F1"]
    assert unmuted.mute_notifications is False
    assert unmuted.mute_until is None


async def test_last_seen_only(service, store, directory, seed_group):
    f1 = directory.add_user(make_user("F1"))
    group = seed_group([f1])
    seen = datetime.now(timezone.utc) - timedelta(minutes=5)

    await service.update_member_preferences(group.group_id, "F1", last_seen_at=seen)

    member = store.group_members(group.group_id)["F1"]
    assert member.last_seen_at == seen
    assert member.mute_notifications is False


async def test_preferences_without_changes(service, store):
    with pytest.raises(NoChangesDetectedError):
        await service.update_member_preferences("CH_GRPabc", "F1")

    assert not store.was_called("update_members")


async def test_preferences_for_unknown_membership(service, seed_group):
    group = seed_group([])

    with pytest.raises(MembershipNotFoundError):
        await service.update_member_preferences(group.group_id, "NOBODY", mute_notifications=True)


# =============================================================================
# Attachments
# =============================================================================

async def test_upload_attachment(service, blob_store):
    ref = await service.upload_attachment("/roster.pdf", b"%PDF", "application/pdf")

    assert ref.file_identifier == "chat_attachments/roster.pdf"
    assert blob_store.objects["chat_attachments/roster.pdf"] == b"%PDF"
    assert ref.signed_url.startswith("https://blobs.test/chat_attachments/roster.pdf")


async def test_attachment_name_must_not_be_empty(service, blob_store):
    with pytest.raises(ValidationError):
        await service.upload_attachment("  ", b"x", "text/plain")

    assert blob_store.get_all_calls() == []


async def test_large_attachment_round(service, blob_store):
    upload = await service.initiate_large_attachment("video.mp4", 3, "video/mp4")

    assert upload.key == "chat_attachments/video.mp4"
    assert [p.part_number for p in upload.part_urls] == [1, 2, 3]

    url = await service.finalize_large_attachment(
        upload.key,
        upload.upload_id,
        [CompletedPart(3, "e3"), CompletedPart(1, "e1"), CompletedPart(2, "e2")],
    )

    assert blob_store.uploads[upload.upload_id]["completed"] == [1, 2, 3]
    assert "video.mp4" in url


async def test_large_attachment_needs_parts(service, blob_store):
    with pytest.raises(ValidationError):
        await service.initiate_large_attachment("video.mp4", 0)
    with pytest.raises(ValidationError):
        await service.finalize_large_attachment("chat_attachments/video.mp4", "upload-1", [])

    assert blob_store.get_all_calls() == []


async def test_attachment_url_uses_configured_ttl(service, blob_store, defaults):
    url = await service.get_attachment_url("chat_attachments/roster.pdf")

    assert url.endswith(f"expires={defaults.signed_url_ttl_seconds}")
    assert blob_store.get_last_call("get_signed_url").kwargs["expires_in"] == defaults.signed_url_ttl_seconds


async def test_attachments_need_blob_store(store, directory, provider, credential, defaults):
    bare = ChatGroupService(store, directory, provider, credential, defaults)

    with pytest.raises(ValidationError):
        await bare.get_attachment_url("chat_attachments/roster.pdf")


# =============================================================================
# Chat profiles
# =============================================================================

async def test_create_chat_profile_returns_existing_binding(service, directory, provider):
    directory.add_user(make_user("F1"))

    assert await service.create_chat_profile("F1") == "8:acs:F1"
    assert not provider.was_called("create_user_identity")


async def test_create_chat_profile_binds_new_identity(service, directory, provider):
    directory.add_user(make_user("F1", vendor_user_id=None))

    vendor_user_id = await service.create_chat_profile("F1")

    assert vendor_user_id == "8:acs:new-1"
    assert directory.users["F1"].vendor_user_id == vendor_user_id
    assert vendor_user_id in provider.identities


async def test_create_chat_profile_for_unknown_user(service):
    with pytest.raises(ChatUserNotFoundError):
        await service.create_chat_profile("NOBODY")


async def test_reset_chat_profile_replaces_identity(service, directory, provider):
    directory.add_user(make_user("F1"))

    vendor_user_id = await service.reset_chat_profile("F1")

    assert provider.get_last_call("delete_user_identity").args == ("8:acs:F1",)
    assert directory.users["F1"].vendor_user_id == vendor_user_id != "8:acs:F1"


async def test_reset_chat_profile_survives_failed_delete(service, directory, provider):
    directory.add_user(make_user("A1", level=3))
    provider.configure_failure("delete_user_identity", "identity already gone")

    vendor_user_id = await service.reset_chat_profile("A1")

    assert directory.users["A1"].vendor_user_id == vendor_user_id


async def test_reset_chat_profile_rejects_other_roles(service, directory, provider):
    directory.add_user(make_user("HQ1", level=7))

    with pytest.raises(IneligibleUserError):
        await service.reset_chat_profile("HQ1")

    assert provider.get_all_calls() == []


async def test_provision_branch_users(service, directory, provider):
    directory.add_users(
        make_user("F1"),
        make_user("F2", vendor_user_id=None),
        make_user("A1", level=3, vendor_user_id=None),
        make_user("HQ1", level=7, vendor_user_id=None),
    )

    count = await service.provision_branch_users(BRANCH_ID)

    assert count == 2
    assert directory.users["F2"].vendor_user_id
    assert directory.users["A1"].vendor_user_id
    assert directory.users["HQ1"].vendor_user_id is None
    assert provider.get_call_count("create_user_identity") == 2


async def test_provision_branch_users_when_all_bound(service, directory, provider):
    directory.add_user(make_user("F1"))

    assert await service.provision_branch_users(BRANCH_ID) == 0
    assert not provider.was_called("create_user_identity")


async def test_issue_user_token(service, directory):
    directory.add_user(make_user("F1"))

    token = await service.issue_user_token("F1")

    assert token.identity == "8:acs:F1"


async def test_issue_user_token_needs_vendor_identity(service, directory, provider):
    directory.add_user(make_user("F1", vendor_user_id=None))

    with pytest.raises(VendorProvisioningMissingError):
        await service.issue_user_token("F1")

    assert not provider.was_called("issue_user_token")


# =============================================================================
# Eligibility
# =============================================================================

async def test_eligible_when_branch_has_feature(service, directory):
    directory.add_user(make_user("F1"))

    assert await service.is_eligible_for_chat("F1") is True


async def test_not_eligible_without_feature(service, directory):
    directory.add_branch("B9", "Uptown")
    directory.add_user(make_user("F1", branch_ids=("B9", BRANCH_ID)))

    assert await service.is_eligible_for_chat("F1") is False


async def test_not_eligible_for_other_roles(service, directory):
    directory.add_user(make_user("HQ1", level=7))

    assert await service.is_eligible_for_chat("HQ1") is False


async def test_not_eligible_when_unknown(service):
    assert await service.is_eligible_for_chat("NOBODY") is False


async def test_not_eligible_when_directory_fails(service, directory):
    directory.add_user(make_user("F1"))
    directory.configure_failure("is_feature_enabled", "directory unreachable")

    assert await service.is_eligible_for_chat("F1") is False
