# =============================================================================
# File: tests/conftest.py
# Description: Shared fixtures: chat defaults, port fakes, wired service
# =============================================================================

from typing import Callable, Optional, Sequence

import pytest

from engage.chat.credentials import RootCredential
from engage.chat.enums import GroupStatus, GroupType
from engage.chat.membership_rules import access_mode_for, default_access_control
from engage.chat.read_models import ChatGroup, ChatMember, GroupMetrics, UserRecord
from engage.chat.reconciler import GroupReconciler
from engage.chat.service import ChatGroupService
from engage.config.chat_config import ChatDefaults, SystemGroupDefaults

from tests.fakes import (
    FakeBlobStore,
    FakeCache,
    FakeChatGroupStore,
    FakeDirectory,
    FakeThreadProvider,
)

BRANCH_ID = "B1"
BRANCH_NAME = "Downtown Clinic"


@pytest.fixture
def defaults() -> ChatDefaults:
    return ChatDefaults(
        root_user_id="engage-root",
        max_users_allowed=250,
        max_users_ceiling=250,
        system_groups=(SystemGroupDefaults(group_name="Announcements", category="Announcements"),),
    )


@pytest.fixture
def provider() -> FakeThreadProvider:
    return FakeThreadProvider()


@pytest.fixture
def directory() -> FakeDirectory:
    fake = FakeDirectory()
    fake.add_branch(BRANCH_ID, BRANCH_NAME, features=["ChatV2"])
    return fake


@pytest.fixture
def store(cache) -> FakeChatGroupStore:
    return FakeChatGroupStore(cache)


@pytest.fixture
def cache() -> FakeCache:
    return FakeCache()


@pytest.fixture
def blob_store() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def credential(provider, cache, defaults) -> RootCredential:
    return RootCredential(provider, cache, defaults)


@pytest.fixture
def reconciler(store, directory, provider, credential, defaults) -> GroupReconciler:
    return GroupReconciler(store, directory, provider, credential, defaults)


@pytest.fixture
def service(store, directory, provider, credential, defaults, cache, blob_store, reconciler) -> ChatGroupService:
    return ChatGroupService(
        store,
        directory,
        provider,
        credential,
        defaults,
        cache=cache,
        blob_store=blob_store,
        reconciler=reconciler,
    )


@pytest.fixture
def seed_group(store, provider, defaults) -> Callable[..., ChatGroup]:
    """
    Seed a group whose local rows and vendor thread agree, with optional drift:
    local_only users get rows but are absent from the thread, vendor_only
    users sit in the thread without rows.
    """
    counter = {"n": 0}

    def _seed(
        members: Sequence[UserRecord] = (),
        *,
        group_type: GroupType = GroupType.BROADCAST,
        branch_id: str = BRANCH_ID,
        category: Optional[str] = None,
        intended_for_user_id: Optional[str] = None,
        status: GroupStatus = GroupStatus.ACTIVE,
        local_only: Sequence[UserRecord] = (),
        vendor_only: Sequence[str] = (),
        name: Optional[str] = None,
        metrics: Optional[GroupMetrics] = None,
        max_users_allowed: Optional[int] = None,
        thread_provider: Optional[FakeThreadProvider] = None,
    ) -> ChatGroup:
        counter["n"] += 1
        thread_id = (thread_provider or provider).seed_thread([u.vendor_user_id for u in members] + list(vendor_only))
        rows = [*members, *local_only]
        group = store.seed_group(
            ChatGroup(
                group_id=f"CH_GRPtest{counter['n']:04d}",
                vendor_thread_id=thread_id,
                name=name or f"Group {counter['n']}",
                group_type=group_type,
                category=category,
                branch_id=branch_id,
                intended_for_user_id=intended_for_user_id,
                status=status,
                access_control=default_access_control(defaults, max_users_allowed),
                metrics=metrics or GroupMetrics(
                    active_admin_count=sum(1 for u in rows if not u.is_field_staff),
                    total_user_count=len(rows),
                    active_user_count=len(rows),
                ),
                created_by="system",
            )
        )
        for user in rows:
            store.seed_member(
                ChatMember(
                    employee_id=user.employee_id,
                    group_id=group.group_id,
                    vendor_user_id=user.vendor_user_id,
                    vendor_thread_id=thread_id,
                    branch_id=branch_id,
                    display_name=user.display_name,
                    access_mode=access_mode_for(user),
                )
            )
        return group

    return _seed
